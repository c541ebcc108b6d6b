"""Service configuration.

Everything is read from environment variables (``.env`` then ``.env.local``).
Missing values are logged at load time rather than failing startup, so the
webhook endpoint stays up even when one backend is not configured.
"""

import json
import logging
import os
import sys
from dataclasses import dataclass, field
from typing import Any

from dotenv import load_dotenv

from verify_shared.schemas import EVICTION_GRACE_SECONDS

logger = logging.getLogger("verify-api.config")

HUBSPOT_API_BASE = "https://api.hubapi.com"
SHEETS_API_BASE = "https://sheets.googleapis.com/v4/spreadsheets"
SHEETS_SCOPE = "https://www.googleapis.com/auth/spreadsheets"


def load_environment() -> None:
    """Load .env, then let .env.local override it."""
    load_dotenv()
    load_dotenv(".env.local", override=True)


@dataclass
class LiveKitConfig:
    """LiveKit server API credentials and agent dispatch settings."""

    url: str
    api_key: str
    api_secret: str
    agent_name: str = "verification-agent"
    empty_timeout: int = 300  # seconds a room may sit empty
    max_participants: int = 3  # agent, callee, optional supervisor

    @classmethod
    def from_env(cls) -> "LiveKitConfig":
        """Load LiveKit config from environment variables."""
        url = os.getenv("LIVEKIT_URL", "")
        api_key = os.getenv("LIVEKIT_API_KEY", "")
        api_secret = os.getenv("LIVEKIT_API_SECRET", "")

        if not url:
            logger.warning("LIVEKIT_URL not set - rooms cannot be created or deleted")
        if not api_key or not api_secret:
            logger.warning("LIVEKIT_API_KEY / LIVEKIT_API_SECRET not set")

        return cls(
            url=url,
            api_key=api_key,
            api_secret=api_secret,
            agent_name=os.getenv("VERIFICATION_AGENT_NAME", "verification-agent"),
        )

    @property
    def http_url(self) -> str:
        """Server API URL; the SDK talks HTTP(S) even when given a ws URL."""
        return self.url.replace("wss://", "https://").replace("ws://", "http://")

    def is_configured(self) -> bool:
        return bool(self.url and self.api_key and self.api_secret)


@dataclass
class HubSpotConfig:
    """HubSpot private-app credentials."""

    access_token: str
    api_base: str = HUBSPOT_API_BASE
    timeout: float = 10.0

    @classmethod
    def from_env(cls) -> "HubSpotConfig":
        access_token = os.getenv("HUBSPOT_ACCESS_TOKEN", "")
        if not access_token:
            logger.warning("HUBSPOT_ACCESS_TOKEN not set - CRM updates will fail")
        return cls(access_token=access_token)

    def is_configured(self) -> bool:
        return bool(self.access_token)


@dataclass
class SheetsConfig:
    """Google Sheets location and credentials.

    Either a service account (JSON in GOOGLE_SERVICE_ACCOUNT) or a
    pre-issued OAuth bearer token (GOOGLE_SHEETS_TOKEN) must be set.
    """

    spreadsheet_id: str
    sheet_name: str = "Contacts"
    service_account: dict[str, Any] = field(default_factory=dict)
    access_token: str = ""
    api_base: str = SHEETS_API_BASE
    timeout: float = 10.0

    @classmethod
    def from_env(cls) -> "SheetsConfig":
        spreadsheet_id = os.getenv("GOOGLE_SHEET_ID", "")
        raw_account = os.getenv("GOOGLE_SERVICE_ACCOUNT", "")
        service_account: dict[str, Any] = {}

        if raw_account:
            try:
                service_account = json.loads(raw_account)
            except json.JSONDecodeError:
                logger.error("GOOGLE_SERVICE_ACCOUNT is not valid JSON - ignoring it")

        if not spreadsheet_id:
            logger.warning("GOOGLE_SHEET_ID not set - sheet updates will fail")

        return cls(
            spreadsheet_id=spreadsheet_id,
            sheet_name=os.getenv("GOOGLE_SHEET_NAME", "Contacts"),
            service_account=service_account,
            access_token=os.getenv("GOOGLE_SHEETS_TOKEN", ""),
        )

    def is_configured(self) -> bool:
        return bool(self.spreadsheet_id and (self.service_account or self.access_token))


@dataclass
class AppSettings:
    """Top-level settings for the verification API."""

    livekit: LiveKitConfig
    hubspot: HubSpotConfig
    sheets: SheetsConfig
    webhook_secret: str = ""
    eviction_grace_seconds: float = EVICTION_GRACE_SECONDS
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "AppSettings":
        """Load every config block from the environment."""
        load_environment()

        webhook_secret = os.getenv("WEBHOOK_SECRET", "")
        if not webhook_secret:
            logger.warning(
                "WEBHOOK_SECRET not set - inbound webhooks will NOT be authenticated"
            )

        return cls(
            livekit=LiveKitConfig.from_env(),
            hubspot=HubSpotConfig.from_env(),
            sheets=SheetsConfig.from_env(),
            webhook_secret=webhook_secret,
            eviction_grace_seconds=float(
                os.getenv("EVICTION_GRACE_SECONDS", str(EVICTION_GRACE_SECONDS))
            ),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )


def configure_logging(level: str = "INFO") -> None:
    """Send service logs to stdout at the given level."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stdout,
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
