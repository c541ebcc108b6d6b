"""Google Sheets connector.

Each contact is one data row; the first sheet row holds column headers.
Normalized fields are matched to columns by header name, so the sheet's
column order and exact header wording are free to vary.
https://developers.google.com/sheets/api/reference/rest/v4/spreadsheets.values
"""

import logging
import re
import time
from collections.abc import Callable, Mapping, Sequence
from typing import Any
from urllib.parse import quote

import httpx
from jose import jwt

from verify_shared.schemas import CallLogEntry, ContactTarget, SheetTarget

from verify_api.config import SHEETS_SCOPE, SheetsConfig
from verify_api.errors import BackendError

logger = logging.getLogger("verify-api.sheets")

GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"
JWT_BEARER_GRANT = "urn:ietf:params:oauth:grant-type:jwt-bearer"
ASSERTION_LIFETIME_SECONDS = 3600
TOKEN_REFRESH_MARGIN_SECONDS = 60

_SAFE_SHEET_NAME = re.compile(r"^[A-Za-z0-9_]+$")


# =============================================================================
# Column Helpers
# =============================================================================


def column_letter(index: int) -> str:
    """Zero-based column index to A1 letters: 0 -> A, 25 -> Z, 26 -> AA."""
    if index < 0:
        raise ValueError(f"Column index must be >= 0, got {index}")
    letters = ""
    while index >= 0:
        letters = chr(ord("A") + index % 26) + letters
        index = index // 26 - 1
    return letters


def normalize_header(value: str) -> str:
    """Lowercase, with each run of whitespace collapsed to an underscore."""
    return re.sub(r"\s+", "_", value.strip().lower())


def find_column_index(headers: Sequence[str], key: str) -> int:
    """Index of the header matching key, or -1.

    An exact match (after normalization) wins; otherwise the first header
    that contains key, or is contained in it, is used. Blank headers never
    match.
    """
    wanted = normalize_header(key)
    normalized = [normalize_header("" if h is None else str(h)) for h in headers]

    for index, header in enumerate(normalized):
        if header and header == wanted:
            return index
    for index, header in enumerate(normalized):
        if header and (wanted in header or header in wanted):
            return index
    return -1


def a1_range(sheet_name: str, cells: str) -> str:
    """Qualify a cell reference with its sheet, quoting names that need it."""
    if _SAFE_SHEET_NAME.match(sheet_name):
        return f"{sheet_name}!{cells}"
    escaped = sheet_name.replace("'", "''")
    return f"'{escaped}'!{cells}"


# =============================================================================
# Service Account Auth
# =============================================================================


class ServiceAccountTokenProvider:
    """Exchanges a signed service-account assertion for an access token.

    Tokens are cached until shortly before they expire.
    """

    def __init__(
        self,
        service_account: Mapping[str, Any],
        scope: str = SHEETS_SCOPE,
        clock: Callable[[], float] = time.time,
    ):
        self._account = dict(service_account)
        self._scope = scope
        self._clock = clock
        self._token: str | None = None
        self._expires_at: float = 0.0

    @property
    def token_uri(self) -> str:
        return self._account.get("token_uri") or GOOGLE_TOKEN_URI

    def build_assertion(self) -> str:
        """RS256-signed JWT asserting the service account identity."""
        now = int(self._clock())
        claims = {
            "iss": self._account["client_email"],
            "scope": self._scope,
            "aud": self.token_uri,
            "iat": now,
            "exp": now + ASSERTION_LIFETIME_SECONDS,
        }
        headers = {}
        if self._account.get("private_key_id"):
            headers["kid"] = self._account["private_key_id"]
        return jwt.encode(
            claims, self._account["private_key"], algorithm="RS256", headers=headers
        )

    async def get_token(self, client: httpx.AsyncClient) -> str:
        if self._token and self._clock() < self._expires_at - TOKEN_REFRESH_MARGIN_SECONDS:
            return self._token

        try:
            assertion = self.build_assertion()
        except KeyError as e:
            raise BackendError("google_sheets", f"Service account is missing {e.args[0]}") from e

        try:
            response = await client.post(
                self.token_uri,
                data={"grant_type": JWT_BEARER_GRANT, "assertion": assertion},
            )
        except httpx.HTTPError as e:
            raise BackendError("google_sheets", f"Token request failed: {e!s}") from e

        if response.status_code >= 400:
            raise BackendError(
                "google_sheets",
                f"Token request returned {response.status_code}",
                status_code=response.status_code,
            )

        try:
            result = response.json()
            token = result["access_token"]
            expires_in = float(result.get("expires_in", 3600))
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise BackendError("google_sheets", f"Unusable token response: {e!s}") from e

        self._token = token
        self._expires_at = self._clock() + expires_in
        logger.debug("Obtained Google access token")
        return self._token


# =============================================================================
# Connector
# =============================================================================


class GoogleSheetsConnector:
    """BackendConnector for sheet-row targets."""

    name = "google_sheets"

    def __init__(
        self,
        config: SheetsConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or SheetsConfig.from_env()
        self._transport = transport
        self._tokens = (
            ServiceAccountTokenProvider(self.config.service_account, clock=clock)
            if self.config.service_account
            else None
        )

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.config.timeout, transport=self._transport)

    async def _auth_headers(self, client: httpx.AsyncClient) -> dict[str, str]:
        if self._tokens is not None:
            token = await self._tokens.get_token(client)
        elif self.config.access_token:
            token = self.config.access_token
        else:
            raise BackendError(
                self.name, "Neither GOOGLE_SERVICE_ACCOUNT nor GOOGLE_SHEETS_TOKEN is set"
            )
        return {"Authorization": f"Bearer {token}"}

    def _values_url(self, suffix: str) -> str:
        return f"{self.config.api_base}/{self.config.spreadsheet_id}/values{suffix}"

    async def _call(
        self, client: httpx.AsyncClient, method: str, url: str, **kwargs: Any
    ) -> httpx.Response:
        headers = await self._auth_headers(client)
        try:
            response = await client.request(method, url, headers=headers, **kwargs)
        except httpx.HTTPError as e:
            raise BackendError(self.name, f"{method} {url} failed: {e!s}") from e
        if response.status_code >= 400:
            raise BackendError(
                self.name,
                f"{method} values returned {response.status_code}",
                status_code=response.status_code,
                body=response.text[:500],
            )
        return response

    async def read_headers(self, client: httpx.AsyncClient) -> list[str]:
        """Header row of the configured sheet."""
        header_range = quote(a1_range(self.config.sheet_name, "1:1"), safe="")
        response = await self._call(client, "GET", self._values_url(f"/{header_range}"))
        try:
            rows = response.json().get("values") or []
        except (ValueError, AttributeError) as e:
            raise BackendError(self.name, f"Unreadable header row: {e!s}") from e
        return [str(h) for h in rows[0]] if rows else []

    async def apply_update(
        self, target: ContactTarget, fields: Mapping[str, str]
    ) -> dict[str, str]:
        """Write each field into its matching column on the target row.

        Fields with no matching header are skipped with a warning. If none
        match, nothing is written.
        """
        if not isinstance(target, SheetTarget):
            raise BackendError(self.name, f"Cannot update a {target.kind} target")
        if not self.config.spreadsheet_id:
            raise BackendError(self.name, "GOOGLE_SHEET_ID not configured")

        sheet_row = target.row_number + 1  # header occupies row 1

        async with self._client() as client:
            headers = await self.read_headers(client)

            data: list[dict[str, Any]] = []
            applied: dict[str, str] = {}
            for key, value in fields.items():
                index = find_column_index(headers, key)
                if index == -1:
                    logger.warning(f"No column for '{key}' in sheet {self.config.sheet_name}")
                    continue
                data.append(
                    {
                        "range": a1_range(
                            self.config.sheet_name, f"{column_letter(index)}{sheet_row}"
                        ),
                        "values": [[value]],
                    }
                )
                applied[key] = value

            if not data:
                logger.warning(f"No matching columns found for {target.describe()}")
                return {}

            await self._call(
                client,
                "POST",
                self._values_url(":batchUpdate"),
                json={"valueInputOption": "USER_ENTERED", "data": data},
            )

        logger.info(f"Updated {target.describe()}: {sorted(applied)}")
        return applied

    async def log_call(self, target: ContactTarget, entry: CallLogEntry) -> bool:
        # Sheets have no call-log object; the terminal row update is the record
        logger.debug(f"Skipping call log for {target.describe()} (sheet backend)")
        return False
