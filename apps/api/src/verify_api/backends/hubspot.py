"""HubSpot CRM connector.

Writes verification results onto a HubSpot contact via the CRM v3 REST
API and logs each finished call as a Call engagement on that contact.
https://developers.hubspot.com/docs/api/crm/contacts
"""

import logging
from collections.abc import Mapping
from typing import Any

import httpx

from verify_shared.schemas import (
    NO_LONGER_EMPLOYED,
    NOT_PROVIDED,
    CallLogEntry,
    ContactTarget,
    CrmTarget,
)

from verify_api.config import HubSpotConfig
from verify_api.errors import BackendError

logger = logging.getLogger("verify-api.hubspot")

# Normalized field -> HubSpot contact property
PROPERTY_MAP: dict[str, str] = {
    "gatekeeper_name": "gatekeeper_name",
    "physical_address": "full_physical_address",
    "email_address": "email",
    "dm_name": "it_decision_maker",
    "direct_number": "it_dm_direct_number",
    "last_call_date": "last_verification_date",
}

# Normalized fields folded into last_call_notes, in this order
NOTE_FIELDS = ("dm_notes", "direct_number_notes", "call_notes")

# call_outcome -> verification_status enumeration on the contact
OUTCOME_STATUS: dict[str, str] = {
    "success": "verified",
    "partial": "partial",
    "callback_requested": "not_verified",
    "not_available": "unreachable",
    "declined": "declined",
    "wrong_number": "wrong_number",
}
DEFAULT_STATUS = "not_verified"

# Contact -> call engagement association
CALL_TO_CONTACT_ASSOCIATION = 194


def parse_address(address: str) -> dict[str, str]:
    """Split "street, city, STATE ZIP, country" into contact properties.

    Missing trailing parts are simply omitted.
    """
    parts = [p.strip() for p in address.split(",")]
    result: dict[str, str] = {}

    if parts and parts[0]:
        result["address"] = parts[0]
    if len(parts) >= 2:
        result["city"] = parts[1]
    if len(parts) >= 3:
        state_zip = parts[2].split()
        if state_zip:
            result["state"] = state_zip[0]
        if len(state_zip) >= 2:
            result["zip"] = state_zip[1]
    if len(parts) >= 4:
        result["country"] = parts[3]
    return result


def encode_properties(fields: Mapping[str, str]) -> tuple[dict[str, str], dict[str, str]]:
    """Translate a normalized update into HubSpot contact properties.

    Returns:
        Tuple of (properties to PATCH, normalized fields they came from).
        address_verified, email_verified and call_outcome have no property
        of their own and only appear in the second element when they fed
        another property.
    """
    properties: dict[str, str] = {}
    consumed: dict[str, str] = {}

    for key, prop in PROPERTY_MAP.items():
        value = fields.get(key)
        if value is None:
            continue
        if key == "direct_number" and value == NOT_PROVIDED:
            continue
        properties[prop] = value
        consumed[key] = value

    if "physical_address" in consumed:
        properties.update(parse_address(consumed["physical_address"]))

    dm_verified = fields.get("dm_verified")
    if dm_verified:
        properties["dm_employment_status"] = (
            "left" if dm_verified == NO_LONGER_EMPLOYED else "employed"
        )
        consumed["dm_verified"] = dm_verified

    notes = [fields[key] for key in NOTE_FIELDS if fields.get(key)]
    if notes:
        properties["last_call_notes"] = "\n".join(notes)
        consumed.update({key: fields[key] for key in NOTE_FIELDS if fields.get(key)})

    if "verification_status" in fields:
        outcome = fields.get("call_outcome", "")
        properties["verification_status"] = OUTCOME_STATUS.get(outcome, DEFAULT_STATUS)
        consumed["verification_status"] = fields["verification_status"]
        if outcome:
            consumed["call_outcome"] = outcome

    return properties, consumed


class HubSpotConnector:
    """BackendConnector for CRM targets."""

    name = "hubspot"

    def __init__(
        self,
        config: HubSpotConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the connector.

        Args:
            config: HubSpot configuration. If not provided, loads from environment.
            transport: Optional httpx transport, used by tests to stub the API.
        """
        self.config = config or HubSpotConfig.from_env()
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.config.api_base,
            headers={
                "Authorization": f"Bearer {self.config.access_token}",
                "Content-Type": "application/json",
            },
            timeout=self.config.timeout,
            transport=self._transport,
        )

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        if not self.config.is_configured():
            raise BackendError(self.name, "HUBSPOT_ACCESS_TOKEN not configured")

        try:
            async with self._client() as client:
                response = await client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise BackendError(self.name, f"{method} {path} failed: {e!s}") from e

        if response.status_code >= 400:
            raise BackendError(
                self.name,
                f"{method} {path} returned {response.status_code}",
                status_code=response.status_code,
                body=response.text[:500],
            )
        return response

    @staticmethod
    def _contact_id(target: ContactTarget) -> str:
        if not isinstance(target, CrmTarget):
            raise BackendError("hubspot", f"Cannot update a {target.kind} target")
        return target.contact_id

    async def apply_update(
        self, target: ContactTarget, fields: Mapping[str, str]
    ) -> dict[str, str]:
        """PATCH the contact with the encoded fields.

        Terminal updates (those carrying verification_status) also bump
        call_attempts.
        """
        contact_id = self._contact_id(target)
        properties, consumed = encode_properties(fields)
        if not properties:
            logger.info(f"Nothing to write for contact {contact_id}")
            return {}

        if "verification_status" in fields:
            attempts = await self._next_call_attempts(contact_id)
            if attempts is not None:
                properties["call_attempts"] = str(attempts)

        await self._request(
            "PATCH",
            f"/crm/v3/objects/contacts/{contact_id}",
            json={"properties": properties},
        )
        logger.info(f"Updated contact {contact_id}: {sorted(properties)}")
        return consumed

    async def _next_call_attempts(self, contact_id: str) -> int | None:
        """Current call_attempts + 1, or None if it cannot be read."""
        try:
            response = await self._request(
                "GET",
                f"/crm/v3/objects/contacts/{contact_id}",
                params={"properties": "call_attempts"},
            )
            raw = response.json().get("properties", {}).get("call_attempts")
            return int(raw or 0) + 1
        except (BackendError, ValueError, AttributeError) as e:
            logger.warning(f"Could not read call_attempts for {contact_id}: {e!s}")
            return None

    async def log_call(self, target: ContactTarget, entry: CallLogEntry) -> bool:
        """Create a Call engagement associated with the contact.

        Best-effort: failures are logged and reported as False.
        """
        contact_id = self._contact_id(target)
        payload = {
            "properties": {
                "hs_call_title": "Verification Call (Voice Agent)",
                "hs_call_body": entry.notes,
                "hs_call_duration": str(entry.duration_seconds * 1000),  # milliseconds
                "hs_call_status": "COMPLETED" if entry.outcome == "success" else "NO_ANSWER",
                "hs_call_direction": "OUTBOUND",
                "hs_timestamp": entry.timestamp.isoformat(),
            },
            "associations": [
                {
                    "to": {"id": contact_id},
                    "types": [
                        {
                            "associationCategory": "HUBSPOT_DEFINED",
                            "associationTypeId": CALL_TO_CONTACT_ASSOCIATION,
                        }
                    ],
                }
            ],
        }

        try:
            await self._request("POST", "/crm/v3/objects/calls", json=payload)
        except BackendError as e:
            logger.error(f"Failed to log call {entry.call_id} on contact {contact_id}: {e.message}")
            return False

        logger.info(f"Logged call {entry.call_id} on contact {contact_id}")
        return True
