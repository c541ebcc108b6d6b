"""Pydantic schemas for contact verification calls.

These schemas are provider-agnostic. Nothing here knows about HubSpot,
Google Sheets or LiveKit: backend-specific encoding lives in the API's
connector modules.
"""

import json
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

logger = logging.getLogger("verify-shared")

# =============================================================================
# Constants
# =============================================================================

# How long a finished session stays readable before it is evicted
EVICTION_GRACE_SECONDS: int = 60

# Reason recorded when a room goes away before the agent reported an outcome
DISCONNECTED_REASON = "disconnected unexpectedly"

# Values written into the *_verified / direct_number fields
VERIFIED = "Yes"
UPDATED = "Updated"
NO_LONGER_EMPLOYED = "No longer employed"
NOT_PROVIDED = "Not provided"

# Keys of a normalized update, in the order the router emits them
NORMALIZED_FIELDS: tuple[str, ...] = (
    "gatekeeper_name",
    "physical_address",
    "address_verified",
    "email_address",
    "email_verified",
    "dm_name",
    "dm_verified",
    "dm_notes",
    "direct_number",
    "direct_number_notes",
    "verification_status",
    "call_outcome",
    "call_notes",
    "last_call_date",
)


def utcnow() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


def as_flag(value: Any) -> bool:
    """Read an agent-reported boolean, which sometimes arrives as a string."""
    if isinstance(value, str):
        return value.strip().lower() in ("true", "yes", "1")
    return bool(value)


# =============================================================================
# Enums
# =============================================================================


class StepName(str, Enum):
    """Verification steps the agent reports, in conversation order."""

    RECORD_GATEKEEPER = "record_gatekeeper"
    VERIFY_ADDRESS = "verify_address"
    VERIFY_EMAIL = "verify_email"
    VERIFY_DM = "verify_dm"
    COLLECT_DIRECT_NUMBER = "collect_direct_number"
    END_CALL = "end_call"
    COMPLETE_CALL = "complete_call"

    @property
    def is_terminal(self) -> bool:
        return self in (StepName.END_CALL, StepName.COMPLETE_CALL)


class CallStatus(str, Enum):
    """Session status. Only ever moves forward."""

    INITIATING = "initiating"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ENDED_EARLY = "ended_early"

    @property
    def is_terminal(self) -> bool:
        return self in (CallStatus.COMPLETED, CallStatus.ENDED_EARLY)

    @property
    def rank(self) -> int:
        """Position in the state graph; both terminal states share a rank."""
        return {
            CallStatus.INITIATING: 0,
            CallStatus.IN_PROGRESS: 1,
            CallStatus.COMPLETED: 2,
            CallStatus.ENDED_EARLY: 2,
        }[self]


class TargetKind(str, Enum):
    """Which contact-data backend a session writes to."""

    CRM = "crm"
    SHEET = "sheet"


# =============================================================================
# Contact Target
# =============================================================================


class CrmTarget(BaseModel):
    """A contact record in the CRM."""

    kind: Literal["crm"] = "crm"
    contact_id: str = Field(..., min_length=1)

    def describe(self) -> str:
        return f"contact {self.contact_id}"


class SheetTarget(BaseModel):
    """A data row in the spreadsheet.

    row_number counts data rows from 1; the header occupies sheet row 1,
    so data row N lives on sheet row N + 1.
    """

    kind: Literal["sheet"] = "sheet"
    row_number: int = Field(..., ge=1)

    def describe(self) -> str:
        return f"row {self.row_number}"


ContactTarget = Annotated[CrmTarget | SheetTarget, Field(discriminator="kind")]


# =============================================================================
# Call Session (In-Memory Only)
# =============================================================================


class StepRecord(BaseModel):
    """Parameters the agent reported for one step, and when."""

    parameters: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)


class CallSession(BaseModel):
    """One in-flight verification call.

    Ephemeral: lives in the registry until the eviction grace window
    after the call ends.
    """

    call_id: str
    room_name: str
    target: ContactTarget
    status: CallStatus = CallStatus.INITIATING
    collected_data: dict[str, StepRecord] = Field(default_factory=dict)

    start_time: datetime = Field(default_factory=utcnow)
    end_time: datetime | None = None
    end_reason: str | None = None

    phone_number: str | None = None  # E.164
    contact_data: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def duration_seconds(self, now: datetime | None = None) -> int:
        """Whole seconds from start to end (or to now while live)."""
        end = self.end_time or now or utcnow()
        return max(0, int((end - self.start_time).total_seconds()))

    def step_parameters(self, step: str) -> dict[str, Any] | None:
        record = self.collected_data.get(step)
        return record.parameters if record else None


class CallLogEntry(BaseModel):
    """What the finalizer hands to a backend's call log."""

    call_id: str
    duration_seconds: int = 0
    outcome: str
    notes: str
    timestamp: datetime = Field(default_factory=utcnow)


# =============================================================================
# Webhook Events (Tagged Union)
# =============================================================================


class RoomInfo(BaseModel):
    """Room block attached to webhook events."""

    model_config = ConfigDict(extra="ignore")

    name: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("metadata", mode="before")
    @classmethod
    def _decode_metadata(cls, value: Any) -> Any:
        # Room metadata travels as a JSON string on the wire
        if value is None or value == "":
            return {}
        if isinstance(value, str):
            try:
                decoded = json.loads(value)
            except json.JSONDecodeError:
                logger.warning("Ignoring undecodable room metadata")
                return {}
            return decoded if isinstance(decoded, dict) else {}
        return value


class _RoomEvent(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    room_name: str | None = Field(None, alias="roomName")
    room: RoomInfo | None = None

    @property
    def resolved_room_name(self) -> str | None:
        if self.room_name:
            return self.room_name
        return self.room.name if self.room else None

    @property
    def room_metadata(self) -> dict[str, Any]:
        return self.room.metadata if self.room else {}


class FunctionCallEvent(_RoomEvent):
    """The agent invoked one of its verification functions."""

    type: Literal["function_call"]
    function_name: str = Field(..., alias="functionName")
    parameters: dict[str, Any] = Field(default_factory=dict)
    call_id: str | None = Field(None, alias="callId")

    @field_validator("parameters", mode="before")
    @classmethod
    def _default_parameters(cls, value: Any) -> Any:
        return {} if value is None else value

    @property
    def resolved_call_id(self) -> str | None:
        """callId from the event, else from the room metadata."""
        if self.call_id:
            return self.call_id
        value = self.room_metadata.get("callId")
        return str(value) if value else None


class RoomFinishedEvent(_RoomEvent):
    """The transport room was closed."""

    type: Literal["room_finished"]


class ParticipantLeftEvent(_RoomEvent):
    """A participant left the transport room."""

    type: Literal["participant_left"]
    participant_identity: str | None = Field(None, alias="participantIdentity")


WebhookEvent = Annotated[
    FunctionCallEvent | RoomFinishedEvent | ParticipantLeftEvent,
    Field(discriminator="type"),
]

WEBHOOK_EVENT_TYPES: frozenset[str] = frozenset(
    {"function_call", "room_finished", "participant_left"}
)


# =============================================================================
# Call Start (Input from API)
# =============================================================================


class StartCallRequest(BaseModel):
    """Request to place a verification call to one contact."""

    target: ContactTarget
    phone_number: str  # Required, E.164 format (e.g., "+14155551234")
    contact_data: dict[str, Any] = Field(default_factory=dict)
    agent_instructions: str | None = None  # Opaque, passed to the agent as-is
