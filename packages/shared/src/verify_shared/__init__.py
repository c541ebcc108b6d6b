"""Shared schemas for contact verification calls."""

from verify_shared.schemas import (
    DISCONNECTED_REASON,
    EVICTION_GRACE_SECONDS,
    NO_LONGER_EMPLOYED,
    NORMALIZED_FIELDS,
    NOT_PROVIDED,
    UPDATED,
    VERIFIED,
    WEBHOOK_EVENT_TYPES,
    CallLogEntry,
    CallSession,
    CallStatus,
    ContactTarget,
    CrmTarget,
    FunctionCallEvent,
    ParticipantLeftEvent,
    RoomFinishedEvent,
    RoomInfo,
    SheetTarget,
    StartCallRequest,
    StepName,
    StepRecord,
    TargetKind,
    WebhookEvent,
    as_flag,
    utcnow,
)

__all__ = [
    "DISCONNECTED_REASON",
    "EVICTION_GRACE_SECONDS",
    "NO_LONGER_EMPLOYED",
    "NORMALIZED_FIELDS",
    "NOT_PROVIDED",
    "UPDATED",
    "VERIFIED",
    "WEBHOOK_EVENT_TYPES",
    "CallLogEntry",
    "CallSession",
    "CallStatus",
    "ContactTarget",
    "CrmTarget",
    "FunctionCallEvent",
    "ParticipantLeftEvent",
    "RoomFinishedEvent",
    "RoomInfo",
    "SheetTarget",
    "StartCallRequest",
    "StepName",
    "StepRecord",
    "TargetKind",
    "WebhookEvent",
    "as_flag",
    "utcnow",
]
