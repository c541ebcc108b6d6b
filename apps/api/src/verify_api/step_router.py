"""Routes agent function calls to the registry and the contact backend.

Every step is normalized into the same backend-agnostic update shape
(see NORMALIZED_FIELDS); the session's target picks the connector that
writes it.
"""

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

from verify_shared.schemas import (
    NO_LONGER_EMPLOYED,
    NOT_PROVIDED,
    UPDATED,
    VERIFIED,
    CallStatus,
    FunctionCallEvent,
    StepName,
    as_flag,
    utcnow,
)

from verify_api.backends.base import BackendConnector, connector_for
from verify_api.errors import BackendError, SessionNotFoundError
from verify_api.finalizer import SessionFinalizer
from verify_api.registry import CallSessionRegistry

logger = logging.getLogger("verify-api.router")

KNOWN_STEPS = frozenset(step.value for step in StepName)


def normalize_step(
    step: str | StepName, parameters: Mapping[str, Any], today: date
) -> dict[str, str]:
    """Translate one step's parameters into a normalized field update.

    Returns an empty dict when the step carries nothing to write.
    """
    step = StepName(step)
    updates: dict[str, str] = {}

    if step is StepName.RECORD_GATEKEEPER:
        if parameters.get("full_name"):
            updates["gatekeeper_name"] = str(parameters["full_name"])

    elif step is StepName.VERIFY_ADDRESS:
        if as_flag(parameters.get("confirmed")):
            updates["address_verified"] = VERIFIED
        elif parameters.get("corrected_address"):
            updates["physical_address"] = str(parameters["corrected_address"])
            updates["address_verified"] = UPDATED

    elif step is StepName.VERIFY_EMAIL:
        if as_flag(parameters.get("confirmed")):
            updates["email_verified"] = VERIFIED
        elif parameters.get("corrected_email"):
            updates["email_address"] = str(parameters["corrected_email"])
            updates["email_verified"] = UPDATED

    elif step is StepName.VERIFY_DM:
        still_employed = as_flag(parameters.get("still_employed"))
        if as_flag(parameters.get("confirmed")) and still_employed:
            updates["dm_verified"] = VERIFIED
        elif parameters.get("corrected_name"):
            updates["dm_name"] = str(parameters["corrected_name"])
            updates["dm_verified"] = UPDATED
        elif not still_employed:
            updates["dm_verified"] = NO_LONGER_EMPLOYED
        if updates.get("dm_verified") in (UPDATED, NO_LONGER_EMPLOYED) and parameters.get("notes"):
            updates["dm_notes"] = str(parameters["notes"])

    elif step is StepName.COLLECT_DIRECT_NUMBER:
        if as_flag(parameters.get("provided")) and parameters.get("phone_number"):
            updates["direct_number"] = str(parameters["phone_number"])
        else:
            updates["direct_number"] = NOT_PROVIDED
            if parameters.get("notes"):
                updates["direct_number_notes"] = str(parameters["notes"])

    else:
        outcome = str(parameters.get("outcome") or "")
        updates["verification_status"] = "verified" if outcome == "success" else "failed"
        updates["call_outcome"] = outcome
        updates["call_notes"] = str(parameters.get("notes") or "")
        updates["last_call_date"] = today.isoformat()

    return updates


@dataclass
class StepOutcome:
    """What handling one function_call did."""

    step: str
    call_id: str | None = None
    handled: bool = False
    status: CallStatus | None = None
    applied: dict[str, str] = field(default_factory=dict)
    backend_error: str | None = None
    finalized: bool = False


class FunctionCallRouter:
    """Applies function_call events to sessions, one call at a time."""

    def __init__(
        self,
        registry: CallSessionRegistry,
        connectors: Mapping[str, BackendConnector],
        finalizer: SessionFinalizer,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.registry = registry
        self.connectors = connectors
        self.finalizer = finalizer
        self._clock = clock

    async def handle(self, event: FunctionCallEvent) -> StepOutcome:
        """Record the step, write it to the backend, finalize on terminal steps.

        Raises:
            SessionNotFoundError: No call id on the event, no session for it,
                or no connector for the session's target.
        """
        step = event.function_name
        outcome = StepOutcome(step=step, call_id=event.resolved_call_id)

        if step not in KNOWN_STEPS:
            logger.warning(f"Unknown function '{step}' for call {outcome.call_id}, ignoring")
            return outcome

        call_id = outcome.call_id
        if not call_id:
            raise SessionNotFoundError(None, f"function_call '{step}' has no callId")

        logger.info(f"Processing {step} for call {call_id}")

        async with self.registry.serialized(call_id):
            session = self.registry.get(call_id)
            connector = connector_for(self.connectors, session.target, call_id)
            fields = normalize_step(step, event.parameters, self._clock().date())

            was_terminal = session.is_terminal
            session = self.registry.apply_step(call_id, step, event.parameters)
            outcome.handled = True
            outcome.status = session.status

            try:
                if fields:
                    try:
                        outcome.applied = await connector.apply_update(session.target, fields)
                    except BackendError as e:
                        # Session state already advanced; the write is not retried
                        logger.error(
                            f"{connector.name} update failed for {call_id} ({step}): {e.message}"
                        )
                        outcome.backend_error = e.message
            finally:
                # A terminal step finalizes even when the backend write raised
                if StepName(step).is_terminal and not was_terminal:
                    await self.finalizer.finalize(session)
                    outcome.finalized = True

        return outcome
