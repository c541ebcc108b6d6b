"""Session finalization.

Runs once per session when it first reaches a terminal status: summarizes
what the agent collected, hands the summary to the backend's call log,
releases the LiveKit room and schedules the session's eviction.

Also owns the two ways a call can end without the agent reporting an
outcome: the room closing underneath it, and an operator ending it.
"""

import logging
from collections.abc import Callable, Mapping
from datetime import datetime

from verify_shared.schemas import (
    DISCONNECTED_REASON,
    EVICTION_GRACE_SECONDS,
    CallLogEntry,
    CallSession,
    CallStatus,
    ParticipantLeftEvent,
    RoomFinishedEvent,
    StepName,
    as_flag,
    utcnow,
)

from verify_api.backends.base import BackendConnector
from verify_api.errors import BackendError, RoomServiceError
from verify_api.registry import CallSessionRegistry, EvictionHandle
from verify_api.rooms import RoomService

logger = logging.getLogger("verify-api.finalizer")

MANUAL_END_REASON = "ended_by_operator"


def build_call_notes(session: CallSession, now: datetime | None = None) -> str:
    """Human-readable summary of a session, in conversation order."""
    lines = [
        f"Call ID: {session.call_id}",
        f"Status: {session.status.value}",
        f"Duration: {session.duration_seconds(now)} seconds",
        "",
        "Collected Information:",
    ]

    gatekeeper = session.step_parameters(StepName.RECORD_GATEKEEPER.value)
    if gatekeeper is not None:
        lines.append(f"- Gatekeeper: {gatekeeper.get('full_name') or 'Unknown'}")

    address = session.step_parameters(StepName.VERIFY_ADDRESS.value)
    if address is not None:
        if as_flag(address.get("confirmed")):
            lines.append("- Address: Confirmed")
        else:
            lines.append(f"- Address: Updated to: {address.get('corrected_address') or 'not provided'}")

    email = session.step_parameters(StepName.VERIFY_EMAIL.value)
    if email is not None:
        if as_flag(email.get("confirmed")):
            lines.append("- Email: Confirmed")
        else:
            lines.append(f"- Email: Updated to: {email.get('corrected_email') or 'not provided'}")

    dm = session.step_parameters(StepName.VERIFY_DM.value)
    if dm is not None:
        name = dm.get("corrected_name") or dm.get("dm_name") or session.contact_data.get("dm_name")
        employment = "still employed" if as_flag(dm.get("still_employed")) else "no longer with company"
        lines.append(f"- IT Decision Maker: {name or 'Unknown'} ({employment})")
        if dm.get("notes"):
            lines.append(f"  Note: {dm['notes']}")

    direct = session.step_parameters(StepName.COLLECT_DIRECT_NUMBER.value)
    if direct is not None:
        if as_flag(direct.get("provided")) and direct.get("phone_number"):
            lines.append(f"- Direct Number: {direct['phone_number']}")
        else:
            lines.append(f"- Direct Number: Not provided ({direct.get('notes') or 'no reason given'})")

    if session.end_reason:
        lines.extend(["", f"End Reason: {session.end_reason}"])

    return "\n".join(lines)


class SessionFinalizer:
    """Terminal-status processing for call sessions.

    Callers that reach finalize() must already hold the session's
    ``registry.serialized`` block; the public event handlers here take
    it themselves.
    """

    def __init__(
        self,
        registry: CallSessionRegistry,
        connectors: Mapping[str, BackendConnector],
        rooms: RoomService | None = None,
        grace_seconds: float = EVICTION_GRACE_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.registry = registry
        self.connectors = connectors
        self.rooms = rooms
        self.grace_seconds = grace_seconds
        self._clock = clock

    async def finalize(self, session: CallSession) -> EvictionHandle:
        """Log the call, release the room and schedule eviction.

        Backend and room failures are logged and do not stop the remaining
        steps.
        """
        now = self._clock()
        try:
            entry = CallLogEntry(
                call_id=session.call_id,
                duration_seconds=session.duration_seconds(now),
                outcome="success"
                if session.status is CallStatus.COMPLETED
                else (session.end_reason or "unknown"),
                notes=build_call_notes(session, now),
                timestamp=now,
            )
            await self._log_call(session, entry)
            await self._release_room(session.room_name)
        finally:
            # Evict even if building the log or releasing the room raised
            handle = self.registry.schedule_eviction(session.call_id, self.grace_seconds)

        logger.info(
            f"Finalized call {session.call_id} ({session.status.value}, "
            f"{entry.duration_seconds}s); evicting in {self.grace_seconds}s"
        )
        return handle

    async def _log_call(self, session: CallSession, entry: CallLogEntry) -> None:
        connector = self.connectors.get(session.target.kind)
        if connector is None:
            logger.warning(f"No backend for {session.target.kind}, call {session.call_id} not logged")
            return
        try:
            await connector.log_call(session.target, entry)
        except BackendError as e:
            logger.error(f"Call log failed for {session.call_id}: {e.message}")
        except Exception as e:
            logger.exception(f"Call log error for {session.call_id}: {e!s}")

    async def _release_room(self, room_name: str) -> None:
        if self.rooms is None:
            return
        try:
            await self.rooms.delete_room(room_name)
        except RoomServiceError as e:
            logger.warning(f"Could not delete room {room_name}: {e.message}")
        except Exception as e:
            logger.exception(f"Room release error for {room_name}: {e!s}")

    async def handle_room_closed(self, event: RoomFinishedEvent | ParticipantLeftEvent) -> bool:
        """End the session for a room that went away mid-call.

        Returns:
            True if a live session was ended by this event.
        """
        room_name = event.resolved_room_name
        if not room_name:
            logger.warning(f"{event.type} event without a room name, ignoring")
            return False

        session = self.registry.find_by_room(room_name)
        if session is None:
            logger.info(f"{event.type} for unknown room {room_name}, ignoring")
            return False

        async with self.registry.serialized(session.call_id):
            if session.call_id not in self.registry or session.is_terminal:
                return False
            await self._end_early(
                session,
                reason=DISCONNECTED_REASON,
                call_outcome="disconnected",
                notes="Call disconnected unexpectedly",
            )
        return True

    async def end_call(self, call_id: str, reason: str = MANUAL_END_REASON) -> CallSession:
        """End a call on operator request.

        Raises:
            SessionNotFoundError: No session with this id.
        """
        async with self.registry.serialized(call_id):
            session = self.registry.get(call_id)
            if session.is_terminal:
                return session
            await self._end_early(
                session, reason=reason, call_outcome=reason, notes=f"Call ended: {reason}"
            )
            return session

    async def _end_early(
        self, session: CallSession, reason: str, call_outcome: str, notes: str
    ) -> None:
        logger.warning(f"Call {session.call_id} ending early: {reason}")
        self.registry.mark_terminal(session.call_id, CallStatus.ENDED_EARLY, reason)

        connector = self.connectors.get(session.target.kind)
        if connector is not None:
            fields = {
                "verification_status": "failed",
                "call_outcome": call_outcome,
                "call_notes": notes,
                "last_call_date": self._clock().date().isoformat(),
            }
            try:
                await connector.apply_update(session.target, fields)
            except BackendError as e:
                logger.error(f"Failed to record early end of {session.call_id}: {e.message}")
            except Exception as e:
                logger.exception(f"Early-end update error for {session.call_id}: {e!s}")

        await self.finalize(session)
