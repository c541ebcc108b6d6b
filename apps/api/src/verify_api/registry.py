"""In-memory registry of verification call sessions.

Sessions are never persisted. A session lives here from call start until
the eviction grace window after it reaches a terminal status.

Mutating methods are synchronous so that no await can interleave inside a
single state change. Handlers that read, await a backend, and then mutate
again hold ``serialized(call_id)`` for the whole sequence; events for
different calls never wait on each other.
"""

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from verify_shared.schemas import (
    CallSession,
    CallStatus,
    ContactTarget,
    StepName,
    StepRecord,
    utcnow,
)

from verify_api.errors import SessionNotFoundError

logger = logging.getLogger("verify-api.registry")

SleepFn = Callable[[float], Awaitable[Any]]
ClockFn = Callable[[], datetime]


@dataclass
class EvictionHandle:
    """A pending removal of one session."""

    call_id: str
    due_at: datetime
    task: asyncio.Task

    @property
    def done(self) -> bool:
        return self.task.done()

    def cancel(self) -> bool:
        return self.task.cancel()


class CallSessionRegistry:
    """Owns every live CallSession, keyed by call id.

    Args:
        sleep: Awaitable delay used by eviction timers. Tests swap in a
            controllable one.
        clock: Source of timestamps for start/end/step times.
    """

    def __init__(self, sleep: SleepFn = asyncio.sleep, clock: ClockFn = utcnow):
        self._sessions: dict[str, CallSession] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}
        self._evictions: dict[str, EvictionHandle] = {}
        self._sleep = sleep
        self._clock = clock

    # -------------------------------------------------------------------------
    # Lookup
    # -------------------------------------------------------------------------

    def get(self, call_id: str) -> CallSession:
        """Return the session or raise SessionNotFoundError."""
        session = self._sessions.get(call_id)
        if session is None:
            raise SessionNotFoundError(call_id)
        return session

    def find_by_room(self, room_name: str) -> CallSession | None:
        for session in self._sessions.values():
            if session.room_name == room_name:
                return session
        return None

    def list_sessions(self) -> list[CallSession]:
        """Snapshot of every session not yet evicted, oldest first."""
        return sorted(self._sessions.values(), key=lambda s: s.start_time)

    def __contains__(self, call_id: object) -> bool:
        return call_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    # -------------------------------------------------------------------------
    # Mutation
    # -------------------------------------------------------------------------

    def create(
        self,
        call_id: str,
        room_name: str,
        target: ContactTarget,
        initial_data: Mapping[str, Any] | None = None,
        phone_number: str | None = None,
    ) -> CallSession:
        """Register a new session in status initiating.

        Creating an id that already exists returns the existing session
        unchanged.
        """
        existing = self._sessions.get(call_id)
        if existing is not None:
            logger.warning(f"Session {call_id} already registered, keeping existing")
            return existing

        session = CallSession(
            call_id=call_id,
            room_name=room_name,
            target=target,
            start_time=self._clock(),
            phone_number=phone_number,
            contact_data=dict(initial_data or {}),
        )
        self._sessions[call_id] = session
        logger.info(f"Registered session {call_id} in room {room_name} ({target.describe()})")
        return session

    def apply_step(
        self, call_id: str, step: str | StepName, parameters: Mapping[str, Any]
    ) -> CallSession:
        """Record a step's parameters and advance the session status.

        A terminal session is left untouched: later steps are not recorded
        and its status never changes again.
        """
        session = self.get(call_id)
        step = StepName(step)

        if session.is_terminal:
            logger.info(
                f"Ignoring {step.value} for {call_id}: session already {session.status.value}"
            )
            return session

        session.collected_data[step.value] = StepRecord(
            parameters=dict(parameters), timestamp=self._clock()
        )

        if step is StepName.COMPLETE_CALL:
            self._transition(session, CallStatus.COMPLETED)
        elif step is StepName.END_CALL:
            reason = parameters.get("outcome")
            self._transition(session, CallStatus.ENDED_EARLY, str(reason) if reason else None)
        else:
            self._transition(session, CallStatus.IN_PROGRESS)
        return session

    def mark_terminal(
        self, call_id: str, status: CallStatus, reason: str | None = None
    ) -> CallSession:
        """Force a session into a terminal status. No-op if already terminal."""
        if not status.is_terminal:
            raise ValueError(f"{status.value} is not a terminal status")
        session = self.get(call_id)
        self._transition(session, status, reason)
        return session

    def _transition(
        self, session: CallSession, status: CallStatus, reason: str | None = None
    ) -> None:
        if session.is_terminal or status.rank < session.status.rank:
            return
        session.status = status
        if status.is_terminal:
            session.end_time = self._clock()
            if status is CallStatus.ENDED_EARLY:
                session.end_reason = reason
            logger.info(
                f"Session {session.call_id} -> {status.value}"
                + (f" ({reason})" if reason and status is CallStatus.ENDED_EARLY else "")
            )

    def remove(self, call_id: str) -> CallSession | None:
        """Drop a session immediately. Returns it, or None if absent."""
        session = self._sessions.pop(call_id, None)
        if not self._lock_users.get(call_id):
            self._locks.pop(call_id, None)
        self._evictions.pop(call_id, None)
        if session is not None:
            logger.info(f"Evicted session {call_id}")
        return session

    # -------------------------------------------------------------------------
    # Concurrency
    # -------------------------------------------------------------------------

    @contextlib.asynccontextmanager
    async def serialized(self, call_id: str) -> AsyncIterator[None]:
        """Hold the per-call lock for the duration of the block.

        The lock is dropped once its last user leaves and no session with
        that id is registered, so ids that never had a session leave
        nothing behind.
        """
        lock = self._locks.setdefault(call_id, asyncio.Lock())
        self._lock_users[call_id] = self._lock_users.get(call_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[call_id] -= 1
            if not self._lock_users[call_id]:
                del self._lock_users[call_id]
                if call_id not in self._sessions:
                    self._locks.pop(call_id, None)

    # -------------------------------------------------------------------------
    # Eviction
    # -------------------------------------------------------------------------

    def schedule_eviction(self, call_id: str, ttl_seconds: float) -> EvictionHandle:
        """Remove the session after ttl_seconds.

        Scheduling again while an eviction is pending returns the pending
        handle; the original deadline stands.
        """
        pending = self._evictions.get(call_id)
        if pending is not None and not pending.done:
            return pending

        task = asyncio.create_task(
            self._evict_after(call_id, ttl_seconds), name=f"evict-{call_id}"
        )
        handle = EvictionHandle(
            call_id=call_id,
            due_at=self._clock() + timedelta(seconds=ttl_seconds),
            task=task,
        )
        self._evictions[call_id] = handle
        logger.debug(f"Eviction of {call_id} scheduled in {ttl_seconds}s")
        return handle

    def pending_eviction(self, call_id: str) -> EvictionHandle | None:
        handle = self._evictions.get(call_id)
        return handle if handle is not None and not handle.done else None

    async def _evict_after(self, call_id: str, ttl_seconds: float) -> None:
        await self._sleep(ttl_seconds)
        self.remove(call_id)

    async def shutdown(self) -> None:
        """Cancel pending eviction timers. Sessions are discarded with the process."""
        handles = list(self._evictions.values())
        for handle in handles:
            handle.cancel()
        for handle in handles:
            with contextlib.suppress(asyncio.CancelledError):
                await handle.task
        self._evictions.clear()
