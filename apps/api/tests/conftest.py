"""Shared fixtures and fakes for API tests."""

import asyncio
from collections.abc import Mapping
from datetime import date, datetime, timezone
from typing import Any

import pytest

from verify_shared.schemas import CallLogEntry, ContactTarget, CrmTarget, SheetTarget

from verify_api.config import AppSettings, HubSpotConfig, LiveKitConfig, SheetsConfig
from verify_api.errors import BackendError, RoomServiceError
from verify_api.finalizer import SessionFinalizer
from verify_api.registry import CallSessionRegistry
from verify_api.rooms import DispatchResult
from verify_api.step_router import FunctionCallRouter

FIXED_NOW = datetime(2026, 3, 14, 15, 9, 26, tzinfo=timezone.utc)
TODAY = date(2026, 3, 14)
SECRET = "whsec_test"


class ControlledSleep:
    """Stand-in for asyncio.sleep that blocks until released."""

    def __init__(self):
        self.delays: list[float] = []
        self._gate = asyncio.Event()

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await self._gate.wait()

    def release(self) -> None:
        self._gate.set()


class RecordingConnector:
    """BackendConnector that records every call."""

    def __init__(
        self,
        name: str = "recording",
        fail: bool = False,
        delay: float = 0.0,
        error: Exception | None = None,
    ):
        self.name = name
        self.fail = fail
        self.error = error
        self.delay = delay
        self.updates: list[tuple[ContactTarget, dict[str, str]]] = []
        self.logs: list[tuple[ContactTarget, CallLogEntry]] = []

    async def apply_update(
        self, target: ContactTarget, fields: Mapping[str, str]
    ) -> dict[str, str]:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise BackendError(self.name, "backend unavailable")
        if self.error is not None:
            raise self.error
        self.updates.append((target, dict(fields)))
        return dict(fields)

    async def log_call(self, target: ContactTarget, entry: CallLogEntry) -> bool:
        self.logs.append((target, entry))
        return True


class FakeRooms:
    """RoomService that never talks to LiveKit."""

    def __init__(
        self,
        dispatch_ok: bool = True,
        delete_fails: bool = False,
        unreachable: bool = False,
    ):
        self.dispatch_ok = dispatch_ok
        self.delete_fails = delete_fails
        self.unreachable = unreachable
        self.started: list[tuple[str, dict[str, Any], dict[str, Any]]] = []
        self.deleted: list[str] = []

    async def start_call_room(
        self, room_name: str, room_metadata: dict[str, Any], agent_metadata: dict[str, Any]
    ) -> DispatchResult:
        self.started.append((room_name, room_metadata, agent_metadata))
        if self.unreachable:
            raise ConnectionError("Cannot connect to host 127.0.0.1:9")
        if not self.dispatch_ok:
            return DispatchResult(success=False, room_name=room_name, error="LiveKit API error: down")
        return DispatchResult(success=True, room_name=room_name, dispatch_id="AD_test")

    async def delete_room(self, room_name: str) -> None:
        self.deleted.append(room_name)
        if self.unreachable:
            raise ConnectionError("Cannot connect to host 127.0.0.1:9")
        if self.delete_fails:
            raise RoomServiceError("LiveKit API error: not found", room_name=room_name)


def make_settings(secret: str = SECRET) -> AppSettings:
    """Settings with every external service unconfigured."""
    return AppSettings(
        livekit=LiveKitConfig(url="", api_key="", api_secret=""),
        hubspot=HubSpotConfig(access_token=""),
        sheets=SheetsConfig(spreadsheet_id=""),
        webhook_secret=secret,
    )


def make_function_call(call_id: str, function_name: str, **parameters: Any) -> dict[str, Any]:
    """Create a function_call webhook payload."""
    return {
        "type": "function_call",
        "functionName": function_name,
        "parameters": parameters,
        "callId": call_id,
        "roomName": f"verify-{call_id}",
    }


@pytest.fixture
def sleeper() -> ControlledSleep:
    return ControlledSleep()


@pytest.fixture
def registry(sleeper) -> CallSessionRegistry:
    return CallSessionRegistry(sleep=sleeper, clock=lambda: FIXED_NOW)


@pytest.fixture
def connectors() -> dict[str, RecordingConnector]:
    return {"crm": RecordingConnector("crm"), "sheet": RecordingConnector("sheet")}


@pytest.fixture
def rooms() -> FakeRooms:
    return FakeRooms()


@pytest.fixture
def finalizer(registry, connectors, rooms) -> SessionFinalizer:
    return SessionFinalizer(registry, connectors, rooms=rooms, clock=lambda: FIXED_NOW)


@pytest.fixture
def router(registry, connectors, finalizer) -> FunctionCallRouter:
    return FunctionCallRouter(registry, connectors, finalizer, clock=lambda: FIXED_NOW)


@pytest.fixture
def sheet_target() -> SheetTarget:
    return SheetTarget(row_number=5)


@pytest.fixture
def crm_target() -> CrmTarget:
    return CrmTarget(contact_id="501")
