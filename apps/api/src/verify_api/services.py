"""Wiring for the long-lived service objects shared by all routes."""

from dataclasses import dataclass

from fastapi import Request

from verify_shared.schemas import TargetKind

from verify_api.backends import BackendConnector, GoogleSheetsConnector, HubSpotConnector
from verify_api.config import AppSettings
from verify_api.finalizer import SessionFinalizer
from verify_api.registry import CallSessionRegistry
from verify_api.rooms import LiveKitRoomService, RoomService
from verify_api.security import WebhookAuthenticator
from verify_api.step_router import FunctionCallRouter


@dataclass
class CallServices:
    """Registry, connectors and handlers for one running app."""

    registry: CallSessionRegistry
    authenticator: WebhookAuthenticator
    connectors: dict[str, BackendConnector]
    rooms: RoomService | None
    finalizer: SessionFinalizer
    router: FunctionCallRouter

    @classmethod
    def build(
        cls,
        settings: AppSettings,
        registry: CallSessionRegistry | None = None,
        connectors: dict[str, BackendConnector] | None = None,
        rooms: RoomService | None = None,
    ) -> "CallServices":
        """Assemble services from settings; any piece can be passed in instead."""
        registry = registry if registry is not None else CallSessionRegistry()
        if connectors is None:
            connectors = {
                TargetKind.CRM.value: HubSpotConnector(settings.hubspot),
                TargetKind.SHEET.value: GoogleSheetsConnector(settings.sheets),
            }
        if rooms is None:
            rooms = LiveKitRoomService(settings.livekit)

        finalizer = SessionFinalizer(
            registry,
            connectors,
            rooms=rooms,
            grace_seconds=settings.eviction_grace_seconds,
        )
        return cls(
            registry=registry,
            authenticator=WebhookAuthenticator(settings.webhook_secret),
            connectors=connectors,
            rooms=rooms,
            finalizer=finalizer,
            router=FunctionCallRouter(registry, connectors, finalizer),
        )


def get_services(request: Request) -> CallServices:
    """FastAPI dependency returning the app's services."""
    return request.app.state.services
