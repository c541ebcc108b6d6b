"""FastAPI application for contact verification calls.

Flow:
1. POST /calls - Register a session, create its room, dispatch the agent
2. POST /webhooks/{provider} - Agent steps and room events drive the session
3. GET /calls/{id} - Check call status (until shortly after the call ends)
4. POST /calls/{id}/end - Operator ends a call early
"""

import logging
import re
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any
from uuid import uuid4

from fastapi import APIRouter, Depends, FastAPI, HTTPException, status
from pydantic import BaseModel

from verify_shared.schemas import (
    CallSession,
    CallStatus,
    ContactTarget,
    StartCallRequest,
    StepRecord,
    utcnow,
)

from verify_api.config import AppSettings, configure_logging
from verify_api.errors import SessionNotFoundError
from verify_api.finalizer import MANUAL_END_REASON
from verify_api.rooms import DispatchResult, room_name_for
from verify_api.services import CallServices, get_services
from verify_api.webhooks import router as webhooks_router

logger = logging.getLogger("verify-api")


# =============================================================================
# Phone Validation
# =============================================================================

E164_REGEX = re.compile(r"^\+[1-9]\d{6,14}$")


def validate_phone_e164(phone: str) -> bool:
    """Validate phone number is in E.164 format."""
    return bool(E164_REGEX.match(phone))


# =============================================================================
# Request/Response Models
# =============================================================================


class StartCallResponse(BaseModel):
    """Response after dispatching a verification call."""

    call_id: str
    room_name: str
    status: CallStatus
    dispatch_id: str | None = None


class CallSessionResponse(BaseModel):
    """Current state of one call session."""

    call_id: str
    room_name: str
    target: ContactTarget
    status: CallStatus
    collected_data: dict[str, StepRecord]
    start_time: datetime
    end_time: datetime | None
    end_reason: str | None
    duration_seconds: int

    @classmethod
    def from_session(cls, session: CallSession) -> "CallSessionResponse":
        return cls(
            call_id=session.call_id,
            room_name=session.room_name,
            target=session.target,
            status=session.status,
            collected_data=session.collected_data,
            start_time=session.start_time,
            end_time=session.end_time,
            end_reason=session.end_reason,
            duration_seconds=session.duration_seconds(),
        )


class EndCallRequest(BaseModel):
    """Optional reason for ending a call."""

    reason: str = MANUAL_END_REASON


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    timestamp: str
    active_calls: int
    eviction_grace_seconds: float


# =============================================================================
# Endpoints
# =============================================================================

router = APIRouter(tags=["Calls"])


@router.get("/health", response_model=HealthResponse)
async def health_check(services: CallServices = Depends(get_services)):
    """Health check endpoint."""
    return HealthResponse(
        status="healthy",
        timestamp=utcnow().isoformat(),
        active_calls=sum(1 for s in services.registry.list_sessions() if not s.is_terminal),
        eviction_grace_seconds=services.finalizer.grace_seconds,
    )


@router.post(
    "/calls", response_model=StartCallResponse, status_code=status.HTTP_201_CREATED
)
async def start_call(
    request: StartCallRequest, services: CallServices = Depends(get_services)
):
    """Start a verification call for one contact.

    The session is registered before the agent is dispatched so that no
    early webhook can arrive for an unknown call.
    """
    if not validate_phone_e164(request.phone_number):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Phone must be in E.164 format (e.g., +14155551234). Invalid: {request.phone_number}",
        )

    call_id = str(uuid4())
    room_name = room_name_for(call_id)
    target = request.target

    session = services.registry.create(
        call_id,
        room_name,
        target,
        initial_data=request.contact_data,
        phone_number=request.phone_number,
    )

    target_ref: dict[str, Any] = (
        {"contactId": target.contact_id}
        if target.kind == "crm"
        else {"rowNumber": target.row_number}
    )
    room_metadata = {
        "callId": call_id,
        "source": target.kind,
        **target_ref,
        "phoneNumber": request.phone_number,
        "startTime": session.start_time.isoformat(),
    }
    agent_metadata = {
        **room_metadata,
        "contactData": request.contact_data,
        "instructions": request.agent_instructions,
    }

    if services.rooms is None:
        result_error = "No room service configured"
        dispatch_id = None
    else:
        try:
            result = await services.rooms.start_call_room(room_name, room_metadata, agent_metadata)
        except Exception as e:
            logger.exception(f"Room service error for call {call_id}: {e!s}")
            result = DispatchResult(success=False, room_name=room_name, error=f"Dispatch error: {e!s}")
        result_error = None if result.success else result.error
        dispatch_id = result.dispatch_id

    if result_error:
        async with services.registry.serialized(call_id):
            services.registry.mark_terminal(call_id, CallStatus.ENDED_EARLY, "dispatch_failed")
            services.registry.schedule_eviction(
                call_id, services.finalizer.grace_seconds
            )
        logger.error(f"Call {call_id} not started: {result_error}")
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=result_error,
        )

    logger.info(f"Started call {call_id} for {target.describe()}")
    return StartCallResponse(
        call_id=call_id,
        room_name=room_name,
        status=session.status,
        dispatch_id=dispatch_id,
    )


@router.get("/calls", response_model=list[CallSessionResponse])
async def list_calls(services: CallServices = Depends(get_services)):
    """All sessions not yet evicted, oldest first."""
    return [CallSessionResponse.from_session(s) for s in services.registry.list_sessions()]


@router.get("/calls/{call_id}", response_model=CallSessionResponse)
async def get_call(call_id: str, services: CallServices = Depends(get_services)):
    """Get call status by ID.

    Returns 404 once the session has been evicted.
    """
    try:
        session = services.registry.get(call_id)
    except SessionNotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Call not found or expired",
        ) from e
    return CallSessionResponse.from_session(session)


@router.post("/calls/{call_id}/end", response_model=CallSessionResponse)
async def end_call(
    call_id: str,
    request: EndCallRequest | None = None,
    services: CallServices = Depends(get_services),
):
    """End a call early on operator request. Ending a finished call is a no-op."""
    reason = request.reason if request else MANUAL_END_REASON
    try:
        session = await services.finalizer.end_call(call_id, reason=reason)
    except SessionNotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Call not found or expired",
        ) from e
    return CallSessionResponse.from_session(session)


# =============================================================================
# App Factory
# =============================================================================


def create_app(services: CallServices | None = None) -> FastAPI:
    """Build the API.

    Args:
        services: Prebuilt services, used by tests. If not provided, they are
            built from the environment at startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Build services on startup; cancel eviction timers on shutdown."""
        if getattr(app.state, "services", None) is None:
            settings = AppSettings.from_env()
            configure_logging(settings.log_level)
            app.state.services = CallServices.build(settings)
        logger.info("Verification API started")
        yield
        await app.state.services.registry.shutdown()

    app = FastAPI(
        title="Contact Verification API",
        description="Orchestrates voice verification calls against HubSpot or Google Sheets",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.services = services

    app.include_router(router)
    app.include_router(webhooks_router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
