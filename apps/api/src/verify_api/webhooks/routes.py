"""Webhook ingress for agent and room events.

Every request is authenticated against the raw body before it is parsed.
Events for calls the registry does not know are acknowledged and dropped,
so the sender does not retry them forever.
"""

import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import TypeAdapter, ValidationError

from verify_shared.schemas import (
    WEBHOOK_EVENT_TYPES,
    FunctionCallEvent,
    WebhookEvent,
)

from verify_api.errors import MalformedEventError, SessionNotFoundError, WebhookAuthError
from verify_api.security import SIGNATURE_FALLBACK_HEADER, signature_header_name
from verify_api.services import CallServices, get_services

logger = logging.getLogger("verify-api.webhooks")

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])

_event_adapter = TypeAdapter(WebhookEvent)


def decode_event(body: bytes) -> WebhookEvent | None:
    """Parse a webhook body.

    Returns:
        The event, or None for an event type this service does not handle.

    Raises:
        MalformedEventError: Body is not a JSON object, or a known event
            type is missing required fields.
    """
    try:
        payload = json.loads(body)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise MalformedEventError(f"Webhook body is not valid JSON: {e!s}") from e

    if not isinstance(payload, dict):
        raise MalformedEventError("Webhook body must be a JSON object")

    if payload.get("type") not in WEBHOOK_EVENT_TYPES:
        return None

    try:
        return _event_adapter.validate_python(payload)
    except ValidationError as e:
        raise MalformedEventError(f"Invalid {payload['type']} event: {e!s}") from e


def read_signature(request: Request, provider: str) -> str | None:
    return request.headers.get(signature_header_name(provider)) or request.headers.get(
        SIGNATURE_FALLBACK_HEADER
    )


async def dispatch_event(services: CallServices, event: WebhookEvent) -> None:
    if isinstance(event, FunctionCallEvent):
        await services.router.handle(event)
    else:
        await services.finalizer.handle_room_closed(event)


@router.post("/{provider}")
async def receive_webhook(
    provider: str,
    request: Request,
    services: CallServices = Depends(get_services),
):
    """Handle a signed webhook from the agent runtime or LiveKit.

    Processes:
    - function_call
    - room_finished
    - participant_left
    """
    body = await request.body()

    try:
        services.authenticator.require(body, read_signature(request, provider))
    except WebhookAuthError as e:
        logger.warning(f"Rejected {provider} webhook: {e.message}")
        raise HTTPException(status_code=e.status_code, detail=e.message) from e

    try:
        event = decode_event(body)
        if event is None:
            logger.info(f"Unhandled {provider} webhook type, acknowledging")
            return {"received": True}

        await dispatch_event(services, event)

    except SessionNotFoundError as e:
        logger.warning(f"Dropping {provider} event: {e.message}")

    except MalformedEventError as e:
        logger.error(f"Malformed {provider} webhook: {e.message}")
        raise HTTPException(
            status_code=e.status_code,
            detail="Internal server error",
        ) from e

    except Exception as e:
        logger.exception(f"Webhook processing error: {e!s}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Internal server error",
        ) from e

    return {"received": True}
