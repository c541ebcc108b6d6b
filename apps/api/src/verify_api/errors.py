"""Exception hierarchy for the verification API.

Each error carries the HTTP status it maps to when it reaches a route.
Webhook ingress only lets WebhookAuthError and MalformedEventError
surface; everything else is logged and acknowledged.
"""


class VerificationError(Exception):
    """Base exception for the verification service."""

    status_code: int = 500

    def __init__(self, message: str, **context: object):
        super().__init__(message)
        self.message = message
        self.context = context


class WebhookAuthError(VerificationError):
    """Webhook signature missing or wrong."""

    status_code = 401


class MalformedEventError(VerificationError):
    """Webhook body could not be decoded into an event."""

    status_code = 500


class SessionNotFoundError(VerificationError):
    """No session for the given call id, or no routing target for it."""

    status_code = 404

    def __init__(self, call_id: str | None, message: str | None = None):
        super().__init__(message or f"Call session not found: {call_id}", call_id=call_id)
        self.call_id = call_id


class BackendError(VerificationError):
    """The CRM or spreadsheet rejected (or never received) an update."""

    status_code = 502

    def __init__(self, backend: str, message: str, **context: object):
        super().__init__(f"{backend}: {message}", backend=backend, **context)
        self.backend = backend


class RoomServiceError(VerificationError):
    """LiveKit refused a room or dispatch request."""

    status_code = 502
