"""HMAC-SHA256 webhook signatures."""

import hashlib
import hmac
import logging

from verify_api.errors import WebhookAuthError

logger = logging.getLogger("verify-api.security")

# Used when the provider-specific header is absent
SIGNATURE_FALLBACK_HEADER = "X-Webhook-Signature"


def signature_header_name(provider: str) -> str:
    """Header a provider puts its signature in, e.g. X-Livekit-Signature."""
    return f"X-{provider.strip().capitalize()}-Signature"


def compute_signature(secret: str, body: bytes) -> str:
    """Lowercase hex HMAC-SHA256 of body keyed by secret."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


class WebhookAuthenticator:
    """Checks that a webhook body was signed with the shared secret.

    With no secret configured every request is accepted and a warning is
    logged each time, so an unauthenticated deployment is loud about it.
    """

    def __init__(self, secret: str | None):
        self._secret = secret or ""

    @property
    def enabled(self) -> bool:
        return bool(self._secret)

    def sign(self, body: bytes) -> str:
        if not self._secret:
            raise ValueError("Cannot sign without a webhook secret")
        return compute_signature(self._secret, body)

    def verify(self, body: bytes, signature: str | None) -> bool:
        """Return True if signature matches the body.

        Args:
            body: Raw request body, exactly as received.
            signature: Hex digest from the signature header, or None.

        Returns:
            True when the signature is valid or no secret is configured.
        """
        if not self._secret:
            logger.warning("WEBHOOK_SECRET not configured, accepting unsigned webhook")
            return True

        if not signature:
            return False

        expected = compute_signature(self._secret, body)
        # compare_digest on bytes so non-ASCII header values fail cleanly
        return hmac.compare_digest(
            signature.strip().lower().encode("utf-8"), expected.encode("utf-8")
        )

    def require(self, body: bytes, signature: str | None) -> None:
        """Raise WebhookAuthError unless verify() accepts the signature."""
        if not self.verify(body, signature):
            raise WebhookAuthError(
                "Missing signature" if not signature else "Invalid signature"
            )
