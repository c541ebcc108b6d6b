"""Webhook authentication.

Inbound webhooks are signed with HMAC-SHA256 over the raw request body
using a shared secret.
"""

from verify_api.security.signature import (
    SIGNATURE_FALLBACK_HEADER,
    WebhookAuthenticator,
    compute_signature,
    signature_header_name,
)

__all__ = [
    "SIGNATURE_FALLBACK_HEADER",
    "WebhookAuthenticator",
    "compute_signature",
    "signature_header_name",
]
