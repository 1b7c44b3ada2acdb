"""HMAC-SHA256 signing for webhook bodies."""

import hashlib
import hmac
from typing import Optional

from maestro.app.models import WebhookPayload

SIGNATURE_HEADER = "X-Maestro-Signature"
EVENT_HEADER = "X-Maestro-Event"
DELIVERY_ID_HEADER = "X-Maestro-Delivery-ID"
USER_AGENT = "Maestro-Webhook/1.0"

SIGNATURE_PREFIX = "sha256="


def serialize_payload(payload: WebhookPayload) -> bytes:
    """Exact bytes that are signed and sent."""
    return payload.model_dump_json().encode("utf-8")


def sign_payload(body: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 digest of body."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def signature_header(body: bytes, secret: str) -> str:
    return f"{SIGNATURE_PREFIX}{sign_payload(body, secret)}"


def verify_signature(body: bytes, header: Optional[str], secret: str) -> bool:
    """
    Check a received signature header against the raw request body.

    Args:
        body: Raw request body as received
        header: Value of the X-Maestro-Signature header
        secret: Shared secret for the agent

    Returns:
        True only if the header is well formed and matches (constant-time)
    """
    if not header or not header.startswith(SIGNATURE_PREFIX):
        return False

    expected = sign_payload(body, secret)
    return hmac.compare_digest(expected, header[len(SIGNATURE_PREFIX):])
