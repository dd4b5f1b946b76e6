"""HMAC signing of webhook bodies."""

from __future__ import annotations

import hashlib
import hmac

SIGNATURE_HEADER = "X-Webhook-Signature"
EVENT_HEADER = "X-Webhook-Event"


def sign_body(secret: str, body: bytes) -> str:
    """Hex HMAC-SHA256 of the exact body bytes."""
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def verify_signature(secret: str, body: bytes, signature: str) -> bool:
    """Check a received ``X-Webhook-Signature`` value.

    Accepts a bare hex digest or one prefixed with ``sha256=``.
    """
    if not secret or not signature:
        return False
    if "=" in signature:
        algo, _, signature = signature.partition("=")
        if algo.lower() != "sha256":
            return False
    return hmac.compare_digest(signature.lower(), sign_body(secret, body))
