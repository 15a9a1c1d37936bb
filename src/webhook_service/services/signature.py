"""HMAC-SHA256 payload signatures (``X-Webhook-Signature``)."""
from __future__ import annotations

import hmac
from hashlib import sha256

SIGNATURE_PREFIX = "sha256="


def sign(secret: str, body_bytes: bytes) -> str:
    digest = hmac.new(secret.encode("utf-8"), body_bytes, sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify(secret: str, body_bytes: bytes, header: str | None) -> bool:
    """Receiver-side check; constant-time and tolerant of a missing header."""
    if not header:
        return False
    return hmac.compare_digest(sign(secret, body_bytes), header.strip())
