"""Signing secret generation and encryption at rest."""
from __future__ import annotations

import hashlib
import secrets

import structlog
from cryptography.fernet import Fernet, InvalidToken

from webhook_service.core.exceptions import WebhookServiceError

logger = structlog.get_logger(__name__)

SECRET_PREFIX = "whsec_"
_SECRET_BYTES = 24


class SecretStore:
    """Issues ``whsec_`` secrets and keeps only their Fernet ciphertext.

    The plaintext is needed for HMAC signing, so secrets are encrypted rather
    than hashed. ``fingerprint`` is a short non-reversible id safe to expose.
    """

    def __init__(self, encryption_key: str | None):
        if encryption_key is None:
            logger.warning("Using an ephemeral webhook secret encryption key")
            encryption_key = Fernet.generate_key().decode("ascii")
        self._fernet = Fernet(encryption_key.encode("ascii"))

    @staticmethod
    def generate() -> str:
        return SECRET_PREFIX + secrets.token_hex(_SECRET_BYTES)

    @staticmethod
    def fingerprint(secret: str) -> str:
        return hashlib.sha256(secret.encode("utf-8")).hexdigest()[:16]

    def encrypt(self, secret: str) -> str:
        return self._fernet.encrypt(secret.encode("utf-8")).decode("ascii")

    def decrypt(self, ciphertext: str) -> str:
        try:
            return self._fernet.decrypt(ciphertext.encode("ascii")).decode("utf-8")
        except InvalidToken as exc:
            raise WebhookServiceError("Stored webhook secret cannot be decrypted") from exc
