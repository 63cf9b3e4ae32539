"""Token encryption and webhook signature helpers."""
from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from typing import Optional, Union

from cryptography.fernet import Fernet, InvalidToken

from .errors import ConfigurationError

logger = logging.getLogger(__name__)


class TokenCipher:
    """Symmetric encryption for tokens at rest.

    The key is handed in once at construction; nothing here reads the
    environment, so every caller shares the instance it was given.
    """

    def __init__(self, key: Union[str, bytes, None]):
        if not key:
            raise ConfigurationError("TOKEN_ENCRYPTION_KEY is not configured.")
        try:
            self._fernet = Fernet(key)
        except (ValueError, TypeError) as exc:
            raise ConfigurationError("TOKEN_ENCRYPTION_KEY is not a valid Fernet key.") from exc

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode()

    def encrypt(self, value: str) -> str:
        return self._fernet.encrypt(value.encode()).decode()

    def decrypt(self, value: str) -> str:
        try:
            return self._fernet.decrypt(value.encode()).decode()
        except InvalidToken as exc:
            logger.error("Stored token could not be decrypted with the configured key")
            raise ConfigurationError("Stored token could not be decrypted.") from exc

    def encrypt_optional(self, value: Optional[str]) -> Optional[str]:
        return self.encrypt(value) if value else None


def sign_payload(secret: str, payload: Union[str, bytes]) -> str:
    """Hex HMAC-SHA256 of the raw payload."""
    body = payload.encode() if isinstance(payload, str) else payload
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def verify_signature(secret: str, payload: Union[str, bytes], signature: Optional[str]) -> bool:
    if not secret or not signature:
        return False
    expected = sign_payload(secret, payload)
    return hmac.compare_digest(expected, signature.strip().lower())


def random_hex(nbytes: int = 32) -> str:
    return secrets.token_hex(nbytes)
