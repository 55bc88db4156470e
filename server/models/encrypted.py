"""Column type for n8n API keys, encrypted at rest with FIELD_ENCRYPTION_KEY."""

from __future__ import annotations

import logging
import os

from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy import String
from sqlalchemy.types import TypeDecorator

logger = logging.getLogger(__name__)

_fernet_cache: dict[str, Fernet] = {}


def _fernet() -> Fernet | None:
    key = os.environ.get("FIELD_ENCRYPTION_KEY", "")
    if not key:
        return None
    if key not in _fernet_cache:
        _fernet_cache[key] = Fernet(key.encode())
    return _fernet_cache[key]


def mask_secret(value: str | None, visible: int = 4) -> str:
    """Last few characters of a secret, for log lines."""
    if not value:
        return ""
    if len(value) <= visible:
        return "*" * len(value)
    return f"...{value[-visible:]}"


class EncryptedString(TypeDecorator):
    impl = String
    cache_ok = True

    def process_bind_param(self, value, dialect):
        f = _fernet()
        if value and f:
            return f.encrypt(value.encode()).decode()
        return value

    def process_result_value(self, value, dialect):
        f = _fernet()
        if not value or f is None:
            return value
        try:
            return f.decrypt(value.encode()).decode()
        except InvalidToken:
            # Stored before a key was configured, or under a rotated key
            logger.warning("Could not decrypt stored secret %s; using it as-is", mask_secret(value))
            return value
