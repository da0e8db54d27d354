"""Lightweight helpers for encrypting message content at rest."""

from __future__ import annotations

import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from .config import settings

logger = logging.getLogger(__name__)

_FERNET_INSTANCE: Optional[Fernet] = None
_FERNET_KEY: Optional[str] = None


def _configured_key() -> str:
    return settings.message_encryption_key.get_secret_value().strip()


def _fernet() -> Optional[Fernet]:
    """Return a memoized Fernet instance when encryption key configured."""

    global _FERNET_INSTANCE, _FERNET_KEY

    key = _configured_key()
    if not key:
        return None

    if _FERNET_INSTANCE is not None and _FERNET_KEY == key:
        return _FERNET_INSTANCE

    try:
        _FERNET_INSTANCE = Fernet(key.encode("utf-8"))
        _FERNET_KEY = key
        return _FERNET_INSTANCE
    except Exception as exc:  # pragma: no cover - configuration error
        raise ValueError(
            "Invalid MESSAGE_ENCRYPTION_KEY; expected base64-encoded 32-byte key"
        ) from exc


def encrypt_str(plain: str) -> str:
    """Encrypt a string with Fernet when configured; return original otherwise."""

    cipher = _fernet()
    if cipher is None or plain == "":
        return plain
    token: bytes = cipher.encrypt(plain.encode("utf-8"))
    return token.decode("utf-8")


def decrypt_str(token: str) -> str:
    """
    Decrypt a Fernet token when configured; return original otherwise.

    Rows written before a key was configured are stored as plaintext and
    come back unchanged.
    """

    cipher = _fernet()
    if cipher is None or token == "":
        return token

    try:
        decrypted: bytes = cipher.decrypt(token.encode("utf-8"))
        return decrypted.decode("utf-8")
    except InvalidToken:
        logger.debug("[CRYPTO] Value is not a Fernet token; treating as legacy plaintext")
        return token


def encryption_available() -> bool:
    """Return True when message encryption is configured."""

    try:
        return _fernet() is not None
    except ValueError:
        return False
