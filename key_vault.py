"""Encryption at rest for user-supplied AI provider API keys.

Keys are Fernet tokens under a key derived from ENCRYPTION_SECRET with
scrypt. Stored values carry an ``enc:v1:`` prefix so legacy plaintext rows
can still be read.
"""

from __future__ import annotations

import base64
import logging
from functools import lru_cache

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

logger = logging.getLogger(__name__)

PREFIX = "enc:v1:"
_SALT = b"practice-exams-api-keys"


@lru_cache(maxsize=4)
def _fernet(secret: str) -> Fernet:
    kdf = Scrypt(salt=_SALT, length=32, n=2**14, r=8, p=1)
    key = kdf.derive(secret.encode())
    return Fernet(base64.urlsafe_b64encode(key))


def _secret() -> str:
    from flask import current_app
    return current_app.config.get("ENCRYPTION_SECRET", "")


def is_encrypted(value: str) -> bool:
    return value.startswith(PREFIX)


def encrypt_api_key(plain: str, secret: str | None = None) -> str:
    """Encrypt a key for storage. Empty input stays empty.

    Without a configured secret the key is stored as-is.
    """
    if not plain:
        return ""
    secret = _secret() if secret is None else secret
    if not secret:
        logger.warning("ENCRYPTION_SECRET not set; storing API key unencrypted")
        return plain
    token = _fernet(secret).encrypt(plain.encode()).decode()
    return PREFIX + token


def decrypt_api_key(stored: str, secret: str | None = None) -> str:
    """Reverse encrypt_api_key. Corrupt ciphertext decrypts to ''."""
    if not stored:
        return ""
    secret = _secret() if secret is None else secret
    if not secret or not is_encrypted(stored):
        return stored
    try:
        return _fernet(secret).decrypt(stored[len(PREFIX):].encode()).decode()
    except (InvalidToken, ValueError):
        logger.warning("Could not decrypt stored API key")
        return ""


def mask_api_key(plain: str) -> str:
    """Show only the last four characters, e.g. ``••••abcd``."""
    if not plain:
        return ""
    if len(plain) <= 4:
        return "•" * len(plain)
    return "••••" + plain[-4:]
