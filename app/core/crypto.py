"""WA Gateway – Encryption for stored provider API keys.

Symmetric Fernet encryption keyed from AUTH_SECRET. Encrypted values carry an
``ENC:`` prefix so plain legacy rows keep working.
"""

import base64
import hashlib

import structlog
from cryptography.fernet import Fernet, InvalidToken

from config.settings import get_settings

logger = structlog.get_logger()

ENCRYPTION_PREFIX = "ENC:"

_fernet: Fernet | None = None


def _get_fernet() -> Fernet:
    global _fernet
    if _fernet is None:
        secret = get_settings().auth_secret or "insecure-fallback-secret-for-dev-only"
        key = base64.urlsafe_b64encode(hashlib.sha256(secret.encode()).digest())
        _fernet = Fernet(key)
    return _fernet


def encrypt_value(plain_text: str) -> str:
    """Encrypt ``plain_text``; already-encrypted or empty values pass through."""
    if not plain_text or plain_text.startswith(ENCRYPTION_PREFIX):
        return plain_text
    token = _get_fernet().encrypt(plain_text.encode()).decode()
    return f"{ENCRYPTION_PREFIX}{token}"


def decrypt_value(stored: str) -> str:
    if not stored or not stored.startswith(ENCRYPTION_PREFIX):
        return stored
    try:
        return _get_fernet().decrypt(stored[len(ENCRYPTION_PREFIX):].encode()).decode()
    except InvalidToken:
        # Rotated AUTH_SECRET: the key is unusable, callers fall back to defaults.
        logger.error("crypto.decryption_failed")
        return ""


def mask_secret(value: str) -> str:
    """Render a key for listings: first four characters, the rest starred."""
    if not value:
        return ""
    return value[:4] + "*" * max(len(value) - 4, 4)
