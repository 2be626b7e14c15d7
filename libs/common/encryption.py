"""Symmetric encryption for provider secrets stored at rest.

Plaid access tokens and Lightning node credentials are encrypted with
Fernet before they reach the database. ``ENCRYPTION_KEY`` may be a Fernet
key or any operator-chosen secret, which is stretched into one.
"""

import base64
import hashlib
from functools import lru_cache

from cryptography.fernet import Fernet, InvalidToken

from libs.common.config import get_settings
from libs.common.logging import get_logger

logger = get_logger(__name__)

_DEV_FALLBACK_SECRET = "paidin-local-development-key"


class DecryptionError(Exception):
    """Raised when a stored secret cannot be decrypted with the current key."""


def _derive_key(secret: str) -> bytes:
    try:
        Fernet(secret.encode())
        return secret.encode()
    except (ValueError, TypeError):
        digest = hashlib.sha256(secret.encode()).digest()
        return base64.urlsafe_b64encode(digest)


@lru_cache
def get_fernet() -> Fernet:
    settings = get_settings()
    secret = settings.ENCRYPTION_KEY
    if not secret:
        if settings.ENVIRONMENT == "production":
            raise ValueError("ENCRYPTION_KEY must be set in production")
        logger.warning(
            "ENCRYPTION_KEY not set, using development fallback key. "
            "Secrets encrypted now will not decrypt once a real key is configured."
        )
        secret = _DEV_FALLBACK_SECRET
    return Fernet(_derive_key(secret))


def encrypt_secret(plaintext: str) -> str:
    """Encrypt a secret for storage."""
    return get_fernet().encrypt(plaintext.encode()).decode()


def decrypt_secret(ciphertext: str) -> str:
    """Decrypt a secret read from storage."""
    try:
        return get_fernet().decrypt(ciphertext.encode()).decode()
    except InvalidToken as exc:
        raise DecryptionError("Stored secret could not be decrypted") from exc
