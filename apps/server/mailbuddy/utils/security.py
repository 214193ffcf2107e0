import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from mailbuddy.config import settings

logger = logging.getLogger(__name__)

# Ensure ENCRYPTION_KEY is set in your .env file
try:
    cipher_suite: Optional[Fernet] = Fernet(settings.ENCRYPTION_KEY)
except (ValueError, TypeError) as e:
    logger.warning(f"Encryption key invalid or missing. Field encryption will fail. Error: {e}")
    cipher_suite = None


def configure_cipher(key: str) -> None:
    """Swap the active Fernet key (used by tools and tests)."""
    global cipher_suite
    cipher_suite = Fernet(key)


def encrypt_text(value: Optional[str]) -> Optional[str]:
    """Encrypt a sensitive value for storage in the database"""
    if value is None:
        return None
    if not cipher_suite:
        raise ValueError("Encryption key not configured")
    return cipher_suite.encrypt(value.encode()).decode()


def decrypt_text(encrypted: Optional[str]) -> Optional[str]:
    """Decrypt a value retrieved from the database"""
    if not encrypted:
        return None
    if not cipher_suite:
        raise ValueError("Encryption key not configured")
    try:
        return cipher_suite.decrypt(encrypted.encode()).decode()
    except InvalidToken as e:
        raise ValueError("Stored value could not be decrypted with the configured key") from e
