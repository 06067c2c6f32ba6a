"""Fernet symmetric encryption for stored instance credentials.

Uses AES-128-CBC + HMAC-SHA256 via the cryptography library's Fernet.
Master key sourced from the FLOWDECK_ENCRYPTION_KEY environment variable.
"""

from cryptography.fernet import Fernet, InvalidToken

from flowdeck.logging_config import get_logger

logger = get_logger(__name__)

_fernet: Fernet | None = None

# Marks a stored value as Fernet ciphertext. Values written while no key was
# configured carry no prefix and read back unchanged.
_SECRET_MAGIC = "fdenc1:"


def init_encryption() -> None:
    """Initialize encryption from config. Call during API lifespan startup."""
    global _fernet  # noqa: PLW0603

    from flowdeck.config import settings

    key = settings.encryption_key
    if not key:
        logger.warning(
            "No encryption key configured (FLOWDECK_ENCRYPTION_KEY). "
            "Instance DB passwords will be stored unencrypted."
        )
        _fernet = None
        return

    try:
        _fernet = Fernet(key.encode())
        logger.info("Encryption initialized")
    except Exception as e:
        logger.error("Invalid encryption key", error=str(e))
        _fernet = None


def is_encryption_available() -> bool:
    """Check if encryption is configured and available."""
    return _fernet is not None


def encrypt_secret(plaintext: str) -> str:
    """Encrypt a secret for storage.

    If encryption is not configured, returns plaintext unchanged so that a
    development setup works without a key.
    """
    if _fernet is None:
        return plaintext
    return _SECRET_MAGIC + _fernet.encrypt(plaintext.encode()).decode()


def decrypt_secret(stored: str) -> str:
    """Decrypt a stored secret. Unprefixed values are returned as-is."""
    if not stored.startswith(_SECRET_MAGIC):
        return stored
    if _fernet is None:
        raise RuntimeError(
            "Secret is encrypted but no encryption key is configured. "
            "Set FLOWDECK_ENCRYPTION_KEY to decrypt it."
        )
    try:
        return _fernet.decrypt(stored[len(_SECRET_MAGIC) :].encode()).decode()
    except InvalidToken:
        raise ValueError("Failed to decrypt secret: key mismatch or corrupted data") from None
