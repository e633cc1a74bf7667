"""Fernet symmetric encryption for stored token values.

Prebuild tokens are compared and used as HMAC keys at webhook time, so
they are encrypted rather than hashed. Master key sourced from the
PREWARM_ENCRYPTION_KEY environment variable.
"""

from cryptography.fernet import Fernet, InvalidToken

from prewarm.logging_config import get_logger

logger = get_logger(__name__)

_fernet: Fernet | None = None


def init_encryption() -> None:
    """Initialize encryption from config. Call during lifespan startup."""
    global _fernet  # noqa: PLW0603

    from prewarm.config import settings

    key = settings.encryption_key
    if not key:
        logger.warning(
            "No encryption key configured (PREWARM_ENCRYPTION_KEY). "
            "Webhook installation and verification will fail."
        )
        _fernet = None
        return

    try:
        _fernet = Fernet(key.encode())
    except ValueError as e:
        logger.error("Invalid encryption key", error=str(e))
        _fernet = None
        return
    logger.info("Encryption initialized")


def is_encryption_available() -> bool:
    return _fernet is not None


def encrypt_value(plaintext: str) -> str:
    """Encrypt a plaintext string. Returns base64-encoded Fernet ciphertext."""
    if _fernet is None:
        raise RuntimeError("Encryption not configured. Set PREWARM_ENCRYPTION_KEY.")
    return _fernet.encrypt(plaintext.encode()).decode()


def decrypt_value(ciphertext: str) -> str:
    """Decrypt a Fernet ciphertext string. Returns plaintext."""
    if _fernet is None:
        raise RuntimeError("Encryption not configured.")
    try:
        return _fernet.decrypt(ciphertext.encode()).decode()
    except InvalidToken:
        raise ValueError("Failed to decrypt value — key mismatch or corrupted data") from None
