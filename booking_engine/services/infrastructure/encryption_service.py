"""
Encryption for calendar provider credentials.
Fernet symmetric encryption keyed by the process-wide ENCRYPTION_KEY.
"""

from cryptography.fernet import Fernet, InvalidToken

from booking_engine.config import settings
from booking_engine.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class EncryptionError(Exception):
    """Raised when a token cannot be encrypted or decrypted."""


def _get_fernet() -> Fernet:
    """
    Build a Fernet cipher from ENCRYPTION_KEY.

    Raises:
        EncryptionError: If the key is missing or malformed
    """
    if not settings.ENCRYPTION_KEY:
        raise EncryptionError("ENCRYPTION_KEY not configured in environment")

    try:
        return Fernet(settings.ENCRYPTION_KEY.encode("utf-8"))
    except (ValueError, TypeError) as e:
        logger.error("Failed to initialize Fernet cipher", error=str(e))
        raise EncryptionError(f"Invalid encryption key: {e}") from e


def encrypt_token(token: str) -> bytes:
    """
    Encrypt a token for BYTEA storage.

    Raises:
        EncryptionError: If the token is empty or encryption fails
    """
    if not token or not isinstance(token, str):
        raise EncryptionError("Token must be a non-empty string")

    encrypted = _get_fernet().encrypt(token.encode("utf-8"))
    logger.debug("Token encrypted", token_length=len(token), encrypted_length=len(encrypted))
    return encrypted


def decrypt_token(encrypted_token: bytes) -> str:
    """
    Decrypt a stored token.

    Raises:
        EncryptionError: If the ciphertext is empty, tampered or from another key
    """
    if not encrypted_token or not isinstance(encrypted_token, bytes):
        raise EncryptionError("Encrypted token must be non-empty bytes")

    try:
        return _get_fernet().decrypt(encrypted_token).decode("utf-8")
    except InvalidToken as e:
        logger.error("Token decryption failed - invalid token")
        raise EncryptionError("Invalid or corrupted token") from e


def encrypt_oauth_tokens(
    access_token: str, refresh_token: str | None = None
) -> tuple[bytes, bytes | None]:
    """Encrypt an access token and an optional refresh token."""
    encrypted_access = encrypt_token(access_token)
    encrypted_refresh = encrypt_token(refresh_token) if refresh_token else None
    return encrypted_access, encrypted_refresh


def validate_encryption_config() -> bool:
    """Round-trip a sample value; used by the readiness check."""
    try:
        sample = "calendar-engine-check"
        return decrypt_token(encrypt_token(sample)) == sample
    except EncryptionError as e:
        logger.error("Encryption configuration validation failed", error=str(e))
        return False


def generate_new_key() -> str:
    """Generate a new Fernet key for ENCRYPTION_KEY."""
    return Fernet.generate_key().decode("utf-8")
