"""PII handling utilities: no raw child, guardian or contact identifiers in logs.

Identifiers are hashed with a secret salt before they are logged, and
message text is only ever logged as a content fingerprint.
"""
import hashlib
import logging
from typing import Optional

logger = logging.getLogger(__name__)


# Loaded from the environment / secrets store at startup
_PII_SALT: Optional[str] = None


def configure_pii_salt(salt: str) -> None:
    """Configure the PII hashing salt.

    Must be called during application startup before any PII hashing.

    Args:
        salt: Secret salt value

    Raises:
        ValueError: If salt is empty or too short
    """
    global _PII_SALT
    if not salt or len(salt) < 32:
        logger.critical(
            "PII_SALT_CONFIGURATION_FAILED",
            extra={"reason": "Salt too short or empty", "min_length": 32}
        )
        raise ValueError("PII salt must be at least 32 characters")

    _PII_SALT = salt
    logger.info("PII_SALT_CONFIGURED", extra={"salt_length": len(salt)})


def hash_pii(value: Optional[str]) -> str:
    """Hash an identifier (child id, guardian id, contact name) for logging.

    Uses SHA-256 with a secret salt so the same identifier always
    produces the same, non-reversible token.

    Args:
        value: The identifier to hash; None hashes as an empty string

    Returns:
        64-char hex string safe for logging

    Raises:
        RuntimeError: If PII salt has not been configured
    """
    if _PII_SALT is None:
        logger.critical(
            "PII_HASH_FAILED",
            extra={"reason": "Salt not configured", "action": "call configure_pii_salt()"}
        )
        raise RuntimeError("PII salt not configured. Call configure_pii_salt() first.")

    salted = f"{_PII_SALT}{value or ''}"
    return hashlib.sha256(salted.encode()).hexdigest()


def hash_text_for_audit(text: str) -> str:
    """Fingerprint message text without exposing its content.

    Args:
        text: Raw message text

    Returns:
        SHA-256 hash of the text
    """
    return hashlib.sha256((text or "").encode()).hexdigest()
