"""PII handling for guardian contact details.

Guardian phone numbers and email addresses never appear raw in logs.
They are logged as salted SHA-256 hashes so delivery problems for one
guardian can still be correlated across log lines.
"""
import hashlib
import logging
import re
from typing import Optional

logger = logging.getLogger(__name__)


# Loaded from the secrets store at startup
_PII_SALT: Optional[str] = None

_MIN_SALT_LENGTH = 32


def configure_pii_salt(salt: str) -> None:
    """Configure the PII hashing salt.

    Must be called during application startup before any PII hashing.

    Args:
        salt: Secret salt value

    Raises:
        ValueError: If salt is empty or too short
    """
    global _PII_SALT
    if not salt or len(salt) < _MIN_SALT_LENGTH:
        logger.critical(
            "PII_SALT_CONFIGURATION_FAILED",
            extra={"reason": "Salt too short or empty", "min_length": _MIN_SALT_LENGTH}
        )
        raise ValueError(f"PII salt must be at least {_MIN_SALT_LENGTH} characters")

    _PII_SALT = salt
    logger.info("PII_SALT_CONFIGURED", extra={"salt_length": len(salt)})


def hash_pii(value: str) -> str:
    """Hash a PII value for safe logging.

    Args:
        value: The PII value to hash (phone number, email, ...)

    Returns:
        64-char hex digest

    Raises:
        RuntimeError: If PII salt has not been configured
    """
    if _PII_SALT is None:
        logger.critical(
            "PII_HASH_FAILED",
            extra={"reason": "Salt not configured", "action": "call configure_pii_salt()"}
        )
        raise RuntimeError("PII salt not configured. Call configure_pii_salt() first.")

    salted = f"{_PII_SALT}{value}"
    return hashlib.sha256(salted.encode()).hexdigest()


def hash_contact(address: str) -> str:
    """Hash a phone number or email address after normalising it.

    "+250 788-123-456" and "250788123456" hash the same; emails are
    compared case-insensitively.
    """
    address = address.strip()
    if "@" in address:
        normalized = address.lower()
    else:
        normalized = re.sub(r"\D", "", address)
    return hash_pii(normalized)
