"""Shared utilities for EduGuard services."""
from .pii import hash_pii, hash_contact, configure_pii_salt
from .executor import BoundedExecutor, CancellationToken

__all__ = [
    "hash_pii",
    "hash_contact",
    "configure_pii_salt",
    "BoundedExecutor",
    "CancellationToken",
]
