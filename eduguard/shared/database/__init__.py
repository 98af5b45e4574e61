"""Database connection management for EduGuard services.

Provides connection pooling, health checks, and the repository base
class for PostgreSQL-backed state (risk flags, rule configurations).
"""

from .connection import (
    DatabaseConfig,
    ConnectionManager,
    get_connection_manager,
)
from .repository import (
    BaseRepository,
    RepositoryError,
    NotFoundError,
)
from .records import (
    RecordSource,
    InMemoryRecordSource,
    PostgresRecordSource,
)

__all__ = [
    "DatabaseConfig",
    "ConnectionManager",
    "get_connection_manager",
    "BaseRepository",
    "RepositoryError",
    "NotFoundError",
    "RecordSource",
    "InMemoryRecordSource",
    "PostgresRecordSource",
]
