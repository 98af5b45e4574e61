"""Base repository pattern for database operations.

Repositories run against PostgreSQL when given a ConnectionManager and
against an in-process store otherwise (development and tests). The
base class owns the PostgreSQL plumbing: connection checkout,
commit/rollback and translating driver errors into RepositoryError.
"""
import logging
from abc import ABC, abstractmethod
from typing import Any, Generic, List, Optional, Sequence, TypeVar

from .connection import ConnectionManager

logger = logging.getLogger(__name__)

T = TypeVar('T')


class RepositoryError(Exception):
    """Base exception for repository errors.

    Raised for storage faults; callers treat it as a system-level
    failure rather than a per-record outcome.
    """
    pass


class NotFoundError(RepositoryError):
    """Entity not found in database."""
    pass


class BaseRepository(ABC, Generic[T]):
    """Abstract base repository with common operations.

    Subclasses implement entity-specific logic while inheriting:
    - Connection management
    - Error handling
    - Logging patterns
    """

    id_column = "id"

    def __init__(
        self,
        connection_manager: Optional[ConnectionManager],
        table_name: str,
    ):
        """Initialize repository.

        Args:
            connection_manager: Database connection manager, or None for
                the in-memory backend
            table_name: Name of the database table
        """
        self.connection_manager = connection_manager
        self.table_name = table_name

        logger.info(
            "REPOSITORY_INITIALIZED",
            extra={
                "table_name": table_name,
                "backend": "postgresql" if connection_manager else "memory",
            }
        )

    @property
    def uses_database(self) -> bool:
        return self.connection_manager is not None

    @abstractmethod
    def _row_to_entity(self, row: tuple) -> T:
        """Convert database row to entity."""
        pass

    def _execute(
        self,
        query: str,
        params: Sequence[Any] = (),
        fetch: Optional[str] = None,
    ) -> Any:
        """Run one statement in its own transaction.

        Args:
            query: SQL with %s placeholders
            params: Query parameters
            fetch: "one", "all" or None

        Returns:
            The fetched row(s), or the affected row count when fetch is None

        Raises:
            RepositoryError: On any driver failure (transaction rolled back)
        """
        with self.connection_manager.get_connection() as conn:
            try:
                with conn.cursor() as cur:
                    cur.execute(query, tuple(params))
                    if fetch == "one":
                        result = cur.fetchone()
                    elif fetch == "all":
                        result = cur.fetchall()
                    else:
                        result = cur.rowcount
                conn.commit()
                return result
            except Exception as e:
                conn.rollback()
                logger.error(
                    "REPOSITORY_QUERY_FAILED",
                    extra={
                        "table_name": self.table_name,
                        "error": str(e),
                        "error_type": type(e).__name__,
                    }
                )
                raise RepositoryError(f"Query on {self.table_name} failed: {e}") from e

    def find_by_id(self, entity_id: str) -> Optional[T]:
        """Find entity by ID (PostgreSQL backend)."""
        row = self._execute(
            f"SELECT * FROM {self.table_name} WHERE {self.id_column} = %s",
            (entity_id,),
            fetch="one",
        )
        if row is None:
            return None
        return self._row_to_entity(row)

    def find_where(self, clause: str, params: Sequence[Any] = ()) -> List[T]:
        """Find entities matching a WHERE clause (PostgreSQL backend)."""
        rows = self._execute(
            f"SELECT * FROM {self.table_name} WHERE {clause}",
            params,
            fetch="all",
        )
        return [self._row_to_entity(row) for row in rows or []]
