"""Base repository pattern for database operations.

Repositories run against PostgreSQL when given a ConnectionManager and
fall back to a thread-safe in-memory store otherwise (development and
tests).
"""
import logging
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Dict, Generic, List, Optional, Sequence, TypeVar

import psycopg2

from .connection import ConnectionManager

logger = logging.getLogger(__name__)

T = TypeVar('T')


class RepositoryError(Exception):
    """Base exception for repository errors."""
    pass


class NotFoundError(RepositoryError):
    """Entity not found in database."""
    pass


class DuplicateError(RepositoryError):
    """Duplicate entity already exists."""
    pass


class BaseRepository(ABC, Generic[T]):
    """Abstract base repository with common operations.

    Subclasses implement entity-specific logic while inheriting:
    - Connection management and transactions
    - Error translation (psycopg2 errors become RepositoryError)
    - The lock guarding the in-memory backend
    """

    def __init__(
        self,
        table_name: str,
        connection_manager: Optional[ConnectionManager] = None,
    ):
        """Initialize repository.

        Args:
            table_name: Name of the database table
            connection_manager: Database connection manager (in-memory if None)
        """
        self.connection_manager = connection_manager
        self.table_name = table_name
        self._lock = threading.RLock()

        logger.info(
            "REPOSITORY_INITIALIZED",
            extra={
                "table_name": table_name,
                "backend": "postgres" if connection_manager else "memory",
            }
        )

    @property
    def uses_postgres(self) -> bool:
        return self.connection_manager is not None

    @abstractmethod
    def _row_to_entity(self, row: tuple) -> T:
        """Convert database row to entity.

        Args:
            row: Database row tuple

        Returns:
            Entity instance
        """
        pass

    @abstractmethod
    def _entity_to_params(self, entity: T) -> Dict[str, Any]:
        """Convert entity to database parameters.

        Args:
            entity: Entity instance

        Returns:
            Dictionary of column names to values
        """
        pass

    @contextmanager
    def transaction(self):
        """Run statements on one connection inside a single transaction.

        Commits when the block exits normally and rolls back otherwise.

        Yields:
            Database cursor

        Raises:
            RepositoryError: If the database reports an error
        """
        with self.connection_manager.get_connection() as conn:
            try:
                with conn.cursor() as cur:
                    yield cur
                conn.commit()
            except psycopg2.IntegrityError as e:
                conn.rollback()
                logger.error(
                    "REPOSITORY_INTEGRITY_ERROR",
                    extra={"table_name": self.table_name, "error": str(e)}
                )
                raise DuplicateError(str(e)) from e
            except psycopg2.Error as e:
                conn.rollback()
                logger.error(
                    "REPOSITORY_TRANSACTION_FAILED",
                    extra={"table_name": self.table_name, "error": str(e)}
                )
                raise RepositoryError(str(e)) from e
            except Exception:
                conn.rollback()
                raise

    def _fetchall(self, query: str, params: Sequence[Any] = ()) -> List[T]:
        with self.transaction() as cur:
            cur.execute(query, tuple(params))
            rows = cur.fetchall()
        return [self._row_to_entity(row) for row in rows]

    def _fetchone(self, query: str, params: Sequence[Any] = ()) -> Optional[T]:
        with self.transaction() as cur:
            cur.execute(query, tuple(params))
            row = cur.fetchone()
        if row is None:
            return None
        return self._row_to_entity(row)

    def _insert_statement(self, entity: T, conflict_target: Optional[str] = None) -> tuple:
        """Build an INSERT for the entity's columns.

        With ``conflict_target`` the insert becomes ``ON CONFLICT DO NOTHING``.
        """
        params = self._entity_to_params(entity)
        columns = list(params.keys())
        placeholders = ", ".join(["%s"] * len(columns))
        query = (
            f"INSERT INTO {self.table_name} ({', '.join(columns)}) "
            f"VALUES ({placeholders})"
        )
        if conflict_target:
            query += f" ON CONFLICT ({conflict_target}) DO NOTHING"
        return query, list(params.values())

    def count(self) -> int:
        """Count total entities.

        Returns:
            Total count
        """
        if not self.uses_postgres:
            with self._lock:
                return self._memory_count()

        with self.transaction() as cur:
            cur.execute(f"SELECT COUNT(*) FROM {self.table_name}")
            row = cur.fetchone()

        return row[0] if row else 0

    def _memory_count(self) -> int:
        raise NotImplementedError
