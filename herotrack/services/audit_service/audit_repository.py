"""Audit repository for the append-only audit trail.

PostgreSQL uses an append-only table with no UPDATE/DELETE grants; the
in-memory backend is used in development and tests.
"""
import logging
from datetime import datetime
from typing import Any, List, Optional

from psycopg2.extras import Json

from herotrack.shared.database import ConnectionManager, RepositoryError
from herotrack.shared.utils.clock import ensure_utc

from .audit_logger import AuditAction, AuditEntity, AuditEntry

logger = logging.getLogger(__name__)

_COLUMNS = (
    "entry_id, timestamp, action, entity_type, entity_id, actor_id, "
    "actor_role, classroom_scope, details, previous_hash, entry_hash"
)


class AuditRepository:
    """Repository for immutable audit entries."""

    def __init__(self, connection_manager: Optional[ConnectionManager] = None):
        """Initialize audit repository.

        Args:
            connection_manager: PostgreSQL connection manager (in-memory if None)
        """
        self.connection_manager = connection_manager

        # In-memory fallback for development
        self._memory_store: List[AuditEntry] = []

        logger.info(
            "AUDIT_REPOSITORY_INITIALIZED",
            extra={"backend": "postgresql" if connection_manager else "memory"}
        )

    def append(self, entry: AuditEntry) -> bool:
        """Append audit entry to storage.

        This is append-only - entries cannot be modified or deleted.

        Raises:
            RepositoryError: If storage fails
        """
        if self.connection_manager:
            return self._append_postgres(entry)
        return self._append_memory(entry)

    def _append_postgres(self, entry: AuditEntry) -> bool:
        query = f"""
            INSERT INTO audit_entries ({_COLUMNS})
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        """
        params = (
            entry.entry_id,
            entry.timestamp,
            entry.action.value,
            entry.entity_type.value,
            entry.entity_id,
            entry.actor_id,
            entry.actor_role,
            entry.classroom_scope,
            Json(entry.details),
            entry.previous_hash,
            entry.entry_hash,
        )

        try:
            with self.connection_manager.get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(query, params)
                conn.commit()
        except Exception as e:
            logger.error(
                "POSTGRES_APPEND_FAILED",
                extra={"entry_id": entry.entry_id, "error": str(e)}
            )
            raise RepositoryError(f"Failed to append audit entry: {e}")

        logger.debug(
            "AUDIT_ENTRY_STORED_POSTGRES",
            extra={"entry_id": entry.entry_id, "action": entry.action.value}
        )
        return True

    def _append_memory(self, entry: AuditEntry) -> bool:
        self._memory_store.append(entry)
        logger.debug(
            "AUDIT_ENTRY_STORED_MEMORY",
            extra={"entry_id": entry.entry_id, "action": entry.action.value}
        )
        return True

    def entries(self) -> List[AuditEntry]:
        """Every entry in chain order (oldest first)."""
        if not self.connection_manager:
            return list(self._memory_store)
        return self._select(
            f"SELECT {_COLUMNS} FROM audit_entries ORDER BY sequence_number", []
        )

    def latest_hash(self) -> Optional[str]:
        """Hash of the newest entry, or None for an empty trail."""
        if not self.connection_manager:
            return self._memory_store[-1].entry_hash if self._memory_store else None
        rows = self._select_raw(
            "SELECT entry_hash FROM audit_entries ORDER BY sequence_number DESC LIMIT 1",
            [],
        )
        return rows[0][0] if rows else None

    def query(
        self,
        entity_type: Optional[AuditEntity] = None,
        entity_id: Optional[str] = None,
        action: Optional[AuditAction] = None,
        classroom_scope: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[AuditEntry]:
        """Query audit entries.

        Args:
            entity_type: Filter by entity type
            entity_id: Filter by entity ID
            action: Filter by action
            classroom_scope: Filter by classroom
            start_date: Filter by start date
            end_date: Filter by end date
            limit: Maximum entries to return

        Returns:
            List of matching AuditEntry objects, newest first
        """
        if not self.connection_manager:
            return self._query_memory(
                entity_type, entity_id, action, classroom_scope,
                start_date, end_date, limit
            )

        query = f"SELECT {_COLUMNS} FROM audit_entries WHERE 1=1"
        params: List[Any] = []

        if entity_type:
            query += " AND entity_type = %s"
            params.append(entity_type.value)
        if entity_id:
            query += " AND entity_id = %s"
            params.append(entity_id)
        if action:
            query += " AND action = %s"
            params.append(action.value)
        if classroom_scope:
            query += " AND classroom_scope = %s"
            params.append(classroom_scope)
        if start_date:
            query += " AND timestamp >= %s"
            params.append(start_date)
        if end_date:
            query += " AND timestamp <= %s"
            params.append(end_date)

        query += " ORDER BY sequence_number DESC LIMIT %s"
        params.append(limit)

        return self._select(query, params)

    def _query_memory(
        self,
        entity_type: Optional[AuditEntity],
        entity_id: Optional[str],
        action: Optional[AuditAction],
        classroom_scope: Optional[str],
        start_date: Optional[datetime],
        end_date: Optional[datetime],
        limit: int,
    ) -> List[AuditEntry]:
        results = self._memory_store

        if entity_type:
            results = [e for e in results if e.entity_type == entity_type]
        if entity_id:
            results = [e for e in results if e.entity_id == entity_id]
        if action:
            results = [e for e in results if e.action == action]
        if classroom_scope:
            results = [e for e in results if e.classroom_scope == classroom_scope]
        if start_date:
            results = [e for e in results if e.timestamp >= start_date]
        if end_date:
            results = [e for e in results if e.timestamp <= end_date]

        return list(reversed(results))[:limit]

    def _select_raw(self, query: str, params: List[Any]) -> List[tuple]:
        try:
            with self.connection_manager.get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(query, params)
                    return cur.fetchall()
        except Exception as e:
            logger.error("AUDIT_QUERY_FAILED", extra={"error": str(e)})
            raise RepositoryError(f"Audit query failed: {e}")

    def _select(self, query: str, params: List[Any]) -> List[AuditEntry]:
        return [self._row_to_entry(row) for row in self._select_raw(query, params)]

    def _row_to_entry(self, row: tuple) -> AuditEntry:
        return AuditEntry(
            entry_id=row[0],
            timestamp=ensure_utc(row[1]),
            action=AuditAction(row[2]),
            entity_type=AuditEntity(row[3]),
            entity_id=row[4],
            actor_id=row[5],
            actor_role=row[6],
            classroom_scope=row[7],
            details=row[8] or {},
            previous_hash=row[9],
            entry_hash=row[10],
        )
