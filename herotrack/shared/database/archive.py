"""Copy-then-delete archiving for repositories with an archive table.

Rows are first copied into ``<table>_archive`` and only rows that are
present there are deleted from the live table. A run that stops between
the two steps leaves duplicates, never gaps, and the next run finishes
the move without copying anything twice.
"""
import logging
from abc import abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple, TypeVar

from herotrack.shared.utils.clock import ensure_utc, utc_now

from .connection import ConnectionManager
from .repository import BaseRepository

logger = logging.getLogger(__name__)

T = TypeVar('T')


class ArchivableRepository(BaseRepository[T]):
    """Base for repositories whose rows age into an archive table."""

    def __init__(
        self,
        table_name: str,
        archive_table: str,
        timestamp_column: str,
        key_columns: Sequence[str],
        columns: Sequence[str],
        connection_manager: Optional[ConnectionManager] = None,
    ):
        """Initialize repository.

        Args:
            table_name: Live table
            archive_table: Archive table with the same columns plus archived_at
            timestamp_column: Column that ages a row
            key_columns: Primary key columns (shared by both tables)
            columns: Data columns in ``_row_to_entity`` order
            connection_manager: Database connection manager (in-memory if None)
        """
        super().__init__(table_name, connection_manager)
        self.archive_table = archive_table
        self.timestamp_column = timestamp_column
        self.key_columns = tuple(key_columns)
        self.columns = tuple(columns)
        self._memory_archive: Dict[Any, Tuple[T, datetime]] = {}

    @abstractmethod
    def _memory_rows(self) -> Dict[Any, T]:
        """Live in-memory rows keyed like the primary key."""
        pass

    @abstractmethod
    def _entity_key(self, entity: T) -> Any:
        pass

    @abstractmethod
    def _entity_timestamp(self, entity: T) -> datetime:
        pass

    def archive_older_than(self, cutoff: datetime, archived_at: Optional[datetime] = None) -> int:
        """Move rows whose timestamp is before ``cutoff`` into the archive.

        Args:
            cutoff: Active-retention horizon
            archived_at: Archive timestamp recorded on copied rows

        Returns:
            Number of rows removed from the live table
        """
        cutoff = ensure_utc(cutoff)
        archived_at = archived_at or utc_now()

        if not self.uses_postgres:
            with self._lock:
                live = self._memory_rows()
                copied = 0
                for key, entity in live.items():
                    if ensure_utc(self._entity_timestamp(entity)) < cutoff and key not in self._memory_archive:
                        self._memory_archive[key] = (entity, archived_at)
                        copied += 1
                moved_keys = [
                    key for key, entity in live.items()
                    if ensure_utc(self._entity_timestamp(entity)) < cutoff
                    and key in self._memory_archive
                ]
                for key in moved_keys:
                    del live[key]
            moved = len(moved_keys)
        else:
            columns = ", ".join(self.columns)
            conflict = ", ".join(self.key_columns)
            match = " AND ".join(f"a.{c} = t.{c}" for c in self.key_columns)
            with self.transaction() as cur:
                cur.execute(
                    f"""
                    INSERT INTO {self.archive_table} ({columns}, archived_at)
                    SELECT {columns}, %s FROM {self.table_name}
                    WHERE {self.timestamp_column} < %s
                    ON CONFLICT ({conflict}) DO NOTHING
                    """,
                    (archived_at, cutoff),
                )
                copied = cur.rowcount
                cur.execute(
                    f"""
                    DELETE FROM {self.table_name} t
                    WHERE t.{self.timestamp_column} < %s
                      AND EXISTS (SELECT 1 FROM {self.archive_table} a WHERE {match})
                    """,
                    (cutoff,),
                )
                moved = cur.rowcount

        logger.info(
            "ROWS_ARCHIVED",
            extra={
                "table_name": self.table_name,
                "copied": copied,
                "moved": moved,
                "cutoff": cutoff.isoformat(),
            }
        )
        return moved

    def purge_archive_older_than(self, cutoff: datetime) -> int:
        """Permanently delete archived rows whose timestamp is before ``cutoff``.

        Returns:
            Number of archive rows deleted
        """
        cutoff = ensure_utc(cutoff)

        if not self.uses_postgres:
            with self._lock:
                expired = [
                    key for key, (entity, _) in self._memory_archive.items()
                    if ensure_utc(self._entity_timestamp(entity)) < cutoff
                ]
                for key in expired:
                    del self._memory_archive[key]
            purged = len(expired)
        else:
            with self.transaction() as cur:
                cur.execute(
                    f"DELETE FROM {self.archive_table} WHERE {self.timestamp_column} < %s",
                    (cutoff,),
                )
                purged = cur.rowcount

        logger.info(
            "ARCHIVE_ROWS_PURGED",
            extra={
                "table_name": self.archive_table,
                "purged": purged,
                "cutoff": cutoff.isoformat(),
            }
        )
        return purged

    def find_archived(self) -> List[T]:
        """Every archived entity, oldest first."""
        if not self.uses_postgres:
            with self._lock:
                entities = [entity for entity, _ in self._memory_archive.values()]
            return sorted(entities, key=self._entity_timestamp)

        return self._fetchall(
            f"SELECT {', '.join(self.columns)} FROM {self.archive_table} "
            f"ORDER BY {self.timestamp_column}"
        )

    def count_archive(self) -> int:
        if not self.uses_postgres:
            with self._lock:
                return len(self._memory_archive)

        with self.transaction() as cur:
            cur.execute(f"SELECT COUNT(*) FROM {self.archive_table}")
            row = cur.fetchone()
        return row[0] if row else 0

    def _memory_count(self) -> int:
        return len(self._memory_rows())
