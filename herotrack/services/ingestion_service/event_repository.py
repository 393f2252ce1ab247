"""Raw event storage and the batch dedup ledger.

A batch is persisted in one transaction: the ledger row is inserted with
``ON CONFLICT DO NOTHING`` first, and only the transaction that actually
inserted it goes on to write events. Two concurrent deliveries of the
same batch therefore cannot both persist it; the loser sees a duplicate.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from psycopg2.extras import Json

from herotrack.shared.database import ArchivableRepository, ConnectionManager
from herotrack.shared.models import Category, Event
from herotrack.shared.utils.clock import ensure_utc

logger = logging.getLogger(__name__)

EVENT_COLUMNS = (
    "event_id",
    "batch_id",
    "classroom_scope",
    "lesson_id",
    "category",
    "interaction_type",
    "score",
    "metadata",
    "captured_at",
    "subject_hash",
    "growth_indicator",
    "received_at",
)


@dataclass(frozen=True)
class PersistOutcome:
    """Result of persisting one batch."""
    batch_id: str
    duplicate: bool
    events_persisted: int


class EventRepository(ArchivableRepository[Event]):
    """Repository for persisted behavioral events."""

    LEDGER_TABLE = "ingested_batches"

    def __init__(self, connection_manager: Optional[ConnectionManager] = None):
        super().__init__(
            table_name="behavioral_events",
            archive_table="behavioral_events_archive",
            timestamp_column="captured_at",
            key_columns=("event_id",),
            columns=EVENT_COLUMNS,
            connection_manager=connection_manager,
        )
        self._memory_store: Dict[str, Event] = {}
        self._memory_ledger: Dict[str, Tuple[int, datetime]] = {}

    def _row_to_entity(self, row: tuple) -> Event:
        return Event(
            event_id=str(row[0]),
            classroom_scope=row[2],
            lesson_id=row[3],
            category=Category(row[4]),
            interaction_type=row[5],
            score=int(row[6]),
            metadata=row[7] or {},
            captured_at=ensure_utc(row[8]),
            subject_hash=row[9],
            growth_indicator=bool(row[10]),
            received_at=ensure_utc(row[11]) if row[11] else None,
        )

    def _entity_to_params(self, entity: Event) -> Dict[str, Any]:
        return {
            "event_id": entity.event_id,
            "classroom_scope": entity.classroom_scope,
            "lesson_id": entity.lesson_id,
            "category": entity.category.value,
            "interaction_type": entity.interaction_type,
            "score": entity.score,
            "metadata": Json(entity.metadata),
            "captured_at": entity.captured_at,
            "subject_hash": entity.subject_hash,
            "growth_indicator": entity.growth_indicator,
            "received_at": entity.received_at,
        }

    def _memory_rows(self) -> Dict[str, Event]:
        return self._memory_store

    def _entity_key(self, entity: Event) -> str:
        return entity.event_id

    def _entity_timestamp(self, entity: Event) -> datetime:
        return entity.captured_at

    def persist_batch(
        self,
        batch_id: str,
        events: List[Event],
        received_at: datetime,
    ) -> PersistOutcome:
        """Atomically record the batch id and persist its events.

        Events whose id is already stored (re-sent in another batch) are
        skipped.

        Args:
            batch_id: Client batch id
            events: Validated, anonymized events
            received_at: Server receive time

        Returns:
            PersistOutcome; ``duplicate`` is True if the batch id was
            already in the ledger and nothing was written

        Raises:
            RepositoryError: If the transaction fails (nothing is written)
        """
        if not self.uses_postgres:
            with self._lock:
                if batch_id in self._memory_ledger:
                    return PersistOutcome(batch_id, duplicate=True, events_persisted=0)
                inserted = 0
                for event in events:
                    if event.event_id in self._memory_store:
                        continue
                    self._memory_store[event.event_id] = event
                    inserted += 1
                self._memory_ledger[batch_id] = (len(events), received_at)
            return PersistOutcome(batch_id, duplicate=False, events_persisted=inserted)

        with self.transaction() as cur:
            cur.execute(
                f"""
                INSERT INTO {self.LEDGER_TABLE} (batch_id, event_count, received_at)
                VALUES (%s, %s, %s)
                ON CONFLICT (batch_id) DO NOTHING
                """,
                (batch_id, len(events), received_at),
            )
            if cur.rowcount == 0:
                return PersistOutcome(batch_id, duplicate=True, events_persisted=0)

            inserted = 0
            for event in events:
                params = self._entity_to_params(event)
                params["batch_id"] = batch_id
                values = [params[column] for column in EVENT_COLUMNS]
                cur.execute(
                    f"""
                    INSERT INTO {self.table_name} ({", ".join(EVENT_COLUMNS)})
                    VALUES ({", ".join(["%s"] * len(EVENT_COLUMNS))})
                    ON CONFLICT (event_id) DO NOTHING
                    """,
                    values,
                )
                inserted += cur.rowcount

        return PersistOutcome(batch_id, duplicate=False, events_persisted=inserted)

    def has_batch(self, batch_id: str) -> bool:
        if not self.uses_postgres:
            with self._lock:
                return batch_id in self._memory_ledger

        with self.transaction() as cur:
            cur.execute(
                f"SELECT 1 FROM {self.LEDGER_TABLE} WHERE batch_id = %s", (batch_id,)
            )
            return cur.fetchone() is not None

    def get(self, event_id: str) -> Optional[Event]:
        if not self.uses_postgres:
            with self._lock:
                return self._memory_store.get(event_id)

        return self._fetchone(
            f"SELECT {', '.join(EVENT_COLUMNS)} FROM {self.table_name} WHERE event_id = %s",
            (event_id,),
        )

    def find_events(
        self,
        classroom_scope: Optional[str],
        start: datetime,
        end: datetime,
        lesson_id: Optional[str] = None,
    ) -> List[Event]:
        """Live events captured in ``[start, end)``.

        Args:
            classroom_scope: Classroom (None for every classroom)
            start: Inclusive lower bound on captured_at
            end: Exclusive upper bound on captured_at
            lesson_id: Restrict to one lesson (None for every lesson)

        Returns:
            Events ordered by capture time, then id
        """
        start, end = ensure_utc(start), ensure_utc(end)

        if not self.uses_postgres:
            with self._lock:
                matches = [
                    e for e in self._memory_store.values()
                    if (classroom_scope is None or e.classroom_scope == classroom_scope)
                    and start <= e.captured_at < end
                    and (lesson_id is None or e.lesson_id == lesson_id)
                ]
            return sorted(matches, key=lambda e: (e.captured_at, e.event_id))

        query = (
            f"SELECT {', '.join(EVENT_COLUMNS)} FROM {self.table_name} "
            "WHERE captured_at >= %s AND captured_at < %s"
        )
        params: List[Any] = [start, end]
        if classroom_scope is not None:
            query += " AND classroom_scope = %s"
            params.append(classroom_scope)
        if lesson_id is not None:
            query += " AND lesson_id = %s"
            params.append(lesson_id)
        query += " ORDER BY captured_at, event_id"
        return self._fetchall(query, params)

    def prune_ledger(self, cutoff: datetime) -> int:
        """Delete dedup ledger entries received before ``cutoff``."""
        cutoff = ensure_utc(cutoff)

        if not self.uses_postgres:
            with self._lock:
                expired = [
                    batch_id for batch_id, (_, received_at) in self._memory_ledger.items()
                    if ensure_utc(received_at) < cutoff
                ]
                for batch_id in expired:
                    del self._memory_ledger[batch_id]
            return len(expired)

        with self.transaction() as cur:
            cur.execute(
                f"DELETE FROM {self.LEDGER_TABLE} WHERE received_at < %s", (cutoff,)
            )
            return cur.rowcount

    def ledger_size(self) -> int:
        if not self.uses_postgres:
            with self._lock:
                return len(self._memory_ledger)

        with self.transaction() as cur:
            cur.execute(f"SELECT COUNT(*) FROM {self.LEDGER_TABLE}")
            row = cur.fetchone()
        return row[0] if row else 0
