"""Durable on-device event queue.

Events live in a SQLite file (WAL mode) until the server acknowledges the
batch that carried them. Event lifecycle on the device:

    queued -> batched -> in_flight -> (deleted on acknowledgment)
                 ^           |
                 +-----------+  upload failed, batch kept for retry
    queued <---- batched        retries exhausted, batch released

Capture never waits on upload: the UI only inserts rows, and a single
writer lock keeps each statement short.
"""
import json
import logging
import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from herotrack.services.audit_service.audit_logger import AuditAction, AuditEntity
from herotrack.shared.errors import CaptureError
from herotrack.shared.models import Batch, Event, canonical_json
from herotrack.shared.utils.clock import ensure_utc, utc_now

logger = logging.getLogger(__name__)

# Bytes reserved for the batch envelope ({"batch_id": ..., "events": [...]})
BATCH_ENVELOPE_BYTES = 64

# Events evicted at once when the disk fills up
EVICTION_CHUNK = 50

SQLITE_FULL = 13


class EventState(Enum):
    QUEUED = "queued"
    BATCHED = "batched"
    IN_FLIGHT = "in_flight"


class BatchState(Enum):
    ASSEMBLED = "assembled"
    IN_FLIGHT = "in_flight"
    RETRYING = "retrying"
    ACKNOWLEDGED = "acknowledged"
    REJECTED = "rejected"
    RELEASED = "released"
    PURGED = "purged"


OPEN_BATCH_STATES = (
    BatchState.ASSEMBLED.value,
    BatchState.IN_FLIGHT.value,
    BatchState.RETRYING.value,
)

CLOSED_BATCH_STATES = (
    BatchState.ACKNOWLEDGED.value,
    BatchState.REJECTED.value,
    BatchState.RELEASED.value,
    BatchState.PURGED.value,
)


@dataclass(frozen=True)
class PendingSubject:
    """A queued event still waiting for its subject hash."""
    event_id: str
    classroom_scope: str
    subject_local_id: str
    captured_at: datetime


def _to_epoch(value: datetime) -> float:
    return ensure_utc(value).timestamp()


def _from_epoch(value: Optional[float]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value, timezone.utc)


def _is_disk_full(error: sqlite3.Error) -> bool:
    code = getattr(error, "sqlite_errorcode", None)
    return code == SQLITE_FULL or "is full" in str(error)


class LocalEventStore:
    """SQLite-backed queue of captured events and batch bookkeeping."""

    def __init__(
        self,
        path: str = ":memory:",
        max_events: int = 20000,
        busy_timeout: float = 5.0,
        clock: Callable[[], datetime] = utc_now,
        audit_logger=None,
    ):
        """Open (or create) the local store.

        Args:
            path: SQLite file path; ``:memory:`` for a throwaway store
            max_events: Capacity before oldest queued events are evicted
            busy_timeout: Seconds a statement may wait on the file lock
            clock: Source of the current time
            audit_logger: Optional AuditLogger that records administrative purges
        """
        self.path = path
        self.audit_logger = audit_logger
        self.max_events = max_events
        self._clock = clock
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(path, timeout=busy_timeout, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._init_db()

        logger.info(
            "LOCAL_EVENT_STORE_OPENED",
            extra={"path": path, "depth": self.depth()}
        )

    def _init_db(self) -> None:
        with self._lock:
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA synchronous=NORMAL")
            with self._conn:
                self._conn.execute("""
                    CREATE TABLE IF NOT EXISTS queued_events (
                        seq               INTEGER PRIMARY KEY AUTOINCREMENT,
                        event_id          TEXT NOT NULL UNIQUE,
                        payload           TEXT NOT NULL,
                        subject_local_id  TEXT,
                        classroom_scope   TEXT NOT NULL,
                        captured_ts       REAL NOT NULL,
                        size_bytes        INTEGER NOT NULL,
                        state             TEXT NOT NULL,
                        batch_id          TEXT,
                        enqueued_ts       REAL NOT NULL
                    )
                """)
                self._conn.execute("""
                    CREATE TABLE IF NOT EXISTS local_batches (
                        batch_id         TEXT PRIMARY KEY,
                        state            TEXT NOT NULL,
                        attempts         INTEGER NOT NULL DEFAULT 0,
                        event_count      INTEGER NOT NULL,
                        created_ts       REAL NOT NULL,
                        updated_ts       REAL NOT NULL,
                        next_attempt_ts  REAL,
                        last_error       TEXT
                    )
                """)
                self._conn.execute(
                    "CREATE INDEX IF NOT EXISTS idx_queued_state ON queued_events(state, captured_ts)"
                )
                self._conn.execute(
                    "CREATE INDEX IF NOT EXISTS idx_queued_batch ON queued_events(batch_id)"
                )
                self._conn.execute(
                    "CREATE INDEX IF NOT EXISTS idx_batches_state ON local_batches(state)"
                )

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _now_ts(self) -> float:
        return _to_epoch(self._clock())

    # Capture

    def enqueue(self, event: Event, subject_local_id: Optional[str] = None) -> bool:
        """Append an event to the queue.

        ``subject_local_id`` is kept only while the event still needs a
        subject hash; it is cleared by ``attach_subject_hash``.

        Returns:
            False if the event id was already queued

        Raises:
            CaptureError: If the store cannot accept the event even after
                evicting the oldest queued events
        """
        if subject_local_id is not None and event.subject_hash is not None:
            subject_local_id = None

        row = (
            event.event_id,
            canonical_json(event.to_wire()),
            subject_local_id,
            event.classroom_scope,
            _to_epoch(event.captured_at),
            event.serialized_size(),
            EventState.QUEUED.value,
            self._now_ts(),
        )

        try:
            return self._insert_event(row)
        except sqlite3.OperationalError as e:
            if not _is_disk_full(e):
                logger.error("LOCAL_ENQUEUE_FAILED", extra={"error": str(e)})
                raise CaptureError(f"Local store write failed: {e}") from e
            logger.warning("LOCAL_STORE_DISK_FULL", extra={"depth": self.depth()})

        if self.evict_oldest(EVICTION_CHUNK, reason="disk_full") == 0:
            raise CaptureError("Local store is full and nothing can be evicted")
        try:
            return self._insert_event(row)
        except sqlite3.Error as e:
            logger.error("LOCAL_STORE_UNRECOVERABLE", extra={"error": str(e)})
            raise CaptureError(f"Local store unrecoverable: {e}") from e

    def _insert_event(self, row: tuple) -> bool:
        with self._lock:
            overflow = self.depth() - self.max_events + 1
            if overflow > 0:
                self.evict_oldest(overflow, reason="capacity")
            try:
                with self._conn:
                    self._conn.execute(
                        """
                        INSERT INTO queued_events (
                            event_id, payload, subject_local_id, classroom_scope,
                            captured_ts, size_bytes, state, enqueued_ts
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        row,
                    )
            except sqlite3.IntegrityError:
                logger.debug("EVENT_ALREADY_QUEUED", extra={"event_id": row[0]})
                return False
        return True

    def evict_oldest(self, count: int, reason: str) -> int:
        """Delete the oldest queued (not yet batched) events.

        Returns:
            Number of events evicted
        """
        if count <= 0:
            return 0
        with self._lock, self._conn:
            cur = self._conn.execute(
                """
                DELETE FROM queued_events WHERE seq IN (
                    SELECT seq FROM queued_events WHERE state = ?
                    ORDER BY captured_ts, seq LIMIT ?
                )
                """,
                (EventState.QUEUED.value, count),
            )
            evicted = cur.rowcount

        if evicted:
            logger.warning(
                "LOCAL_EVENTS_EVICTED",
                extra={"evicted": evicted, "reason": reason}
            )
        return evicted

    # Anonymization

    def pending_subject_events(self, limit: int = 500) -> List[PendingSubject]:
        """Queued events that still carry a device-local subject id."""
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT event_id, classroom_scope, subject_local_id, captured_ts
                FROM queued_events
                WHERE subject_local_id IS NOT NULL
                ORDER BY captured_ts, seq LIMIT ?
                """,
                (limit,),
            ).fetchall()
        return [
            PendingSubject(
                event_id=row["event_id"],
                classroom_scope=row["classroom_scope"],
                subject_local_id=row["subject_local_id"],
                captured_at=_from_epoch(row["captured_ts"]),
            )
            for row in rows
        ]

    def attach_subject_hash(self, event_id: str, subject_hash: str) -> bool:
        """Store the subject hash and forget the local subject id."""
        with self._lock, self._conn:
            row = self._conn.execute(
                "SELECT payload FROM queued_events WHERE event_id = ?", (event_id,)
            ).fetchone()
            if row is None:
                return False
            wire = json.loads(row["payload"])
            wire["subject_hash"] = subject_hash
            payload = canonical_json(wire)
            self._conn.execute(
                """
                UPDATE queued_events
                SET payload = ?, size_bytes = ?, subject_local_id = NULL
                WHERE event_id = ?
                """,
                (payload, len(payload.encode("utf-8")), event_id),
            )
        return True

    # Batching

    def next_batch(self, max_events: int, max_bytes: int) -> List[Event]:
        """Oldest eligible events, bounded by count and serialized size.

        Events are not removed. An event larger than ``max_bytes`` on its
        own is returned alone so it cannot block the queue.
        """
        if max_events <= 0 or max_bytes <= 0:
            return []

        with self._lock:
            rows = self._conn.execute(
                """
                SELECT payload, size_bytes FROM queued_events
                WHERE state = ? AND subject_local_id IS NULL
                ORDER BY captured_ts, seq LIMIT ?
                """,
                (EventState.QUEUED.value, max_events),
            ).fetchall()

        events: List[Event] = []
        total = BATCH_ENVELOPE_BYTES
        for row in rows:
            size = row["size_bytes"] + 1
            if events and total + size > max_bytes:
                break
            events.append(Event.from_record(json.loads(row["payload"])))
            total += size
            if total > max_bytes:
                break
        return events

    def mark_batched(self, batch_id: str, event_ids: List[str]) -> int:
        """Reserve queued events for a new batch.

        Raises:
            CaptureError: If any event is no longer queued (nothing changes)
        """
        now = self._now_ts()
        with self._lock:
            try:
                with self._conn:
                    self._conn.execute(
                        """
                        INSERT INTO local_batches (
                            batch_id, state, attempts, event_count, created_ts, updated_ts
                        ) VALUES (?, ?, 0, ?, ?, ?)
                        """,
                        (batch_id, BatchState.ASSEMBLED.value, len(event_ids), now, now),
                    )
                    placeholders = ", ".join("?" * len(event_ids))
                    cur = self._conn.execute(
                        f"""
                        UPDATE queued_events SET state = ?, batch_id = ?
                        WHERE state = ? AND event_id IN ({placeholders})
                        """,
                        [EventState.BATCHED.value, batch_id, EventState.QUEUED.value, *event_ids],
                    )
                    if cur.rowcount != len(event_ids):
                        raise CaptureError(
                            f"Batch {batch_id}: {len(event_ids) - cur.rowcount} events no longer queued"
                        )
            except sqlite3.IntegrityError as e:
                raise CaptureError(f"Batch {batch_id} already exists") from e

        logger.info(
            "BATCH_ASSEMBLED",
            extra={"batch_id": batch_id, "event_count": len(event_ids)}
        )
        return len(event_ids)

    def mark_in_flight(self, batch_id: str) -> int:
        """Record an upload attempt.

        Returns:
            Attempt number (1 for the first upload)
        """
        with self._lock, self._conn:
            self._conn.execute(
                """
                UPDATE local_batches
                SET state = ?, attempts = attempts + 1, updated_ts = ?, next_attempt_ts = NULL
                WHERE batch_id = ?
                """,
                (BatchState.IN_FLIGHT.value, self._now_ts(), batch_id),
            )
            self._conn.execute(
                "UPDATE queued_events SET state = ? WHERE batch_id = ?",
                (EventState.IN_FLIGHT.value, batch_id),
            )
            row = self._conn.execute(
                "SELECT attempts FROM local_batches WHERE batch_id = ?", (batch_id,)
            ).fetchone()
        if row is None:
            raise CaptureError(f"Unknown batch {batch_id}")
        return row["attempts"]

    def mark_retrying(self, batch_id: str, next_attempt_at: datetime, error: str) -> None:
        """Keep the batch (same id, same events) for a later retry."""
        with self._lock, self._conn:
            self._conn.execute(
                """
                UPDATE local_batches
                SET state = ?, next_attempt_ts = ?, last_error = ?, updated_ts = ?
                WHERE batch_id = ?
                """,
                (
                    BatchState.RETRYING.value,
                    _to_epoch(next_attempt_at),
                    error,
                    self._now_ts(),
                    batch_id,
                ),
            )
            self._conn.execute(
                "UPDATE queued_events SET state = ? WHERE batch_id = ?",
                (EventState.BATCHED.value, batch_id),
            )

    def acknowledge(self, batch_id: str) -> int:
        """Delete a batch's events after the server accepted it.

        Returns:
            Number of events removed (0 if already acknowledged)
        """
        with self._lock, self._conn:
            cur = self._conn.execute("DELETE FROM queued_events WHERE batch_id = ?", (batch_id,))
            removed = cur.rowcount
            self._conn.execute(
                """
                UPDATE local_batches SET state = ?, updated_ts = ?, next_attempt_ts = NULL
                WHERE batch_id = ?
                """,
                (BatchState.ACKNOWLEDGED.value, self._now_ts(), batch_id),
            )

        logger.info(
            "BATCH_ACKNOWLEDGED_LOCAL",
            extra={"batch_id": batch_id, "events_removed": removed}
        )
        return removed

    def release(self, batch_id: str, reason: str) -> int:
        """Return a batch's events to the queue for reassembly."""
        with self._lock, self._conn:
            cur = self._conn.execute(
                "UPDATE queued_events SET state = ?, batch_id = NULL WHERE batch_id = ?",
                (EventState.QUEUED.value, batch_id),
            )
            released = cur.rowcount
            self._conn.execute(
                """
                UPDATE local_batches SET state = ?, last_error = ?, updated_ts = ?,
                    next_attempt_ts = NULL
                WHERE batch_id = ?
                """,
                (BatchState.RELEASED.value, reason, self._now_ts(), batch_id),
            )

        logger.warning(
            "BATCH_REQUEUED",
            extra={"batch_id": batch_id, "events": released, "reason": reason}
        )
        return released

    def discard(self, batch_id: str, reason: str) -> int:
        """Drop a batch the server rejected; its content must not be resent."""
        with self._lock, self._conn:
            cur = self._conn.execute("DELETE FROM queued_events WHERE batch_id = ?", (batch_id,))
            discarded = cur.rowcount
            self._conn.execute(
                """
                UPDATE local_batches SET state = ?, last_error = ?, updated_ts = ?,
                    next_attempt_ts = NULL
                WHERE batch_id = ?
                """,
                (BatchState.REJECTED.value, reason, self._now_ts(), batch_id),
            )

        logger.warning(
            "BATCH_DISCARDED",
            extra={"batch_id": batch_id, "events": discarded, "reason": reason}
        )
        return discarded

    def recover_in_flight(self) -> int:
        """Move batches left in flight by a previous process to retrying.

        Returns:
            Number of batches recovered
        """
        now = self._now_ts()
        with self._lock, self._conn:
            cur = self._conn.execute(
                """
                UPDATE local_batches
                SET state = ?, next_attempt_ts = ?, updated_ts = ?,
                    last_error = 'interrupted'
                WHERE state = ?
                """,
                (BatchState.RETRYING.value, now, now, BatchState.IN_FLIGHT.value),
            )
            recovered = cur.rowcount
            self._conn.execute(
                "UPDATE queued_events SET state = ? WHERE state = ?",
                (EventState.BATCHED.value, EventState.IN_FLIGHT.value),
            )

        if recovered:
            logger.info("IN_FLIGHT_BATCHES_RECOVERED", extra={"batches": recovered})
        return recovered

    def get_batch(self, batch_id: str) -> Optional[Batch]:
        with self._lock:
            batch_row = self._conn.execute(
                "SELECT batch_id, attempts, created_ts FROM local_batches WHERE batch_id = ?",
                (batch_id,),
            ).fetchone()
            if batch_row is None:
                return None
            rows = self._conn.execute(
                "SELECT payload FROM queued_events WHERE batch_id = ? ORDER BY captured_ts, seq",
                (batch_id,),
            ).fetchall()
        return Batch(
            batch_id=batch_row["batch_id"],
            events=[Event.from_record(json.loads(r["payload"])) for r in rows],
            created_at=_from_epoch(batch_row["created_ts"]),
            attempts=batch_row["attempts"],
        )

    def due_batches(self, now: Optional[datetime] = None) -> List[Batch]:
        """Assembled or retrying batches whose next attempt is due."""
        now_ts = _to_epoch(now or self._clock())
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT batch_id FROM local_batches
                WHERE state IN (?, ?)
                  AND (next_attempt_ts IS NULL OR next_attempt_ts <= ?)
                ORDER BY created_ts
                """,
                (BatchState.ASSEMBLED.value, BatchState.RETRYING.value, now_ts),
            ).fetchall()
        batches = [self.get_batch(r["batch_id"]) for r in rows]
        return [b for b in batches if b is not None]

    def next_retry_at(self) -> Optional[datetime]:
        with self._lock:
            row = self._conn.execute(
                "SELECT MIN(next_attempt_ts) AS ts FROM local_batches WHERE state = ?",
                (BatchState.RETRYING.value,),
            ).fetchone()
        return _from_epoch(row["ts"])

    # Maintenance

    def purge(self, reason: str, operator: str) -> int:
        """Administrative purge of every event still on the device.

        This is the only path besides acknowledgment and server rejection
        that removes events, and it is always logged.

        Returns:
            Number of events deleted
        """
        with self._lock, self._conn:
            cur = self._conn.execute("DELETE FROM queued_events")
            purged = cur.rowcount
            batches = self._conn.execute(
                f"""
                UPDATE local_batches SET state = ?, last_error = ?, updated_ts = ?
                WHERE state IN ({", ".join("?" * len(OPEN_BATCH_STATES))})
                """,
                [BatchState.PURGED.value, reason, self._now_ts(), *OPEN_BATCH_STATES],
            ).rowcount

        logger.warning(
            "LOCAL_QUEUE_PURGED",
            extra={
                "events": purged,
                "open_batches": batches,
                "reason": reason,
                "operator": operator,
            }
        )
        if self.audit_logger is not None:
            self.audit_logger.log(
                action=AuditAction.CLIENT_QUEUE_PURGED,
                entity_type=AuditEntity.CLIENT_QUEUE,
                entity_id=self.path,
                actor_id=operator,
                actor_role="facilitator",
                details={"events": purged, "open_batches": batches, "reason": reason},
            )
        return purged

    def cleanup_batches(self, older_than_days: int = 7) -> int:
        """Delete closed batch bookkeeping older than the given age."""
        cutoff = _to_epoch(self._clock() - timedelta(days=older_than_days))
        with self._lock, self._conn:
            cur = self._conn.execute(
                f"""
                DELETE FROM local_batches
                WHERE updated_ts < ?
                  AND state IN ({", ".join("?" * len(CLOSED_BATCH_STATES))})
                """,
                [cutoff, *CLOSED_BATCH_STATES],
            )
            removed = cur.rowcount

        if removed:
            logger.info("LOCAL_BATCH_HISTORY_CLEANED", extra={"removed": removed})
        return removed

    def depth(self) -> int:
        """Number of events on the device, in any state."""
        with self._lock:
            row = self._conn.execute("SELECT COUNT(*) AS n FROM queued_events").fetchone()
        return row["n"]

    def stats(self) -> Dict[str, Any]:
        """Queue and batch counters for health reporting."""
        with self._lock:
            event_rows = self._conn.execute(
                "SELECT state, COUNT(*) AS n FROM queued_events GROUP BY state"
            ).fetchall()
            awaiting = self._conn.execute(
                "SELECT COUNT(*) AS n FROM queued_events WHERE subject_local_id IS NOT NULL"
            ).fetchone()["n"]
            batch_rows = self._conn.execute(
                "SELECT state, COUNT(*) AS n FROM local_batches GROUP BY state"
            ).fetchall()
            attempts = self._conn.execute(
                """
                SELECT COALESCE(SUM(attempts), 0) AS total,
                       COALESCE(SUM(CASE WHEN attempts > 1 THEN attempts - 1 ELSE 0 END), 0)
                           AS retries
                FROM local_batches
                """
            ).fetchone()
            last_ack = self._conn.execute(
                "SELECT MAX(updated_ts) AS ts FROM local_batches WHERE state = ?",
                (BatchState.ACKNOWLEDGED.value,),
            ).fetchone()["ts"]
            oldest = self._conn.execute(
                "SELECT MIN(captured_ts) AS ts FROM queued_events"
            ).fetchone()["ts"]

        events = {state.value: 0 for state in EventState}
        events.update({r["state"]: r["n"] for r in event_rows})
        batches = {state.value: 0 for state in BatchState}
        batches.update({r["state"]: r["n"] for r in batch_rows})

        return {
            "depth": sum(events.values()),
            "events": events,
            "awaiting_anonymization": awaiting,
            "batches": batches,
            "total_attempts": attempts["total"],
            "retry_attempts": attempts["retries"],
            "last_acknowledged_at": _from_epoch(last_ack),
            "oldest_event_at": _from_epoch(oldest),
        }
