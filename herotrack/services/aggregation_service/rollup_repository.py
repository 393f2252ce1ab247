"""Rollup storage.

Rows are keyed by (classroom_scope, lesson_key, granularity, bucket_start)
where ``lesson_key`` is ``'*'`` for the all-lessons bucket. Writes are
upserts so that recomputing a bucket replaces its row in place.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from psycopg2.extras import Json

from herotrack.shared.database import ArchivableRepository, ConnectionManager
from herotrack.shared.models import Granularity, RollupKey, RollupRecord
from herotrack.shared.utils.clock import ensure_utc

logger = logging.getLogger(__name__)

ALL_LESSONS = "*"

KEY_COLUMNS = ("classroom_scope", "lesson_key", "granularity", "bucket_start")

ROLLUP_COLUMNS = KEY_COLUMNS + (
    "event_count",
    "score_sum",
    "mean_score",
    "category_counts",
    "category_mean_scores",
    "distinct_subjects",
    "growth_moments",
    "computed_at",
)


def lesson_key(lesson_id: Optional[str]) -> str:
    return lesson_id if lesson_id is not None else ALL_LESSONS


class RollupRepository(ArchivableRepository[RollupRecord]):
    """Repository for classroom rollups."""

    def __init__(self, connection_manager: Optional[ConnectionManager] = None):
        super().__init__(
            table_name="classroom_rollups",
            archive_table="classroom_rollups_archive",
            timestamp_column="bucket_start",
            key_columns=KEY_COLUMNS,
            columns=ROLLUP_COLUMNS,
            connection_manager=connection_manager,
        )
        self._memory_store: Dict[RollupKey, RollupRecord] = {}

    def _row_to_entity(self, row: tuple) -> RollupRecord:
        key = RollupKey(
            classroom_scope=row[0],
            lesson_id=None if row[1] == ALL_LESSONS else row[1],
            granularity=Granularity(row[2]),
            bucket_start=ensure_utc(row[3]),
        )
        return RollupRecord(
            key=key,
            event_count=int(row[4]),
            score_sum=int(row[5]),
            mean_score=float(row[6]),
            category_counts=dict(row[7] or {}),
            category_mean_scores={k: float(v) for k, v in (row[8] or {}).items()},
            distinct_subjects=int(row[9]),
            growth_moments=int(row[10]),
            computed_at=ensure_utc(row[11]),
        )

    def _entity_to_params(self, entity: RollupRecord) -> Dict[str, Any]:
        return {
            "classroom_scope": entity.key.classroom_scope,
            "lesson_key": lesson_key(entity.key.lesson_id),
            "granularity": entity.key.granularity.value,
            "bucket_start": entity.key.bucket_start,
            "event_count": entity.event_count,
            "score_sum": entity.score_sum,
            "mean_score": entity.mean_score,
            "category_counts": Json(entity.category_counts),
            "category_mean_scores": Json(entity.category_mean_scores),
            "distinct_subjects": entity.distinct_subjects,
            "growth_moments": entity.growth_moments,
            "computed_at": entity.computed_at,
        }

    def _memory_rows(self) -> Dict[RollupKey, RollupRecord]:
        return self._memory_store

    def _entity_key(self, entity: RollupRecord) -> RollupKey:
        return entity.key

    def _entity_timestamp(self, entity: RollupRecord) -> datetime:
        return entity.key.bucket_start

    def _key_params(self, key: RollupKey) -> tuple:
        return (
            key.classroom_scope,
            lesson_key(key.lesson_id),
            key.granularity.value,
            key.bucket_start,
        )

    def upsert(self, record: RollupRecord) -> RollupRecord:
        """Insert or replace the rollup for its bucket."""
        if not self.uses_postgres:
            with self._lock:
                self._memory_store[record.key] = record
            return record

        query, values = self._insert_statement(record)
        updates = ", ".join(
            f"{column} = EXCLUDED.{column}"
            for column in ROLLUP_COLUMNS if column not in KEY_COLUMNS
        )
        query += f" ON CONFLICT ({', '.join(KEY_COLUMNS)}) DO UPDATE SET {updates}"
        with self.transaction() as cur:
            cur.execute(query, values)
        return record

    def delete(self, key: RollupKey) -> bool:
        """Remove the rollup of a bucket that no longer has events."""
        if not self.uses_postgres:
            with self._lock:
                return self._memory_store.pop(key, None) is not None

        with self.transaction() as cur:
            cur.execute(
                f"DELETE FROM {self.table_name} WHERE "
                + " AND ".join(f"{c} = %s" for c in KEY_COLUMNS),
                self._key_params(key),
            )
            return cur.rowcount > 0

    def get(self, key: RollupKey) -> Optional[RollupRecord]:
        if not self.uses_postgres:
            with self._lock:
                return self._memory_store.get(key)

        return self._fetchone(
            f"SELECT {', '.join(ROLLUP_COLUMNS)} FROM {self.table_name} WHERE "
            + " AND ".join(f"{c} = %s" for c in KEY_COLUMNS),
            self._key_params(key),
        )

    def find(
        self,
        classroom_scope: Optional[str],
        start: datetime,
        end: datetime,
        granularity: Optional[Granularity] = None,
        lesson_id: Optional[str] = None,
        all_lessons: bool = False,
    ) -> List[RollupRecord]:
        """Rollups whose bucket starts in ``[start, end)``.

        Args:
            classroom_scope: Classroom (None for every classroom)
            start: Inclusive lower bound on bucket_start
            end: Exclusive upper bound on bucket_start
            granularity: Restrict to one granularity
            lesson_id: Restrict to one lesson's buckets
            all_lessons: Return every lesson bucket as well as the
                all-lessons bucket (ignored when ``lesson_id`` is given)

        Returns:
            Rollups ordered by bucket start
        """
        start, end = ensure_utc(start), ensure_utc(end)
        wanted_lesson = None if (all_lessons and lesson_id is None) else lesson_key(lesson_id)

        if not self.uses_postgres:
            with self._lock:
                matches = [
                    r for r in self._memory_store.values()
                    if (classroom_scope is None or r.key.classroom_scope == classroom_scope)
                    and start <= r.key.bucket_start < end
                    and (granularity is None or r.key.granularity == granularity)
                    and (wanted_lesson is None or lesson_key(r.key.lesson_id) == wanted_lesson)
                ]
            return sorted(matches, key=_sort_key)

        query = (
            f"SELECT {', '.join(ROLLUP_COLUMNS)} FROM {self.table_name} "
            "WHERE bucket_start >= %s AND bucket_start < %s"
        )
        params: List[Any] = [start, end]
        if classroom_scope is not None:
            query += " AND classroom_scope = %s"
            params.append(classroom_scope)
        if granularity is not None:
            query += " AND granularity = %s"
            params.append(granularity.value)
        if wanted_lesson is not None:
            query += " AND lesson_key = %s"
            params.append(wanted_lesson)
        query += " ORDER BY bucket_start, granularity, lesson_key"
        return self._fetchall(query, params)

    def find_computed_before(self, computed_before: datetime, bucket_since: datetime) -> List[RollupRecord]:
        """Rollups of recent buckets last computed before ``computed_before``."""
        computed_before, bucket_since = ensure_utc(computed_before), ensure_utc(bucket_since)

        if not self.uses_postgres:
            with self._lock:
                matches = [
                    r for r in self._memory_store.values()
                    if r.key.bucket_start >= bucket_since
                    and ensure_utc(r.computed_at) < computed_before
                ]
            return sorted(matches, key=_sort_key)

        return self._fetchall(
            f"SELECT {', '.join(ROLLUP_COLUMNS)} FROM {self.table_name} "
            "WHERE bucket_start >= %s AND computed_at < %s ORDER BY bucket_start",
            (bucket_since, computed_before),
        )


def _sort_key(record: RollupRecord):
    return (
        record.key.bucket_start,
        record.key.granularity.value,
        lesson_key(record.key.lesson_id),
        record.key.classroom_scope,
    )
