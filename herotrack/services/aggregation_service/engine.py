"""Aggregation engine: keeps classroom rollups in step with raw events.

Newly persisted events mark their buckets dirty; dirty buckets are
recomputed from raw events by the work queue (or published to Kinesis
for another host to recompute). Every recompute reads the full bucket, so
running it again over the same events yields the same rollup.
"""
import logging
import os
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from herotrack.services.audit_service import AuditAction, AuditEntity, AuditLogger
from herotrack.services.ingestion_service.event_repository import EventRepository
from herotrack.shared.models import Category, Event, Granularity, RollupKey, RollupRecord
from herotrack.shared.utils.clock import ensure_utc, format_timestamp, utc_now

from .k_anonymity import KAnonymityEnforcer
from .kinesis_publisher import RollupWorkPublisher
from .rollup_repository import RollupRepository
from .rollups import (
    DEFAULT_GRANULARITIES,
    bucket_starts,
    compute_rollup,
    keys_for_event,
    lessons_of,
)
from .work_queue import BucketWorkQueue

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AggregationConfig:
    """Aggregation engine settings."""
    granularities: Tuple[Granularity, ...] = DEFAULT_GRANULARITIES
    max_workers: int = 4
    staleness_seconds: int = 900
    k_threshold: int = 5
    sweep_window_hours: int = 48
    max_rebuild_days: int = 90

    def __post_init__(self):
        if self.max_rebuild_days < 1:
            raise ValueError("max_rebuild_days must be positive")
        if not self.granularities:
            raise ValueError("At least one granularity is required")
        if self.max_workers < 1:
            raise ValueError("max_workers must be positive")
        if self.staleness_seconds < 0:
            raise ValueError("staleness_seconds cannot be negative")

    @property
    def staleness_threshold(self) -> timedelta:
        return timedelta(seconds=self.staleness_seconds)

    @classmethod
    def from_env(cls) -> "AggregationConfig":
        granularities = os.getenv("HEROTRACK_ROLLUP_GRANULARITIES")
        return cls(
            granularities=tuple(
                Granularity(g.strip()) for g in granularities.split(",") if g.strip()
            ) if granularities else DEFAULT_GRANULARITIES,
            max_workers=int(os.getenv("HEROTRACK_AGGREGATION_WORKERS", "4")),
            staleness_seconds=int(os.getenv("HEROTRACK_ROLLUP_STALENESS_SECONDS", "900")),
            k_threshold=int(os.getenv("HEROTRACK_K_THRESHOLD", "5")),
            sweep_window_hours=int(os.getenv("HEROTRACK_SWEEP_WINDOW_HOURS", "48")),
            max_rebuild_days=int(os.getenv("HEROTRACK_MAX_REBUILD_DAYS", "90")),
        )


@dataclass(frozen=True)
class RebuildSummary:
    """Result of an administrative rebuild."""
    classroom_scope: str
    start: datetime
    end: datetime
    buckets_recomputed: int
    buckets_removed: int
    duration_seconds: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "classroom_scope": self.classroom_scope,
            "start": format_timestamp(self.start),
            "end": format_timestamp(self.end),
            "buckets_recomputed": self.buckets_recomputed,
            "buckets_removed": self.buckets_removed,
            "duration_seconds": round(self.duration_seconds, 3),
        }


class AggregationEngine:
    """Maintains rollups from raw events."""

    def __init__(
        self,
        event_repository: EventRepository,
        rollup_repository: Optional[RollupRepository] = None,
        config: Optional[AggregationConfig] = None,
        audit_logger: Optional[AuditLogger] = None,
        publisher: Optional[RollupWorkPublisher] = None,
        clock: Callable[[], datetime] = utc_now,
        event_active_days: Optional[Callable[[], int]] = None,
    ):
        """Initialize engine with dependencies.

        Args:
            event_repository: Source of raw events
            rollup_repository: Rollup storage (in-memory if None)
            config: Aggregation configuration
            audit_logger: Audit trail for rebuilds
            publisher: Kinesis publisher; when set, dirty buckets are
                published instead of recomputed locally
            clock: Time source
            event_active_days: Current active horizon of the raw-event
                retention policy, in days
        """
        self.config = config or AggregationConfig()
        self.events = event_repository
        self.rollups = rollup_repository or RollupRepository()
        self.audit_logger = audit_logger or AuditLogger()
        self.publisher = publisher
        self._event_active_days = event_active_days
        self.k_enforcer = KAnonymityEnforcer(k_threshold=self.config.k_threshold)
        self.queue = BucketWorkQueue(self.recompute_bucket, max_workers=self.config.max_workers)
        self._clock = clock
        self._stats_lock = threading.Lock()
        self._recomputed = 0
        self._last_success_at: Optional[datetime] = None

        logger.info(
            "AGGREGATION_ENGINE_INITIALIZED",
            extra={
                "granularities": [g.value for g in self.config.granularities],
                "max_workers": self.config.max_workers,
                "k_threshold": self.config.k_threshold,
                "mode": "kinesis" if publisher else "local",
            }
        )

    def enqueue_for_events(self, events: Iterable[Event]) -> int:
        """Mark the buckets of newly persisted events dirty.

        Args:
            events: Events just persisted by ingestion

        Returns:
            Number of distinct buckets scheduled
        """
        keys: Set[RollupKey] = set()
        for event in events:
            keys.update(keys_for_event(event, self.config.granularities))

        ordered = sorted(keys, key=lambda k: k.partition_key())
        if self.publisher is not None:
            self.publisher.publish_keys(ordered)
        else:
            for key in ordered:
                self.queue.submit(key)

        logger.debug("ROLLUP_BUCKETS_ENQUEUED", extra={"bucket_count": len(ordered)})
        return len(ordered)

    def recompute_now(self, key: RollupKey) -> Optional[RollupRecord]:
        """Recompute ``key`` on the calling thread, never overlapping queued work."""
        return self.queue.run_now(key)

    def event_horizon(self, now: Optional[datetime] = None) -> datetime:
        """Earliest bucket start whose raw events are all still live.

        Buckets starting before this may have had events archived by
        retention; their rollups are final and never recomputed.
        """
        days = self.config.max_rebuild_days
        if self._event_active_days is not None:
            days = min(days, self._event_active_days())
        return (now or self._clock()) - timedelta(days=days)

    def is_final(self, key: RollupKey, now: Optional[datetime] = None) -> bool:
        return ensure_utc(key.bucket_start) < self.event_horizon(now)

    def recompute_bucket(self, key: RollupKey) -> Optional[RollupRecord]:
        """Recompute one bucket from its raw events.

        A bucket with no remaining events loses its rollup. Buckets past
        the event horizon are left as stored.

        Returns:
            The stored rollup, or None if the bucket is empty
        """
        now = self._clock()
        if self.is_final(key, now):
            logger.debug("ROLLUP_RECOMPUTE_SKIPPED_FINAL", extra={"bucket": key.partition_key()})
            return self.rollups.get(key)

        events = self.events.find_events(
            key.classroom_scope, key.bucket_start, key.bucket_end, key.lesson_id
        )

        if not events:
            removed = self.rollups.delete(key)
            if removed:
                logger.info("ROLLUP_REMOVED", extra={"bucket": key.partition_key()})
            record = None
        else:
            record = self.rollups.upsert(compute_rollup(key, events, now))
            logger.debug(
                "ROLLUP_RECOMPUTED",
                extra={"bucket": key.partition_key(), "event_count": record.event_count}
            )

        with self._stats_lock:
            self._recomputed += 1
            self._last_success_at = now
        return record

    def rebuild(
        self,
        classroom_scope: str,
        start: datetime,
        end: datetime,
        actor_id: str = "operator",
    ) -> RebuildSummary:
        """Recompute every bucket of a classroom overlapping ``[start, end)``.

        The range is clamped to the raw-event horizon, since archived
        events can no longer contribute. Only buckets starting on or after
        the horizon are recomputed.

        Raises:
            ValueError: If the range is empty
        """
        start, end = ensure_utc(start), ensure_utc(end)
        if end <= start:
            raise ValueError("end must be after start")

        horizon = self.event_horizon()
        if start < horizon:
            logger.warning(
                "REBUILD_RANGE_CLAMPED",
                extra={
                    "classroom_scope": classroom_scope,
                    "requested_start": format_timestamp(start),
                    "clamped_start": format_timestamp(horizon),
                }
            )
            start = horizon
            if end <= start:
                raise ValueError("Requested range is entirely outside the rebuild horizon")

        started = time.monotonic()
        recomputed = 0
        removed = 0

        for granularity in self.config.granularities:
            starts = [s for s in bucket_starts(granularity, start, end) if s >= horizon]
            if not starts:
                continue
            span_start, span_end = starts[0], granularity.bucket_end(starts[-1])
            events = self.events.find_events(classroom_scope, span_start, span_end)
            existing = self.rollups.find(
                classroom_scope, span_start, span_end, granularity, all_lessons=True
            )
            lessons = set(lessons_of(events)) | {r.key.lesson_id for r in existing}

            for bucket_start in starts:
                for lesson_id in sorted(lessons, key=lambda l: (l is not None, l or "")):
                    key = RollupKey(classroom_scope, lesson_id, granularity, bucket_start)
                    had_rollup = self.rollups.get(key) is not None
                    record = self.recompute_now(key)
                    if record is not None:
                        recomputed += 1
                    elif had_rollup:
                        removed += 1

        summary = RebuildSummary(
            classroom_scope=classroom_scope,
            start=start,
            end=end,
            buckets_recomputed=recomputed,
            buckets_removed=removed,
            duration_seconds=time.monotonic() - started,
        )

        logger.info("AGGREGATION_REBUILD_COMPLETED", extra=summary.to_dict())
        self.audit_logger.log(
            action=AuditAction.AGGREGATION_REBUILD,
            entity_type=AuditEntity.CLASSROOM,
            entity_id=classroom_scope,
            actor_id=actor_id,
            actor_role="operator",
            classroom_scope=classroom_scope,
            details=summary.to_dict(),
        )
        return summary

    def query_rollups(
        self,
        classroom_scope: str,
        start: datetime,
        end: datetime,
        category: Optional[Category] = None,
        granularity: Granularity = Granularity.DAILY,
        lesson_id: Optional[str] = None,
        refresh_stale: bool = True,
    ) -> List[Dict[str, Any]]:
        """Read rollups for a dashboard.

        Args:
            classroom_scope: Classroom
            start: Inclusive lower bound on bucket start
            end: Exclusive upper bound on bucket start
            category: Restrict statistics to one category
            granularity: Bucket size
            lesson_id: One lesson's buckets (None for the all-lessons buckets)
            refresh_stale: Recompute stale buckets before answering

        Returns:
            One dict per bucket with ``stale`` and ``final`` flags;
            statistics are suppressed for buckets below the k-anonymity
            threshold. Final buckets are served as stored.
        """
        now = self._clock()
        threshold = self.config.staleness_threshold
        records = self.rollups.find(classroom_scope, start, end, granularity, lesson_id)

        results = []
        for record in records:
            if self.is_final(record.key, now):
                results.append(self._view(record, False, category, final=True))
                continue
            stale = record.is_stale(threshold, now)
            if stale and refresh_stale:
                logger.info("STALE_ROLLUP_REFRESHED", extra={"bucket": record.key.partition_key()})
                record = self.recompute_now(record.key)
                if record is None:
                    continue
                stale = False
            results.append(self._view(record, stale, category))

        logger.info(
            "ROLLUPS_QUERIED",
            extra={
                "classroom_scope": classroom_scope,
                "granularity": granularity.value,
                "category": category.value if category else None,
                "returned": len(results),
            }
        )
        return results

    def _view(
        self,
        record: RollupRecord,
        stale: bool,
        category: Optional[Category],
        final: bool = False,
    ) -> Dict[str, Any]:
        if category is None:
            stats = record.statistics()
        else:
            name = category.value
            stats = {
                "category": name,
                "event_count": record.category_counts.get(name, 0),
                "mean_score": record.category_mean_scores.get(name, 0.0),
            }

        view = record.key.to_dict()
        view["computed_at"] = format_timestamp(record.computed_at)
        view["stale"] = stale
        view["final"] = final
        view.update(self.k_enforcer.release(record, stats))
        return view

    def sweep(self) -> int:
        """Schedule recent buckets whose rollup is missing, outdated or stale.

        Covers buckets whose recompute was lost (enqueue failure, worker
        crash, unpublished work) as well as rollups past the staleness
        threshold.

        Returns:
            Number of buckets scheduled
        """
        now = self._clock()
        window_start = now - timedelta(hours=self.config.sweep_window_hours)
        latest_received: Dict[RollupKey, datetime] = {}

        for event in self.events.find_events(None, window_start, now + timedelta(days=1)):
            received = event.received_at or event.captured_at
            for key in keys_for_event(event, self.config.granularities):
                if key not in latest_received or received > latest_received[key]:
                    latest_received[key] = received

        due: Set[RollupKey] = set()
        for key, received in latest_received.items():
            current = self.rollups.get(key)
            if current is None or ensure_utc(current.computed_at) < ensure_utc(received):
                due.add(key)

        stale_before = now - self.config.staleness_threshold
        # Buckets that began before the window but still overlap it
        bucket_since = window_start - max(g.bucket_length() for g in self.config.granularities)
        for record in self.rollups.find_computed_before(stale_before, bucket_since):
            due.add(record.key)

        for key in sorted(due, key=lambda k: k.partition_key()):
            self.queue.submit(key)

        logger.info("ROLLUP_SWEEP_COMPLETED", extra={"buckets_scheduled": len(due)})
        return len(due)

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        return self.queue.wait_idle(timeout)

    def stats(self) -> Dict[str, Any]:
        """Aggregation health for the admin view."""
        with self._stats_lock:
            last_success = self._last_success_at
            recomputed = self._recomputed
        return {
            "queue_depth": self.queue.depth(),
            "buckets_recomputed": recomputed,
            "recompute_failures": self.queue.failed,
            "buckets_suppressed": self.k_enforcer.suppressed,
            "last_success_at": format_timestamp(last_success),
        }

    def shutdown(self, wait: bool = True) -> None:
        self.queue.shutdown(wait=wait)
