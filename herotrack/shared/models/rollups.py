"""Rollup domain models.

A RollupRecord holds aggregate, non-identifying statistics for one
classroom/lesson/time-bucket. It never stores a subject hash; the only
link back to raw events is the scope and time key used to recompute it.
"""
import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional

from herotrack.shared.models.events import canonical_json
from herotrack.shared.utils.clock import ensure_utc, format_timestamp, utc_now


class Granularity(Enum):
    """Rollup time-bucket sizes."""
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"

    def bucket_start(self, ts: datetime) -> datetime:
        """Start of the bucket containing ``ts`` (UTC)."""
        ts = ensure_utc(ts)
        if self is Granularity.HOURLY:
            return ts.replace(minute=0, second=0, microsecond=0)
        day = ts.replace(hour=0, minute=0, second=0, microsecond=0)
        if self is Granularity.DAILY:
            return day
        return day - timedelta(days=day.weekday())

    def bucket_length(self) -> timedelta:
        if self is Granularity.HOURLY:
            return timedelta(hours=1)
        if self is Granularity.DAILY:
            return timedelta(days=1)
        return timedelta(weeks=1)

    def bucket_end(self, start: datetime) -> datetime:
        return ensure_utc(start) + self.bucket_length()


@dataclass(frozen=True)
class RollupKey:
    """Scope and time key of a rollup bucket.

    ``lesson_id`` of None means the bucket covers every lesson in the
    classroom.
    """
    classroom_scope: str
    lesson_id: Optional[str]
    granularity: Granularity
    bucket_start: datetime

    def __post_init__(self):
        expected = self.granularity.bucket_start(self.bucket_start)
        if expected != ensure_utc(self.bucket_start):
            raise ValueError(
                f"bucket_start {self.bucket_start} is not aligned to {self.granularity.value}"
            )

    @property
    def bucket_end(self) -> datetime:
        return self.granularity.bucket_end(self.bucket_start)

    def partition_key(self) -> str:
        """Stable string key; one writer per key at a time."""
        return "|".join([
            self.classroom_scope,
            self.lesson_id or "*",
            self.granularity.value,
            format_timestamp(self.bucket_start),
        ])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "classroom_scope": self.classroom_scope,
            "lesson_id": self.lesson_id,
            "granularity": self.granularity.value,
            "bucket_start": format_timestamp(self.bucket_start),
        }


@dataclass(frozen=True)
class RollupRecord:
    """Aggregated statistics for one bucket.

    ``computed_at`` is excluded from equality so that recomputing the same
    bucket from the same events compares equal.
    """
    key: RollupKey
    event_count: int
    score_sum: int
    mean_score: float
    category_counts: Dict[str, int] = field(default_factory=dict)
    category_mean_scores: Dict[str, float] = field(default_factory=dict)
    distinct_subjects: int = 0
    growth_moments: int = 0
    computed_at: datetime = field(default_factory=utc_now, compare=False)

    def statistics(self) -> Dict[str, Any]:
        """Statistical content only (no timestamps)."""
        return {
            "event_count": self.event_count,
            "score_sum": self.score_sum,
            "mean_score": self.mean_score,
            "category_counts": dict(sorted(self.category_counts.items())),
            "category_mean_scores": dict(sorted(self.category_mean_scores.items())),
            "distinct_subjects": self.distinct_subjects,
            "growth_moments": self.growth_moments,
        }

    def content_fingerprint(self) -> str:
        """SHA-256 over key and statistics; stable across recomputes."""
        content = {"key": self.key.to_dict(), "stats": self.statistics()}
        return hashlib.sha256(canonical_json(content).encode("utf-8")).hexdigest()

    def is_stale(self, threshold: timedelta, now: Optional[datetime] = None) -> bool:
        now = now or utc_now()
        return ensure_utc(now) - ensure_utc(self.computed_at) > threshold

    def to_dict(self) -> Dict[str, Any]:
        result = self.key.to_dict()
        result.update(self.statistics())
        result["computed_at"] = format_timestamp(self.computed_at)
        return result
