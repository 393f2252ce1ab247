"""Pure rollup computation.

Given the same raw events, ``compute_rollup`` always returns the same
statistics: every figure is derived from integer sums and counts and the
means are rounded once, so event order never changes the result.
"""
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence, Set

from herotrack.shared.models import Event, Granularity, RollupKey, RollupRecord

MEAN_PRECISION = 4

DEFAULT_GRANULARITIES = (Granularity.HOURLY, Granularity.DAILY, Granularity.WEEKLY)


def _mean(total: int, count: int) -> float:
    return round(total / count, MEAN_PRECISION) if count else 0.0


def compute_rollup(key: RollupKey, events: Iterable[Event], computed_at: datetime) -> RollupRecord:
    """Aggregate the events of one bucket.

    Args:
        key: Bucket the events belong to
        events: Raw events captured inside the bucket
        computed_at: Timestamp recorded on the rollup

    Returns:
        RollupRecord with counts and means only
    """
    event_count = 0
    score_sum = 0
    category_counts: Dict[str, int] = {}
    category_sums: Dict[str, int] = {}
    subjects: Set[str] = set()
    growth_moments = 0

    for event in events:
        event_count += 1
        score_sum += event.score
        category = event.category.value
        category_counts[category] = category_counts.get(category, 0) + 1
        category_sums[category] = category_sums.get(category, 0) + event.score
        if event.subject_hash:
            subjects.add(event.subject_hash)
        if event.growth_indicator:
            growth_moments += 1

    return RollupRecord(
        key=key,
        event_count=event_count,
        score_sum=score_sum,
        mean_score=_mean(score_sum, event_count),
        category_counts=dict(sorted(category_counts.items())),
        category_mean_scores={
            category: _mean(category_sums[category], count)
            for category, count in sorted(category_counts.items())
        },
        distinct_subjects=len(subjects),
        growth_moments=growth_moments,
        computed_at=computed_at,
    )


def keys_for_event(
    event: Event,
    granularities: Sequence[Granularity] = DEFAULT_GRANULARITIES,
) -> List[RollupKey]:
    """Every bucket an event contributes to.

    Each event lands in the all-lessons bucket of its classroom and, when
    it has a lesson, in that lesson's bucket, once per granularity.
    """
    keys = []
    for granularity in granularities:
        start = granularity.bucket_start(event.captured_at)
        keys.append(RollupKey(event.classroom_scope, None, granularity, start))
        if event.lesson_id:
            keys.append(RollupKey(event.classroom_scope, event.lesson_id, granularity, start))
    return keys


def bucket_starts(granularity: Granularity, start: datetime, end: datetime) -> List[datetime]:
    """Aligned bucket starts of every bucket overlapping ``[start, end)``."""
    starts = []
    current = granularity.bucket_start(start)
    while current < end:
        starts.append(current)
        current = granularity.bucket_end(current)
    return starts


def lessons_of(events: Iterable[Event]) -> List[Optional[str]]:
    """Distinct lesson ids among events, all-lessons (None) first."""
    lessons = sorted({e.lesson_id for e in events if e.lesson_id})
    return [None] + lessons
