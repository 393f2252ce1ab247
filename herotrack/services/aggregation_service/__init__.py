"""Aggregation Service - rollups of raw events by classroom, lesson and time.

Rollups are recomputed from raw events, never patched incrementally, so a
recompute is always safe to repeat. Dashboard reads apply k-anonymity.
"""
from .engine import AggregationConfig, AggregationEngine, RebuildSummary
from .k_anonymity import K_ANONYMITY_THRESHOLD, KAnonymityEnforcer, ReleaseDecision
from .kinesis_publisher import RollupWorkPublisher, decode_kinesis_record
from .stream_consumer import process_kinesis_records
from .rollup_repository import RollupRepository
from .rollups import compute_rollup, keys_for_event
from .work_queue import BucketWorkQueue

__all__ = [
    "AggregationConfig",
    "AggregationEngine",
    "RebuildSummary",
    "ReleaseDecision",
    "KAnonymityEnforcer",
    "K_ANONYMITY_THRESHOLD",
    "RollupWorkPublisher",
    "decode_kinesis_record",
    "process_kinesis_records",
    "RollupRepository",
    "compute_rollup",
    "keys_for_event",
    "BucketWorkQueue",
]
