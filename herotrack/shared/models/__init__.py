"""Shared domain models for the herotrack pipeline."""
from .events import (
    Category,
    Event,
    Batch,
    canonical_json,
    is_valid_uuid,
    new_id,
    INTERACTION_TYPE_PATTERN,
    SUBJECT_HASH_PATTERN,
    MAX_METADATA_BYTES,
    MAX_METADATA_KEYS,
)
from .rollups import Granularity, RollupKey, RollupRecord

__all__ = [
    "Category",
    "Event",
    "Batch",
    "canonical_json",
    "is_valid_uuid",
    "new_id",
    "INTERACTION_TYPE_PATTERN",
    "SUBJECT_HASH_PATTERN",
    "MAX_METADATA_BYTES",
    "MAX_METADATA_KEYS",
    "Granularity",
    "RollupKey",
    "RollupRecord",
]
