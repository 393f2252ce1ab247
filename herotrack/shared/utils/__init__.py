"""Shared utilities for the herotrack pipeline."""
from .pii import (
    PiiFinding,
    is_identifying_key,
    find_pii_in_text,
    scan_for_pii,
    sanitize_metadata,
    MAX_FREE_TEXT_LENGTH,
)
from .clock import utc_now, ensure_utc, parse_timestamp, format_timestamp, utc_date

__all__ = [
    "PiiFinding",
    "is_identifying_key",
    "find_pii_in_text",
    "scan_for_pii",
    "sanitize_metadata",
    "MAX_FREE_TEXT_LENGTH",
    "utc_now",
    "ensure_utc",
    "parse_timestamp",
    "format_timestamp",
    "utc_date",
]
