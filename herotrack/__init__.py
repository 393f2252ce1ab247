"""Herotrack: privacy-preserving behavioral analytics pipeline.

Client devices capture engagement events offline, anonymize them with a
rotating daily salt and deliver them in idempotent batches. The server
validates and persists batches, maintains time-bucketed rollups for
dashboards and enforces the data-retention schedule.
"""

__version__ = "0.4.0"
