"""Audit Service: append-only, hash-chained audit trail.

Records batch decisions, retention runs, salt pruning, aggregation
rebuilds, retention policy changes and administrative purges.
"""

from .audit_logger import AuditLogger, AuditAction, AuditEntity, AuditEntry
from .audit_repository import AuditRepository

__all__ = [
    "AuditLogger",
    "AuditAction",
    "AuditEntity",
    "AuditEntry",
    "AuditRepository",
]
