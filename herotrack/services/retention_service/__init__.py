"""Retention Service - archive-then-purge of aged data.

Runs exclusively (advisory lock), is safe to re-run after an interruption
and logs a summary of every run to the audit chain.
"""
from .advisory_lock import RetentionLock
from .executor import PolicyOutcome, RetentionExecutor, RetentionSummary, RunStatus
from .policy import (
    EVENTS_POLICY,
    ROLLUPS_POLICY,
    RetentionConfig,
    RetentionPolicy,
    default_policies,
)
from .scheduler import PipelineScheduler

__all__ = [
    "RetentionLock",
    "PolicyOutcome",
    "RetentionExecutor",
    "RetentionSummary",
    "RunStatus",
    "EVENTS_POLICY",
    "ROLLUPS_POLICY",
    "RetentionConfig",
    "RetentionPolicy",
    "default_policies",
    "PipelineScheduler",
]
