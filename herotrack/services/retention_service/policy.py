"""Retention policies.

Each policy names a live table, the column that ages its rows and two
horizons: rows older than ``active_days`` move to the archive, archived
rows older than ``archive_days`` are deleted for good.
"""
import os
from dataclasses import dataclass, field, replace
from typing import Dict, Optional, Tuple

EVENTS_POLICY = "behavioral_events"
ROLLUPS_POLICY = "classroom_rollups"

DEFAULT_SCHEDULE = "0 3 * * sun"


@dataclass(frozen=True)
class RetentionPolicy:
    """Active and archive horizons for one table."""
    name: str
    table: str
    timestamp_column: str
    active_days: int
    archive_days: int

    def __post_init__(self):
        if self.active_days < 1:
            raise ValueError(f"{self.name}: active_days must be positive")
        if self.active_days >= self.archive_days:
            raise ValueError(
                f"{self.name}: active_days ({self.active_days}) must be less than "
                f"archive_days ({self.archive_days})"
            )

    def to_dict(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "table": self.table,
            "timestamp_column": self.timestamp_column,
            "active_days": self.active_days,
            "archive_days": self.archive_days,
        }


def default_policies(
    event_active_days: int = 90,
    event_archive_days: int = 730,
    rollup_active_days: int = 365,
    rollup_archive_days: int = 1825,
) -> Tuple[RetentionPolicy, ...]:
    return (
        RetentionPolicy(
            name=EVENTS_POLICY,
            table="behavioral_events",
            timestamp_column="captured_at",
            active_days=event_active_days,
            archive_days=event_archive_days,
        ),
        RetentionPolicy(
            name=ROLLUPS_POLICY,
            table="classroom_rollups",
            timestamp_column="bucket_start",
            active_days=rollup_active_days,
            archive_days=rollup_archive_days,
        ),
    )


@dataclass(frozen=True)
class RetentionConfig:
    """Retention executor settings.

    Policies run in the order given. ``schedule`` is a five-field crontab
    expression for the weekly run.
    """
    policies: Tuple[RetentionPolicy, ...] = field(default_factory=default_policies)
    ledger_ttl_days: int = 14
    schedule: str = DEFAULT_SCHEDULE
    sweep_interval_seconds: int = 300
    lock_id: int = 727001

    def __post_init__(self):
        names = [p.name for p in self.policies]
        if len(names) != len(set(names)):
            raise ValueError(f"Duplicate retention policy names: {names}")
        if self.ledger_ttl_days < 1:
            raise ValueError("ledger_ttl_days must be positive")
        if len(self.schedule.split()) != 5:
            raise ValueError(f"Invalid cron expression: {self.schedule}")

    def policy(self, name: str) -> Optional[RetentionPolicy]:
        for policy in self.policies:
            if policy.name == name:
                return policy
        return None

    def with_policy(self, policy: RetentionPolicy) -> "RetentionConfig":
        """Copy of this config with ``policy`` replacing the one of the same name.

        Raises:
            ValueError: If no policy has that name
        """
        if self.policy(policy.name) is None:
            raise ValueError(f"Unknown retention policy: {policy.name}")
        return replace(
            self,
            policies=tuple(policy if p.name == policy.name else p for p in self.policies),
        )

    @classmethod
    def from_env(cls) -> "RetentionConfig":
        return cls(
            policies=default_policies(
                event_active_days=int(os.getenv("HEROTRACK_EVENT_ACTIVE_DAYS", "90")),
                event_archive_days=int(os.getenv("HEROTRACK_EVENT_ARCHIVE_DAYS", "730")),
                rollup_active_days=int(os.getenv("HEROTRACK_ROLLUP_ACTIVE_DAYS", "365")),
                rollup_archive_days=int(os.getenv("HEROTRACK_ROLLUP_ARCHIVE_DAYS", "1825")),
            ),
            ledger_ttl_days=int(os.getenv("HEROTRACK_LEDGER_TTL_DAYS", "14")),
            schedule=os.getenv("HEROTRACK_RETENTION_SCHEDULE", DEFAULT_SCHEDULE),
            sweep_interval_seconds=int(os.getenv("HEROTRACK_SWEEP_INTERVAL_SECONDS", "300")),
        )
