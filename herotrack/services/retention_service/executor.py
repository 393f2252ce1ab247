"""Retention executor.

A run walks the configured policies in order. For each one it archives
live rows past the active horizon (copy, then delete only what the
archive holds) and purges archived rows past the archive horizon. It then
prunes daily salts outside the anonymizer window and expired dedup-ledger
entries. Every step is idempotent, so a run that stopped part way is
finished by the next one.

Cancellation takes effect between steps, never inside one.
"""
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional

from herotrack.services.audit_service import AuditAction, AuditEntity, AuditLogger
from herotrack.services.ingestion_service.event_repository import EventRepository
from herotrack.shared.anonymizer import Anonymizer
from herotrack.shared.database import ArchivableRepository, RepositoryError
from herotrack.shared.errors import RetentionFailure, RetentionLockBusy
from herotrack.shared.utils.clock import format_timestamp, utc_now

from .advisory_lock import RetentionLock
from .policy import RetentionConfig, RetentionPolicy

logger = logging.getLogger(__name__)


class RunStatus(Enum):
    COMPLETED = "completed"
    PARTIAL = "partial"
    CANCELLED = "cancelled"
    SKIPPED_LOCKED = "skipped_locked"


@dataclass(frozen=True)
class PolicyOutcome:
    """What one policy step did."""
    policy_name: str
    archived: int = 0
    purged: int = 0
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "policy": self.policy_name,
            "archived": self.archived,
            "purged": self.purged,
            "error": self.error,
        }


@dataclass
class RetentionSummary:
    """Log record of one retention run."""
    run_id: str
    started_at: datetime
    status: RunStatus = RunStatus.COMPLETED
    policies: List[PolicyOutcome] = field(default_factory=list)
    skipped_policies: List[str] = field(default_factory=list)
    salts_pruned: int = 0
    ledger_pruned: int = 0
    errors: List[str] = field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def rows_archived(self) -> int:
        return sum(p.archived for p in self.policies)

    @property
    def rows_purged(self) -> int:
        return sum(p.purged for p in self.policies)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "started_at": format_timestamp(self.started_at),
            "status": self.status.value,
            "policies": [p.to_dict() for p in self.policies],
            "skipped_policies": list(self.skipped_policies),
            "rows_archived": self.rows_archived,
            "rows_purged": self.rows_purged,
            "salts_pruned": self.salts_pruned,
            "ledger_pruned": self.ledger_pruned,
            "errors": list(self.errors),
            "duration_seconds": round(self.duration_seconds, 3),
        }


class RetentionExecutor:
    """Runs retention policies against the archivable stores."""

    def __init__(
        self,
        repositories: Mapping[str, ArchivableRepository],
        event_repository: EventRepository,
        anonymizer: Anonymizer,
        config: Optional[RetentionConfig] = None,
        audit_logger: Optional[AuditLogger] = None,
        lock: Optional[RetentionLock] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        """Initialize executor.

        Args:
            repositories: Archivable repositories keyed by live table name
            event_repository: Raw events (owns the dedup ledger)
            anonymizer: Salt window owner
            config: Retention configuration
            audit_logger: Audit trail for run summaries and policy changes
            lock: Single-instance guard (process-local if None)
            clock: Time source

        Raises:
            ValueError: If a policy has no repository or ages rows by a
                different column than its repository
        """
        self.config = config or RetentionConfig()
        self.repositories = dict(repositories)
        self.event_repository = event_repository
        self.anonymizer = anonymizer
        self.audit_logger = audit_logger or AuditLogger()
        self.lock = lock or RetentionLock(self.config.lock_id)
        self._clock = clock
        self._cancel = threading.Event()
        self._running = threading.Event()
        self.last_summary: Optional[RetentionSummary] = None

        for policy in self.config.policies:
            self._check_policy(policy)

        logger.info(
            "RETENTION_EXECUTOR_INITIALIZED",
            extra={"policies": [p.to_dict() for p in self.config.policies]}
        )

    def _check_policy(self, policy: RetentionPolicy) -> None:
        repository = self.repositories.get(policy.table)
        if repository is None:
            raise ValueError(f"No repository for retention table {policy.table}")
        if repository.timestamp_column != policy.timestamp_column:
            raise ValueError(
                f"Policy {policy.name} ages rows by {policy.timestamp_column}, "
                f"but {policy.table} is aged by {repository.timestamp_column}"
            )

    @property
    def is_running(self) -> bool:
        return self._running.is_set()

    def cancel(self) -> bool:
        """Ask the running run to stop before its next step.

        Returns:
            False if no run was active; the request is then dropped
        """
        if not self._running.is_set():
            logger.info("RETENTION_CANCEL_IGNORED_IDLE")
            return False
        self._cancel.set()
        logger.warning("RETENTION_CANCEL_REQUESTED")
        return True

    def update_policy(self, policy: RetentionPolicy, actor_id: str) -> RetentionConfig:
        """Administrative policy change. Audited.

        Raises:
            ValueError: If the policy is unknown or invalid
        """
        self._check_policy(policy)
        previous = self.config.policy(policy.name)
        self.config = self.config.with_policy(policy)

        logger.warning(
            "RETENTION_POLICY_CHANGED",
            extra={"policy": policy.name, "actor_id": actor_id}
        )
        self.audit_logger.log(
            action=AuditAction.RETENTION_POLICY_CHANGED,
            entity_type=AuditEntity.RETENTION_POLICY,
            entity_id=policy.name,
            actor_id=actor_id,
            actor_role="operator",
            details={
                "previous": previous.to_dict() if previous else None,
                "current": policy.to_dict(),
            },
        )
        return self.config

    def run(self, policy_name: Optional[str] = None, actor_id: str = "scheduler") -> RetentionSummary:
        """Run retention.

        Args:
            policy_name: Run only this policy (and skip salt and ledger
                pruning); None runs everything
            actor_id: Who triggered the run

        Returns:
            RetentionSummary, also logged and appended to the audit chain

        Raises:
            ValueError: If ``policy_name`` is unknown
        """
        if policy_name is not None:
            policy = self.config.policy(policy_name)
            if policy is None:
                raise ValueError(f"Unknown retention policy: {policy_name}")
            policies = [policy]
        else:
            policies = list(self.config.policies)

        summary = RetentionSummary(run_id=str(uuid.uuid4()), started_at=self._clock())
        started = time.monotonic()

        try:
            with self.lock.hold():
                self._cancel.clear()
                self._running.set()
                try:
                    self._execute(summary, policies, full_run=policy_name is None)
                finally:
                    self._running.clear()
        except RetentionLockBusy:
            summary.status = RunStatus.SKIPPED_LOCKED
            summary.skipped_policies = [p.name for p in policies]
            logger.warning("RETENTION_RUN_SKIPPED_LOCKED", extra={"run_id": summary.run_id})
        finally:
            self._cancel.clear()

        summary.duration_seconds = time.monotonic() - started
        self.last_summary = summary
        self._record(summary, actor_id)
        return summary

    def _execute(self, summary: RetentionSummary, policies: List[RetentionPolicy], full_run: bool) -> None:
        now = self._clock()
        logger.info(
            "RETENTION_RUN_STARTED",
            extra={"run_id": summary.run_id, "policies": [p.name for p in policies]}
        )

        for index, policy in enumerate(policies):
            if self._cancel.is_set():
                summary.status = RunStatus.CANCELLED
                summary.skipped_policies = [p.name for p in policies[index:]]
                logger.warning(
                    "RETENTION_RUN_CANCELLED",
                    extra={"run_id": summary.run_id, "skipped": summary.skipped_policies}
                )
                return
            try:
                outcome = self._apply_policy(policy, now)
            except RetentionFailure as e:
                logger.error(
                    "RETENTION_POLICY_FAILED",
                    extra={"run_id": summary.run_id, "policy": policy.name, "error": str(e)}
                )
                outcome = PolicyOutcome(policy.name, error=str(e))
            summary.policies.append(outcome)

        if full_run:
            self._step(summary, "salts", self._prune_salts)
            self._step(summary, "ledger", lambda s: self._prune_ledger(s, now))

        if summary.status is RunStatus.COMPLETED and (
            summary.errors or any(p.error for p in summary.policies)
        ):
            summary.status = RunStatus.PARTIAL

    def _apply_policy(self, policy: RetentionPolicy, now: datetime) -> PolicyOutcome:
        """Archive then purge one table.

        Raises:
            RetentionFailure: If storage fails; rows already moved stay
                moved and the next run continues from there
        """
        repository = self.repositories[policy.table]
        try:
            archived = repository.archive_older_than(
                now - timedelta(days=policy.active_days), archived_at=now
            )
            purged = repository.purge_archive_older_than(now - timedelta(days=policy.archive_days))
        except RepositoryError as e:
            raise RetentionFailure(f"{policy.name}: {e}") from e

        logger.info(
            "RETENTION_POLICY_APPLIED",
            extra={"policy": policy.name, "archived": archived, "purged": purged}
        )
        return PolicyOutcome(policy.name, archived=archived, purged=purged)

    def _step(self, summary: RetentionSummary, name: str, fn: Callable[[RetentionSummary], None]) -> None:
        if self._cancel.is_set():
            summary.status = RunStatus.CANCELLED
            summary.skipped_policies.append(name)
            return
        try:
            fn(summary)
        except RepositoryError as e:
            summary.errors.append(f"{name}: {e}")
            logger.error("RETENTION_STEP_FAILED", extra={"step": name, "error": str(e)})

    def _prune_salts(self, summary: RetentionSummary) -> None:
        summary.salts_pruned = self.anonymizer.prune_expired_salts()

    def _prune_ledger(self, summary: RetentionSummary, now: datetime) -> None:
        summary.ledger_pruned = self.event_repository.prune_ledger(
            now - timedelta(days=self.config.ledger_ttl_days)
        )

    def _record(self, summary: RetentionSummary, actor_id: str) -> None:
        details = summary.to_dict()
        log = logger.warning if summary.status is not RunStatus.COMPLETED else logger.info
        log("RETENTION_RUN_FINISHED", extra=details)

        self.audit_logger.log(
            action=AuditAction.RETENTION_RUN,
            entity_type=AuditEntity.RETENTION_RUN,
            entity_id=summary.run_id,
            actor_id=actor_id,
            actor_role="operator" if actor_id != "scheduler" else "system",
            details=details,
        )
        if summary.salts_pruned:
            self.audit_logger.log(
                action=AuditAction.SALTS_PRUNED,
                entity_type=AuditEntity.DAILY_SALT,
                entity_id=summary.run_id,
                actor_id=actor_id,
                actor_role="system",
                details={"pruned": summary.salts_pruned},
            )
