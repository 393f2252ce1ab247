"""Audit logger - append-only, hash-chained trail of pipeline decisions.

Every accepted or rejected batch, retention run, salt pruning, aggregation
rebuild, policy change and administrative purge is recorded here.
"""
import hashlib
import logging
import threading
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from herotrack.shared.models import canonical_json
from herotrack.shared.utils.clock import utc_now

logger = logging.getLogger(__name__)

GENESIS_HASH = "genesis"


class AuditAction(Enum):
    """Actions that require audit logging."""
    # Ingestion
    BATCH_ACCEPTED = "batch_accepted"
    BATCH_REJECTED = "batch_rejected"

    # Retention
    RETENTION_RUN = "retention_run"
    SALTS_PRUNED = "salts_pruned"
    RETENTION_POLICY_CHANGED = "retention_policy_changed"

    # Aggregation
    AGGREGATION_REBUILD = "aggregation_rebuild"

    # Administrative
    CLIENT_QUEUE_PURGED = "client_queue_purged"


class AuditEntity(Enum):
    """Entity types for audit logging."""
    BATCH = "batch"
    RETENTION_RUN = "retention_run"
    RETENTION_POLICY = "retention_policy"
    DAILY_SALT = "daily_salt"
    CLASSROOM = "classroom"
    CLIENT_QUEUE = "client_queue"
    SYSTEM = "system"


@dataclass(frozen=True)
class AuditEntry:
    """Immutable audit log entry."""
    entry_id: str
    timestamp: datetime
    action: AuditAction
    entity_type: AuditEntity
    entity_id: str
    actor_id: str
    actor_role: str
    classroom_scope: Optional[str]
    details: Dict[str, Any] = field(default_factory=dict)
    previous_hash: str = ""  # Chain to previous entry for verification
    entry_hash: str = ""

    def compute_hash(self) -> str:
        """Compute SHA-256 hash of entry for verification.

        Returns:
            Hex-encoded hash string
        """
        content = {
            "entry_id": self.entry_id,
            "timestamp": self.timestamp.isoformat(),
            "action": self.action.value,
            "entity_type": self.entity_type.value,
            "entity_id": self.entity_id,
            "actor_id": self.actor_id,
            "actor_role": self.actor_role,
            "classroom_scope": self.classroom_scope,
            "details": self.details,
            "previous_hash": self.previous_hash,
        }
        return hashlib.sha256(canonical_json(content).encode()).hexdigest()


class AuditLogger:
    """Logs audit entries to append-only storage.

    Maintains a hash chain for tamper detection. Entries are kept by an
    AuditRepository (PostgreSQL or in-memory).
    """

    def __init__(self, repository=None, clock: Callable[[], datetime] = utc_now):
        """Initialize audit logger.

        Args:
            repository: AuditRepository (in-memory if None)
            clock: Time source
        """
        if repository is None:
            from .audit_repository import AuditRepository
            repository = AuditRepository()
        self.repository = repository
        self._clock = clock
        self._lock = threading.Lock()
        self._last_hash: str = repository.latest_hash() or GENESIS_HASH

        logger.info("AUDIT_LOGGER_INITIALIZED")

    def log(
        self,
        action: AuditAction,
        entity_type: AuditEntity,
        entity_id: str,
        actor_id: str = "system",
        actor_role: str = "system",
        classroom_scope: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> AuditEntry:
        """Log an audit entry.

        Args:
            action: Action being audited
            entity_type: Type of entity being acted upon
            entity_id: Identifier of entity (batch id, policy name, ...)
            actor_id: Who performed the action
            actor_role: Role of actor (system, operator, device)
            classroom_scope: Classroom context
            details: Additional context (counts and reasons only)

        Returns:
            Created AuditEntry

        Raises:
            RepositoryError: If the entry cannot be stored
        """
        with self._lock:
            entry = AuditEntry(
                entry_id=f"audit_{uuid.uuid4().hex[:16]}",
                timestamp=self._clock(),
                action=action,
                entity_type=entity_type,
                entity_id=entity_id,
                actor_id=actor_id,
                actor_role=actor_role,
                classroom_scope=classroom_scope,
                details=details or {},
                previous_hash=self._last_hash,
            )
            entry = replace(entry, entry_hash=entry.compute_hash())

            self.repository.append(entry)
            self._last_hash = entry.entry_hash

        logger.info(
            "AUDIT_ENTRY_CREATED",
            extra={
                "entry_id": entry.entry_id,
                "action": action.value,
                "entity_type": entity_type.value,
                "entity_id": entity_id,
                "actor_role": actor_role,
                "classroom_scope": classroom_scope,
                "entry_hash": entry.entry_hash[:16],
            }
        )

        return entry

    def verify_chain(self) -> bool:
        """Verify integrity of audit chain.

        Returns:
            True if chain is valid, False if tampered
        """
        entries = self.repository.entries()
        if not entries:
            return True

        expected_prev = GENESIS_HASH
        for entry in entries:
            if entry.previous_hash != expected_prev:
                logger.critical(
                    "AUDIT_CHAIN_VERIFICATION_FAILED",
                    extra={
                        "entry_id": entry.entry_id,
                        "expected_prev": expected_prev[:16],
                        "actual_prev": entry.previous_hash[:16],
                    }
                )
                return False

            computed = entry.compute_hash()
            if computed != entry.entry_hash:
                logger.critical(
                    "AUDIT_ENTRY_HASH_MISMATCH",
                    extra={
                        "entry_id": entry.entry_id,
                        "computed": computed[:16],
                        "stored": entry.entry_hash[:16],
                    }
                )
                return False

            expected_prev = entry.entry_hash

        logger.info(
            "AUDIT_CHAIN_VERIFIED",
            extra={"entry_count": len(entries)}
        )
        return True

    def query(
        self,
        entity_type: Optional[AuditEntity] = None,
        entity_id: Optional[str] = None,
        action: Optional[AuditAction] = None,
        classroom_scope: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[AuditEntry]:
        """Query audit entries, newest first."""
        return self.repository.query(
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            classroom_scope=classroom_scope,
            start_date=start_date,
            end_date=end_date,
            limit=limit,
        )
