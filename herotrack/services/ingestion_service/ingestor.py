"""Ingestion service core: validate, anonymize, deduplicate, persist.

``ingest`` is idempotent per batch id. A batch that is already in the
dedup ledger is acknowledged again without touching storage; a new batch
is committed atomically together with its ledger row.
"""
import logging
import os
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, FrozenSet, List, Optional

from herotrack.services.audit_service import AuditAction, AuditEntity, AuditLogger
from herotrack.shared.anonymizer import Anonymizer, SaltStore
from herotrack.shared.errors import SaltUnavailable, ValidationError
from herotrack.shared.models import Category, Event
from herotrack.shared.utils.clock import utc_now

from .event_repository import EventRepository
from .validator import BatchValidator, ValidatedEvent

logger = logging.getLogger(__name__)

STATUS_ACCEPTED = "accepted"
STATUS_REJECTED = "rejected"


@dataclass(frozen=True)
class GrowthIndicatorPolicy:
    """Decides which events count as growth moments.

    Attributes:
        min_score: Lowest score that qualifies
        categories: Qualifying categories (None for all)
        interaction_types: Qualifying interaction codes (None for all)
    """
    min_score: int = 4
    categories: Optional[FrozenSet[Category]] = None
    interaction_types: Optional[FrozenSet[str]] = None

    def __post_init__(self):
        if not 1 <= self.min_score <= 5:
            raise ValueError("min_score must be between 1 and 5")

    def evaluate(self, event: Event) -> bool:
        if event.score < self.min_score:
            return False
        if self.categories is not None and event.category not in self.categories:
            return False
        if self.interaction_types is not None and event.interaction_type not in self.interaction_types:
            return False
        return True


@dataclass(frozen=True)
class IngestionConfig:
    """Ingestion service settings."""
    max_batch_events: int = 500
    max_future_skew_hours: int = 24
    growth_min_score: int = 4
    growth_categories: Optional[FrozenSet[Category]] = None

    def __post_init__(self):
        if self.max_batch_events < 1:
            raise ValueError("max_batch_events must be positive")
        if self.max_future_skew_hours < 0:
            raise ValueError("max_future_skew_hours cannot be negative")

    @property
    def max_future_skew(self) -> timedelta:
        return timedelta(hours=self.max_future_skew_hours)

    def growth_policy(self) -> GrowthIndicatorPolicy:
        return GrowthIndicatorPolicy(
            min_score=self.growth_min_score,
            categories=self.growth_categories,
        )

    @classmethod
    def from_env(cls) -> "IngestionConfig":
        """Load configuration from environment variables."""
        categories = os.getenv("HEROTRACK_GROWTH_CATEGORIES")
        return cls(
            max_batch_events=int(os.getenv("HEROTRACK_MAX_BATCH_EVENTS", "500")),
            max_future_skew_hours=int(os.getenv("HEROTRACK_MAX_FUTURE_SKEW_HOURS", "24")),
            growth_min_score=int(os.getenv("HEROTRACK_GROWTH_MIN_SCORE", "4")),
            growth_categories=frozenset(
                Category(c.strip()) for c in categories.split(",") if c.strip()
            ) if categories else None,
        )


@dataclass(frozen=True)
class IngestResult:
    """Outcome of one ingest call: Accepted or Rejected(reason)."""
    batch_id: Optional[str]
    status: str
    duplicate: bool = False
    events_persisted: int = 0
    reason: Optional[str] = None
    message: Optional[str] = None
    event_id: Optional[str] = None

    @property
    def accepted(self) -> bool:
        return self.status == STATUS_ACCEPTED

    def to_dict(self) -> Dict[str, Any]:
        if self.accepted:
            return {
                "status": self.status,
                "batch_id": self.batch_id,
                "duplicate": self.duplicate,
                "events_persisted": self.events_persisted,
            }
        return {
            "status": self.status,
            "batch_id": self.batch_id,
            "reason": self.reason,
            "message": self.message,
            "event_id": self.event_id,
        }


@dataclass
class IngestionCounters:
    accepted: int = 0
    duplicate: int = 0
    events_persisted: int = 0
    rejected: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "accepted": self.accepted,
            "duplicate": self.duplicate,
            "events_persisted": self.events_persisted,
            "rejected": dict(self.rejected),
        }


class IngestionService:
    """Validates and persists uploaded batches."""

    def __init__(
        self,
        repository: Optional[EventRepository] = None,
        anonymizer: Optional[Anonymizer] = None,
        config: Optional[IngestionConfig] = None,
        audit_logger: Optional[AuditLogger] = None,
        on_persisted: Optional[Callable[[List[Event]], None]] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        """Initialize service with dependencies.

        Args:
            repository: Event repository (in-memory if None)
            anonymizer: Server-side anonymizer for events sent with a local id
            config: Ingestion configuration
            audit_logger: Audit trail
            on_persisted: Called with newly persisted events (aggregation hook)
            clock: Time source
        """
        self.config = config or IngestionConfig()
        self.repository = repository or EventRepository()
        self.anonymizer = anonymizer or Anonymizer(SaltStore(), clock=clock)
        self.audit_logger = audit_logger or AuditLogger()
        self.growth_policy = self.config.growth_policy()
        self.on_persisted = on_persisted
        self.validator = BatchValidator(
            max_batch_events=self.config.max_batch_events,
            max_future_skew=self.config.max_future_skew,
            clock=clock,
        )
        self._clock = clock
        self._counters = IngestionCounters()
        self._counter_lock = threading.Lock()

        logger.info(
            "INGESTION_SERVICE_INITIALIZED",
            extra={
                "backend": "postgresql" if self.repository.uses_postgres else "memory",
                "max_batch_events": self.config.max_batch_events,
            }
        )

    def ingest(
        self,
        batch_id: Any,
        events: Any,
        classroom_scope: Optional[str] = None,
    ) -> IngestResult:
        """Ingest one batch.

        Args:
            batch_id: Client batch id (UUID)
            events: Raw decoded wire events
            classroom_scope: Caller's classroom scope token

        Returns:
            Accepted (possibly as a duplicate) or Rejected(reason)

        Raises:
            AuthorizationError: If an event lies outside the caller's scope
            SaltUnavailable: If a subject cannot be anonymized (retry later)
            RepositoryError: If storage fails (nothing was persisted)
        """
        try:
            validated = self.validator.validate(batch_id, events, classroom_scope)
        except ValidationError as e:
            return self._reject(batch_id, classroom_scope, e)

        if self.repository.has_batch(batch_id):
            return self._duplicate(batch_id)

        received_at = self._clock()
        prepared = [self._prepare(item, received_at) for item in validated]

        outcome = self.repository.persist_batch(batch_id, prepared, received_at)
        if outcome.duplicate:
            return self._duplicate(batch_id)

        with self._counter_lock:
            self._counters.accepted += 1
            self._counters.events_persisted += outcome.events_persisted

        logger.info(
            "BATCH_ACCEPTED",
            extra={
                "batch_id": batch_id,
                "classroom_scope": classroom_scope,
                "event_count": len(prepared),
                "events_persisted": outcome.events_persisted,
            }
        )
        self.audit_logger.log(
            action=AuditAction.BATCH_ACCEPTED,
            entity_type=AuditEntity.BATCH,
            entity_id=batch_id,
            actor_id="ingestion-service",
            actor_role="system",
            classroom_scope=classroom_scope,
            details={
                "event_count": len(prepared),
                "events_persisted": outcome.events_persisted,
            },
        )

        if self.on_persisted and outcome.events_persisted:
            self._notify(batch_id, prepared)

        return IngestResult(
            batch_id=batch_id,
            status=STATUS_ACCEPTED,
            duplicate=False,
            events_persisted=outcome.events_persisted,
        )

    def ingest_payload(self, payload: Any, classroom_scope: Optional[str] = None) -> IngestResult:
        """Ingest a decoded request body ``{"batch_id": ..., "events": [...]}``."""
        if not isinstance(payload, dict):
            return self._reject(
                None,
                classroom_scope,
                ValidationError(ValidationError.MALFORMED, "Request body must be an object"),
            )
        return self.ingest(payload.get("batch_id"), payload.get("events"), classroom_scope)

    def stats(self) -> Dict[str, Any]:
        """Ingestion counters for the admin health view."""
        with self._counter_lock:
            return self._counters.to_dict()

    def _prepare(self, item: ValidatedEvent, received_at: datetime) -> Event:
        event = item.event
        subject_hash = event.subject_hash
        if item.subject_local_id is not None:
            try:
                subject_hash = self.anonymizer.hash(
                    item.subject_local_id, event.classroom_scope, event.captured_at
                )
            except SaltUnavailable:
                logger.critical(
                    "SERVER_ANONYMIZATION_FAILED",
                    extra={"event_id": event.event_id, "classroom_scope": event.classroom_scope},
                )
                raise
        return replace(
            event,
            subject_hash=subject_hash,
            growth_indicator=self.growth_policy.evaluate(event),
            received_at=received_at,
        )

    def _duplicate(self, batch_id: str) -> IngestResult:
        with self._counter_lock:
            self._counters.duplicate += 1
        logger.info("BATCH_DUPLICATE_ACKNOWLEDGED", extra={"batch_id": batch_id})
        return IngestResult(batch_id=batch_id, status=STATUS_ACCEPTED, duplicate=True)

    def _reject(
        self,
        batch_id: Any,
        classroom_scope: Optional[str],
        error: ValidationError,
    ) -> IngestResult:
        batch_ref = batch_id if isinstance(batch_id, str) else None
        with self._counter_lock:
            self._counters.rejected[error.reason] = self._counters.rejected.get(error.reason, 0) + 1

        logger.warning(
            "BATCH_REJECTED",
            extra={
                "batch_id": batch_ref,
                "classroom_scope": classroom_scope,
                "reason": error.reason,
                "event_id": error.event_id,
            }
        )
        self.audit_logger.log(
            action=AuditAction.BATCH_REJECTED,
            entity_type=AuditEntity.BATCH,
            entity_id=batch_ref or "unknown",
            actor_id="ingestion-service",
            actor_role="system",
            classroom_scope=classroom_scope,
            details={"reason": error.reason, "event_id": error.event_id},
        )
        return IngestResult(
            batch_id=batch_ref,
            status=STATUS_REJECTED,
            reason=error.reason,
            message=str(error),
            event_id=error.event_id,
        )

    def _notify(self, batch_id: str, events: List[Event]) -> None:
        # Rollups missed here are rebuilt by the stale sweep
        try:
            self.on_persisted(events)
        except Exception as e:
            logger.error(
                "AGGREGATION_ENQUEUE_FAILED",
                extra={"batch_id": batch_id, "error": str(e)}
            )
