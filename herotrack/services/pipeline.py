"""Server pipeline wiring.

Builds the stores and services of one server process and connects them:
ingestion notifies the aggregation engine of persisted events, and the
retention executor and aggregation sweep run on the background scheduler.
Storage is PostgreSQL when ``HEROTRACK_STORAGE=postgres``, in-memory
otherwise.
"""
import logging
import os
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from herotrack.shared.anonymizer import Anonymizer, AnonymizerConfig, SaltStore
from herotrack.shared.database import ConnectionManager, storage_connection_manager
from herotrack.shared.utils.clock import utc_now

from .aggregation_service.engine import AggregationConfig, AggregationEngine
from .aggregation_service.kinesis_publisher import RollupWorkPublisher
from .aggregation_service.rollup_repository import RollupRepository
from .audit_service import AuditLogger, AuditRepository
from .ingestion_service.event_repository import EventRepository
from .ingestion_service.ingestor import IngestionConfig, IngestionService
from .retention_service.advisory_lock import RetentionLock
from .retention_service.executor import RetentionExecutor
from .retention_service.policy import EVENTS_POLICY, RetentionConfig
from .retention_service.scheduler import PipelineScheduler

logger = logging.getLogger(__name__)


class Pipeline:
    """Every server-side component of one process."""

    def __init__(
        self,
        connection_manager: Optional[ConnectionManager] = None,
        ingestion_config: Optional[IngestionConfig] = None,
        aggregation_config: Optional[AggregationConfig] = None,
        retention_config: Optional[RetentionConfig] = None,
        anonymizer_config: Optional[AnonymizerConfig] = None,
        publisher: Optional[RollupWorkPublisher] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.connection_manager = connection_manager
        self.events = EventRepository(connection_manager)
        self.rollups = RollupRepository(connection_manager)
        self.salt_store = SaltStore(connection_manager)
        self.anonymizer = Anonymizer(self.salt_store, anonymizer_config, clock=clock)
        self.audit_logger = AuditLogger(AuditRepository(connection_manager), clock=clock)

        self.aggregation = AggregationEngine(
            event_repository=self.events,
            rollup_repository=self.rollups,
            config=aggregation_config,
            audit_logger=self.audit_logger,
            publisher=publisher,
            clock=clock,
            event_active_days=self._event_active_days,
        )
        self.ingestion = IngestionService(
            repository=self.events,
            anonymizer=self.anonymizer,
            config=ingestion_config,
            audit_logger=self.audit_logger,
            on_persisted=self.aggregation.enqueue_for_events,
            clock=clock,
        )

        retention_config = retention_config or RetentionConfig()
        self.retention = RetentionExecutor(
            repositories={
                self.events.table_name: self.events,
                self.rollups.table_name: self.rollups,
            },
            event_repository=self.events,
            anonymizer=self.anonymizer,
            config=retention_config,
            audit_logger=self.audit_logger,
            lock=RetentionLock(retention_config.lock_id, connection_manager),
            clock=clock,
        )
        self.scheduler: Optional[PipelineScheduler] = None

        logger.info(
            "PIPELINE_INITIALIZED",
            extra={"storage": "postgres" if connection_manager else "memory"}
        )

    def _event_active_days(self) -> int:
        policy = self.retention.config.policy(EVENTS_POLICY)
        return policy.active_days if policy is not None else self.aggregation.config.max_rebuild_days

    @classmethod
    def from_env(cls) -> "Pipeline":
        """Build from ``HEROTRACK_*`` environment variables.

        ``HEROTRACK_ROLLUP_STREAM`` switches aggregation to publishing dirty
        buckets to that Kinesis stream; aggregation hosts consume it with
        ``aggregation_service.stream_consumer.lambda_handler``.
        """
        stream = os.getenv("HEROTRACK_ROLLUP_STREAM")
        return cls(
            connection_manager=storage_connection_manager(),
            ingestion_config=IngestionConfig.from_env(),
            aggregation_config=AggregationConfig.from_env(),
            retention_config=RetentionConfig.from_env(),
            anonymizer_config=AnonymizerConfig.from_env(),
            publisher=RollupWorkPublisher(stream_name=stream) if stream else None,
        )

    def start_scheduler(self) -> PipelineScheduler:
        if self.scheduler is None:
            self.scheduler = PipelineScheduler(self.retention, engine=self.aggregation)
        self.scheduler.start()
        return self.scheduler

    def health(self) -> Dict[str, Any]:
        """Operator view: queue depth, retries, last successful runs."""
        last_run = self.retention.last_summary
        storage = (
            self.connection_manager.health_check()
            if self.connection_manager is not None
            else {"status": "memory"}
        )
        return {
            "storage": storage,
            "ingestion": self.ingestion.stats(),
            "aggregation": self.aggregation.stats(),
            "retention": {
                "last_run": last_run.to_dict() if last_run else None,
                "policies": [p.to_dict() for p in self.retention.config.policies],
            },
            "scheduler": self.scheduler.stats() if self.scheduler else {"is_running": False},
        }

    def shutdown(self) -> None:
        if self.scheduler is not None:
            self.scheduler.shutdown()
        self.aggregation.shutdown()
        if self.connection_manager is not None:
            self.connection_manager.close()
        logger.info("PIPELINE_SHUTDOWN")


# Global pipeline instance
_pipeline: Optional[Pipeline] = None


def get_pipeline() -> Pipeline:
    """Get or create the process-wide pipeline."""
    global _pipeline
    if _pipeline is None:
        _pipeline = Pipeline.from_env()
    return _pipeline


def set_pipeline(pipeline: Optional[Pipeline]) -> None:
    """Replace the process-wide pipeline (for testing)."""
    global _pipeline
    _pipeline = pipeline
