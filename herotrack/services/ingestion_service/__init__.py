"""Ingestion Service: validates, deduplicates and persists event batches.

Endpoints:
- GET /health - Health check
- GET /ready - Readiness check
- POST /v1/batches - Submit a batch
"""

from .event_repository import EventRepository, PersistOutcome
from .ingestor import (
    GrowthIndicatorPolicy,
    IngestionConfig,
    IngestionService,
    IngestResult,
)
from .validator import BatchValidator, ValidatedEvent, check_pii

__all__ = [
    "EventRepository",
    "PersistOutcome",
    "GrowthIndicatorPolicy",
    "IngestionConfig",
    "IngestionService",
    "IngestResult",
    "BatchValidator",
    "ValidatedEvent",
    "check_pii",
]
