"""Device-side pipeline configuration."""
import os
from dataclasses import dataclass


@dataclass(frozen=True)
class ClientConfig:
    """Settings for capture, local storage and upload.

    Attributes:
        database_path: SQLite file holding the local queue and salts
        ingest_url: Base URL of the ingestion service
        scope_token: Opaque classroom-scope token from the auth layer
        request_timeout_seconds: Bound on each upload call
        max_queue_events: Queue capacity before oldest-first eviction
        batch_history_days: How long acknowledged batch bookkeeping is kept
        max_backoff_seconds: Ceiling for retry delays
        retry_jitter: Fraction of the delay added as random jitter
    """
    database_path: str = "herotrack_events.db"
    ingest_url: str = "http://localhost:8080"
    scope_token: str = ""
    request_timeout_seconds: float = 20.0
    max_queue_events: int = 20000
    batch_history_days: int = 7
    max_backoff_seconds: float = 3600.0
    retry_jitter: float = 0.1

    def __post_init__(self):
        if self.request_timeout_seconds <= 0:
            raise ValueError("request_timeout_seconds must be positive")
        if self.max_queue_events < 1:
            raise ValueError("max_queue_events must be at least 1")
        if not 0 <= self.retry_jitter <= 1:
            raise ValueError("retry_jitter must be between 0 and 1")

    @classmethod
    def from_env(cls) -> "ClientConfig":
        """Create config from HEROTRACK_CLIENT_* environment variables."""
        return cls(
            database_path=os.getenv("HEROTRACK_CLIENT_DB_PATH", "herotrack_events.db"),
            ingest_url=os.getenv("HEROTRACK_CLIENT_INGEST_URL", "http://localhost:8080"),
            scope_token=os.getenv("HEROTRACK_CLIENT_SCOPE_TOKEN", ""),
            request_timeout_seconds=float(os.getenv("HEROTRACK_CLIENT_TIMEOUT_SECONDS", "20")),
            max_queue_events=int(os.getenv("HEROTRACK_CLIENT_MAX_QUEUE_EVENTS", "20000")),
            batch_history_days=int(os.getenv("HEROTRACK_CLIENT_BATCH_HISTORY_DAYS", "7")),
            max_backoff_seconds=float(os.getenv("HEROTRACK_CLIENT_MAX_BACKOFF_SECONDS", "3600")),
            retry_jitter=float(os.getenv("HEROTRACK_CLIENT_RETRY_JITTER", "0.1")),
        )
