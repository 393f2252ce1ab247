"""Device-side capture, local queue and sync for herotrack analytics."""
from .batch_assembler import BatchAssembler
from .config import ClientConfig
from .event_store import LocalEventStore
from .local_salts import LocalSaltStore
from .recorder import EventRecorder
from .sync_coordinator import (
    BatchHealthReport,
    SyncCoordinator,
    SyncOutcome,
    SyncState,
    compute_backoff,
)
from .sync_policy import (
    BatteryLevel,
    DeviceConditions,
    NetworkQuality,
    SyncStrategy,
    select_strategy,
)
from .transport import HttpBatchTransport, UploadResult

__all__ = [
    "BatchAssembler",
    "ClientConfig",
    "LocalEventStore",
    "LocalSaltStore",
    "EventRecorder",
    "BatchHealthReport",
    "SyncCoordinator",
    "SyncOutcome",
    "SyncState",
    "compute_backoff",
    "BatteryLevel",
    "DeviceConditions",
    "NetworkQuality",
    "SyncStrategy",
    "select_strategy",
    "HttpBatchTransport",
    "UploadResult",
]
