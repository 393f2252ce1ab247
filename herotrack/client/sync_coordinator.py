"""Background upload loop with an explicit per-batch state machine.

    Idle -> Assembling -> Uploading -> AwaitingAck -> Acknowledged
                                           |      -> Rejected
                                           +----> Retrying -> Uploading

A batch is deleted from the device only after the server acknowledges
it. Transient failures keep the same batch id for the next attempt;
once attempts run out the events go back to the queue. Nothing is
dropped on a timeout.

Only one upload is in flight at a time. If the process stops while a
batch is awaiting acknowledgment, the batch resumes at Retrying on the
next start.
"""
import asyncio
import logging
import random
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, FrozenSet, List, Optional

from herotrack.shared.errors import (
    AuthorizationError,
    InvalidTransition,
    TransientNetworkError,
    ValidationError,
)
from herotrack.shared.models import Batch
from herotrack.shared.utils.clock import utc_now

from .batch_assembler import BatchAssembler
from .config import ClientConfig
from .event_store import LocalEventStore
from .sync_policy import (
    STRATEGY_PROFILES,
    BatchProfile,
    DeviceConditions,
    SyncStrategy,
    select_strategy,
)

logger = logging.getLogger(__name__)

# Extra time the coordinator allows beyond the transport's own timeout
TIMEOUT_GRACE_SECONDS = 5.0

# Health thresholds
UNHEALTHY_FAILED_BATCHES = 10
CONCERNING_PENDING_BATCHES = 20
BACKLOG_EVENTS = 1000
WARN_FAILED_BATCHES = 5
WARN_PENDING_BATCHES = 15
WARN_EVENTS = 500


class SyncState(Enum):
    IDLE = "idle"
    ASSEMBLING = "assembling"
    UPLOADING = "uploading"
    AWAITING_ACK = "awaiting_ack"
    ACKNOWLEDGED = "acknowledged"
    REJECTED = "rejected"
    RETRYING = "retrying"


ALLOWED_TRANSITIONS: Dict[SyncState, FrozenSet[SyncState]] = {
    SyncState.IDLE: frozenset({SyncState.ASSEMBLING, SyncState.UPLOADING}),
    SyncState.ASSEMBLING: frozenset({SyncState.UPLOADING, SyncState.IDLE}),
    SyncState.UPLOADING: frozenset({SyncState.AWAITING_ACK, SyncState.RETRYING}),
    SyncState.AWAITING_ACK: frozenset({
        SyncState.ACKNOWLEDGED, SyncState.REJECTED, SyncState.RETRYING,
    }),
    SyncState.ACKNOWLEDGED: frozenset({SyncState.IDLE}),
    SyncState.REJECTED: frozenset({SyncState.IDLE}),
    SyncState.RETRYING: frozenset({
        SyncState.UPLOADING, SyncState.ASSEMBLING, SyncState.IDLE,
    }),
}


class SyncOutcome(Enum):
    """Result of one coordinator cycle."""
    GATED = "gated"
    IDLE = "idle"
    WAITING = "waiting"
    ACKNOWLEDGED = "acknowledged"
    REJECTED = "rejected"
    RETRY_SCHEDULED = "retry_scheduled"
    REQUEUED = "requeued"
    SCOPE_DENIED = "scope_denied"


def compute_backoff(
    attempt: int,
    base_seconds: float,
    max_seconds: float = 3600.0,
    jitter: float = 0.1,
    rng: Optional[random.Random] = None,
) -> float:
    """Delay before the next attempt of a batch.

    ``base * 2^(attempt-1)``, capped at ``max_seconds``, plus up to
    ``jitter`` of itself at random.
    """
    rng = rng or random
    exponent = max(attempt - 1, 0)
    delay = min(max_seconds, base_seconds * (2 ** exponent))
    return delay + rng.uniform(0, delay * jitter)


@dataclass(frozen=True)
class BatchHealthReport:
    """Operator-facing summary of the device queue."""
    queue_depth: int
    awaiting_anonymization: int
    pending_batches: int
    retrying_batches: int
    failed_batches: int
    retry_rate: float
    last_successful_sync: Optional[datetime]
    strategy: Optional[str]
    state: str
    status: str
    recommendations: List[str] = field(default_factory=list)
    uploads_paused: bool = False


class SyncCoordinator:
    """Drives assembly, upload and acknowledgment of batches."""

    def __init__(
        self,
        store: LocalEventStore,
        assembler: BatchAssembler,
        transport,
        conditions_provider: Callable[[], DeviceConditions],
        config: Optional[ClientConfig] = None,
        clock: Callable[[], datetime] = utc_now,
        rng: Optional[random.Random] = None,
    ):
        """Initialize the coordinator.

        Args:
            store: Local event store
            assembler: Batch assembler over the same store
            transport: Object with ``async send(batch) -> UploadResult``
            conditions_provider: Returns the current device conditions
            config: Client settings
            clock: Source of the current time
            rng: Random source for backoff jitter
        """
        self.store = store
        self.assembler = assembler
        self.transport = transport
        self.conditions_provider = conditions_provider
        self.config = config or ClientConfig()
        self._clock = clock
        self._rng = rng or random.Random()

        self.state = SyncState.IDLE
        self.current_batch_id: Optional[str] = None
        self.last_strategy: Optional[SyncStrategy] = None
        self.last_successful_sync: Optional[datetime] = None
        self.scope_denied = False
        self._stopping = False
        self._wake = asyncio.Event()
        self._last_cleanup: Optional[datetime] = None

    def _transition(self, new_state: SyncState) -> None:
        if new_state not in ALLOWED_TRANSITIONS[self.state]:
            raise InvalidTransition(f"{self.state.value} -> {new_state.value}")
        logger.debug(
            "SYNC_STATE_CHANGED",
            extra={
                "from_state": self.state.value,
                "to_state": new_state.value,
                "batch_id": self.current_batch_id,
            }
        )
        self.state = new_state

    def _settle(self) -> None:
        """Leave terminal states at the start of a cycle."""
        if self.state in (SyncState.ACKNOWLEDGED, SyncState.REJECTED):
            self._transition(SyncState.IDLE)
            self.current_batch_id = None

    def recover(self) -> int:
        """Resume batches a previous process left awaiting acknowledgment."""
        recovered = self.store.recover_in_flight()
        if self.state is SyncState.AWAITING_ACK:
            self._transition(SyncState.RETRYING)
        elif recovered and self.state is SyncState.IDLE:
            # Fresh process: the interrupted batch resumes at Retrying
            self.state = SyncState.RETRYING
        return recovered

    def current_profile(self) -> BatchProfile:
        strategy = select_strategy(self.conditions_provider())
        if strategy is not self.last_strategy:
            logger.info(
                "SYNC_STRATEGY_SELECTED",
                extra={
                    "strategy": strategy.value,
                    "previous": self.last_strategy.value if self.last_strategy else None,
                }
            )
        self.last_strategy = strategy
        return STRATEGY_PROFILES[strategy]

    async def run_once(self) -> SyncOutcome:
        """Run one sync cycle: pick a batch, upload it, record the outcome."""
        self._settle()
        if self.scope_denied:
            return SyncOutcome.SCOPE_DENIED
        profile = self.current_profile()
        if not profile.allows_upload:
            return SyncOutcome.GATED

        due = self.store.due_batches(self._clock())
        if due:
            return await self._upload(due[0], profile)

        if self.store.next_retry_at() is not None:
            return SyncOutcome.WAITING

        self._transition(SyncState.ASSEMBLING)
        batch = self.assembler.assemble(profile)
        if batch is None:
            self._transition(SyncState.IDLE)
            return SyncOutcome.IDLE
        return await self._upload(batch, profile)

    async def _upload(self, batch: Batch, profile: BatchProfile) -> SyncOutcome:
        self.current_batch_id = batch.batch_id
        self._transition(SyncState.UPLOADING)
        attempt = self.store.mark_in_flight(batch.batch_id)
        self._transition(SyncState.AWAITING_ACK)

        logger.info(
            "BATCH_UPLOAD_STARTED",
            extra={
                "batch_id": batch.batch_id,
                "event_count": len(batch.events),
                "attempt": attempt,
                "strategy": self.last_strategy.value if self.last_strategy else None,
            }
        )

        try:
            result = await asyncio.wait_for(
                self.transport.send(batch),
                timeout=self.config.request_timeout_seconds + TIMEOUT_GRACE_SECONDS,
            )
        except ValidationError as e:
            self.store.discard(batch.batch_id, e.reason)
            self._transition(SyncState.REJECTED)
            logger.warning(
                "BATCH_REJECTED_BY_SERVER",
                extra={"batch_id": batch.batch_id, "reason": e.reason, "event_id": e.event_id}
            )
            return SyncOutcome.REJECTED
        except AuthorizationError as e:
            return self._handle_scope_denied(batch, str(e))
        except (TransientNetworkError, asyncio.TimeoutError) as e:
            return self._handle_failure(batch, attempt, profile, str(e) or type(e).__name__)
        except Exception as e:
            # The outcome is unknown, so the batch is retried under the same id
            logger.error(
                "BATCH_UPLOAD_UNEXPECTED_ERROR",
                extra={"batch_id": batch.batch_id, "error_type": type(e).__name__, "error": str(e)},
                exc_info=True,
            )
            return self._handle_failure(batch, attempt, profile, f"{type(e).__name__}: {e}")

        self.store.acknowledge(batch.batch_id)
        self._transition(SyncState.ACKNOWLEDGED)
        self.last_successful_sync = self._clock()

        logger.info(
            "BATCH_UPLOAD_ACKNOWLEDGED",
            extra={
                "batch_id": batch.batch_id,
                "duplicate": result.duplicate,
                "attempt": attempt,
            }
        )
        return SyncOutcome.ACKNOWLEDGED

    def _handle_failure(
        self,
        batch: Batch,
        attempt: int,
        profile: BatchProfile,
        error: str,
    ) -> SyncOutcome:
        self._transition(SyncState.RETRYING)

        if attempt >= profile.max_attempts:
            self.store.release(batch.batch_id, reason=f"retries_exhausted after {attempt}: {error}")
            self._transition(SyncState.IDLE)
            self.current_batch_id = None
            return SyncOutcome.REQUEUED

        delay = compute_backoff(
            attempt,
            profile.base_retry_seconds,
            max_seconds=self.config.max_backoff_seconds,
            jitter=self.config.retry_jitter,
            rng=self._rng,
        )
        next_attempt_at = self._clock() + timedelta(seconds=delay)
        self.store.mark_retrying(batch.batch_id, next_attempt_at, error)

        logger.warning(
            "BATCH_UPLOAD_FAILED",
            extra={
                "batch_id": batch.batch_id,
                "attempt": attempt,
                "max_attempts": profile.max_attempts,
                "retry_in_seconds": round(delay, 1),
                "error": error,
            }
        )
        return SyncOutcome.RETRY_SCHEDULED

    def _handle_scope_denied(self, batch: Batch, error: str) -> SyncOutcome:
        """Requeue the batch and pause uploads until ``reauthorize()``.

        The same scope token will never be accepted, so retrying only
        burns attempts. The events stay on the device.
        """
        self._transition(SyncState.RETRYING)
        self.store.release(batch.batch_id, reason=f"scope_denied: {error}")
        self._transition(SyncState.IDLE)
        self.current_batch_id = None
        self.scope_denied = True

        logger.error(
            "SYNC_PAUSED_SCOPE_DENIED",
            extra={"batch_id": batch.batch_id, "error": error}
        )
        return SyncOutcome.SCOPE_DENIED

    def reauthorize(self) -> None:
        """Resume uploads after the device's scope token was replaced."""
        if self.scope_denied:
            self.scope_denied = False
            logger.info("SYNC_RESUMED_AFTER_REAUTHORIZATION")
        self._wake.set()

    def _idle_delay(self, outcome: SyncOutcome) -> float:
        if outcome in (SyncOutcome.ACKNOWLEDGED, SyncOutcome.REJECTED, SyncOutcome.REQUEUED):
            return 0.0
        profile = STRATEGY_PROFILES[self.last_strategy or SyncStrategy.DISABLED]
        delay = float(profile.interval_seconds)
        next_retry = self.store.next_retry_at()
        if next_retry is not None:
            until_retry = (next_retry - self._clock()).total_seconds()
            delay = min(delay, max(until_retry, 0.0))
        return delay

    def _maybe_cleanup(self) -> None:
        now = self._clock()
        if self._last_cleanup is None or now - self._last_cleanup >= timedelta(hours=1):
            self.store.cleanup_batches(self.config.batch_history_days)
            self._last_cleanup = now

    async def _sleep(self, seconds: float) -> None:
        if seconds <= 0:
            await asyncio.sleep(0)
            return
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
        self._wake.clear()

    def notify_conditions_changed(self) -> None:
        """Wake the loop early, e.g. when connectivity returns."""
        self._wake.set()

    def stop(self) -> None:
        self._stopping = True
        self._wake.set()

    async def run_forever(self) -> None:
        """Sync until ``stop()`` is called or the task is cancelled."""
        self._stopping = False
        self.recover()
        logger.info("SYNC_COORDINATOR_STARTED", extra={"depth": self.store.depth()})

        while not self._stopping:
            self._maybe_cleanup()
            outcome = await self.run_once()
            await self._sleep(self._idle_delay(outcome))

        logger.info("SYNC_COORDINATOR_STOPPED", extra={"state": self.state.value})

    def health_report(self) -> BatchHealthReport:
        """Queue health for the administrative interface."""
        stats = self.store.stats()
        batches = stats["batches"]
        pending = batches["assembled"] + batches["in_flight"] + batches["retrying"]
        failed = batches["retrying"] + batches["rejected"]
        depth = stats["depth"]
        total_attempts = stats["total_attempts"]
        retry_rate = stats["retry_attempts"] / total_attempts if total_attempts else 0.0

        if failed > UNHEALTHY_FAILED_BATCHES:
            status = "unhealthy"
        elif pending > CONCERNING_PENDING_BATCHES:
            status = "concerning"
        elif depth > BACKLOG_EVENTS:
            status = "backlog"
        else:
            status = "healthy"

        recommendations = []
        if failed > WARN_FAILED_BATCHES:
            recommendations.append(
                f"{failed} batches are failing; check network connectivity and server status"
            )
        if pending > WARN_PENDING_BATCHES:
            recommendations.append(
                f"{pending} batches are pending; connect to Wi-Fi to drain them faster"
            )
        if depth > WARN_EVENTS:
            recommendations.append(
                f"{depth} events are queued on the device; sync on a faster network"
            )
        if stats["awaiting_anonymization"]:
            recommendations.append(
                f"{stats['awaiting_anonymization']} events are waiting for a daily salt"
            )
        if self.scope_denied:
            recommendations.append(
                "Uploads are paused: the server refused this device's classroom scope; re-enroll the device"
            )

        return BatchHealthReport(
            queue_depth=depth,
            awaiting_anonymization=stats["awaiting_anonymization"],
            pending_batches=pending,
            retrying_batches=batches["retrying"],
            failed_batches=failed,
            retry_rate=round(retry_rate, 4),
            last_successful_sync=self.last_successful_sync or stats["last_acknowledged_at"],
            strategy=self.last_strategy.value if self.last_strategy else None,
            state=self.state.value,
            status=status,
            recommendations=recommendations,
            uploads_paused=self.scope_denied,
        )
