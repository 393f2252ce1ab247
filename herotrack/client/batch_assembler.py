"""Groups queued events into bounded upload batches."""
import logging
from typing import Optional

from herotrack.shared.anonymizer import Anonymizer
from herotrack.shared.errors import SaltUnavailable
from herotrack.shared.models import Batch, new_id

from .event_store import LocalEventStore
from .sync_policy import BatchProfile

logger = logging.getLogger(__name__)


class BatchAssembler:
    """Builds the next batch from the local store.

    Events captured while no salt was available are hashed here before
    they become eligible; until then they stay queued on the device.
    """

    def __init__(self, store: LocalEventStore, anonymizer: Optional[Anonymizer] = None):
        self.store = store
        self.anonymizer = anonymizer

    def anonymize_pending(self, limit: int = 500) -> int:
        """Hash queued events that still carry a local subject id.

        Returns:
            Number of events anonymized
        """
        pending = self.store.pending_subject_events(limit)
        if not pending or self.anonymizer is None:
            return 0

        anonymized = 0
        waiting = 0
        for item in pending:
            try:
                subject_hash = self.anonymizer.hash(
                    item.subject_local_id, item.classroom_scope, item.captured_at
                )
            except SaltUnavailable:
                waiting += 1
                continue
            if self.store.attach_subject_hash(item.event_id, subject_hash):
                anonymized += 1

        if waiting:
            logger.warning(
                "EVENTS_AWAITING_SALT",
                extra={"events": waiting, "anonymized": anonymized}
            )
        elif anonymized:
            logger.info("PENDING_EVENTS_ANONYMIZED", extra={"events": anonymized})
        return anonymized

    def assemble(self, profile: BatchProfile) -> Optional[Batch]:
        """Reserve the oldest eligible events as a new batch.

        Args:
            profile: Size limits from the current sync strategy

        Returns:
            The new batch, or None when nothing is eligible
        """
        if not profile.allows_upload:
            return None

        self.anonymize_pending()
        events = self.store.next_batch(profile.max_events, profile.max_bytes)
        if not events:
            return None

        batch = Batch(batch_id=new_id(), events=events)
        self.store.mark_batched(batch.batch_id, batch.event_ids)
        return batch
