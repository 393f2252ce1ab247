"""Capture interface called by the UI layer.

``record_event`` never raises and never waits on the network: the event
is sanitized, anonymized when a salt is available, and appended to the
local queue. Anything that goes wrong is logged and the event is dropped.
"""
import logging
from typing import Any, Callable, Dict, Optional, Union

from herotrack.shared.anonymizer import Anonymizer
from herotrack.shared.errors import CaptureError, SaltUnavailable, ValidationError
from herotrack.shared.models import Category, Event, canonical_json, new_id
from herotrack.shared.models.events import MAX_METADATA_BYTES, MAX_METADATA_KEYS
from herotrack.shared.utils.clock import format_timestamp, utc_now
from herotrack.shared.utils.pii import MAX_FREE_TEXT_LENGTH, sanitize_metadata

from .event_store import LocalEventStore

logger = logging.getLogger(__name__)


def bound_metadata(metadata: Dict[str, Any]) -> Dict[str, Any]:
    """Trim a clean metadata map to the key-count and byte limits."""
    bounded = {k: metadata[k] for k in sorted(metadata)[:MAX_METADATA_KEYS]}
    while bounded and len(canonical_json(bounded).encode("utf-8")) > MAX_METADATA_BYTES:
        bounded.pop(sorted(bounded)[-1])
    return bounded


class EventRecorder:
    """Local event recorder with a facilitator consent gate."""

    def __init__(
        self,
        store: LocalEventStore,
        anonymizer: Optional[Anonymizer] = None,
        consent_granted: bool = False,
        clock: Callable = utc_now,
        max_text_length: int = MAX_FREE_TEXT_LENGTH,
    ):
        self.store = store
        self.anonymizer = anonymizer
        self.consent_granted = consent_granted
        self.max_text_length = max_text_length
        self._clock = clock

    def grant_consent(self) -> None:
        self.consent_granted = True
        logger.info("ANALYTICS_CONSENT_GRANTED")

    def withdraw_consent(self, operator: str = "facilitator") -> int:
        """Stop capturing and clear everything still on the device.

        Returns:
            Number of queued events deleted
        """
        self.consent_granted = False
        cleared = self.store.purge(reason="consent_withdrawn", operator=operator)
        logger.warning("ANALYTICS_CONSENT_WITHDRAWN", extra={"events_cleared": cleared})
        return cleared

    def record_event(
        self,
        classroom_scope: str,
        category: Union[Category, str],
        interaction_type: str,
        score: int,
        metadata: Optional[Dict[str, Any]] = None,
        lesson_id: Optional[str] = None,
        subject_local_id: Optional[str] = None,
    ) -> None:
        """Record one behavioral observation.

        Args:
            classroom_scope: Classroom the observation belongs to
            category: Behavioral category
            interaction_type: Short lowercase interaction code
            score: Integer score 1-5
            metadata: Optional structured context (sanitized before storage)
            lesson_id: Optional lesson the observation belongs to
            subject_local_id: Device-local student reference, hashed before
                the event leaves the device. Observations without one are
                dropped, since every stored event carries a subject hash
        """
        if not self.consent_granted:
            logger.debug("CAPTURE_SKIPPED_NO_CONSENT")
            return

        try:
            self._record(
                classroom_scope, category, interaction_type, score,
                metadata, lesson_id, subject_local_id,
            )
        except (ValidationError, CaptureError, ValueError) as e:
            logger.warning(
                "CAPTURE_DROPPED",
                extra={
                    "error_type": type(e).__name__,
                    "reason": getattr(e, "reason", None),
                    "classroom_scope": classroom_scope if isinstance(classroom_scope, str) else None,
                }
            )
        except Exception as e:
            logger.error("CAPTURE_FAILED", extra={"error_type": type(e).__name__})

    def _record(
        self,
        classroom_scope: str,
        category: Union[Category, str],
        interaction_type: str,
        score: int,
        metadata: Optional[Dict[str, Any]],
        lesson_id: Optional[str],
        subject_local_id: Optional[str],
    ) -> None:
        if not subject_local_id:
            raise CaptureError("Observation has no subject")

        clean, _ = sanitize_metadata(metadata or {}, self.max_text_length)
        captured_at = self._clock()

        subject_hash = None
        pending_subject = None
        if self.anonymizer is None:
            pending_subject = subject_local_id
        else:
            try:
                subject_hash = self.anonymizer.hash(
                    subject_local_id, classroom_scope, captured_at
                )
            except SaltUnavailable:
                pending_subject = subject_local_id

        event = Event.from_wire({
            "event_id": new_id(),
            "classroom_scope": classroom_scope,
            "lesson_id": lesson_id,
            "category": category.value if isinstance(category, Category) else category,
            "interaction_type": interaction_type,
            "score": score,
            "metadata": bound_metadata(clean),
            "captured_at": format_timestamp(captured_at),
            "subject_hash": subject_hash,
        })

        self.store.enqueue(event, subject_local_id=pending_subject)
