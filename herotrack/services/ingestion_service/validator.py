"""Batch validation for the ingestion endpoint.

A batch is accepted or rejected as a whole. The PII scan runs over every
event before any other per-event check so that a single identifying value
fails the batch with ``pii-detected`` regardless of what else is wrong.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from herotrack.shared.errors import AuthorizationError, ValidationError
from herotrack.shared.models import Event, is_valid_uuid
from herotrack.shared.models.events import TRANSIENT_FIELDS, WIRE_FIELDS
from herotrack.shared.utils.clock import utc_now
from herotrack.shared.utils.pii import (
    MAX_FREE_TEXT_LENGTH,
    find_pii_in_text,
    is_identifying_key,
    scan_for_pii,
)

logger = logging.getLogger(__name__)

# Scalar fields that must never carry contact details
_SCANNED_FIELDS = ("classroom_scope", "lesson_id", "interaction_type")


@dataclass
class ValidatedEvent:
    """An event that passed validation, with its transient subject id if any."""
    event: Event
    subject_local_id: Optional[str] = None


def check_pii(raw: Dict[str, Any], max_text_length: int = MAX_FREE_TEXT_LENGTH) -> List[str]:
    """Kinds of PII found in one raw wire event."""
    kinds: List[str] = []
    for key in raw:
        if key in WIRE_FIELDS or key in TRANSIENT_FIELDS:
            continue
        if is_identifying_key(str(key)):
            kinds.append("identifying_key")
    for name in _SCANNED_FIELDS:
        value = raw.get(name)
        if isinstance(value, str):
            kinds.extend(find_pii_in_text(value))
    metadata = raw.get("metadata")
    if isinstance(metadata, (dict, list)):
        kinds.extend(f.kind for f in scan_for_pii(metadata, max_text_length=max_text_length))
    return kinds


class BatchValidator:
    """Validates a decoded batch against the ingestion rules."""

    def __init__(
        self,
        max_batch_events: int = 500,
        max_future_skew: timedelta = timedelta(days=1),
        max_text_length: int = MAX_FREE_TEXT_LENGTH,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.max_batch_events = max_batch_events
        self.max_future_skew = max_future_skew
        self.max_text_length = max_text_length
        self._clock = clock

    def validate_envelope(self, batch_id: Any, events: Any) -> None:
        """Check the batch id and the shape of the events array.

        Raises:
            ValidationError: ``malformed`` for a bad id or events array,
                ``validation`` for an oversized batch
        """
        if not is_valid_uuid(batch_id):
            raise ValidationError(ValidationError.MALFORMED, "batch_id must be a UUID")
        if not isinstance(events, list) or not events:
            raise ValidationError(
                ValidationError.MALFORMED, "events must be a non-empty array"
            )
        if len(events) > self.max_batch_events:
            raise ValidationError(
                ValidationError.VALIDATION,
                f"Batch has {len(events)} events, limit is {self.max_batch_events}",
            )

    def validate(
        self,
        batch_id: Any,
        events: Any,
        classroom_scope: Optional[str] = None,
    ) -> List[ValidatedEvent]:
        """Validate a whole batch.

        Args:
            batch_id: Client batch id
            events: Raw decoded events
            classroom_scope: Caller's scope token; every event must match it

        Returns:
            Validated events in submission order

        Raises:
            ValidationError: If any event fails; nothing in the batch is accepted
            AuthorizationError: If an event belongs to another classroom
        """
        self.validate_envelope(batch_id, events)

        for raw in events:
            if not isinstance(raw, dict):
                raise ValidationError(ValidationError.MALFORMED, "Event must be an object")
            kinds = check_pii(raw, self.max_text_length)
            if kinds:
                event_id = raw.get("event_id") if isinstance(raw.get("event_id"), str) else None
                logger.warning(
                    "PII_DETECTED_IN_BATCH",
                    extra={
                        "batch_id": batch_id,
                        "event_id": event_id,
                        "kinds": sorted(set(kinds)),
                    }
                )
                raise ValidationError(
                    ValidationError.PII_DETECTED,
                    f"Event contains identifying data ({', '.join(sorted(set(kinds)))})",
                    event_id=event_id,
                )

        horizon = self._clock() + self.max_future_skew
        seen = set()
        validated: List[ValidatedEvent] = []

        for raw in events:
            subject_local_id, raw = self._split_transient(raw)
            event = Event.from_wire(raw)

            if event.event_id in seen:
                raise ValidationError(
                    ValidationError.MALFORMED,
                    "Duplicate event_id within batch",
                    event_id=event.event_id,
                )
            seen.add(event.event_id)

            # Every stored event must carry a hash, either from the device or hashed here
            if event.subject_hash is None and subject_local_id is None:
                raise ValidationError(
                    ValidationError.VALIDATION,
                    "Event has neither subject_hash nor subject_local_id",
                    event_id=event.event_id,
                )

            if classroom_scope is not None and event.classroom_scope != classroom_scope:
                raise AuthorizationError(
                    f"Event {event.event_id} is outside the caller's classroom scope"
                )

            if event.captured_at > horizon:
                raise ValidationError(
                    ValidationError.VALIDATION,
                    "captured_at is too far in the future",
                    event_id=event.event_id,
                )

            validated.append(ValidatedEvent(event=event, subject_local_id=subject_local_id))

        return validated

    @staticmethod
    def _split_transient(raw: Dict[str, Any]) -> Tuple[Optional[str], Dict[str, Any]]:
        event_id = raw.get("event_id") if isinstance(raw.get("event_id"), str) else None
        if "subject_local_id" not in raw:
            return None, raw

        subject_local_id = raw["subject_local_id"]
        if subject_local_id is not None and (
            not isinstance(subject_local_id, str) or not subject_local_id
        ):
            raise ValidationError(
                ValidationError.MALFORMED,
                "subject_local_id must be a non-empty string",
                event_id=event_id,
            )
        if subject_local_id is not None and raw.get("subject_hash") is not None:
            raise ValidationError(
                ValidationError.MALFORMED,
                "Event carries both subject_hash and subject_local_id",
                event_id=event_id,
            )
        stripped = {k: v for k, v in raw.items() if k != "subject_local_id"}
        return subject_local_id, stripped
