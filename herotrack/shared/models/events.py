"""Behavioral event and batch domain models.

An Event is one anonymized observation of a student's behavior inside a
classroom. Events are immutable once captured; a Batch is the ordered,
size-bounded unit the client uploads under an idempotency id.
"""
import json
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from herotrack.shared.errors import ValidationError
from herotrack.shared.utils.clock import (
    ensure_utc,
    format_timestamp,
    parse_timestamp,
    utc_now,
)

INTERACTION_TYPE_PATTERN = re.compile(r"^[a-z][a-z0-9_]{0,63}$")
SUBJECT_HASH_PATTERN = re.compile(r"^[0-9a-f]{64}$")

MIN_SCORE = 1
MAX_SCORE = 5
MAX_METADATA_KEYS = 32
MAX_METADATA_BYTES = 2048
MAX_ID_LENGTH = 64

WIRE_FIELDS = frozenset({
    "event_id",
    "classroom_scope",
    "lesson_id",
    "category",
    "interaction_type",
    "score",
    "metadata",
    "captured_at",
    "subject_hash",
})

# Accepted on the wire only so the server can hash it before persistence
TRANSIENT_FIELDS = frozenset({"subject_local_id"})


class Category(Enum):
    """Behavioral focus areas tracked by the program."""
    EMPATHY = "empathy"
    CONFIDENCE = "confidence"
    COMMUNICATION = "communication"
    LEADERSHIP = "leadership"
    KINDNESS = "kindness"
    COURAGE = "courage"


def canonical_json(value: Any) -> str:
    """Compact, key-sorted JSON used for sizing and fingerprints."""
    return json.dumps(value, separators=(",", ":"), sort_keys=True, default=str)


def is_valid_uuid(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    try:
        uuid.UUID(value)
    except ValueError:
        return False
    return True


def new_id() -> str:
    """Client-generated identifier for events and batches."""
    return str(uuid.uuid4())


@dataclass(frozen=True)
class Event:
    """One behavioral observation.

    Carries no identifying data: the subject is represented only by a
    per-day anonymized hash. ``growth_indicator`` and ``received_at``
    are assigned server-side at ingestion.
    """
    event_id: str
    classroom_scope: str
    category: Category
    interaction_type: str
    score: int
    captured_at: datetime
    subject_hash: Optional[str] = None
    lesson_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    growth_indicator: bool = False
    received_at: Optional[datetime] = None

    def __post_init__(self):
        if not MIN_SCORE <= self.score <= MAX_SCORE:
            raise ValueError(f"Score must be {MIN_SCORE}-{MAX_SCORE}, got {self.score}")

    @property
    def is_anonymized(self) -> bool:
        return self.subject_hash is not None

    def to_wire(self) -> Dict[str, Any]:
        """Convert to the upload payload representation."""
        return {
            "event_id": self.event_id,
            "classroom_scope": self.classroom_scope,
            "lesson_id": self.lesson_id,
            "category": self.category.value,
            "interaction_type": self.interaction_type,
            "score": self.score,
            "metadata": self.metadata,
            "captured_at": format_timestamp(self.captured_at),
            "subject_hash": self.subject_hash,
        }

    def to_record(self) -> Dict[str, Any]:
        """Convert to the persisted representation (wire + server fields)."""
        record = self.to_wire()
        record["growth_indicator"] = self.growth_indicator
        record["received_at"] = format_timestamp(self.received_at)
        return record

    def serialized_size(self) -> int:
        """Size in bytes of the event on the wire."""
        return len(canonical_json(self.to_wire()).encode("utf-8"))

    @classmethod
    def from_wire(cls, data: Any) -> "Event":
        """Parse an event from its wire representation.

        Structural problems (wrong types, missing or unknown fields) raise
        ValidationError with reason ``malformed``; out-of-range values raise
        reason ``validation``. Identifying unknown fields are reported as
        ``pii-detected`` by the ingestion validator before this is called.

        Args:
            data: Decoded JSON object

        Returns:
            Event instance

        Raises:
            ValidationError: If the payload cannot be accepted
        """
        if not isinstance(data, dict):
            raise ValidationError(ValidationError.MALFORMED, "Event must be an object")

        event_id = data.get("event_id")
        if not is_valid_uuid(event_id):
            raise ValidationError(ValidationError.MALFORMED, "event_id must be a UUID")

        unknown = set(data) - WIRE_FIELDS - TRANSIENT_FIELDS
        if unknown:
            raise ValidationError(
                ValidationError.MALFORMED,
                f"Unknown event fields: {sorted(unknown)}",
                event_id=event_id,
            )

        def require_str(name: str, optional: bool = False) -> Optional[str]:
            value = data.get(name)
            if value is None and optional:
                return None
            if not isinstance(value, str) or not value or len(value) > MAX_ID_LENGTH:
                raise ValidationError(
                    ValidationError.MALFORMED,
                    f"{name} must be a non-empty string of at most {MAX_ID_LENGTH} chars",
                    event_id=event_id,
                )
            return value

        classroom_scope = require_str("classroom_scope")
        lesson_id = require_str("lesson_id", optional=True)
        category_value = require_str("category")
        interaction_type = require_str("interaction_type")

        score = data.get("score")
        if isinstance(score, bool) or not isinstance(score, int):
            raise ValidationError(
                ValidationError.MALFORMED, "score must be an integer", event_id=event_id
            )

        metadata = data.get("metadata", {})
        if metadata is None:
            metadata = {}
        if not isinstance(metadata, dict):
            raise ValidationError(
                ValidationError.MALFORMED, "metadata must be an object", event_id=event_id
            )

        try:
            captured_at = parse_timestamp(data.get("captured_at"))
        except (TypeError, ValueError):
            raise ValidationError(
                ValidationError.MALFORMED,
                "captured_at must be an ISO-8601 timestamp",
                event_id=event_id,
            )

        subject_hash = data.get("subject_hash")
        if subject_hash is not None and not isinstance(subject_hash, str):
            raise ValidationError(
                ValidationError.MALFORMED, "subject_hash must be a string", event_id=event_id
            )

        try:
            category = Category(category_value)
        except ValueError:
            raise ValidationError(
                ValidationError.VALIDATION,
                f"Unrecognized category: {category_value}",
                event_id=event_id,
            )

        if not MIN_SCORE <= score <= MAX_SCORE:
            raise ValidationError(
                ValidationError.VALIDATION,
                f"score must be between {MIN_SCORE} and {MAX_SCORE}",
                event_id=event_id,
            )

        if not INTERACTION_TYPE_PATTERN.match(interaction_type):
            raise ValidationError(
                ValidationError.VALIDATION,
                "interaction_type must be a short lowercase code",
                event_id=event_id,
            )

        if subject_hash is not None and not SUBJECT_HASH_PATTERN.match(subject_hash):
            raise ValidationError(
                ValidationError.VALIDATION,
                "subject_hash must be 64 lowercase hex characters",
                event_id=event_id,
            )

        if len(metadata) > MAX_METADATA_KEYS:
            raise ValidationError(
                ValidationError.VALIDATION,
                f"metadata has more than {MAX_METADATA_KEYS} keys",
                event_id=event_id,
            )
        if len(canonical_json(metadata).encode("utf-8")) > MAX_METADATA_BYTES:
            raise ValidationError(
                ValidationError.VALIDATION,
                f"metadata exceeds {MAX_METADATA_BYTES} bytes",
                event_id=event_id,
            )

        return cls(
            event_id=event_id,
            classroom_scope=classroom_scope,
            lesson_id=lesson_id,
            category=category,
            interaction_type=interaction_type,
            score=score,
            metadata=metadata,
            captured_at=captured_at,
            subject_hash=subject_hash,
        )

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Event":
        """Rebuild a persisted event (trusted input)."""
        received_at = record.get("received_at")
        if isinstance(received_at, str):
            received_at = parse_timestamp(received_at)
        captured_at = record["captured_at"]
        if isinstance(captured_at, str):
            captured_at = parse_timestamp(captured_at)
        metadata = record.get("metadata") or {}
        if isinstance(metadata, str):
            metadata = json.loads(metadata)
        return cls(
            event_id=str(record["event_id"]),
            classroom_scope=record["classroom_scope"],
            lesson_id=record.get("lesson_id"),
            category=Category(record["category"]),
            interaction_type=record["interaction_type"],
            score=int(record["score"]),
            metadata=metadata,
            captured_at=ensure_utc(captured_at),
            subject_hash=record.get("subject_hash"),
            growth_indicator=bool(record.get("growth_indicator", False)),
            received_at=ensure_utc(received_at) if received_at else None,
        )


@dataclass
class Batch:
    """Ordered, size-bounded group of events with an idempotency id."""
    batch_id: str
    events: List[Event]
    created_at: datetime = field(default_factory=utc_now)
    attempts: int = 0

    @property
    def event_ids(self) -> List[str]:
        return [e.event_id for e in self.events]

    def to_payload(self) -> Dict[str, Any]:
        """Request body for the ingestion endpoint."""
        return {
            "batch_id": self.batch_id,
            "events": [e.to_wire() for e in self.events],
        }

    def serialized_size(self) -> int:
        return len(canonical_json(self.to_payload()).encode("utf-8"))
