"""Tests for batch validation rules."""
from datetime import datetime, timedelta, timezone

import pytest

from herotrack.services.ingestion_service.validator import BatchValidator, check_pii
from herotrack.shared.errors import AuthorizationError, ValidationError
from herotrack.shared.models import Category, new_id
from herotrack.shared.utils.clock import format_timestamp

NOW = datetime(2024, 3, 14, 10, 30, tzinfo=timezone.utc)
SCOPE = "class-a"


def wire_event(**overrides):
    event = {
        "event_id": new_id(),
        "classroom_scope": SCOPE,
        "lesson_id": "lesson-3",
        "category": "empathy",
        "interaction_type": "shared_feelings",
        "score": 4,
        "metadata": {"activity": "circle_time", "round": 2},
        "captured_at": format_timestamp(NOW - timedelta(hours=1)),
        "subject_hash": "a" * 64,
    }
    event.update(overrides)
    return event


@pytest.fixture
def validator():
    return BatchValidator(clock=lambda: NOW)


class TestEnvelope:
    def test_valid_batch_keeps_order(self, validator):
        events = [wire_event() for _ in range(3)]

        validated = validator.validate(new_id(), events, SCOPE)

        assert [v.event.event_id for v in validated] == [e["event_id"] for e in events]
        assert validated[0].event.category == Category.EMPATHY

    @pytest.mark.parametrize("batch_id", [None, "", "batch-1", 42])
    def test_batch_id_must_be_uuid(self, validator, batch_id):
        with pytest.raises(ValidationError) as exc:
            validator.validate(batch_id, [wire_event()])

        assert exc.value.reason == ValidationError.MALFORMED

    @pytest.mark.parametrize("events", [None, [], {"event_id": "x"}, "events"])
    def test_events_must_be_non_empty_array(self, validator, events):
        with pytest.raises(ValidationError) as exc:
            validator.validate(new_id(), events)

        assert exc.value.reason == ValidationError.MALFORMED

    def test_oversized_batch_rejected(self):
        validator = BatchValidator(max_batch_events=2, clock=lambda: NOW)

        with pytest.raises(ValidationError) as exc:
            validator.validate(new_id(), [wire_event() for _ in range(3)])

        assert exc.value.reason == ValidationError.VALIDATION

    def test_non_object_event_is_malformed(self, validator):
        with pytest.raises(ValidationError) as exc:
            validator.validate(new_id(), [wire_event(), "not-an-event"])

        assert exc.value.reason == ValidationError.MALFORMED


class TestPiiScan:
    def test_email_in_metadata(self, validator):
        bad = wire_event(metadata={"note": "reach me at kid@example.com"})

        with pytest.raises(ValidationError) as exc:
            validator.validate(new_id(), [wire_event(), bad])

        assert exc.value.reason == ValidationError.PII_DETECTED
        assert exc.value.event_id == bad["event_id"]

    def test_identifying_extra_field(self, validator):
        bad = wire_event(student_name="Ada")

        with pytest.raises(ValidationError) as exc:
            validator.validate(new_id(), [bad])

        assert exc.value.reason == ValidationError.PII_DETECTED

    def test_phone_in_lesson_id(self, validator):
        with pytest.raises(ValidationError) as exc:
            validator.validate(new_id(), [wire_event(lesson_id="555-123-4567")])

        assert exc.value.reason == ValidationError.PII_DETECTED

    def test_free_text_in_metadata(self, validator):
        with pytest.raises(ValidationError) as exc:
            validator.validate(new_id(), [wire_event(metadata={"reflection": "x" * 200})])

        assert exc.value.reason == ValidationError.PII_DETECTED

    def test_pii_takes_precedence_over_later_checks(self, validator):
        malformed = wire_event(score="high")
        leaking = wire_event(metadata={"contact": "a@b.org"})

        with pytest.raises(ValidationError) as exc:
            validator.validate(new_id(), [malformed, leaking])

        assert exc.value.reason == ValidationError.PII_DETECTED

    def test_check_pii_clean_event(self):
        assert check_pii(wire_event()) == []

    def test_subject_local_id_is_not_scanned_as_extra_field(self):
        raw = wire_event(subject_hash=None, subject_local_id="seat-12")

        assert check_pii(raw) == []


class TestEventRules:
    def test_unknown_non_identifying_field_is_malformed(self, validator):
        with pytest.raises(ValidationError) as exc:
            validator.validate(new_id(), [wire_event(colour="blue")])

        assert exc.value.reason == ValidationError.MALFORMED

    def test_out_of_range_score(self, validator):
        with pytest.raises(ValidationError) as exc:
            validator.validate(new_id(), [wire_event(score=7)])

        assert exc.value.reason == ValidationError.VALIDATION

    def test_unknown_category(self, validator):
        with pytest.raises(ValidationError) as exc:
            validator.validate(new_id(), [wire_event(category="bravery")])

        assert exc.value.reason == ValidationError.VALIDATION

    def test_bad_subject_hash_format(self, validator):
        with pytest.raises(ValidationError) as exc:
            validator.validate(new_id(), [wire_event(subject_hash="ABC")])

        assert exc.value.reason == ValidationError.VALIDATION

    def test_duplicate_event_id_in_batch(self, validator):
        event = wire_event()

        with pytest.raises(ValidationError) as exc:
            validator.validate(new_id(), [event, dict(event)])

        assert exc.value.reason == ValidationError.MALFORMED

    def test_future_capture_beyond_skew(self, validator):
        future = wire_event(captured_at=format_timestamp(NOW + timedelta(days=2)))

        with pytest.raises(ValidationError) as exc:
            validator.validate(new_id(), [future])

        assert exc.value.reason == ValidationError.VALIDATION

    def test_small_clock_skew_accepted(self, validator):
        ahead = wire_event(captured_at=format_timestamp(NOW + timedelta(hours=12)))

        assert len(validator.validate(new_id(), [ahead])) == 1


class TestSubjectLocalId:
    def test_local_id_is_split_from_event(self, validator):
        raw = wire_event(subject_hash=None, subject_local_id="seat-12")

        validated = validator.validate(new_id(), [raw])

        assert validated[0].subject_local_id == "seat-12"
        assert validated[0].event.subject_hash is None

    def test_hash_and_local_id_together_is_malformed(self, validator):
        raw = wire_event(subject_local_id="seat-12")

        with pytest.raises(ValidationError) as exc:
            validator.validate(new_id(), [raw])

        assert exc.value.reason == ValidationError.MALFORMED

    @pytest.mark.parametrize("overrides", [
        {"subject_hash": None},
        {"subject_hash": None, "subject_local_id": None},
    ])
    def test_event_without_any_subject_rejected(self, validator, overrides):
        raw = wire_event(**overrides)

        with pytest.raises(ValidationError) as exc:
            validator.validate(new_id(), [raw])

        assert exc.value.reason == ValidationError.VALIDATION
        assert exc.value.event_id == raw["event_id"]

    def test_empty_local_id_is_malformed(self, validator):
        raw = wire_event(subject_hash=None, subject_local_id="")

        with pytest.raises(ValidationError) as exc:
            validator.validate(new_id(), [raw])

        assert exc.value.reason == ValidationError.MALFORMED


class TestScopeAuthorization:
    def test_foreign_scope_rejected(self, validator):
        with pytest.raises(AuthorizationError):
            validator.validate(new_id(), [wire_event(), wire_event(classroom_scope="class-b")], SCOPE)

    def test_no_scope_check_without_token(self, validator):
        validated = validator.validate(new_id(), [wire_event(classroom_scope="class-b")])

        assert validated[0].event.classroom_scope == "class-b"
