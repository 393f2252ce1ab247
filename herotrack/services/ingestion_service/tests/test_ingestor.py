"""Tests for the ingestion service core."""
import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from herotrack.services.audit_service import AuditAction, AuditLogger
from herotrack.services.ingestion_service.event_repository import EventRepository
from herotrack.services.ingestion_service.ingestor import (
    GrowthIndicatorPolicy,
    IngestionConfig,
    IngestionService,
)
from herotrack.shared.anonymizer import Anonymizer, SaltStore
from herotrack.shared.errors import AuthorizationError, SaltUnavailable
from herotrack.shared.models import Category, Event, new_id
from herotrack.shared.utils.clock import format_timestamp

NOW = datetime(2024, 3, 14, 10, 30, tzinfo=timezone.utc)
SCOPE = "class-a"


def wire_event(**overrides):
    event = {
        "event_id": new_id(),
        "classroom_scope": SCOPE,
        "lesson_id": "lesson-3",
        "category": "courage",
        "interaction_type": "spoke_up",
        "score": 3,
        "metadata": {"activity": "role_play"},
        "captured_at": format_timestamp(NOW - timedelta(hours=2)),
        "subject_hash": "c" * 64,
    }
    event.update(overrides)
    return event


@pytest.fixture
def repository():
    return EventRepository()


@pytest.fixture
def salt_store():
    return SaltStore()


@pytest.fixture
def audit():
    return AuditLogger()


@pytest.fixture
def service(repository, salt_store, audit):
    return IngestionService(
        repository=repository,
        anonymizer=Anonymizer(salt_store, clock=lambda: NOW),
        audit_logger=audit,
        clock=lambda: NOW,
    )


class TestGrowthIndicatorPolicy:
    def make(self, score=4, category=Category.EMPATHY, interaction_type="listened"):
        return Event(
            event_id=new_id(),
            classroom_scope=SCOPE,
            category=category,
            interaction_type=interaction_type,
            score=score,
            captured_at=NOW,
        )

    def test_default_threshold(self):
        policy = GrowthIndicatorPolicy()

        assert policy.evaluate(self.make(score=4)) is True
        assert policy.evaluate(self.make(score=3)) is False

    def test_category_filter(self):
        policy = GrowthIndicatorPolicy(min_score=3, categories=frozenset({Category.COURAGE}))

        assert policy.evaluate(self.make(score=5, category=Category.EMPATHY)) is False
        assert policy.evaluate(self.make(score=3, category=Category.COURAGE)) is True

    def test_interaction_filter(self):
        policy = GrowthIndicatorPolicy(interaction_types=frozenset({"led_group"}))

        assert policy.evaluate(self.make(interaction_type="listened")) is False
        assert policy.evaluate(self.make(interaction_type="led_group")) is True

    def test_invalid_threshold(self):
        with pytest.raises(ValueError):
            GrowthIndicatorPolicy(min_score=9)


class TestIngestionConfig:
    def test_defaults(self):
        config = IngestionConfig()

        assert config.max_batch_events == 500
        assert config.max_future_skew == timedelta(days=1)

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("HEROTRACK_MAX_BATCH_EVENTS", "50")
        monkeypatch.setenv("HEROTRACK_GROWTH_MIN_SCORE", "5")
        monkeypatch.setenv("HEROTRACK_GROWTH_CATEGORIES", "empathy, courage")

        config = IngestionConfig.from_env()

        assert config.max_batch_events == 50
        assert config.growth_policy().min_score == 5
        assert config.growth_categories == frozenset({Category.EMPATHY, Category.COURAGE})


class TestIngest:
    def test_accepts_new_batch(self, service, repository):
        events = [wire_event() for _ in range(4)]

        result = service.ingest(new_id(), events, SCOPE)

        assert result.accepted
        assert result.duplicate is False
        assert result.events_persisted == 4
        assert repository.count() == 4

    def test_server_fields_assigned(self, service, repository):
        high = wire_event(score=5)
        low = wire_event(score=2)

        service.ingest(new_id(), [high, low], SCOPE)

        stored_high = repository.get(high["event_id"])
        assert stored_high.growth_indicator is True
        assert stored_high.received_at == NOW
        assert repository.get(low["event_id"]).growth_indicator is False

    def test_same_batch_twice_is_idempotent(self, service, repository):
        batch_id = new_id()
        events = [wire_event() for _ in range(3)]

        first = service.ingest(batch_id, events, SCOPE)
        second = service.ingest(batch_id, events, SCOPE)

        assert first.accepted and second.accepted
        assert second.duplicate is True
        assert second.events_persisted == 0
        assert repository.count() == 3
        assert service.stats()["duplicate"] == 1

    def test_batch_with_one_email_rejected_wholesale(self, service, repository):
        events = [wire_event() for _ in range(9)]
        events.append(wire_event(metadata={"note": "parent: mom@example.com"}))

        result = service.ingest(new_id(), events, SCOPE)

        assert not result.accepted
        assert result.reason == "pii-detected"
        assert result.event_id == events[-1]["event_id"]
        assert repository.count() == 0
        assert service.stats()["rejected"] == {"pii-detected": 1}

    def test_event_without_subject_rejected(self, service, repository):
        events = [wire_event(), wire_event(subject_hash=None)]

        result = service.ingest(new_id(), events, SCOPE)

        assert not result.accepted
        assert result.reason == "validation"
        assert result.event_id == events[-1]["event_id"]
        assert repository.count() == 0

    def test_rejected_batch_is_not_recorded_in_ledger(self, service, repository):
        batch_id = new_id()
        service.ingest(batch_id, [wire_event(score=9)], SCOPE)

        assert not repository.has_batch(batch_id)

    def test_scope_mismatch_raises(self, service, repository):
        with pytest.raises(AuthorizationError):
            service.ingest(new_id(), [wire_event(classroom_scope="class-z")], SCOPE)

        assert repository.count() == 0

    def test_server_side_hashing(self, service, repository, salt_store):
        raw = wire_event(subject_hash=None, subject_local_id="seat-4")

        service.ingest(new_id(), [raw], SCOPE)

        stored = repository.get(raw["event_id"])
        assert len(stored.subject_hash) == 64
        assert "seat-4" not in str(stored.to_record())
        expected = Anonymizer(salt_store, clock=lambda: NOW).hash(
            "seat-4", SCOPE, stored.captured_at
        )
        assert stored.subject_hash == expected

    def test_server_hashing_outside_salt_window_raises(self, service, repository):
        stale = wire_event(
            subject_hash=None,
            subject_local_id="seat-4",
            captured_at=format_timestamp(NOW - timedelta(days=30)),
        )

        with pytest.raises(SaltUnavailable):
            service.ingest(new_id(), [stale], SCOPE)

        assert repository.count() == 0

    def test_duplicate_skips_hashing(self, service):
        batch_id = new_id()
        raw = wire_event(subject_hash=None, subject_local_id="seat-4")
        service.ingest(batch_id, [raw], SCOPE)
        service.anonymizer = MagicMock()
        service.anonymizer.hash.side_effect = SaltUnavailable("gone")

        assert service.ingest(batch_id, [raw], SCOPE).duplicate is True

    def test_on_persisted_receives_new_events(self, repository, audit):
        received = []
        service = IngestionService(
            repository=repository,
            audit_logger=audit,
            on_persisted=received.extend,
            clock=lambda: NOW,
        )

        service.ingest(new_id(), [wire_event(), wire_event()], SCOPE)

        assert len(received) == 2

    def test_on_persisted_failure_does_not_fail_ingest(self, repository, audit):
        service = IngestionService(
            repository=repository,
            audit_logger=audit,
            on_persisted=MagicMock(side_effect=RuntimeError("queue down")),
            clock=lambda: NOW,
        )

        assert service.ingest(new_id(), [wire_event()], SCOPE).accepted

    def test_audit_trail(self, service, audit):
        service.ingest(new_id(), [wire_event()], SCOPE)
        service.ingest(new_id(), [wire_event(score=0)], SCOPE)

        assert len(audit.query(action=AuditAction.BATCH_ACCEPTED)) == 1
        rejected = audit.query(action=AuditAction.BATCH_REJECTED)
        assert rejected[0].details["reason"] == "validation"
        assert audit.verify_chain() is True

    def test_concurrent_same_batch_persists_once(self, service, repository):
        batch_id = new_id()
        events = [wire_event() for _ in range(10)]
        results = []
        barrier = threading.Barrier(6)

        def deliver():
            barrier.wait()
            results.append(service.ingest(batch_id, events, SCOPE))

        threads = [threading.Thread(target=deliver) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert all(r.accepted for r in results)
        assert sum(1 for r in results if not r.duplicate) == 1
        assert repository.count() == 10


class TestIngestPayload:
    def test_payload_dict(self, service):
        result = service.ingest_payload({"batch_id": new_id(), "events": [wire_event()]}, SCOPE)

        assert result.accepted

    def test_non_object_payload_is_malformed(self, service):
        result = service.ingest_payload(["not", "a", "batch"], SCOPE)

        assert result.reason == "malformed"
        assert result.to_dict()["status"] == "rejected"
