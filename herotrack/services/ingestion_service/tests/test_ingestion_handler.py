"""Tests for Ingestion Service HTTP handler."""
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from herotrack.services.audit_service import AuditLogger
from herotrack.services.ingestion_service.event_repository import EventRepository
from herotrack.services.ingestion_service.handler import app, set_handler
from herotrack.services.ingestion_service.ingestor import IngestionService
from herotrack.shared.database import RepositoryError
from herotrack.shared.errors import SaltUnavailable
from herotrack.shared.models import new_id
from herotrack.shared.utils.clock import format_timestamp

NOW = datetime(2024, 3, 14, 10, 30, tzinfo=timezone.utc)
SCOPE = "class-a"
HEADERS = {"X-Classroom-Scope": SCOPE}


def wire_event(**overrides):
    event = {
        "event_id": new_id(),
        "classroom_scope": SCOPE,
        "category": "communication",
        "interaction_type": "asked_question",
        "score": 4,
        "metadata": {},
        "captured_at": format_timestamp(NOW - timedelta(minutes=5)),
        "subject_hash": "d" * 64,
    }
    event.update(overrides)
    return event


@pytest.fixture
def client():
    """Flask test client."""
    app.config["TESTING"] = True
    with app.test_client() as client:
        yield client


@pytest.fixture
def service():
    """Fresh service for each test."""
    s = IngestionService(
        repository=EventRepository(),
        audit_logger=AuditLogger(),
        clock=lambda: NOW,
    )
    set_handler(s)
    yield s
    set_handler(None)


class TestHealthEndpoints:
    def test_health_returns_200(self, client, service):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.get_json() == {"status": "healthy", "service": "ingestion-service"}

    def test_ready_with_memory_backend(self, client, service):
        response = client.get("/ready")

        assert response.status_code == 200
        assert response.get_json()["status"] == "ready"

    def test_not_ready_when_database_unreachable(self, client):
        manager = MagicMock()
        manager.health_check.return_value = {"status": "error", "error": "refused"}
        set_handler(IngestionService(
            repository=EventRepository(connection_manager=manager),
            audit_logger=AuditLogger(),
        ))

        response = client.get("/ready")

        assert response.status_code == 503
        set_handler(None)


class TestSubmitBatch:
    def test_accepted(self, client, service):
        batch_id = new_id()

        response = client.post(
            "/v1/batches",
            json={"batch_id": batch_id, "events": [wire_event(), wire_event()]},
            headers=HEADERS,
        )

        assert response.status_code == 200
        assert response.get_json() == {
            "status": "accepted",
            "batch_id": batch_id,
            "duplicate": False,
            "events_persisted": 2,
        }

    def test_resubmission_is_acknowledged(self, client, service):
        body = {"batch_id": new_id(), "events": [wire_event()]}
        client.post("/v1/batches", json=body, headers=HEADERS)

        response = client.post("/v1/batches", json=body, headers=HEADERS)

        assert response.status_code == 200
        assert response.get_json()["duplicate"] is True
        assert service.repository.count() == 1

    def test_rejected_with_reason(self, client, service):
        body = {
            "batch_id": new_id(),
            "events": [wire_event(metadata={"contact": "555-222-1111"})],
        }

        response = client.post("/v1/batches", json=body, headers=HEADERS)

        assert response.status_code == 422
        data = response.get_json()
        assert data["status"] == "rejected"
        assert data["reason"] == "pii-detected"
        assert data["event_id"] == body["events"][0]["event_id"]

    def test_missing_body(self, client, service):
        response = client.post("/v1/batches", headers=HEADERS)

        assert response.status_code == 400

    def test_missing_scope_header(self, client, service):
        response = client.post(
            "/v1/batches", json={"batch_id": new_id(), "events": [wire_event()]}
        )

        assert response.status_code == 403

    def test_scope_mismatch(self, client, service):
        response = client.post(
            "/v1/batches",
            json={"batch_id": new_id(), "events": [wire_event(classroom_scope="class-b")]},
            headers=HEADERS,
        )

        assert response.status_code == 403
        assert response.get_json()["error"] == "scope_denied"
        assert service.repository.count() == 0

    def test_salt_unavailable_is_retryable(self, client, service):
        service.anonymizer = MagicMock()
        service.anonymizer.hash.side_effect = SaltUnavailable("no salt")
        event = wire_event(subject_hash=None, subject_local_id="seat-9")

        response = client.post(
            "/v1/batches",
            json={"batch_id": new_id(), "events": [event]},
            headers=HEADERS,
        )

        assert response.status_code == 503
        assert response.get_json()["retry"] is True

    def test_storage_failure_is_retryable(self, client, service):
        service.repository.persist_batch = MagicMock(side_effect=RepositoryError("down"))

        response = client.post(
            "/v1/batches",
            json={"batch_id": new_id(), "events": [wire_event()]},
            headers=HEADERS,
        )

        assert response.status_code == 503
