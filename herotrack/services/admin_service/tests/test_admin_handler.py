"""Tests for the Admin Service."""
from datetime import datetime, timedelta, timezone

import pytest

from herotrack.services.admin_service.admin import AdminService
from herotrack.services.admin_service.handler import app, set_handler
from herotrack.services.audit_service import AuditAction
from herotrack.services.pipeline import Pipeline
from herotrack.services.retention_service.policy import EVENTS_POLICY
from herotrack.shared.models import Category, Event, new_id
from herotrack.shared.utils.clock import format_timestamp

NOW = datetime(2024, 3, 14, 10, 30, tzinfo=timezone.utc)
OPERATOR = {"X-Operator-Id": "ops-1"}


def make_event(age_days, subject=0):
    return Event(
        event_id=new_id(),
        classroom_scope="class-a",
        category=Category.CONFIDENCE,
        interaction_type="presented",
        score=4,
        captured_at=NOW - timedelta(days=age_days, minutes=5),
        subject_hash=f"{subject:064x}",
        received_at=NOW,
    )


@pytest.fixture
def client():
    """Flask test client."""
    app.config["TESTING"] = True
    with app.test_client() as client:
        yield client


@pytest.fixture
def pipeline():
    pipeline = Pipeline(clock=lambda: NOW)
    yield pipeline
    pipeline.shutdown()


@pytest.fixture
def admin(pipeline):
    service = AdminService(pipeline)
    set_handler(service)
    yield service
    set_handler(None)


class TestHealthEndpoints:
    def test_health_returns_200(self, client, admin):
        response = client.get("/health")

        assert response.get_json() == {"status": "healthy", "service": "admin-service"}

    def test_ready_with_memory_backend(self, client, admin):
        assert client.get("/ready").status_code == 200

    def test_pipeline_health(self, client, admin, pipeline):
        response = client.get("/admin/health", headers=OPERATOR)

        assert response.status_code == 200
        data = response.get_json()
        assert data["storage"] == {"status": "memory"}
        assert data["aggregation"]["queue_depth"] == 0
        assert data["ingestion"]["accepted"] == 0
        assert data["retention"]["last_run"] is None

    def test_operator_header_required(self, client, admin):
        assert client.get("/admin/health").status_code == 401
        assert client.post("/admin/retention").status_code == 401
        assert client.post("/admin/aggregation/rebuild", json={}).status_code == 401


class TestRetentionTrigger:
    def test_runs_all_policies(self, client, admin, pipeline):
        pipeline.events.persist_batch(new_id(), [make_event(120), make_event(1)], NOW)

        response = client.post("/admin/retention", headers=OPERATOR)

        assert response.status_code == 200
        data = response.get_json()
        assert data["status"] == "completed"
        assert data["rows_archived"] == 1
        assert pipeline.events.count_archive() == 1
        entries = pipeline.audit_logger.query(action=AuditAction.RETENTION_RUN)
        assert entries[0].actor_id == "ops-1"

    def test_runs_one_policy(self, client, admin):
        response = client.post("/admin/retention", json={"policy": EVENTS_POLICY}, headers=OPERATOR)

        assert [p["policy"] for p in response.get_json()["policies"]] == [EVENTS_POLICY]

    def test_unknown_policy(self, client, admin):
        response = client.post("/admin/retention", json={"policy": "sessions"}, headers=OPERATOR)

        assert response.status_code == 400

    def test_busy_lock_returns_409(self, client, admin, pipeline):
        with pipeline.retention.lock.hold():
            response = client.post("/admin/retention", headers=OPERATOR)

        assert response.status_code == 409
        assert response.get_json()["status"] == "skipped_locked"

    def test_last_run_reported_in_health(self, client, admin):
        client.post("/admin/retention", headers=OPERATOR)

        data = client.get("/admin/health", headers=OPERATOR).get_json()

        assert data["retention"]["last_run"]["status"] == "completed"


class TestPolicyUpdate:
    def test_update_policy(self, client, admin, pipeline):
        response = client.put(
            f"/admin/retention/policies/{EVENTS_POLICY}",
            json={"active_days": 60, "archive_days": 400},
            headers=OPERATOR,
        )

        assert response.status_code == 200
        assert pipeline.retention.config.policy(EVENTS_POLICY).active_days == 60
        assert pipeline.audit_logger.query(action=AuditAction.RETENTION_POLICY_CHANGED)

    @pytest.mark.parametrize("body", [
        {"active_days": 400, "archive_days": 60},
        {"active_days": 60},
        {"active_days": "soon", "archive_days": 400},
    ])
    def test_invalid_update_rejected(self, client, admin, body):
        response = client.put(
            f"/admin/retention/policies/{EVENTS_POLICY}", json=body, headers=OPERATOR
        )

        assert response.status_code == 400

    def test_unknown_policy_rejected(self, client, admin):
        response = client.put(
            "/admin/retention/policies/sessions",
            json={"active_days": 1, "archive_days": 2},
            headers=OPERATOR,
        )

        assert response.status_code == 400


class TestRebuildTrigger:
    def test_rebuild(self, client, admin, pipeline):
        pipeline.events.persist_batch(new_id(), [make_event(0, subject=i) for i in range(5)], NOW)

        response = client.post(
            "/admin/aggregation/rebuild",
            json={
                "scope": "class-a",
                "start": format_timestamp(NOW - timedelta(days=1)),
                "end": format_timestamp(NOW + timedelta(hours=1)),
            },
            headers=OPERATOR,
        )

        assert response.status_code == 200
        assert response.get_json()["buckets_recomputed"] == 3
        assert pipeline.rollups.count() == 3

    @pytest.mark.parametrize("body", [
        {"scope": "class-a", "start": "2024-03-14T00:00:00Z"},
        {"scope": "class-a", "start": "nope", "end": "2024-03-14T00:00:00Z"},
        {"scope": "class-a", "start": "2024-03-14T00:00:00Z", "end": "2024-03-13T00:00:00Z"},
    ])
    def test_invalid_rebuild_rejected(self, client, admin, body):
        response = client.post("/admin/aggregation/rebuild", json=body, headers=OPERATOR)

        assert response.status_code == 400
