"""Admin Service HTTP handler.

Endpoints:
- GET /health - Health check
- GET /ready - Readiness check
- GET /admin/health - Pipeline health (queue depth, counters, last runs)
- POST /admin/retention - Run retention now
- PUT /admin/retention/policies/<name> - Change a policy's horizons
- POST /admin/aggregation/rebuild - Rebuild a classroom's rollups

Every admin request carries the operator's id in X-Operator-Id; it is
recorded in the audit trail.
"""
import logging
from typing import Optional

from flask import Flask, jsonify, request

from herotrack.services.retention_service.executor import RunStatus
from herotrack.shared.database import RepositoryError
from herotrack.shared.utils.clock import parse_timestamp

from .admin import AdminService

logger = logging.getLogger(__name__)

app = Flask(__name__)

OPERATOR_HEADER = "X-Operator-Id"

# Global service instance
_handler: Optional[AdminService] = None


def get_handler() -> AdminService:
    """Get or create the global admin service."""
    global _handler
    if _handler is None:
        from herotrack.services.pipeline import get_pipeline
        _handler = AdminService(get_pipeline())
    return _handler


def set_handler(handler: Optional[AdminService]) -> None:
    """Set the global service (for testing)."""
    global _handler
    _handler = handler


def _operator():
    operator = request.headers.get(OPERATOR_HEADER)
    if not operator:
        logger.warning("ADMIN_REQUEST_DENIED", extra={"path": request.path})
    return operator


@app.route("/health", methods=["GET"])
def health():
    """Health check endpoint."""
    return jsonify({"status": "healthy", "service": "admin-service"})


@app.route("/ready", methods=["GET"])
def ready():
    """Readiness check - verifies storage is reachable."""
    storage = get_handler().health()["storage"]
    if storage.get("status") not in ("connected", "memory"):
        return jsonify({"status": "not_ready", "reason": storage.get("status")}), 503
    return jsonify({"status": "ready", "service": "admin-service"})


@app.route("/admin/health", methods=["GET"])
def pipeline_health():
    """Aggregate pipeline health for operators."""
    if not _operator():
        return jsonify({"error": f"{OPERATOR_HEADER} header required"}), 401
    return jsonify(get_handler().health())


@app.route("/admin/retention", methods=["POST"])
def trigger_retention():
    """Run retention now.

    Request Body (optional):
        {"policy": "behavioral_events"}

    Response:
        200 run summary, 409 if another run holds the lock
    """
    operator = _operator()
    if not operator:
        return jsonify({"error": f"{OPERATOR_HEADER} header required"}), 401

    data = request.get_json(silent=True) or {}
    try:
        summary = get_handler().trigger_retention(data.get("policy"), actor_id=operator)
    except ValueError as e:
        return jsonify({"error": "invalid_request", "message": str(e)}), 400

    status = 409 if summary.status is RunStatus.SKIPPED_LOCKED else 200
    return jsonify(summary.to_dict()), status


@app.route("/admin/retention/policies/<name>", methods=["PUT"])
def update_retention_policy(name: str):
    """Change a retention policy.

    Request Body:
        {"active_days": 90, "archive_days": 730}
    """
    operator = _operator()
    if not operator:
        return jsonify({"error": f"{OPERATOR_HEADER} header required"}), 401

    data = request.get_json(silent=True)
    if not data:
        return jsonify({"error": "Request body required"}), 400

    try:
        policy = get_handler().update_retention_policy(
            name,
            active_days=int(data["active_days"]),
            archive_days=int(data["archive_days"]),
            actor_id=operator,
        )
    except (KeyError, TypeError, ValueError) as e:
        return jsonify({"error": "invalid_request", "message": str(e)}), 400

    return jsonify(policy.to_dict())


@app.route("/admin/aggregation/rebuild", methods=["POST"])
def trigger_rebuild():
    """Rebuild rollups for a classroom.

    Request Body:
        {"scope": "class-a", "start": "ISO-8601", "end": "ISO-8601"}
    """
    operator = _operator()
    if not operator:
        return jsonify({"error": f"{OPERATOR_HEADER} header required"}), 401

    data = request.get_json(silent=True)
    if not data:
        return jsonify({"error": "Request body required"}), 400

    try:
        scope = data["scope"]
        start = parse_timestamp(data["start"])
        end = parse_timestamp(data["end"])
        summary = get_handler().trigger_aggregation_rebuild(scope, start, end, actor_id=operator)
    except (KeyError, ValueError) as e:
        return jsonify({"error": "invalid_request", "message": str(e)}), 400
    except RepositoryError as e:
        logger.error("ADMIN_REBUILD_FAILED", extra={"error": str(e)})
        return jsonify({"error": "storage_unavailable", "retry": True}), 503

    return jsonify(summary.to_dict())
