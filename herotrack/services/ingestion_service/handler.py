"""Ingestion Service HTTP handler.

Endpoints:
- GET /health - Health check
- GET /ready - Readiness check
- POST /v1/batches - Submit a batch of anonymized events

The caller's classroom scope token arrives in the X-Classroom-Scope header
and must match the scope of every event in the batch.
"""
import logging
from typing import Optional

from flask import Flask, jsonify, request

from herotrack.shared.database import RepositoryError
from herotrack.shared.errors import AuthorizationError, SaltUnavailable

from .ingestor import IngestionService

logger = logging.getLogger(__name__)

app = Flask(__name__)

SCOPE_HEADER = "X-Classroom-Scope"

# Global service instance
_handler: Optional[IngestionService] = None


def get_handler() -> IngestionService:
    """Get or create the global ingestion service."""
    global _handler
    if _handler is None:
        from herotrack.services.pipeline import get_pipeline
        _handler = get_pipeline().ingestion
    return _handler


def set_handler(handler: Optional[IngestionService]) -> None:
    """Set the global service (for testing)."""
    global _handler
    _handler = handler


@app.route("/health", methods=["GET"])
def health():
    """Health check endpoint."""
    return jsonify({"status": "healthy", "service": "ingestion-service"})


@app.route("/ready", methods=["GET"])
def ready():
    """Readiness check - verifies storage is reachable."""
    service = get_handler()
    manager = service.repository.connection_manager
    if manager is not None:
        health_status = manager.health_check()
        if health_status.get("status") != "connected":
            return jsonify({"status": "not_ready", "reason": health_status.get("status")}), 503
    return jsonify({"status": "ready", "service": "ingestion-service"})


@app.route("/v1/batches", methods=["POST"])
def submit_batch():
    """Submit one batch.

    Request Body:
        {
            "batch_id": "uuid",
            "events": [{...wire event...}, ...]
        }

    Response:
        200 {"status": "accepted", "batch_id", "duplicate", "events_persisted"}
        422 {"status": "rejected", "reason": "validation|pii-detected|malformed", ...}
        400 missing body, 403 scope mismatch, 503 retry later
    """
    scope = request.headers.get(SCOPE_HEADER)
    if not scope:
        logger.warning("BATCH_REQUEST_INVALID", extra={"reason": "missing_scope"})
        return jsonify({"error": f"{SCOPE_HEADER} header required"}), 403

    data = request.get_json(silent=True)
    if data is None:
        logger.warning("BATCH_REQUEST_INVALID", extra={"reason": "empty_body"})
        return jsonify({"error": "Request body required"}), 400

    try:
        result = get_handler().ingest_payload(data, classroom_scope=scope)
    except AuthorizationError as e:
        logger.warning(
            "BATCH_SCOPE_DENIED",
            extra={"classroom_scope": scope, "error": str(e)}
        )
        return jsonify({"error": AuthorizationError.code, "message": str(e)}), 403
    except SaltUnavailable:
        return jsonify({"error": "salt_unavailable", "retry": True}), 503
    except RepositoryError as e:
        logger.error("BATCH_PERSIST_FAILED", extra={"classroom_scope": scope, "error": str(e)})
        return jsonify({"error": "storage_unavailable", "retry": True}), 503

    if result.accepted:
        return jsonify(result.to_dict()), 200
    return jsonify(result.to_dict()), 422
