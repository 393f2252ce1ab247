"""Aggregation Service HTTP handler - dashboard rollup reads.

Endpoints:
- GET /health - Health check
- GET /ready - Readiness check
- GET /v1/rollups - Rollups for one classroom, k-anonymity applied

The X-Classroom-Scope header must match the ``scope`` query parameter.
"""
import logging
from datetime import timedelta
from typing import Optional

from flask import Flask, jsonify, request

from herotrack.shared.database import RepositoryError
from herotrack.shared.models import Category, Granularity
from herotrack.shared.utils.clock import format_timestamp, parse_timestamp, utc_now

from .engine import AggregationEngine

logger = logging.getLogger(__name__)

app = Flask(__name__)

SCOPE_HEADER = "X-Classroom-Scope"

DEFAULT_LOOKBACK_DAYS = 7

# Global engine instance
_handler: Optional[AggregationEngine] = None


def get_handler() -> AggregationEngine:
    """Get or create the global aggregation engine."""
    global _handler
    if _handler is None:
        from herotrack.services.pipeline import get_pipeline
        _handler = get_pipeline().aggregation
    return _handler


def set_handler(handler: Optional[AggregationEngine]) -> None:
    """Set the global engine (for testing)."""
    global _handler
    _handler = handler


@app.route("/health", methods=["GET"])
def health():
    """Health check endpoint."""
    return jsonify({"status": "healthy", "service": "aggregation-service"})


@app.route("/ready", methods=["GET"])
def ready():
    """Readiness check - verifies rollup storage is reachable."""
    manager = get_handler().rollups.connection_manager
    if manager is not None:
        health_status = manager.health_check()
        if health_status.get("status") != "connected":
            return jsonify({"status": "not_ready", "reason": health_status.get("status")}), 503
    return jsonify({"status": "ready", "service": "aggregation-service"})


@app.route("/v1/rollups", methods=["GET"])
def get_rollups():
    """Rollups for a classroom.

    Query Parameters:
        scope: Classroom scope (required, must match the header)
        start, end: ISO-8601 bucket-start range (default: last 7 days)
        category: Restrict statistics to one category
        granularity: hourly, daily (default) or weekly
        lesson_id: One lesson's buckets instead of the all-lessons buckets

    Response:
        {"classroom_scope", "granularity", "k_threshold", "rollups": [...]}
    """
    scope = request.args.get("scope")
    if not scope:
        return jsonify({"error": "scope parameter required"}), 400

    caller_scope = request.headers.get(SCOPE_HEADER)
    if caller_scope != scope:
        logger.warning(
            "ROLLUP_SCOPE_DENIED",
            extra={"classroom_scope": scope, "header_present": caller_scope is not None}
        )
        return jsonify({"error": "forbidden"}), 403

    try:
        end = parse_timestamp(request.args["end"]) if "end" in request.args else utc_now()
        start = (
            parse_timestamp(request.args["start"]) if "start" in request.args
            else end - timedelta(days=DEFAULT_LOOKBACK_DAYS)
        )
        granularity = Granularity(request.args.get("granularity", Granularity.DAILY.value))
        category = Category(request.args["category"]) if "category" in request.args else None
    except ValueError as e:
        return jsonify({"error": "invalid_parameter", "message": str(e)}), 400

    if end <= start:
        return jsonify({"error": "invalid_parameter", "message": "end must be after start"}), 400

    engine = get_handler()
    try:
        rollups = engine.query_rollups(
            scope,
            start,
            end,
            category=category,
            granularity=granularity,
            lesson_id=request.args.get("lesson_id"),
        )
    except RepositoryError as e:
        logger.error("ROLLUP_QUERY_FAILED", extra={"classroom_scope": scope, "error": str(e)})
        return jsonify({"error": "storage_unavailable", "retry": True}), 503

    return jsonify({
        "classroom_scope": scope,
        "granularity": granularity.value,
        "category": category.value if category else None,
        "start": format_timestamp(start),
        "end": format_timestamp(end),
        "k_threshold": engine.k_enforcer.k_threshold,
        "rollups": rollups,
    })
