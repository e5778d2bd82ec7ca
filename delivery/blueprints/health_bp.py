"""
Health check blueprint.

Endpoints:
    GET /api/v1/health        — readiness check, always 200 while the app runs
    GET /api/v1/health/live   — database round-trip check
"""

import logging
import time

from flask import Blueprint, jsonify
from sqlalchemy.exc import SQLAlchemyError

from delivery.models import db

logger = logging.getLogger(__name__)

health_bp = Blueprint("health", __name__, url_prefix="/api/v1/health")


@health_bp.route("", methods=["GET"])
def ready():
    return jsonify({"status": "ok"}), 200


@health_bp.route("/live", methods=["GET"])
def live():
    """Liveness check with database latency."""
    try:
        t0 = time.perf_counter()
        db.session.execute(db.text("SELECT 1"))
        db_ms = (time.perf_counter() - t0) * 1000
    except SQLAlchemyError as exc:
        logger.error("Health check — database failed: %s", exc)
        db.session.rollback()
        return jsonify({"status": "degraded", "checks": {"database": {"status": "error"}}}), 503

    return jsonify({
        "status": "healthy",
        "checks": {"database": {"status": "ok", "latency_ms": round(db_ms, 1)}},
    }), 200
