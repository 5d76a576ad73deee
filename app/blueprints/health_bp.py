"""
Health check blueprint.

Endpoints:
    GET /api/v1/health/ready : simple 200 for load balancers
    GET /api/v1/health/live  : database and data-store status
"""

import logging
import time

from flask import Blueprint, current_app, jsonify
from sqlalchemy.exc import SQLAlchemyError

from app.core.exceptions import PersistenceError
from app.models import db
from app.storage import get_repositories

logger = logging.getLogger(__name__)

health_bp = Blueprint("health_bp", __name__, url_prefix="/api/v1/health")


@health_bp.route("/ready", methods=["GET"])
def ready():
    """Simple readiness probe: always 200 if app is running."""
    return jsonify({"status": "ok"}), 200


@health_bp.route("/live", methods=["GET"])
def live():
    """Detailed liveness check with dependency status."""
    checks = {}
    overall = True

    # ── Database ─────────────────────────────────────────────────────
    try:
        t0 = time.perf_counter()
        db.session.execute(db.text("SELECT 1"))
        db_ms = (time.perf_counter() - t0) * 1000
        checks["database"] = {"status": "ok", "latency_ms": round(db_ms, 1)}
    except SQLAlchemyError as exc:
        checks["database"] = {"status": "error", "detail": str(exc)}
        overall = False
        logger.error("Health check failed for database: %s", exc)

    # ── Data store ───────────────────────────────────────────────────
    repos = get_repositories()
    try:
        checks["data_store"] = {
            "status": "ok",
            "backend": repos.backend.name,
            "mode": current_app.config.get("DATA_STORE_MODE"),
            "keys": repos.backend.list_keys(),
        }
    except PersistenceError as exc:
        checks["data_store"] = {"status": "error", "backend": repos.backend.name, "code": exc.code}
        overall = False
        logger.error("Health check failed for data store: %s", exc, extra={"persistence_code": exc.code})

    # ── App info ─────────────────────────────────────────────────────
    checks["app"] = {
        "name": "Capital Project Portal",
        "debug": current_app.debug,
        "testing": current_app.testing,
    }

    status_code = 200 if overall else 503
    return jsonify({
        "status": "healthy" if overall else "degraded",
        "checks": checks,
    }), status_code
