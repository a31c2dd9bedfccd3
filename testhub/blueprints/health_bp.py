"""
Health check blueprint.

Endpoints:
    GET /api/v1/health/ready  simple 200 for load balancers
    GET /api/v1/health/live   database round-trip plus aggregate table counts
"""

import logging
import time

from flask import Blueprint, current_app, jsonify

from testhub.models import db
from testhub.models.testing import FlakyTestModel, TestRunModel

logger = logging.getLogger(__name__)

health_bp = Blueprint("health_bp", __name__, url_prefix="/api/v1/health")


@health_bp.route("/ready", methods=["GET"])
def ready():
    """Simple readiness probe: always 200 if the app is running."""
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
    except Exception as exc:
        checks["database"] = {"status": "error", "detail": str(exc)}
        overall = False
        logger.error("Health check: database failed: %s", exc)

    # ── Aggregate tables ─────────────────────────────────────────────
    if overall:
        try:
            checks["tables"] = {
                "status": "ok",
                "test_runs": db.session.query(TestRunModel).count(),
                "flaky_tests": db.session.query(FlakyTestModel).count(),
            }
        except Exception as exc:
            checks["tables"] = {"status": "error", "detail": str(exc)}
            overall = False
            logger.error("Health check: table query failed: %s", exc)

    checks["app"] = {
        "name": "Test Hub",
        "debug": current_app.debug,
        "testing": current_app.testing,
        "flaky_detection": current_app.config.get("FLAKY_DETECTION_ENABLED", True),
    }

    status_code = 200 if overall else 503
    return jsonify({
        "status": "healthy" if overall else "degraded",
        "checks": checks,
    }), status_code
