"""
Health check blueprint.

Endpoints:
    GET /api/v1/health/ready  — simple 200 for load balancers
    GET /api/v1/health/live   — detailed health (DB, oracle providers, triage backlog)
"""

import logging
import time

from flask import Blueprint, current_app, jsonify

from civiclens.ai.gateway import get_oracle_gateway
from civiclens.ai.task_runner import get_triage_queue
from civiclens.models import db
from civiclens.models.ai import JOB_FAILED, JOB_PENDING, TriageJob

logger = logging.getLogger(__name__)

health_bp = Blueprint("health", __name__, url_prefix="/api/v1/health")


@health_bp.route("/ready", methods=["GET"])
def ready():
    """Simple readiness check — always 200 if app is running."""
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
        logger.error("Health check — database failed: %s", exc)

    # ── AI oracle ────────────────────────────────────────────────────
    # Not fatal: every oracle consumer has a documented fallback
    gateway = get_oracle_gateway()
    providers = gateway.available_providers
    checks["oracle"] = {
        "status": "ok" if providers else "unconfigured",
        "model": gateway.model,
        "providers": providers,
    }

    # ── Triage queue ─────────────────────────────────────────────────
    if overall:
        checks["triage_queue"] = {
            "mode": get_triage_queue().mode,
            "pending": TriageJob.query.filter_by(status=JOB_PENDING).count(),
            "failed": TriageJob.query.filter_by(status=JOB_FAILED).count(),
        }

    # ── App info ─────────────────────────────────────────────────────
    checks["app"] = {
        "name": "CivicLens",
        "debug": current_app.debug,
        "testing": current_app.testing,
    }

    status_code = 200 if overall else 503
    return jsonify({
        "status": "healthy" if overall else "degraded",
        "checks": checks,
    }), status_code
