"""
Health check blueprint.

Endpoints:
    GET /api/v1/health        — simple 200 for load balancers
    GET /api/v1/health/ready  — readiness: database reachable
    GET /api/v1/health/live   — detailed status (DB, Redis, outbox backlog, request metrics)
"""

import logging
import time

import redis
from flask import Blueprint, current_app, jsonify
from sqlalchemy.exc import SQLAlchemyError

from app.middleware.timing import summarize_metrics
from app.models import db
from app.services.outbox_service import outbox_stats

logger = logging.getLogger(__name__)

health_bp = Blueprint("health", __name__, url_prefix="/api/v1/health")


@health_bp.route("", methods=["GET"])
def health():
    return jsonify({"status": "ok", "app": "Project Workspace Platform"}), 200


def _check_database():
    try:
        t0 = time.perf_counter()
        db.session.execute(db.text("SELECT 1"))
        return {"status": "ok", "latency_ms": round((time.perf_counter() - t0) * 1000, 1)}
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.error("Health check — database failed: %s", exc)
        return {"status": "error", "detail": str(exc)}


@health_bp.route("/ready", methods=["GET"])
def ready():
    database = _check_database()
    ok = database["status"] == "ok"
    return jsonify({"status": "ok" if ok else "unavailable", "database": database}), 200 if ok else 503


@health_bp.route("/live", methods=["GET"])
def live():
    """Detailed liveness check with dependency status."""
    checks = {"database": _check_database()}
    overall = checks["database"]["status"] == "ok"

    # ── Redis (rate-limit storage; optional) ─────────────────────────
    redis_url = current_app.config.get("REDIS_URL", "")
    if redis_url and "redis" in redis_url:
        try:
            t0 = time.perf_counter()
            redis.from_url(redis_url, socket_timeout=2).ping()
            checks["redis"] = {"status": "ok", "latency_ms": round((time.perf_counter() - t0) * 1000, 1)}
        except redis.RedisError as exc:
            # Rate-limit storage only; the API keeps serving
            checks["redis"] = {"status": "error", "detail": str(exc)}
    else:
        checks["redis"] = {"status": "skipped", "detail": "no REDIS_URL configured"}

    if overall:
        checks["outbox"] = outbox_stats()
    checks["requests"] = summarize_metrics(300)

    return jsonify({
        "status": "healthy" if overall else "degraded",
        "checks": checks,
    }), 200 if overall else 503
