"""
Outbox & operations blueprint — platform admin view of the delivery
pipeline, dead letters, scheduled jobs and the integrity guard.

Endpoints (platform admin):
    GET   /api/v1/platform/outbox/stats                ?tenant_id=
    GET   /api/v1/platform/outbox/events               ?status=&tenant_id=
    GET   /api/v1/platform/outbox/events/<id>
    POST  /api/v1/platform/outbox/dispatch             {batch_size?}
    POST  /api/v1/platform/outbox/requeue              {event_id?, tenant_id?}
    POST  /api/v1/platform/outbox/release-stale
    GET   /api/v1/platform/dead-letters                ?source=&all=true
    POST  /api/v1/platform/dead-letters/<id>/resolve   {note}
    GET   /api/v1/platform/jobs
    GET   /api/v1/platform/jobs/<name>
    POST  /api/v1/platform/jobs/<name>/run
    PATCH /api/v1/platform/jobs/<name>                 {enabled}
    GET   /api/v1/platform/integrity
"""

import logging

from flask import Blueprint, g, jsonify, request

from app.blueprints import arg_flag, json_body, paginate_query
from app.middleware.permission_required import require_platform_admin
from app.services import outbox_service
from app.services.integrity_service import run_integrity_checks
from app.services.scheduler_service import (
    SchedulerService,
    get_registered_jobs,
    list_dead_letters,
    resolve_dead_letter,
)
from app.utils.errors import E, api_error

logger = logging.getLogger(__name__)

outbox_bp = Blueprint("outbox", __name__, url_prefix="/api/v1/platform")


@outbox_bp.before_request
@require_platform_admin
def _platform_only():
    return None


# ═══════════════════════════════════════════════════════════════════════════
#  Outbox
# ═══════════════════════════════════════════════════════════════════════════

@outbox_bp.route("/outbox/stats", methods=["GET"])
def stats():
    return jsonify(outbox_service.outbox_stats(tenant_id=request.args.get("tenant_id")))


@outbox_bp.route("/outbox/events", methods=["GET"])
def list_events():
    q = outbox_service.list_events(tenant_id=request.args.get("tenant_id"),
                                   status=request.args.get("status"))
    events, total = paginate_query(q, default_limit=100)
    return jsonify({"items": [e.to_dict() for e in events], "total": total})


@outbox_bp.route("/outbox/events/<event_id>", methods=["GET"])
def get_event(event_id):
    return jsonify(outbox_service.get_event(event_id).to_dict())


@outbox_bp.route("/outbox/dispatch", methods=["POST"])
def dispatch():
    data, err = json_body()
    if err:
        return err
    batch_size = data.get("batch_size")
    if batch_size is not None and (not isinstance(batch_size, int) or batch_size < 1):
        return api_error(E.VALIDATION_INVALID, "batch_size must be a positive integer")
    result = outbox_service.dispatch_pending(batch_size, worker_id=f"api:{g.jwt_user_id}")
    return jsonify(result)


@outbox_bp.route("/outbox/requeue", methods=["POST"])
def requeue():
    data, err = json_body()
    if err:
        return err
    count = outbox_service.requeue_failed(event_id=data.get("event_id"), tenant_id=data.get("tenant_id"))
    return jsonify({"requeued": count})


@outbox_bp.route("/outbox/release-stale", methods=["POST"])
def release_stale():
    return jsonify({"released": outbox_service.release_stale()})


# ═══════════════════════════════════════════════════════════════════════════
#  Dead letters
# ═══════════════════════════════════════════════════════════════════════════

@outbox_bp.route("/dead-letters", methods=["GET"])
def dead_letters():
    q = list_dead_letters(source=request.args.get("source"),
                          unresolved_only=not arg_flag("all"),
                          tenant_id=request.args.get("tenant_id"))
    rows, total = paginate_query(q, default_limit=100)
    return jsonify({"items": [r.to_dict() for r in rows], "total": total})


@outbox_bp.route("/dead-letters/<dead_letter_id>/resolve", methods=["POST"])
def resolve(dead_letter_id):
    data, err = json_body()
    if err:
        return err
    row = resolve_dead_letter(dead_letter_id, note=data.get("note", ""), resolved_by=g.jwt_user_id)
    return jsonify(row.to_dict())


# ═══════════════════════════════════════════════════════════════════════════
#  Scheduled jobs
# ═══════════════════════════════════════════════════════════════════════════

@outbox_bp.route("/jobs", methods=["GET"])
def list_jobs():
    return jsonify({"items": SchedulerService.list_jobs()})


@outbox_bp.route("/jobs/<job_name>/run", methods=["POST"])
def run_job(job_name):
    if job_name not in get_registered_jobs():
        return api_error(E.NOT_FOUND, f"Unknown job: {job_name}")
    SchedulerService.ensure_jobs_registered()
    result = SchedulerService.run_job(job_name)
    logger.info("Job %s triggered manually: %s", job_name, result["status"],
                extra={"job_name": job_name, "user_id": g.jwt_user_id})
    return jsonify(result)


@outbox_bp.route("/jobs/<job_name>", methods=["GET"])
def job_status(job_name):
    job = SchedulerService.get_job_status(job_name)
    if job is None:
        return api_error(E.NOT_FOUND, f"Unknown job: {job_name}")
    return jsonify(job)


@outbox_bp.route("/jobs/<job_name>", methods=["PATCH"])
def toggle_job(job_name):
    data, err = json_body()
    if err:
        return err
    if not isinstance(data.get("enabled"), bool):
        return api_error(E.VALIDATION_REQUIRED, "enabled (boolean) is required")
    SchedulerService.ensure_jobs_registered()
    job = SchedulerService.toggle_job(job_name, data["enabled"])
    if job is None:
        return api_error(E.NOT_FOUND, f"Unknown job: {job_name}")
    return jsonify(job)


# ═══════════════════════════════════════════════════════════════════════════
#  Integrity guard
# ═══════════════════════════════════════════════════════════════════════════

@outbox_bp.route("/integrity", methods=["GET"])
def integrity():
    return jsonify(run_integrity_checks())
