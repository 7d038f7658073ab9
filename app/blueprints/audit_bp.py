"""
Audit blueprint — read access to the append-only audit trail.

Endpoints:
    GET  /api/v1/audit               — list / filter the tenant's audit logs
    GET  /api/v1/audit/<log_id>      — single audit entry
    GET  /api/v1/events              — delivered domain events
"""

from flask import Blueprint, g, jsonify, request

from app.blueprints import paginate_query
from app.middleware.permission_required import require_permission
from app.models.audit import AuditLog
from app.models.observability import EventLog
from app.utils.errors import E, api_error

audit_bp = Blueprint("audit", __name__, url_prefix="/api/v1")


@audit_bp.route("/audit", methods=["GET"])
@require_permission("audit.view")
def list_audit_logs():
    """
    Return paginated audit logs with optional filters.

    Query params:
        project_id   — filter by project
        entity_type  — filter by entity type
        entity_id    — filter by entity PK
        action       — filter by action string (prefix match)
        actor        — filter by actor
        limit/offset — pagination
    """
    q = AuditLog.query.filter(AuditLog.tenant_id == g.tenant_id)

    # ── Filters ──────────────────────────────────────────────────────────
    project_id = request.args.get("project_id")
    if project_id:
        q = q.filter(AuditLog.project_id == project_id)

    entity_type = request.args.get("entity_type")
    if entity_type:
        q = q.filter(AuditLog.entity_type == entity_type)

    entity_id = request.args.get("entity_id")
    if entity_id:
        q = q.filter(AuditLog.entity_id == entity_id)

    action = request.args.get("action")
    if action:
        q = q.filter(AuditLog.action.startswith(action))

    actor = request.args.get("actor")
    if actor:
        q = q.filter(AuditLog.actor == actor)

    logs, total = paginate_query(q.order_by(AuditLog.timestamp.desc(), AuditLog.id.desc()), default_limit=50)
    return jsonify({"items": [log.to_dict() for log in logs], "total": total})


@audit_bp.route("/audit/<log_id>", methods=["GET"])
@require_permission("audit.view")
def get_audit_log(log_id):
    log = AuditLog.query.filter_by(id=log_id, tenant_id=g.tenant_id).first()
    if log is None:
        return api_error(E.NOT_FOUND, "Audit log not found")
    return jsonify(log.to_dict())


@audit_bp.route("/events", methods=["GET"])
@require_permission("audit.view")
def list_event_log():
    """Delivered domain events of the tenant, newest first (?event_type=, ?aggregate_id=)."""
    q = EventLog.query.filter(EventLog.tenant_id == g.tenant_id)
    event_type = request.args.get("event_type")
    if event_type:
        q = q.filter(EventLog.event_type == event_type)
    aggregate_id = request.args.get("aggregate_id")
    if aggregate_id:
        q = q.filter(EventLog.aggregate_id == aggregate_id)
    events, total = paginate_query(q.order_by(EventLog.published_at.desc(), EventLog.id.desc()),
                                   default_limit=50)
    return jsonify({"items": [e.to_dict() for e in events], "total": total})
