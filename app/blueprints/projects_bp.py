"""
Projects Blueprint — projects, phases, components, snapshots, inspections
and interaction logs.

Endpoints:
    PROJECT    /api/v1/projects                              GET, POST (idempotent)
               /api/v1/projects/<id>                         GET, PUT, DELETE
               /api/v1/projects/<id>/status                  PATCH
               /api/v1/projects/<id>/restore                 POST
               /api/v1/projects/<id>/progress                GET

    PHASE      /api/v1/projects/<id>/phases                  GET, POST
    COMPONENT  /api/v1/projects/<id>/components              GET (tree), POST
               /api/v1/components/<id>/move                  PATCH

    SNAPSHOT   /api/v1/projects/<id>/snapshots               GET, POST

    QC         /api/v1/projects/<id>/inspections             GET, POST
               /api/v1/inspections/<id>                      GET
               /api/v1/inspections/<id>/start                POST
               /api/v1/inspections/<id>/result               POST
               /api/v1/inspections/<id>/reschedule           POST

    LOG        /api/v1/projects/<id>/interactions            GET, POST
               /api/v1/interactions/<id>/client-approval     POST, DELETE
               /api/v1/interactions/<id>                     DELETE
"""

import logging

from flask import Blueprint, g, jsonify, request

from app.blueprints import arg_flag, json_body, paginate_query
from app.middleware.permission_required import require_permission
from app.services import (
    dashboard_service,
    inspection_service,
    interaction_log_service,
    project_service,
)
from app.services.idempotency_service import idempotent
from app.utils.errors import E, api_error
from app.utils.helpers import parse_date

logger = logging.getLogger(__name__)

projects_bp = Blueprint("projects", __name__, url_prefix="/api/v1")


# ═══════════════════════════════════════════════════════════════════════════
#  PROJECT CRUD
# ═══════════════════════════════════════════════════════════════════════════

@projects_bp.route("/projects", methods=["GET"])
@require_permission("projects.view")
def list_projects():
    q = project_service.list_projects(
        tenant_id=g.tenant_id,
        status=request.args.get("status"),
        search=request.args.get("q"),
        owner_id=request.args.get("owner_id"),
        include_deleted=arg_flag("include_deleted"),
    )
    projects, total = paginate_query(q)
    return jsonify({"items": [p.to_dict() for p in projects], "total": total})


@projects_bp.route("/projects", methods=["POST"])
@require_permission("projects.create")
@idempotent
def create_project():
    data, err = json_body()
    if err:
        return err
    if not data.get("name"):
        return api_error(E.VALIDATION_REQUIRED, "name is required")
    project = project_service.create_project(tenant_id=g.tenant_id, data=data,
                                             actor_user_id=g.jwt_user_id)
    return jsonify(project.to_dict()), 201


@projects_bp.route("/projects/<project_id>", methods=["GET"])
@require_permission("projects.view")
def get_project(project_id):
    project = project_service.get_project(project_id, tenant_id=g.tenant_id,
                                          include_deleted=arg_flag("include_deleted"))
    return jsonify(project.to_dict())


@projects_bp.route("/projects/<project_id>", methods=["PUT"])
@require_permission("projects.edit")
def update_project(project_id):
    data, err = json_body()
    if err:
        return err
    project = project_service.update_project(project_id, tenant_id=g.tenant_id, data=data,
                                             actor_user_id=g.jwt_user_id)
    return jsonify(project.to_dict())


@projects_bp.route("/projects/<project_id>", methods=["DELETE"])
@require_permission("projects.delete")
def delete_project(project_id):
    project_service.soft_delete_project(project_id, tenant_id=g.tenant_id, actor_user_id=g.jwt_user_id)
    return jsonify({"deleted": True, "id": project_id})


@projects_bp.route("/projects/<project_id>/restore", methods=["POST"])
@require_permission("projects.delete")
def restore_project(project_id):
    project = project_service.restore_project(project_id, tenant_id=g.tenant_id,
                                              actor_user_id=g.jwt_user_id)
    return jsonify(project.to_dict())


@projects_bp.route("/projects/<project_id>/status", methods=["PATCH"])
@require_permission("projects.edit")
def transition_project(project_id):
    data, err = json_body()
    if err:
        return err
    if not data.get("status"):
        return api_error(E.VALIDATION_REQUIRED, "status is required")
    project = project_service.transition_project(project_id, tenant_id=g.tenant_id,
                                                 new_status=data["status"],
                                                 actor_user_id=g.jwt_user_id)
    return jsonify(project.to_dict())


@projects_bp.route("/projects/<project_id>/progress", methods=["GET"])
@require_permission("projects.view")
def project_progress(project_id):
    return jsonify(project_service.project_progress(project_id, tenant_id=g.tenant_id, persist=False))


# ═══════════════════════════════════════════════════════════════════════════
#  PHASES & COMPONENTS
# ═══════════════════════════════════════════════════════════════════════════

@projects_bp.route("/projects/<project_id>/phases", methods=["GET"])
@require_permission("projects.view")
def list_phases(project_id):
    phases = project_service.list_phases(project_id, tenant_id=g.tenant_id)
    return jsonify({"items": [p.to_dict() for p in phases], "total": len(phases)})


@projects_bp.route("/projects/<project_id>/phases", methods=["POST"])
@require_permission("projects.edit")
def add_phase(project_id):
    data, err = json_body()
    if err:
        return err
    if not data.get("name"):
        return api_error(E.VALIDATION_REQUIRED, "name is required")
    sequence = data.get("sequence")
    if sequence is not None and not isinstance(sequence, int):
        return api_error(E.VALIDATION_INVALID, "sequence must be an integer")
    phase = project_service.add_phase(
        project_id, tenant_id=g.tenant_id, name=data["name"], sequence=sequence,
        start_date=data.get("start_date"), end_date=data.get("end_date"),
    )
    return jsonify(phase.to_dict()), 201


@projects_bp.route("/projects/<project_id>/components", methods=["GET"])
@require_permission("projects.view")
def component_tree(project_id):
    return jsonify({"items": project_service.component_tree(project_id, tenant_id=g.tenant_id)})


@projects_bp.route("/projects/<project_id>/components", methods=["POST"])
@require_permission("projects.edit")
def create_component(project_id):
    data, err = json_body()
    if err:
        return err
    if not data.get("name"):
        return api_error(E.VALIDATION_REQUIRED, "name is required")
    component = project_service.create_component(
        project_id, tenant_id=g.tenant_id, name=data["name"], parent_id=data.get("parent_id"),
        code=data.get("code"), description=data.get("description", ""),
    )
    return jsonify(component.to_dict()), 201


@projects_bp.route("/components/<component_id>/move", methods=["PATCH"])
@require_permission("projects.edit")
def move_component(component_id):
    data, err = json_body()
    if err:
        return err
    if "parent_id" not in data:
        return api_error(E.VALIDATION_REQUIRED, "parent_id is required (null for root)")
    component = project_service.move_component(component_id, tenant_id=g.tenant_id,
                                               new_parent_id=data["parent_id"])
    return jsonify(component.to_dict())


# ═══════════════════════════════════════════════════════════════════════════
#  SNAPSHOTS
# ═══════════════════════════════════════════════════════════════════════════

@projects_bp.route("/projects/<project_id>/snapshots", methods=["GET"])
@require_permission("projects.view")
def snapshot_history(project_id):
    since = request.args.get("since")
    since_date = parse_date(since)
    if since and since_date is None:
        return api_error(E.VALIDATION_INVALID, "since must be a date")
    rows = dashboard_service.snapshot_history(project_id, tenant_id=g.tenant_id, since=since_date)
    return jsonify({"items": [s.to_dict() for s in rows], "total": len(rows)})


@projects_bp.route("/projects/<project_id>/snapshots", methods=["POST"])
@require_permission("projects.edit")
def capture_snapshot(project_id):
    snapshot = dashboard_service.capture_project_snapshot(project_id, tenant_id=g.tenant_id)
    return jsonify(snapshot.to_dict()), 201


# ═══════════════════════════════════════════════════════════════════════════
#  QC INSPECTIONS
# ═══════════════════════════════════════════════════════════════════════════

@projects_bp.route("/projects/<project_id>/inspections", methods=["GET"])
@require_permission("inspections.view")
def list_inspections(project_id):
    q = inspection_service.list_inspections(project_id, tenant_id=g.tenant_id,
                                            status=request.args.get("status"))
    items, total = paginate_query(q)
    return jsonify({"items": [i.to_dict() for i in items], "total": total})


@projects_bp.route("/projects/<project_id>/inspections", methods=["POST"])
@require_permission("inspections.manage")
def schedule_inspection(project_id):
    data, err = json_body()
    if err:
        return err
    if not data.get("title"):
        return api_error(E.VALIDATION_REQUIRED, "title is required")
    inspection = inspection_service.schedule_inspection(project_id, tenant_id=g.tenant_id, data=data,
                                                        actor_user_id=g.jwt_user_id)
    return jsonify(inspection.to_dict()), 201


@projects_bp.route("/inspections/<inspection_id>", methods=["GET"])
@require_permission("inspections.view")
def get_inspection(inspection_id):
    return jsonify(inspection_service.get_inspection(inspection_id, tenant_id=g.tenant_id).to_dict())


@projects_bp.route("/inspections/<inspection_id>/start", methods=["POST"])
@require_permission("inspections.manage")
def start_inspection(inspection_id):
    inspection = inspection_service.start_inspection(inspection_id, tenant_id=g.tenant_id,
                                                     actor_user_id=g.jwt_user_id)
    return jsonify(inspection.to_dict())


@projects_bp.route("/inspections/<inspection_id>/result", methods=["POST"])
@require_permission("inspections.manage")
def record_inspection_result(inspection_id):
    data, err = json_body()
    if err:
        return err
    checklist = data.get("checklist")
    if not isinstance(checklist, list):
        return api_error(E.VALIDATION_INVALID, "checklist must be a list")
    inspection = inspection_service.record_result(
        inspection_id, tenant_id=g.tenant_id, checklist=checklist,
        findings=data.get("findings", ""), actor_user_id=g.jwt_user_id,
    )
    return jsonify(inspection.to_dict())


@projects_bp.route("/inspections/<inspection_id>/reschedule", methods=["POST"])
@require_permission("inspections.manage")
def reschedule_inspection(inspection_id):
    data, err = json_body()
    if err:
        return err
    scheduled = parse_date(data.get("scheduled_date"))
    if scheduled is None:
        return api_error(E.VALIDATION_REQUIRED, "scheduled_date is required")
    inspection = inspection_service.reschedule_inspection(
        inspection_id, tenant_id=g.tenant_id, scheduled_date=scheduled, actor_user_id=g.jwt_user_id,
    )
    return jsonify(inspection.to_dict())


# ═══════════════════════════════════════════════════════════════════════════
#  INTERACTION LOGS
# ═══════════════════════════════════════════════════════════════════════════

@projects_bp.route("/projects/<project_id>/interactions", methods=["GET"])
@require_permission("projects.view")
def list_interactions(project_id):
    q = interaction_log_service.list_project_logs(
        project_id,
        tenant_id=g.tenant_id,
        interaction_type=request.args.get("type"),
        visibility=request.args.get("visibility"),
        tag_prefix=request.args.get("tag"),
        client_view=arg_flag("client_view"),
    )
    logs, total = paginate_query(q)
    return jsonify({"items": [log.to_dict() for log in logs], "total": total})


@projects_bp.route("/projects/<project_id>/interactions", methods=["POST"])
@require_permission("projects.edit")
def create_interaction(project_id):
    data, err = json_body()
    if err:
        return err
    if not data.get("description"):
        return api_error(E.VALIDATION_REQUIRED, "description is required")
    log = interaction_log_service.create_log(project_id, tenant_id=g.tenant_id, data=data,
                                             actor_user_id=g.jwt_user_id)
    return jsonify(log.to_dict()), 201


@projects_bp.route("/interactions/<log_id>/client-approval", methods=["POST"])
@require_permission("projects.edit")
def approve_interaction(log_id):
    log = interaction_log_service.approve_for_client(log_id, tenant_id=g.tenant_id,
                                                     actor_user_id=g.jwt_user_id)
    return jsonify(log.to_dict())


@projects_bp.route("/interactions/<log_id>/client-approval", methods=["DELETE"])
@require_permission("projects.edit")
def revoke_interaction_approval(log_id):
    log = interaction_log_service.revoke_client_approval(log_id, tenant_id=g.tenant_id,
                                                         actor_user_id=g.jwt_user_id)
    return jsonify(log.to_dict())


@projects_bp.route("/interactions/<log_id>", methods=["DELETE"])
@require_permission("projects.edit")
def delete_interaction(log_id):
    interaction_log_service.soft_delete_log(log_id, tenant_id=g.tenant_id, actor_user_id=g.jwt_user_id)
    return jsonify({"deleted": True, "id": log_id})
