"""
Tasks Blueprint — tasks, dependency edges and assignments.

Endpoints:
    TASK        /api/v1/projects/<pid>/tasks                 GET, POST (idempotent)
                /api/v1/tasks/<id>                           GET, PUT, DELETE
                /api/v1/tasks/<id>/status                    PATCH

    DEPENDENCY  /api/v1/tasks/<id>/dependencies              GET, POST
                /api/v1/tasks/<id>/dependencies/<dep_id>     DELETE

    ASSIGNMENT  /api/v1/tasks/<id>/assignments               GET, POST
                /api/v1/assignments/<id>                     DELETE
"""

import logging

from flask import Blueprint, g, jsonify, request

from app.blueprints import arg_flag, json_body, paginate_query
from app.middleware.permission_required import require_permission
from app.services import task_service
from app.services.idempotency_service import idempotent
from app.utils.errors import E, api_error

logger = logging.getLogger(__name__)

tasks_bp = Blueprint("tasks", __name__, url_prefix="/api/v1")


# ═══════════════════════════════════════════════════════════════════════════
#  TASK CRUD
# ═══════════════════════════════════════════════════════════════════════════

@tasks_bp.route("/projects/<project_id>/tasks", methods=["GET"])
@require_permission("tasks.view")
def list_tasks(project_id):
    q = task_service.list_tasks(
        project_id,
        tenant_id=g.tenant_id,
        status=request.args.get("status"),
        assignee_user_id=request.args.get("assignee"),
        include_deleted=arg_flag("include_deleted"),
    )
    tasks, total = paginate_query(q)
    return jsonify({"items": [t.to_dict() for t in tasks], "total": total})


@tasks_bp.route("/projects/<project_id>/tasks", methods=["POST"])
@require_permission("tasks.create")
@idempotent
def create_task(project_id):
    data, err = json_body()
    if err:
        return err
    if not data.get("title"):
        return api_error(E.VALIDATION_REQUIRED, "title is required")
    if "depends_on" in data and not isinstance(data["depends_on"], list):
        return api_error(E.VALIDATION_INVALID, "depends_on must be a list of task ids")
    task = task_service.create_task(project_id, tenant_id=g.tenant_id, data=data,
                                    actor_user_id=g.jwt_user_id)
    return jsonify(task.to_dict(include_dependencies=True)), 201


@tasks_bp.route("/tasks/<task_id>", methods=["GET"])
@require_permission("tasks.view")
def get_task(task_id):
    task = task_service.get_task(task_id, tenant_id=g.tenant_id,
                                 include_deleted=arg_flag("include_deleted"))
    return jsonify(task.to_dict(include_dependencies=True))


@tasks_bp.route("/tasks/<task_id>", methods=["PUT"])
@require_permission("tasks.edit")
def update_task(task_id):
    data, err = json_body()
    if err:
        return err
    task = task_service.update_task(task_id, tenant_id=g.tenant_id, data=data,
                                    actor_user_id=g.jwt_user_id)
    return jsonify(task.to_dict())


@tasks_bp.route("/tasks/<task_id>", methods=["DELETE"])
@require_permission("tasks.delete")
def delete_task(task_id):
    task_service.soft_delete_task(task_id, tenant_id=g.tenant_id, actor_user_id=g.jwt_user_id)
    return jsonify({"deleted": True, "id": task_id})


@tasks_bp.route("/tasks/<task_id>/status", methods=["PATCH"])
@require_permission("tasks.edit")
def transition_task(task_id):
    data, err = json_body()
    if err:
        return err
    if not data.get("status"):
        return api_error(E.VALIDATION_REQUIRED, "status is required")
    task = task_service.transition_task(task_id, tenant_id=g.tenant_id, new_status=data["status"],
                                        actor_user_id=g.jwt_user_id)
    return jsonify(task.to_dict())


# ═══════════════════════════════════════════════════════════════════════════
#  DEPENDENCIES
# ═══════════════════════════════════════════════════════════════════════════

@tasks_bp.route("/tasks/<task_id>/dependencies", methods=["GET"])
@require_permission("tasks.view")
def list_dependencies(task_id):
    return jsonify(task_service.list_dependencies(task_id, tenant_id=g.tenant_id))


@tasks_bp.route("/tasks/<task_id>/dependencies", methods=["POST"])
@require_permission("tasks.edit")
def add_dependency(task_id):
    data, err = json_body()
    if err:
        return err
    depends_on = data.get("depends_on_task_id")
    if not depends_on:
        return api_error(E.VALIDATION_REQUIRED, "depends_on_task_id is required")
    try:
        lag_days = int(data.get("lag_days", 0) or 0)
    except (TypeError, ValueError):
        return api_error(E.VALIDATION_INVALID, "lag_days must be an integer")
    dep = task_service.add_dependency(
        task_id, tenant_id=g.tenant_id, depends_on_task_id=depends_on,
        dependency_type=data.get("dependency_type", "finish_to_start"), lag_days=lag_days,
        actor_user_id=g.jwt_user_id,
    )
    return jsonify(dep.to_dict()), 201


@tasks_bp.route("/tasks/<task_id>/dependencies/<depends_on_task_id>", methods=["DELETE"])
@require_permission("tasks.edit")
def remove_dependency(task_id, depends_on_task_id):
    task_service.remove_dependency(task_id, tenant_id=g.tenant_id, depends_on_task_id=depends_on_task_id,
                                   actor_user_id=g.jwt_user_id)
    return jsonify({"removed": True})


# ═══════════════════════════════════════════════════════════════════════════
#  ASSIGNMENTS
# ═══════════════════════════════════════════════════════════════════════════

@tasks_bp.route("/tasks/<task_id>/assignments", methods=["GET"])
@require_permission("tasks.view")
def list_assignments(task_id):
    rows = task_service.list_assignments(task_id, tenant_id=g.tenant_id)
    return jsonify({"items": [a.to_dict() for a in rows], "total": len(rows)})


@tasks_bp.route("/tasks/<task_id>/assignments", methods=["POST"])
@require_permission("tasks.assign")
def assign_task(task_id):
    data, err = json_body()
    if err:
        return err
    try:
        allocation = int(data.get("allocation_percent", 100))
    except (TypeError, ValueError):
        return api_error(E.VALIDATION_INVALID, "allocation_percent must be an integer")
    assignment = task_service.assign_task(
        task_id,
        tenant_id=g.tenant_id,
        user_id=data.get("user_id"),
        team_id=data.get("team_id"),
        role=data.get("role", "assignee"),
        allocation_percent=allocation,
        actor_user_id=g.jwt_user_id,
    )
    return jsonify(assignment.to_dict()), 201


@tasks_bp.route("/assignments/<assignment_id>", methods=["DELETE"])
@require_permission("tasks.assign")
def unassign_task(assignment_id):
    task_service.unassign_task(assignment_id, tenant_id=g.tenant_id, actor_user_id=g.jwt_user_id)
    return jsonify({"removed": True})
