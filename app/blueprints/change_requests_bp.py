"""
Change Requests Blueprint — scope/cost changes and their approval chain.

Endpoints:
    /api/v1/projects/<pid>/change-requests                GET, POST (idempotent)
    /api/v1/change-requests                               GET  (tenant-wide, ?status=)
    /api/v1/change-requests/<id>                          GET, PUT, DELETE
    /api/v1/change-requests/<id>/submit                   POST
    /api/v1/change-requests/<id>/approvals/<level>        POST  {decision, comment}
    /api/v1/change-requests/<id>/implement                POST
    /api/v1/change-requests/<id>/rework                   POST
    /api/v1/change-requests/<id>/cancel                   POST
    /api/v1/change-requests/<id>/comments                 GET (thread), POST
"""

from flask import Blueprint, g, jsonify, request

from app.blueprints import arg_flag, json_body, paginate_query
from app.middleware.permission_required import require_permission
from app.services import change_request_service as crs
from app.services.idempotency_service import idempotent
from app.utils.errors import E, api_error

change_requests_bp = Blueprint("change_requests", __name__, url_prefix="/api/v1")


@change_requests_bp.route("/projects/<project_id>/change-requests", methods=["GET"])
@require_permission("change_requests.view")
def list_project_change_requests(project_id):
    q = crs.list_change_requests(tenant_id=g.tenant_id, project_id=project_id,
                                 status=request.args.get("status"),
                                 include_deleted=arg_flag("include_deleted"))
    items, total = paginate_query(q)
    return jsonify({"items": [cr.to_dict() for cr in items], "total": total})


@change_requests_bp.route("/change-requests", methods=["GET"])
@require_permission("change_requests.view")
def list_change_requests():
    q = crs.list_change_requests(tenant_id=g.tenant_id, status=request.args.get("status"))
    items, total = paginate_query(q)
    return jsonify({"items": [cr.to_dict() for cr in items], "total": total})


@change_requests_bp.route("/projects/<project_id>/change-requests", methods=["POST"])
@require_permission("change_requests.create")
@idempotent
def create_change_request(project_id):
    data, err = json_body()
    if err:
        return err
    if not data.get("title"):
        return api_error(E.VALIDATION_REQUIRED, "title is required")
    cr = crs.create_change_request(project_id, tenant_id=g.tenant_id, data=data,
                                   actor_user_id=g.jwt_user_id)
    return jsonify(cr.to_dict(include_approvals=True)), 201


@change_requests_bp.route("/change-requests/<cr_id>", methods=["GET"])
@require_permission("change_requests.view")
def get_change_request(cr_id):
    cr = crs.get_change_request(cr_id, tenant_id=g.tenant_id, include_deleted=arg_flag("include_deleted"))
    return jsonify(cr.to_dict(include_approvals=True))


@change_requests_bp.route("/change-requests/<cr_id>", methods=["PUT"])
@require_permission("change_requests.create")
def update_change_request(cr_id):
    data, err = json_body()
    if err:
        return err
    cr = crs.update_change_request(cr_id, tenant_id=g.tenant_id, data=data, actor_user_id=g.jwt_user_id)
    return jsonify(cr.to_dict())


@change_requests_bp.route("/change-requests/<cr_id>", methods=["DELETE"])
@require_permission("change_requests.create")
def delete_change_request(cr_id):
    crs.soft_delete_change_request(cr_id, tenant_id=g.tenant_id, actor_user_id=g.jwt_user_id)
    return jsonify({"deleted": True, "id": cr_id})


# ── Workflow ─────────────────────────────────────────────────────────────────

@change_requests_bp.route("/change-requests/<cr_id>/submit", methods=["POST"])
@require_permission("change_requests.create")
def submit_change_request(cr_id):
    cr = crs.submit_change_request(cr_id, tenant_id=g.tenant_id, actor_user_id=g.jwt_user_id)
    return jsonify(cr.to_dict(include_approvals=True))


@change_requests_bp.route("/change-requests/<cr_id>/approvals/<int:level>", methods=["POST"])
@require_permission("change_requests.approve")
def decide_approval(cr_id, level):
    data, err = json_body()
    if err:
        return err
    decision = data.get("decision")
    if decision not in ("approved", "rejected"):
        return api_error(E.VALIDATION_INVALID, "decision must be 'approved' or 'rejected'")
    cr = crs.decide_approval(cr_id, tenant_id=g.tenant_id, level=level, decision=decision,
                             actor_user_id=g.jwt_user_id, comment=data.get("comment", ""))
    return jsonify(cr.to_dict(include_approvals=True))


@change_requests_bp.route("/change-requests/<cr_id>/implement", methods=["POST"])
@require_permission("change_requests.implement")
def implement_change_request(cr_id):
    cr = crs.implement_change_request(cr_id, tenant_id=g.tenant_id, actor_user_id=g.jwt_user_id)
    return jsonify(cr.to_dict())


@change_requests_bp.route("/change-requests/<cr_id>/rework", methods=["POST"])
@require_permission("change_requests.create")
def rework_change_request(cr_id):
    cr = crs.rework_change_request(cr_id, tenant_id=g.tenant_id, actor_user_id=g.jwt_user_id)
    return jsonify(cr.to_dict())


@change_requests_bp.route("/change-requests/<cr_id>/cancel", methods=["POST"])
@require_permission("change_requests.create")
def cancel_change_request(cr_id):
    data, err = json_body()
    if err:
        return err
    cr = crs.cancel_change_request(cr_id, tenant_id=g.tenant_id, reason=data.get("reason", ""),
                                   actor_user_id=g.jwt_user_id)
    return jsonify(cr.to_dict())


# ── Comments ─────────────────────────────────────────────────────────────────

@change_requests_bp.route("/change-requests/<cr_id>/comments", methods=["GET"])
@require_permission("change_requests.view")
def comment_thread(cr_id):
    return jsonify({"items": crs.comment_thread(cr_id, tenant_id=g.tenant_id)})


@change_requests_bp.route("/change-requests/<cr_id>/comments", methods=["POST"])
@require_permission("change_requests.view")
def add_comment(cr_id):
    data, err = json_body()
    if err:
        return err
    if not str(data.get("body") or "").strip():
        return api_error(E.VALIDATION_REQUIRED, "body is required")
    comment = crs.add_comment(cr_id, tenant_id=g.tenant_id, body=data["body"],
                              parent_id=data.get("parent_id"), actor_user_id=g.jwt_user_id)
    return jsonify(comment.to_dict()), 201
