"""
Templates Blueprint — reusable project templates with immutable versions.

Endpoints:
    /api/v1/templates                                GET, POST
    /api/v1/templates/<id>                           GET, PUT, DELETE
    /api/v1/templates/<id>/versions                  GET, POST (publish)
    /api/v1/templates/<id>/versions/<n>              GET
    /api/v1/projects/<pid>/apply-template            POST  {template_id, version?}
"""

from flask import Blueprint, g, jsonify, request

from app.blueprints import json_body, paginate_query
from app.middleware.permission_required import require_permission
from app.services import template_service
from app.utils.errors import E, api_error

templates_bp = Blueprint("templates", __name__, url_prefix="/api/v1")


@templates_bp.route("/templates", methods=["GET"])
@require_permission("templates.view")
def list_templates():
    q = template_service.list_templates(tenant_id=g.tenant_id, category=request.args.get("category"),
                                        active_only=request.args.get("active") == "true")
    items, total = paginate_query(q)
    return jsonify({"items": [t.to_dict() for t in items], "total": total})


@templates_bp.route("/templates", methods=["POST"])
@require_permission("templates.manage")
def create_template():
    data, err = json_body()
    if err:
        return err
    if not data.get("name"):
        return api_error(E.VALIDATION_REQUIRED, "name is required")
    template = template_service.create_template(
        tenant_id=g.tenant_id,
        name=data["name"],
        category=data.get("category", "general"),
        description=data.get("description", ""),
        content=data.get("content"),
        actor_user_id=g.jwt_user_id,
    )
    return jsonify(template.to_dict()), 201


@templates_bp.route("/templates/<template_id>", methods=["GET"])
@require_permission("templates.view")
def get_template(template_id):
    return jsonify(template_service.get_template(template_id, tenant_id=g.tenant_id).to_dict())


@templates_bp.route("/templates/<template_id>", methods=["PUT"])
@require_permission("templates.manage")
def update_template(template_id):
    data, err = json_body()
    if err:
        return err
    template = template_service.update_template_metadata(template_id, tenant_id=g.tenant_id, data=data,
                                                         actor_user_id=g.jwt_user_id)
    return jsonify(template.to_dict())


@templates_bp.route("/templates/<template_id>", methods=["DELETE"])
@require_permission("templates.manage")
def delete_template(template_id):
    template_service.soft_delete_template(template_id, tenant_id=g.tenant_id, actor_user_id=g.jwt_user_id)
    return jsonify({"deleted": True, "id": template_id})


@templates_bp.route("/templates/<template_id>/versions", methods=["GET"])
@require_permission("templates.view")
def list_versions(template_id):
    versions = template_service.list_versions(template_id, tenant_id=g.tenant_id)
    return jsonify({"items": [v.to_dict() for v in versions], "total": len(versions)})


@templates_bp.route("/templates/<template_id>/versions", methods=["POST"])
@require_permission("templates.manage")
def publish_version(template_id):
    data, err = json_body()
    if err:
        return err
    if "content" not in data:
        return api_error(E.VALIDATION_REQUIRED, "content is required")
    version = template_service.publish_version(template_id, tenant_id=g.tenant_id, content=data["content"],
                                               change_note=data.get("change_note", ""),
                                               actor_user_id=g.jwt_user_id)
    return jsonify(version.to_dict()), 201


@templates_bp.route("/templates/<template_id>/versions/<int:version>", methods=["GET"])
@require_permission("templates.view")
def get_version(template_id, version):
    return jsonify(template_service.get_version(template_id, version, tenant_id=g.tenant_id).to_dict())


@templates_bp.route("/projects/<project_id>/apply-template", methods=["POST"])
@require_permission("projects.edit")
def apply_template(project_id):
    data, err = json_body()
    if err:
        return err
    if not data.get("template_id"):
        return api_error(E.VALIDATION_REQUIRED, "template_id is required")
    version = data.get("version")
    if version is not None and not isinstance(version, int):
        return api_error(E.VALIDATION_INVALID, "version must be an integer")
    summary = template_service.apply_template(project_id, tenant_id=g.tenant_id,
                                              template_id=data["template_id"], version=version,
                                              actor_user_id=g.jwt_user_id)
    return jsonify(summary), 201
