"""
Documents Blueprint — document metadata and the append-only version chain.

Endpoints:
    /api/v1/projects/<pid>/documents                    GET, POST
    /api/v1/documents/<id>                              GET, PUT, DELETE
    /api/v1/documents/<id>/versions                     GET, POST (upload)
    /api/v1/documents/<id>/versions/<n>                 GET
    /api/v1/documents/<id>/versions/<n>/revert          POST
    /api/v1/documents/<id>/compare?from=<n>&to=<m>      GET
"""

from flask import Blueprint, g, jsonify, request

from app.blueprints import arg_flag, json_body, paginate_query
from app.middleware.permission_required import require_permission
from app.services import document_service
from app.utils.errors import E, api_error

documents_bp = Blueprint("documents", __name__, url_prefix="/api/v1")


@documents_bp.route("/projects/<project_id>/documents", methods=["GET"])
@require_permission("documents.view")
def list_documents(project_id):
    q = document_service.list_documents(project_id, tenant_id=g.tenant_id,
                                        category=request.args.get("category"),
                                        include_deleted=arg_flag("include_deleted"))
    docs, total = paginate_query(q)
    return jsonify({"items": [d.to_dict() for d in docs], "total": total})


@documents_bp.route("/projects/<project_id>/documents", methods=["POST"])
@require_permission("documents.upload")
def create_document(project_id):
    data, err = json_body()
    if err:
        return err
    if not data.get("title"):
        return api_error(E.VALIDATION_REQUIRED, "title is required")
    document = document_service.create_document(project_id, tenant_id=g.tenant_id, data=data,
                                                actor_user_id=g.jwt_user_id)
    return jsonify(document.to_dict()), 201


@documents_bp.route("/documents/<document_id>", methods=["GET"])
@require_permission("documents.view")
def get_document(document_id):
    document = document_service.get_document(document_id, tenant_id=g.tenant_id,
                                             include_deleted=arg_flag("include_deleted"))
    return jsonify(document.to_dict())


@documents_bp.route("/documents/<document_id>", methods=["PUT"])
@require_permission("documents.upload")
def update_document(document_id):
    data, err = json_body()
    if err:
        return err
    document = document_service.update_document(document_id, tenant_id=g.tenant_id, data=data,
                                                actor_user_id=g.jwt_user_id)
    return jsonify(document.to_dict())


@documents_bp.route("/documents/<document_id>", methods=["DELETE"])
@require_permission("documents.delete")
def delete_document(document_id):
    document_service.soft_delete_document(document_id, tenant_id=g.tenant_id, actor_user_id=g.jwt_user_id)
    return jsonify({"deleted": True, "id": document_id})


# ── Versions ─────────────────────────────────────────────────────────────────

@documents_bp.route("/documents/<document_id>/versions", methods=["GET"])
@require_permission("documents.view")
def list_versions(document_id):
    versions = document_service.list_versions(document_id, tenant_id=g.tenant_id)
    return jsonify({"items": [v.to_dict() for v in versions], "total": len(versions)})


@documents_bp.route("/documents/<document_id>/versions", methods=["POST"])
@require_permission("documents.upload")
def upload_version(document_id):
    data, err = json_body()
    if err:
        return err
    version = document_service.upload_version(document_id, tenant_id=g.tenant_id, data=data,
                                              actor_user_id=g.jwt_user_id)
    return jsonify(version.to_dict()), 201


@documents_bp.route("/documents/<document_id>/versions/<int:version_number>", methods=["GET"])
@require_permission("documents.view")
def get_version(document_id, version_number):
    version = document_service.get_version(document_id, version_number, tenant_id=g.tenant_id)
    return jsonify(version.to_dict())


@documents_bp.route("/documents/<document_id>/versions/<int:version_number>/revert", methods=["POST"])
@require_permission("documents.upload")
def revert_version(document_id, version_number):
    data, err = json_body()
    if err:
        return err
    version = document_service.revert_to_version(
        document_id, version_number, tenant_id=g.tenant_id,
        change_note=data.get("change_note", ""), actor_user_id=g.jwt_user_id,
    )
    return jsonify(version.to_dict()), 201


@documents_bp.route("/documents/<document_id>/compare", methods=["GET"])
@require_permission("documents.view")
def compare_versions(document_id):
    from_version = request.args.get("from", type=int)
    to_version = request.args.get("to", type=int)
    if from_version is None or to_version is None:
        return api_error(E.VALIDATION_REQUIRED, "'from' and 'to' version numbers are required")
    return jsonify(document_service.compare_versions(document_id, from_version, to_version,
                                                     tenant_id=g.tenant_id))
