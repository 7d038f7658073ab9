"""
Auth Blueprint — JWT authentication, users and teams.

Endpoints:
  POST   /api/v1/auth/login              — Email + password → JWT pair
  POST   /api/v1/auth/refresh            — Refresh token → new pair (rotation)
  POST   /api/v1/auth/logout             — Revoke refresh token
  POST   /api/v1/auth/logout-all         — Revoke every session of the caller
  GET    /api/v1/auth/me                 — Current user profile
  POST   /api/v1/auth/change-password
  POST   /api/v1/auth/mfa                — Enable MFA (secret + recovery codes, shown once)
  DELETE /api/v1/auth/mfa

  GET    /api/v1/users                   — users.view
  POST   /api/v1/users                   — users.manage
  GET    /api/v1/users/<id>
  PUT    /api/v1/users/<id>
  DELETE /api/v1/users/<id>
  POST   /api/v1/users/<id>/unlock
  POST   /api/v1/users/<id>/roles        — assign role
  DELETE /api/v1/users/<id>/roles/<name>

  POST   /api/v1/teams
  POST   /api/v1/teams/<id>/members
  DELETE /api/v1/teams/<id>/members/<user_id>
"""

import logging

import jwt as pyjwt
from flask import Blueprint, g, jsonify, request

from app.blueprints import arg_flag, json_body, paginate_query
from app.middleware.permission_required import require_permission
from app.services.jwt_service import (
    create_session,
    decode_refresh_token,
    generate_token_pair,
    get_active_session_by_token,
    hash_token,
    revoke_all_user_sessions,
    revoke_session_by_token,
    rotate_session,
)
from app.services.permission_service import get_user_role_names
from app.services.tenant_service import get_tenant_by_slug
from app.services.user_service import (
    UserServiceError,
    add_team_member,
    assign_role,
    authenticate,
    change_password,
    create_team,
    create_user,
    disable_mfa,
    enable_mfa,
    get_user,
    list_users,
    remove_team_member,
    revoke_role,
    soft_delete_user,
    unlock_user,
    update_user,
)
from app.utils.errors import E, api_error

logger = logging.getLogger(__name__)

auth_bp = Blueprint("auth", __name__, url_prefix="/api/v1")


@auth_bp.errorhandler(UserServiceError)
def _handle_user_error(e: UserServiceError):
    return jsonify({"error": e.message}), e.status_code


def _issue_tokens(user, tenant_id, status_code=200):
    roles = get_user_role_names(user.id, tenant_id)
    tokens = generate_token_pair(user.id, tenant_id, roles)
    create_session(
        user.id, tokens["token_hash"],
        request.remote_addr, request.headers.get("User-Agent", ""),
        tokens["expires_at"],
    )
    return jsonify({
        "access_token": tokens["access_token"],
        "refresh_token": tokens["refresh_token"],
        "token_type": tokens["token_type"],
        "expires_in": tokens["expires_in"],
        "must_change_password": bool(user.must_change_password),
        "user": user.to_dict(include_roles=True),
    }), status_code


# ═══════════════════════════════════════════════════════════════
# POST /api/v1/auth/login
# ═══════════════════════════════════════════════════════════════
@auth_bp.route("/auth/login", methods=["POST"])
def login():
    """
    Authenticate with email + password, return JWT pair.

    Body: { "email": "...", "password": "...", "tenant_slug": "..." }
    Without ``tenant_slug`` only platform admins (users without a tenant)
    can log in.
    """
    data, err = json_body()
    if err:
        return err
    email = str(data.get("email", "")).strip().lower()
    password = data.get("password", "")
    tenant_slug = data.get("tenant_slug", "")

    if not email or not password:
        return api_error(E.VALIDATION_REQUIRED, "Email and password are required")

    # ── Platform admin login (no tenant) ──────────────────────
    if not tenant_slug:
        user = authenticate(None, email, password)
        if "platform_admin" not in get_user_role_names(user.id, None):
            return api_error(E.VALIDATION_REQUIRED, "Tenant slug is required")
        return _issue_tokens(user, None)

    # ── Standard tenant login ─────────────────────────────────
    tenant = get_tenant_by_slug(tenant_slug)
    if not tenant or not tenant.is_usable:
        # Same answer for unknown and suspended tenants
        return api_error(E.UNAUTHORIZED, "Invalid email or password")

    user = authenticate(tenant.id, email, password)
    return _issue_tokens(user, tenant.id)


# ═══════════════════════════════════════════════════════════════
# POST /api/v1/auth/refresh
# ═══════════════════════════════════════════════════════════════
@auth_bp.route("/auth/refresh", methods=["POST"])
def refresh():
    """
    Exchange a refresh token for a new pair.  The old refresh token is revoked.

    Body: { "refresh_token": "..." }
    """
    data, err = json_body()
    if err:
        return err
    refresh_token = data.get("refresh_token", "")
    if not refresh_token:
        return api_error(E.VALIDATION_REQUIRED, "Refresh token is required")

    try:
        payload = decode_refresh_token(refresh_token)
    except pyjwt.InvalidTokenError:
        return api_error(E.UNAUTHORIZED, "Invalid or expired refresh token")

    user_id = payload.get("sub")
    tenant_id = payload.get("tenant_id")

    session = get_active_session_by_token(user_id, hash_token(refresh_token))
    if not session or session.is_expired:
        return api_error(E.UNAUTHORIZED, "Session not found or revoked")

    user = get_user(user_id)
    if user.status != "active":
        return api_error(E.FORBIDDEN, f"Account is {user.status}")

    roles = get_user_role_names(user.id, tenant_id)
    tokens = generate_token_pair(user.id, tenant_id, roles)
    rotate_session(
        session, user.id, tokens["token_hash"], tokens["expires_at"],
        request.remote_addr, request.headers.get("User-Agent", ""),
    )
    return jsonify({
        "access_token": tokens["access_token"],
        "refresh_token": tokens["refresh_token"],
        "token_type": tokens["token_type"],
        "expires_in": tokens["expires_in"],
    }), 200


# ═══════════════════════════════════════════════════════════════
# Logout / profile
# ═══════════════════════════════════════════════════════════════
@auth_bp.route("/auth/logout", methods=["POST"])
def logout():
    data, err = json_body()
    if err:
        return err
    refresh_token = data.get("refresh_token", "")
    if not refresh_token:
        return api_error(E.VALIDATION_REQUIRED, "Refresh token is required")
    revoked = revoke_session_by_token(hash_token(refresh_token))
    return jsonify({"revoked": revoked}), 200


@auth_bp.route("/auth/logout-all", methods=["POST"])
def logout_all():
    count = revoke_all_user_sessions(g.jwt_user_id)
    return jsonify({"revoked": count}), 200


@auth_bp.route("/auth/me", methods=["GET"])
def me():
    user = get_user(g.jwt_user_id)
    d = user.to_dict(include_roles=True)
    d["tenant"] = g.tenant.to_dict() if getattr(g, "tenant", None) is not None else None
    return jsonify(d), 200


@auth_bp.route("/auth/change-password", methods=["POST"])
def change_password_route():
    data, err = json_body()
    if err:
        return err
    current = data.get("current_password", "")
    new = data.get("new_password", "")
    if not current or not new:
        return api_error(E.VALIDATION_REQUIRED, "current_password and new_password are required")
    user = change_password(g.jwt_user_id, current, new)
    return jsonify(user.to_dict()), 200


@auth_bp.route("/auth/mfa", methods=["POST"])
def enable_mfa_route():
    return jsonify(enable_mfa(g.jwt_user_id)), 201


@auth_bp.route("/auth/mfa", methods=["DELETE"])
def disable_mfa_route():
    return jsonify(disable_mfa(g.jwt_user_id).to_dict()), 200


# ═══════════════════════════════════════════════════════════════
# Tenant user administration
# ═══════════════════════════════════════════════════════════════
@auth_bp.route("/users", methods=["GET"])
@require_permission("users.view")
def list_users_route():
    q = list_users(g.tenant_id, status=request.args.get("status"),
                   include_deleted=arg_flag("include_deleted"))
    users, total = paginate_query(q)
    return jsonify({"items": [u.to_dict(include_roles=True) for u in users], "total": total})


@auth_bp.route("/users", methods=["POST"])
@require_permission("users.manage")
def create_user_route():
    data, err = json_body()
    if err:
        return err
    if not data.get("email"):
        return api_error(E.VALIDATION_REQUIRED, "email is required")
    roles = data.get("roles") or []
    if not isinstance(roles, list):
        return api_error(E.VALIDATION_INVALID, "roles must be a list")
    user = create_user(
        g.tenant_id,
        data["email"],
        password=data.get("password"),
        full_name=data.get("full_name"),
        role_names=roles,
        phone=data.get("phone"),
    )
    return jsonify(user.to_dict(include_roles=True)), 201


@auth_bp.route("/users/<user_id>", methods=["GET"])
@require_permission("users.view")
def get_user_route(user_id):
    return jsonify(get_user(user_id, g.tenant_id).to_dict(include_roles=True))


@auth_bp.route("/users/<user_id>", methods=["PUT"])
@require_permission("users.manage")
def update_user_route(user_id):
    data, err = json_body()
    if err:
        return err
    user = update_user(user_id, g.tenant_id, **data)
    return jsonify(user.to_dict(include_roles=True))


@auth_bp.route("/users/<user_id>", methods=["DELETE"])
@require_permission("users.manage")
def delete_user_route(user_id):
    soft_delete_user(user_id, g.tenant_id)
    return jsonify({"deleted": True, "id": user_id})


@auth_bp.route("/users/<user_id>/unlock", methods=["POST"])
@require_permission("users.manage")
def unlock_user_route(user_id):
    get_user(user_id, g.tenant_id)
    return jsonify(unlock_user(user_id).to_dict())


@auth_bp.route("/users/<user_id>/roles", methods=["POST"])
@require_permission("users.manage")
def assign_role_route(user_id):
    data, err = json_body()
    if err:
        return err
    role_name = data.get("role")
    if not role_name:
        return api_error(E.VALIDATION_REQUIRED, "role is required")
    get_user(user_id, g.tenant_id)
    assign_role(user_id, role_name, assigned_by=g.jwt_user_id)
    return jsonify(get_user(user_id).to_dict(include_roles=True)), 201


@auth_bp.route("/users/<user_id>/roles/<role_name>", methods=["DELETE"])
@require_permission("users.manage")
def revoke_role_route(user_id, role_name):
    get_user(user_id, g.tenant_id)
    revoke_role(user_id, role_name)
    return jsonify(get_user(user_id).to_dict(include_roles=True))


# ═══════════════════════════════════════════════════════════════
# Teams
# ═══════════════════════════════════════════════════════════════
@auth_bp.route("/teams", methods=["POST"])
@require_permission("users.manage")
def create_team_route():
    data, err = json_body()
    if err:
        return err
    team = create_team(g.tenant_id, data.get("name", ""), data.get("description", ""),
                       lead_user_id=data.get("lead_user_id"))
    return jsonify(team.to_dict()), 201


@auth_bp.route("/teams/<team_id>/members", methods=["POST"])
@require_permission("users.manage")
def add_team_member_route(team_id):
    data, err = json_body()
    if err:
        return err
    if not data.get("user_id"):
        return api_error(E.VALIDATION_REQUIRED, "user_id is required")
    member = add_team_member(g.tenant_id, team_id, data["user_id"],
                             role_in_team=data.get("role_in_team", "member"))
    return jsonify(member.to_dict()), 201


@auth_bp.route("/teams/<team_id>/members/<user_id>", methods=["DELETE"])
@require_permission("users.manage")
def remove_team_member_route(team_id, user_id):
    remove_team_member(g.tenant_id, team_id, user_id)
    return jsonify({"removed": True})
