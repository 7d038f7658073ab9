"""
Permission Decorators — JWT-aware RBAC decorators for route protection.

Usage:
    @bp.route("/projects", methods=["POST"])
    @require_permission("projects.create")
    def create_project():
        ...

    @bp.route("/tenants", methods=["GET"])
    @require_platform_admin
    def list_tenants():
        ...

Tenant-scoped decorators also require a resolved tenant (``g.tenant_id``).
Platform Admin and Tenant Admin bypass permission checks (superuser).
"""

import functools
import logging

from flask import g

from app.services.permission_service import has_any_permission, has_permission
from app.utils.errors import E, api_error

logger = logging.getLogger(__name__)


def _context_error():
    if getattr(g, "jwt_user_id", None) is None:
        return api_error(E.UNAUTHORIZED, "Authentication required")
    if getattr(g, "tenant_id", None) is None:
        return api_error(E.FORBIDDEN, "No tenant selected", details={"header": "X-Tenant-ID"})
    return None


def require_permission(codename: str):
    """Decorator: require the JWT user to hold *codename* in the current tenant."""
    def decorator(f):
        @functools.wraps(f)
        def decorated(*args, **kwargs):
            err = _context_error()
            if err:
                return err
            if not has_permission(g.jwt_user_id, codename, tenant_id=g.tenant_id):
                logger.warning("User %s denied: missing permission '%s' on %s",
                               g.jwt_user_id, codename, f.__name__,
                               extra={"tenant_id": g.tenant_id})
                return api_error(E.FORBIDDEN, "Permission denied", details={"required": codename})
            return f(*args, **kwargs)
        return decorated
    return decorator


def require_any_permission(*codenames: str):
    """Decorator: require at least ONE of the listed permissions."""
    def decorator(f):
        @functools.wraps(f)
        def decorated(*args, **kwargs):
            err = _context_error()
            if err:
                return err
            if not has_any_permission(g.jwt_user_id, list(codenames), tenant_id=g.tenant_id):
                logger.warning("User %s denied: missing any of %s on %s",
                               g.jwt_user_id, codenames, f.__name__)
                return api_error(E.FORBIDDEN, "Permission denied",
                                 details={"required_any": list(codenames)})
            return f(*args, **kwargs)
        return decorated
    return decorator


def require_platform_admin(f):
    """Decorator: platform-level endpoints (tenant management, outbox admin)."""
    @functools.wraps(f)
    def decorated(*args, **kwargs):
        if getattr(g, "jwt_user_id", None) is None:
            return api_error(E.UNAUTHORIZED, "Authentication required")
        if "platform_admin" not in (getattr(g, "jwt_roles", None) or []):
            return api_error(E.FORBIDDEN, "Platform admin role required")
        return f(*args, **kwargs)
    return decorated
