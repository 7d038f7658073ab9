"""
Tenant Context Middleware — enforces tenant isolation on API requests.

Resolution order:
  1. ``tenant_id`` claim of the access token (set by jwt_auth)
  2. ``X-Tenant-ID`` header — only platform admins may act in a tenant other
     than the token's, and only they may hold a token without a tenant

The resolved tenant must exist, be active and not be soft-deleted;
otherwise the request is refused with 403.  On success ``g.tenant`` and
``g.tenant_id`` are set for the services.

Chain order:
  jwt_auth.py  →  tenant_context.py  →  route handler
"""

import logging

from flask import g, request

from app.models import db
from app.models.auth import Tenant
from app.utils.errors import E, api_error

logger = logging.getLogger(__name__)

TENANT_HEADER = "X-Tenant-ID"

# Paths that skip tenant context (unauthenticated or platform-level)
TENANT_SKIP_PREFIXES = (
    "/api/v1/auth/login",
    "/api/v1/auth/refresh",
    "/api/v1/health",
    "/api/v1/platform/",
    "/static/",
)


def init_tenant_context(app):
    """Register tenant context middleware as a before_request hook."""

    @app.before_request
    def _tenant_context():
        g.tenant = None
        g.tenant_id = None

        if not request.path.startswith("/api/v1/") or request.method == "OPTIONS":
            return None
        for prefix in TENANT_SKIP_PREFIXES:
            if request.path.startswith(prefix):
                return None

        roles = getattr(g, "jwt_roles", []) or []
        claim_tenant = getattr(g, "jwt_tenant_id", None)
        header_tenant = request.headers.get(TENANT_HEADER)

        tenant_id = claim_tenant
        if header_tenant and header_tenant != claim_tenant:
            if "platform_admin" not in roles:
                logger.warning("Tenant header %s rejected for user %s (token tenant %s)",
                               header_tenant, getattr(g, "jwt_user_id", None), claim_tenant)
                return api_error(E.FORBIDDEN, "Tenant header does not match token")
            tenant_id = header_tenant

        if tenant_id is None:
            if "platform_admin" not in roles:
                logger.warning("Tenant-less token refused for user %s", getattr(g, "jwt_user_id", None))
                return api_error(E.FORBIDDEN, "No tenant context for this account")
            # Platform operator without header
            return None

        tenant = db.session.get(Tenant, tenant_id)
        if tenant is None or tenant.deleted_at is not None:
            logger.warning("Request for unknown tenant %s", tenant_id, extra={"tenant_id": tenant_id})
            return api_error(E.FORBIDDEN, "Tenant not found")
        if not tenant.is_usable:
            logger.warning("Request for %s tenant %s", tenant.status, tenant_id, extra={"tenant_id": tenant_id})
            return api_error(E.FORBIDDEN, f"Tenant account is {tenant.status}")

        g.tenant = tenant
        g.tenant_id = tenant.id
        return None

    logger.info("Tenant context middleware installed")
