"""
JWT Auth Middleware — parses the Bearer token and sets ``g.jwt_*``.

Every ``/api/v1/`` request outside ``JWT_SKIP_PREFIXES`` must carry a valid
access token; anything else is answered with 401 before the view runs.

Sets:
    g.jwt_user_id    — ``sub`` claim
    g.jwt_tenant_id  — ``tenant_id`` claim (None for platform operators)
    g.jwt_roles      — role names at issue time
"""

import logging

import jwt as pyjwt
from flask import g, request

from app.services.jwt_service import decode_access_token
from app.utils.errors import E, api_error

logger = logging.getLogger(__name__)

# Paths that skip JWT auth entirely
JWT_SKIP_PREFIXES = (
    "/api/v1/auth/login",
    "/api/v1/auth/refresh",
    "/api/v1/health",
    "/static/",
)


def init_jwt_middleware(app):
    """Register JWT middleware as a before_request hook."""

    @app.before_request
    def _jwt_auth():
        g.jwt_user_id = None
        g.jwt_tenant_id = None
        g.jwt_roles = []

        path = request.path
        if not path.startswith("/api/v1/") or request.method == "OPTIONS":
            return None
        for prefix in JWT_SKIP_PREFIXES:
            if path.startswith(prefix):
                return None

        auth_header = request.headers.get("Authorization", "")
        if not auth_header.startswith("Bearer "):
            return api_error(E.UNAUTHORIZED, "Authentication required")

        token = auth_header[7:]  # Strip "Bearer "
        try:
            payload = decode_access_token(token)
        except pyjwt.ExpiredSignatureError:
            return api_error(E.UNAUTHORIZED, "Token expired")
        except pyjwt.InvalidTokenError as exc:
            logger.info("Rejected access token: %s", exc, extra={"request_id": getattr(g, "request_id", None)})
            return api_error(E.UNAUTHORIZED, "Invalid token")

        g.jwt_user_id = payload.get("sub")
        g.jwt_tenant_id = payload.get("tenant_id")
        g.jwt_roles = payload.get("roles", [])
        return None
