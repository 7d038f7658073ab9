"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter.  The Limiter
instance is created in app/__init__.py with no default limits; this module
applies granular limits per route category plus a plan-based quota keyed by
tenant.

Plan-based API quotas:
    - trial:        100 requests/minute
    - starter:      300 requests/minute
    - professional: 600 requests/minute
    - enterprise:   5000 requests/minute

Usage:
    from app.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

from flask import g, request as flask_request

logger = logging.getLogger(__name__)

PLAN_RATE_LIMITS = {
    "trial": "100/minute",
    "starter": "300/minute",
    "professional": "600/minute",
    "enterprise": "5000/minute",
}

DEFAULT_PLAN_LIMIT = "100/minute"


def tenant_rate_limit_key():
    """Dynamic rate limit key: tenant_id if available, else remote IP."""
    tenant_id = getattr(g, "tenant_id", None)
    if tenant_id:
        return f"tenant:{tenant_id}"
    return flask_request.remote_addr or "unknown"


def tenant_plan_limit():
    """Return the rate limit string for the current tenant's plan."""
    tenant = getattr(g, "tenant", None)
    if tenant:
        return PLAN_RATE_LIMITS.get(tenant.plan or "trial", DEFAULT_PLAN_LIMIT)
    return DEFAULT_PLAN_LIMIT


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits:
        - Auth endpoints:   20/minute per IP (credential stuffing)
        - Write-heavy APIs: 60/minute
        - Read APIs:        200/minute
        - Health check:     exempt
        - Every API call additionally counts against the tenant's plan quota

    Rate limiting is disabled in testing mode.
    """
    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    bp = app.blueprints.get("auth")
    if bp:
        limiter.limit("20/minute")(bp)

    for bp_name in ("projects", "tasks", "documents", "change_requests", "templates"):
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit("60/minute")(bp)

    for bp_name in ("notifications", "audit", "outbox"):
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit("200/minute")(bp)

    for bp_name in ("projects", "tasks", "documents", "change_requests", "templates",
                    "notifications", "audit"):
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.shared_limit(tenant_plan_limit, scope="tenant-plan",
                                 key_func=tenant_rate_limit_key)(bp)

    bp = app.blueprints.get("health")
    if bp:
        limiter.exempt(bp)

    app.logger.info("Rate limiter configured — auth: 20/min, write: 60/min, read: 200/min, "
                    "plan quotas: %s", PLAN_RATE_LIMITS)
