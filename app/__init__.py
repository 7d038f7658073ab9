"""
Project Workspace Platform
Flask Application Factory.

Usage:
    from app import create_app
    app = create_app()           # defaults to APP_ENV or "development"
    app = create_app("testing")  # explicit config
"""

import importlib
import logging
import os

import click
from flask import Flask, abort, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from sqlalchemy import engine as _sa_engine
from sqlalchemy import event as _sa_event
from sqlalchemy.exc import IntegrityError

from app.config import config
from app.core.exceptions import (
    AuthenticationError,
    ConflictError,
    IdempotencyConflictError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from app.middleware.jwt_auth import init_jwt_middleware
from app.middleware.logging_config import configure_logging
from app.middleware.rate_limiter import init_rate_limits
from app.middleware.security_headers import init_security_headers
from app.middleware.tenant_context import init_tenant_context
from app.middleware.timing import init_request_timing
from app.models import db
from app.models.document import ImmutableRowError
from app.models.tenant_settings import SettingsError
from app.utils.errors import E, api_error

logger = logging.getLogger(__name__)


# ── SQLite FK enforcement (global engine event) ─────────────────────────
@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


migrate = Migrate()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],                     # no global limit; applied per blueprint
    storage_uri=os.getenv("REDIS_URL", "memory://"),  # Redis in production, memory for dev
)

# Importing these modules registers every mapped table on ``db.metadata``
MODEL_MODULES = (
    "auth", "project", "task", "document", "change_request", "template",
    "audit", "reliability", "observability", "notification", "billing",
    "inspection", "interaction_log", "dashboard", "scheduling",
)


def create_app(config_name=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: Configuration environment name.
                     One of: "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.

    Returns:
        Configured Flask application instance.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    # Instantiating runs the production sanity checks
    app.config.from_object(config[config_name]())

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    # ── Middleware chain: timing → JWT → tenant context ──────────────────
    init_security_headers(app)
    init_request_timing(app)
    init_jwt_middleware(app)
    init_tenant_context(app)

    # ── Request guards (input length + Content-Type) ─────────────────────
    app.config.setdefault("MAX_CONTENT_LENGTH", 2 * 1024 * 1024)  # 2 MB

    @app.before_request
    def _guard_request():
        if request.method in ("POST", "PUT", "PATCH") and request.path.startswith("/api/"):
            ct = request.content_type or ""
            if request.data and "json" not in ct:
                abort(415, description="Content-Type must be application/json")

    # ── Models ───────────────────────────────────────────────────────────
    for name in MODEL_MODULES:
        importlib.import_module(f"app.models.{name}")

    # ── Blueprints ───────────────────────────────────────────────────────
    from app.blueprints.audit_bp import audit_bp
    from app.blueprints.auth_bp import auth_bp
    from app.blueprints.change_requests_bp import change_requests_bp
    from app.blueprints.documents_bp import documents_bp
    from app.blueprints.health_bp import health_bp
    from app.blueprints.notification_bp import notification_bp
    from app.blueprints.outbox_bp import outbox_bp
    from app.blueprints.projects_bp import projects_bp
    from app.blueprints.tasks_bp import tasks_bp
    from app.blueprints.templates_bp import templates_bp
    from app.blueprints.tenants_bp import tenants_bp

    app.register_blueprint(health_bp)
    app.register_blueprint(auth_bp)
    app.register_blueprint(tenants_bp)
    app.register_blueprint(projects_bp)
    app.register_blueprint(tasks_bp)
    app.register_blueprint(documents_bp)
    app.register_blueprint(change_requests_bp)
    app.register_blueprint(templates_bp)
    app.register_blueprint(notification_bp)
    app.register_blueprint(outbox_bp)
    app.register_blueprint(audit_bp)

    _register_error_handlers(app)
    _register_cli(app)

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    # ── Outbox publishers + scheduled jobs register on import ────────────
    importlib.import_module("app.services.outbox_publishers")
    importlib.import_module("app.services.scheduled_jobs")
    from app.services.scheduler_service import SchedulerService
    SchedulerService.init_app(app)

    return app


def _register_error_handlers(app):
    """Map service-layer exceptions to JSON responses.

    Every handler rolls the session back first so a half-built unit of work
    never leaks into the next request.
    """

    @app.errorhandler(NotFoundError)
    def _not_found(e):
        db.session.rollback()
        logger.info("Not found: %s", e)
        return api_error(E.NOT_FOUND, f"{e.resource} not found")

    @app.errorhandler(ValidationError)
    def _validation(e):
        db.session.rollback()
        return api_error(E.BUSINESS_RULE, str(e), details=e.details)

    @app.errorhandler(SettingsError)
    def _settings(e):
        db.session.rollback()
        return api_error(E.BUSINESS_RULE, str(e), details=getattr(e, "details", None))

    @app.errorhandler(ConflictError)
    def _conflict(e):
        db.session.rollback()
        return api_error(E.CONFLICT_DUPLICATE, f"{e.resource} with this {e.field} already exists",
                         details={"field": e.field})

    @app.errorhandler(IntegrityError)
    def _integrity(e):
        db.session.rollback()
        logger.warning("Integrity error: %s", e.orig)
        return api_error(E.CONFLICT_DUPLICATE, "Conflicts with existing data")

    @app.errorhandler(ImmutableRowError)
    def _immutable(e):
        db.session.rollback()
        return api_error(E.CONFLICT_STATE, str(e))

    @app.errorhandler(IdempotencyConflictError)
    def _idempotency(e):
        db.session.rollback()
        code = E.IDEMPOTENCY_IN_PROGRESS if e.reason == "in_progress" else E.IDEMPOTENCY_MISMATCH
        return api_error(code, str(e), status=e.status_code)

    @app.errorhandler(AuthenticationError)
    def _authentication(e):
        db.session.rollback()
        return api_error(E.UNAUTHORIZED, str(e))

    @app.errorhandler(PermissionDeniedError)
    def _permission(e):
        db.session.rollback()
        return api_error(E.FORBIDDEN, str(e), details={"required": e.permission} if e.permission else None)

    @app.errorhandler(404)
    def _http_not_found(e):
        return api_error(E.NOT_FOUND, "Not found", details={"path": request.path})

    @app.errorhandler(405)
    def _method_not_allowed(e):
        return api_error(E.VALIDATION_INVALID, "Method not allowed", status=405)

    @app.errorhandler(413)
    def _too_large(e):
        return api_error(E.VALIDATION_CONSTRAINT, "Request body too large", status=413)

    @app.errorhandler(415)
    def _unsupported(e):
        return api_error(E.VALIDATION_INVALID, e.description, status=415)

    @app.errorhandler(429)
    def _rate_limited(e):
        return api_error(E.RATE_LIMITED, "Too many requests", details={"limit": str(e.description)})

    @app.errorhandler(500)
    def _server_error(e):
        db.session.rollback()
        logger.error("500 error: %s", e, exc_info=True)
        return api_error(E.INTERNAL, "Internal server error")


def _register_cli(app):
    @app.cli.command("seed-roles")
    def seed_roles_cmd():
        """Create the system roles and permissions (idempotent)."""
        from app.services.permission_service import seed_default_roles
        result = seed_default_roles()
        click.echo(f"Seeded roles: {result}")

    @app.cli.command("create-platform-admin")
    @click.argument("email")
    @click.password_option()
    def create_platform_admin_cmd(email, password):
        """Create a tenant-less platform admin user."""
        from app.services.user_service import create_user
        user = create_user(None, email, password=password, role_names=["platform_admin"])
        click.echo(f"Platform admin created: {user.id}")

    @app.cli.command("run-job")
    @click.argument("name")
    def run_job_cmd(name):
        """Run one scheduled job now (cron entry point)."""
        from app.services.scheduler_service import SchedulerService
        SchedulerService.ensure_jobs_registered()
        result = SchedulerService.run_job(name)
        click.echo(f"{name}: {result['status']} ({result.get('duration_ms', 0)} ms)")
        if result["status"] not in ("success", "skipped"):
            raise SystemExit(1)
