"""
Shared pytest fixtures for the Project Workspace Platform test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - default_tenant: Pre-created Tenant entity
    - roles: System roles + permission catalogue
    - make_user / auth_headers: users with signed access tokens
    - project: Draft project owned by a project manager
"""

import pytest

from app import create_app
from app.models import db as _db
from app.services.permission_service import invalidate_all_cache

# Default tenant ID used across tests when no JWT context is present.
DEFAULT_TEST_TENANT_ID = None

TEST_PASSWORD = "Sup3r-secret!"


def _ensure_default_tenant():
    """Create a default tenant for tests if it doesn't exist.

    Returns the tenant ID.
    """
    global DEFAULT_TEST_TENANT_ID
    from app.models.auth import Tenant
    t = Tenant.query.filter_by(slug="test-default").first()
    if not t:
        t = Tenant(name="Test Default", slug="test-default")
        _db.session.add(t)
        _db.session.commit()
    DEFAULT_TEST_TENANT_ID = t.id
    return t.id


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        # DB is recreated per test and ids are reused; clear RBAC cache to
        # avoid stale permission decisions keyed by user_id.
        invalidate_all_cache()
        _ensure_default_tenant()
        yield
        invalidate_all_cache()
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture()
def default_tenant():
    """Return the auto-created default test tenant."""
    from app.models.auth import Tenant
    return Tenant.query.filter_by(slug="test-default").first()


# ── Convenience fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def roles():
    """Seed the permission catalogue and the system roles."""
    from app.services.permission_service import seed_default_roles
    return seed_default_roles()


@pytest.fixture()
def make_user(roles, default_tenant):
    """Factory: ``make_user("pm@example.com", ["project_manager"])``."""
    from app.services.user_service import create_user

    def _make(email, role_names=None, tenant_id=None, password=TEST_PASSWORD, **kwargs):
        return create_user(
            tenant_id or default_tenant.id,
            email,
            password=password,
            full_name=email.split("@")[0].title(),
            role_names=role_names or [],
            **kwargs,
        )

    return _make


@pytest.fixture()
def auth_headers():
    """Factory: Bearer headers for a user (roles taken from the DB)."""
    from app.services.jwt_service import generate_access_token
    from app.services.permission_service import get_user_role_names

    def _headers(user, tenant_id=None, extra=None):
        tid = tenant_id if tenant_id is not None else user.tenant_id
        token = generate_access_token(user.id, tid, get_user_role_names(user.id, tid))
        headers = {"Authorization": f"Bearer {token}"}
        headers.update(extra or {})
        return headers

    return _headers


@pytest.fixture()
def pm_user(make_user):
    return make_user("pm@example.com", ["project_manager"])


@pytest.fixture()
def project(pm_user, default_tenant):
    """Draft project in the default tenant, owned by ``pm_user``."""
    from app.services import project_service
    return project_service.create_project(
        tenant_id=default_tenant.id,
        data={"name": "Harbour Office Fit-out", "budget": "100000"},
        actor_user_id=pm_user.id,
    )
