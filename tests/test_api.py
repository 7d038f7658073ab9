"""
HTTP surface: authentication, tenant context, RBAC, idempotent POSTs and
the error envelope.
"""

import pytest

from app.models import db as _db
from app.models.auth import Tenant
from app.middleware.timing import reset_metrics
from app.models.project import Project
from app.services.user_service import create_user
from tests.conftest import TEST_PASSWORD


@pytest.fixture()
def pm_headers(pm_user, auth_headers):
    return auth_headers(pm_user)


@pytest.fixture()
def rival_tenant():
    tenant = Tenant(name="Rival Builders", slug="rival")
    _db.session.add(tenant)
    _db.session.commit()
    return tenant


class TestHealth:
    def test_health_needs_no_token(self, client):
        res = client.get("/api/v1/health")
        assert res.status_code == 200
        assert res.get_json()["status"] == "ok"

    def test_ready(self, client):
        res = client.get("/api/v1/health/ready")
        assert res.status_code == 200
        assert res.get_json()["database"]["status"] == "ok"

    def test_live_reports_request_metrics(self, client):
        reset_metrics()
        client.get("/api/v1/health")
        res = client.get("/api/v1/health/live")
        assert res.status_code == 200
        checks = res.get_json()["checks"]
        assert checks["redis"]["status"] == "skipped"
        assert checks["outbox"]["counts"]["pending"] == 0
        assert checks["requests"]["requests"] == 1
        assert res.headers["X-Request-ID"]


class TestAuthentication:
    def test_token_required(self, client):
        res = client.get("/api/v1/projects")
        assert res.status_code == 401
        assert res.get_json()["code"] == "ERR_UNAUTHORIZED"

    def test_garbage_token(self, client):
        res = client.get("/api/v1/projects", headers={"Authorization": "Bearer not-a-jwt"})
        assert res.status_code == 401

    def test_login_and_me(self, client, pm_user):
        res = client.post("/api/v1/auth/login", json={
            "email": "PM@example.com", "password": TEST_PASSWORD, "tenant_slug": "test-default",
        })
        assert res.status_code == 200
        body = res.get_json()
        assert body["token_type"] == "Bearer"
        assert body["must_change_password"] is False

        me = client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {body['access_token']}"})
        assert me.status_code == 200
        assert me.get_json()["id"] == pm_user.id
        assert me.get_json()["tenant"]["slug"] == "test-default"

    def test_login_wrong_password(self, client, pm_user):
        res = client.post("/api/v1/auth/login", json={
            "email": "pm@example.com", "password": "nope-nope-nope", "tenant_slug": "test-default",
        })
        assert res.status_code == 401

    def test_login_suspended_tenant_looks_like_bad_credentials(self, client, pm_user, default_tenant):
        default_tenant.status = "suspended"
        _db.session.commit()
        res = client.post("/api/v1/auth/login", json={
            "email": "pm@example.com", "password": TEST_PASSWORD, "tenant_slug": "test-default",
        })
        assert res.status_code == 401


class TestTenantContext:
    def test_header_must_match_token(self, client, pm_headers, rival_tenant):
        res = client.get("/api/v1/projects", headers={**pm_headers, "X-Tenant-ID": rival_tenant.id})
        assert res.status_code == 403

    def test_tenantless_user_cannot_pick_a_tenant(self, client, project, roles, default_tenant, auth_headers):
        ops = create_user(None, "ops@example.com", password=TEST_PASSWORD, role_names=["project_manager"])
        headers = auth_headers(ops)
        res = client.get("/api/v1/projects", headers={**headers, "X-Tenant-ID": default_tenant.id})
        assert res.status_code == 403
        assert client.get("/api/v1/projects", headers=headers).status_code == 403

    def test_platform_admin_may_pick_a_tenant(self, client, project, roles, default_tenant, auth_headers):
        root = create_user(None, "root@example.com", password=TEST_PASSWORD, role_names=["platform_admin"])
        res = client.get("/api/v1/projects", headers={**auth_headers(root), "X-Tenant-ID": default_tenant.id})
        assert res.status_code == 200
        assert res.get_json()["total"] == 1

    def test_suspended_tenant_is_refused(self, client, pm_headers, default_tenant):
        default_tenant.status = "suspended"
        _db.session.commit()
        res = client.get("/api/v1/projects", headers=pm_headers)
        assert res.status_code == 403
        assert "suspended" in res.get_json()["error"]

    def test_other_tenant_project_is_404(self, client, project, rival_tenant, make_user, auth_headers):
        rival = make_user("boss@rival.example", ["project_manager"], tenant_id=rival_tenant.id)
        res = client.get(f"/api/v1/projects/{project.id}", headers=auth_headers(rival))
        assert res.status_code == 404
        assert res.get_json()["code"] == "ERR_NOT_FOUND"


class TestPermissions:
    def test_viewer_cannot_create(self, client, make_user, auth_headers):
        viewer = make_user("viewer@example.com", ["viewer"])
        res = client.post("/api/v1/projects", json={"name": "Nope"}, headers=auth_headers(viewer))
        assert res.status_code == 403
        assert res.get_json()["details"] == {"required": "projects.create"}

    def test_viewer_can_list(self, client, project, make_user, auth_headers):
        viewer = make_user("viewer@example.com", ["viewer"])
        res = client.get("/api/v1/projects", headers=auth_headers(viewer))
        assert res.status_code == 200
        assert res.get_json()["total"] == 1

    def test_pm_cannot_delete_projects(self, client, project, pm_headers):
        res = client.delete(f"/api/v1/projects/{project.id}", headers=pm_headers)
        assert res.status_code == 403

    def test_platform_endpoints_need_platform_admin(self, client, make_user, auth_headers):
        admin = make_user("admin@example.com", ["tenant_admin"])
        assert client.get("/api/v1/platform/outbox/stats", headers=auth_headers(admin)).status_code == 403

    def test_platform_admin(self, client, roles, auth_headers):
        root = create_user(None, "root@example.com", password=TEST_PASSWORD, role_names=["platform_admin"])
        headers = auth_headers(root)
        res = client.get("/api/v1/platform/outbox/stats", headers=headers)
        assert res.status_code == 200
        assert "counts" in res.get_json()
        res = client.post("/api/v1/platform/outbox/dispatch", json={}, headers=headers)
        assert res.status_code == 200
        assert client.get("/api/v1/platform/jobs/integrity_guard", headers=headers).status_code == 404
        jobs = client.get("/api/v1/platform/jobs", headers=headers).get_json()["items"]
        assert "integrity_guard" in {j["job_name"] for j in jobs}


class TestProjectsApi:
    def test_create_and_transition(self, client, pm_headers):
        res = client.post("/api/v1/projects", json={"name": "Lobby refresh", "budget": "25000"},
                          headers=pm_headers)
        assert res.status_code == 201
        created = res.get_json()
        assert created["code"] == "PRJ-0001"
        assert created["status"] == "draft"

        res = client.patch(f"/api/v1/projects/{created['id']}/status", json={"status": "completed"},
                           headers=pm_headers)
        assert res.status_code == 422

        res = client.patch(f"/api/v1/projects/{created['id']}/status", json={"status": "active"},
                           headers=pm_headers)
        assert res.status_code == 200
        assert res.get_json()["status"] == "active"

    def test_missing_name(self, client, pm_headers):
        res = client.post("/api/v1/projects", json={}, headers=pm_headers)
        assert res.status_code == 400
        assert res.get_json()["code"] == "ERR_VALIDATION_REQUIRED"

    def test_json_content_type_required(self, client, pm_headers):
        res = client.post("/api/v1/projects", data="name=x",
                          headers={**pm_headers, "Content-Type": "text/plain"})
        assert res.status_code == 415

    def test_duplicate_code_conflict(self, client, pm_headers):
        client.post("/api/v1/projects", json={"name": "A", "code": "HQ-1"}, headers=pm_headers)
        res = client.post("/api/v1/projects", json={"name": "B", "code": "HQ-1"}, headers=pm_headers)
        assert res.status_code == 409


class TestIdempotentPost:
    def test_replay(self, client, pm_headers):
        headers = {**pm_headers, "Idempotency-Key": "create-lobby-1"}
        first = client.post("/api/v1/projects", json={"name": "Lobby"}, headers=headers)
        second = client.post("/api/v1/projects", json={"name": "Lobby"}, headers=headers)
        assert first.status_code == second.status_code == 201
        assert "Idempotent-Replayed" not in first.headers
        assert second.headers["Idempotent-Replayed"] == "true"
        assert second.get_json()["id"] == first.get_json()["id"]
        assert Project.query.count() == 1

    def test_key_reuse_with_other_body(self, client, pm_headers):
        headers = {**pm_headers, "Idempotency-Key": "create-lobby-1"}
        client.post("/api/v1/projects", json={"name": "Lobby"}, headers=headers)
        res = client.post("/api/v1/projects", json={"name": "Atrium"}, headers=headers)
        assert res.status_code == 422
        assert res.get_json()["code"] == "IDEMPOTENCY_MISMATCH"

    def test_rejected_request_can_be_retried(self, client, pm_headers):
        headers = {**pm_headers, "Idempotency-Key": "create-lobby-2"}
        assert client.post("/api/v1/projects", json={"name": "X", "budget": "-5"},
                           headers=headers).status_code == 422
        # A service error fails the key, so the same request runs again
        again = client.post("/api/v1/projects", json={"name": "X", "budget": "-5"}, headers=headers)
        assert again.status_code == 422
        assert "Idempotent-Replayed" not in again.headers

        fixed = client.post("/api/v1/projects", json={"name": "X", "budget": "5"}, headers=headers)
        assert fixed.status_code == 422
        assert fixed.get_json()["code"] == "IDEMPOTENCY_MISMATCH"
