from app.services import permission_service
from app.services.permission_service import (
    DEFAULT_PERMISSIONS,
    DEFAULT_ROLE_PERMISSIONS,
    evaluate_permission,
    get_user_permissions,
    has_any_permission,
    has_permission,
    seed_default_roles,
)
from app.services.user_service import assign_role


class TestSeedDefaultRoles:
    def test_seed_is_idempotent(self, roles):
        expected_perms = sum(len(v) for v in DEFAULT_PERMISSIONS.values())
        assert roles["permissions"] == expected_perms
        assert roles["roles"] == 8
        assert roles["grants"] == sum(len(v) for v in DEFAULT_ROLE_PERMISSIONS.values())

        again = seed_default_roles()
        assert again == {"permissions": 0, "roles": 0, "grants": 0}


class TestPermissionChecks:
    def test_member_grants(self, make_user, default_tenant):
        user = make_user("member@example.com", ["member"])
        assert has_permission(user.id, "tasks.edit", default_tenant.id)
        assert not has_permission(user.id, "projects.create", default_tenant.id)
        assert has_any_permission(user.id, ["projects.create", "projects.view"], default_tenant.id)

    def test_viewer_is_read_only(self, make_user, default_tenant):
        user = make_user("viewer@example.com", ["viewer"])
        perms = get_user_permissions(user.id, default_tenant.id)
        assert perms == {"projects.view", "tasks.view", "documents.view", "change_requests.view"}

    def test_project_manager_cannot_delete_projects(self, pm_user, default_tenant):
        assert has_permission(pm_user.id, "projects.edit", default_tenant.id)
        assert not has_permission(pm_user.id, "projects.delete", default_tenant.id)

    def test_tenant_admin_is_superuser(self, make_user, default_tenant):
        admin = make_user("admin@example.com", ["tenant_admin"])
        assert has_permission(admin.id, "billing.manage", default_tenant.id)
        decision = evaluate_permission(admin.id, "billing.manage", tenant_id=default_tenant.id)
        assert decision["decision"] == "allow_superuser"

    def test_no_roles_denies(self, make_user, default_tenant):
        user = make_user("nobody@example.com")
        decision = evaluate_permission(user.id, "projects.view", tenant_id=default_tenant.id)
        assert decision == {
            "allowed": False,
            "decision": "deny_by_default",
            "roles": [],
            "permission": "projects.view",
        }

    def test_role_change_invalidates_cache(self, make_user, default_tenant):
        user = make_user("grower@example.com", ["viewer"])
        assert not has_permission(user.id, "tasks.edit", default_tenant.id)
        assign_role(user.id, "member")
        assert has_permission(user.id, "tasks.edit", default_tenant.id)

    def test_cache_serves_repeat_lookups(self, make_user, default_tenant):
        user = make_user("cached@example.com", ["member"])
        first = get_user_permissions(user.id, default_tenant.id)
        assert get_user_permissions(user.id, default_tenant.id) is first
        permission_service.invalidate_cache(user.id)
        assert get_user_permissions(user.id, default_tenant.id) is not first
