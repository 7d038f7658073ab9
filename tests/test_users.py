"""
User service: creation rules, authentication policy, MFA, roles and teams.
"""

from datetime import datetime, timedelta, timezone

import pytest
from cryptography.fernet import Fernet

from app.models import db as _db
from app.models.auth import TeamMember, User
from app.services import tenant_service, user_service
from app.services.permission_service import get_user_role_names
from app.services.user_service import UserServiceError
from tests.conftest import TEST_PASSWORD


@pytest.fixture()
def encryption_key(monkeypatch):
    monkeypatch.setenv("ENCRYPTION_KEY", Fernet.generate_key().decode())


class TestCreateUser:
    def test_email_is_normalised(self, make_user):
        user = make_user("Jane.Doe@Example.COM")
        assert user.email == "Jane.Doe@example.com"
        assert user.password_hash.startswith("$2b$")
        assert user.password_expires_at is not None

    def test_duplicate_email_in_tenant(self, make_user):
        make_user("dup@example.com")
        with pytest.raises(UserServiceError) as exc:
            make_user("dup@example.com")
        assert exc.value.status_code == 409

    def test_same_email_in_other_tenant_is_fine(self, make_user):
        other = tenant_service.create_tenant(name="Other Co")
        make_user("shared@example.com")
        user = make_user("shared@example.com", tenant_id=other.id)
        assert user.tenant_id == other.id

    def test_invalid_email(self, make_user):
        with pytest.raises(UserServiceError) as exc:
            make_user("not-an-email")
        assert exc.value.status_code == 400

    def test_short_password(self, make_user):
        with pytest.raises(UserServiceError):
            make_user("weak@example.com", password="abc")

    def test_unknown_role(self, make_user):
        with pytest.raises(UserServiceError) as exc:
            make_user("role@example.com", ["wizard"])
        assert "wizard" in exc.value.message

    def test_user_limit(self, make_user):
        small = tenant_service.create_tenant(name="Tiny", max_users=1)
        make_user("one@tiny.example", tenant_id=small.id)
        with pytest.raises(UserServiceError) as exc:
            make_user("two@tiny.example", tenant_id=small.id)
        assert exc.value.status_code == 403

    def test_suspended_tenant_rejects_users(self, make_user):
        tenant = tenant_service.create_tenant(name="Frozen")
        tenant_service.suspend_tenant(tenant.id)
        with pytest.raises(UserServiceError) as exc:
            make_user("late@frozen.example", tenant_id=tenant.id)
        assert exc.value.status_code == 403

    def test_soft_delete_hides_user(self, make_user, default_tenant):
        user = make_user("leaver@example.com")
        user_service.soft_delete_user(user.id, default_tenant.id)
        with pytest.raises(UserServiceError) as exc:
            user_service.get_user(user.id)
        assert exc.value.status_code == 404
        assert user_service.get_user(user.id, include_deleted=True).status == "inactive"
        assert user_service.list_users(default_tenant.id).count() == 0


class TestAuthenticate:
    def test_success_resets_counters(self, make_user, default_tenant):
        make_user("login@example.com")
        user = user_service.authenticate(default_tenant.id, "login@example.com", TEST_PASSWORD)
        assert user.failed_login_count == 0
        assert user.last_login_at is not None

    def test_wrong_password(self, make_user, default_tenant):
        make_user("login@example.com")
        with pytest.raises(UserServiceError) as exc:
            user_service.authenticate(default_tenant.id, "login@example.com", "wrong-password")
        assert exc.value.status_code == 401

    def test_unknown_user_same_error(self, default_tenant):
        with pytest.raises(UserServiceError) as exc:
            user_service.authenticate(default_tenant.id, "ghost@example.com", "whatever1")
        assert exc.value.status_code == 401

    def test_lockout_after_five_failures(self, make_user, default_tenant):
        make_user("target@example.com")
        now = datetime.now(timezone.utc)
        for _ in range(5):
            with pytest.raises(UserServiceError) as exc:
                user_service.authenticate(default_tenant.id, "target@example.com", "bad-guess", now=now)
            assert exc.value.status_code == 401

        user = user_service.get_user_by_email(default_tenant.id, "target@example.com")
        assert user.is_locked(now)
        assert user.failed_login_count == 0

        # Even the right password is refused while locked
        with pytest.raises(UserServiceError) as exc:
            user_service.authenticate(default_tenant.id, "target@example.com", TEST_PASSWORD, now=now)
        assert exc.value.status_code == 423

        later = now + timedelta(minutes=16)
        user = user_service.authenticate(default_tenant.id, "target@example.com", TEST_PASSWORD, now=later)
        assert user.locked_until is None

    def test_unlock_user(self, make_user, default_tenant):
        user = make_user("target@example.com")
        for _ in range(5):
            with pytest.raises(UserServiceError):
                user_service.authenticate(default_tenant.id, "target@example.com", "bad-guess")
        user_service.unlock_user(user.id)
        assert user_service.authenticate(default_tenant.id, "target@example.com", TEST_PASSWORD).id == user.id

    def test_inactive_account(self, make_user, default_tenant):
        make_user("sleepy@example.com", status="suspended")
        with pytest.raises(UserServiceError) as exc:
            user_service.authenticate(default_tenant.id, "sleepy@example.com", TEST_PASSWORD)
        assert exc.value.status_code == 403

    def test_expired_password_flags_change(self, make_user, default_tenant):
        make_user("old@example.com")
        future = datetime.now(timezone.utc) + timedelta(days=91)
        user = user_service.authenticate(default_tenant.id, "old@example.com", TEST_PASSWORD, now=future)
        assert user.must_change_password is True

    def test_tenant_setting_overrides_max_age(self, make_user, default_tenant):
        tenant_service.update_settings(default_tenant.id, {"password_max_age_days": 10})
        make_user("short@example.com")
        future = datetime.now(timezone.utc) + timedelta(days=11)
        user = user_service.authenticate(default_tenant.id, "short@example.com", TEST_PASSWORD, now=future)
        assert user.must_change_password is True

    def test_change_password(self, make_user, default_tenant):
        user = make_user("rotate@example.com")
        with pytest.raises(UserServiceError) as exc:
            user_service.change_password(user.id, "not-current", "Another-pass-1")
        assert exc.value.status_code == 401
        user_service.change_password(user.id, TEST_PASSWORD, "Another-pass-1")
        assert user_service.authenticate(default_tenant.id, "rotate@example.com", "Another-pass-1")


class TestMfa:
    def test_enable_returns_secret_once(self, make_user, encryption_key):
        user = make_user("mfa@example.com")
        result = user_service.enable_mfa(user.id)
        assert len(result["recovery_codes"]) > 0
        stored = _db.session.get(User, user.id)
        assert stored.mfa_enabled is True
        assert stored.mfa_secret != result["secret"]
        assert user_service.get_mfa_secret(user.id) == result["secret"]

        with pytest.raises(UserServiceError) as exc:
            user_service.enable_mfa(user.id)
        assert exc.value.status_code == 409

    def test_recovery_code_is_single_use(self, make_user, encryption_key):
        user = make_user("mfa@example.com")
        code = user_service.enable_mfa(user.id)["recovery_codes"][0]
        assert user_service.use_recovery_code(user.id, code) is True
        assert user_service.use_recovery_code(user.id, code) is False
        assert user_service.use_recovery_code(user.id, "NOT-A-CODE") is False

    def test_disable_clears_secret(self, make_user, encryption_key):
        user = make_user("mfa@example.com")
        user_service.enable_mfa(user.id)
        user_service.disable_mfa(user.id)
        assert user_service.get_mfa_secret(user.id) is None


class TestRolesAndTeams:
    def test_assign_and_revoke_role(self, make_user, default_tenant):
        user = make_user("rolling@example.com", ["member"])
        user_service.assign_role(user.id, "project_manager")
        assert get_user_role_names(user.id, default_tenant.id) == ["member", "project_manager"]

        with pytest.raises(UserServiceError) as exc:
            user_service.assign_role(user.id, "project_manager")
        assert exc.value.status_code == 409

        user_service.revoke_role(user.id, "project_manager")
        assert get_user_role_names(user.id, default_tenant.id) == ["member"]

    def test_team_membership(self, make_user, default_tenant):
        lead = make_user("lead@example.com")
        crew = make_user("crew@example.com")
        team = user_service.create_team(default_tenant.id, "Site Crew", lead_user_id=lead.id)
        user_service.add_team_member(default_tenant.id, team.id, crew.id)
        assert TeamMember.query.filter_by(team_id=team.id).count() == 1

        with pytest.raises(UserServiceError) as exc:
            user_service.create_team(default_tenant.id, "Site Crew")
        assert exc.value.status_code == 409

        user_service.remove_team_member(default_tenant.id, team.id, crew.id)
        assert TeamMember.query.filter_by(team_id=team.id).count() == 0
