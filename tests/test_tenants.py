"""
Tenant lifecycle and typed settings.

Covers:
  - TenantSettings parsing, v1 → v2 upgrade and unknown-key rejection
  - create / duplicate slug / settings validation
  - suspend → activate, soft delete, hard purge through the FK cascade
"""

import pytest

from app.core.exceptions import ConflictError, NotFoundError, ValidationError
from app.models import db as _db
from app.models.audit import AuditLog
from app.models.auth import Tenant, User
from app.models.project import Project
from app.models.tenant_settings import CURRENT_SCHEMA_VERSION, SettingsError, TenantSettings
from app.services import project_service, tenant_service
from app.services.user_service import create_user


class TestTenantSettings:
    def test_empty_payload_gives_defaults(self):
        s = TenantSettings.from_dict(None)
        assert s.timezone == "UTC"
        assert s.locale == "en"
        assert s.currency == "USD"
        assert s.schema_version == CURRENT_SCHEMA_VERSION

    def test_v1_payload_is_upgraded(self):
        s = TenantSettings.from_dict({"tz": "UTC", "language": "de", "feature_gantt": 1, "currency": "EUR"})
        assert s.locale == "de"
        assert s.currency == "EUR"
        assert s.features == {"gantt": True}
        assert s.feature_enabled("gantt")
        assert not s.feature_enabled("kanban")
        assert s.to_dict()["schema_version"] == 2

    def test_unknown_key_rejected(self):
        with pytest.raises(SettingsError) as exc:
            TenantSettings.from_dict({"schema_version": 2, "colour": "blue"})
        assert "colour" in exc.value.details

    def test_bad_values_rejected(self):
        with pytest.raises(SettingsError) as exc:
            TenantSettings.from_dict({"schema_version": 2, "currency": "euro", "week_start": "friday"})
        assert set(exc.value.details) == {"currency", "week_start"}

    def test_unsupported_schema_version(self):
        with pytest.raises(SettingsError):
            TenantSettings.from_dict({"schema_version": 99})

    def test_merged_merges_features(self):
        s = TenantSettings(features={"gantt": True})
        merged = s.merged({"features": {"kanban": True}, "locale": "fr"})
        assert merged.features == {"gantt": True, "kanban": True}
        assert merged.locale == "fr"
        assert s.locale == "en"


class TestTenantService:
    def test_create_tenant_slugifies_name(self):
        tenant = tenant_service.create_tenant(name="Acme Builders Ltd", plan="starter")
        assert tenant.slug == "acme-builders-ltd"
        assert tenant.status == "active"
        assert tenant.is_usable
        assert tenant.settings["schema_version"] == CURRENT_SCHEMA_VERSION
        audit = AuditLog.query.filter_by(entity_type="tenant", entity_id=tenant.id, action="create").first()
        assert audit is not None

    def test_duplicate_slug_conflicts(self):
        tenant_service.create_tenant(name="Acme", slug="acme")
        with pytest.raises(ConflictError):
            tenant_service.create_tenant(name="Acme Two", slug="acme")

    def test_invalid_inputs(self):
        with pytest.raises(ValidationError):
            tenant_service.create_tenant(name="  ")
        with pytest.raises(ValidationError):
            tenant_service.create_tenant(name="Acme", slug="Not A Slug!")
        with pytest.raises(ValidationError):
            tenant_service.create_tenant(name="Acme", plan="platinum")
        with pytest.raises(ValidationError):
            tenant_service.create_tenant(name="Acme", settings={"unknown": 1})

    def test_update_settings_rejects_unknown_key(self, default_tenant):
        with pytest.raises(ValidationError):
            tenant_service.update_settings(default_tenant.id, {"theme": "dark"})

    def test_update_settings_persists(self, default_tenant):
        updated = tenant_service.update_settings(default_tenant.id, {"currency": "GBP"})
        assert updated.currency == "GBP"
        _db.session.expire_all()
        assert _db.session.get(Tenant, default_tenant.id).typed_settings.currency == "GBP"

    def test_suspend_and_activate(self, default_tenant):
        tenant = tenant_service.suspend_tenant(default_tenant.id, reason="unpaid")
        assert tenant.status == "suspended"
        assert not tenant.is_usable

        tenant = tenant_service.activate_tenant(default_tenant.id)
        assert tenant.status == "active"
        assert tenant.is_usable

    def test_soft_delete_hides_tenant(self):
        tenant = tenant_service.create_tenant(name="Gone Soon")
        tenant_service.soft_delete_tenant(tenant.id)
        with pytest.raises(NotFoundError):
            tenant_service.get_tenant(tenant.id)
        archived = tenant_service.get_tenant(tenant.id, include_deleted=True)
        assert archived.status == "archived"
        assert archived.is_active is False
        # Slug stays reserved by the tombstone
        with pytest.raises(ConflictError):
            tenant_service.create_tenant(name="Gone Soon")

    def test_purge_removes_owned_rows(self, roles):
        tenant = tenant_service.create_tenant(name="Purge Me")
        user = create_user(tenant.id, "owner@purge.example", password="Password123", role_names=["member"])
        project_service.create_project(tenant_id=tenant.id, data={"name": "Doomed"}, actor_user_id=user.id)
        tenant_id = tenant.id

        summary = tenant_service.purge_tenant(tenant_id)

        assert summary == {"tenant_id": tenant_id, "slug": "purge-me", "users": 1, "projects": 1}
        assert _db.session.get(Tenant, tenant_id) is None
        assert User.query.filter_by(tenant_id=tenant_id).count() == 0
        assert Project.query.filter_by(tenant_id=tenant_id).count() == 0
        purge_row = AuditLog.query.filter_by(entity_id=tenant_id, action="purge").one()
        assert purge_row.tenant_id is None
