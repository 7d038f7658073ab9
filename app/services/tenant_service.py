"""
Tenant Service — lifecycle of the isolation root.

Create / update / suspend / activate / soft-delete / purge tenants and edit
their typed settings.  Blueprint layer never touches Tenant rows directly.

Purge is the only hard delete in the platform: it removes the tenant row
and relies on ``ON DELETE CASCADE`` to remove every tenant-owned row.
"""

import logging
import re

from sqlalchemy import func

from app.core.exceptions import ConflictError, NotFoundError, ValidationError
from app.models import db
from app.models.audit import write_audit
from app.models.auth import TENANT_PLANS, Session, Tenant, User
from app.models.project import Project
from app.models.tenant_settings import SettingsError, TenantSettings

logger = logging.getLogger(__name__)

SLUG_RE = re.compile(r"^[a-z0-9](?:[a-z0-9-]{0,98}[a-z0-9])?$")

UPDATABLE_FIELDS = {"name", "domain", "plan", "max_users", "max_projects"}


def slugify(name: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")
    return slug[:100]


def _parse_settings(raw) -> TenantSettings:
    try:
        return TenantSettings.from_dict(raw)
    except SettingsError as exc:
        raise ValidationError(str(exc), details=exc.details) from exc


def _check_unique(field: str, value, exclude_id: str | None = None) -> None:
    if value is None:
        return
    q = Tenant.query.filter(getattr(Tenant, field) == value)
    if exclude_id is not None:
        q = q.filter(Tenant.id != exclude_id)
    if db.session.query(q.exists()).scalar():
        raise ConflictError("Tenant", field, value)


# ═══════════════════════════════════════════════════════════════
# CRUD
# ═══════════════════════════════════════════════════════════════

def create_tenant(
    *,
    name: str,
    slug: str | None = None,
    domain: str | None = None,
    plan: str = "trial",
    max_users: int | None = None,
    max_projects: int | None = None,
    settings: dict | None = None,
    actor: str | None = None,
) -> Tenant:
    """Create a tenant with validated settings.

    Raises:
        ValidationError: Empty name, bad slug, unknown plan or settings.
        ConflictError: Slug or domain already taken (soft-deleted tenants
            keep theirs).
    """
    name = (name or "").strip()
    if not name:
        raise ValidationError("name is required", details={"name": "required"})
    slug = (slug or slugify(name)).strip().lower()
    if not SLUG_RE.match(slug):
        raise ValidationError("slug must be lowercase letters, digits and hyphens",
                              details={"slug": slug})
    if plan not in TENANT_PLANS:
        raise ValidationError(f"Unknown plan '{plan}'", details={"plan": sorted(TENANT_PLANS)})
    domain = (domain or "").strip().lower() or None

    _check_unique("slug", slug)
    _check_unique("domain", domain)

    tenant = Tenant(
        name=name,
        slug=slug,
        domain=domain,
        plan=plan,
        status="active",
        is_active=True,
        settings=_parse_settings(settings).to_dict(),
    )
    if max_users is not None:
        tenant.max_users = max_users
    if max_projects is not None:
        tenant.max_projects = max_projects
    db.session.add(tenant)
    db.session.flush()

    write_audit(
        entity_type="tenant",
        entity_id=tenant.id,
        action="create",
        actor=actor,
        tenant_id=tenant.id,
        diff={"name": name, "slug": slug, "plan": plan},
    )
    db.session.commit()
    logger.info("Tenant created: %s (%s)", slug, tenant.id)
    return tenant


def get_tenant(tenant_id: str, *, include_deleted: bool = False) -> Tenant:
    tenant = db.session.get(Tenant, tenant_id)
    if tenant is None or (tenant.deleted_at is not None and not include_deleted):
        raise NotFoundError(resource="Tenant", resource_id=tenant_id)
    return tenant


def get_tenant_by_slug(slug: str) -> Tenant | None:
    return Tenant.query_active().filter_by(slug=slug).first()


def list_tenants(*, search: str | None = None, status: str | None = None,
                 include_deleted: bool = False):
    """Return a query of tenants, newest first."""
    q = Tenant.query_visible(include_deleted)
    if status:
        q = q.filter(Tenant.status == status)
    if search:
        q = q.filter(Tenant.name.ilike(f"%{search}%") | Tenant.slug.ilike(f"%{search}%"))
    return q.order_by(Tenant.created_at.desc(), Tenant.id.desc())


def update_tenant(tenant_id: str, data: dict, *, actor: str | None = None) -> Tenant:
    """Apply allowed field updates; unknown keys are ignored."""
    tenant = get_tenant(tenant_id)
    diff = {}
    for key in UPDATABLE_FIELDS & set(data):
        value = data[key]
        if key == "name":
            value = (value or "").strip()
            if not value:
                raise ValidationError("name cannot be empty", details={"name": "required"})
        elif key == "domain":
            value = (value or "").strip().lower() or None
            _check_unique("domain", value, exclude_id=tenant.id)
        elif key == "plan" and value not in TENANT_PLANS:
            raise ValidationError(f"Unknown plan '{value}'", details={"plan": sorted(TENANT_PLANS)})
        elif key in ("max_users", "max_projects"):
            if isinstance(value, bool) or not isinstance(value, int) or value < 1:
                raise ValidationError(f"{key} must be a positive integer", details={key: value})
        old = getattr(tenant, key)
        if old != value:
            diff[key] = {"old": old, "new": value}
            setattr(tenant, key, value)

    if diff:
        write_audit(entity_type="tenant", entity_id=tenant.id, action="update",
                    actor=actor, tenant_id=tenant.id, diff=diff)
    db.session.commit()
    return tenant


def update_settings(tenant_id: str, changes: dict, *, actor: str | None = None) -> TenantSettings:
    """Merge *changes* into the tenant's settings.

    The stored payload is upgraded to the current schema version on the way.
    """
    tenant = get_tenant(tenant_id)
    current = _parse_settings(tenant.settings)
    try:
        updated = current.merged(changes)
    except SettingsError as exc:
        raise ValidationError(str(exc), details=exc.details) from exc
    except TypeError as exc:
        raise ValidationError(str(exc)) from exc

    tenant.settings = updated.to_dict()
    write_audit(
        entity_type="tenant",
        entity_id=tenant.id,
        action="tenant.settings_updated",
        actor=actor,
        tenant_id=tenant.id,
        diff={"changes": changes},
    )
    db.session.commit()
    return updated


# ═══════════════════════════════════════════════════════════════
# Lifecycle
# ═══════════════════════════════════════════════════════════════

def _revoke_tenant_sessions(tenant_id: str) -> int:
    user_ids = db.select(User.id).where(User.tenant_id == tenant_id)
    return Session.query.filter(
        Session.user_id.in_(user_ids), Session.is_active.is_(True)
    ).update({"is_active": False}, synchronize_session=False)


def suspend_tenant(tenant_id: str, *, reason: str = "", actor: str | None = None) -> Tenant:
    """Block all requests for a tenant and revoke its sessions."""
    tenant = get_tenant(tenant_id)
    if tenant.status == "suspended":
        return tenant
    tenant.status = "suspended"
    revoked = _revoke_tenant_sessions(tenant.id)
    write_audit(entity_type="tenant", entity_id=tenant.id, action="tenant.suspend",
                actor=actor, tenant_id=tenant.id,
                diff={"reason": reason, "sessions_revoked": revoked})
    db.session.commit()
    logger.warning("Tenant suspended: %s (%s)", tenant.slug, reason or "no reason")
    return tenant


def activate_tenant(tenant_id: str, *, actor: str | None = None) -> Tenant:
    tenant = get_tenant(tenant_id)
    if tenant.status == "active" and tenant.is_active:
        return tenant
    tenant.status = "active"
    tenant.is_active = True
    write_audit(entity_type="tenant", entity_id=tenant.id, action="tenant.activate",
                actor=actor, tenant_id=tenant.id)
    db.session.commit()
    return tenant


def soft_delete_tenant(tenant_id: str, *, actor: str | None = None) -> Tenant:
    """Tombstone a tenant.  Its data stays until :func:`purge_tenant`."""
    tenant = get_tenant(tenant_id)
    tenant.soft_delete()
    tenant.is_active = False
    tenant.status = "archived"
    _revoke_tenant_sessions(tenant.id)
    write_audit(entity_type="tenant", entity_id=tenant.id, action="delete",
                actor=actor, tenant_id=tenant.id)
    db.session.commit()
    return tenant


def purge_tenant(tenant_id: str, *, actor: str | None = None) -> dict:
    """Hard-delete a tenant and, through the FK cascade, everything it owns.

    Returns a summary of what was removed.  The audit row for the purge is
    written without a tenant reference so it survives the cascade.
    """
    tenant = get_tenant(tenant_id, include_deleted=True)
    summary = {
        "tenant_id": tenant.id,
        "slug": tenant.slug,
        "users": db.session.scalar(db.select(func.count()).where(User.tenant_id == tenant.id)) or 0,
        "projects": db.session.scalar(db.select(func.count()).where(Project.tenant_id == tenant.id)) or 0,
    }

    Tenant.query.filter(Tenant.id == tenant.id).delete(synchronize_session=False)
    db.session.expunge_all()

    write_audit(entity_type="tenant", entity_id=summary["tenant_id"],
                action="purge", actor=actor, diff=summary, inherit_context=False)
    db.session.commit()
    logger.warning("Tenant purged: %s %s", summary["slug"], summary)
    return summary
