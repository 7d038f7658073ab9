"""
Auth Models — tenants, users, roles, permissions, sessions, teams.

Every table keys on a ULID string.  Tenant-owned rows cascade from
``tenants`` at the database level (``ON DELETE CASCADE``), so purging a
tenant removes its users, roles, teams and everything below them.
"""

from datetime import datetime, timezone

from app.models import db
from app.models.base import TenantModel, ulid_fk, ulid_pk
from app.models.soft_delete import SoftDeleteMixin
from app.utils.helpers import as_utc, iso

# ── Constants ────────────────────────────────────────────────────────────────

TENANT_STATUSES = {"active", "suspended", "archived"}
TENANT_PLANS = {"trial", "starter", "professional", "enterprise"}
USER_STATUSES = {"active", "invited", "inactive", "suspended"}

SYSTEM_ROLES = {"platform_admin", "tenant_admin", "project_manager", "member", "client", "viewer"}


# ═══════════════════════════════════════════════════════════════
# 1. TENANTS
# ═══════════════════════════════════════════════════════════════
class Tenant(SoftDeleteMixin, db.Model):
    __tablename__ = "tenants"

    id = ulid_pk()
    name = db.Column(db.String(200), nullable=False)
    slug = db.Column(db.String(100), unique=True, nullable=False)
    domain = db.Column(db.String(200), unique=True, nullable=True)
    plan = db.Column(db.String(50), default="trial")
    status = db.Column(db.String(20), nullable=False, default="active")
    is_active = db.Column(db.Boolean, default=True)
    max_users = db.Column(db.Integer, default=25)
    max_projects = db.Column(db.Integer, default=10)
    settings = db.Column(db.JSON, default=dict)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    # Relationships (children are removed by the DB cascade)
    users = db.relationship("User", back_populates="tenant", lazy="dynamic", passive_deletes=True)

    @property
    def typed_settings(self):
        from app.models.tenant_settings import TenantSettings
        return TenantSettings.from_dict(self.settings)

    @property
    def is_usable(self):
        """Tenant may serve requests: active, not suspended, not tombstoned."""
        return bool(self.is_active) and self.status == "active" and self.deleted_at is None

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "slug": self.slug,
            "domain": self.domain,
            "plan": self.plan,
            "status": self.status,
            "is_active": self.is_active,
            "max_users": self.max_users,
            "max_projects": self.max_projects,
            "settings": self.settings or {},
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
            "deleted_at": iso(self.deleted_at),
        }

    def __repr__(self):
        return f"<Tenant {self.slug}>"


# ═══════════════════════════════════════════════════════════════
# 2. USERS
# ═══════════════════════════════════════════════════════════════
class User(SoftDeleteMixin, db.Model):
    __tablename__ = "users"

    id = ulid_pk()
    # NULL tenant = platform/system user
    tenant_id = ulid_fk("tenants.id", ondelete="CASCADE", nullable=True, index=False)
    email = db.Column(db.String(200), nullable=False)
    password_hash = db.Column(db.String(256))  # NULL for invited-pending users
    full_name = db.Column(db.String(200))
    phone = db.Column(db.String(50))
    status = db.Column(db.String(20), default="active")
    last_login_at = db.Column(db.DateTime(timezone=True))

    # MFA
    mfa_enabled = db.Column(db.Boolean, nullable=False, default=False)
    mfa_secret = db.Column(db.Text, comment="Fernet-encrypted TOTP secret")
    mfa_recovery_codes = db.Column(db.JSON, default=list, comment="SHA-256 hashes of unused codes")

    # Lockout
    failed_login_count = db.Column(db.Integer, nullable=False, default=0)
    locked_until = db.Column(db.DateTime(timezone=True))

    # Password policy
    password_changed_at = db.Column(db.DateTime(timezone=True))
    password_expires_at = db.Column(db.DateTime(timezone=True))
    must_change_password = db.Column(db.Boolean, nullable=False, default=False)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    # Composite unique: same email can exist in different tenants
    __table_args__ = (
        db.UniqueConstraint("tenant_id", "email", name="uq_user_tenant_email"),
        db.Index("ix_users_tenant_id", "tenant_id"),
        db.Index("ix_users_email", "email"),
    )

    # Relationships
    tenant = db.relationship("Tenant", back_populates="users")
    user_roles = db.relationship(
        "UserRole", back_populates="user", lazy="dynamic",
        cascade="all, delete-orphan", passive_deletes=True,
        foreign_keys="UserRole.user_id",
    )
    sessions = db.relationship(
        "Session", back_populates="user", lazy="dynamic",
        cascade="all, delete-orphan", passive_deletes=True,
    )
    team_memberships = db.relationship(
        "TeamMember", back_populates="user", lazy="dynamic",
        cascade="all, delete-orphan", passive_deletes=True,
    )

    def is_locked(self, now=None):
        now = now or datetime.now(timezone.utc)
        return self.locked_until is not None and as_utc(self.locked_until) > now

    def password_expired(self, now=None):
        now = now or datetime.now(timezone.utc)
        return self.password_expires_at is not None and as_utc(self.password_expires_at) <= now

    def to_dict(self, include_roles=False):
        d = {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "email": self.email,
            "full_name": self.full_name,
            "phone": self.phone,
            "status": self.status,
            "mfa_enabled": self.mfa_enabled,
            "failed_login_count": self.failed_login_count,
            "locked_until": iso(self.locked_until),
            "password_changed_at": iso(self.password_changed_at),
            "password_expires_at": iso(self.password_expires_at),
            "must_change_password": self.must_change_password,
            "last_login_at": iso(self.last_login_at),
            "created_at": iso(self.created_at),
            "deleted_at": iso(self.deleted_at),
        }
        if include_roles:
            d["roles"] = self.role_names
        return d

    @property
    def role_names(self):
        """List of role names for this user."""
        return sorted(ur.role.name for ur in self.user_roles.all())

    def __repr__(self):
        return f"<User {self.email}>"


# ═══════════════════════════════════════════════════════════════
# 3. ROLES
# ═══════════════════════════════════════════════════════════════
class Role(db.Model):
    __tablename__ = "roles"

    id = ulid_pk()
    # NULL = system role, tenant_id = custom tenant role
    tenant_id = ulid_fk("tenants.id", ondelete="CASCADE", nullable=True)
    name = db.Column(db.String(100), nullable=False)
    display_name = db.Column(db.String(200))
    description = db.Column(db.Text)
    is_system = db.Column(db.Boolean, default=False)
    level = db.Column(db.Integer, default=0)  # higher = more privileges
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        db.UniqueConstraint("tenant_id", "name", name="uq_role_tenant_name"),
    )

    role_permissions = db.relationship(
        "RolePermission", back_populates="role", lazy="dynamic",
        cascade="all, delete-orphan", passive_deletes=True,
    )
    user_roles = db.relationship("UserRole", back_populates="role", lazy="dynamic", passive_deletes=True)

    def to_dict(self, include_permissions=False):
        d = {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "name": self.name,
            "display_name": self.display_name,
            "description": self.description,
            "is_system": self.is_system,
            "level": self.level,
        }
        if include_permissions:
            d["permissions"] = sorted(
                rp.permission.codename for rp in self.role_permissions.all()
            )
        return d


# ═══════════════════════════════════════════════════════════════
# 4. PERMISSIONS
# ═══════════════════════════════════════════════════════════════
class Permission(db.Model):
    __tablename__ = "permissions"

    id = ulid_pk()
    codename = db.Column(db.String(100), unique=True, nullable=False)  # e.g. "projects.create"
    category = db.Column(db.String(50), nullable=False)  # e.g. "projects"
    display_name = db.Column(db.String(200))
    description = db.Column(db.Text)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    role_permissions = db.relationship("RolePermission", back_populates="permission", lazy="dynamic",
                                       passive_deletes=True)

    def to_dict(self):
        return {
            "id": self.id,
            "codename": self.codename,
            "category": self.category,
            "display_name": self.display_name,
            "description": self.description,
        }


# ═══════════════════════════════════════════════════════════════
# 5. ROLE_PERMISSIONS (Junction table)
# ═══════════════════════════════════════════════════════════════
class RolePermission(db.Model):
    __tablename__ = "role_permissions"

    id = ulid_pk()
    role_id = ulid_fk("roles.id", ondelete="CASCADE")
    permission_id = ulid_fk("permissions.id", ondelete="CASCADE")

    __table_args__ = (
        db.UniqueConstraint("role_id", "permission_id", name="uq_role_permission"),
    )

    role = db.relationship("Role", back_populates="role_permissions")
    permission = db.relationship("Permission", back_populates="role_permissions")


# ═══════════════════════════════════════════════════════════════
# 6. USER_ROLES (Junction table)
# ═══════════════════════════════════════════════════════════════
class UserRole(db.Model):
    __tablename__ = "user_roles"

    id = ulid_pk()
    user_id = ulid_fk("users.id", ondelete="CASCADE")
    role_id = ulid_fk("roles.id", ondelete="CASCADE")
    assigned_by = ulid_fk("users.id", ondelete="SET NULL", nullable=True, index=False)
    assigned_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        db.UniqueConstraint("user_id", "role_id", name="uq_user_role"),
    )

    user = db.relationship("User", back_populates="user_roles", foreign_keys=[user_id])
    role = db.relationship("Role", back_populates="user_roles")


# ═══════════════════════════════════════════════════════════════
# 7. SESSIONS (Refresh tokens & login tracking)
# ═══════════════════════════════════════════════════════════════
class Session(db.Model):
    __tablename__ = "sessions"

    id = ulid_pk()
    user_id = ulid_fk("users.id", ondelete="CASCADE")
    token_hash = db.Column(db.String(256), nullable=False, index=True)  # SHA-256 of refresh token
    ip_address = db.Column(db.String(45))
    user_agent = db.Column(db.String(500))
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    expires_at = db.Column(db.DateTime(timezone=True), nullable=False)
    last_used_at = db.Column(db.DateTime(timezone=True))

    user = db.relationship("User", back_populates="sessions")

    @property
    def is_expired(self):
        return datetime.now(timezone.utc) > as_utc(self.expires_at)

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "is_active": self.is_active,
            "created_at": iso(self.created_at),
            "expires_at": iso(self.expires_at),
            "last_used_at": iso(self.last_used_at),
        }


# ═══════════════════════════════════════════════════════════════
# 8. TEAMS
# ═══════════════════════════════════════════════════════════════
class Team(SoftDeleteMixin, TenantModel):
    __tablename__ = "teams"

    name = db.Column(db.String(150), nullable=False)
    description = db.Column(db.Text, default="")
    lead_user_id = ulid_fk("users.id", ondelete="SET NULL", nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        db.UniqueConstraint("tenant_id", "name", name="uq_team_tenant_name"),
    )

    members = db.relationship(
        "TeamMember", back_populates="team", lazy="dynamic",
        cascade="all, delete-orphan", passive_deletes=True,
    )
    lead = db.relationship("User", foreign_keys=[lead_user_id])

    def to_dict(self, include_members=False):
        d = {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "name": self.name,
            "description": self.description,
            "lead_user_id": self.lead_user_id,
            "created_at": iso(self.created_at),
            "deleted_at": iso(self.deleted_at),
        }
        if include_members:
            d["members"] = [m.to_dict() for m in self.members.all()]
        return d


class TeamMember(db.Model):
    __tablename__ = "team_members"

    id = ulid_pk()
    team_id = ulid_fk("teams.id", ondelete="CASCADE")
    user_id = ulid_fk("users.id", ondelete="CASCADE")
    role_in_team = db.Column(db.String(50), default="member")
    joined_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        db.UniqueConstraint("team_id", "user_id", name="uq_team_member"),
    )

    team = db.relationship("Team", back_populates="members")
    user = db.relationship("User", back_populates="team_memberships")

    def to_dict(self):
        return {
            "id": self.id,
            "team_id": self.team_id,
            "user_id": self.user_id,
            "role_in_team": self.role_in_team,
            "joined_at": iso(self.joined_at),
        }
