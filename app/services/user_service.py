"""
User Service — CRUD, authentication policy, MFA, roles and teams.

Password policy:
  - bcrypt hashes (BCRYPT_ROUNDS)
  - LOGIN_MAX_ATTEMPTS consecutive failures lock the account for
    LOGIN_LOCKOUT_MINUTES
  - passwords expire after the tenant's ``password_max_age_days`` setting
    (falling back to PASSWORD_MAX_AGE_DAYS; 0 disables expiry).  An expired
    password still logs in but sets ``must_change_password``.
"""

import base64
import logging
import secrets
from datetime import datetime, timedelta, timezone

from email_validator import EmailNotValidError, validate_email
from flask import current_app, has_app_context

from app.models import db
from app.models.audit import write_audit
from app.models.auth import USER_STATUSES, Role, Team, TeamMember, Tenant, User, UserRole
from app.services import permission_service
from app.services.jwt_service import revoke_all_user_sessions
from app.utils.crypto import (
    decrypt_secret,
    encrypt_secret,
    generate_recovery_codes,
    hash_password,
    hash_recovery_code,
    verify_password,
)

logger = logging.getLogger(__name__)


class UserServiceError(Exception):
    """Custom exception for user service errors."""
    def __init__(self, message, status_code=400):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


def _cfg(name, default):
    if has_app_context():
        return current_app.config.get(name, default)
    return default


def _normalise_email(email: str) -> str:
    try:
        return validate_email(email or "", check_deliverability=False).normalized
    except EmailNotValidError as e:
        raise UserServiceError(f"Invalid email: {e}")


def _check_password_strength(password: str) -> None:
    min_len = _cfg("PASSWORD_MIN_LENGTH", 8)
    if not password or len(password) < min_len:
        raise UserServiceError(f"Password must be at least {min_len} characters")


def _password_max_age_days(user: User) -> int:
    if user.tenant is not None:
        days = user.tenant.typed_settings.password_max_age_days
        if days:
            return days
    return _cfg("PASSWORD_MAX_AGE_DAYS", 90)


def _set_password(user: User, password: str, now: datetime) -> None:
    user.password_hash = hash_password(password, rounds=_cfg("BCRYPT_ROUNDS", 12))
    user.password_changed_at = now
    max_age = _password_max_age_days(user)
    user.password_expires_at = now + timedelta(days=max_age) if max_age else None
    user.must_change_password = False


def _find_role(role_name: str, tenant_id: str | None) -> Role | None:
    return Role.query.filter(
        (Role.name == role_name)
        & ((Role.tenant_id == tenant_id) | (Role.tenant_id.is_(None)))
    ).order_by(Role.tenant_id.is_(None)).first()


# ═══════════════════════════════════════════════════════════════
# User CRUD
# ═══════════════════════════════════════════════════════════════
def create_user(
    tenant_id: str | None,
    email: str,
    password: str = None,
    full_name: str = None,
    role_names: list[str] = None,
    status: str = "active",
    phone: str = None,
) -> User:
    """Create a user in a tenant (``tenant_id=None`` for platform users)."""
    email = _normalise_email(email)
    if status not in USER_STATUSES:
        raise UserServiceError(f"Invalid status '{status}'")

    tenant = None
    if tenant_id is not None:
        tenant = db.session.get(Tenant, tenant_id)
        if not tenant or tenant.deleted_at is not None:
            raise UserServiceError("Tenant not found", 404)
        if not tenant.is_usable:
            raise UserServiceError("Tenant is inactive", 403)

        current_count = User.query_active().filter_by(tenant_id=tenant_id).count()
        if current_count >= tenant.max_users:
            raise UserServiceError(
                f"User limit reached ({tenant.max_users}). Upgrade your plan.", 403
            )

    # NULL tenant_id is not covered by uq_user_tenant_email
    existing = User.query.filter(
        User.email == email,
        User.tenant_id.is_(None) if tenant_id is None else User.tenant_id == tenant_id,
    ).first()
    if existing:
        raise UserServiceError(f"User with email {email} already exists in this tenant", 409)

    user = User(
        tenant_id=tenant_id,
        email=email,
        full_name=full_name,
        phone=phone,
        status=status,
    )
    user.tenant = tenant
    if password:
        _check_password_strength(password)
        _set_password(user, password, datetime.now(timezone.utc))
    db.session.add(user)
    db.session.flush()

    for rn in role_names or []:
        role = _find_role(rn, tenant_id)
        if role is None:
            raise UserServiceError(f"Role '{rn}' not found")
        db.session.add(UserRole(user_id=user.id, role_id=role.id))

    write_audit(entity_type="user", entity_id=user.id, action="create",
                tenant_id=tenant_id, diff={"email": email, "roles": role_names or []})
    db.session.commit()
    return user


def get_user(user_id: str, tenant_id: str | None = None, include_deleted: bool = False) -> User:
    user = db.session.get(User, user_id)
    if (
        user is None
        or (tenant_id is not None and user.tenant_id != tenant_id)
        or (user.deleted_at is not None and not include_deleted)
    ):
        raise UserServiceError("User not found", 404)
    return user


def get_user_by_email(tenant_id: str | None, email: str) -> User | None:
    """Find a live user by email within a tenant."""
    try:
        email = _normalise_email(email)
    except UserServiceError:
        return None
    q = User.query_active().filter(User.email == email)
    q = q.filter(User.tenant_id.is_(None)) if tenant_id is None else q.filter(User.tenant_id == tenant_id)
    return q.first()


def update_user(user_id: str, tenant_id: str | None = None, **kwargs) -> User:
    """Update profile fields.  Passwords change via :func:`change_password`."""
    user = get_user(user_id, tenant_id)

    if "email" in kwargs and kwargs["email"]:
        email = _normalise_email(kwargs.pop("email"))
        clash = User.query.filter(
            User.email == email, User.id != user.id,
            User.tenant_id.is_(None) if user.tenant_id is None else User.tenant_id == user.tenant_id,
        ).first()
        if clash:
            raise UserServiceError(f"User with email {email} already exists in this tenant", 409)
        user.email = email

    if "status" in kwargs and kwargs["status"] not in USER_STATUSES:
        raise UserServiceError(f"Invalid status '{kwargs['status']}'")

    allowed = {"full_name", "phone", "status"}
    for key, val in kwargs.items():
        if key in allowed:
            setattr(user, key, val)

    db.session.commit()
    return user


def soft_delete_user(user_id: str, tenant_id: str | None = None) -> User:
    """Tombstone a user and revoke all of their sessions."""
    user = get_user(user_id, tenant_id)
    user.soft_delete()
    user.status = "inactive"
    revoke_all_user_sessions(user.id, commit=False)
    write_audit(entity_type="user", entity_id=user.id, action="delete", tenant_id=user.tenant_id)
    db.session.commit()
    permission_service.invalidate_cache(user.id)
    return user


def list_users(tenant_id: str, status: str = None, include_deleted: bool = False):
    """Return a query of the tenant's users, newest first."""
    q = User.query_visible(include_deleted).filter(User.tenant_id == tenant_id)
    if status:
        q = q.filter(User.status == status)
    return q.order_by(User.created_at.desc(), User.id.desc())


# ═══════════════════════════════════════════════════════════════
# Authentication
# ═══════════════════════════════════════════════════════════════
def authenticate(tenant_id: str | None, email: str, password: str, now: datetime = None) -> User:
    """Check credentials and apply lockout / expiry policy.

    Raises:
        UserServiceError: 401 bad credentials, 403 inactive account,
            423 account locked.
    """
    now = now or datetime.now(timezone.utc)
    user = get_user_by_email(tenant_id, email)
    if not user or not user.password_hash:
        raise UserServiceError("Invalid email or password", 401)

    if user.status != "active":
        raise UserServiceError(f"Account is {user.status}", 403)

    if user.is_locked(now):
        raise UserServiceError("Account is temporarily locked", 423)

    if not verify_password(password, user.password_hash):
        user.failed_login_count = (user.failed_login_count or 0) + 1
        max_attempts = _cfg("LOGIN_MAX_ATTEMPTS", 5)
        if user.failed_login_count >= max_attempts:
            minutes = _cfg("LOGIN_LOCKOUT_MINUTES", 15)
            user.locked_until = now + timedelta(minutes=minutes)
            user.failed_login_count = 0
            write_audit(entity_type="user", entity_id=user.id, action="user.locked",
                        tenant_id=user.tenant_id,
                        diff={"attempts": max_attempts, "locked_until": user.locked_until})
            logger.warning("User %s locked after %d failed logins", user.id, max_attempts)
        db.session.commit()
        raise UserServiceError("Invalid email or password", 401)

    user.failed_login_count = 0
    user.locked_until = None
    user.last_login_at = now
    if user.password_expired(now):
        user.must_change_password = True
    db.session.commit()
    return user


def change_password(user_id: str, current_password: str, new_password: str) -> User:
    user = get_user(user_id)
    if not verify_password(current_password, user.password_hash):
        raise UserServiceError("Current password is incorrect", 401)
    if current_password == new_password:
        raise UserServiceError("New password must differ from the current one")
    _check_password_strength(new_password)
    _set_password(user, new_password, datetime.now(timezone.utc))
    write_audit(entity_type="user", entity_id=user.id, action="user.password_changed",
                tenant_id=user.tenant_id)
    db.session.commit()
    return user


def unlock_user(user_id: str) -> User:
    user = get_user(user_id)
    user.locked_until = None
    user.failed_login_count = 0
    db.session.commit()
    return user


# ═══════════════════════════════════════════════════════════════
# MFA
# ═══════════════════════════════════════════════════════════════
def enable_mfa(user_id: str) -> dict:
    """Generate an MFA secret and recovery codes.

    The secret is stored Fernet-encrypted and the recovery codes as SHA-256
    hashes; the plaintext values are returned once.
    """
    user = get_user(user_id)
    if user.mfa_enabled:
        raise UserServiceError("MFA is already enabled", 409)
    secret = base64.b32encode(secrets.token_bytes(20)).decode("ascii")
    codes = generate_recovery_codes()
    user.mfa_secret = encrypt_secret(secret)
    user.mfa_recovery_codes = [hash_recovery_code(c) for c in codes]
    user.mfa_enabled = True
    write_audit(entity_type="user", entity_id=user.id, action="user.mfa_enabled",
                tenant_id=user.tenant_id)
    db.session.commit()
    return {"secret": secret, "recovery_codes": codes}


def get_mfa_secret(user_id: str) -> str | None:
    user = get_user(user_id)
    return decrypt_secret(user.mfa_secret) if user.mfa_secret else None


def use_recovery_code(user_id: str, code: str) -> bool:
    """Consume a recovery code.  Each code works once."""
    user = get_user(user_id)
    hashed = hash_recovery_code(code)
    remaining = list(user.mfa_recovery_codes or [])
    if hashed not in remaining:
        return False
    remaining.remove(hashed)
    user.mfa_recovery_codes = remaining
    db.session.commit()
    return True


def disable_mfa(user_id: str) -> User:
    user = get_user(user_id)
    user.mfa_enabled = False
    user.mfa_secret = None
    user.mfa_recovery_codes = []
    write_audit(entity_type="user", entity_id=user.id, action="user.mfa_disabled",
                tenant_id=user.tenant_id)
    db.session.commit()
    return user


# ═══════════════════════════════════════════════════════════════
# Role Management
# ═══════════════════════════════════════════════════════════════
def assign_role(user_id: str, role_name: str, assigned_by: str = None) -> UserRole:
    """Assign a role to a user."""
    user = get_user(user_id)
    role = _find_role(role_name, user.tenant_id)
    if not role:
        raise UserServiceError(f"Role '{role_name}' not found", 404)

    existing = UserRole.query.filter_by(user_id=user_id, role_id=role.id).first()
    if existing:
        raise UserServiceError("Role already assigned", 409)

    ur = UserRole(user_id=user_id, role_id=role.id, assigned_by=assigned_by)
    db.session.add(ur)
    write_audit(entity_type="user", entity_id=user.id, action="role.assigned",
                tenant_id=user.tenant_id, diff={"role": role_name})
    db.session.commit()
    permission_service.invalidate_cache(user_id)
    return ur


def revoke_role(user_id: str, role_name: str) -> bool:
    """Remove a role from a user."""
    user = get_user(user_id)
    role = _find_role(role_name, user.tenant_id)
    if not role:
        raise UserServiceError(f"Role '{role_name}' not found", 404)

    ur = UserRole.query.filter_by(user_id=user_id, role_id=role.id).first()
    if not ur:
        raise UserServiceError("Role not assigned", 404)

    db.session.delete(ur)
    write_audit(entity_type="user", entity_id=user.id, action="role.revoked",
                tenant_id=user.tenant_id, diff={"role": role_name})
    db.session.commit()
    permission_service.invalidate_cache(user_id)
    return True


# ═══════════════════════════════════════════════════════════════
# Teams
# ═══════════════════════════════════════════════════════════════
def create_team(tenant_id: str, name: str, description: str = "", lead_user_id: str = None) -> Team:
    name = (name or "").strip()
    if not name:
        raise UserServiceError("Team name is required")
    if Team.query.filter_by(tenant_id=tenant_id, name=name).first():
        raise UserServiceError(f"Team '{name}' already exists", 409)
    if lead_user_id is not None:
        get_user(lead_user_id, tenant_id)

    team = Team(tenant_id=tenant_id, name=name, description=description, lead_user_id=lead_user_id)
    db.session.add(team)
    db.session.flush()
    write_audit(entity_type="team", entity_id=team.id, action="create",
                tenant_id=tenant_id, diff={"name": name})
    db.session.commit()
    return team


def _get_team(team_id: str, tenant_id: str) -> Team:
    team = Team.query_active().filter_by(id=team_id, tenant_id=tenant_id).first()
    if team is None:
        raise UserServiceError("Team not found", 404)
    return team


def add_team_member(tenant_id: str, team_id: str, user_id: str, role_in_team: str = "member") -> TeamMember:
    team = _get_team(team_id, tenant_id)
    get_user(user_id, tenant_id)
    if TeamMember.query.filter_by(team_id=team.id, user_id=user_id).first():
        raise UserServiceError("User is already a member of this team", 409)
    member = TeamMember(team_id=team.id, user_id=user_id, role_in_team=role_in_team)
    db.session.add(member)
    db.session.commit()
    return member


def remove_team_member(tenant_id: str, team_id: str, user_id: str) -> bool:
    team = _get_team(team_id, tenant_id)
    member = TeamMember.query.filter_by(team_id=team.id, user_id=user_id).first()
    if member is None:
        raise UserServiceError("User is not a member of this team", 404)
    db.session.delete(member)
    db.session.commit()
    return True
