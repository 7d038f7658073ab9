"""
Permission Service — DB-driven RBAC with an in-process cache.

Roles are either system roles (``tenant_id IS NULL``, shared by every tenant)
or custom tenant roles.  A user's effective permissions are the union of
the codenames granted to all their roles that are visible in the tenant.

Evaluation is deny-by-default; ``platform_admin`` and ``tenant_admin``
hold every permission.
"""

import logging
import threading
import time

from app.models import db
from app.models.auth import Permission, Role, RolePermission, User, UserRole

logger = logging.getLogger(__name__)

CACHE_TTL = 300  # 5 minutes

# Cache key: (user_id, tenant_id)
_permission_cache: dict[tuple[str, str | None], tuple[float, set[str]]] = {}
_cache_lock = threading.Lock()

SUPERUSER_ROLES = {"platform_admin", "tenant_admin"}

# ── Default catalogue ────────────────────────────────────────────────────────

DEFAULT_PERMISSIONS = {
    "projects": ["view", "create", "edit", "delete"],
    "tasks": ["view", "create", "edit", "delete", "assign"],
    "documents": ["view", "upload", "delete"],
    "change_requests": ["view", "create", "approve", "implement"],
    "templates": ["view", "manage"],
    "inspections": ["view", "manage"],
    "billing": ["view", "manage"],
    "users": ["view", "manage"],
    "outbox": ["view", "manage"],
    "audit": ["view"],
}

DEFAULT_ROLE_PERMISSIONS = {
    "project_manager": [
        "projects.view", "projects.create", "projects.edit",
        "tasks.view", "tasks.create", "tasks.edit", "tasks.delete", "tasks.assign",
        "documents.view", "documents.upload",
        "change_requests.view", "change_requests.create",
        "change_requests.approve", "change_requests.implement",
        "templates.view", "inspections.view", "inspections.manage",
    ],
    "member": [
        "projects.view", "tasks.view", "tasks.edit",
        "documents.view", "documents.upload",
        "change_requests.view", "change_requests.create",
        "templates.view", "inspections.view",
    ],
    "client": [
        "projects.view", "documents.view",
        "change_requests.view", "change_requests.approve",
    ],
    "client_representative": [
        "projects.view", "documents.view",
        "change_requests.view", "change_requests.approve",
    ],
    "client_director": [
        "projects.view", "documents.view",
        "change_requests.view", "change_requests.approve",
    ],
    "viewer": [
        "projects.view", "tasks.view", "documents.view", "change_requests.view",
    ],
}


# ── Cache ────────────────────────────────────────────────────────────────────

def _get_cached(key):
    with _cache_lock:
        entry = _permission_cache.get(key)
        if entry is None:
            return None
        cached_at, perms = entry
        if time.time() - cached_at > CACHE_TTL:
            del _permission_cache[key]
            return None
        return perms


def _set_cached(key, perms: set[str]) -> None:
    with _cache_lock:
        _permission_cache[key] = (time.time(), perms)


def invalidate_cache(user_id: str) -> None:
    with _cache_lock:
        for k in [k for k in _permission_cache if k[0] == user_id]:
            _permission_cache.pop(k, None)


def invalidate_all_cache() -> None:
    with _cache_lock:
        _permission_cache.clear()


# ── Evaluation ───────────────────────────────────────────────────────────────

def _visible_roles_query(user_id: str, tenant_id: str | None):
    q = (
        db.session.query(Role.id, Role.name)
        .join(UserRole, UserRole.role_id == Role.id)
        .filter(UserRole.user_id == user_id)
    )
    if tenant_id is not None:
        q = q.filter((Role.tenant_id.is_(None)) | (Role.tenant_id == tenant_id))
    return q


def get_user_role_names(user_id: str, tenant_id: str | None = None) -> list[str]:
    user = db.session.get(User, user_id)
    if user is None or user.deleted_at is not None:
        return []
    resolved = tenant_id if tenant_id is not None else user.tenant_id
    return sorted({name for _, name in _visible_roles_query(user_id, resolved).all()})


def get_user_permissions(user_id: str, tenant_id: str | None = None) -> set[str]:
    """Codenames granted to *user_id* within *tenant_id* (cached)."""
    key = (user_id, tenant_id)
    cached = _get_cached(key)
    if cached is not None:
        return cached

    user = db.session.get(User, user_id)
    if user is None or user.deleted_at is not None:
        return set()
    resolved = tenant_id if tenant_id is not None else user.tenant_id

    role_ids = sorted({rid for rid, _ in _visible_roles_query(user_id, resolved).all()})
    if not role_ids:
        _set_cached(key, set())
        return set()

    rows = (
        db.session.query(Permission.codename)
        .join(RolePermission, RolePermission.permission_id == Permission.id)
        .filter(RolePermission.role_id.in_(role_ids))
        .distinct()
        .all()
    )
    perms = {r[0] for r in rows}
    _set_cached(key, perms)
    return perms


def has_permission(user_id: str, codename: str, tenant_id: str | None = None) -> bool:
    role_names = get_user_role_names(user_id, tenant_id)
    if any(r in SUPERUSER_ROLES for r in role_names):
        return True
    return codename in get_user_permissions(user_id, tenant_id)


def has_any_permission(user_id: str, codenames: list[str], tenant_id: str | None = None) -> bool:
    role_names = get_user_role_names(user_id, tenant_id)
    if any(r in SUPERUSER_ROLES for r in role_names):
        return True
    return bool(get_user_permissions(user_id, tenant_id) & set(codenames))


def evaluate_permission(user_id: str, codename: str, *, tenant_id: str | None = None) -> dict:
    """Explain a permission decision (used by the admin API)."""
    role_names = get_user_role_names(user_id, tenant_id)
    if any(r in SUPERUSER_ROLES for r in role_names):
        return {"allowed": True, "decision": "allow_superuser",
                "roles": role_names, "permission": codename}
    allowed = codename in get_user_permissions(user_id, tenant_id)
    return {
        "allowed": allowed,
        "decision": "allow_role_grant" if allowed else "deny_by_default",
        "roles": role_names,
        "permission": codename,
    }


# ── Seeding ──────────────────────────────────────────────────────────────────

def seed_default_roles() -> dict:
    """Create the permission catalogue and system roles if missing.

    Safe to run repeatedly.  Returns counts of rows created.
    """
    created = {"permissions": 0, "roles": 0, "grants": 0}

    perms = {p.codename: p for p in Permission.query.all()}
    for category, actions in DEFAULT_PERMISSIONS.items():
        for action in actions:
            codename = f"{category}.{action}"
            if codename not in perms:
                perm = Permission(
                    codename=codename,
                    category=category,
                    display_name=f"{action.title()} {category.replace('_', ' ')}",
                )
                db.session.add(perm)
                perms[codename] = perm
                created["permissions"] += 1

    roles = {r.name: r for r in Role.query.filter(Role.tenant_id.is_(None)).all()}
    for level, name in enumerate(
        ["viewer", "client", "client_representative", "client_director",
         "member", "project_manager", "tenant_admin", "platform_admin"]
    ):
        if name not in roles:
            role = Role(
                name=name,
                display_name=name.replace("_", " ").title(),
                is_system=True,
                level=level * 10,
            )
            db.session.add(role)
            roles[name] = role
            created["roles"] += 1
    db.session.flush()

    for role_name, codenames in DEFAULT_ROLE_PERMISSIONS.items():
        role = roles[role_name]
        granted = {rp.permission_id for rp in role.role_permissions.all()}
        for codename in codenames:
            perm = perms[codename]
            if perm.id not in granted:
                db.session.add(RolePermission(role_id=role.id, permission_id=perm.id))
                created["grants"] += 1

    db.session.commit()
    invalidate_all_cache()
    if any(created.values()):
        logger.info("Seeded RBAC catalogue: %s", created)
    return created
