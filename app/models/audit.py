"""
Project Workspace Platform
Audit domain model.

Models:
    - AuditLog: immutable, append-only audit trail for lifecycle events.
"""

import json
from datetime import UTC, datetime

from sqlalchemy import event as _sa_event

from app.models import db
from app.models.base import ulid_fk, ulid_pk
from app.models.document import ImmutableRowError

# ── Constants ────────────────────────────────────────────────────────────────

AUDIT_ENTITY_TYPES = {
    "tenant", "user", "role", "team",
    "project", "task", "task_dependency", "task_assignment", "component",
    "document", "change_request", "template",
    "interaction_log", "inspection", "subscription", "invoice",
    "outbox_event",
}

AUDIT_ACTIONS = {
    # Generic
    "create",
    "update",
    "delete",
    "restore",
    "purge",
    # Project / task lifecycle
    "project.transition",
    "task.transition",
    "task.dependency_added",
    "task.dependency_removed",
    "task.assigned",
    "task.unassigned",
    # Documents
    "document.version_uploaded",
    "document.reverted",
    # Change requests
    "change_request.submit",
    "change_request.approve",
    "change_request.reject",
    "change_request.implement",
    "change_request.cancel",
    # Templates
    "template.version_published",
    "template.applied",
    # Identity
    "user.locked",
    "user.password_changed",
    "user.mfa_enabled",
    "user.mfa_disabled",
    "role.assigned",
    "role.revoked",
    # Tenant
    "tenant.suspend",
    "tenant.activate",
    "tenant.settings_updated",
    # Reliability
    "outbox.requeue",
}


class AuditLog(db.Model):
    """
    Immutable audit trail for every lifecycle event.

    One row per action.  ``diff_json`` carries old→new snapshot
    for field-level changes.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("idx_audit_entity", "entity_type", "entity_id"),
        db.Index("idx_audit_actor", "actor"),
        db.Index("idx_audit_action", "action"),
        db.Index("idx_audit_ts", "timestamp"),
    )

    id = ulid_pk()
    tenant_id = ulid_fk("tenants.id", ondelete="CASCADE", nullable=True)
    project_id = ulid_fk("projects.id", ondelete="SET NULL", nullable=True)

    # Polymorphic entity reference
    entity_type = db.Column(
        db.String(30), nullable=False,
        comment="project | task | document | change_request | …",
    )
    entity_id = db.Column(db.String(36), nullable=False)

    # What happened
    action = db.Column(
        db.String(60), nullable=False,
        comment="create | project.transition | change_request.approve | …",
    )
    actor = db.Column(db.String(150), nullable=False, default="system")
    actor_user_id = ulid_fk("users.id", ondelete="SET NULL", nullable=True)

    # Change payload
    diff_json = db.Column(db.Text, default="{}", comment="JSON: {field: {old, new}}")
    ip_address = db.Column(db.String(45))

    # Timestamp (immutable)
    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(UTC),
    )

    # ── Helpers ──────────────────────────────────────────────────────────

    @property
    def diff(self) -> dict:
        """Deserialise *diff_json* to a Python dict."""
        try:
            return json.loads(self.diff_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "project_id": self.project_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "actor": self.actor,
            "actor_user_id": self.actor_user_id,
            "diff": self.diff,
            "ip_address": self.ip_address,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<AuditLog {self.id}: {self.action} on {self.entity_type}/{self.entity_id}>"


@_sa_event.listens_for(AuditLog, "before_update")
def _block_audit_update(mapper, connection, target):
    raise ImmutableRowError(f"AuditLog {target.id} is append-only")


@_sa_event.listens_for(AuditLog, "before_delete")
def _block_audit_delete(mapper, connection, target):
    raise ImmutableRowError(f"AuditLog {target.id} is append-only")


# ── Convenience writer ───────────────────────────────────────────────────────

def write_audit(
    *,
    entity_type: str,
    entity_id: str,
    action: str,
    actor: str | None = None,
    project_id: str | None = None,
    tenant_id: str | None = None,
    actor_user_id: str | None = None,
    diff: dict | None = None,
    inherit_context: bool = True,
) -> AuditLog:
    """
    Append a single audit row.  Uses ``flush`` so callers keep
    transaction control.

    Tenant, actor and client IP are taken from the request context when not
    passed explicitly.  Platform-level rows (tenant purge) pass
    ``inherit_context=False`` to keep ``tenant_id`` NULL.

    Returns the (flushed) AuditLog instance.
    """
    ip_address = None
    from flask import g, has_request_context, request
    if has_request_context():
        if tenant_id is None and inherit_context:
            tenant_id = getattr(g, "tenant_id", None)
        if actor_user_id is None:
            actor_user_id = getattr(g, "jwt_user_id", None)
        ip_address = request.remote_addr

    log = AuditLog(
        tenant_id=tenant_id,
        project_id=project_id,
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        actor=actor or (f"user:{actor_user_id}" if actor_user_id else "system"),
        actor_user_id=actor_user_id,
        diff_json=json.dumps(diff or {}, default=str),
        ip_address=ip_address,
    )
    db.session.add(log)
    db.session.flush()
    return log
