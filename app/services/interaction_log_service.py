"""Interaction log service: project communication history.

Entries are internal until someone approves them for the client; switching
an entry back to internal (or revoking) clears the approval.
"""

from datetime import datetime, timezone

from app.core.exceptions import ValidationError
from app.models import db
from app.models.audit import write_audit
from app.models.interaction_log import INTERACTION_TYPES, VISIBILITIES, InteractionLog
from app.models.project import Project
from app.services.helpers.scoped_queries import get_scoped


def _normalise_tag_path(value) -> str:
    parts = [p.strip().lower() for p in str(value or "").split("/") if p.strip()]
    return "/".join(parts)[:300]


def create_log(project_id: str, *, tenant_id: str, data: dict,
               actor_user_id: str | None = None) -> InteractionLog:
    project = get_scoped(Project, project_id, tenant_id=tenant_id)
    description = str(data.get("description") or "").strip()
    if not description:
        raise ValidationError("description is required", details={"description": "required"})
    kind = data.get("interaction_type") or "note"
    if kind not in INTERACTION_TYPES:
        raise ValidationError(f"Invalid interaction_type '{kind}'",
                              details={"interaction_type": sorted(INTERACTION_TYPES)})
    visibility = data.get("visibility") or "internal"
    if visibility not in VISIBILITIES:
        raise ValidationError(f"Invalid visibility '{visibility}'", details={"visibility": sorted(VISIBILITIES)})

    occurred_at = data.get("occurred_at")
    if isinstance(occurred_at, str):
        try:
            occurred_at = datetime.fromisoformat(occurred_at)
        except ValueError as exc:
            raise ValidationError("occurred_at must be an ISO timestamp",
                                  details={"occurred_at": occurred_at}) from exc

    log = InteractionLog(
        tenant_id=tenant_id,
        project_id=project.id,
        author_id=actor_user_id,
        interaction_type=kind,
        description=description,
        tag_path=_normalise_tag_path(data.get("tag_path")),
        visibility=visibility,
        occurred_at=occurred_at or datetime.now(timezone.utc),
    )
    db.session.add(log)
    db.session.flush()
    write_audit(entity_type="interaction_log", entity_id=log.id, action="create",
                tenant_id=tenant_id, project_id=project.id, actor_user_id=actor_user_id,
                diff={"interaction_type": kind, "visibility": visibility})
    db.session.commit()
    return log


def list_project_logs(project_id: str, *, tenant_id: str, interaction_type: str | None = None,
                      visibility: str | None = None, tag_prefix: str | None = None,
                      client_view: bool = False):
    """Query a project's log, newest first.

    ``client_view`` restricts the result to entries approved for the client.
    """
    project = get_scoped(Project, project_id, tenant_id=tenant_id)
    q = InteractionLog.query_active().filter(InteractionLog.project_id == project.id)
    if interaction_type:
        q = q.filter(InteractionLog.interaction_type == interaction_type)
    if visibility:
        q = q.filter(InteractionLog.visibility == visibility)
    if tag_prefix:
        prefix = _normalise_tag_path(tag_prefix)
        q = q.filter((InteractionLog.tag_path == prefix) | InteractionLog.tag_path.like(f"{prefix}/%"))
    if client_view:
        q = q.filter(InteractionLog.visibility == "client", InteractionLog.client_approved.is_(True))
    return q.order_by(InteractionLog.occurred_at.desc(), InteractionLog.id.desc())


def approve_for_client(log_id: str, *, tenant_id: str, actor_user_id: str) -> InteractionLog:
    """Publish an entry to the client."""
    log = get_scoped(InteractionLog, log_id, tenant_id=tenant_id)
    log.visibility = "client"
    log.client_approved = True
    log.client_approved_by = actor_user_id
    log.client_approved_at = datetime.now(timezone.utc)
    write_audit(entity_type="interaction_log", entity_id=log.id, action="interaction_log.client_approved",
                tenant_id=tenant_id, project_id=log.project_id, actor_user_id=actor_user_id)
    db.session.commit()
    return log


def revoke_client_approval(log_id: str, *, tenant_id: str,
                           actor_user_id: str | None = None) -> InteractionLog:
    log = get_scoped(InteractionLog, log_id, tenant_id=tenant_id)
    log.visibility = "internal"
    log.client_approved = False
    log.client_approved_by = None
    log.client_approved_at = None
    write_audit(entity_type="interaction_log", entity_id=log.id, action="interaction_log.client_revoked",
                tenant_id=tenant_id, project_id=log.project_id, actor_user_id=actor_user_id)
    db.session.commit()
    return log


def soft_delete_log(log_id: str, *, tenant_id: str, actor_user_id: str | None = None) -> InteractionLog:
    log = get_scoped(InteractionLog, log_id, tenant_id=tenant_id)
    log.soft_delete()
    write_audit(entity_type="interaction_log", entity_id=log.id, action="delete",
                tenant_id=tenant_id, project_id=log.project_id, actor_user_id=actor_user_id)
    db.session.commit()
    return log
