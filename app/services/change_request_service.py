"""
Change request service — lifecycle and approval routing.

Lifecycle:
    draft → awaiting_approval → approved → implemented
                              ↘ rejected → draft (rework)
    draft / awaiting_approval → cancelled

On submit, one approval row per required level is created from the cost
impact relative to the project budget (see ``required_approval_roles``).
Levels are decided strictly in order.  A rejection marks the remaining
levels ``skipped`` and rejects the change request; approving the last
level approves it.

Every state change writes an audit row and an outbox event in the same
transaction as the change itself.
"""

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy.exc import IntegrityError

from app.core.exceptions import (
    ConflictError,
    InvalidTransitionError,
    PermissionDeniedError,
    ValidationError,
)
from app.models import db
from app.models.audit import write_audit
from app.models.auth import User
from app.models.change_request import (
    CR_PRIORITIES,
    ChangeRequest,
    ChangeRequestApproval,
    ChangeRequestComment,
    required_approval_roles,
    validate_cr_transition,
)
from app.models.project import Project
from app.services.code_generator import generate_change_request_code
from app.services.helpers.scoped_queries import get_scoped, get_scoped_or_none
from app.services.outbox_service import enqueue_event
from app.services.permission_service import SUPERUSER_ROLES, get_user_role_names
from app.utils.helpers import money, parse_decimal

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = ("title", "description", "reason", "priority", "cost_impact",
                   "schedule_impact_days", "assigned_to")


def _cost(value):
    try:
        return parse_decimal(value, "cost_impact") or 0
    except ValueError as exc:
        raise ValidationError(str(exc), details={"cost_impact": "must be a number"}) from exc


def _check_user(tenant_id: str, user_id, field: str) -> None:
    if user_id is None:
        return
    if get_scoped_or_none(User, user_id, tenant_id=tenant_id) is None:
        raise ValidationError(f"{field} must reference a user of this tenant", details={field: user_id})


def _record(cr: ChangeRequest, action: str, actor_user_id, diff: dict | None = None) -> None:
    write_audit(entity_type="change_request", entity_id=cr.id, action=action,
                tenant_id=cr.tenant_id, project_id=cr.project_id,
                actor_user_id=actor_user_id, diff=diff)
    enqueue_event(tenant_id=cr.tenant_id, event_type=action,
                  aggregate_type="change_request", aggregate_id=cr.id,
                  payload={"code": cr.code, "project_id": cr.project_id, "title": cr.title,
                           "status": cr.status, "requested_by": cr.requested_by,
                           **(diff or {})})


def _approvals(cr: ChangeRequest):
    """Unordered approval query; bulk update/delete refuse an ORDER BY."""
    return ChangeRequestApproval.query.filter_by(change_request_id=cr.id)


def _transition(cr: ChangeRequest, new_status: str) -> str:
    old = cr.status
    if not validate_cr_transition(old, new_status):
        raise InvalidTransitionError("ChangeRequest", old, new_status)
    cr.status = new_status
    return old


# ═══════════════════════════════════════════════════════════════
# CRUD
# ═══════════════════════════════════════════════════════════════

def create_change_request(project_id: str, *, tenant_id: str, data: dict,
                          actor_user_id: str | None = None) -> ChangeRequest:
    """Create a draft change request with the next ``CR-`` code."""
    project = get_scoped(Project, project_id, tenant_id=tenant_id)
    if project.status in ("completed", "cancelled"):
        raise ValidationError(f"Project is {project.status}; change requests are closed",
                              details={"project_status": project.status})

    title = str(data.get("title") or "").strip()
    if not title:
        raise ValidationError("title is required", details={"title": "required"})
    priority = data.get("priority") or "medium"
    if priority not in CR_PRIORITIES:
        raise ValidationError(f"Invalid priority '{priority}'", details={"priority": sorted(CR_PRIORITIES)})
    days = data.get("schedule_impact_days") or 0
    if isinstance(days, bool) or not isinstance(days, int):
        raise ValidationError("schedule_impact_days must be an integer",
                              details={"schedule_impact_days": days})
    _check_user(tenant_id, data.get("assigned_to"), "assigned_to")

    cr = ChangeRequest(
        tenant_id=tenant_id,
        project_id=project.id,
        code=generate_change_request_code(tenant_id),
        title=title,
        description=data.get("description") or "",
        reason=data.get("reason") or "",
        priority=priority,
        status="draft",
        cost_impact=_cost(data.get("cost_impact")),
        schedule_impact_days=days,
        requested_by=actor_user_id,
        assigned_to=data.get("assigned_to"),
    )
    db.session.add(cr)
    try:
        db.session.flush()
    except IntegrityError as exc:
        db.session.rollback()
        raise ConflictError("ChangeRequest", "code", cr.code) from exc

    _record(cr, "change_request.created", actor_user_id, {"cost_impact": money(cr.cost_impact)})
    db.session.commit()
    logger.info("Change request %s created on project %s", cr.code, project.code)
    return cr


def get_change_request(cr_id: str, *, tenant_id: str, include_deleted: bool = False) -> ChangeRequest:
    return get_scoped(ChangeRequest, cr_id, tenant_id=tenant_id, include_deleted=include_deleted)


def list_change_requests(*, tenant_id: str, project_id: str | None = None,
                         status: str | None = None, include_deleted: bool = False):
    q = ChangeRequest.query_visible(include_deleted).filter(ChangeRequest.tenant_id == tenant_id)
    if project_id:
        q = q.filter(ChangeRequest.project_id == project_id)
    if status:
        q = q.filter(ChangeRequest.status == status)
    return q.order_by(ChangeRequest.created_at.desc(), ChangeRequest.id.desc())


def update_change_request(cr_id: str, *, tenant_id: str, data: dict,
                          actor_user_id: str | None = None) -> ChangeRequest:
    """Edit a change request.  Only drafts are editable."""
    cr = get_change_request(cr_id, tenant_id=tenant_id)
    if cr.status != "draft":
        raise ValidationError(f"Only draft change requests can be edited (current: {cr.status})",
                              details={"status": cr.status})
    diff = {}
    for field in EDITABLE_FIELDS:
        if field not in data:
            continue
        value = data[field]
        if field == "title":
            value = str(value or "").strip()
            if not value:
                raise ValidationError("title cannot be empty", details={"title": "required"})
        elif field == "priority" and value not in CR_PRIORITIES:
            raise ValidationError(f"Invalid priority '{value}'", details={"priority": sorted(CR_PRIORITIES)})
        elif field == "cost_impact":
            value = _cost(value)
        elif field == "schedule_impact_days" and (isinstance(value, bool) or not isinstance(value, int)):
            raise ValidationError("schedule_impact_days must be an integer",
                                  details={"schedule_impact_days": value})
        elif field == "assigned_to":
            _check_user(tenant_id, value, "assigned_to")
        old = getattr(cr, field)
        if old != value:
            diff[field] = {"old": money(old) if field == "cost_impact" else old,
                           "new": money(value) if field == "cost_impact" else value}
            setattr(cr, field, value)
    if diff:
        write_audit(entity_type="change_request", entity_id=cr.id, action="update",
                    tenant_id=tenant_id, project_id=cr.project_id,
                    actor_user_id=actor_user_id, diff=diff)
    db.session.commit()
    return cr


# ═══════════════════════════════════════════════════════════════
# Workflow
# ═══════════════════════════════════════════════════════════════

def submit_change_request(cr_id: str, *, tenant_id: str,
                          actor_user_id: str | None = None) -> ChangeRequest:
    """Send a draft for approval, creating its approval chain."""
    cr = get_change_request(cr_id, tenant_id=tenant_id)
    _transition(cr, "awaiting_approval")

    # A resubmitted (reworked) CR gets a fresh chain.
    _approvals(cr).delete(synchronize_session="fetch")
    roles = required_approval_roles(cr.cost_impact, cr.project.budget)
    for level, role in enumerate(roles, start=1):
        db.session.add(ChangeRequestApproval(
            tenant_id=tenant_id,
            change_request_id=cr.id,
            level=level,
            approver_role=role,
            status="pending",
        ))
    cr.submitted_at = datetime.now(timezone.utc)
    cr.decided_at = None
    db.session.flush()

    _record(cr, "change_request.submitted", actor_user_id, {"approval_roles": roles})
    db.session.commit()
    return cr


def _can_decide(approval: ChangeRequestApproval, cr: ChangeRequest, user_id: str) -> bool:
    roles = set(get_user_role_names(user_id, cr.tenant_id))
    if roles & SUPERUSER_ROLES or approval.approver_role in roles:
        return True
    return approval.approver_role == "project_manager" and cr.project.owner_id == user_id


def decide_approval(cr_id: str, *, tenant_id: str, level: int, decision: str,
                    actor_user_id: str, comment: str = "") -> ChangeRequest:
    """Approve or reject approval *level* of an awaiting change request.

    Raises:
        ValidationError: Bad decision, CR not awaiting approval, or the level
            is not the next one to decide.
        PermissionDeniedError: The actor does not hold the level's role.
    """
    if decision not in ("approved", "rejected"):
        raise ValidationError("decision must be 'approved' or 'rejected'", details={"decision": decision})
    cr = get_change_request(cr_id, tenant_id=tenant_id)
    if cr.status != "awaiting_approval":
        raise ValidationError(f"Change request is {cr.status}, not awaiting approval",
                              details={"status": cr.status})

    current = cr.current_approval
    if current is None or current.level != level:
        raise ValidationError(
            "Approval levels must be decided in order",
            details={"level": level, "next_level": current.level if current else None},
        )
    if not _can_decide(current, cr, actor_user_id):
        raise PermissionDeniedError(
            permission=f"change_requests.approve:{current.approver_role}",
            message=f"Level {level} must be decided by a {current.approver_role}",
        )

    now = datetime.now(timezone.utc)
    current.status = decision
    current.decided_by = actor_user_id
    current.decided_at = now
    current.comment = comment or ""

    if decision == "rejected":
        _approvals(cr).filter(
            ChangeRequestApproval.level > level, ChangeRequestApproval.status == "pending"
        ).update({"status": "skipped"}, synchronize_session="fetch")
        _transition(cr, "rejected")
        cr.decided_at = now
        action = "change_request.rejected"
    elif cr.approvals.filter(ChangeRequestApproval.level > level).count() == 0:
        _transition(cr, "approved")
        cr.decided_at = now
        action = "change_request.approved"
    else:
        action = "change_request.level_approved"

    _record(cr, action, actor_user_id,
            {"level": level, "approver_role": current.approver_role, "decision": decision})
    db.session.commit()
    return cr


def implement_change_request(cr_id: str, *, tenant_id: str,
                             actor_user_id: str | None = None) -> ChangeRequest:
    """Mark an approved change as implemented and roll its impact into the project."""
    cr = get_change_request(cr_id, tenant_id=tenant_id)
    _transition(cr, "implemented")
    cr.implemented_at = datetime.now(timezone.utc)

    project = cr.project
    project.budget = (project.budget or 0) + (cr.cost_impact or 0)
    diff = {"project_budget": money(project.budget)}
    if project.end_date and cr.schedule_impact_days:
        old_end = project.end_date
        project.end_date = old_end + timedelta(days=cr.schedule_impact_days)
        diff["project_end_date"] = {"old": old_end.isoformat(), "new": project.end_date.isoformat()}
    _record(cr, "change_request.implemented", actor_user_id, diff)
    db.session.commit()
    return cr


def rework_change_request(cr_id: str, *, tenant_id: str,
                          actor_user_id: str | None = None) -> ChangeRequest:
    """Send a rejected change request back to draft."""
    cr = get_change_request(cr_id, tenant_id=tenant_id)
    _transition(cr, "draft")
    _record(cr, "change_request.reworked", actor_user_id)
    db.session.commit()
    return cr


def cancel_change_request(cr_id: str, *, tenant_id: str, reason: str = "",
                          actor_user_id: str | None = None) -> ChangeRequest:
    cr = get_change_request(cr_id, tenant_id=tenant_id)
    _transition(cr, "cancelled")
    _approvals(cr).filter(ChangeRequestApproval.status == "pending").update(
        {"status": "skipped"}, synchronize_session="fetch"
    )
    _record(cr, "change_request.cancelled", actor_user_id, {"reason": reason})
    db.session.commit()
    return cr


def soft_delete_change_request(cr_id: str, *, tenant_id: str,
                               actor_user_id: str | None = None) -> ChangeRequest:
    cr = get_change_request(cr_id, tenant_id=tenant_id)
    if cr.status not in ("draft", "cancelled"):
        raise ValidationError("Only draft or cancelled change requests can be deleted",
                              details={"status": cr.status})
    cr.soft_delete()
    write_audit(entity_type="change_request", entity_id=cr.id, action="delete",
                tenant_id=tenant_id, project_id=cr.project_id, actor_user_id=actor_user_id)
    db.session.commit()
    return cr


# ═══════════════════════════════════════════════════════════════
# Comments
# ═══════════════════════════════════════════════════════════════

def add_comment(cr_id: str, *, tenant_id: str, body: str, parent_id: str | None = None,
                actor_user_id: str | None = None) -> ChangeRequestComment:
    """Add a comment, optionally as a reply within the same change request."""
    cr = get_change_request(cr_id, tenant_id=tenant_id)
    body = (body or "").strip()
    if not body:
        raise ValidationError("body is required", details={"body": "required"})
    if parent_id is not None and get_scoped_or_none(
        ChangeRequestComment, parent_id, tenant_id=tenant_id, change_request_id=cr.id
    ) is None:
        raise ValidationError("parent_id must reference a comment on the same change request",
                              details={"parent_id": parent_id})

    comment = ChangeRequestComment(
        tenant_id=tenant_id,
        change_request_id=cr.id,
        parent_id=parent_id,
        author_id=actor_user_id,
        body=body,
    )
    db.session.add(comment)
    db.session.flush()
    enqueue_event(tenant_id=tenant_id, event_type="change_request.commented",
                  aggregate_type="change_request", aggregate_id=cr.id,
                  payload={"code": cr.code, "project_id": cr.project_id, "title": cr.title,
                           "comment_id": comment.id, "requested_by": cr.requested_by,
                           "author_id": actor_user_id})
    db.session.commit()
    return comment


def comment_thread(cr_id: str, *, tenant_id: str) -> list[dict]:
    """Top-level comments with nested replies, oldest first.

    Deleted comments stay in the tree (body masked) so replies keep their place.
    """
    cr = get_change_request(cr_id, tenant_id=tenant_id)
    roots = (
        cr.comments.filter(ChangeRequestComment.parent_id.is_(None))
        .order_by(ChangeRequestComment.id)
        .all()
    )
    return [c.to_dict(include_replies=True) for c in roots]
