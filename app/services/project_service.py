"""Project CRUD, workflow, phases and component tree with strict tenant scoping.

Every function takes ``tenant_id`` and resolves rows through
``get_scoped``; a project of another tenant is indistinguishable from a
missing one.  State changes write an audit row and an outbox event in the
same commit.
"""

from __future__ import annotations

import logging

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from app.core.exceptions import ConflictError, InvalidTransitionError, NotFoundError, ValidationError
from app.models import db
from app.models.audit import write_audit
from app.models.auth import Tenant, User
from app.models.project import (
    PROJECT_PRIORITIES,
    PROJECT_STATUSES,
    Component,
    Project,
    ProjectPhase,
    validate_no_component_cycle,
    validate_project_transition,
)
from app.models.task import TASK_OPEN_STATUSES, Task
from app.models.template import TemplateVersion
from app.services.code_generator import generate_project_code
from app.services.helpers.scoped_queries import get_scoped, get_scoped_or_none
from app.services.outbox_service import enqueue_event
from app.utils.helpers import parse_date, parse_decimal

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = (
    "name", "description", "priority", "client_name", "owner_id",
    "start_date", "end_date", "budget", "actual_cost", "currency",
)


def _money(data: dict, field: str):
    try:
        value = parse_decimal(data.get(field), field)
    except ValueError as exc:
        raise ValidationError(str(exc), details={field: "must be a number"}) from exc
    if value is not None and value < 0:
        raise ValidationError(f"{field} cannot be negative", details={field: str(value)})
    return value


def _check_dates(start, end) -> None:
    if start and end and end < start:
        raise ValidationError("end_date cannot be before start_date",
                              details={"end_date": end.isoformat()})


def _check_owner(owner_id, tenant_id: str) -> None:
    if owner_id is None:
        return
    owner = db.session.get(User, owner_id)
    if owner is None or owner.tenant_id != tenant_id or owner.deleted_at is not None:
        raise ValidationError("owner_id must reference a user of this tenant",
                              details={"owner_id": owner_id})


def require_editable(project: Project) -> None:
    """Raise unless the project's graph may still change."""
    if not project.is_editable:
        raise ValidationError(
            f"Project {project.code} is {project.status}; changes are not allowed",
            details={"status": project.status},
        )


# ═══════════════════════════════════════════════════════════════
# Projects
# ═══════════════════════════════════════════════════════════════

def create_project(*, tenant_id: str, data: dict, actor_user_id: str | None = None) -> Project:
    """Create a draft project.  ``code`` is generated when omitted."""
    name = str(data.get("name", "") or "").strip()
    if not name:
        raise ValidationError("name is required", details={"name": "required"})

    priority = data.get("priority") or "medium"
    if priority not in PROJECT_PRIORITIES:
        raise ValidationError(f"Invalid priority '{priority}'", details={"priority": sorted(PROJECT_PRIORITIES)})

    tenant = db.session.get(Tenant, tenant_id)
    if tenant is None:
        raise NotFoundError(resource="Tenant", resource_id=tenant_id)
    live = Project.query_active().filter_by(tenant_id=tenant_id).count()
    if tenant.max_projects and live >= tenant.max_projects:
        raise ValidationError(f"Project limit reached ({tenant.max_projects}). Upgrade your plan.",
                              details={"max_projects": tenant.max_projects})

    code = str(data.get("code", "") or "").strip().upper() or generate_project_code(tenant_id)
    if Project.query.filter_by(tenant_id=tenant_id, code=code).first():
        raise ConflictError("Project", "code", code)

    start = parse_date(data.get("start_date"))
    end = parse_date(data.get("end_date"))
    _check_dates(start, end)
    owner_id = data.get("owner_id") or actor_user_id
    _check_owner(owner_id, tenant_id)
    template_version_id = data.get("template_version_id")
    if template_version_id is not None:
        get_scoped(TemplateVersion, template_version_id, tenant_id=tenant_id)

    project = Project(
        tenant_id=tenant_id,
        code=code,
        name=name,
        description=data.get("description") or "",
        status="draft",
        priority=priority,
        client_name=data.get("client_name"),
        owner_id=owner_id,
        start_date=start,
        end_date=end,
        budget=_money(data, "budget") or 0,
        actual_cost=_money(data, "actual_cost") or 0,
        currency=(data.get("currency") or tenant.typed_settings.currency).upper(),
        template_version_id=template_version_id,
    )
    db.session.add(project)
    try:
        db.session.flush()
    except IntegrityError as exc:
        db.session.rollback()
        raise ConflictError("Project", "code", code) from exc

    write_audit(entity_type="project", entity_id=project.id, action="create",
                tenant_id=tenant_id, project_id=project.id, actor_user_id=actor_user_id,
                diff={"code": code, "name": name})
    enqueue_event(tenant_id=tenant_id, event_type="project.created",
                  aggregate_type="project", aggregate_id=project.id,
                  payload={"code": code, "name": name, "owner_id": owner_id})
    db.session.commit()
    logger.info("Project created: %s", code, extra={"tenant_id": tenant_id})
    return project


def get_project(project_id: str, *, tenant_id: str, include_deleted: bool = False) -> Project:
    return get_scoped(Project, project_id, tenant_id=tenant_id, include_deleted=include_deleted)


def list_projects(*, tenant_id: str, status: str | None = None, search: str | None = None,
                  owner_id: str | None = None, include_deleted: bool = False):
    """Query of the tenant's projects (tombstones excluded unless asked)."""
    q = Project.query_visible(include_deleted).filter(Project.tenant_id == tenant_id)
    if status:
        if status not in PROJECT_STATUSES:
            raise ValidationError(f"Unknown status '{status}'", details={"status": sorted(PROJECT_STATUSES)})
        q = q.filter(Project.status == status)
    if owner_id:
        q = q.filter(Project.owner_id == owner_id)
    if search:
        q = q.filter(Project.name.ilike(f"%{search}%") | Project.code.ilike(f"%{search}%"))
    return q.order_by(Project.created_at.desc(), Project.id.desc())


def update_project(project_id: str, *, tenant_id: str, data: dict,
                   actor_user_id: str | None = None) -> Project:
    """Update editable fields.  Status changes go through :func:`transition_project`."""
    if "tenant_id" in data and data["tenant_id"] != tenant_id:
        raise ValidationError("tenant_id cannot be changed", details={"tenant_id": "immutable"})
    if "status" in data:
        raise ValidationError("Use the transition endpoint to change status",
                              details={"status": "use transition"})
    project = get_project(project_id, tenant_id=tenant_id)

    diff = {}
    for field in UPDATABLE_FIELDS:
        if field not in data:
            continue
        value = data[field]
        if field == "name":
            value = str(value or "").strip()
            if not value:
                raise ValidationError("name cannot be empty", details={"name": "required"})
        elif field in ("start_date", "end_date"):
            value = parse_date(value)
        elif field in ("budget", "actual_cost"):
            value = _money(data, field) or 0
        elif field == "priority" and value not in PROJECT_PRIORITIES:
            raise ValidationError(f"Invalid priority '{value}'", details={"priority": sorted(PROJECT_PRIORITIES)})
        elif field == "owner_id":
            _check_owner(value, tenant_id)
        elif field == "currency":
            value = str(value or "").upper()
        old = getattr(project, field)
        if old != value:
            diff[field] = {"old": old, "new": value}
            setattr(project, field, value)

    _check_dates(project.start_date, project.end_date)
    if diff:
        write_audit(entity_type="project", entity_id=project.id, action="update",
                    tenant_id=tenant_id, project_id=project.id, actor_user_id=actor_user_id,
                    diff=diff)
    db.session.commit()
    return project


def transition_project(project_id: str, *, tenant_id: str, new_status: str,
                       actor_user_id: str | None = None) -> Project:
    """Move a project through its workflow."""
    if new_status not in PROJECT_STATUSES:
        raise ValidationError(f"Unknown status '{new_status}'", details={"status": sorted(PROJECT_STATUSES)})
    project = get_project(project_id, tenant_id=tenant_id)
    old_status = project.status
    if not validate_project_transition(old_status, new_status):
        raise InvalidTransitionError("Project", old_status, new_status)

    if new_status == "completed":
        open_tasks = Task.query_active().filter(
            Task.project_id == project.id, Task.status.in_(TASK_OPEN_STATUSES)
        ).count()
        if open_tasks:
            raise ValidationError(
                f"Project has {open_tasks} open task(s); complete or cancel them first",
                details={"open_tasks": open_tasks},
            )

    project.status = new_status
    write_audit(entity_type="project", entity_id=project.id, action="project.transition",
                tenant_id=tenant_id, project_id=project.id, actor_user_id=actor_user_id,
                diff={"status": {"old": old_status, "new": new_status}})
    enqueue_event(tenant_id=tenant_id, event_type="project.status_changed",
                  aggregate_type="project", aggregate_id=project.id,
                  payload={"code": project.code, "old": old_status, "new": new_status,
                           "owner_id": project.owner_id})
    db.session.commit()
    return project


def soft_delete_project(project_id: str, *, tenant_id: str, actor_user_id: str | None = None) -> Project:
    project = get_project(project_id, tenant_id=tenant_id)
    project.soft_delete()
    write_audit(entity_type="project", entity_id=project.id, action="delete",
                tenant_id=tenant_id, project_id=project.id, actor_user_id=actor_user_id)
    db.session.commit()
    return project


def restore_project(project_id: str, *, tenant_id: str, actor_user_id: str | None = None) -> Project:
    project = get_project(project_id, tenant_id=tenant_id, include_deleted=True)
    if not project.is_deleted:
        return project
    project.restore()
    write_audit(entity_type="project", entity_id=project.id, action="restore",
                tenant_id=tenant_id, project_id=project.id, actor_user_id=actor_user_id)
    db.session.commit()
    return project


def project_progress(project_id: str, *, tenant_id: str, persist: bool = True) -> dict:
    """Roll task status up into a progress summary.

    ``progress`` is the share of non-cancelled tasks that are completed,
    stored on the project when *persist* is true.
    """
    project = get_project(project_id, tenant_id=tenant_id)
    rows = (
        db.session.query(Task.status, func.count(Task.id))
        .filter(Task.project_id == project.id, Task.deleted_at.is_(None))
        .group_by(Task.status)
        .all()
    )
    by_status = {status: count for status, count in rows}
    total = sum(by_status.values())
    cancelled = by_status.get("cancelled", 0)
    completed = by_status.get("completed", 0)
    countable = total - cancelled
    progress = round(completed * 100 / countable) if countable else 0

    overdue = sum(
        1 for t in Task.query_active().filter(
            Task.project_id == project.id, Task.status.in_(TASK_OPEN_STATUSES),
            Task.due_date.isnot(None),
        ).all() if t.is_overdue
    )

    if persist and project.progress != progress:
        project.progress = progress
        db.session.commit()
    return {
        "project_id": project.id,
        "total": total,
        "completed": completed,
        "cancelled": cancelled,
        "overdue": overdue,
        "by_status": by_status,
        "progress": progress,
    }


# ═══════════════════════════════════════════════════════════════
# Phases
# ═══════════════════════════════════════════════════════════════

def add_phase(project_id: str, *, tenant_id: str, name: str, sequence: int | None = None,
              start_date=None, end_date=None, commit: bool = True) -> ProjectPhase:
    """Append (or insert at *sequence*) a phase.  Sequences are unique per project."""
    project = get_project(project_id, tenant_id=tenant_id)
    require_editable(project)
    name = (name or "").strip()
    if not name:
        raise ValidationError("name is required", details={"name": "required"})

    if sequence is None:
        current = db.session.query(func.max(ProjectPhase.sequence)).filter(
            ProjectPhase.project_id == project.id
        ).scalar()
        sequence = (current or 0) + 1
    elif ProjectPhase.query.filter_by(project_id=project.id, sequence=sequence).first():
        raise ConflictError("ProjectPhase", "sequence", str(sequence))

    start, end = parse_date(start_date), parse_date(end_date)
    _check_dates(start, end)
    phase = ProjectPhase(tenant_id=tenant_id, project_id=project.id, name=name,
                         sequence=sequence, start_date=start, end_date=end)
    db.session.add(phase)
    db.session.flush()
    if commit:
        db.session.commit()
    return phase


def list_phases(project_id: str, *, tenant_id: str) -> list[ProjectPhase]:
    project = get_project(project_id, tenant_id=tenant_id)
    return project.phases.all()


# ═══════════════════════════════════════════════════════════════
# Components (tree)
# ═══════════════════════════════════════════════════════════════

def create_component(project_id: str, *, tenant_id: str, name: str, parent_id: str | None = None,
                     code: str | None = None, description: str = "") -> Component:
    project = get_project(project_id, tenant_id=tenant_id)
    require_editable(project)
    name = (name or "").strip()
    if not name:
        raise ValidationError("name is required", details={"name": "required"})
    if parent_id is not None:
        get_scoped(Component, parent_id, tenant_id=tenant_id, project_id=project.id)

    component = Component(tenant_id=tenant_id, project_id=project.id, parent_id=parent_id,
                          name=name, code=code, description=description or "")
    db.session.add(component)
    db.session.flush()
    write_audit(entity_type="component", entity_id=component.id, action="create",
                tenant_id=tenant_id, project_id=project.id, diff={"name": name, "parent_id": parent_id})
    db.session.commit()
    return component


def move_component(component_id: str, *, tenant_id: str, new_parent_id: str | None) -> Component:
    """Re-parent a component.  Moves that would create a cycle are rejected."""
    component = get_scoped(Component, component_id, tenant_id=tenant_id)
    if new_parent_id is not None:
        parent = get_scoped_or_none(Component, new_parent_id, tenant_id=tenant_id,
                                    project_id=component.project_id)
        if parent is None:
            raise ValidationError("Parent component must belong to the same project",
                                  details={"parent_id": new_parent_id})
    if not validate_no_component_cycle(db.session, component.id, new_parent_id):
        raise ValidationError("Moving the component there would create a cycle",
                              details={"parent_id": new_parent_id})
    old_parent = component.parent_id
    component.parent_id = new_parent_id
    write_audit(entity_type="component", entity_id=component.id, action="update",
                tenant_id=tenant_id, project_id=component.project_id,
                diff={"parent_id": {"old": old_parent, "new": new_parent_id}})
    db.session.commit()
    return component


def component_tree(project_id: str, *, tenant_id: str) -> list[dict]:
    """Nested dicts of the live component tree, roots first."""
    project = get_project(project_id, tenant_id=tenant_id)
    roots = Component.query_active().filter(
        Component.project_id == project.id, Component.parent_id.is_(None)
    ).order_by(Component.id).all()
    return [c.to_dict(include_children=True) for c in roots]
