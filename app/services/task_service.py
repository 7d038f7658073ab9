"""Task graph service: tasks, dependencies and assignments.

Dependency rules:
  - both tasks live in the same project (and therefore the same tenant)
  - a task never depends on itself; the pair is unique
  - no cycles: ``validate_no_cycle`` walks the prerequisite graph (DFS)

A task may only start once its ``finish_to_start`` prerequisites are
completed or cancelled.

Assignment rules: exactly one of user / team, both from the task's
tenant; the same user or team is never assigned twice.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy.exc import IntegrityError

from app.core.exceptions import ConflictError, InvalidTransitionError, ValidationError
from app.models import db
from app.models.audit import write_audit
from app.models.auth import Team, User
from app.models.project import Component, Project, ProjectPhase
from app.models.task import (
    DEPENDENCY_TYPES,
    TASK_PRIORITIES,
    TASK_STATUSES,
    Task,
    TaskAssignment,
    TaskDependency,
    validate_no_cycle,
    validate_task_transition,
)
from app.services.helpers.scoped_queries import get_scoped, get_scoped_or_none
from app.services.outbox_service import enqueue_event
from app.services.project_service import project_progress, require_editable
from app.utils.helpers import parse_date, parse_decimal

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = (
    "title", "description", "priority", "phase_id", "component_id", "sort_order",
    "start_date", "due_date", "estimated_hours", "actual_hours", "progress",
)


def _hours(value, field):
    try:
        hours = parse_decimal(value, field)
    except ValueError as exc:
        raise ValidationError(str(exc), details={field: "must be a number"}) from exc
    if hours is not None and hours < 0:
        raise ValidationError(f"{field} cannot be negative", details={field: str(hours)})
    return hours


def _progress(value) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= 100:
        raise ValidationError("progress must be an integer between 0 and 100",
                              details={"progress": value})
    return value


def _check_phase_component(project: Project, phase_id, component_id) -> None:
    if phase_id is not None and get_scoped_or_none(
        ProjectPhase, phase_id, tenant_id=project.tenant_id, project_id=project.id
    ) is None:
        raise ValidationError("phase_id must reference a phase of this project",
                              details={"phase_id": phase_id})
    if component_id is not None and get_scoped_or_none(
        Component, component_id, tenant_id=project.tenant_id, project_id=project.id
    ) is None:
        raise ValidationError("component_id must reference a component of this project",
                              details={"component_id": component_id})


def _editable_task(task_id: str, tenant_id: str) -> Task:
    task = get_task(task_id, tenant_id=tenant_id)
    require_editable(task.project)
    return task


# ═══════════════════════════════════════════════════════════════
# Tasks
# ═══════════════════════════════════════════════════════════════

def create_task(project_id: str, *, tenant_id: str, data: dict,
                actor_user_id: str | None = None, commit: bool = True) -> Task:
    """Create a pending task.  ``depends_on`` may list prerequisite task ids."""
    project = get_scoped(Project, project_id, tenant_id=tenant_id)
    require_editable(project)

    title = str(data.get("title", "") or "").strip()
    if not title:
        raise ValidationError("title is required", details={"title": "required"})
    priority = data.get("priority") or "medium"
    if priority not in TASK_PRIORITIES:
        raise ValidationError(f"Invalid priority '{priority}'", details={"priority": sorted(TASK_PRIORITIES)})

    phase_id, component_id = data.get("phase_id"), data.get("component_id")
    _check_phase_component(project, phase_id, component_id)
    start, due = parse_date(data.get("start_date")), parse_date(data.get("due_date"))
    if start and due and due < start:
        raise ValidationError("due_date cannot be before start_date", details={"due_date": due.isoformat()})

    task = Task(
        tenant_id=tenant_id,
        project_id=project.id,
        phase_id=phase_id,
        component_id=component_id,
        title=title,
        description=data.get("description") or "",
        status="pending",
        priority=priority,
        sort_order=data.get("sort_order") or 0,
        start_date=start,
        due_date=due,
        estimated_hours=_hours(data.get("estimated_hours"), "estimated_hours"),
        progress=0,
        created_by=actor_user_id,
    )
    db.session.add(task)
    db.session.flush()

    for prereq_id in data.get("depends_on") or []:
        _add_dependency(task, prereq_id)

    write_audit(entity_type="task", entity_id=task.id, action="create",
                tenant_id=tenant_id, project_id=project.id, actor_user_id=actor_user_id,
                diff={"title": title})
    if commit:
        db.session.commit()
    return task


def get_task(task_id: str, *, tenant_id: str, include_deleted: bool = False) -> Task:
    return get_scoped(Task, task_id, tenant_id=tenant_id, include_deleted=include_deleted)


def list_tasks(project_id: str, *, tenant_id: str, status: str | None = None,
               assignee_user_id: str | None = None, include_deleted: bool = False):
    """Query of a project's tasks in display order."""
    project = get_scoped(Project, project_id, tenant_id=tenant_id)
    q = Task.query_visible(include_deleted).filter(Task.project_id == project.id)
    if status:
        if status not in TASK_STATUSES:
            raise ValidationError(f"Unknown status '{status}'", details={"status": sorted(TASK_STATUSES)})
        q = q.filter(Task.status == status)
    if assignee_user_id:
        q = q.join(TaskAssignment, TaskAssignment.task_id == Task.id).filter(
            TaskAssignment.user_id == assignee_user_id
        )
    return q.order_by(Task.sort_order, Task.id)


def update_task(task_id: str, *, tenant_id: str, data: dict,
                actor_user_id: str | None = None) -> Task:
    """Update editable fields.  Status changes go through :func:`transition_task`."""
    if "status" in data:
        raise ValidationError("Use the transition endpoint to change status",
                              details={"status": "use transition"})
    task = _editable_task(task_id, tenant_id)
    _check_phase_component(task.project, data.get("phase_id"), data.get("component_id"))

    diff = {}
    for field in UPDATABLE_FIELDS:
        if field not in data:
            continue
        value = data[field]
        if field == "title":
            value = str(value or "").strip()
            if not value:
                raise ValidationError("title cannot be empty", details={"title": "required"})
        elif field == "priority" and value not in TASK_PRIORITIES:
            raise ValidationError(f"Invalid priority '{value}'", details={"priority": sorted(TASK_PRIORITIES)})
        elif field in ("start_date", "due_date"):
            value = parse_date(value)
        elif field in ("estimated_hours", "actual_hours"):
            value = _hours(value, field)
        elif field == "progress":
            value = _progress(value)
        old = getattr(task, field)
        if old != value:
            diff[field] = {"old": old, "new": value}
            setattr(task, field, value)

    if task.start_date and task.due_date and task.due_date < task.start_date:
        raise ValidationError("due_date cannot be before start_date",
                              details={"due_date": task.due_date.isoformat()})
    if diff:
        write_audit(entity_type="task", entity_id=task.id, action="update",
                    tenant_id=tenant_id, project_id=task.project_id,
                    actor_user_id=actor_user_id, diff=diff)
    db.session.commit()
    return task


def _unfinished_prerequisites(task: Task) -> list[str]:
    rows = (
        db.session.query(Task.id)
        .join(TaskDependency, TaskDependency.depends_on_task_id == Task.id)
        .filter(
            TaskDependency.task_id == task.id,
            TaskDependency.dependency_type == "finish_to_start",
            Task.deleted_at.is_(None),
            Task.status.notin_(("completed", "cancelled")),
        )
        .all()
    )
    return [r[0] for r in rows]


def transition_task(task_id: str, *, tenant_id: str, new_status: str,
                    actor_user_id: str | None = None) -> Task:
    """Move a task through its workflow."""
    if new_status not in TASK_STATUSES:
        raise ValidationError(f"Unknown status '{new_status}'", details={"status": sorted(TASK_STATUSES)})
    task = _editable_task(task_id, tenant_id)
    old_status = task.status
    if not validate_task_transition(old_status, new_status):
        raise InvalidTransitionError("Task", old_status, new_status)

    if new_status == "in_progress" and old_status == "pending":
        waiting_on = _unfinished_prerequisites(task)
        if waiting_on:
            raise ValidationError("Task has unfinished prerequisites",
                                  details={"depends_on": waiting_on})

    task.status = new_status
    if new_status == "completed":
        task.completed_at = datetime.now(timezone.utc)
        task.progress = 100
    elif old_status == "completed":
        task.completed_at = None

    write_audit(entity_type="task", entity_id=task.id, action="task.transition",
                tenant_id=tenant_id, project_id=task.project_id, actor_user_id=actor_user_id,
                diff={"status": {"old": old_status, "new": new_status}})
    enqueue_event(tenant_id=tenant_id, event_type="task.status_changed",
                  aggregate_type="task", aggregate_id=task.id,
                  payload={"project_id": task.project_id, "title": task.title,
                           "old": old_status, "new": new_status})
    db.session.commit()
    project_progress(task.project_id, tenant_id=tenant_id)
    return task


def soft_delete_task(task_id: str, *, tenant_id: str, actor_user_id: str | None = None) -> Task:
    task = _editable_task(task_id, tenant_id)
    task.soft_delete()
    write_audit(entity_type="task", entity_id=task.id, action="delete",
                tenant_id=tenant_id, project_id=task.project_id, actor_user_id=actor_user_id)
    db.session.commit()
    return task


# ═══════════════════════════════════════════════════════════════
# Dependencies
# ═══════════════════════════════════════════════════════════════

def _add_dependency(task: Task, depends_on_task_id: str, dependency_type: str = "finish_to_start",
                    lag_days: int = 0) -> TaskDependency:
    if dependency_type not in DEPENDENCY_TYPES:
        raise ValidationError(f"Invalid dependency_type '{dependency_type}'",
                              details={"dependency_type": sorted(DEPENDENCY_TYPES)})
    if task.id == depends_on_task_id:
        raise ValidationError("A task cannot depend on itself", details={"depends_on_task_id": task.id})
    prereq = get_scoped_or_none(Task, depends_on_task_id, tenant_id=task.tenant_id,
                                project_id=task.project_id)
    if prereq is None:
        raise ValidationError("Dependency must reference a task of the same project",
                              details={"depends_on_task_id": depends_on_task_id})
    if TaskDependency.query.filter_by(task_id=task.id, depends_on_task_id=prereq.id).first():
        raise ConflictError("TaskDependency", "depends_on_task_id", prereq.id)
    if not validate_no_cycle(db.session, task.id, prereq.id):
        raise ValidationError("Dependency would create a cycle",
                              details={"depends_on_task_id": prereq.id})

    dep = TaskDependency(tenant_id=task.tenant_id, task_id=task.id, depends_on_task_id=prereq.id,
                         dependency_type=dependency_type, lag_days=lag_days or 0)
    db.session.add(dep)
    db.session.flush()
    return dep


def add_dependency(task_id: str, *, tenant_id: str, depends_on_task_id: str,
                   dependency_type: str = "finish_to_start", lag_days: int = 0,
                   actor_user_id: str | None = None) -> TaskDependency:
    """Record that *task_id* depends on *depends_on_task_id*."""
    task = _editable_task(task_id, tenant_id)
    try:
        dep = _add_dependency(task, depends_on_task_id, dependency_type, lag_days)
    except IntegrityError as exc:
        db.session.rollback()
        raise ConflictError("TaskDependency", "depends_on_task_id", depends_on_task_id) from exc
    write_audit(entity_type="task_dependency", entity_id=dep.id, action="task.dependency_added",
                tenant_id=tenant_id, project_id=task.project_id, actor_user_id=actor_user_id,
                diff={"task_id": task.id, "depends_on_task_id": depends_on_task_id})
    db.session.commit()
    return dep


def remove_dependency(task_id: str, *, tenant_id: str, depends_on_task_id: str,
                      actor_user_id: str | None = None) -> None:
    task = _editable_task(task_id, tenant_id)
    dep = TaskDependency.query.filter_by(
        task_id=task.id, depends_on_task_id=depends_on_task_id, tenant_id=tenant_id
    ).first()
    if dep is None:
        raise ValidationError("Dependency does not exist",
                              details={"depends_on_task_id": depends_on_task_id})
    write_audit(entity_type="task_dependency", entity_id=dep.id, action="task.dependency_removed",
                tenant_id=tenant_id, project_id=task.project_id, actor_user_id=actor_user_id,
                diff={"task_id": task.id, "depends_on_task_id": depends_on_task_id})
    db.session.delete(dep)
    db.session.commit()


def list_dependencies(task_id: str, *, tenant_id: str) -> dict:
    task = get_task(task_id, tenant_id=tenant_id)
    return {
        "depends_on": [d.to_dict() for d in task.dependencies.all()],
        "dependents": [d.to_dict() for d in task.dependents.all()],
    }


# ═══════════════════════════════════════════════════════════════
# Assignments
# ═══════════════════════════════════════════════════════════════

def assign_task(task_id: str, *, tenant_id: str, user_id: str | None = None,
                team_id: str | None = None, role: str = "assignee",
                allocation_percent: int = 100, actor_user_id: str | None = None) -> TaskAssignment:
    """Assign a task to exactly one user or one team."""
    if (user_id is None) == (team_id is None):
        raise ValidationError("Provide exactly one of user_id or team_id",
                              details={"user_id": user_id, "team_id": team_id})
    if isinstance(allocation_percent, bool) or not isinstance(allocation_percent, int) \
            or not 1 <= allocation_percent <= 100:
        raise ValidationError("allocation_percent must be between 1 and 100",
                              details={"allocation_percent": allocation_percent})
    task = _editable_task(task_id, tenant_id)

    if user_id is not None:
        user = db.session.get(User, user_id)
        if user is None or user.tenant_id != tenant_id or user.deleted_at is not None:
            raise ValidationError("user_id must reference a user of this tenant", details={"user_id": user_id})
        duplicate = TaskAssignment.query.filter_by(task_id=task.id, user_id=user_id).first()
    else:
        if get_scoped_or_none(Team, team_id, tenant_id=tenant_id) is None:
            raise ValidationError("team_id must reference a team of this tenant", details={"team_id": team_id})
        duplicate = TaskAssignment.query.filter_by(task_id=task.id, team_id=team_id).first()
    if duplicate:
        raise ConflictError("TaskAssignment", "user_id" if user_id else "team_id", user_id or team_id)

    assignment = TaskAssignment(
        tenant_id=tenant_id,
        task_id=task.id,
        assignment_type="user" if user_id else "team",
        user_id=user_id,
        team_id=team_id,
        role=role,
        allocation_percent=allocation_percent,
        assigned_by=actor_user_id,
    )
    db.session.add(assignment)
    db.session.flush()
    write_audit(entity_type="task_assignment", entity_id=assignment.id, action="task.assigned",
                tenant_id=tenant_id, project_id=task.project_id, actor_user_id=actor_user_id,
                diff={"task_id": task.id, "user_id": user_id, "team_id": team_id})
    enqueue_event(tenant_id=tenant_id, event_type="task.assigned",
                  aggregate_type="task", aggregate_id=task.id,
                  payload={"project_id": task.project_id, "title": task.title,
                           "user_id": user_id, "team_id": team_id})
    db.session.commit()
    return assignment


def unassign_task(assignment_id: str, *, tenant_id: str, actor_user_id: str | None = None) -> None:
    assignment = get_scoped(TaskAssignment, assignment_id, tenant_id=tenant_id)
    task = _editable_task(assignment.task_id, tenant_id)
    write_audit(entity_type="task_assignment", entity_id=assignment.id, action="task.unassigned",
                tenant_id=tenant_id, project_id=task.project_id, actor_user_id=actor_user_id,
                diff={"task_id": task.id, "user_id": assignment.user_id, "team_id": assignment.team_id})
    db.session.delete(assignment)
    db.session.commit()


def list_assignments(task_id: str, *, tenant_id: str) -> list[TaskAssignment]:
    task = get_task(task_id, tenant_id=tenant_id)
    return task.assignments.order_by(TaskAssignment.assigned_at, TaskAssignment.id).all()
