"""
Project Workspace Platform
Task graph models.

Models:
    - Task: unit of work inside a project (optionally in a phase / component)
    - TaskDependency: "task depends on task" edge (unique pair, no self-loop)
    - TaskAssignment: task → user XOR team
"""

from datetime import datetime, timezone

from app.models import db
from app.models.base import TenantModel, ulid_fk
from app.models.soft_delete import SoftDeleteMixin
from app.utils.helpers import iso, money

# ── Constants ────────────────────────────────────────────────────────────────

TASK_STATUSES = {"pending", "in_progress", "blocked", "completed", "cancelled"}
TASK_PRIORITIES = {"low", "medium", "high", "critical"}
DEPENDENCY_TYPES = {"finish_to_start", "start_to_start", "finish_to_finish", "start_to_finish"}
ASSIGNMENT_TYPES = {"user", "team"}

TASK_TRANSITIONS = {
    "pending": ["in_progress", "cancelled"],
    "in_progress": ["completed", "blocked", "cancelled"],
    "blocked": ["in_progress", "cancelled"],
    "completed": ["in_progress"],  # reopen
    "cancelled": [],
}

TASK_OPEN_STATUSES = {"pending", "in_progress", "blocked"}


def validate_task_transition(old_status, new_status):
    """Return True if task status change is allowed."""
    return new_status in TASK_TRANSITIONS.get(old_status, [])


def validate_no_cycle(session, task_id, new_depends_on_id):
    """
    Check that adding "task_id depends on new_depends_on_id" does not create a cycle.

    Uses iterative DFS from new_depends_on_id, walking through its own
    prerequisites.  Returns True if safe, False if a cycle (or self-loop)
    would be formed.
    """
    if task_id == new_depends_on_id:
        return False

    visited = set()
    stack = [new_depends_on_id]

    while stack:
        current = stack.pop()
        if current == task_id:
            return False
        if current in visited:
            continue
        visited.add(current)

        deps = (
            session.query(TaskDependency.depends_on_task_id)
            .filter(TaskDependency.task_id == current)
            .all()
        )
        for (prereq_id,) in deps:
            stack.append(prereq_id)

    return True


# ═════════════════════════════════════════════════════════════════════════════
# 1. Task
# ═════════════════════════════════════════════════════════════════════════════


class Task(SoftDeleteMixin, TenantModel):
    __tablename__ = "tasks"
    __table_args__ = (
        db.CheckConstraint("progress >= 0 AND progress <= 100", name="ck_task_progress_range"),
        db.Index("ix_tasks_project_status", "project_id", "status"),
    )

    project_id = ulid_fk("projects.id", ondelete="CASCADE")
    phase_id = ulid_fk("project_phases.id", ondelete="SET NULL", nullable=True)
    component_id = ulid_fk("components.id", ondelete="SET NULL", nullable=True)
    title = db.Column(db.String(300), nullable=False)
    description = db.Column(db.Text, default="")
    status = db.Column(db.String(20), nullable=False, default="pending")
    priority = db.Column(db.String(20), nullable=False, default="medium")
    sort_order = db.Column(db.Integer, nullable=False, default=0)

    start_date = db.Column(db.Date)
    due_date = db.Column(db.Date)
    completed_at = db.Column(db.DateTime(timezone=True))

    estimated_hours = db.Column(db.Numeric(10, 2))
    actual_hours = db.Column(db.Numeric(10, 2))
    progress = db.Column(db.Integer, nullable=False, default=0)

    created_by = ulid_fk("users.id", ondelete="SET NULL", nullable=True, index=False)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    project = db.relationship("Project", back_populates="tasks")
    phase = db.relationship("ProjectPhase")
    dependencies = db.relationship(
        "TaskDependency", foreign_keys="TaskDependency.task_id",
        back_populates="task", lazy="dynamic",
        cascade="all, delete-orphan", passive_deletes=True,
    )
    dependents = db.relationship(
        "TaskDependency", foreign_keys="TaskDependency.depends_on_task_id",
        back_populates="depends_on", lazy="dynamic",
        cascade="all, delete-orphan", passive_deletes=True,
    )
    assignments = db.relationship(
        "TaskAssignment", back_populates="task", lazy="dynamic",
        cascade="all, delete-orphan", passive_deletes=True,
    )

    @property
    def is_overdue(self):
        from datetime import date
        return bool(self.due_date and self.due_date < date.today() and self.status in TASK_OPEN_STATUSES)

    def to_dict(self, include_dependencies=False):
        d = {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "project_id": self.project_id,
            "phase_id": self.phase_id,
            "component_id": self.component_id,
            "title": self.title,
            "description": self.description,
            "status": self.status,
            "priority": self.priority,
            "sort_order": self.sort_order,
            "start_date": iso(self.start_date),
            "due_date": iso(self.due_date),
            "completed_at": iso(self.completed_at),
            "estimated_hours": money(self.estimated_hours),
            "actual_hours": money(self.actual_hours),
            "progress": self.progress,
            "is_overdue": self.is_overdue,
            "created_by": self.created_by,
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
            "deleted_at": iso(self.deleted_at),
        }
        if include_dependencies:
            d["depends_on"] = [dep.depends_on_task_id for dep in self.dependencies.all()]
        return d

    def __repr__(self):
        return f"<Task {self.id}: {self.title[:40]}>"


# ═════════════════════════════════════════════════════════════════════════════
# 2. TaskDependency
# ═════════════════════════════════════════════════════════════════════════════


class TaskDependency(TenantModel):
    """``task_id`` cannot start (or finish) until ``depends_on_task_id`` does."""

    __tablename__ = "task_dependencies"
    __table_args__ = (
        db.UniqueConstraint("task_id", "depends_on_task_id", name="uq_task_dependency"),
        db.CheckConstraint("task_id <> depends_on_task_id", name="ck_task_dependency_not_self"),
    )

    task_id = ulid_fk("tasks.id", ondelete="CASCADE")
    depends_on_task_id = ulid_fk("tasks.id", ondelete="CASCADE")
    dependency_type = db.Column(db.String(20), nullable=False, default="finish_to_start")
    lag_days = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    task = db.relationship("Task", foreign_keys=[task_id], back_populates="dependencies")
    depends_on = db.relationship("Task", foreign_keys=[depends_on_task_id], back_populates="dependents")

    def to_dict(self):
        return {
            "id": self.id,
            "task_id": self.task_id,
            "depends_on_task_id": self.depends_on_task_id,
            "dependency_type": self.dependency_type,
            "lag_days": self.lag_days,
            "created_at": iso(self.created_at),
        }


# ═════════════════════════════════════════════════════════════════════════════
# 3. TaskAssignment
# ═════════════════════════════════════════════════════════════════════════════


class TaskAssignment(TenantModel):
    """Assignment of a task to exactly one user or exactly one team."""

    __tablename__ = "task_assignments"
    __table_args__ = (
        db.CheckConstraint(
            "(user_id IS NOT NULL AND team_id IS NULL) OR (user_id IS NULL AND team_id IS NOT NULL)",
            name="ck_task_assignment_user_xor_team",
        ),
        db.UniqueConstraint("task_id", "user_id", name="uq_task_assignment_user"),
        db.UniqueConstraint("task_id", "team_id", name="uq_task_assignment_team"),
    )

    task_id = ulid_fk("tasks.id", ondelete="CASCADE")
    assignment_type = db.Column(db.String(10), nullable=False)
    user_id = ulid_fk("users.id", ondelete="CASCADE", nullable=True)
    team_id = ulid_fk("teams.id", ondelete="CASCADE", nullable=True)
    role = db.Column(db.String(50), default="assignee")
    allocation_percent = db.Column(db.Integer, nullable=False, default=100)
    assigned_by = ulid_fk("users.id", ondelete="SET NULL", nullable=True, index=False)
    assigned_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    task = db.relationship("Task", back_populates="assignments")
    user = db.relationship("User", foreign_keys=[user_id])
    team = db.relationship("Team")

    def to_dict(self):
        return {
            "id": self.id,
            "task_id": self.task_id,
            "assignment_type": self.assignment_type,
            "user_id": self.user_id,
            "team_id": self.team_id,
            "role": self.role,
            "allocation_percent": self.allocation_percent,
            "assigned_by": self.assigned_by,
            "assigned_at": iso(self.assigned_at),
        }
