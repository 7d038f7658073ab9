"""
Project Workspace Platform
Project domain models.

Models:
    - Project: tenant-scoped delivery unit with status workflow and budget
    - ProjectPhase: ordered phases of a project
    - Component: project component tree (self-referential parent_id)
"""

from datetime import datetime, timezone

from sqlalchemy import select

from app.models import db
from app.models.base import TenantModel, ulid_fk
from app.models.soft_delete import SoftDeleteMixin
from app.utils.helpers import iso, money

# ── Constants ────────────────────────────────────────────────────────────────

PROJECT_STATUSES = {"draft", "active", "on_hold", "completed", "archived", "cancelled"}
PROJECT_PRIORITIES = {"low", "medium", "high", "critical"}
PHASE_STATUSES = {"not_started", "in_progress", "completed"}

PROJECT_TRANSITIONS = {
    "draft": ["active", "cancelled"],
    "active": ["on_hold", "completed", "cancelled"],
    "on_hold": ["active", "cancelled"],
    "completed": ["archived", "active"],
    "cancelled": ["archived"],
    "archived": [],
}

# Statuses in which the project graph (tasks, documents, CRs) may change
PROJECT_EDITABLE_STATUSES = {"draft", "active", "on_hold"}


def validate_project_transition(old_status, new_status):
    """Return True if project status change is allowed."""
    return new_status in PROJECT_TRANSITIONS.get(old_status, [])


def validate_no_component_cycle(session, component_id, new_parent_id):
    """
    Check that re-parenting component_id under new_parent_id keeps the tree acyclic.

    Walks up from new_parent_id through the parent chain.  Returns True if
    safe, False if component_id is found on the way (or is its own parent).
    """
    if new_parent_id is None:
        return True
    if component_id == new_parent_id:
        return False

    visited = set()
    current = new_parent_id
    while current is not None:
        if current == component_id:
            return False
        if current in visited:
            # pre-existing loop in stored data; refuse to extend it
            return False
        visited.add(current)
        current = session.execute(
            select(Component.parent_id).where(Component.id == current)
        ).scalar_one_or_none()
    return True


# ═════════════════════════════════════════════════════════════════════════════
# 1. Project
# ═════════════════════════════════════════════════════════════════════════════


class Project(SoftDeleteMixin, TenantModel):
    """Top-level unit of work inside a tenant."""

    __tablename__ = "projects"
    __table_args__ = (
        db.UniqueConstraint("tenant_id", "code", name="uq_project_tenant_code"),
        db.Index("ix_projects_tenant_status", "tenant_id", "status"),
    )

    code = db.Column(db.String(30), nullable=False, comment="Human-readable code, e.g. PRJ-0001")
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, default="")
    status = db.Column(db.String(20), nullable=False, default="draft")
    priority = db.Column(db.String(20), nullable=False, default="medium")
    client_name = db.Column(db.String(200))
    owner_id = ulid_fk("users.id", ondelete="SET NULL", nullable=True)
    template_version_id = ulid_fk(
        "template_versions.id", ondelete=None, nullable=True,
        comment="Template version the project was created from (NO ACTION: blocks deletion)",
    )

    start_date = db.Column(db.Date)
    end_date = db.Column(db.Date)

    budget = db.Column(db.Numeric(15, 2), nullable=False, default=0)
    actual_cost = db.Column(db.Numeric(15, 2), nullable=False, default=0)
    currency = db.Column(db.String(3), nullable=False, default="USD")
    progress = db.Column(db.Integer, nullable=False, default=0, comment="0..100, rolled up from tasks")

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    phases = db.relationship(
        "ProjectPhase", back_populates="project", lazy="dynamic",
        order_by="ProjectPhase.sequence", cascade="all, delete-orphan", passive_deletes=True,
    )
    components = db.relationship(
        "Component", back_populates="project", lazy="dynamic",
        cascade="all, delete-orphan", passive_deletes=True,
    )
    tasks = db.relationship(
        "Task", back_populates="project", lazy="dynamic",
        cascade="all, delete-orphan", passive_deletes=True,
    )
    owner = db.relationship("User", foreign_keys=[owner_id])

    @property
    def is_editable(self):
        return self.deleted_at is None and self.status in PROJECT_EDITABLE_STATUSES

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "code": self.code,
            "name": self.name,
            "description": self.description,
            "status": self.status,
            "priority": self.priority,
            "client_name": self.client_name,
            "owner_id": self.owner_id,
            "template_version_id": self.template_version_id,
            "start_date": iso(self.start_date),
            "end_date": iso(self.end_date),
            "budget": money(self.budget),
            "actual_cost": money(self.actual_cost),
            "currency": self.currency,
            "progress": self.progress,
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
            "deleted_at": iso(self.deleted_at),
        }

    def __repr__(self):
        return f"<Project {self.code}: {self.name}>"


# ═════════════════════════════════════════════════════════════════════════════
# 2. ProjectPhase
# ═════════════════════════════════════════════════════════════════════════════


class ProjectPhase(TenantModel):
    __tablename__ = "project_phases"
    __table_args__ = (
        db.UniqueConstraint("project_id", "sequence", name="uq_phase_project_sequence"),
    )

    project_id = ulid_fk("projects.id", ondelete="CASCADE")
    name = db.Column(db.String(150), nullable=False)
    sequence = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(20), nullable=False, default="not_started")
    start_date = db.Column(db.Date)
    end_date = db.Column(db.Date)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    project = db.relationship("Project", back_populates="phases")

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "name": self.name,
            "sequence": self.sequence,
            "status": self.status,
            "start_date": iso(self.start_date),
            "end_date": iso(self.end_date),
        }


# ═════════════════════════════════════════════════════════════════════════════
# 3. Component (self-referential tree)
# ═════════════════════════════════════════════════════════════════════════════


class Component(SoftDeleteMixin, TenantModel):
    """Deliverable / work-breakdown node.  Cycles are rejected in the service."""

    __tablename__ = "components"

    project_id = ulid_fk("projects.id", ondelete="CASCADE")
    parent_id = ulid_fk("components.id", ondelete="CASCADE", nullable=True)
    name = db.Column(db.String(200), nullable=False)
    code = db.Column(db.String(50))
    description = db.Column(db.Text, default="")
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    project = db.relationship("Project", back_populates="components")
    parent = db.relationship("Component", remote_side="Component.id", back_populates="children")
    children = db.relationship("Component", back_populates="parent", lazy="dynamic", passive_deletes=True)

    def to_dict(self, include_children=False):
        d = {
            "id": self.id,
            "project_id": self.project_id,
            "parent_id": self.parent_id,
            "name": self.name,
            "code": self.code,
            "description": self.description,
            "deleted_at": iso(self.deleted_at),
        }
        if include_children:
            d["children"] = [
                c.to_dict(include_children=True)
                for c in self.children.filter(Component.deleted_at.is_(None)).all()
            ]
        return d
