"""
Project Workspace Platform
Dashboard & metrics snapshot models.

Models:
    - Dashboard: per-user dashboard layout and saved filters
    - ProjectSnapshot: one metrics snapshot per project per day
"""

from datetime import datetime, timezone

from app.models import db
from app.models.base import TenantModel, ulid_fk
from app.utils.helpers import iso, money


class Dashboard(TenantModel):
    __tablename__ = "dashboards"
    __table_args__ = (
        db.UniqueConstraint("user_id", "name", name="uq_dashboard_user_name"),
    )

    user_id = ulid_fk("users.id", ondelete="CASCADE")
    name = db.Column(db.String(150), nullable=False)
    layout = db.Column(db.JSON, nullable=False, default=list, comment="Widget grid")
    filters = db.Column(db.JSON, nullable=False, default=dict)
    is_default = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "name": self.name,
            "layout": self.layout or [],
            "filters": self.filters or {},
            "is_default": self.is_default,
            "updated_at": iso(self.updated_at),
        }


class ProjectSnapshot(TenantModel):
    __tablename__ = "project_snapshots"
    __table_args__ = (
        db.UniqueConstraint("project_id", "snapshot_date", name="uq_project_snapshot_day"),
    )

    project_id = ulid_fk("projects.id", ondelete="CASCADE")
    snapshot_date = db.Column(db.Date, nullable=False)
    status = db.Column(db.String(20))
    progress = db.Column(db.Integer, nullable=False, default=0)
    tasks_total = db.Column(db.Integer, nullable=False, default=0)
    tasks_completed = db.Column(db.Integer, nullable=False, default=0)
    tasks_overdue = db.Column(db.Integer, nullable=False, default=0)
    open_change_requests = db.Column(db.Integer, nullable=False, default=0)
    approved_cost_impact = db.Column(db.Numeric(15, 2), nullable=False, default=0)
    budget = db.Column(db.Numeric(15, 2), nullable=False, default=0)
    actual_cost = db.Column(db.Numeric(15, 2), nullable=False, default=0)
    metrics = db.Column(db.JSON, nullable=False, default=dict, comment="Extra metrics")
    captured_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "snapshot_date": iso(self.snapshot_date),
            "status": self.status,
            "progress": self.progress,
            "tasks_total": self.tasks_total,
            "tasks_completed": self.tasks_completed,
            "tasks_overdue": self.tasks_overdue,
            "open_change_requests": self.open_change_requests,
            "approved_cost_impact": money(self.approved_cost_impact),
            "budget": money(self.budget),
            "actual_cost": money(self.actual_cost),
            "metrics": self.metrics or {},
            "captured_at": iso(self.captured_at),
        }
