"""
Project Workspace Platform
Quality-control inspection model.

Models:
    - QCInspection: checklist-based inspection of a project (or one task)
"""

from datetime import datetime, timezone

from app.models import db
from app.models.base import TenantModel, ulid_fk
from app.models.soft_delete import SoftDeleteMixin
from app.utils.helpers import iso

INSPECTION_STATUSES = {"scheduled", "in_progress", "passed", "failed", "cancelled"}

INSPECTION_TRANSITIONS = {
    "scheduled": ["in_progress", "cancelled"],
    "in_progress": ["passed", "failed"],
    "failed": ["scheduled"],  # re-inspection
    "passed": [],
    "cancelled": [],
}


def validate_inspection_transition(old_status, new_status):
    return new_status in INSPECTION_TRANSITIONS.get(old_status, [])


class QCInspection(SoftDeleteMixin, TenantModel):
    __tablename__ = "qc_inspections"
    __table_args__ = (
        db.Index("ix_qc_inspections_project_status", "project_id", "status"),
    )

    project_id = ulid_fk("projects.id", ondelete="CASCADE")
    task_id = ulid_fk("tasks.id", ondelete="SET NULL", nullable=True)
    inspector_id = ulid_fk("users.id", ondelete="SET NULL", nullable=True)
    title = db.Column(db.String(300), nullable=False)
    status = db.Column(db.String(20), nullable=False, default="scheduled")
    scheduled_date = db.Column(db.Date, nullable=False)
    started_at = db.Column(db.DateTime(timezone=True))
    completed_at = db.Column(db.DateTime(timezone=True))
    # [{"item": "Insulation installed", "passed": true, "note": ""}, ...]
    checklist = db.Column(db.JSON, nullable=False, default=list)
    findings = db.Column(db.Text, default="")
    attempt = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    @property
    def failed_items(self):
        return [i for i in (self.checklist or []) if i.get("passed") is False]

    def to_dict(self):
        checklist = self.checklist or []
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "project_id": self.project_id,
            "task_id": self.task_id,
            "inspector_id": self.inspector_id,
            "title": self.title,
            "status": self.status,
            "scheduled_date": iso(self.scheduled_date),
            "started_at": iso(self.started_at),
            "completed_at": iso(self.completed_at),
            "checklist": checklist,
            "passed_count": sum(1 for i in checklist if i.get("passed") is True),
            "failed_count": len(self.failed_items),
            "findings": self.findings,
            "attempt": self.attempt,
            "created_at": iso(self.created_at),
        }
