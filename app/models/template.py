"""
Project Workspace Platform
Project template models.

Models:
    - Template: mutable metadata (name, category, active flag, latest_version)
    - TemplateVersion: immutable content snapshot, unique (template_id, version)

Content layout (``TemplateVersion.content``)::

    {
        "phases": [{"key": "design", "name": "Design"}, ...],
        "tasks": [
            {"key": "survey", "title": "Site survey", "phase": "design",
             "estimated_hours": 4, "depends_on": []},
            {"key": "plan", "title": "Draft plan", "depends_on": ["survey"]},
        ],
    }
"""

from datetime import datetime, timezone

from sqlalchemy import event as _sa_event

from app.models import db
from app.models.base import TenantModel, ulid_fk
from app.models.document import ImmutableRowError
from app.models.soft_delete import SoftDeleteMixin
from app.utils.helpers import iso

TEMPLATE_CATEGORIES = {"general", "construction", "renovation", "software", "event", "maintenance"}


class Template(SoftDeleteMixin, TenantModel):
    __tablename__ = "templates"
    __table_args__ = (
        db.UniqueConstraint("tenant_id", "name", name="uq_template_tenant_name"),
    )

    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, default="")
    category = db.Column(db.String(30), nullable=False, default="general")
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    latest_version = db.Column(db.Integer, nullable=False, default=0)
    created_by = ulid_fk("users.id", ondelete="SET NULL", nullable=True, index=False)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    versions = db.relationship(
        "TemplateVersion", back_populates="template", lazy="dynamic",
        order_by="TemplateVersion.version", passive_deletes="all",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "is_active": self.is_active,
            "latest_version": self.latest_version,
            "created_by": self.created_by,
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
            "deleted_at": iso(self.deleted_at),
        }


class TemplateVersion(TenantModel):
    __tablename__ = "template_versions"
    __table_args__ = (
        db.UniqueConstraint("template_id", "version", name="uq_template_version"),
        db.CheckConstraint("version >= 1", name="ck_template_version_positive"),
    )

    template_id = ulid_fk("templates.id", ondelete="CASCADE")
    version = db.Column(db.Integer, nullable=False)
    content = db.Column(db.JSON, nullable=False, default=dict)
    change_note = db.Column(db.Text, default="")
    created_by = ulid_fk("users.id", ondelete="SET NULL", nullable=True, index=False)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    template = db.relationship("Template", back_populates="versions")

    def to_dict(self):
        content = self.content or {}
        return {
            "id": self.id,
            "template_id": self.template_id,
            "version": self.version,
            "content": content,
            "phase_count": len(content.get("phases", [])),
            "task_count": len(content.get("tasks", [])),
            "change_note": self.change_note,
            "created_by": self.created_by,
            "created_at": iso(self.created_at),
        }


@_sa_event.listens_for(TemplateVersion, "before_update")
def _block_template_version_update(mapper, connection, target):
    raise ImmutableRowError(
        f"TemplateVersion {target.id} is immutable; publish a new version instead"
    )


@_sa_event.listens_for(TemplateVersion, "before_delete")
def _block_template_version_delete(mapper, connection, target):
    raise ImmutableRowError(f"TemplateVersion {target.id} cannot be deleted")
