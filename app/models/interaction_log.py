"""
Project Workspace Platform
Interaction log model.

Models:
    - InteractionLog: calls, e-mails, meetings and notes recorded against a
      project.  Internal by default; an entry becomes visible to the client
      only after explicit approval.
"""

from datetime import datetime, timezone

from app.models import db
from app.models.base import TenantModel, ulid_fk
from app.models.soft_delete import SoftDeleteMixin
from app.utils.helpers import iso

INTERACTION_TYPES = {"call", "email", "meeting", "note", "site_visit"}
VISIBILITIES = {"internal", "client"}


class InteractionLog(SoftDeleteMixin, TenantModel):
    __tablename__ = "interaction_logs"
    __table_args__ = (
        db.Index("ix_interaction_logs_project_type", "project_id", "interaction_type"),
    )

    project_id = ulid_fk("projects.id", ondelete="CASCADE")
    author_id = ulid_fk("users.id", ondelete="SET NULL", nullable=True)
    interaction_type = db.Column(db.String(20), nullable=False, default="note")
    description = db.Column(db.Text, nullable=False)
    tag_path = db.Column(db.String(300), default="", comment="Slash-separated tag path, e.g. site/electrical")
    visibility = db.Column(db.String(10), nullable=False, default="internal")
    occurred_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    client_approved = db.Column(db.Boolean, nullable=False, default=False)
    client_approved_by = ulid_fk("users.id", ondelete="SET NULL", nullable=True, index=False)
    client_approved_at = db.Column(db.DateTime(timezone=True))

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    @property
    def visible_to_client(self):
        return self.visibility == "client" and self.client_approved and self.deleted_at is None

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "author_id": self.author_id,
            "interaction_type": self.interaction_type,
            "description": self.description,
            "tag_path": self.tag_path,
            "visibility": self.visibility,
            "occurred_at": iso(self.occurred_at),
            "client_approved": self.client_approved,
            "client_approved_by": self.client_approved_by,
            "client_approved_at": iso(self.client_approved_at),
            "created_at": iso(self.created_at),
        }
