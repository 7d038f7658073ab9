"""
Project Workspace Platform
Event log model.

Models:
    - EventLog: append-only record of every domain event the outbox
      dispatcher delivered.  Immutable once written.
"""

from datetime import datetime, timezone

from sqlalchemy import event as _sa_event

from app.models import db
from app.models.base import TenantModel, ulid_fk
from app.models.document import ImmutableRowError
from app.utils.helpers import iso


class EventLog(TenantModel):
    __tablename__ = "event_logs"
    __table_args__ = (
        db.Index("ix_event_logs_aggregate", "aggregate_type", "aggregate_id"),
        db.Index("ix_event_logs_type_time", "event_type", "occurred_at"),
    )

    event_type = db.Column(db.String(100), nullable=False)
    aggregate_type = db.Column(db.String(50), nullable=False)
    aggregate_id = db.Column(db.String(36), nullable=False)
    payload = db.Column(db.JSON, nullable=False, default=dict)
    outbox_event_id = ulid_fk("outbox_events.id", ondelete="SET NULL", nullable=True)
    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False,
                            comment="When the source write happened (outbox created_at)")
    published_at = db.Column(db.DateTime(timezone=True), nullable=False,
                             default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "event_type": self.event_type,
            "aggregate_type": self.aggregate_type,
            "aggregate_id": self.aggregate_id,
            "payload": self.payload or {},
            "outbox_event_id": self.outbox_event_id,
            "occurred_at": iso(self.occurred_at),
            "published_at": iso(self.published_at),
        }


@_sa_event.listens_for(EventLog, "before_update")
def _block_event_update(mapper, connection, target):
    raise ImmutableRowError(f"EventLog {target.id} is append-only")


@_sa_event.listens_for(EventLog, "before_delete")
def _block_event_delete(mapper, connection, target):
    raise ImmutableRowError(f"EventLog {target.id} is append-only")
