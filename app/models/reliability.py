"""
Project Workspace Platform
Reliability models — transactional outbox, idempotency keys, dead letters.

Models:
    - OutboxEvent: domain event persisted in the same transaction as the
      write that produced it; delivered later by the dispatcher.
    - IdempotencyKey: client-supplied request token → cached response.
    - DeadLetterJob: jobs / events that exhausted their retries.

Outbox lifecycle::

    pending ──claim──▶ processing ──ok──▶ completed   (processed_at set)
       ▲                   │
       └──── retry ◀───────┤
                           └──ceiling──▶ failed ──requeue──▶ pending
"""

from datetime import datetime, timezone

from app.models import db
from app.models.base import TenantModel, ulid_fk, ulid_pk
from app.utils.helpers import iso

# ── Constants ────────────────────────────────────────────────────────────────

OUTBOX_STATUSES = {"pending", "processing", "completed", "failed"}

OUTBOX_TRANSITIONS = {
    "pending": ["processing"],
    "processing": ["completed", "pending", "failed"],
    "failed": ["pending"],  # manual requeue
    "completed": [],
}

IDEMPOTENCY_STATUSES = {"processing", "completed", "failed"}

DEAD_LETTER_SOURCES = {"outbox", "job"}


def validate_outbox_transition(old_status, new_status):
    """Return True if outbox status change is allowed."""
    return new_status in OUTBOX_TRANSITIONS.get(old_status, [])


# ═════════════════════════════════════════════════════════════════════════════
# 1. OutboxEvent
# ═════════════════════════════════════════════════════════════════════════════


class OutboxEvent(TenantModel):
    __tablename__ = "outbox_events"
    __table_args__ = (
        db.Index("ix_outbox_status_available", "status", "available_at"),
        db.CheckConstraint("retry_count >= 0", name="ck_outbox_retry_count"),
        db.CheckConstraint(
            "(status = 'completed' AND processed_at IS NOT NULL) "
            "OR (status <> 'completed' AND processed_at IS NULL)",
            name="ck_outbox_processed_at_only_when_completed",
        ),
    )

    event_type = db.Column(db.String(100), nullable=False, index=True,
                           comment="e.g. change_request.approved")
    aggregate_type = db.Column(db.String(50), nullable=False)
    aggregate_id = db.Column(db.String(36), nullable=False)
    payload = db.Column(db.JSON, nullable=False, default=dict)

    status = db.Column(db.String(20), nullable=False, default="pending")
    retry_count = db.Column(db.Integer, nullable=False, default=0)
    error_message = db.Column(db.Text)

    available_at = db.Column(db.DateTime(timezone=True), nullable=False,
                             default=lambda: datetime.now(timezone.utc),
                             comment="Earliest time the dispatcher may pick the row up")
    locked_at = db.Column(db.DateTime(timezone=True))
    locked_by = db.Column(db.String(100))
    processed_at = db.Column(db.DateTime(timezone=True))

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "event_type": self.event_type,
            "aggregate_type": self.aggregate_type,
            "aggregate_id": self.aggregate_id,
            "payload": self.payload or {},
            "status": self.status,
            "retry_count": self.retry_count,
            "error_message": self.error_message,
            "available_at": iso(self.available_at),
            "locked_at": iso(self.locked_at),
            "locked_by": self.locked_by,
            "processed_at": iso(self.processed_at),
            "created_at": iso(self.created_at),
        }

    def __repr__(self):
        return f"<OutboxEvent {self.id} {self.event_type} [{self.status}]>"


# ═════════════════════════════════════════════════════════════════════════════
# 2. IdempotencyKey
# ═════════════════════════════════════════════════════════════════════════════


class IdempotencyKey(db.Model):
    __tablename__ = "idempotency_keys"

    id = ulid_pk()
    key = db.Column(db.String(255), unique=True, nullable=False)
    tenant_id = ulid_fk("tenants.id", ondelete="CASCADE", nullable=True)
    scope = db.Column(db.String(200), nullable=False, comment="METHOD path of the original request")
    request_hash = db.Column(db.String(64), nullable=False, comment="SHA-256 of the request body")
    status = db.Column(db.String(20), nullable=False, default="processing")

    response_status = db.Column(db.Integer)
    response_body = db.Column(db.JSON)
    error_message = db.Column(db.Text)

    locked_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    expires_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)
    completed_at = db.Column(db.DateTime(timezone=True))
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "key": self.key,
            "tenant_id": self.tenant_id,
            "scope": self.scope,
            "status": self.status,
            "response_status": self.response_status,
            "error_message": self.error_message,
            "expires_at": iso(self.expires_at),
            "completed_at": iso(self.completed_at),
            "created_at": iso(self.created_at),
        }


# ═════════════════════════════════════════════════════════════════════════════
# 3. DeadLetterJob
# ═════════════════════════════════════════════════════════════════════════════


class DeadLetterJob(db.Model):
    __tablename__ = "dead_letter_jobs"
    __table_args__ = (
        db.Index("ix_dead_letter_unresolved", "resolved_at", "failed_at"),
    )

    id = ulid_pk()
    tenant_id = ulid_fk("tenants.id", ondelete="CASCADE", nullable=True)
    source = db.Column(db.String(20), nullable=False, comment="outbox | job")
    job_name = db.Column(db.String(100), nullable=False,
                         comment="Event type for outbox rows, job name for scheduled jobs")
    reference_id = db.Column(db.String(36), comment="OutboxEvent id when source=outbox")
    payload = db.Column(db.JSON, default=dict)
    error_message = db.Column(db.Text)
    attempts = db.Column(db.Integer, nullable=False, default=1)
    failed_at = db.Column(db.DateTime(timezone=True), nullable=False,
                          default=lambda: datetime.now(timezone.utc))
    resolved_at = db.Column(db.DateTime(timezone=True))
    resolved_by = ulid_fk("users.id", ondelete="SET NULL", nullable=True, index=False)
    resolution_note = db.Column(db.Text)

    @property
    def is_resolved(self):
        return self.resolved_at is not None

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "source": self.source,
            "job_name": self.job_name,
            "reference_id": self.reference_id,
            "payload": self.payload or {},
            "error_message": self.error_message,
            "attempts": self.attempts,
            "failed_at": iso(self.failed_at),
            "resolved_at": iso(self.resolved_at),
            "resolved_by": self.resolved_by,
            "resolution_note": self.resolution_note,
        }
