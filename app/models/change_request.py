"""
Project Workspace Platform
Change request models.

Models:
    - ChangeRequest: scope/cost/schedule change against a project
    - ChangeRequestApproval: one row per approval level (decided in order)
    - ChangeRequestComment: threaded discussion (self-referential parent_id)
"""

from datetime import datetime, timezone
from decimal import Decimal

from app.models import db
from app.models.base import TenantModel, ulid_fk
from app.models.soft_delete import SoftDeleteMixin
from app.utils.helpers import iso, money

# ── Constants ────────────────────────────────────────────────────────────────

CR_STATUSES = {"draft", "awaiting_approval", "approved", "rejected", "implemented", "cancelled"}
CR_PRIORITIES = {"low", "medium", "high", "critical"}
APPROVAL_STATUSES = {"pending", "approved", "rejected", "skipped"}

CR_TRANSITIONS = {
    "draft": ["awaiting_approval", "cancelled"],
    "awaiting_approval": ["approved", "rejected", "cancelled"],
    "approved": ["implemented"],
    "rejected": ["draft"],  # rework and resubmit
    "implemented": [],
    "cancelled": [],
}

# Approval chain, lowest level first
APPROVAL_CHAIN = ("project_manager", "client_representative", "client_director")

# Budget-impact thresholds (percent of project budget) → number of levels
APPROVAL_THRESHOLDS = (
    (Decimal("5"), 1),    # < 5%  → project manager
    (Decimal("10"), 2),   # < 10% → + client representative
)


def validate_cr_transition(old_status, new_status):
    """Return True if change request status change is allowed."""
    return new_status in CR_TRANSITIONS.get(old_status, [])


def required_approval_roles(cost_impact, budget):
    """
    Return the approver roles required for a change with *cost_impact*
    against a project *budget*.

    A zero/empty budget with a non-zero impact needs the full chain.
    """
    impact = abs(Decimal(cost_impact or 0))
    budget = Decimal(budget or 0)
    if impact == 0:
        return list(APPROVAL_CHAIN[:1])
    if budget <= 0:
        return list(APPROVAL_CHAIN)
    pct = impact * 100 / budget
    for limit, levels in APPROVAL_THRESHOLDS:
        if pct < limit:
            return list(APPROVAL_CHAIN[:levels])
    return list(APPROVAL_CHAIN)


# ═════════════════════════════════════════════════════════════════════════════
# 1. ChangeRequest
# ═════════════════════════════════════════════════════════════════════════════


class ChangeRequest(SoftDeleteMixin, TenantModel):
    __tablename__ = "change_requests"
    __table_args__ = (
        db.UniqueConstraint("tenant_id", "code", name="uq_change_request_tenant_code"),
        db.Index("ix_change_requests_project_status", "project_id", "status"),
    )

    project_id = ulid_fk("projects.id", ondelete="CASCADE")
    code = db.Column(db.String(30), nullable=False, comment="CR-0001")
    title = db.Column(db.String(300), nullable=False)
    description = db.Column(db.Text, default="")
    reason = db.Column(db.Text, default="")
    priority = db.Column(db.String(20), nullable=False, default="medium")
    status = db.Column(db.String(30), nullable=False, default="draft")

    cost_impact = db.Column(db.Numeric(15, 2), nullable=False, default=0)
    schedule_impact_days = db.Column(db.Integer, nullable=False, default=0)

    requested_by = ulid_fk("users.id", ondelete="SET NULL", nullable=True)
    assigned_to = ulid_fk("users.id", ondelete="SET NULL", nullable=True)

    submitted_at = db.Column(db.DateTime(timezone=True))
    decided_at = db.Column(db.DateTime(timezone=True))
    implemented_at = db.Column(db.DateTime(timezone=True))

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    project = db.relationship("Project")
    approvals = db.relationship(
        "ChangeRequestApproval", back_populates="change_request", lazy="dynamic",
        order_by="ChangeRequestApproval.level", cascade="all, delete-orphan", passive_deletes=True,
    )
    comments = db.relationship(
        "ChangeRequestComment", back_populates="change_request", lazy="dynamic",
        cascade="all, delete-orphan", passive_deletes=True,
    )

    @property
    def current_approval(self):
        """Lowest pending approval level, or None."""
        return self.approvals.filter_by(status="pending").order_by(
            ChangeRequestApproval.level
        ).first()

    def to_dict(self, include_approvals=False):
        d = {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "project_id": self.project_id,
            "code": self.code,
            "title": self.title,
            "description": self.description,
            "reason": self.reason,
            "priority": self.priority,
            "status": self.status,
            "cost_impact": money(self.cost_impact),
            "schedule_impact_days": self.schedule_impact_days,
            "requested_by": self.requested_by,
            "assigned_to": self.assigned_to,
            "submitted_at": iso(self.submitted_at),
            "decided_at": iso(self.decided_at),
            "implemented_at": iso(self.implemented_at),
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
            "deleted_at": iso(self.deleted_at),
        }
        if include_approvals:
            d["approvals"] = [a.to_dict() for a in self.approvals.all()]
        return d

    def __repr__(self):
        return f"<ChangeRequest {self.code} [{self.status}]>"


# ═════════════════════════════════════════════════════════════════════════════
# 2. ChangeRequestApproval
# ═════════════════════════════════════════════════════════════════════════════


class ChangeRequestApproval(TenantModel):
    __tablename__ = "change_request_approvals"
    __table_args__ = (
        db.UniqueConstraint("change_request_id", "level", name="uq_cr_approval_level"),
    )

    change_request_id = ulid_fk("change_requests.id", ondelete="CASCADE")
    level = db.Column(db.Integer, nullable=False)
    approver_role = db.Column(db.String(50), nullable=False)
    status = db.Column(db.String(20), nullable=False, default="pending")
    # NO ACTION: a user who decided an approval cannot be hard-deleted on their own
    decided_by = ulid_fk("users.id", ondelete=None, nullable=True)
    decided_at = db.Column(db.DateTime(timezone=True))
    comment = db.Column(db.Text, default="")
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    change_request = db.relationship("ChangeRequest", back_populates="approvals")

    def to_dict(self):
        return {
            "id": self.id,
            "change_request_id": self.change_request_id,
            "level": self.level,
            "approver_role": self.approver_role,
            "status": self.status,
            "decided_by": self.decided_by,
            "decided_at": iso(self.decided_at),
            "comment": self.comment,
        }


# ═════════════════════════════════════════════════════════════════════════════
# 3. ChangeRequestComment (threaded)
# ═════════════════════════════════════════════════════════════════════════════


class ChangeRequestComment(SoftDeleteMixin, TenantModel):
    __tablename__ = "change_request_comments"

    change_request_id = ulid_fk("change_requests.id", ondelete="CASCADE")
    parent_id = ulid_fk("change_request_comments.id", ondelete="CASCADE", nullable=True)
    author_id = ulid_fk("users.id", ondelete="SET NULL", nullable=True)
    body = db.Column(db.Text, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    change_request = db.relationship("ChangeRequest", back_populates="comments")
    parent = db.relationship("ChangeRequestComment", remote_side="ChangeRequestComment.id",
                             back_populates="replies")
    replies = db.relationship("ChangeRequestComment", back_populates="parent", lazy="dynamic",
                              order_by="ChangeRequestComment.id", passive_deletes=True)

    def to_dict(self, include_replies=False):
        d = {
            "id": self.id,
            "change_request_id": self.change_request_id,
            "parent_id": self.parent_id,
            "author_id": self.author_id,
            "body": "[deleted]" if self.deleted_at else self.body,
            "created_at": iso(self.created_at),
            "deleted_at": iso(self.deleted_at),
        }
        if include_replies:
            d["replies"] = [r.to_dict(include_replies=True) for r in self.replies.all()]
        return d
