"""
Project Workspace Platform
Billing models.

Models:
    - Subscription: tenant plan subscription and billing period
    - Invoice: per-tenant invoice, number unique per tenant
"""

from datetime import datetime, timezone

from app.models import db
from app.models.base import TenantModel, ulid_fk
from app.utils.helpers import iso, money

SUBSCRIPTION_STATUSES = {"trialing", "active", "past_due", "cancelled"}
BILLING_CYCLES = {"monthly", "yearly"}
INVOICE_STATUSES = {"draft", "issued", "paid", "void"}

SUBSCRIPTION_TRANSITIONS = {
    "trialing": ["active", "cancelled"],
    "active": ["past_due", "cancelled"],
    "past_due": ["active", "cancelled"],
    "cancelled": [],
}

INVOICE_TRANSITIONS = {
    "draft": ["issued", "void"],
    "issued": ["paid", "void"],
    "paid": [],
    "void": [],
}

# Monthly list prices per plan
PLAN_PRICES = {
    "trial": "0.00",
    "starter": "49.00",
    "professional": "149.00",
    "enterprise": "499.00",
}


def validate_subscription_transition(old_status, new_status):
    return new_status in SUBSCRIPTION_TRANSITIONS.get(old_status, [])


def validate_invoice_transition(old_status, new_status):
    return new_status in INVOICE_TRANSITIONS.get(old_status, [])


class Subscription(TenantModel):
    __tablename__ = "subscriptions"

    plan = db.Column(db.String(50), nullable=False)
    status = db.Column(db.String(20), nullable=False, default="trialing")
    billing_cycle = db.Column(db.String(10), nullable=False, default="monthly")
    seats = db.Column(db.Integer, nullable=False, default=5)
    unit_price = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    currency = db.Column(db.String(3), nullable=False, default="USD")
    current_period_start = db.Column(db.Date, nullable=False)
    current_period_end = db.Column(db.Date, nullable=False)
    trial_ends_at = db.Column(db.Date)
    cancelled_at = db.Column(db.DateTime(timezone=True))
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    invoices = db.relationship("Invoice", back_populates="subscription", lazy="dynamic")

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "plan": self.plan,
            "status": self.status,
            "billing_cycle": self.billing_cycle,
            "seats": self.seats,
            "unit_price": money(self.unit_price),
            "currency": self.currency,
            "current_period_start": iso(self.current_period_start),
            "current_period_end": iso(self.current_period_end),
            "trial_ends_at": iso(self.trial_ends_at),
            "cancelled_at": iso(self.cancelled_at),
        }


class Invoice(TenantModel):
    __tablename__ = "invoices"
    __table_args__ = (
        db.UniqueConstraint("tenant_id", "number", name="uq_invoice_tenant_number"),
        db.CheckConstraint("amount >= 0", name="ck_invoice_amount_non_negative"),
    )

    subscription_id = ulid_fk("subscriptions.id", ondelete="SET NULL", nullable=True)
    number = db.Column(db.String(30), nullable=False, comment="INV-YYYY-0001")
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    tax_amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    currency = db.Column(db.String(3), nullable=False, default="USD")
    status = db.Column(db.String(20), nullable=False, default="draft")
    period_start = db.Column(db.Date)
    period_end = db.Column(db.Date)
    issued_at = db.Column(db.DateTime(timezone=True))
    due_date = db.Column(db.Date)
    paid_at = db.Column(db.DateTime(timezone=True))
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    subscription = db.relationship("Subscription", back_populates="invoices")

    @property
    def total(self):
        return (self.amount or 0) + (self.tax_amount or 0)

    def to_dict(self):
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "subscription_id": self.subscription_id,
            "number": self.number,
            "amount": money(self.amount),
            "tax_amount": money(self.tax_amount),
            "total": money(self.total),
            "currency": self.currency,
            "status": self.status,
            "period_start": iso(self.period_start),
            "period_end": iso(self.period_end),
            "issued_at": iso(self.issued_at),
            "due_date": iso(self.due_date),
            "paid_at": iso(self.paid_at),
        }
