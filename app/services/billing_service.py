"""
Billing service — subscriptions and invoices.

A tenant has at most one live (non-cancelled) subscription; its plan is
mirrored on ``Tenant.plan``.  Invoices are numbered ``INV-{year}-{seq}``
per tenant and move ``draft → issued → paid``; drafts and issued invoices
can be voided.
"""

import calendar
import logging
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy.exc import IntegrityError

from app.core.exceptions import ConflictError, InvalidTransitionError, NotFoundError, ValidationError
from app.models import db
from app.models.audit import write_audit
from app.models.auth import TENANT_PLANS, Tenant
from app.models.billing import (
    BILLING_CYCLES,
    PLAN_PRICES,
    Invoice,
    Subscription,
    validate_invoice_transition,
    validate_subscription_transition,
)
from app.services.code_generator import generate_invoice_number
from app.services.helpers.scoped_queries import get_scoped
from app.services.outbox_service import enqueue_event
from app.utils.helpers import parse_date, parse_decimal

logger = logging.getLogger(__name__)

INVOICE_DUE_DAYS = 14
YEARLY_DISCOUNT = Decimal("0.90")


def add_months(day: date, months: int) -> date:
    """Calendar month arithmetic, clamping to the last day of the month."""
    month_index = day.month - 1 + months
    year, month = day.year + month_index // 12, month_index % 12 + 1
    return date(year, month, min(day.day, calendar.monthrange(year, month)[1]))


def plan_price(plan: str, billing_cycle: str) -> Decimal:
    monthly = Decimal(PLAN_PRICES[plan])
    if billing_cycle == "yearly":
        return (monthly * 12 * YEARLY_DISCOUNT).quantize(Decimal("0.01"))
    return monthly


def _period_end(start: date, billing_cycle: str) -> date:
    return add_months(start, 12 if billing_cycle == "yearly" else 1)


def _check_plan(plan: str, billing_cycle: str) -> None:
    if plan not in TENANT_PLANS or plan not in PLAN_PRICES:
        raise ValidationError(f"Unknown plan '{plan}'", details={"plan": sorted(PLAN_PRICES)})
    if billing_cycle not in BILLING_CYCLES:
        raise ValidationError(f"Unknown billing_cycle '{billing_cycle}'",
                              details={"billing_cycle": sorted(BILLING_CYCLES)})


def _sub_transition(sub: Subscription, new_status: str) -> None:
    if not validate_subscription_transition(sub.status, new_status):
        raise InvalidTransitionError("Subscription", sub.status, new_status)
    sub.status = new_status


def _inv_transition(inv: Invoice, new_status: str) -> None:
    if not validate_invoice_transition(inv.status, new_status):
        raise InvalidTransitionError("Invoice", inv.status, new_status)
    inv.status = new_status


# ═══════════════════════════════════════════════════════════════
# Subscriptions
# ═══════════════════════════════════════════════════════════════

def get_live_subscription(tenant_id: str) -> Subscription | None:
    return (
        Subscription.query.filter(Subscription.tenant_id == tenant_id,
                                  Subscription.status != "cancelled")
        .order_by(Subscription.created_at.desc())
        .first()
    )


def start_subscription(tenant_id: str, *, plan: str, billing_cycle: str = "monthly", seats: int = 5,
                       trial_days: int = 0, start=None, actor_user_id: str | None = None) -> Subscription:
    """Open a subscription.  With ``trial_days`` it starts as ``trialing``."""
    _check_plan(plan, billing_cycle)
    if isinstance(seats, bool) or not isinstance(seats, int) or seats < 1:
        raise ValidationError("seats must be a positive integer", details={"seats": seats})
    tenant = db.session.get(Tenant, tenant_id)
    if tenant is None or tenant.deleted_at is not None:
        raise NotFoundError(resource="Tenant", resource_id=tenant_id)
    if get_live_subscription(tenant_id) is not None:
        raise ConflictError("Subscription", "tenant_id", tenant_id)

    start = parse_date(start) or date.today()
    sub = Subscription(
        tenant_id=tenant_id,
        plan=plan,
        status="trialing" if trial_days else "active",
        billing_cycle=billing_cycle,
        seats=seats,
        unit_price=plan_price(plan, billing_cycle),
        currency=tenant.typed_settings.currency,
        current_period_start=start,
        current_period_end=_period_end(start, billing_cycle),
        trial_ends_at=start + timedelta(days=trial_days) if trial_days else None,
    )
    db.session.add(sub)
    tenant.plan = plan
    db.session.flush()
    write_audit(entity_type="subscription", entity_id=sub.id, action="billing.subscription_started",
                tenant_id=tenant_id, actor_user_id=actor_user_id,
                diff={"plan": plan, "billing_cycle": billing_cycle, "seats": seats})
    db.session.commit()
    return sub


def activate_subscription(tenant_id: str, *, actor_user_id: str | None = None) -> Subscription:
    """End a trial, or recover a past-due subscription."""
    sub = get_live_subscription(tenant_id)
    if sub is None:
        raise NotFoundError(resource="Subscription", resource_id=tenant_id)
    old = sub.status
    _sub_transition(sub, "active")
    write_audit(entity_type="subscription", entity_id=sub.id, action="billing.subscription_activated",
                tenant_id=tenant_id, actor_user_id=actor_user_id, diff={"status": {"old": old, "new": "active"}})
    db.session.commit()
    return sub


def change_plan(tenant_id: str, *, plan: str, billing_cycle: str | None = None, seats: int | None = None,
                actor_user_id: str | None = None) -> Subscription:
    """Switch the live subscription to another plan (takes effect immediately)."""
    sub = get_live_subscription(tenant_id)
    if sub is None:
        raise NotFoundError(resource="Subscription", resource_id=tenant_id)
    billing_cycle = billing_cycle or sub.billing_cycle
    _check_plan(plan, billing_cycle)
    if seats is not None and (isinstance(seats, bool) or not isinstance(seats, int) or seats < 1):
        raise ValidationError("seats must be a positive integer", details={"seats": seats})

    diff = {"plan": {"old": sub.plan, "new": plan}}
    sub.plan = plan
    sub.billing_cycle = billing_cycle
    sub.unit_price = plan_price(plan, billing_cycle)
    if seats is not None:
        diff["seats"] = {"old": sub.seats, "new": seats}
        sub.seats = seats
    db.session.get(Tenant, tenant_id).plan = plan
    write_audit(entity_type="subscription", entity_id=sub.id, action="billing.plan_changed",
                tenant_id=tenant_id, actor_user_id=actor_user_id, diff=diff)
    enqueue_event(tenant_id=tenant_id, event_type="billing.plan_changed",
                  aggregate_type="subscription", aggregate_id=sub.id,
                  payload={"plan": plan, "billing_cycle": billing_cycle})
    db.session.commit()
    return sub


def cancel_subscription(tenant_id: str, *, reason: str = "", actor_user_id: str | None = None) -> Subscription:
    sub = get_live_subscription(tenant_id)
    if sub is None:
        raise NotFoundError(resource="Subscription", resource_id=tenant_id)
    _sub_transition(sub, "cancelled")
    sub.cancelled_at = datetime.now(timezone.utc)
    write_audit(entity_type="subscription", entity_id=sub.id, action="billing.subscription_cancelled",
                tenant_id=tenant_id, actor_user_id=actor_user_id, diff={"reason": reason})
    db.session.commit()
    return sub


# ═══════════════════════════════════════════════════════════════
# Invoices
# ═══════════════════════════════════════════════════════════════

def create_invoice(tenant_id: str, *, amount=None, tax_amount=None, period_start=None,
                   period_end=None, actor_user_id: str | None = None) -> Invoice:
    """Create a draft invoice.

    Without an explicit *amount* the live subscription is billed for one
    period: ``unit_price * seats``.
    """
    sub = get_live_subscription(tenant_id)
    try:
        amount = parse_decimal(amount, "amount")
        tax = parse_decimal(tax_amount, "tax_amount") or Decimal("0.00")
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc
    if amount is None:
        if sub is None:
            raise ValidationError("amount is required when the tenant has no subscription",
                                  details={"amount": "required"})
        amount = sub.unit_price * sub.seats
        period_start = period_start or sub.current_period_start
        period_end = period_end or sub.current_period_end
    if amount < 0 or tax < 0:
        raise ValidationError("Invoice amounts cannot be negative", details={"amount": str(amount)})

    today = date.today()
    invoice = Invoice(
        tenant_id=tenant_id,
        subscription_id=sub.id if sub else None,
        number=generate_invoice_number(tenant_id, today.year),
        amount=amount,
        tax_amount=tax,
        currency=sub.currency if sub else "USD",
        status="draft",
        period_start=parse_date(period_start),
        period_end=parse_date(period_end),
    )
    db.session.add(invoice)
    try:
        db.session.flush()
    except IntegrityError as exc:
        db.session.rollback()
        raise ConflictError("Invoice", "number", invoice.number) from exc
    write_audit(entity_type="invoice", entity_id=invoice.id, action="create",
                tenant_id=tenant_id, actor_user_id=actor_user_id,
                diff={"number": invoice.number, "amount": str(amount)})
    db.session.commit()
    return invoice


def get_invoice(invoice_id: str, *, tenant_id: str) -> Invoice:
    return get_scoped(Invoice, invoice_id, tenant_id=tenant_id)


def list_invoices(tenant_id: str, *, status: str | None = None):
    q = Invoice.query_for_tenant(tenant_id)
    if status:
        q = q.filter(Invoice.status == status)
    return q.order_by(Invoice.created_at.desc(), Invoice.id.desc())


def issue_invoice(invoice_id: str, *, tenant_id: str, due_days: int = INVOICE_DUE_DAYS,
                  actor_user_id: str | None = None) -> Invoice:
    invoice = get_invoice(invoice_id, tenant_id=tenant_id)
    _inv_transition(invoice, "issued")
    invoice.issued_at = datetime.now(timezone.utc)
    invoice.due_date = date.today() + timedelta(days=due_days)
    write_audit(entity_type="invoice", entity_id=invoice.id, action="billing.invoice_issued",
                tenant_id=tenant_id, actor_user_id=actor_user_id, diff={"number": invoice.number})
    enqueue_event(tenant_id=tenant_id, event_type="billing.invoice_issued",
                  aggregate_type="invoice", aggregate_id=invoice.id,
                  payload={"number": invoice.number, "total": str(invoice.total),
                           "currency": invoice.currency, "due_date": invoice.due_date.isoformat()})
    db.session.commit()
    return invoice


def mark_invoice_paid(invoice_id: str, *, tenant_id: str, actor_user_id: str | None = None) -> Invoice:
    invoice = get_invoice(invoice_id, tenant_id=tenant_id)
    _inv_transition(invoice, "paid")
    invoice.paid_at = datetime.now(timezone.utc)
    sub = invoice.subscription
    if sub is not None and sub.status == "past_due":
        _sub_transition(sub, "active")
    write_audit(entity_type="invoice", entity_id=invoice.id, action="billing.invoice_paid",
                tenant_id=tenant_id, actor_user_id=actor_user_id, diff={"number": invoice.number})
    db.session.commit()
    return invoice


def void_invoice(invoice_id: str, *, tenant_id: str, reason: str = "",
                 actor_user_id: str | None = None) -> Invoice:
    invoice = get_invoice(invoice_id, tenant_id=tenant_id)
    _inv_transition(invoice, "void")
    write_audit(entity_type="invoice", entity_id=invoice.id, action="billing.invoice_voided",
                tenant_id=tenant_id, actor_user_id=actor_user_id,
                diff={"number": invoice.number, "reason": reason})
    db.session.commit()
    return invoice


def mark_overdue_subscriptions(today: date | None = None) -> int:
    """Flag active subscriptions with an issued invoice past its due date."""
    today = today or date.today()
    overdue_sub_ids = {
        row[0] for row in db.session.query(Invoice.subscription_id).filter(
            Invoice.status == "issued", Invoice.due_date < today, Invoice.subscription_id.isnot(None)
        ).distinct()
    }
    count = 0
    for sub in Subscription.query.filter(Subscription.id.in_(overdue_sub_ids),
                                         Subscription.status == "active"):
        _sub_transition(sub, "past_due")
        write_audit(entity_type="subscription", entity_id=sub.id, action="billing.subscription_past_due",
                    tenant_id=sub.tenant_id, inherit_context=False)
        count += 1
    db.session.commit()
    if count:
        logger.warning("%d subscription(s) flagged past due", count)
    return count
