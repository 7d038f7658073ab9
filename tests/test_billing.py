"""
Billing: subscriptions, invoices and the overdue sweep.
"""

from datetime import date, timedelta
from decimal import Decimal

import pytest

from app.core.exceptions import ConflictError, InvalidTransitionError, NotFoundError, ValidationError
from app.models import db as _db
from app.models.auth import Tenant
from app.models.reliability import OutboxEvent
from app.services import billing_service
from app.services.billing_service import add_months, plan_price


@pytest.fixture()
def tid(default_tenant):
    return default_tenant.id


class TestPricing:
    @pytest.mark.parametrize("plan, cycle, expected", [
        ("starter", "monthly", "49.00"),
        ("professional", "monthly", "149.00"),
        ("enterprise", "monthly", "499.00"),
        ("starter", "yearly", "529.20"),
    ])
    def test_plan_price(self, plan, cycle, expected):
        assert plan_price(plan, cycle) == Decimal(expected)

    def test_add_months_clamps(self):
        assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)
        assert add_months(date(2023, 1, 31), 1) == date(2023, 2, 28)
        assert add_months(date(2024, 11, 15), 3) == date(2025, 2, 15)


class TestSubscriptions:
    def test_start_active(self, tid):
        sub = billing_service.start_subscription(tid, plan="professional", seats=3, start="2025-01-31")
        assert sub.status == "active"
        assert sub.unit_price == Decimal("149.00")
        assert sub.current_period_end == date(2025, 2, 28)
        assert _db.session.get(Tenant, tid).plan == "professional"

    def test_start_trial(self, tid):
        sub = billing_service.start_subscription(tid, plan="starter", trial_days=14, start=date(2025, 3, 1))
        assert sub.status == "trialing"
        assert sub.trial_ends_at == date(2025, 3, 15)
        assert billing_service.activate_subscription(tid).status == "active"

    def test_one_live_subscription(self, tid):
        billing_service.start_subscription(tid, plan="starter")
        with pytest.raises(ConflictError):
            billing_service.start_subscription(tid, plan="enterprise")

    @pytest.mark.parametrize("kwargs", [
        {"plan": "platinum"},
        {"plan": "starter", "billing_cycle": "weekly"},
        {"plan": "starter", "seats": 0},
        {"plan": "starter", "seats": True},
    ])
    def test_invalid_arguments(self, tid, kwargs):
        with pytest.raises(ValidationError):
            billing_service.start_subscription(tid, **kwargs)

    def test_change_plan(self, tid):
        billing_service.start_subscription(tid, plan="starter")
        sub = billing_service.change_plan(tid, plan="enterprise", billing_cycle="yearly", seats=20)
        assert sub.unit_price == plan_price("enterprise", "yearly")
        assert sub.seats == 20
        assert _db.session.get(Tenant, tid).plan == "enterprise"
        event = OutboxEvent.query.filter_by(event_type="billing.plan_changed").one()
        assert event.payload == {"plan": "enterprise", "billing_cycle": "yearly"}

    def test_cancel_allows_new_subscription(self, tid):
        billing_service.start_subscription(tid, plan="starter")
        cancelled = billing_service.cancel_subscription(tid, reason="moving on")
        assert cancelled.status == "cancelled"
        assert cancelled.cancelled_at is not None
        assert billing_service.get_live_subscription(tid) is None
        with pytest.raises(NotFoundError):
            billing_service.cancel_subscription(tid)
        billing_service.start_subscription(tid, plan="professional")


class TestInvoices:
    def test_invoice_from_subscription(self, tid):
        billing_service.start_subscription(tid, plan="starter", seats=4)
        invoice = billing_service.create_invoice(tid, tax_amount="19.60")
        assert invoice.number == f"INV-{date.today().year}-0001"
        assert invoice.amount == Decimal("196.00")
        assert invoice.total == Decimal("215.60")
        assert invoice.status == "draft"
        assert invoice.period_start is not None

        second = billing_service.create_invoice(tid, amount="10")
        assert second.number.endswith("-0002")

    def test_amount_required_without_subscription(self, tid):
        with pytest.raises(ValidationError):
            billing_service.create_invoice(tid)

    @pytest.mark.parametrize("amount", ["-1", "lots"])
    def test_bad_amounts(self, tid, amount):
        with pytest.raises(ValidationError):
            billing_service.create_invoice(tid, amount=amount)

    def test_issue_and_pay(self, tid):
        invoice = billing_service.create_invoice(tid, amount="100")
        issued = billing_service.issue_invoice(invoice.id, tenant_id=tid)
        assert issued.status == "issued"
        assert issued.due_date == date.today() + timedelta(days=14)
        event = OutboxEvent.query.filter_by(event_type="billing.invoice_issued").one()
        assert event.payload["total"] == "100.00"

        paid = billing_service.mark_invoice_paid(invoice.id, tenant_id=tid)
        assert paid.status == "paid"
        assert paid.paid_at is not None
        with pytest.raises(InvalidTransitionError):
            billing_service.void_invoice(invoice.id, tenant_id=tid)

    def test_draft_cannot_be_paid(self, tid):
        invoice = billing_service.create_invoice(tid, amount="100")
        with pytest.raises(InvalidTransitionError):
            billing_service.mark_invoice_paid(invoice.id, tenant_id=tid)
        assert billing_service.void_invoice(invoice.id, tenant_id=tid).status == "void"

    def test_other_tenant_cannot_see_invoice(self, tid):
        other = Tenant(name="Other", slug="other")
        _db.session.add(other)
        _db.session.commit()
        invoice = billing_service.create_invoice(tid, amount="5")
        with pytest.raises(NotFoundError):
            billing_service.get_invoice(invoice.id, tenant_id=other.id)
        assert billing_service.list_invoices(other.id).count() == 0


class TestOverdueSweep:
    def test_past_due_and_recovery(self, tid):
        billing_service.start_subscription(tid, plan="starter")
        invoice = billing_service.create_invoice(tid)
        billing_service.issue_invoice(invoice.id, tenant_id=tid)

        assert billing_service.mark_overdue_subscriptions(date.today()) == 0
        later = date.today() + timedelta(days=15)
        assert billing_service.mark_overdue_subscriptions(later) == 1
        assert billing_service.get_live_subscription(tid).status == "past_due"
        # Already flagged
        assert billing_service.mark_overdue_subscriptions(later) == 0

        billing_service.mark_invoice_paid(invoice.id, tenant_id=tid)
        assert billing_service.get_live_subscription(tid).status == "active"
