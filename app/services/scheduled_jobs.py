"""
Project Workspace Platform
Scheduled Jobs.

Concrete job implementations that run on a schedule.

Jobs:
    - outbox_dispatcher: Delivers due outbox events
    - outbox_release_stale: Returns expired outbox claims to pending
    - idempotency_purge: Deletes expired idempotency keys
    - daily_project_snapshots: Captures one metrics snapshot per active project
    - integrity_guard: Report-only database invariant checks
    - billing_overdue_check: Flags subscriptions with overdue invoices
"""

from __future__ import annotations

import logging
from typing import Any

from app.services.scheduler_service import register_job

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Job 1: Outbox dispatcher
# ═══════════════════════════════════════════════════════════════════════════

@register_job("outbox_dispatcher")
def dispatch_outbox(app) -> dict[str, Any]:
    """Deliver pending outbox events (one batch per run)."""
    from app.services.outbox_service import dispatch_pending

    return dispatch_pending(app.config.get("OUTBOX_BATCH_SIZE"), worker_id="scheduler")


# ═══════════════════════════════════════════════════════════════════════════
#  Job 2: Stale claim release
# ═══════════════════════════════════════════════════════════════════════════

@register_job("outbox_release_stale")
def release_stale_outbox(app) -> dict[str, Any]:
    """Release outbox rows stuck in processing past the lock timeout."""
    from app.services.outbox_service import release_stale

    released = release_stale(timeout_seconds=app.config.get("OUTBOX_LOCK_TIMEOUT_SECONDS"))
    return {"released": released}


# ═══════════════════════════════════════════════════════════════════════════
#  Job 3: Idempotency purge
# ═══════════════════════════════════════════════════════════════════════════

@register_job("idempotency_purge")
def purge_idempotency_keys(app) -> dict[str, Any]:
    """Delete idempotency keys past their expiry."""
    from app.services.idempotency_service import purge_expired

    return {"purged": purge_expired()}


# ═══════════════════════════════════════════════════════════════════════════
#  Job 4: Daily project snapshots
# ═══════════════════════════════════════════════════════════════════════════

@register_job("daily_project_snapshots")
def daily_project_snapshots(app) -> dict[str, Any]:
    """Capture today's metrics snapshot for every open project."""
    from app.services.dashboard_service import capture_all_snapshots

    return {"snapshots": capture_all_snapshots()}


# ═══════════════════════════════════════════════════════════════════════════
#  Job 5: Integrity guard
# ═══════════════════════════════════════════════════════════════════════════

@register_job("integrity_guard")
def integrity_guard(app) -> dict[str, Any]:
    """Report-only scan for broken invariants (never repairs)."""
    from app.services.integrity_service import run_integrity_checks

    report = run_integrity_checks()
    if not report["ok"]:
        logger.warning("Integrity guard found violations in: %s", ", ".join(report["violations"]))
    return report


# ═══════════════════════════════════════════════════════════════════════════
#  Job 6: Billing overdue check
# ═══════════════════════════════════════════════════════════════════════════

@register_job("billing_overdue_check")
def billing_overdue_check(app) -> dict[str, Any]:
    """Move subscriptions with unpaid, past-due invoices to past_due."""
    from app.services.billing_service import mark_overdue_subscriptions

    return {"past_due": mark_overdue_subscriptions()}
