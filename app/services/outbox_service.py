"""
Transactional Outbox Service.

Writes:
    Services call ``enqueue_event(...)`` inside the same unit of work as the
    business mutation.  The helper only ``add`` + ``flush``es, so the event
    row commits (or rolls back) together with the caller's data.

Delivery:
    ``dispatch_pending()`` claims due ``pending`` rows (conditional UPDATE, so
    two dispatchers never claim the same row), runs every publisher
    registered for the event type, appends an ``EventLog`` row and marks the
    event ``completed``.  A publisher error rolls back that event's work and
    schedules a retry with exponential backoff; once ``retry_count`` reaches
    the ceiling the event becomes ``failed`` and is copied to
    ``dead_letter_jobs``.

Status transitions are validated against ``OUTBOX_TRANSITIONS``; in
particular ``pending → completed`` (skipping the claim) is rejected.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Callable

from flask import current_app, has_app_context
from sqlalchemy import func, select, update

from app.core.exceptions import InvalidTransitionError, NotFoundError, ValidationError
from app.models import db
from app.models.observability import EventLog
from app.models.reliability import (
    OUTBOX_STATUSES,
    DeadLetterJob,
    OutboxEvent,
    validate_outbox_transition,
)
from app.utils.helpers import as_utc, utcnow

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 5
DEFAULT_BATCH_SIZE = 50
DEFAULT_BACKOFF_SECONDS = 30
DEFAULT_LOCK_TIMEOUT_SECONDS = 300
WILDCARD = "*"

_MAX_ERROR_LEN = 2000


class PermanentDeliveryError(Exception):
    """Raised by a publisher when retrying cannot help; the event fails at once."""


# ═══════════════════════════════════════════════════════════════════════════
#  Publisher Registry
# ═══════════════════════════════════════════════════════════════════════════

_publishers: dict[str, list[Callable]] = {}


def register_publisher(event_type: str):
    """Decorator registering a publisher for an event type (or ``"*"``).

    Usage:
        @register_publisher("change_request.approved")
        def notify_requester(event):
            ...
    """
    def decorator(fn: Callable) -> Callable:
        handlers = _publishers.setdefault(event_type, [])
        if fn not in handlers:
            handlers.append(fn)
        return fn
    return decorator


def unregister_publisher(event_type: str, fn: Callable) -> None:
    handlers = _publishers.get(event_type, [])
    if fn in handlers:
        handlers.remove(fn)


def get_publishers(event_type: str) -> list[Callable]:
    """Publishers for *event_type* followed by wildcard publishers."""
    return list(_publishers.get(event_type, [])) + list(_publishers.get(WILDCARD, []))


def _cfg(name: str, default):
    if has_app_context():
        return current_app.config.get(name, default)
    return default


def _check_transition(event: OutboxEvent, new_status: str) -> None:
    if not validate_outbox_transition(event.status, new_status):
        raise InvalidTransitionError("OutboxEvent", event.status, new_status)


# ═══════════════════════════════════════════════════════════════════════════
#  Write side
# ═══════════════════════════════════════════════════════════════════════════

def enqueue_event(
    *,
    tenant_id: str,
    event_type: str,
    aggregate_type: str,
    aggregate_id: str,
    payload: dict | None = None,
    available_at=None,
) -> OutboxEvent:
    """Add an outbox row to the current transaction (flush, no commit)."""
    if not event_type:
        raise ValidationError("event_type is required", details={"event_type": "required"})
    event = OutboxEvent(
        tenant_id=tenant_id,
        event_type=event_type,
        aggregate_type=aggregate_type,
        aggregate_id=str(aggregate_id),
        payload=payload or {},
        status="pending",
        retry_count=0,
        available_at=available_at or utcnow(),
    )
    db.session.add(event)
    db.session.flush()
    logger.debug("Outbox event queued: %s %s/%s", event_type, aggregate_type, aggregate_id,
                 extra={"tenant_id": tenant_id, "event_type": event_type})
    return event


# ═══════════════════════════════════════════════════════════════════════════
#  Claim / complete / fail
# ═══════════════════════════════════════════════════════════════════════════

def claim_batch(batch_size: int | None = None, *, worker_id: str = "dispatcher", now=None) -> list[OutboxEvent]:
    """Move up to *batch_size* due ``pending`` rows to ``processing``.

    Each row is claimed with ``UPDATE ... WHERE status = 'pending'``; a row
    another worker claimed first updates zero rows and is skipped.
    """
    now = now or utcnow()
    batch_size = batch_size or _cfg("OUTBOX_BATCH_SIZE", DEFAULT_BATCH_SIZE)

    candidate_ids = db.session.execute(
        select(OutboxEvent.id)
        .where(OutboxEvent.status == "pending", OutboxEvent.available_at <= now)
        .order_by(OutboxEvent.id)
        .limit(batch_size)
    ).scalars().all()

    claimed = []
    for event_id in candidate_ids:
        result = db.session.execute(
            update(OutboxEvent)
            .where(OutboxEvent.id == event_id, OutboxEvent.status == "pending")
            .values(status="processing", locked_at=now, locked_by=worker_id, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            claimed.append(event_id)
    db.session.commit()

    if not claimed:
        return []
    return OutboxEvent.query.filter(OutboxEvent.id.in_(claimed)).order_by(OutboxEvent.id).all()


def mark_completed(event: OutboxEvent, *, now=None) -> OutboxEvent:
    """``processing → completed``: stamp ``processed_at`` and append the event log."""
    _check_transition(event, "completed")
    now = now or utcnow()
    event.status = "completed"
    event.processed_at = now
    event.locked_at = None
    event.locked_by = None
    db.session.add(EventLog(
        tenant_id=event.tenant_id,
        event_type=event.event_type,
        aggregate_type=event.aggregate_type,
        aggregate_id=event.aggregate_id,
        payload=event.payload or {},
        outbox_event_id=event.id,
        occurred_at=event.created_at or now,
        published_at=now,
    ))
    db.session.commit()
    logger.info("Outbox event %s delivered (%s)", event.id, event.event_type,
                extra={"tenant_id": event.tenant_id, "event_type": event.event_type})
    return event


def mark_failed(
    event: OutboxEvent,
    error,
    *,
    retryable: bool = True,
    max_retries: int | None = None,
    now=None,
) -> OutboxEvent:
    """Record a delivery failure.

    Increments ``retry_count`` and stores ``error_message``.  Below the retry
    ceiling the event returns to ``pending`` with exponential backoff;
    at the ceiling (or when *retryable* is False) it becomes ``failed`` and a
    dead-letter row is written.
    """
    now = now or utcnow()
    max_retries = max_retries if max_retries is not None else _cfg("OUTBOX_MAX_RETRIES", DEFAULT_MAX_RETRIES)

    give_up = not retryable or (event.retry_count or 0) + 1 >= max_retries
    _check_transition(event, "failed" if give_up else "pending")

    event.retry_count = (event.retry_count or 0) + 1
    event.error_message = str(error)[:_MAX_ERROR_LEN]
    event.locked_at = None
    event.locked_by = None

    if give_up:
        event.status = "failed"
        db.session.add(DeadLetterJob(
            tenant_id=event.tenant_id,
            source="outbox",
            job_name=event.event_type,
            reference_id=event.id,
            payload=event.payload or {},
            error_message=event.error_message,
            attempts=event.retry_count,
            failed_at=now,
        ))
        logger.error("Outbox event %s failed permanently after %d attempt(s): %s",
                     event.id, event.retry_count, event.error_message,
                     extra={"tenant_id": event.tenant_id, "event_type": event.event_type})
    else:
        backoff = _cfg("OUTBOX_BACKOFF_SECONDS", DEFAULT_BACKOFF_SECONDS)
        delay = backoff * (2 ** (event.retry_count - 1))
        event.status = "pending"
        event.available_at = now + timedelta(seconds=delay)
        logger.warning("Outbox event %s attempt %d failed, retry in %ss: %s",
                       event.id, event.retry_count, delay, event.error_message,
                       extra={"tenant_id": event.tenant_id, "event_type": event.event_type})

    db.session.commit()
    return event


# ═══════════════════════════════════════════════════════════════════════════
#  Dispatcher
# ═══════════════════════════════════════════════════════════════════════════

def _deliver(event: OutboxEvent) -> None:
    for publisher in get_publishers(event.event_type):
        publisher(event)


def dispatch_pending(batch_size: int | None = None, *, worker_id: str = "dispatcher") -> dict:
    """Claim and deliver one batch of due events.

    Returns:
        {"claimed": n, "completed": n, "retried": n, "failed": n}
    """
    stats = {"claimed": 0, "completed": 0, "retried": 0, "failed": 0}
    events = claim_batch(batch_size, worker_id=worker_id)
    stats["claimed"] = len(events)

    for event in events:
        event_id = event.id
        try:
            _deliver(event)
        except PermanentDeliveryError as exc:
            db.session.rollback()
            event = db.session.get(OutboxEvent, event_id)
            mark_failed(event, exc, retryable=False)
            stats["failed"] += 1
            continue
        except Exception as exc:
            db.session.rollback()
            logger.exception("Publisher error for outbox event %s", event_id)
            event = db.session.get(OutboxEvent, event_id)
            mark_failed(event, exc)
            stats["failed" if event.status == "failed" else "retried"] += 1
            continue
        mark_completed(event)
        stats["completed"] += 1

    if events:
        logger.info("Outbox dispatch: %s", stats)
    return stats


# ═══════════════════════════════════════════════════════════════════════════
#  Maintenance
# ═══════════════════════════════════════════════════════════════════════════

def requeue_failed(*, event_id: str | None = None, tenant_id: str | None = None, now=None) -> int:
    """``failed → pending`` with a fresh retry budget.  Returns rows requeued.

    Matching unresolved dead-letter rows are marked resolved.
    """
    now = now or utcnow()
    q = OutboxEvent.query.filter_by(status="failed")
    if event_id is not None:
        q = q.filter_by(id=event_id)
    if tenant_id is not None:
        q = q.filter_by(tenant_id=tenant_id)
    events = q.all()
    if event_id is not None and not events:
        raise NotFoundError(resource="OutboxEvent", resource_id=event_id)

    for event in events:
        _check_transition(event, "pending")
        event.status = "pending"
        event.retry_count = 0
        event.available_at = now
        DeadLetterJob.query.filter(
            DeadLetterJob.source == "outbox",
            DeadLetterJob.reference_id == event.id,
            DeadLetterJob.resolved_at.is_(None),
        ).update(
            {"resolved_at": now, "resolution_note": "requeued"},
            synchronize_session=False,
        )
    db.session.commit()
    if events:
        logger.info("Requeued %d failed outbox event(s)", len(events))
    return len(events)


def release_stale(*, timeout_seconds: int | None = None, now=None) -> int:
    """Return ``processing`` rows whose lock expired to ``pending``."""
    now = now or utcnow()
    timeout_seconds = timeout_seconds or _cfg("OUTBOX_LOCK_TIMEOUT_SECONDS", DEFAULT_LOCK_TIMEOUT_SECONDS)
    cutoff = now - timedelta(seconds=timeout_seconds)
    stale = OutboxEvent.query.filter(
        OutboxEvent.status == "processing",
        OutboxEvent.locked_at < cutoff,
    ).all()
    for event in stale:
        _check_transition(event, "pending")
        event.status = "pending"
        event.error_message = f"lock held by {event.locked_by} expired"
        event.locked_at = None
        event.locked_by = None
        event.available_at = now
    db.session.commit()
    if stale:
        logger.warning("Released %d stale outbox lock(s)", len(stale))
    return len(stale)


def get_event(event_id: str, *, tenant_id: str | None = None) -> OutboxEvent:
    q = OutboxEvent.query.filter_by(id=event_id)
    if tenant_id is not None:
        q = q.filter_by(tenant_id=tenant_id)
    event = q.first()
    if event is None:
        raise NotFoundError(resource="OutboxEvent", resource_id=event_id)
    return event


def list_events(*, tenant_id: str | None = None, status: str | None = None):
    """Query of outbox rows, newest first (caller paginates)."""
    if status is not None and status not in OUTBOX_STATUSES:
        raise ValidationError(f"Unknown outbox status: {status}", details={"status": status})
    q = OutboxEvent.query
    if tenant_id is not None:
        q = q.filter_by(tenant_id=tenant_id)
    if status is not None:
        q = q.filter_by(status=status)
    return q.order_by(OutboxEvent.id.desc())


def outbox_stats(*, tenant_id: str | None = None, now=None) -> dict:
    """Counts per status plus the age of the oldest pending row."""
    now = now or utcnow()
    q = db.session.query(OutboxEvent.status, func.count(OutboxEvent.id))
    if tenant_id is not None:
        q = q.filter(OutboxEvent.tenant_id == tenant_id)
    counts = {status: 0 for status in sorted(OUTBOX_STATUSES)}
    for status, count in q.group_by(OutboxEvent.status).all():
        counts[status] = count

    oldest_q = db.session.query(func.min(OutboxEvent.created_at)).filter(OutboxEvent.status == "pending")
    if tenant_id is not None:
        oldest_q = oldest_q.filter(OutboxEvent.tenant_id == tenant_id)
    oldest = oldest_q.scalar()
    return {
        "counts": counts,
        "oldest_pending_age_seconds": (
            round((now - as_utc(oldest)).total_seconds(), 1) if oldest else None
        ),
    }
