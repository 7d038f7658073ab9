"""
Transactional outbox: claim, deliver, retry, dead-letter, requeue.
"""

from datetime import timedelta

import pytest

from app.core.exceptions import InvalidTransitionError, NotFoundError, ValidationError
from app.models import db as _db
from app.models.observability import EventLog
from app.models.reliability import DeadLetterJob, OutboxEvent
from app.services import outbox_service
from app.services.outbox_service import (
    PermanentDeliveryError,
    claim_batch,
    dispatch_pending,
    enqueue_event,
    mark_completed,
    mark_failed,
    register_publisher,
    unregister_publisher,
)
from app.utils.helpers import utcnow


def _enqueue(tenant_id, event_type="site.inspected", available_at=None, **payload):
    event = enqueue_event(tenant_id=tenant_id, event_type=event_type, aggregate_type="site",
                          aggregate_id="SITE-1", payload=payload, available_at=available_at)
    _db.session.commit()
    return event


@pytest.fixture()
def publisher():
    """Register a publisher for ``site.*`` test events and record what it sees."""
    seen = []
    behaviour = {"raise": None}

    def _publish(event):
        if behaviour["raise"] is not None:
            raise behaviour["raise"]
        seen.append(event.id)

    for event_type in ("site.inspected", "site.flooded"):
        register_publisher(event_type)(_publish)
    yield seen, behaviour
    for event_type in ("site.inspected", "site.flooded"):
        unregister_publisher(event_type, _publish)


class TestEnqueue:
    def test_enqueue_only_flushes(self, default_tenant):
        enqueue_event(tenant_id=default_tenant.id, event_type="site.inspected",
                      aggregate_type="site", aggregate_id="SITE-1")
        _db.session.rollback()
        assert OutboxEvent.query.count() == 0

    def test_enqueue_defaults(self, default_tenant):
        event = _enqueue(default_tenant.id, inspector="kim")
        assert event.status == "pending"
        assert event.retry_count == 0
        assert event.payload == {"inspector": "kim"}
        assert event.processed_at is None

    def test_event_type_required(self, default_tenant):
        with pytest.raises(ValidationError):
            enqueue_event(tenant_id=default_tenant.id, event_type="",
                          aggregate_type="site", aggregate_id="x")


class TestClaimAndComplete:
    def test_claim_is_exclusive(self, default_tenant):
        _enqueue(default_tenant.id)
        _enqueue(default_tenant.id)
        first = claim_batch(10, worker_id="w1")
        assert len(first) == 2
        assert {e.status for e in first} == {"processing"}
        assert {e.locked_by for e in first} == {"w1"}
        assert claim_batch(10, worker_id="w2") == []

    def test_future_events_not_claimed(self, default_tenant):
        enqueue_event(tenant_id=default_tenant.id, event_type="site.inspected", aggregate_type="site",
                      aggregate_id="x", available_at=utcnow() + timedelta(hours=1))
        _db.session.commit()
        assert claim_batch(10) == []

    def test_pending_cannot_complete(self, default_tenant):
        event = _enqueue(default_tenant.id)
        with pytest.raises(InvalidTransitionError):
            mark_completed(event)

    def test_complete_writes_event_log(self, default_tenant):
        _enqueue(default_tenant.id, inspector="kim")
        (event,) = claim_batch(1)
        mark_completed(event)
        assert event.status == "completed"
        assert event.processed_at is not None
        assert event.locked_by is None
        log = EventLog.query.filter_by(outbox_event_id=event.id).one()
        assert log.event_type == "site.inspected"
        assert log.payload == {"inspector": "kim"}

        with pytest.raises(InvalidTransitionError):
            mark_failed(event, "late failure")


class TestFailures:
    def test_retry_backoff(self, default_tenant, app, monkeypatch):
        monkeypatch.setitem(app.config, "OUTBOX_BACKOFF_SECONDS", 10)
        _enqueue(default_tenant.id)
        now = utcnow()
        (event,) = claim_batch(1, now=now)
        mark_failed(event, RuntimeError("smtp down"), now=now)
        assert event.status == "pending"
        assert event.retry_count == 1
        assert event.error_message == "smtp down"

        (event,) = claim_batch(1, now=now + timedelta(seconds=11))
        mark_failed(event, "again", now=now)
        # Second retry waits 2 * base
        assert claim_batch(1, now=now + timedelta(seconds=19)) == []
        assert len(claim_batch(1, now=now + timedelta(seconds=21))) == 1

    def test_fifth_failure_dead_letters(self, default_tenant, publisher):
        _, behaviour = publisher
        behaviour["raise"] = RuntimeError("webhook 500")
        event_id = _enqueue(default_tenant.id).id

        results = [dispatch_pending(10) for _ in range(5)]
        assert [r["retried"] for r in results] == [1, 1, 1, 1, 0]
        assert results[-1]["failed"] == 1

        event = outbox_service.get_event(event_id)
        assert event.status == "failed"
        assert event.retry_count == 5
        dead = DeadLetterJob.query.filter_by(reference_id=event_id).one()
        assert dead.source == "outbox"
        assert dead.attempts == 5
        assert dead.job_name == "site.inspected"
        assert "webhook 500" in dead.error_message

        # Nothing left to claim
        assert dispatch_pending(10)["claimed"] == 0

    def test_permanent_error_fails_at_once(self, default_tenant, publisher):
        _, behaviour = publisher
        behaviour["raise"] = PermanentDeliveryError("bad address")
        event_id = _enqueue(default_tenant.id).id
        assert dispatch_pending(10)["failed"] == 1
        assert outbox_service.get_event(event_id).retry_count == 1
        assert DeadLetterJob.query.filter_by(reference_id=event_id).count() == 1

    def test_success_path(self, default_tenant, publisher):
        seen, _ = publisher
        event_id = _enqueue(default_tenant.id).id
        stats = dispatch_pending(10)
        assert stats == {"claimed": 1, "completed": 1, "retried": 0, "failed": 0}
        assert seen == [event_id]

    def test_event_without_publishers_completes(self, default_tenant):
        event_id = _enqueue(default_tenant.id, event_type="nobody.listens").id
        assert dispatch_pending(10)["completed"] == 1
        assert outbox_service.get_event(event_id).status == "completed"


class TestMaintenance:
    def test_requeue_resets_budget(self, default_tenant, publisher):
        _, behaviour = publisher
        behaviour["raise"] = PermanentDeliveryError("bad address")
        event_id = _enqueue(default_tenant.id).id
        dispatch_pending(10)

        assert outbox_service.requeue_failed(event_id=event_id) == 1
        event = outbox_service.get_event(event_id)
        assert event.status == "pending"
        assert event.retry_count == 0
        dead = DeadLetterJob.query.filter_by(reference_id=event_id).one()
        assert dead.resolved_at is not None
        assert dead.resolution_note == "requeued"

        behaviour["raise"] = None
        assert dispatch_pending(10)["completed"] == 1

    def test_requeue_unknown(self):
        with pytest.raises(NotFoundError):
            outbox_service.requeue_failed(event_id="01ARZ3NDEKTSV4RRFFQ69G5FAV")

    def test_release_stale(self, default_tenant):
        _enqueue(default_tenant.id, available_at=utcnow() - timedelta(minutes=20))
        claimed_at = utcnow() - timedelta(minutes=10)
        claim_batch(1, worker_id="crashed", now=claimed_at)
        assert outbox_service.release_stale(timeout_seconds=60) == 1
        event = OutboxEvent.query.one()
        assert event.status == "pending"
        assert "crashed" in event.error_message

    def test_fresh_locks_are_kept(self, default_tenant):
        _enqueue(default_tenant.id)
        claim_batch(1)
        assert outbox_service.release_stale(timeout_seconds=60) == 0

    def test_stats(self, default_tenant):
        _enqueue(default_tenant.id)
        _enqueue(default_tenant.id)
        claim_batch(1)
        stats = outbox_service.outbox_stats()
        assert stats["counts"] == {"completed": 0, "failed": 0, "pending": 1, "processing": 1}
        assert stats["oldest_pending_age_seconds"] >= 0

    def test_list_events_filters(self, default_tenant):
        _enqueue(default_tenant.id)
        assert outbox_service.list_events(status="pending").count() == 1
        assert outbox_service.list_events(tenant_id="someone-else").count() == 0
        with pytest.raises(ValidationError):
            outbox_service.list_events(status="lost")
