"""
Project Workspace Platform
Scheduler Service.

Lightweight background job runner.  Jobs are plain functions registered
with ``@register_job`` and executed inside the Flask app context, either by
an external trigger (cron hitting the CLI / admin API) or manually in
development and tests.

Architecture:
    - SchedulerService: job registration, execution and run history
    - Jobs are stored in the ScheduledJob model for persistence
    - A job that raises is recorded as failed and copied to
      ``dead_letter_jobs`` for manual triage (``resolve_dead_letter``)
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Callable

from flask import Flask

from app.core.exceptions import NotFoundError, ValidationError
from app.models import db
from app.models.reliability import DeadLetterJob
from app.models.scheduling import ScheduledJob

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Job Registry
# ═══════════════════════════════════════════════════════════════════════════

_job_registry: dict[str, Callable] = {}


def register_job(name: str):
    """Decorator to register a job function.

    Usage:
        @register_job("outbox_dispatcher")
        def dispatch_outbox(app):
            ...
    """
    def decorator(fn: Callable) -> Callable:
        _job_registry[name] = fn
        return fn
    return decorator


def get_registered_jobs() -> dict[str, Callable]:
    """Return all registered job functions."""
    return dict(_job_registry)


class SchedulerService:
    """
    Lightweight scheduler service.

    Manages job registration, persistence, and execution.
    Jobs are executed within Flask app context.
    """

    _app: Flask | None = None

    @classmethod
    def init_app(cls, app: Flask) -> None:
        """Initialize scheduler with Flask app context."""
        cls._app = app
        app.extensions["scheduler"] = cls
        logger.info("SchedulerService initialized with %d registered jobs",
                    len(_job_registry))

    @classmethod
    def ensure_jobs_registered(cls) -> list[ScheduledJob]:
        """
        Ensure all registered jobs have a corresponding DB record.
        Creates missing records with default config.
        """
        if not cls._app:
            return []

        created = []
        with cls._app.app_context():
            for name, fn in _job_registry.items():
                if ScheduledJob.query.filter_by(job_name=name).first():
                    continue
                job = ScheduledJob(
                    job_name=name,
                    description=(fn.__doc__ or f"Scheduled job: {name}").strip().splitlines()[0],
                    schedule_type=_get_default_schedule(name).get("type", "cron"),
                    schedule_config=_get_default_schedule(name),
                    status="active",
                    is_enabled=True,
                )
                db.session.add(job)
                created.append(job)
            if created:
                db.session.commit()
                logger.info("Created %d scheduled job records", len(created))
        return created

    @classmethod
    def run_job(cls, job_name: str) -> dict:
        """
        Execute a single job by name.

        Returns:
            Dict with status, duration_ms, result or error.
        """
        fn = _job_registry.get(job_name)
        if not fn:
            return {"job_name": job_name, "status": "error", "error": f"Unknown job: {job_name}"}

        if not cls._app:
            return {"job_name": job_name, "status": "error", "error": "Scheduler not initialized"}

        start = time.monotonic()
        result = None
        error = None
        status = "success"

        with cls._app.app_context():
            job_record = ScheduledJob.query.filter_by(job_name=job_name).first()
            if job_record is not None and not job_record.is_enabled:
                return {"job_name": job_name, "status": "skipped", "error": None,
                        "duration_ms": 0, "result": None}
            try:
                result = fn(cls._app)
            except Exception as exc:
                db.session.rollback()
                status = "failed"
                error = str(exc)
                logger.exception("Job %s failed: %s", job_name, exc)

            duration_ms = int((time.monotonic() - start) * 1000)

            job_record = ScheduledJob.query.filter_by(job_name=job_name).first()
            if job_record:
                job_record.record_run(
                    status=status,
                    duration_ms=duration_ms,
                    result=result if isinstance(result, dict) else {"output": str(result)},
                    error=error,
                )
            if status == "failed":
                db.session.add(DeadLetterJob(
                    source="job",
                    job_name=job_name,
                    payload={"duration_ms": duration_ms},
                    error_message=error,
                    attempts=1,
                ))
            db.session.commit()

        return {
            "job_name": job_name,
            "status": status,
            "duration_ms": duration_ms,
            "result": result,
            "error": error,
        }

    @classmethod
    def list_jobs(cls) -> list[dict]:
        """List all registered jobs with their DB status."""
        jobs = []
        for name in _job_registry:
            job_record = ScheduledJob.query.filter_by(job_name=name).first()
            jobs.append({
                "job_name": name,
                "registered": True,
                "db_record": job_record.to_dict() if job_record else None,
            })
        return jobs

    @classmethod
    def get_job_status(cls, job_name: str) -> dict | None:
        """Get status of a specific job."""
        job_record = ScheduledJob.query.filter_by(job_name=job_name).first()
        if job_record:
            return job_record.to_dict()
        return None

    @classmethod
    def toggle_job(cls, job_name: str, enabled: bool) -> dict | None:
        """Enable or disable a scheduled job."""
        job_record = ScheduledJob.query.filter_by(job_name=job_name).first()
        if not job_record:
            return None
        job_record.is_enabled = enabled
        job_record.status = "active" if enabled else "paused"
        db.session.commit()
        return job_record.to_dict()


# ═══════════════════════════════════════════════════════════════════════════
#  Dead letters
# ═══════════════════════════════════════════════════════════════════════════

def list_dead_letters(*, source: str | None = None, unresolved_only: bool = True,
                      tenant_id: str | None = None):
    """Query of dead-letter rows, newest first."""
    q = DeadLetterJob.query
    if source:
        q = q.filter(DeadLetterJob.source == source)
    if unresolved_only:
        q = q.filter(DeadLetterJob.resolved_at.is_(None))
    if tenant_id:
        q = q.filter(DeadLetterJob.tenant_id == tenant_id)
    return q.order_by(DeadLetterJob.failed_at.desc(), DeadLetterJob.id.desc())


def resolve_dead_letter(dead_letter_id: str, *, note: str = "", resolved_by: str | None = None) -> DeadLetterJob:
    """Mark a dead letter as handled.  Resolving twice is an error."""
    row = db.session.get(DeadLetterJob, dead_letter_id)
    if row is None:
        raise NotFoundError(resource="DeadLetterJob", resource_id=dead_letter_id)
    if row.is_resolved:
        raise ValidationError("Dead letter already resolved", details={"resolved_at": row.resolved_at.isoformat()})
    row.resolved_at = datetime.now(timezone.utc)
    row.resolved_by = resolved_by
    row.resolution_note = note or ""
    db.session.commit()
    logger.info("Dead letter %s (%s/%s) resolved", row.id, row.source, row.job_name)
    return row


def _get_default_schedule(job_name: str) -> dict:
    """Return default schedule config for known job types."""
    defaults = {
        "outbox_dispatcher": {"type": "interval", "seconds": 10, "description": "Every 10 seconds"},
        "outbox_release_stale": {"type": "interval", "minutes": 5, "description": "Every 5 minutes"},
        "idempotency_purge": {"type": "cron", "minute": "15", "description": "Hourly at :15"},
        "daily_project_snapshots": {"type": "cron", "hour": "1", "minute": "0",
                                    "description": "Daily at 01:00"},
        "integrity_guard": {"type": "cron", "hour": "3", "minute": "0", "description": "Daily at 03:00"},
        "billing_overdue_check": {"type": "cron", "hour": "6", "minute": "0",
                                  "description": "Daily at 06:00"},
    }
    return defaults.get(job_name, {"type": "cron", "hour": "0", "minute": "0",
                                   "description": "Daily at midnight"})
