"""
Idempotency Key Service.

A client retrying a mutating request sends the same ``Idempotency-Key``
header.  The first request inserts a ``processing`` row (``key`` is globally
unique); when it finishes the response is stored on the row.

Repeated key:
    completed, same scope + body hash  → cached response is replayed
    scope or body hash differs         → IdempotencyConflictError("mismatch")
    still processing                   → IdempotencyConflictError("in_progress")
    failed                             → row reset to processing, request re-runs
    expired (past TTL)                 → row reset, treated as a new request

Concurrent first use: both requests try to INSERT; the unique constraint
lets exactly one win.  The loser rolls back, reads the winner's row and
follows the rules above.

Usage (blueprint):
    @projects_bp.route("/projects", methods=["POST"])
    @idempotent
    def create_project():
        ...
"""

from __future__ import annotations

import hashlib
import logging
from datetime import timedelta
from functools import wraps

from flask import current_app, g, has_app_context, jsonify, request
from sqlalchemy.exc import IntegrityError

from app.core.exceptions import IdempotencyConflictError, NotFoundError, ValidationError
from app.models import db
from app.models.reliability import IdempotencyKey
from app.utils.errors import E, api_error
from app.utils.helpers import as_utc, utcnow

logger = logging.getLogger(__name__)

IDEMPOTENCY_HEADER = "Idempotency-Key"
REPLAY_HEADER = "Idempotent-Replayed"
DEFAULT_TTL_HOURS = 24
MAX_KEY_LENGTH = 255


def _ttl_hours() -> int:
    if has_app_context():
        return current_app.config.get("IDEMPOTENCY_TTL_HOURS", DEFAULT_TTL_HOURS)
    return DEFAULT_TTL_HOURS


def hash_request_body(body: bytes | str | None) -> str:
    if body is None:
        body = b""
    if isinstance(body, str):
        body = body.encode("utf-8")
    return hashlib.sha256(body).hexdigest()


def _load(key: str) -> IdempotencyKey | None:
    return IdempotencyKey.query.filter_by(key=key).first()


def _reset(record: IdempotencyKey, *, scope: str, request_hash: str, tenant_id, now) -> None:
    record.scope = scope
    record.request_hash = request_hash
    record.tenant_id = tenant_id
    record.status = "processing"
    record.response_status = None
    record.response_body = None
    record.error_message = None
    record.completed_at = None
    record.locked_at = now
    record.expires_at = now + timedelta(hours=_ttl_hours())


def _resolve_existing(record, *, key, scope, request_hash, tenant_id, now):
    if as_utc(record.expires_at) <= now:
        logger.info("Idempotency key %s expired; treating as new request", key)
        _reset(record, scope=scope, request_hash=request_hash, tenant_id=tenant_id, now=now)
        db.session.commit()
        return record, False

    if record.scope != scope or record.request_hash != request_hash or record.tenant_id != tenant_id:
        raise IdempotencyConflictError(key, "mismatch")

    if record.status == "completed":
        return record, True
    if record.status == "processing":
        raise IdempotencyConflictError(key, "in_progress")

    # failed: allow the client to retry with the same key
    _reset(record, scope=scope, request_hash=request_hash, tenant_id=tenant_id, now=now)
    db.session.commit()
    return record, False


def begin_request(
    *,
    key: str,
    scope: str,
    request_hash: str,
    tenant_id: str | None = None,
    now=None,
) -> tuple[IdempotencyKey, bool]:
    """Register *key* for a request.

    Returns:
        (record, replay) — ``replay`` is True when ``record`` holds a cached
        response that must be returned instead of executing the request.

    Raises:
        ValidationError: Empty or over-long key.
        IdempotencyConflictError: Key in flight, or reused for another request.
    """
    if not key or len(key) > MAX_KEY_LENGTH:
        raise ValidationError(
            f"Idempotency key must be 1..{MAX_KEY_LENGTH} characters",
            details={"key": "invalid length"},
        )
    now = now or utcnow()

    existing = _load(key)
    if existing is None:
        record = IdempotencyKey(
            key=key,
            scope=scope,
            request_hash=request_hash,
            tenant_id=tenant_id,
            status="processing",
            locked_at=now,
            expires_at=now + timedelta(hours=_ttl_hours()),
        )
        db.session.add(record)
        try:
            db.session.commit()
            return record, False
        except IntegrityError:
            # Lost the insert race: read the winner's row
            db.session.rollback()
            logger.info("Idempotency key %s inserted concurrently; using existing row", key)
            existing = _load(key)
            if existing is None:
                raise

    return _resolve_existing(
        existing, key=key, scope=scope, request_hash=request_hash,
        tenant_id=tenant_id, now=now,
    )


def complete_request(key: str, status_code: int, body, *, now=None) -> IdempotencyKey:
    """Store the response for *key* and mark it completed."""
    record = _load(key)
    if record is None:
        raise NotFoundError(resource="IdempotencyKey", resource_id=key)
    if record.status != "processing":
        raise ValidationError(
            f"Idempotency key {key!r} is {record.status}, expected processing",
            details={"status": record.status},
        )
    record.status = "completed"
    record.response_status = status_code
    record.response_body = body
    record.completed_at = now or utcnow()
    db.session.commit()
    return record


def fail_request(key: str, error: str) -> IdempotencyKey | None:
    """Mark *key* failed so the client may retry it."""
    record = _load(key)
    if record is None:
        return None
    record.status = "failed"
    record.error_message = str(error)[:2000]
    db.session.commit()
    return record


def purge_expired(*, now=None) -> int:
    """Delete rows past their TTL.  Returns the number removed."""
    now = now or utcnow()
    count = IdempotencyKey.query.filter(IdempotencyKey.expires_at <= now).delete(
        synchronize_session=False
    )
    db.session.commit()
    if count:
        logger.info("Purged %d expired idempotency key(s)", count)
    return count


# ═══════════════════════════════════════════════════════════════════════════
#  View decorator
# ═══════════════════════════════════════════════════════════════════════════

def idempotent(view):
    """Honour the ``Idempotency-Key`` header on a JSON view.

    Without the header the view runs normally.  Responses below 500 are
    cached; 5xx and exceptions mark the key failed so a retry re-executes.
    """

    @wraps(view)
    def wrapper(*args, **kwargs):
        key = request.headers.get(IDEMPOTENCY_HEADER)
        if not key:
            return view(*args, **kwargs)

        scope = f"{request.method} {request.path}"
        try:
            record, replay = begin_request(
                key=key,
                scope=scope,
                request_hash=hash_request_body(request.get_data()),
                tenant_id=getattr(g, "tenant_id", None),
            )
        except ValidationError as exc:
            return api_error(E.VALIDATION_INVALID, str(exc), details=exc.details)
        except IdempotencyConflictError as exc:
            code = E.IDEMPOTENCY_IN_PROGRESS if exc.reason == "in_progress" else E.IDEMPOTENCY_MISMATCH
            return api_error(code, str(exc), status=exc.status_code)

        if replay:
            response = jsonify(record.response_body)
            response.status_code = record.response_status
            response.headers[REPLAY_HEADER] = "true"
            return response

        try:
            rv = view(*args, **kwargs)
        except Exception as exc:
            db.session.rollback()
            fail_request(key, repr(exc))
            raise

        response = current_app.make_response(rv)
        if response.status_code < 500 and response.is_json:
            complete_request(key, response.status_code, response.get_json())
        else:
            db.session.rollback()
            fail_request(key, f"HTTP {response.status_code}")
        return response

    return wrapper
