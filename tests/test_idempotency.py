from datetime import timedelta

import pytest

from app.core.exceptions import IdempotencyConflictError, ValidationError
from app.models.reliability import IdempotencyKey
from app.services import idempotency_service as idem
from app.utils.helpers import utcnow

SCOPE = "POST /api/v1/projects"


def _begin(key="key-1", body=b'{"name": "A"}', tenant_id=None, now=None):
    return idem.begin_request(key=key, scope=SCOPE, request_hash=idem.hash_request_body(body),
                              tenant_id=tenant_id, now=now)


class TestHashRequestBody:
    def test_str_and_bytes_agree(self):
        assert idem.hash_request_body("abc") == idem.hash_request_body(b"abc")

    def test_none_is_empty(self):
        assert idem.hash_request_body(None) == idem.hash_request_body(b"")


class TestBeginRequest:
    def test_first_use(self):
        record, replay = _begin()
        assert replay is False
        assert record.status == "processing"
        assert record.expires_at is not None

    def test_in_progress_conflict(self):
        _begin()
        with pytest.raises(IdempotencyConflictError) as exc:
            _begin()
        assert exc.value.reason == "in_progress"
        assert exc.value.status_code == 409

    def test_completed_replays(self):
        _begin()
        idem.complete_request("key-1", 201, {"id": "abc"})
        record, replay = _begin()
        assert replay is True
        assert record.response_status == 201
        assert record.response_body == {"id": "abc"}

    def test_body_mismatch(self):
        _begin()
        idem.complete_request("key-1", 201, {"id": "abc"})
        with pytest.raises(IdempotencyConflictError) as exc:
            _begin(body=b'{"name": "B"}')
        assert exc.value.reason == "mismatch"
        assert exc.value.status_code == 422

    def test_tenant_mismatch(self, default_tenant):
        _begin(tenant_id=default_tenant.id)
        with pytest.raises(IdempotencyConflictError):
            _begin(tenant_id=None)

    def test_failed_key_can_retry(self):
        _begin()
        idem.fail_request("key-1", "boom")
        record, replay = _begin()
        assert replay is False
        assert record.status == "processing"
        assert record.error_message is None

    def test_expired_key_is_reset(self):
        past = utcnow() - timedelta(hours=48)
        _begin(now=past)
        # A different body is fine once the old record has expired
        record, replay = _begin(body=b"other")
        assert replay is False
        assert record.request_hash == idem.hash_request_body(b"other")

    @pytest.mark.parametrize("key", ["", "x" * 256])
    def test_key_length(self, key):
        with pytest.raises(ValidationError):
            _begin(key=key)


class TestCompleteAndPurge:
    def test_complete_requires_processing(self):
        _begin()
        idem.complete_request("key-1", 200, {})
        with pytest.raises(ValidationError):
            idem.complete_request("key-1", 200, {})

    def test_fail_unknown_key(self):
        assert idem.fail_request("nope", "x") is None

    def test_purge_expired(self):
        _begin(key="old", now=utcnow() - timedelta(hours=48))
        _begin(key="fresh")
        assert idem.purge_expired() == 1
        assert [r.key for r in IdempotencyKey.query.all()] == ["fresh"]
