import json
import logging

from flask import g

from app.middleware.logging_config import JSONFormatter, ReadableFormatter, RequestContextFilter


def _record(msg="outbox event delivered", **extra):
    record = logging.LogRecord("app.services.outbox_service", logging.INFO, __file__, 10, msg, (), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestFormatters:
    def test_json_carries_extras(self):
        line = JSONFormatter().format(_record(event_type="task.assigned", aggregate_id="T1"))
        entry = json.loads(line)
        assert entry["msg"] == "outbox event delivered"
        assert entry["level"] == "INFO"
        assert entry["event_type"] == "task.assigned"
        assert entry["aggregate_id"] == "T1"
        assert "tenant_id" not in entry

    def test_readable_shows_tenant_suffix(self):
        line = ReadableFormatter().format(_record(tenant_id="01HZZZZZZZZZZZZZZZZZABCDEF"))
        assert "[ABCDEF]" in line
        assert "outbox event delivered" in line


class TestRequestContextFilter:
    def test_outside_request(self):
        record = _record()
        assert RequestContextFilter().filter(record) is True
        assert getattr(record, "tenant_id", None) is None

    def test_stamps_request_context(self, app):
        with app.test_request_context("/api/v1/projects"):
            g.request_id = "req-1"
            g.tenant_id = "tenant-1"
            g.jwt_user_id = "user-1"
            record = _record()
            RequestContextFilter().filter(record)
        assert (record.request_id, record.tenant_id, record.user_id) == ("req-1", "tenant-1", "user-1")

    def test_explicit_extra_wins(self, app):
        with app.test_request_context("/api/v1/projects"):
            g.tenant_id = "tenant-1"
            record = _record(tenant_id="other")
            RequestContextFilter().filter(record)
        assert record.tenant_id == "other"
