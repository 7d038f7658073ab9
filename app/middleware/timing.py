"""
Request timing middleware.

Records request duration and logs slow requests.
Adds X-Request-Duration-Ms and X-Request-ID headers to all responses.
"""

import logging
import time

from flask import Flask, g, request

from app.utils.ids import new_ulid

logger = logging.getLogger(__name__)

# Endpoints excluded from timing logs (high frequency, low value)
_SKIP_LOG = frozenset({"/api/v1/health", "/api/v1/health/ready"})

# Slow request threshold (ms)
SLOW_THRESHOLD_MS = 1000


def init_request_timing(app: Flask):
    """Register before/after hooks for request timing."""

    @app.before_request
    def _start_timer():
        g.request_start = time.perf_counter()
        g.request_id = request.headers.get("X-Request-ID") or new_ulid()

    @app.after_request
    def _log_request(response):
        start = getattr(g, "request_start", None)
        if start is None:
            return response

        duration_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Request-Duration-Ms"] = f"{duration_ms:.1f}"
        response.headers["X-Request-ID"] = getattr(g, "request_id", "")

        tenant_id, project_id = _extract_scope()
        _record_metric(request.method, request.path, response.status_code, duration_ms,
                       tenant_id=tenant_id)

        if request.path not in _SKIP_LOG and not request.path.startswith("/static"):
            extra = {
                "method": request.method,
                "path": request.path,
                "status": response.status_code,
                "duration_ms": duration_ms,
                "remote_addr": request.remote_addr,
                "request_id": getattr(g, "request_id", ""),
                "tenant_id": tenant_id,
                "user_id": getattr(g, "jwt_user_id", None),
                "project_id": project_id,
            }
            if duration_ms > SLOW_THRESHOLD_MS:
                logger.warning("Slow request: %s %s %d (%.0fms)",
                               request.method, request.path,
                               response.status_code, duration_ms, extra=extra)
            elif response.status_code >= 500:
                logger.error("Server error: %s %s %d (%.0fms)",
                             request.method, request.path,
                             response.status_code, duration_ms, extra=extra)
            else:
                logger.debug("Request: %s %s %d (%.0fms)",
                             request.method, request.path,
                             response.status_code, duration_ms, extra=extra)

        return response


# ── In-memory metrics ring buffer ──────────────────────────────────────────
_metrics_buffer: list[dict] = []
_MAX_BUFFER = 10_000


def _extract_scope() -> tuple[str | None, str | None]:
    tenant_id = getattr(g, "tenant_id", None) or getattr(g, "jwt_tenant_id", None)
    view_args = request.view_args or {}
    project_id = view_args.get("project_id") or request.args.get("project_id")
    return tenant_id, project_id


def _record_metric(method: str, path: str, status_code: int, duration_ms: float, *,
                   tenant_id: str | None = None):
    """Append to the in-memory ring buffer."""
    _metrics_buffer.append({
        "ts": time.time(),
        "method": method,
        "path": path,
        "status": status_code,
        "ms": round(duration_ms, 1),
        "tenant_id": tenant_id,
    })
    if len(_metrics_buffer) > _MAX_BUFFER:
        del _metrics_buffer[:_MAX_BUFFER // 2]  # trim oldest half


def get_recent_metrics(seconds: int = 3600) -> list[dict]:
    """Return metrics from the last N seconds."""
    cutoff = time.time() - seconds
    return [m for m in _metrics_buffer if m["ts"] >= cutoff]


def summarize_metrics(seconds: int = 3600) -> dict:
    """Request count, error count and latency percentiles for the window."""
    recent = get_recent_metrics(seconds)
    if not recent:
        return {"window_seconds": seconds, "requests": 0, "errors": 0, "p50_ms": None, "p95_ms": None}
    durations = sorted(m["ms"] for m in recent)
    return {
        "window_seconds": seconds,
        "requests": len(recent),
        "errors": sum(1 for m in recent if m["status"] >= 500),
        "p50_ms": durations[len(durations) // 2],
        "p95_ms": durations[min(len(durations) - 1, int(len(durations) * 0.95))],
    }


def reset_metrics():
    """Clear metrics buffer (for testing)."""
    _metrics_buffer.clear()
