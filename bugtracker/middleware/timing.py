"""
Per-request timing and correlation ids.

Every response carries X-Request-ID (echoed from the caller when supplied)
and X-Request-Duration-Ms. Requests under a task URL are logged with the
task id so that an action can be matched to its audit entries.
"""

import logging
import time
import uuid

from flask import Flask, g, request

logger = logging.getLogger(__name__)

QUIET_PATHS = frozenset({"/api/v1/health"})

SLOW_THRESHOLD_MS = 1000


def _log_level(status: int, duration_ms: float) -> int:
    if duration_ms > SLOW_THRESHOLD_MS:
        return logging.WARNING
    if status >= 500:
        return logging.ERROR
    return logging.DEBUG


def init_request_timing(app: Flask):
    @app.before_request
    def _start_clock():
        g.request_start = time.perf_counter()
        g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]

    @app.after_request
    def _stamp_response(response):
        started = getattr(g, "request_start", None)
        if started is None:
            return response

        elapsed = (time.perf_counter() - started) * 1000
        response.headers["X-Request-ID"] = g.request_id
        response.headers["X-Request-Duration-Ms"] = f"{elapsed:.1f}"

        if request.path not in QUIET_PATHS:
            level = _log_level(response.status_code, elapsed)
            label = {logging.WARNING: "Slow request", logging.ERROR: "Server error"}.get(level, "Request")
            logger.log(
                level, "%s: %s %s %d (%.0fms)",
                label, request.method, request.path, response.status_code, elapsed,
                extra={
                    "method": request.method,
                    "path": request.path,
                    "status": response.status_code,
                    "duration_ms": elapsed,
                    "remote_addr": request.remote_addr,
                    "request_id": g.request_id,
                    "task_id": (request.view_args or {}).get("task_id"),
                },
            )
        return response
