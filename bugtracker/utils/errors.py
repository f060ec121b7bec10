"""JSON error bodies for the REST layer.

Every failing endpoint answers with::

    {"error": "<message>", "code": "<E.* constant>", "details": {...}}

``details`` is present only when there is something to put in it.
Workflow codes are the same strings the engine puts on ActionResult.error_code,
so a blueprint can pass a failed result straight through::

    return api_error(result.error_code, "; ".join(result.error_messages))
"""

from __future__ import annotations

from flask import jsonify


class E:
    """Error codes understood by API clients."""

    # request payload problems (400)
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"

    NOT_FOUND = "ERR_NOT_FOUND"
    CONFLICT_DUPLICATE = "ERR_CONFLICT_DUPLICATE"

    DATABASE = "ERR_DATABASE"
    INTERNAL = "ERR_INTERNAL"

    # workflow engine
    INVALID_GRAPH = "INVALID_GRAPH"
    STEP_MISMATCH = "STEP_MISMATCH"
    ACTION_ROLE_MISMATCH = "ACTION_ROLE_MISMATCH"
    VALIDATION_FAILED = "VALIDATION_FAILED"
    TASK_ALREADY_COMPLETE = "TASK_ALREADY_COMPLETE"
    CONCURRENCY_CONFLICT = "CONCURRENCY_CONFLICT"


# Stale-state failures are 409 so clients know to refetch and retry;
# rule violations on an otherwise valid request are 422.
_STATUS_BY_CODE: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.NOT_FOUND: 404,
    E.CONFLICT_DUPLICATE: 409,
    E.STEP_MISMATCH: 409,
    E.TASK_ALREADY_COMPLETE: 409,
    E.CONCURRENCY_CONFLICT: 409,
    E.INVALID_GRAPH: 422,
    E.ACTION_ROLE_MISMATCH: 422,
    E.VALIDATION_FAILED: 422,
    E.DATABASE: 500,
    E.INTERNAL: 500,
}


def status_for(code: str | None) -> int:
    """HTTP status for an error code; 400 when unmapped."""
    return _STATUS_BY_CODE.get(code or "", 400)


def api_error(code: str, message: str, *, status: int | None = None, details: dict | None = None):
    """Build ``(response, status)`` for a Flask view.

    ``status`` overrides the code's usual status.
    """
    body: dict = {"error": message, "code": code}
    if details:
        body["details"] = details
    return jsonify(body), status or status_for(code)
