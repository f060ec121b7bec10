"""
Tests: logging formatters, API error helpers, config guards, request timing.
"""

import json
import logging

import pytest

from bugtracker.config import ProductionConfig
from bugtracker.middleware.logging_config import JSONFormatter, ReadableFormatter
from bugtracker.utils.errors import E, api_error, status_for


def _record(**extra):
    record = logging.LogRecord("bugtracker.test", logging.INFO, __file__, 1, "applied %s", ("x",), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_formatter_copies_workflow_fields():
    line = JSONFormatter().format(_record(task_id="t-1", action="complete", result="success"))
    payload = json.loads(line)
    assert payload["message"] == "applied x"
    assert payload["task_id"] == "t-1"
    assert payload["action"] == "complete"
    assert payload["result"] == "success"
    assert "step_id" not in payload


def test_readable_formatter_mentions_task():
    line = ReadableFormatter().format(_record(task_id="t-9", duration_ms=12.0))
    assert "(task t-9)" in line
    assert "[12ms]" in line


@pytest.mark.parametrize("code, status", [
    (E.STEP_MISMATCH, 409),
    (E.TASK_ALREADY_COMPLETE, 409),
    (E.CONCURRENCY_CONFLICT, 409),
    (E.ACTION_ROLE_MISMATCH, 422),
    (E.VALIDATION_FAILED, 422),
    (E.INVALID_GRAPH, 422),
    (E.NOT_FOUND, 404),
    ("SOMETHING_ELSE", 400),
    (None, 400),
])
def test_status_for(code, status):
    assert status_for(code) == status


def test_api_error_body():
    response, status = api_error(E.INVALID_GRAPH, "bad graph", details={"problems": ["x"]})
    assert status == 422
    assert response.get_json() == {"error": "bad graph", "code": "INVALID_GRAPH", "details": {"problems": ["x"]}}


def test_production_config_requires_database_url(monkeypatch):
    monkeypatch.setattr(ProductionConfig, "SQLALCHEMY_DATABASE_URI", None)
    with pytest.raises(RuntimeError):
        ProductionConfig()


def test_production_config_requires_secret_key(monkeypatch):
    monkeypatch.setattr(ProductionConfig, "SQLALCHEMY_DATABASE_URI", "postgresql://db/bugs")
    monkeypatch.delenv("SECRET_KEY", raising=False)
    with pytest.raises(RuntimeError):
        ProductionConfig()


def test_testing_config_disables_rate_limits(app):
    assert app.config["RATELIMIT_ENABLED"] is False
    assert app.config["WORKFLOW_NOTE_MIN_LENGTH"] == 1


def test_request_timing_headers(client):
    res = client.get("/api/v1/health", headers={"X-Request-ID": "abc123"})
    assert res.headers["X-Request-ID"] == "abc123"
    assert float(res.headers["X-Request-Duration-Ms"]) >= 0


def test_unknown_route_is_json_404(client):
    res = client.get("/api/v1/nowhere")
    assert res.status_code == 404
    assert res.get_json()["path"] == "/api/v1/nowhere"
