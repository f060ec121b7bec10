"""
Logging setup for the bug tracker.

Workflow code logs with extra={"task_id": ..., "step_id": ..., "action": ...}
so that each transition can be followed across requests. Outside debug and
testing the lines are emitted as JSON; otherwise as a short colored line.
LOG_LEVEL overrides the level picked for the environment.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

# Record attributes copied into JSON output when a caller passes them via extra=
EXTRA_FIELDS = (
    # request
    "method",
    "path",
    "status",
    "duration_ms",
    "remote_addr",
    "request_id",
    # workflow
    "task_id",
    "step_id",
    "action",
    "result",
    "error_code",
)

QUIET_LOGGERS = ("urllib3", "werkzeug", "sqlalchemy.engine", "alembic")


def _exception_text(formatter: logging.Formatter, record: logging.LogRecord) -> str | None:
    if record.exc_info and record.exc_info[0] is not None:
        return formatter.formatException(record.exc_info)
    return None


class JSONFormatter(logging.Formatter):
    """One JSON object per line, carrying any EXTRA_FIELDS set on the record."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        entry.update(
            (field, getattr(record, field))
            for field in EXTRA_FIELDS
            if getattr(record, field, None) is not None
        )
        exc = _exception_text(self, record)
        if exc:
            entry["exception"] = exc
        return json.dumps(entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    """Colored single-line output, e.g. ``10:02:11 INFO  wf: applied (task t-1) [4ms]``."""

    LEVEL_COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        parts = [
            f"{self.LEVEL_COLORS.get(record.levelname, '')}"
            f"{datetime.now():%H:%M:%S} {record.levelname:<8}{self.RESET}",
            f"{record.name}: {record.getMessage()}",
        ]
        task_id = getattr(record, "task_id", None)
        if task_id:
            parts.append(f"(task {task_id})")
        duration = getattr(record, "duration_ms", None)
        if duration is not None:
            parts.append(f"[{duration:.0f}ms]")
        line = " ".join(parts)
        exc = _exception_text(self, record)
        return f"{line}\n{exc}" if exc else line


def configure_logging(app):
    """Install a single stderr handler on the root logger for ``app``."""
    testing = app.config.get("TESTING", False)
    structured = not testing and not app.config.get("DEBUG", False)

    level_name = os.getenv("LOG_LEVEL") or ("INFO" if structured else "DEBUG")
    level = getattr(logging, level_name.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if structured else ReadableFormatter())
    handler.setLevel(level)

    # Test runs build several apps in one process
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    app.logger.setLevel(level)

    if not testing:
        app.logger.info("Logging ready (level=%s, %s)",
                        level_name, "json" if structured else "readable")
