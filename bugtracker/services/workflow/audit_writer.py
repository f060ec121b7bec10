"""
Workflow audit log writer.

One ``WorkflowAuditLog`` row per ``apply_action`` call, successful or not.
Rows are only ever inserted.  ``write_workflow_audit`` uses ``flush`` so the
caller keeps transaction control: on success the row commits together with
the step/task update, on failure it commits alone.

Ordering: ``sequence`` is max+1 per task, unique per (task_id, sequence).

The read side builds a per-task history and platform-wide statistics
from the same rows.
The task row is locked (or version-checked) by the engine for the duration
of the action, so sequence numbers never collide for a single task.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone

from sqlalchemy import func, select

from bugtracker.core.exceptions import NotFoundError
from bugtracker.models import db
from bugtracker.models.task import Task
from bugtracker.models.workflow import WorkflowAuditLog, WorkflowDefinition

logger = logging.getLogger(__name__)

# Audit ``action`` value → history event type (successful rows only)
_EVENT_TYPES = {
    "complete": "step_completed",
    "decide_yes": "decision_made",
    "decide_no": "decision_made",
    "decide": "decision_made",
    "auto_check": "auto_check",
    "add_note": "note_added",
}


def _aware(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes even for timezone=True columns
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _clip(value, column: str) -> str | None:
    """Cut ``value`` to the width of a WorkflowAuditLog column."""
    if value is None:
        return None
    width = WorkflowAuditLog.__table__.c[column].type.length
    text = str(value)
    return text[:width] if width else text


def next_sequence(task_id: str) -> int:
    current = db.session.execute(
        select(func.coalesce(func.max(WorkflowAuditLog.sequence), 0))
        .where(WorkflowAuditLog.task_id == task_id)
    ).scalar_one()
    return int(current) + 1


def write_workflow_audit(
    *,
    task_id: str,
    action: str,
    success: bool,
    step_id: str | None = None,
    step_name: str = "",
    actor: str = "system",
    error_code: str | None = None,
    reason: str | None = None,
    previous_step_id: str | None = None,
    next_step_id: str | None = None,
    decision: str | None = None,
    notes: str | None = None,
    conditions_evaluated: list | None = None,
    context_snapshot: dict | None = None,
    duration_ms: int | None = None,
) -> WorkflowAuditLog:
    """
    Append a single workflow audit row and flush.

    Returns the (flushed) WorkflowAuditLog instance.
    """
    entry = WorkflowAuditLog(
        task_id=str(task_id),
        sequence=next_sequence(str(task_id)),
        step_id=_clip(step_id, "step_id"),
        step_name=_clip(step_name or "", "step_name"),
        action=_clip(action, "action"),
        result="success" if success else "failure",
        error_code=error_code,
        reason=reason,
        previous_step_id=_clip(previous_step_id, "previous_step_id"),
        next_step_id=_clip(next_step_id, "next_step_id"),
        decision=_clip(decision, "decision"),
        notes=notes,
        conditions_evaluated_json=json.dumps(conditions_evaluated, default=str) if conditions_evaluated else None,
        context_snapshot_json=json.dumps(context_snapshot or {}, default=str),
        actor=_clip(actor or "system", "actor"),
        duration_ms=duration_ms,
    )
    db.session.add(entry)
    db.session.flush()

    logger.info(
        "Workflow audit #%s task=%s action=%s result=%s",
        entry.sequence, task_id, action, entry.result,
        extra={
            "task_id": task_id,
            "step_id": step_id,
            "action": action,
            "result": entry.result,
            "error_code": error_code,
        },
    )
    return entry


def get_audit_trail(task_id: str) -> list[WorkflowAuditLog]:
    """All audit rows of a task in sequence order."""
    return list(
        db.session.execute(
            select(WorkflowAuditLog)
            .where(WorkflowAuditLog.task_id == str(task_id))
            .order_by(WorkflowAuditLog.sequence.asc())
        ).scalars()
    )


def _event_for(row: WorkflowAuditLog) -> dict:
    if row.succeeded:
        event_type = _EVENT_TYPES.get(row.action, "step_completed")
    else:
        event_type = "action_rejected"

    if event_type == "decision_made":
        description = f"Decision '{row.decision}' made on '{row.step_name}'"
    elif event_type == "auto_check":
        description = f"Auto-check '{row.step_name}' evaluated to {row.decision}"
    elif event_type == "note_added":
        description = f"Note added on '{row.step_name}'"
    elif event_type == "action_rejected":
        description = f"Action '{row.action}' on '{row.step_name}' rejected: {row.reason}"
    else:
        description = f"Step '{row.step_name}' completed"

    return {
        "sequence": row.sequence,
        "event_type": event_type,
        "description": description,
        "step_id": row.step_id,
        "step_name": row.step_name,
        "action": row.action,
        "result": row.result,
        "error_code": row.error_code,
        "previous_step_id": row.previous_step_id,
        "next_step_id": row.next_step_id,
        "decision": row.decision,
        "notes": row.notes,
        "conditions_evaluated": row.conditions_evaluated,
        "actor": row.actor,
        "timestamp": _aware(row.timestamp).isoformat() if row.timestamp else None,
        "duration_ms": row.duration_ms,
    }


def get_workflow_history(task_id: str, now: datetime | None = None) -> dict:
    """
    Ordered history of a task's workflow.

    Starts with a synthetic ``task_created`` event when the task still
    exists, followed by one event per audit row.  ``total_duration_seconds``
    runs from the first event to the task's completion (or ``now``).
    """
    task = db.session.get(Task, str(task_id))
    rows = get_audit_trail(task_id)
    if task is None and not rows:
        raise NotFoundError(resource="Task", resource_id=task_id)

    events = []
    if task is not None:
        events.append({
            "sequence": 0,
            "event_type": "task_created",
            "description": f"Task '{task.title}' created",
            "step_id": task.initial_step_id,
            "actor": "system",
            "timestamp": _aware(task.created_at).isoformat() if task.created_at else None,
        })
    events.extend(_event_for(row) for row in rows)

    started = _aware(task.created_at) if task is not None else _aware(rows[0].timestamp)
    finished = _aware(task.completed_at) if task is not None and task.completed_at else None
    end = finished or now or datetime.now(timezone.utc)
    total_seconds = max((end - started).total_seconds(), 0.0) if started else 0.0

    return {
        "task_id": str(task_id),
        "is_complete": bool(task is not None and task.is_complete),
        "started_at": started.isoformat() if started else None,
        "completed_at": finished.isoformat() if finished else None,
        "total_duration_seconds": round(total_seconds, 3),
        "event_count": len(events),
        "events": events,
    }


# Successful audit actions that complete a step
_STEP_COMPLETING_ACTIONS = ("complete", "decide_yes", "decide_no", "decide", "auto_check")
AD_HOC_WORKFLOW = "ad hoc"


def get_workflow_statistics(now: datetime | None = None) -> dict:
    """
    Platform-wide workflow figures.

    Task counts come from the task table; step completions and rejected
    actions come from the audit log, so they include tasks deleted since.
    Tasks created from explicit steps are counted under ``"ad hoc"``.
    """
    by_status = dict(db.session.execute(
        select(Task.status, func.count(Task.id)).group_by(Task.status)
    ).all())
    total = sum(by_status.values())

    durations = []
    for created_at, completed_at in db.session.execute(
        select(Task.created_at, Task.completed_at)
        .where(Task.status == "completed", Task.completed_at.is_not(None))
    ).all():
        started, finished = _aware(created_at), _aware(completed_at)
        if started and finished:
            durations.append(max((finished - started).total_seconds(), 0.0) / 60)
    average_minutes = round(sum(durations) / len(durations), 2) if durations else 0.0

    step_counts = dict(db.session.execute(
        select(WorkflowAuditLog.step_name, func.count(WorkflowAuditLog.id))
        .where(
            WorkflowAuditLog.result == "success",
            WorkflowAuditLog.action.in_(_STEP_COMPLETING_ACTIONS),
        )
        .group_by(WorkflowAuditLog.step_name)
    ).all())

    rejected = db.session.execute(
        select(func.count(WorkflowAuditLog.id)).where(WorkflowAuditLog.result == "failure")
    ).scalar_one()

    usage: dict[str, int] = {}
    for name, count in db.session.execute(
        select(WorkflowDefinition.name, func.count(Task.id))
        .select_from(Task)
        .outerjoin(WorkflowDefinition, Task.workflow_definition_id == WorkflowDefinition.id)
        .group_by(WorkflowDefinition.name)
    ).all():
        key = name or AD_HOC_WORKFLOW
        usage[key] = usage.get(key, 0) + count

    return {
        "total_workflows": total,
        "active_workflows": by_status.get("open", 0) + by_status.get("in_progress", 0),
        "completed_workflows": by_status.get("completed", 0),
        "average_completion_minutes": average_minutes,
        "rejected_actions": int(rejected),
        "step_completion_counts": step_counts,
        "workflow_usage_counts": usage,
        "generated_at": (now or datetime.now(timezone.utc)).isoformat(),
    }
