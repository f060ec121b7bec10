"""
Transition engine for task step workflows.

The workflow state of a task is never stored separately: the current step is
derived on every call by walking the step graph from ``initial_step_id``
through the recorded outcomes of completed steps.

apply_action() is the single write path:

    load task (SELECT … FOR UPDATE, version_id_col)
      → preconditions, in order:
            task not completed         TaskAlreadyCompleteError
            step is the current step   StepMismatchError
            action fits the step role  ActionRoleMismatchError
            payload passes validation  ValidationError
            expected_version matches   ConcurrencyConflictError
      → complete step / record outcome / persist note
      → resolve next step, update task status
      → append audit row, commit

Any precondition failure writes only a failure audit row and returns an
unsuccessful ``ActionResult``; a StaleDataError at flush time is rolled back
and reported the same way as a concurrency conflict.

Terminal steps that do not require a note are completed on arrival, which
completes the task in the same transaction as the action that reached them.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import lru_cache

from flask import current_app
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from bugtracker.core.exceptions import (
    ActionRoleMismatchError,
    ConcurrencyConflictError,
    NotFoundError,
    StepMismatchError,
    TaskAlreadyCompleteError,
    ValidationError,
    WorkflowError,
)
from bugtracker.models import db
from bugtracker.models.task import Task, TaskNote
from bugtracker.services.workflow.audit_writer import write_workflow_audit
from bugtracker.services.workflow.rule_engine import evaluate_rule
from bugtracker.services.workflow.step_graph import StepGraph, StepRole
from bugtracker.services.workflow.validation import NoteRules, normalize_decision, validate_action

logger = logging.getLogger(__name__)

# ── Action types ─────────────────────────────────────────────────────────────

COMPLETE = "complete"
DECIDE_YES = "decide_yes"
DECIDE_NO = "decide_no"
DECIDE = "decide"
AUTO_CHECK = "auto_check"
ADD_NOTE = "add_note"

ACTION_TYPES = (COMPLETE, DECIDE_YES, DECIDE_NO, DECIDE, AUTO_CHECK, ADD_NOTE)

_ROLE_ACTIONS = {
    StepRole.ACTION.value: (COMPLETE,),
    StepRole.TERMINAL.value: (COMPLETE,),
    StepRole.DECISION.value: (DECIDE_YES, DECIDE_NO, DECIDE),
    StepRole.AUTO_CHECK.value: (AUTO_CHECK,),
}

_ACTION_META = {
    COMPLETE: ("Mark Complete", "primary"),
    DECIDE_YES: ("Yes", "success"),
    DECIDE_NO: ("No", "danger"),
    AUTO_CHECK: ("Run Auto-Check", "secondary"),
    ADD_NOTE: ("Add Note", "outline"),
}

MAX_AUTO_CHECKS = 50

# Width of TaskStep.completed_by and TaskNote.created_by
ACTOR_MAX_LENGTH = 100


@dataclass
class ActionResult:
    success: bool
    task_id: str
    step_id: str | None
    action_type: str
    error_code: str | None = None
    error_messages: list[str] = field(default_factory=list)
    warning_messages: list[str] = field(default_factory=list)
    info_messages: list[str] = field(default_factory=list)
    violations: list = field(default_factory=list)
    next_step_id: str | None = None
    audit_sequence: int | None = None
    new_state: dict | None = None
    error: WorkflowError | None = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "task_id": self.task_id,
            "step_id": self.step_id,
            "action_type": self.action_type,
            "error_code": self.error_code,
            "error_messages": self.error_messages,
            "warning_messages": self.warning_messages,
            "info_messages": self.info_messages,
            "violations": [v.to_dict() for v in self.violations],
            "next_step_id": self.next_step_id,
            "audit_sequence": self.audit_sequence,
            "new_state": self.new_state,
        }


# ── Helpers ──────────────────────────────────────────────────────────────────


def _note_limits() -> tuple[int, int | None]:
    cfg = current_app.config
    return cfg.get("WORKFLOW_NOTE_MIN_LENGTH", 1), cfg.get("WORKFLOW_NOTE_MAX_LENGTH")


def _load_task(task_id: str, for_update: bool = False) -> Task | None:
    stmt = select(Task).where(Task.id == str(task_id))
    if for_update:
        stmt = stmt.with_for_update()
    return db.session.execute(stmt.execution_options(populate_existing=True)).scalar_one_or_none()


def build_graph(task: Task) -> StepGraph:
    """Graph of a persisted task; validated when the task was created."""
    return StepGraph.from_steps(task.steps, task.initial_step_id, validate=False)


def _outcomes(task: Task) -> dict:
    return {s.id: s.outcome for s in task.steps if s.is_completed}


def current_step_id(task: Task, graph: StepGraph | None = None) -> str | None:
    """Id of the step the task is waiting on; None when the workflow has ended."""
    graph = graph or build_graph(task)
    _, current = graph.walk(_outcomes(task))
    return current


def _snapshot(task: Task, current_id: str | None) -> dict:
    return {
        "task_status": task.status,
        "version": task.version_id,
        "current_step_id": current_id,
        "completed_step_ids": [s.id for s in task.steps if s.is_completed],
        "context": task.context,
    }


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


def _complete_task(task: Task, now: datetime) -> None:
    task.status = "completed"
    task.completed_at = now


def _check_preconditions(task, step_id, current, action_type, note, decision,
                         auto_check_result, expected_version) -> None:
    if task.is_complete:
        raise TaskAlreadyCompleteError(task.id)

    if current is None or step_id != current.id:
        raise StepMismatchError(step_id, current.id if current else None)

    allowed = _ROLE_ACTIONS.get(current.role, ()) + (ADD_NOTE,)
    if action_type not in allowed:
        raise ActionRoleMismatchError(action_type, current.role, list(allowed))

    default_min, default_max = _note_limits()
    violations = validate_action(
        current, action_type, note,
        decision=decision, auto_check_result=auto_check_result,
        default_min=default_min, default_max=default_max,
    )
    if violations:
        raise ValidationError("Action validation failed", violations=violations)

    if expected_version is not None and int(expected_version) != task.version_id:
        raise ConcurrencyConflictError(task.id, int(expected_version), task.version_id)


def _record_failure(task_id, step_id, step_name, action_type, exc: WorkflowError, *,
                    actor, note, decision, current_id, snapshot, started) -> ActionResult:
    try:
        entry = write_workflow_audit(
            task_id=task_id,
            action=action_type or "unknown",
            success=False,
            step_id=step_id,
            step_name=step_name,
            actor=actor,
            error_code=exc.code,
            reason="; ".join(exc.messages),
            previous_step_id=current_id,
            decision=decision,
            notes=(note.strip() or None) if isinstance(note, str) else None,
            context_snapshot=snapshot,
            duration_ms=_elapsed_ms(started),
        )
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        raise

    logger.warning(
        "Workflow action rejected task=%s step=%s action=%s code=%s",
        task_id, step_id, action_type, exc.code,
        extra={"task_id": task_id, "step_id": step_id, "action": action_type, "result": "failure"},
    )
    return ActionResult(
        success=False,
        task_id=task_id,
        step_id=step_id,
        action_type=action_type,
        error_code=exc.code,
        error_messages=list(exc.messages),
        violations=list(getattr(exc, "violations", [])),
        audit_sequence=entry.sequence,
        new_state=get_workflow_state(task_id),
        error=exc,
    )


# ── Public API ───────────────────────────────────────────────────────────────


def apply_action(
    task_id: str,
    step_id: str,
    action_type: str,
    note: str | None = None,
    *,
    decision=None,
    actor: str = "user",
    auto_check_result: bool | None = None,
    expected_version: int | None = None,
    conditions_evaluated: list | None = None,
) -> ActionResult:
    """Validate and apply one workflow action against a task's current step.

    Raises NotFoundError when the task does not exist; every other failure
    is returned as an unsuccessful ``ActionResult`` and audited.
    """
    started = time.perf_counter()
    task = _load_task(task_id, for_update=True)
    if task is None:
        raise NotFoundError(resource="Task", resource_id=task_id)

    task_id = task.id
    step_id = str(step_id) if step_id is not None else None
    action_type = action_type.strip().lower() if isinstance(action_type, str) else ""
    actor = (actor if isinstance(actor, str) and actor else "user")[:ACTOR_MAX_LENGTH]

    graph = build_graph(task)
    _, current_id = graph.walk(_outcomes(task))
    current = task.step_by_id(current_id) if current_id else None
    submitted = task.step_by_id(step_id)
    step_name = submitted.action if submitted else ""
    snapshot = _snapshot(task, current_id)

    try:
        _check_preconditions(task, step_id, current, action_type, note, decision,
                             auto_check_result, expected_version)
    except WorkflowError as exc:
        return _record_failure(
            task_id, step_id, step_name, action_type, exc,
            actor=actor, note=note, decision=decision,
            current_id=current_id, snapshot=snapshot, started=started,
        )

    now = datetime.now(timezone.utc)
    clean_note = (note or "").strip() or None
    warnings, info = [], []
    decision_value = None

    if action_type == ADD_NOTE:
        task.notes.append(TaskNote(step_id=current.id, content=clean_note, created_by=actor))
        next_id = current.id
        info.append(f"Note added to '{current.action}'")
    else:
        outcome = None
        if current.role == StepRole.DECISION.value:
            if action_type == DECIDE_YES:
                outcome = "Yes"
            elif action_type == DECIDE_NO:
                outcome = "No"
            else:
                outcome = normalize_decision(decision)
            current.decision_answer = outcome
            decision_value = outcome
        elif current.role == StepRole.AUTO_CHECK.value:
            outcome = bool(auto_check_result)
            current.auto_check_result = outcome
            decision_value = "true" if outcome else "false"

        current.status = "completed"
        current.completed_at = now
        current.completed_by = actor
        if clean_note:
            current.notes = clean_note
            task.notes.append(TaskNote(step_id=current.id, content=clean_note, created_by=actor))

        next_id = graph.resolve_next(current.id, outcome)
        if next_id is None:
            if current.role in (StepRole.DECISION.value, StepRole.AUTO_CHECK.value):
                warnings.append(
                    f"No next step is defined for outcome '{decision_value}' of "
                    f"'{current.action}'; the workflow ends here"
                )
            _complete_task(task, now)
            info.append("Workflow completed")
        else:
            next_step = task.step_by_id(next_id)
            if next_step.role == StepRole.TERMINAL.value and not next_step.requires_note:
                next_step.status = "completed"
                next_step.completed_at = now
                next_step.completed_by = actor
                _complete_task(task, now)
                info.append(f"Workflow completed at '{next_step.action}'")
            else:
                task.status = "in_progress"
                info.append(f"Moved to step '{next_step.action}'")

    task.updated_at = now
    step_name = current.action

    try:
        entry = write_workflow_audit(
            task_id=task_id,
            action=action_type,
            success=True,
            step_id=current.id,
            step_name=step_name,
            actor=actor,
            previous_step_id=current.id,
            next_step_id=next_id,
            decision=decision_value,
            notes=clean_note,
            conditions_evaluated=conditions_evaluated,
            context_snapshot=snapshot,
            duration_ms=_elapsed_ms(started),
        )
        sequence = entry.sequence
        db.session.commit()
    except StaleDataError:
        db.session.rollback()
        return _record_failure(
            task_id, step_id, step_name, action_type, ConcurrencyConflictError(task_id),
            actor=actor, note=note, decision=decision,
            current_id=current_id, snapshot=snapshot, started=started,
        )
    except SQLAlchemyError:
        db.session.rollback()
        raise

    logger.info(
        "Workflow action applied task=%s step=%s action=%s next=%s",
        task_id, step_id, action_type, next_id,
        extra={"task_id": task_id, "step_id": step_id, "action": action_type, "result": "success"},
    )
    return ActionResult(
        success=True,
        task_id=task_id,
        step_id=step_id,
        action_type=action_type,
        warning_messages=warnings,
        info_messages=info,
        next_step_id=next_id,
        audit_sequence=sequence,
        new_state=get_workflow_state(task_id),
    )


def get_available_actions(step, draft_note: str | None = None) -> list[dict]:
    """Actions the caller may submit on ``step``; ``is_enabled`` is advisory only."""
    if step is None:
        return []
    default_min, default_max = _note_limits()
    rules = NoteRules.for_step(step, default_min, default_max)
    note_problems = rules.check(draft_note) if rules.required else []

    actions = []
    for action_type in _ROLE_ACTIONS.get(step.role, ()) + (ADD_NOTE,):
        if action_type == DECIDE:
            continue
        label, variant = _ACTION_META[action_type]
        if action_type == COMPLETE and step.role == StepRole.TERMINAL.value:
            label = "Complete Workflow"
        needs_note = rules.required and action_type != ADD_NOTE
        enabled = not (needs_note and note_problems)
        actions.append({
            "action_type": action_type,
            "label": label,
            "variant": variant,
            "requires_note": needs_note or action_type == ADD_NOTE,
            "is_enabled": enabled,
            "disabled_reason": note_problems[0].message if not enabled else None,
        })
    return actions


def _longest_remaining(graph: StepGraph, step_id: str) -> int:
    """Number of steps on the longest path starting at ``step_id`` (inclusive)."""

    @lru_cache(maxsize=None)
    def depth(sid: str) -> int:
        targets = [t for t in graph.possible_next(sid) if t in graph]
        return 1 + max((depth(t) for t in targets), default=0)

    return depth(step_id)


def get_workflow_state(task_id: str, draft_note: str | None = None) -> dict:
    """Computed workflow view of a task; recomputed from step rows on each call."""
    task = _load_task(task_id)
    if task is None:
        raise NotFoundError(resource="Task", resource_id=task_id)

    graph = build_graph(task)
    path, current_id = graph.walk(_outcomes(task))
    display_id = current_id or (path[-1] if path else None)
    current = task.step_by_id(display_id) if display_id else None
    completed = [task.step_by_id(sid) for sid in path]

    upcoming, possible_next = [], []
    if current_id:
        reachable = graph.reachable_from(current_id)
        upcoming = sorted(
            (s for s in task.steps if s.id in reachable and not s.is_completed),
            key=lambda s: s.order,
        )
        possible_next = [task.step_by_id(t) for t in graph.possible_next(current_id)]

    default_min, default_max = _note_limits()
    validation = None
    if current is not None:
        rules = NoteRules.for_step(current, default_min, default_max)
        validation = rules.to_dict()
        if draft_note is not None:
            validation["errors"] = [v.to_dict() for v in rules.check(draft_note)]

    if task.is_complete or current_id is None:
        total = len(path)
        status_text = "Complete"
    else:
        total = len(path) + _longest_remaining(graph, current_id)
        status_text = f"Step {len(path) + 1} of {total}"

    return {
        "task_id": task.id,
        "task_status": task.status,
        "version": task.version_id,
        "is_complete": task.is_complete,
        "current_step": current.to_dict() if current else None,
        "available_actions": [] if task.is_complete else get_available_actions(current, draft_note),
        "validation": validation,
        "completed_steps": [s.to_summary() for s in completed],
        "upcoming_steps": [s.to_summary() for s in upcoming],
        "possible_next_steps": [s.to_summary() for s in possible_next],
        "progress": {
            "completed": len(path),
            "total": total,
            "percent": int(len(path) * 100 / total) if total else 0,
            "status_text": status_text,
        },
    }


def run_auto_checks(task_id: str, actor: str = "system") -> list[ActionResult]:
    """Resolve consecutive auto-check steps from their rules and the task context.

    Stops at the first step that is not an auto-check, at task completion,
    or at the first rejected action.
    """
    results: list[ActionResult] = []
    for _ in range(MAX_AUTO_CHECKS):
        task = _load_task(task_id)
        if task is None:
            raise NotFoundError(resource="Task", resource_id=task_id)
        if task.is_complete:
            break
        step_id = current_step_id(task)
        step = task.step_by_id(step_id) if step_id else None
        if step is None or step.role != StepRole.AUTO_CHECK.value:
            break

        outcome = evaluate_rule(step.auto_check_rule, task.context)
        result = apply_action(
            task.id, step.id, AUTO_CHECK, outcome.note,
            actor=actor,
            auto_check_result=outcome.result,
            conditions_evaluated=outcome.evaluations,
        )
        results.append(result)
        if not result.success:
            logger.warning("Auto-check stopped for task %s: %s", task_id, result.error_messages,
                           extra={"task_id": task_id, "step_id": step.id, "action": AUTO_CHECK})
            break
    return results
