"""
Remediation task service.

Creates tasks with their step graph (ad hoc or from a workflow definition),
generates one task per product for an assessed core bug, and manages free
task notes.  Workflow progress itself goes through
``bugtracker.services.workflow.engine``.

Layer contract:
    - This module owns commits for task creation and notes.
    - The step graph is validated before anything is added to the session,
      so an InvalidGraphError leaves no partial task behind.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from flask import current_app
from sqlalchemy import select

from bugtracker.core.exceptions import NotFoundError, ValidationError
from bugtracker.models import db
from bugtracker.models.bug import CoreBug
from bugtracker.models.product import InteractiveResponseTechnology, ProductRef, ProductType, TrialManager
from bugtracker.models.task import Task, TaskNote
from bugtracker.services.workflow import definitions, engine

logger = logging.getLogger(__name__)


# ── Helpers ────────────────────────────────────────────────────────────────────


def _get_bug(bug_id: str) -> CoreBug:
    bug = db.session.get(CoreBug, str(bug_id))
    if bug is None:
        raise NotFoundError(resource="CoreBug", resource_id=bug_id)
    return bug


def _check_note_content(content: str | None) -> str:
    if content is not None and not isinstance(content, str):
        raise ValidationError("Note content must be text", details={"content": "must be a string"})
    text = (content or "").strip()
    if not text:
        raise ValidationError("Note content is required", details={"content": "required"})
    max_length = current_app.config.get("WORKFLOW_NOTE_MAX_LENGTH")
    if max_length is not None and len(text) > max_length:
        raise ValidationError(
            f"Note cannot exceed {max_length} characters",
            details={"content": f"max {max_length} characters"},
        )
    return text


def build_workflow_context(bug: CoreBug, product_version: str) -> dict:
    """Variables the Bug Assessment Workflow's auto-checks evaluate."""
    affected = bug.versions_to_check
    version_affected = product_version in affected
    if version_affected:
        version_note = f"This product version {product_version} is affected by the bug"
    else:
        version_note = (
            f"This product is version {product_version} and is not impacted by this core bug "
            f"which affects versions: {', '.join(affected) or 'none'}"
        )
    return {
        "bugId": bug.id,
        "bugJiraKey": bug.jira_key,
        "bugTitle": bug.title,
        "bugSeverity": bug.severity,
        "productVersion": product_version,
        "affectedVersions": affected,
        "versionAffected": version_affected,
        "severityIsMajorOrCritical": bug.is_major_or_critical,
        "versionCheckNotes": version_note,
        "severityCheckNotes": f"Bug severity is {bug.severity}",
    }


# ── Tasks ──────────────────────────────────────────────────────────────────────


def create_task(
    bug_id: str,
    product: ProductRef,
    title: str,
    *,
    description: str = "",
    steps: list[dict] | None = None,
    initial_step_id: str | None = None,
    definition_name: str | None = None,
    context: dict | None = None,
    jira_task_key: str | None = None,
    jira_task_link: str | None = None,
) -> Task:
    """Create a task with its step graph.

    Exactly one of ``steps`` (ad hoc step specs, same format as a workflow
    definition's steps) or ``definition_name`` must be given.

    Raises:
        NotFoundError: bug, product or definition does not exist.
        ValidationError: missing title or step source.
        InvalidGraphError: the step graph is malformed.
    """
    bug = _get_bug(bug_id)
    if db.session.get(product.model, product.product_id) is None:
        raise NotFoundError(resource=product.model.__name__, resource_id=product.product_id)

    title = (title or "").strip()
    if not title:
        raise ValidationError("Task title is required", details={"title": "required"})
    if bool(steps) == bool(definition_name):
        raise ValidationError(
            "Provide either 'steps' or 'definition_name'",
            details={"steps": "exactly one of steps / definition_name is required"},
        )

    task = Task(
        bug_id=bug.id,
        title=title,
        description=description or "",
        jira_task_key=jira_task_key,
        jira_task_link=jira_task_link,
        status="open",
    )
    task.product = product
    task.context = context or {}

    if definition_name:
        definition = definitions.get_definition(definition_name)
        definitions.instantiate_steps(definition.schema, task)
        task.workflow_definition_id = definition.id
    else:
        schema = {"name": title, "initial_step_id": initial_step_id, "steps": steps}
        definitions.instantiate_steps(schema, task)

    db.session.add(task)
    db.session.commit()

    logger.info(
        "Created task %s for bug %s on %s %s (%d steps)",
        task.id, bug.jira_key, product.kind.value, product.product_id, len(task.steps),
        extra={"task_id": task.id},
    )
    return task


def get_task(task_id: str) -> Task:
    task = db.session.get(Task, str(task_id))
    if task is None:
        raise NotFoundError(resource="Task", resource_id=task_id)
    return task


def list_tasks_for_bug(bug_id: str) -> list[Task]:
    _get_bug(bug_id)
    return list(db.session.execute(
        select(Task).where(Task.bug_id == str(bug_id)).order_by(Task.created_at)
    ).scalars())


def generate_tasks_for_assessed_bug(
    bug_id: str,
    definition_name: str = definitions.BUG_ASSESSMENT_WORKFLOW,
) -> list[Task]:
    """One task per product of the assessed product type, with auto-checks run.

    Seeds the workflow definitions first when ``definition_name`` is not
    stored yet.
    """
    bug = _get_bug(bug_id)
    if not bug.is_assessed or not bug.assessed_product_type:
        raise ValidationError(
            f"Bug {bug.jira_key} has not been assessed",
            details={"assessed_product_type": "required"},
        )

    try:
        definitions.get_definition(definition_name)
    except NotFoundError:
        definitions.seed_definitions(current_app.config.get("WORKFLOW_DEFINITIONS_DIR"))
        definitions.get_definition(definition_name)

    kind = ProductType(bug.assessed_product_type)
    if kind is ProductType.TRIAL_MANAGER:
        products = db.session.execute(select(TrialManager).order_by(TrialManager.protocol)).scalars().all()
    else:
        products = db.session.execute(
            select(InteractiveResponseTechnology).order_by(InteractiveResponseTechnology.protocol)
        ).scalars().all()

    tasks = []
    for product in products:
        if kind is ProductType.TRIAL_MANAGER:
            target = f"Trial Manager {product.client_name or 'Unknown'} v{product.version}"
        else:
            target = f"IRT {product.study_name or 'Unknown'} v{product.version}"
        task = create_task(
            bug.id,
            product.product_ref,
            f"{bug.jira_key} - {product.protocol}",
            description=f"Assess impact of bug {bug.jira_key} on {target}",
            definition_name=definition_name,
            context=build_workflow_context(bug, product.version),
        )
        engine.run_auto_checks(task.id)
        tasks.append(task)

    logger.info("Generated %d task(s) for bug %s", len(tasks), bug.jira_key)
    return tasks


# ── Notes ──────────────────────────────────────────────────────────────────────


def add_note(task_id: str, content: str, created_by: str = "user", step_id: str | None = None) -> TaskNote:
    task = get_task(task_id)
    note = TaskNote(step_id=step_id, content=_check_note_content(content), created_by=created_by or "user")
    task.notes.append(note)
    db.session.commit()
    return note


def update_note(task_id: str, note_id: str, content: str) -> TaskNote:
    note = db.session.get(TaskNote, str(note_id))
    if note is None or note.task_id != str(task_id):
        raise NotFoundError(resource="TaskNote", resource_id=note_id)
    note.content = _check_note_content(content)
    note.updated_at = datetime.now(timezone.utc)
    db.session.commit()
    return note


def list_notes(task_id: str) -> list[TaskNote]:
    get_task(task_id)
    return list(db.session.execute(
        select(TaskNote).where(TaskNote.task_id == str(task_id)).order_by(TaskNote.created_at)
    ).scalars())
