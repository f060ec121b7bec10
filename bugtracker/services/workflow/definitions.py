"""
Workflow definition store.

A workflow definition is a reusable step-graph template, stored as JSON:

    {
        "name": "Bug Assessment Workflow",
        "description": "...",
        "initial_step_id": "version-check",
        "steps": [
            {"step_id": "version-check", "name": "...", "role": "auto_check",
             "order": 1, "rule": {...}, "next_if_true": "...", "next_if_false": "..."},
            {"step_id": "clone-bug", "name": "...", "role": "action", "next": "..."},
            {"step_id": "done", "name": "...", "role": "terminal"}
        ]
    }

Saving under an existing name bumps the patch version and deactivates the
older rows; only the newest version of a name is active.  Tasks are
instantiated from a definition by cloning its steps into TaskStep rows with
fresh ids, mapping template step ids onto the new ids.
"""

from __future__ import annotations

import json
import logging
import os
import uuid

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from bugtracker.core.exceptions import ConflictError, InvalidGraphError, NotFoundError
from bugtracker.models import db
from bugtracker.models.task import TaskStep
from bugtracker.models.workflow import WorkflowDefinition
from bugtracker.services.workflow.step_graph import StepGraph

logger = logging.getLogger(__name__)

BUG_ASSESSMENT_WORKFLOW = "Bug Assessment Workflow"


def bump_version(version: str | None) -> str:
    """"1.0.3" → "1.0.4"; anything unparseable restarts at "1.0.0"."""
    parts = (version or "").split(".")
    if len(parts) != 3 or not all(p.isdigit() for p in parts):
        return "1.0.0"
    major, minor, patch = (int(p) for p in parts)
    return f"{major}.{minor}.{patch + 1}"


def _latest(name: str) -> WorkflowDefinition | None:
    return db.session.execute(
        select(WorkflowDefinition)
        .where(WorkflowDefinition.name == name)
        .order_by(WorkflowDefinition.id.desc())
        .limit(1)
    ).scalar_one_or_none()


def validate_schema(schema: dict) -> StepGraph:
    """Raise InvalidGraphError unless ``schema`` describes a well-formed graph."""
    if not isinstance(schema, dict):
        raise InvalidGraphError(["Workflow definition must be a JSON object"])
    name = schema.get("name")
    if not isinstance(name, str) or not name.strip():
        raise InvalidGraphError(["Workflow definition needs a name"])
    return StepGraph.from_definition(schema)


def save_definition(schema: dict, created_by: str = "system") -> WorkflowDefinition:
    """Validate and store a definition as the new active version of its name."""
    graph = validate_schema(schema)
    name = schema["name"].strip()

    previous = _latest(name)
    version = bump_version(previous.version) if previous else "1.0.0"
    if previous:
        db.session.execute(
            update(WorkflowDefinition)
            .where(WorkflowDefinition.name == name, WorkflowDefinition.is_active.is_(True))
            .values(is_active=False)
        )

    definition = WorkflowDefinition(
        name=name,
        description=schema.get("description") or "",
        version=version,
        definition_json=json.dumps(schema),
        is_active=True,
        created_by=created_by,
    )
    db.session.add(definition)
    try:
        db.session.commit()
    except IntegrityError:
        # a concurrent save took the same version
        db.session.rollback()
        raise ConflictError("WorkflowDefinition", "version", f"{name} v{version}")

    logger.info("Saved workflow definition %s v%s (%d steps)", name, version, len(graph))
    return definition


def get_definition(name: str, version: str | None = None) -> WorkflowDefinition:
    """Active definition of ``name``, or the exact ``version`` when given."""
    stmt = select(WorkflowDefinition).where(WorkflowDefinition.name == name)
    if version:
        stmt = stmt.where(WorkflowDefinition.version == version)
    else:
        stmt = stmt.where(WorkflowDefinition.is_active.is_(True))
    definition = db.session.execute(
        stmt.order_by(WorkflowDefinition.id.desc()).limit(1)
    ).scalar_one_or_none()
    if definition is None:
        raise NotFoundError(resource="WorkflowDefinition", resource_id=name)
    return definition


def list_definitions(include_inactive: bool = False) -> list[WorkflowDefinition]:
    stmt = select(WorkflowDefinition)
    if not include_inactive:
        stmt = stmt.where(WorkflowDefinition.is_active.is_(True))
    return list(db.session.execute(
        stmt.order_by(WorkflowDefinition.name, WorkflowDefinition.id)
    ).scalars())


def seed_definitions(directory: str | None = None) -> int:
    """Load every ``*.json`` in ``directory``; unchanged definitions are skipped.

    Returns the number of definitions saved.
    """
    if not directory or not os.path.isdir(directory):
        logger.warning("Workflow definitions directory not found: %s", directory)
        return 0

    saved = 0
    for filename in sorted(os.listdir(directory)):
        if not filename.endswith(".json"):
            continue
        path = os.path.join(directory, filename)
        with open(path, encoding="utf-8") as fh:
            schema = json.load(fh)

        previous = _latest((schema.get("name") or "").strip())
        if previous and previous.schema == schema:
            logger.debug("Workflow definition %s unchanged, skipping", previous.name)
            continue
        save_definition(schema, created_by="seed")
        saved += 1

    logger.info("Seeded %d workflow definition(s) from %s", saved, directory)
    return saved


def instantiate_steps(schema: dict, task) -> list[TaskStep]:
    """Clone template steps onto ``task`` and set its initial step.

    The graph is validated before any row is created.
    """
    graph = validate_schema(schema)
    id_map = {raw["step_id"]: str(uuid.uuid4()) for raw in schema["steps"]}

    def mapped(template_id):
        return id_map.get(template_id) if template_id else None

    steps = []
    for position, raw in enumerate(schema["steps"], start=1):
        rule = raw.get("rule")
        step = TaskStep(
            id=id_map[raw["step_id"]],
            template_step_id=raw["step_id"],
            action=raw.get("name") or raw["step_id"],
            description=raw.get("description") or "",
            order=raw.get("order") or position,
            role=raw.get("role") or "action",
            requires_note=bool(raw.get("requires_note", False)),
            min_note_length=raw.get("min_note_length"),
            max_note_length=raw.get("max_note_length"),
            next_step_id=mapped(raw.get("next")),
            next_step_if_yes=mapped(raw.get("next_if_yes")),
            next_step_if_no=mapped(raw.get("next_if_no")),
            next_step_if_true=mapped(raw.get("next_if_true")),
            next_step_if_false=mapped(raw.get("next_if_false")),
            auto_check_rule_json=json.dumps(rule) if rule else None,
        )
        task.steps.append(step)
        steps.append(step)

    task.initial_step_id = id_map[graph.initial_step_id]
    return steps
