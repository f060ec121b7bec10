"""
Task Blueprint.

Endpoints:
    POST   /api/v1/tasks
           Body: { "bug_id", "product_type": "tm|irt", "product_id", "title",
                   "description", "steps": [...] | "definition_name": "...",
                   "initial_step_id", "context": {...} }
           Returns: 201 with the task, its steps and the initial workflow state.
    GET    /api/v1/tasks/<task_id>

    GET    /api/v1/tasks/<task_id>/notes
    POST   /api/v1/tasks/<task_id>/notes              Body: { "content", "created_by" }
    PUT    /api/v1/tasks/<task_id>/notes/<note_id>    Body: { "content" }

    POST   /api/v1/bugs/<bug_id>/generate-tasks
           Generates one task per product for an assessed bug and runs
           the system auto-checks on each.
    GET    /api/v1/bugs/<bug_id>/tasks
"""

import logging

from flask import Blueprint, jsonify, request
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.exceptions import HTTPException

from bugtracker.core.exceptions import InvalidGraphError, NotFoundError, ValidationError
from bugtracker.models import db
from bugtracker.models.product import ProductRef
from bugtracker.services import task_service
from bugtracker.services.workflow import engine
from bugtracker.utils.errors import E, api_error

logger = logging.getLogger(__name__)

task_bp = Blueprint("task", __name__, url_prefix="/api/v1")


# ── Error handlers ────────────────────────────────────────────────────────────


@task_bp.errorhandler(NotFoundError)
def _handle_not_found(error: NotFoundError):
    return api_error(E.NOT_FOUND, str(error))


@task_bp.errorhandler(InvalidGraphError)
def _handle_invalid_graph(error: InvalidGraphError):
    return api_error(E.INVALID_GRAPH, str(error), details={"problems": error.problems})


@task_bp.errorhandler(ValidationError)
def _handle_validation(error: ValidationError):
    return api_error(E.VALIDATION_FAILED, str(error), details=error.details)


@task_bp.errorhandler(SQLAlchemyError)
def _handle_database(error: SQLAlchemyError):
    db.session.rollback()
    logger.exception("Database error in task_bp endpoint=%s", request.endpoint)
    return api_error(E.DATABASE, "Database error")


@task_bp.errorhandler(Exception)
def _handle_unexpected(error: Exception):
    if isinstance(error, HTTPException):
        return error
    logger.exception("Unexpected error in task_bp endpoint=%s", request.endpoint)
    return api_error(E.INTERNAL, "Internal server error")


# ═════════════════════════════════════════════════════════════════════════
# Tasks
# ═════════════════════════════════════════════════════════════════════════


@task_bp.route("/tasks", methods=["POST"])
def create_task():
    data = request.get_json(silent=True) or {}

    for required in ("bug_id", "product_type", "product_id", "title"):
        if not data.get(required):
            return api_error(E.VALIDATION_REQUIRED, f"Field '{required}' is required.")

    try:
        product = ProductRef.parse(data["product_type"], data["product_id"])
    except ValueError:
        return api_error(
            E.VALIDATION_INVALID,
            f"Invalid product_type '{data['product_type']}'.",
            details={"valid_types": ["tm", "irt"]},
        )

    steps = data.get("steps")
    if steps is not None and not isinstance(steps, list):
        return api_error(E.VALIDATION_INVALID, "Field 'steps' must be a list.")

    task = task_service.create_task(
        data["bug_id"],
        product,
        data["title"],
        description=data.get("description") or "",
        steps=steps,
        initial_step_id=data.get("initial_step_id"),
        definition_name=data.get("definition_name"),
        context=data.get("context") or {},
        jira_task_key=data.get("jira_task_key"),
        jira_task_link=data.get("jira_task_link"),
    )
    body = task.to_dict(include_children=True)
    body["workflow"] = engine.get_workflow_state(task.id)
    return jsonify(body), 201


@task_bp.route("/tasks/<task_id>", methods=["GET"])
def get_task(task_id):
    task = task_service.get_task(task_id)
    return jsonify(task.to_dict(include_children=True)), 200


# ═════════════════════════════════════════════════════════════════════════
# Notes
# ═════════════════════════════════════════════════════════════════════════


@task_bp.route("/tasks/<task_id>/notes", methods=["GET"])
def list_notes(task_id):
    notes = task_service.list_notes(task_id)
    return jsonify({"items": [n.to_dict() for n in notes], "total": len(notes)}), 200


@task_bp.route("/tasks/<task_id>/notes", methods=["POST"])
def add_note(task_id):
    data = request.get_json(silent=True) or {}
    note = task_service.add_note(
        task_id,
        data.get("content"),
        created_by=(data.get("created_by") or "user"),
        step_id=data.get("step_id"),
    )
    return jsonify(note.to_dict()), 201


@task_bp.route("/tasks/<task_id>/notes/<note_id>", methods=["PUT"])
def update_note(task_id, note_id):
    data = request.get_json(silent=True) or {}
    note = task_service.update_note(task_id, note_id, data.get("content"))
    return jsonify(note.to_dict()), 200


# ═════════════════════════════════════════════════════════════════════════
# Bugs
# ═════════════════════════════════════════════════════════════════════════


@task_bp.route("/bugs/<bug_id>/generate-tasks", methods=["POST"])
def generate_tasks(bug_id):
    data = request.get_json(silent=True) or {}
    kwargs = {}
    if data.get("definition_name"):
        kwargs["definition_name"] = data["definition_name"]
    tasks = task_service.generate_tasks_for_assessed_bug(bug_id, **kwargs)
    return jsonify({
        "bug_id": bug_id,
        "items": [t.to_dict() for t in tasks],
        "total": len(tasks),
    }), 201


@task_bp.route("/bugs/<bug_id>/tasks", methods=["GET"])
def list_bug_tasks(bug_id):
    tasks = task_service.list_tasks_for_bug(bug_id)
    return jsonify({"items": [t.to_dict() for t in tasks], "total": len(tasks)}), 200
