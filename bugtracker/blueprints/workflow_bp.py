"""
Task Workflow Blueprint.

HTTP surface of the transition engine and the workflow definition store.

Endpoints:
    GET    /api/v1/tasks/<task_id>/workflow
           Query params: draft_note (optional, drives advisory is_enabled flags)
           Returns: 200 with the computed workflow state.

    POST   /api/v1/tasks/<task_id>/workflow/actions
           Body: { "step_id": "...", "action_type": "complete|decide_yes|decide_no|
                   decide|auto_check|add_note", "note": "...", "decision": "Yes|No",
                   "auto_check_result": true|false, "performed_by": "...",
                   "expected_version": <int> }
           Returns: 200 on success; 409 step mismatch / task complete /
                    concurrency conflict; 422 role mismatch / validation.

    GET    /api/v1/tasks/<task_id>/workflow/history
    GET    /api/v1/tasks/<task_id>/workflow/audit
    POST   /api/v1/tasks/<task_id>/workflow/auto-checks

    GET    /api/v1/workflow-definitions
    POST   /api/v1/workflow-definitions
    GET    /api/v1/workflow-definitions/<name>

    GET    /api/v1/workflow-statistics
           Returns: 200 with task counts, average completion time and
                    step/definition usage across all tasks.

Layer contract:
    - Blueprint: parse + validate input shape, call service, return JSON.
    - Views make no db.session calls; the engine and definition store own
      commits. Only the database error handler rolls back.
"""

import logging

from flask import Blueprint, jsonify, request
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.exceptions import HTTPException

from bugtracker.core.exceptions import ConflictError, InvalidGraphError, NotFoundError, ValidationError
from bugtracker.models import db
from bugtracker.services.workflow import definitions, engine
from bugtracker.services.workflow.audit_writer import get_audit_trail, get_workflow_history, get_workflow_statistics
from bugtracker.utils.errors import E, api_error, status_for

logger = logging.getLogger(__name__)

workflow_bp = Blueprint("workflow", __name__, url_prefix="/api/v1")

# Action payload fields that must be JSON strings when present
_TEXT_FIELDS = ("step_id", "action_type", "note", "decision", "performed_by")


def _text(data, key: str) -> str:
    value = data.get(key) if isinstance(data, dict) else None
    return value.strip() if isinstance(value, str) else ""


# ── Error handlers ────────────────────────────────────────────────────────────


@workflow_bp.errorhandler(NotFoundError)
def _handle_not_found(error: NotFoundError):
    return api_error(E.NOT_FOUND, str(error))


@workflow_bp.errorhandler(InvalidGraphError)
def _handle_invalid_graph(error: InvalidGraphError):
    return api_error(E.INVALID_GRAPH, str(error), details={"problems": error.problems})


@workflow_bp.errorhandler(ValidationError)
def _handle_validation(error: ValidationError):
    return api_error(E.VALIDATION_FAILED, str(error), details=error.details)


@workflow_bp.errorhandler(ConflictError)
def _handle_conflict(error: ConflictError):
    return api_error(E.CONFLICT_DUPLICATE, str(error))


@workflow_bp.errorhandler(SQLAlchemyError)
def _handle_database(error: SQLAlchemyError):
    db.session.rollback()
    logger.exception("Database error in workflow_bp endpoint=%s", request.endpoint)
    return api_error(E.DATABASE, "Database error")


@workflow_bp.errorhandler(Exception)
def _handle_unexpected(error: Exception):
    if isinstance(error, HTTPException):
        return error
    logger.exception("Unexpected error in workflow_bp endpoint=%s", request.endpoint)
    return api_error(E.INTERNAL, "Internal server error")


# ═════════════════════════════════════════════════════════════════════════
# Workflow execution  (/api/v1/tasks/<task_id>/workflow)
# ═════════════════════════════════════════════════════════════════════════


@workflow_bp.route("/tasks/<task_id>/workflow", methods=["GET"])
def get_workflow_state(task_id):
    draft_note = request.args.get("draft_note")
    return jsonify(engine.get_workflow_state(task_id, draft_note=draft_note)), 200


@workflow_bp.route("/tasks/<task_id>/workflow/actions", methods=["POST"])
def submit_action(task_id):
    """Apply one workflow action.

    The response body is the action result in both the success and the
    failure case; the status code reflects the failure kind.
    """
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        data = {}

    wrong_type = [f for f in _TEXT_FIELDS if data.get(f) is not None and not isinstance(data[f], str)]
    if wrong_type:
        return api_error(
            E.VALIDATION_INVALID, f"Field '{wrong_type[0]}' must be a string.",
            details={"fields": wrong_type},
        )

    step_id = (data.get("step_id") or "").strip()
    action_type = (data.get("action_type") or "").strip()
    if not step_id:
        return api_error(E.VALIDATION_REQUIRED, "Field 'step_id' is required.")
    if not action_type:
        return api_error(
            E.VALIDATION_REQUIRED, "Field 'action_type' is required.",
            details={"valid_actions": list(engine.ACTION_TYPES)},
        )

    expected_version = data.get("expected_version")
    if expected_version is not None:
        try:
            expected_version = int(expected_version)
        except (TypeError, ValueError):
            return api_error(E.VALIDATION_INVALID, "Field 'expected_version' must be an integer.")

    auto_check_result = data.get("auto_check_result")

    result = engine.apply_action(
        task_id,
        step_id,
        action_type,
        data.get("note"),
        decision=data.get("decision"),
        actor=_text(data, "performed_by") or "user",
        auto_check_result=auto_check_result if isinstance(auto_check_result, bool) else None,
        expected_version=expected_version,
    )
    status = 200 if result.success else status_for(result.error_code)
    return jsonify(result.to_dict()), status


@workflow_bp.route("/tasks/<task_id>/workflow/history", methods=["GET"])
def get_history(task_id):
    return jsonify(get_workflow_history(task_id)), 200


@workflow_bp.route("/tasks/<task_id>/workflow/audit", methods=["GET"])
def get_audit(task_id):
    rows = get_audit_trail(task_id)
    return jsonify({"task_id": task_id, "items": [r.to_dict() for r in rows], "total": len(rows)}), 200


@workflow_bp.route("/tasks/<task_id>/workflow/auto-checks", methods=["POST"])
def run_auto_checks(task_id):
    data = request.get_json(silent=True) or {}
    actor = _text(data, "performed_by") or "system"
    results = engine.run_auto_checks(task_id, actor=actor)
    return jsonify({
        "task_id": task_id,
        "executed": len(results),
        "results": [
            {k: v for k, v in r.to_dict().items() if k != "new_state"} for r in results
        ],
        "state": engine.get_workflow_state(task_id),
    }), 200


# ═════════════════════════════════════════════════════════════════════════
# Workflow definitions  (/api/v1/workflow-definitions)
# ═════════════════════════════════════════════════════════════════════════


@workflow_bp.route("/workflow-definitions", methods=["GET"])
def list_definitions():
    include_inactive = request.args.get("include_inactive", "false").lower() == "true"
    items = definitions.list_definitions(include_inactive=include_inactive)
    return jsonify({"items": [d.to_dict() for d in items], "total": len(items)}), 200


@workflow_bp.route("/workflow-definitions", methods=["POST"])
def create_definition():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return api_error(E.VALIDATION_REQUIRED, "A JSON workflow definition is required.")
    created_by = _text(data, "created_by") or "user"
    data.pop("created_by", None)
    definition = definitions.save_definition(data, created_by=created_by)
    return jsonify(definition.to_dict(include_schema=True)), 201


@workflow_bp.route("/workflow-definitions/<name>", methods=["GET"])
def get_definition(name):
    definition = definitions.get_definition(name, version=request.args.get("version"))
    return jsonify(definition.to_dict(include_schema=True)), 200


@workflow_bp.route("/workflow-statistics", methods=["GET"])
def workflow_statistics():
    return jsonify(get_workflow_statistics()), 200
