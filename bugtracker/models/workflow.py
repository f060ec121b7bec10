"""
Core Bug Tracker
Workflow domain models.

Models:
    - WorkflowDefinition:  named, versioned step-graph template tasks are cloned from
    - WorkflowAuditLog:    immutable, append-only record of every workflow action attempt
"""

import json
from datetime import datetime, timezone

from bugtracker.models import db

AUDIT_RESULTS = {"success", "failure"}


def _loads(raw, default):
    try:
        return json.loads(raw) if raw else default
    except (json.JSONDecodeError, TypeError):
        return default


class WorkflowDefinition(db.Model):
    """
    Reusable step-graph template.

    Saving a definition under an existing name creates a new row with a bumped
    version and deactivates the previous one, so tasks keep pointing at the
    exact template they were instantiated from.
    """

    __tablename__ = "workflow_definitions"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False, index=True)
    description = db.Column(db.String(500), default="")
    version = db.Column(db.String(20), nullable=False, default="1.0.0")
    definition_json = db.Column(db.Text, nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_by = db.Column(db.String(100), default="system")
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        db.UniqueConstraint("name", "version", name="uq_workflow_definition_name_version"),
    )

    @property
    def schema(self) -> dict:
        return _loads(self.definition_json, {})

    def to_dict(self, include_schema=False) -> dict:
        result = {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "version": self.version,
            "is_active": self.is_active,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_schema:
            result["schema"] = self.schema
        return result

    def __repr__(self):
        return f"<WorkflowDefinition {self.name} v{self.version}>"


class WorkflowAuditLog(db.Model):
    """
    Immutable audit trail of workflow actions.

    One row per ``apply_action`` call, successful or not.  ``sequence`` is
    per task and strictly increasing; (task_id, sequence) is unique, which
    gives a total order independent of clock resolution.  ``task_id`` is
    deliberately not a foreign key: the trail outlives the task rows.
    """

    __tablename__ = "workflow_audit_logs"
    __table_args__ = (
        db.UniqueConstraint("task_id", "sequence", name="uq_workflow_audit_task_sequence"),
        db.Index("idx_workflow_audit_task", "task_id"),
        db.Index("idx_workflow_audit_ts", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)
    task_id = db.Column(db.String(36), nullable=False)
    sequence = db.Column(db.Integer, nullable=False)

    step_id = db.Column(db.String(36), nullable=True)
    step_name = db.Column(db.String(200), nullable=False, default="")
    action = db.Column(db.String(30), nullable=False)
    result = db.Column(db.String(10), nullable=False, comment="success | failure")
    error_code = db.Column(db.String(40), nullable=True)
    reason = db.Column(db.Text, nullable=True)

    previous_step_id = db.Column(db.String(36), nullable=True)
    next_step_id = db.Column(db.String(36), nullable=True)
    decision = db.Column(db.String(10), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    conditions_evaluated_json = db.Column(db.Text, nullable=True)
    context_snapshot_json = db.Column(db.Text, nullable=True)

    actor = db.Column(db.String(100), nullable=False, default="system")
    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    duration_ms = db.Column(db.Integer, nullable=True)

    @property
    def conditions_evaluated(self) -> list:
        return _loads(self.conditions_evaluated_json, [])

    @property
    def context_snapshot(self) -> dict:
        return _loads(self.context_snapshot_json, {})

    @property
    def succeeded(self) -> bool:
        return self.result == "success"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "task_id": self.task_id,
            "sequence": self.sequence,
            "step_id": self.step_id,
            "step_name": self.step_name,
            "action": self.action,
            "result": self.result,
            "error_code": self.error_code,
            "reason": self.reason,
            "previous_step_id": self.previous_step_id,
            "next_step_id": self.next_step_id,
            "decision": self.decision,
            "notes": self.notes,
            "conditions_evaluated": self.conditions_evaluated,
            "context_snapshot": self.context_snapshot,
            "actor": self.actor,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "duration_ms": self.duration_ms,
        }

    def __repr__(self):
        return f"<WorkflowAuditLog {self.task_id}#{self.sequence}: {self.action} {self.result}>"
