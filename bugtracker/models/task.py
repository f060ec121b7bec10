"""
Core Bug Tracker
Remediation task models.

Models:
    - Task:      remediation workflow instance for one CoreBug against one product
    - TaskStep:  node in a Task's step graph (action | decision | auto_check | terminal)
    - TaskNote:  free-text annotation attached to a Task

Architecture:
    CoreBug ──1:N──▶ Task ──1:N──▶ TaskStep
                     Task ──1:N──▶ TaskNote

Lifecycle states:
    Task:      open → in_progress → completed   (completed is absorbing)
    TaskStep:  pending → completed              (one way)

Edges between steps are plain id columns resolved inside the owning task's
step set; they are written once when the task is created and never change.
Workflow progress is derived from step rows, see
``bugtracker.services.workflow.engine``.
"""

import json
import uuid
from datetime import datetime, timezone

from bugtracker.models import db
from bugtracker.models.product import ProductRef, ProductType

# ── Constants ────────────────────────────────────────────────────────────────

TASK_STATUSES = {"open", "in_progress", "completed"}

STEP_ROLES = {"action", "decision", "auto_check", "terminal"}

STEP_STATUSES = {"pending", "completed"}

DECISION_ANSWERS = ("Yes", "No")


def _uuid() -> str:
    return str(uuid.uuid4())


def _iso(value):
    return value.isoformat() if value else None


# ═════════════════════════════════════════════════════════════════════════════
# 1. Task
# ═════════════════════════════════════════════════════════════════════════════


class Task(db.Model):
    """
    One remediation effort for one CoreBug against exactly one product.

    ``product_type`` + ``product_id`` store the ``ProductRef`` variant; the
    check constraint keeps the type to TM or IRT so a task can never point at
    both or neither.  ``version_id`` is the optimistic-concurrency counter:
    every workflow action updates the row, so two writers racing on the same
    task cannot both commit.
    """

    __tablename__ = "tasks"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    bug_id = db.Column(
        db.String(36),
        db.ForeignKey("core_bugs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    product_type = db.Column(db.String(10), nullable=False, comment="tm | irt")
    product_id = db.Column(db.String(36), nullable=False)

    title = db.Column(db.String(300), nullable=False)
    description = db.Column(db.Text, default="")
    jira_task_key = db.Column(db.String(50), nullable=True)
    jira_task_link = db.Column(db.String(500), nullable=True)

    status = db.Column(
        db.String(20), nullable=False, default="open",
        comment="open | in_progress | completed",
    )
    initial_step_id = db.Column(db.String(36), nullable=True)
    workflow_definition_id = db.Column(
        db.Integer,
        db.ForeignKey("workflow_definitions.id", ondelete="SET NULL"),
        nullable=True,
    )
    context_json = db.Column(
        db.Text, default="{}",
        comment="Workflow context variables evaluated by auto-check rules",
    )

    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version_id}

    __table_args__ = (
        db.CheckConstraint("product_type IN ('tm','irt')", name="ck_task_product_type"),
        db.CheckConstraint(
            "status IN ('open','in_progress','completed')",
            name="ck_task_status",
        ),
        db.Index("ix_task_product", "product_type", "product_id"),
    )

    steps = db.relationship(
        "TaskStep", backref="task", lazy="select",
        cascade="all, delete-orphan", order_by="TaskStep.order",
    )
    notes = db.relationship(
        "TaskNote", backref="task", lazy="select",
        cascade="all, delete-orphan", order_by="TaskNote.created_at",
    )

    # ── Helpers ──────────────────────────────────────────────────────────

    @property
    def product(self) -> ProductRef:
        return ProductRef(ProductType(self.product_type), self.product_id)

    @product.setter
    def product(self, ref: ProductRef) -> None:
        self.product_type = ref.kind.value
        self.product_id = ref.product_id

    @property
    def context(self) -> dict:
        try:
            return json.loads(self.context_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    @context.setter
    def context(self, value: dict) -> None:
        self.context_json = json.dumps(value or {}, default=str)

    @property
    def is_complete(self) -> bool:
        return self.status == "completed"

    def step_by_id(self, step_id):
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def to_dict(self, include_children=False) -> dict:
        result = {
            "id": self.id,
            "bug_id": self.bug_id,
            **self.product.to_dict(),
            "title": self.title,
            "description": self.description,
            "jira_task_key": self.jira_task_key,
            "jira_task_link": self.jira_task_link,
            "status": self.status,
            "initial_step_id": self.initial_step_id,
            "workflow_definition_id": self.workflow_definition_id,
            "version": self.version_id,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "completed_at": _iso(self.completed_at),
        }
        if include_children:
            result["steps"] = [s.to_dict() for s in self.steps]
            result["notes"] = [n.to_dict() for n in self.notes]
        return result

    def __repr__(self):
        return f"<Task {self.id} [{self.status}]>"


# ═════════════════════════════════════════════════════════════════════════════
# 2. TaskStep
# ═════════════════════════════════════════════════════════════════════════════


class TaskStep(db.Model):
    """
    A node of the task's step graph.

    ``order`` is for display only; succession follows the edge columns:
        action      → next_step_id
        decision    → next_step_if_yes / next_step_if_no
        auto_check  → next_step_if_true / next_step_if_false
        terminal    → (none)
    """

    __tablename__ = "task_steps"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    task_id = db.Column(
        db.String(36),
        db.ForeignKey("tasks.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    template_step_id = db.Column(
        db.String(100), nullable=True,
        comment="Step id in the workflow definition this row was cloned from",
    )

    action = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, default="")
    order = db.Column(db.Integer, nullable=False, default=0)
    role = db.Column(
        db.String(20), nullable=False, default="action",
        comment="action | decision | auto_check | terminal",
    )

    requires_note = db.Column(db.Boolean, nullable=False, default=False)
    min_note_length = db.Column(db.Integer, nullable=True)
    max_note_length = db.Column(db.Integer, nullable=True)

    status = db.Column(db.String(20), nullable=False, default="pending")
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_by = db.Column(db.String(100), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    # Decision
    decision_answer = db.Column(db.String(3), nullable=True, comment="Yes | No")
    next_step_if_yes = db.Column(db.String(36), nullable=True)
    next_step_if_no = db.Column(db.String(36), nullable=True)

    # Auto-check
    auto_check_result = db.Column(db.Boolean, nullable=True)
    auto_check_rule_json = db.Column(
        db.Text, nullable=True,
        comment="JSON: {conditions: [...], note_field: str} evaluated against task context",
    )
    next_step_if_true = db.Column(db.String(36), nullable=True)
    next_step_if_false = db.Column(db.String(36), nullable=True)

    # Plain action
    next_step_id = db.Column(db.String(36), nullable=True)

    __table_args__ = (
        db.CheckConstraint(
            "role IN ('action','decision','auto_check','terminal')",
            name="ck_task_step_role",
        ),
        db.CheckConstraint("status IN ('pending','completed')", name="ck_task_step_status"),
        db.Index("ix_task_step_task_order", "task_id", "order"),
    )

    @property
    def is_completed(self) -> bool:
        return self.status == "completed"

    @property
    def auto_check_rule(self) -> dict | None:
        if not self.auto_check_rule_json:
            return None
        try:
            return json.loads(self.auto_check_rule_json)
        except (json.JSONDecodeError, TypeError):
            return None

    @property
    def outcome(self):
        """Recorded outcome used to follow the graph past this step."""
        if self.role == "decision":
            return self.decision_answer
        if self.role == "auto_check":
            return self.auto_check_result
        return None

    def to_summary(self) -> dict:
        return {
            "id": self.id,
            "action": self.action,
            "description": self.description,
            "order": self.order,
            "role": self.role,
            "status": self.status,
            "completed_at": _iso(self.completed_at),
            "completed_by": self.completed_by,
            "decision_answer": self.decision_answer,
            "auto_check_result": self.auto_check_result,
            "notes": self.notes,
        }

    def to_dict(self) -> dict:
        result = self.to_summary()
        result.update({
            "task_id": self.task_id,
            "template_step_id": self.template_step_id,
            "requires_note": self.requires_note,
            "min_note_length": self.min_note_length,
            "max_note_length": self.max_note_length,
            "next_step_id": self.next_step_id,
            "next_step_if_yes": self.next_step_if_yes,
            "next_step_if_no": self.next_step_if_no,
            "next_step_if_true": self.next_step_if_true,
            "next_step_if_false": self.next_step_if_false,
            "auto_check_rule": self.auto_check_rule,
        })
        return result

    def __repr__(self):
        return f"<TaskStep {self.order}:{self.role} {self.action!r} [{self.status}]>"


# ═════════════════════════════════════════════════════════════════════════════
# 3. TaskNote
# ═════════════════════════════════════════════════════════════════════════════


class TaskNote(db.Model):
    """Annotation on a Task, optionally written while completing a step."""

    __tablename__ = "task_notes"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    task_id = db.Column(
        db.String(36),
        db.ForeignKey("tasks.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    step_id = db.Column(db.String(36), nullable=True)
    content = db.Column(db.Text, nullable=False)
    created_by = db.Column(db.String(100), nullable=False, default="user")
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "task_id": self.task_id,
            "step_id": self.step_id,
            "content": self.content,
            "created_by": self.created_by,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<TaskNote {self.id} on task {self.task_id}>"
