"""Core bug workflow engine tables

Revision ID: a1c4e7b20d13
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "a1c4e7b20d13"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # ── Products ──
    op.create_table(
        "trial_managers",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("client_name", sa.String(200), server_default=""),
        sa.Column("protocol", sa.String(100), nullable=False),
        sa.Column("version", sa.String(30), nullable=False),
        sa.Column("jira_key", sa.String(50), nullable=True),
        sa.Column("web_link", sa.String(500), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True)),
    )
    op.create_table(
        "irt_systems",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("study_name", sa.String(200), server_default=""),
        sa.Column("protocol", sa.String(100), nullable=False),
        sa.Column("version", sa.String(30), nullable=False),
        sa.Column("jira_key", sa.String(50), nullable=True),
        sa.Column("web_link", sa.String(500), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True)),
    )

    # ── Core bugs ──
    op.create_table(
        "core_bugs",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("jira_key", sa.String(50), nullable=False, index=True),
        sa.Column("jira_link", sa.String(500), nullable=True),
        sa.Column("title", sa.String(300), nullable=False),
        sa.Column("description", sa.Text(), server_default=""),
        sa.Column("severity", sa.String(20), nullable=False, server_default="moderate"),
        sa.Column("status", sa.String(20), nullable=False, server_default="open"),
        sa.Column("found_in_build", sa.String(50), nullable=True),
        sa.Column("affected_versions_json", sa.Text(), server_default="[]"),
        sa.Column("is_assessed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("assessed_product_type", sa.String(10), nullable=True),
        sa.Column("assessed_impacted_versions_json", sa.Text(), nullable=True),
        sa.Column("assessed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("assessed_by", sa.String(100), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "severity IN ('critical','major','moderate','minor','none')",
            name="ck_core_bug_severity",
        ),
    )

    # ── Workflow definitions ──
    op.create_table(
        "workflow_definitions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(100), nullable=False, index=True),
        sa.Column("description", sa.String(500), server_default=""),
        sa.Column("version", sa.String(20), nullable=False, server_default="1.0.0"),
        sa.Column("definition_json", sa.Text(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_by", sa.String(100), server_default="system"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True)),
        sa.UniqueConstraint("name", "version", name="uq_workflow_definition_name_version"),
    )

    # ── Tasks ──
    op.create_table(
        "tasks",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "bug_id", sa.String(36),
            sa.ForeignKey("core_bugs.id", ondelete="CASCADE"),
            nullable=False, index=True,
        ),
        sa.Column("product_type", sa.String(10), nullable=False),
        sa.Column("product_id", sa.String(36), nullable=False),
        sa.Column("title", sa.String(300), nullable=False),
        sa.Column("description", sa.Text(), server_default=""),
        sa.Column("jira_task_key", sa.String(50), nullable=True),
        sa.Column("jira_task_link", sa.String(500), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="open"),
        sa.Column("initial_step_id", sa.String(36), nullable=True),
        sa.Column(
            "workflow_definition_id", sa.Integer(),
            sa.ForeignKey("workflow_definitions.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("context_json", sa.Text(), server_default="{}"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True)),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version_id", sa.Integer(), nullable=False),
        sa.CheckConstraint("product_type IN ('tm','irt')", name="ck_task_product_type"),
        sa.CheckConstraint("status IN ('open','in_progress','completed')", name="ck_task_status"),
    )
    op.create_index("ix_task_product", "tasks", ["product_type", "product_id"])

    op.create_table(
        "task_steps",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "task_id", sa.String(36),
            sa.ForeignKey("tasks.id", ondelete="CASCADE"),
            nullable=False, index=True,
        ),
        sa.Column("template_step_id", sa.String(100), nullable=True),
        sa.Column("action", sa.String(200), nullable=False),
        sa.Column("description", sa.Text(), server_default=""),
        sa.Column("order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("role", sa.String(20), nullable=False, server_default="action"),
        sa.Column("requires_note", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("min_note_length", sa.Integer(), nullable=True),
        sa.Column("max_note_length", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_by", sa.String(100), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("decision_answer", sa.String(3), nullable=True),
        sa.Column("next_step_if_yes", sa.String(36), nullable=True),
        sa.Column("next_step_if_no", sa.String(36), nullable=True),
        sa.Column("auto_check_result", sa.Boolean(), nullable=True),
        sa.Column("auto_check_rule_json", sa.Text(), nullable=True),
        sa.Column("next_step_if_true", sa.String(36), nullable=True),
        sa.Column("next_step_if_false", sa.String(36), nullable=True),
        sa.Column("next_step_id", sa.String(36), nullable=True),
        sa.CheckConstraint(
            "role IN ('action','decision','auto_check','terminal')",
            name="ck_task_step_role",
        ),
        sa.CheckConstraint("status IN ('pending','completed')", name="ck_task_step_status"),
    )
    op.create_index("ix_task_step_task_order", "task_steps", ["task_id", "order"])

    op.create_table(
        "task_notes",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "task_id", sa.String(36),
            sa.ForeignKey("tasks.id", ondelete="CASCADE"),
            nullable=False, index=True,
        ),
        sa.Column("step_id", sa.String(36), nullable=True),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("created_by", sa.String(100), nullable=False, server_default="user"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )

    # ── Workflow audit trail (no FK: outlives the task rows) ──
    op.create_table(
        "workflow_audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("task_id", sa.String(36), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("step_id", sa.String(36), nullable=True),
        sa.Column("step_name", sa.String(200), nullable=False, server_default=""),
        sa.Column("action", sa.String(30), nullable=False),
        sa.Column("result", sa.String(10), nullable=False),
        sa.Column("error_code", sa.String(40), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("previous_step_id", sa.String(36), nullable=True),
        sa.Column("next_step_id", sa.String(36), nullable=True),
        sa.Column("decision", sa.String(10), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("conditions_evaluated_json", sa.Text(), nullable=True),
        sa.Column("context_snapshot_json", sa.Text(), nullable=True),
        sa.Column("actor", sa.String(100), nullable=False, server_default="system"),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.UniqueConstraint("task_id", "sequence", name="uq_workflow_audit_task_sequence"),
    )
    op.create_index("idx_workflow_audit_task", "workflow_audit_logs", ["task_id"])
    op.create_index("idx_workflow_audit_ts", "workflow_audit_logs", ["timestamp"])


def downgrade():
    op.drop_index("idx_workflow_audit_ts", table_name="workflow_audit_logs")
    op.drop_index("idx_workflow_audit_task", table_name="workflow_audit_logs")
    op.drop_table("workflow_audit_logs")
    op.drop_table("task_notes")
    op.drop_index("ix_task_step_task_order", table_name="task_steps")
    op.drop_table("task_steps")
    op.drop_index("ix_task_product", table_name="tasks")
    op.drop_table("tasks")
    op.drop_table("workflow_definitions")
    op.drop_table("core_bugs")
    op.drop_table("irt_systems")
    op.drop_table("trial_managers")
