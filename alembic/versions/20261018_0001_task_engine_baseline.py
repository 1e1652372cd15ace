"""Task engine baseline schema: tasks, versioned plans, append-only step results."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("display_name", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("user_id"),
    )

    op.create_table(
        "tasks",
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), server_default="default_user", nullable=False),
        sa.Column("goal", sa.Text(), nullable=False),
        sa.Column("context_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("constraints_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("priority", sa.String(), nullable=False, server_default="normal"),
        sa.Column("deadline", sa.DateTime(timezone=True), nullable=True),
        sa.Column("phase", sa.String(), nullable=False),
        sa.Column("status_json", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.user_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("task_id"),
    )
    op.create_index("ix_tasks_user_id", "tasks", ["user_id"], unique=False)
    op.create_index("ix_tasks_phase", "tasks", ["phase"], unique=False)
    op.create_index("ix_tasks_priority", "tasks", ["priority"], unique=False)
    op.create_index("idx_tasks_user_created", "tasks", ["user_id", "created_at"], unique=False)

    op.create_table(
        "execution_plans",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("plan_id", sa.String(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("steps_json", sa.Text(), nullable=False),
        sa.Column("dependencies_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("error_handling_json", sa.Text(), nullable=False),
        sa.Column("estimates_json", sa.Text(), nullable=False),
        sa.Column("checkpoints_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["task_id"], ["tasks.task_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("task_id", "version", name="uq_execution_plans_task_version"),
    )
    op.create_index("ix_execution_plans_plan_id", "execution_plans", ["plan_id"], unique=False)
    op.create_index("ix_execution_plans_task_id", "execution_plans", ["task_id"], unique=False)

    op.create_table(
        "step_results",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), server_default="default_user", nullable=False),
        sa.Column("step_id", sa.String(), nullable=False),
        sa.Column("attempt", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("output_json", sa.Text(), nullable=True),
        sa.Column("error_json", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("cost", sa.Float(), nullable=False, server_default="0"),
        sa.Column("logs_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("tool_calls_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("settled", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["task_id"], ["tasks.task_id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["user_id"], ["users.user_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_step_results_task_id", "step_results", ["task_id"], unique=False)
    op.create_index("ix_step_results_user_id", "step_results", ["user_id"], unique=False)
    op.create_index("ix_step_results_step_id", "step_results", ["step_id"], unique=False)
    op.create_index("ix_step_results_status", "step_results", ["status"], unique=False)
    op.create_index(
        "idx_step_results_task_step",
        "step_results",
        ["task_id", "step_id"],
        unique=False,
    )

    op.create_table(
        "task_states",
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("current_group_index", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("accumulated_context_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("user_inputs_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("approved_steps_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("last_checkpoint_json", sa.Text(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["task_id"], ["tasks.task_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("task_id"),
    )

    op.create_table(
        "task_checkpoints",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("step_id", sa.String(), nullable=False),
        sa.Column("step_index", sa.Integer(), nullable=False),
        sa.Column("state_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["task_id"], ["tasks.task_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_task_checkpoints_task_id", "task_checkpoints", ["task_id"], unique=False)
    op.create_index("ix_task_checkpoints_step_id", "task_checkpoints", ["step_id"], unique=False)
    op.create_index(
        "idx_task_checkpoints_task_time",
        "task_checkpoints",
        ["task_id", "created_at"],
        unique=False,
    )

    op.create_table(
        "task_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), server_default="default_user", nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("phase_from", sa.String(), nullable=True),
        sa.Column("phase_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["task_id"], ["tasks.task_id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["user_id"], ["users.user_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_task_events_task_id", "task_events", ["task_id"], unique=False)
    op.create_index("ix_task_events_user_id", "task_events", ["user_id"], unique=False)
    op.create_index("ix_task_events_event_type", "task_events", ["event_type"], unique=False)
    op.create_index("ix_task_events_phase_from", "task_events", ["phase_from"], unique=False)
    op.create_index("ix_task_events_phase_to", "task_events", ["phase_to"], unique=False)
    op.create_index(
        "idx_task_events_task_time",
        "task_events",
        ["task_id", "created_at"],
        unique=False,
    )

    op.create_table(
        "error_logs",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=True),
        sa.Column("code", sa.String(), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_error_logs_task_id", "error_logs", ["task_id"], unique=False)
    op.create_index("ix_error_logs_code", "error_logs", ["code"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_error_logs_code", table_name="error_logs")
    op.drop_index("ix_error_logs_task_id", table_name="error_logs")
    op.drop_index("idx_task_events_task_time", table_name="task_events")
    op.drop_index("ix_task_events_phase_to", table_name="task_events")
    op.drop_index("ix_task_events_phase_from", table_name="task_events")
    op.drop_index("ix_task_events_event_type", table_name="task_events")
    op.drop_index("ix_task_events_user_id", table_name="task_events")
    op.drop_index("ix_task_events_task_id", table_name="task_events")
    op.drop_index("idx_task_checkpoints_task_time", table_name="task_checkpoints")
    op.drop_index("ix_task_checkpoints_step_id", table_name="task_checkpoints")
    op.drop_index("ix_task_checkpoints_task_id", table_name="task_checkpoints")
    op.drop_index("idx_step_results_task_step", table_name="step_results")
    op.drop_index("ix_step_results_status", table_name="step_results")
    op.drop_index("ix_step_results_step_id", table_name="step_results")
    op.drop_index("ix_step_results_user_id", table_name="step_results")
    op.drop_index("ix_step_results_task_id", table_name="step_results")
    op.drop_index("ix_execution_plans_task_id", table_name="execution_plans")
    op.drop_index("ix_execution_plans_plan_id", table_name="execution_plans")
    op.drop_index("idx_tasks_user_created", table_name="tasks")
    op.drop_index("ix_tasks_priority", table_name="tasks")
    op.drop_index("ix_tasks_phase", table_name="tasks")
    op.drop_index("ix_tasks_user_id", table_name="tasks")
    op.drop_table("error_logs")
    op.drop_table("task_events")
    op.drop_table("task_checkpoints")
    op.drop_table("task_states")
    op.drop_table("step_results")
    op.drop_table("execution_plans")
    op.drop_table("tasks")
    op.drop_table("users")
