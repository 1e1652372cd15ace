"""SQLModel ORM tables for the task state store."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, UniqueConstraint
from sqlmodel import Field, SQLModel

DEFAULT_USER_ID = "default_user"


class AppUser(SQLModel, table=True):
    __tablename__ = "users"  # type: ignore[bad-override]

    user_id: str = Field(primary_key=True, index=True)
    display_name: str = Field(index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskRecord(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_tasks_user_created", "user_id", "created_at"),)

    task_id: str = Field(primary_key=True)
    user_id: str = Field(
        default=DEFAULT_USER_ID,
        sa_column=Column(
            ForeignKey("users.user_id", ondelete="CASCADE"),
            nullable=False,
            server_default=DEFAULT_USER_ID,
            index=True,
        ),
    )
    goal: str = Field(sa_column=Column(Text, nullable=False))
    context_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    constraints_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    priority: str = Field(default="normal", index=True)
    deadline: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    phase: str = Field(index=True)
    status_json: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class PlanRecord(SQLModel, table=True):
    __tablename__ = "execution_plans"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("task_id", "version", name="uq_execution_plans_task_version"),
    )

    id: int | None = Field(default=None, primary_key=True)
    plan_id: str = Field(index=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    version: int = Field(default=1)
    steps_json: str = Field(sa_column=Column(Text, nullable=False))
    dependencies_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    error_handling_json: str = Field(sa_column=Column(Text, nullable=False))
    estimates_json: str = Field(sa_column=Column(Text, nullable=False))
    checkpoints_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class StepResultRecord(SQLModel, table=True):
    __tablename__ = "step_results"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_step_results_task_step", "task_id", "step_id"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    user_id: str = Field(
        default=DEFAULT_USER_ID,
        sa_column=Column(
            ForeignKey("users.user_id", ondelete="CASCADE"),
            nullable=False,
            server_default=DEFAULT_USER_ID,
            index=True,
        ),
    )
    step_id: str = Field(index=True)
    attempt: int = Field(default=1)
    status: str = Field(index=True)
    output_json: str | None = Field(default=None, sa_column=Column(Text))
    error_json: str | None = Field(default=None, sa_column=Column(Text))
    started_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    duration_ms: int = Field(default=0)
    cost: float = Field(default=0.0)
    logs_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    tool_calls_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    settled: bool = Field(default=False)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskStateRecord(SQLModel, table=True):
    __tablename__ = "task_states"  # type: ignore[bad-override]

    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            primary_key=True,
        ),
    )
    current_group_index: int = Field(default=0)
    accumulated_context_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    user_inputs_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    approved_steps_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    last_checkpoint_json: str | None = Field(default=None, sa_column=Column(Text))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class CheckpointRecord(SQLModel, table=True):
    __tablename__ = "task_checkpoints"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_task_checkpoints_task_time", "task_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    step_id: str = Field(index=True)
    step_index: int
    state_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    message: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskEventRecord(SQLModel, table=True):
    __tablename__ = "task_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_task_events_task_time", "task_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    user_id: str = Field(
        default=DEFAULT_USER_ID,
        sa_column=Column(
            ForeignKey("users.user_id", ondelete="CASCADE"),
            nullable=False,
            server_default=DEFAULT_USER_ID,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    phase_from: str | None = Field(default=None, index=True)
    phase_to: str | None = Field(default=None, index=True)
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ErrorLogRecord(SQLModel, table=True):
    __tablename__ = "error_logs"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    task_id: str | None = Field(default=None, index=True)
    code: str = Field(index=True)
    message: str = Field(sa_column=Column(Text, nullable=False))
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
