"""Durable state store for tasks, plans and step results."""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import func
from sqlmodel import Session, col, select

from task_engine.config import Settings
from task_engine.engine.contracts import (
    checkpoints_from_list,
    checkpoints_to_list,
    constraints_from_list,
    constraints_to_list,
    dependencies_from_list,
    dependencies_to_list,
    dump_json,
    error_strategy_from_dict,
    error_strategy_to_dict,
    estimates_from_dict,
    estimates_to_dict,
    load_json_array,
    load_json_object,
    logs_from_list,
    logs_to_list,
    status_from_dict,
    status_to_dict,
    step_error_from_dict,
    step_error_to_dict,
    step_from_dict,
    step_to_dict,
    tool_calls_from_list,
    tool_calls_to_list,
)
from task_engine.engine.errors import InvalidPhaseTransition, TaskNotFound
from task_engine.engine.models import (
    CheckpointSnapshot,
    ErrorLogView,
    ExecutionPlan,
    StepResult,
    StepStatus,
    Task,
    TaskEventView,
    TaskPhase,
    TaskPriority,
    TaskState,
    TaskStatus,
    is_transition_allowed,
)
from task_engine.storage.alembic_runner import upgrade_head
from task_engine.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from task_engine.storage.sqlmodel_models import (
    DEFAULT_USER_ID,
    AppUser,
    CheckpointRecord,
    ErrorLogRecord,
    PlanRecord,
    StepResultRecord,
    TaskEventRecord,
    TaskRecord,
    TaskStateRecord,
)

logger = logging.getLogger(__name__)


class StateStore:
    """Task/plan/step-result persistence facade backed by SQLModel + SQLite.

    Every public write runs in one session transaction. Writers for the same
    task id are serialized in-process by a per-task lock; SQLite's writer lock
    with a busy timeout covers other processes.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        busy_timeout_ms: int = 5_000,
        user_id: str = DEFAULT_USER_ID,
        user_name: str = "Default User",
    ) -> None:
        self.db_path = db_path
        self.user_id = user_id
        self.user_name = user_name
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)
        self._locks_guard = threading.Lock()
        self._task_locks: dict[str, threading.Lock] = {}

    @classmethod
    def from_settings(cls, settings: Settings) -> StateStore:
        """Build a store for the configured database file and actor."""

        return cls(
            settings.db_path,
            busy_timeout_ms=settings.storage.busy_timeout_ms,
            user_id=settings.user_context.user_id,
            user_name=settings.user_context.user_name,
        )

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations and ensure actor context exists."""

        upgrade_head(self.db_path)
        with Session(self.engine) as session:
            self._ensure_user(session=session, user_id=self.user_id, display_name=self.user_name)
            session.commit()

    @staticmethod
    def generate_id() -> str:
        """Fresh unique identifier for tasks, plans and steps."""

        return str(uuid4())

    # Tasks

    def save_task(self, task: Task) -> Task:
        """Insert a task or overwrite its stored fields."""

        now = utc_now()
        with self._task_lock(task.id), Session(self.engine) as session:
            self._ensure_user(session=session, user_id=task.user_id, display_name=task.user_id)
            row = session.get(TaskRecord, task.id)
            if row is None:
                row = TaskRecord(
                    task_id=task.id,
                    user_id=task.user_id,
                    goal=task.goal,
                    phase=task.status.phase.value,
                    status_json=dump_json(status_to_dict(task.status)),
                    created_at=to_db_datetime(task.created_at or now),
                    updated_at=to_db_datetime(task.updated_at or task.created_at or now),
                )
                event_type = "created"
                phase_from = None
            else:
                event_type = "saved"
                phase_from = TaskPhase(row.phase)
                row.updated_at = _monotonic(row.updated_at, now)
            row.user_id = task.user_id
            row.goal = task.goal
            row.context_json = dump_json(task.context)
            row.constraints_json = dump_json(constraints_to_list(task.constraints))
            row.priority = task.priority.value
            row.deadline = to_db_datetime(task.deadline) if task.deadline is not None else None
            row.phase = task.status.phase.value
            row.status_json = dump_json(status_to_dict(task.status))
            session.add(row)
            # task_events references tasks; the row must exist before the event.
            session.flush()
            self._add_event(
                session=session,
                task_id=task.id,
                user_id=task.user_id,
                event_type=event_type,
                phase_from=phase_from,
                phase_to=task.status.phase,
                details={"priority": task.priority.value},
            )
            session.commit()
            session.refresh(row)
            return _to_task(row)

    def get_task(self, task_id: str, *, user_id: str | None = None) -> Task | None:
        """Fetch one task, optionally scoped to a user."""

        with Session(self.engine) as session:
            statement = select(TaskRecord).where(TaskRecord.task_id == task_id)
            if user_id is not None:
                statement = statement.where(TaskRecord.user_id == user_id)
            row = session.exec(statement).one_or_none()
            return _to_task(row) if row is not None else None

    def get_tasks_by_user(self, user_id: str) -> list[Task]:
        """List one user's tasks, newest first."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskRecord)
                .where(TaskRecord.user_id == user_id)
                .order_by(col(TaskRecord.created_at).desc(), col(TaskRecord.task_id).asc()),
            ).all()
            return [_to_task(row) for row in rows]

    def update_task_status(self, task_id: str, status: TaskStatus) -> Task:
        """Replace task status, enforcing the phase lifecycle."""

        with self._task_lock(task_id), Session(self.engine) as session:
            row = self._get_task_row(session=session, task_id=task_id)
            previous = TaskPhase(row.phase)
            if not is_transition_allowed(previous, status.phase):
                raise InvalidPhaseTransition(task_id, previous.value, status.phase.value)
            row.phase = status.phase.value
            row.status_json = dump_json(status_to_dict(status))
            row.updated_at = _monotonic(row.updated_at, utc_now())
            session.add(row)
            if previous != status.phase:
                details: dict[str, Any] = {}
                if status.error is not None:
                    details["error_code"] = status.error.code
                if status.waiting_for is not None:
                    details["waiting_for"] = status.waiting_for.input_name
                self._add_event(
                    session=session,
                    task_id=task_id,
                    user_id=row.user_id,
                    event_type="phase_changed",
                    phase_from=previous,
                    phase_to=status.phase,
                    details=details,
                )
            session.commit()
            session.refresh(row)
            return _to_task(row)

    def set_current_step(self, task_id: str, step_id: str) -> None:
        """Mark the step being dispatched; a no-op unless the task is executing."""

        with self._task_lock(task_id), Session(self.engine) as session:
            row = self._get_task_row(session=session, task_id=task_id)
            if row.phase != TaskPhase.EXECUTING.value:
                return
            status = status_from_dict(load_json_object(row.status_json, label="tasks.status_json"))
            status.current_step = step_id
            row.status_json = dump_json(status_to_dict(status))
            row.updated_at = _monotonic(row.updated_at, utc_now())
            session.add(row)
            session.commit()

    # Plans

    def save_plan(self, plan: ExecutionPlan) -> ExecutionPlan:
        """Store a new plan version; stale versions are bumped past the latest."""

        with self._task_lock(plan.task_id), Session(self.engine) as session:
            self._get_task_row(session=session, task_id=plan.task_id)
            latest = session.exec(
                select(func.max(PlanRecord.version)).where(PlanRecord.task_id == plan.task_id),
            ).one()
            version = plan.version
            if latest is not None and version <= latest:
                version = latest + 1
            created_at = plan.created_at or utc_now()
            session.add(
                PlanRecord(
                    plan_id=plan.id,
                    task_id=plan.task_id,
                    version=version,
                    steps_json=dump_json([step_to_dict(step) for step in plan.steps]),
                    dependencies_json=dump_json(dependencies_to_list(plan.dependencies)),
                    error_handling_json=dump_json(error_strategy_to_dict(plan.error_handling)),
                    estimates_json=dump_json(estimates_to_dict(plan.estimates)),
                    checkpoints_json=dump_json(checkpoints_to_list(plan.checkpoints)),
                    created_at=to_db_datetime(created_at),
                ),
            )
            session.commit()
        plan.version = version
        plan.created_at = to_utc_aware_datetime(created_at)
        return plan

    def get_plan(self, task_id: str) -> ExecutionPlan | None:
        """Latest plan version for the task."""

        with Session(self.engine) as session:
            row = session.exec(
                select(PlanRecord)
                .where(PlanRecord.task_id == task_id)
                .order_by(col(PlanRecord.version).desc())
                .limit(1),
            ).one_or_none()
            return _to_plan(row) if row is not None else None

    def get_plan_versions(self, task_id: str) -> list[int]:
        with Session(self.engine) as session:
            versions = session.exec(
                select(PlanRecord.version)
                .where(PlanRecord.task_id == task_id)
                .order_by(col(PlanRecord.version).asc()),
            ).all()
            return [int(version) for version in versions]

    # Step results

    def save_step_result(self, task_id: str, result: StepResult) -> None:
        """Append one step attempt to the task's result log."""

        with self._task_lock(task_id), Session(self.engine) as session:
            row = self._get_task_row(session=session, task_id=task_id)
            session.add(_to_step_result_record(task_id=task_id, user_id=row.user_id, result=result))
            session.commit()

    def record_step_result(
        self,
        task_id: str,
        result: StepResult,
        *,
        progress: float | None = None,
        current_step: str | None = None,
    ) -> None:
        """Append a step attempt and update progress in the same transaction."""

        with self._task_lock(task_id), Session(self.engine) as session:
            row = self._get_task_row(session=session, task_id=task_id)
            session.add(_to_step_result_record(task_id=task_id, user_id=row.user_id, result=result))
            status = status_from_dict(load_json_object(row.status_json, label="tasks.status_json"))
            if progress is not None:
                status.progress = max(0.0, min(100.0, progress))
            if current_step is not None:
                status.current_step = current_step
            row.status_json = dump_json(status_to_dict(status))
            row.updated_at = _monotonic(row.updated_at, utc_now())
            session.add(row)
            session.commit()

    def get_step_results(self, task_id: str) -> list[StepResult]:
        """All recorded attempts in insertion order."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(StepResultRecord)
                .where(StepResultRecord.task_id == task_id)
                .order_by(col(StepResultRecord.id).asc()),
            ).all()
            return [_to_step_result(row) for row in rows]

    # Runtime state

    def save_task_state(self, state: TaskState) -> TaskState:
        """Upsert the resumable runtime state of a task."""

        now = utc_now()
        with self._task_lock(state.task_id), Session(self.engine) as session:
            self._get_task_row(session=session, task_id=state.task_id)
            row = session.get(TaskStateRecord, state.task_id)
            if row is None:
                row = TaskStateRecord(task_id=state.task_id, updated_at=to_db_datetime(now))
            row.current_group_index = state.current_group_index
            row.accumulated_context_json = dump_json(state.accumulated_context)
            row.user_inputs_json = dump_json(state.user_inputs)
            row.approved_steps_json = dump_json(sorted(set(state.approved_steps)))
            # save_checkpoint owns last_checkpoint; keep the stored one when absent.
            if state.last_checkpoint is not None:
                row.last_checkpoint_json = dump_json(state.last_checkpoint)
            row.updated_at = _monotonic(row.updated_at, now)
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_task_state(row)

    def get_task_state(self, task_id: str) -> TaskState | None:
        with Session(self.engine) as session:
            row = session.get(TaskStateRecord, task_id)
            return _to_task_state(row) if row is not None else None

    def save_checkpoint(self, snapshot: CheckpointSnapshot) -> CheckpointSnapshot:
        """Persist a checkpoint and mirror it into the task state."""

        created_at = snapshot.created_at or utc_now()
        payload = {
            "step_id": snapshot.step_id,
            "step_index": snapshot.step_index,
            "message": snapshot.message,
            "created_at": to_utc_aware_datetime(created_at).isoformat(),
        }
        with self._task_lock(snapshot.task_id), Session(self.engine) as session:
            task_row = self._get_task_row(session=session, task_id=snapshot.task_id)
            session.add(
                CheckpointRecord(
                    task_id=snapshot.task_id,
                    step_id=snapshot.step_id,
                    step_index=snapshot.step_index,
                    state_json=dump_json(snapshot.state),
                    message=snapshot.message,
                    created_at=to_db_datetime(created_at),
                ),
            )
            state_row = session.get(TaskStateRecord, snapshot.task_id)
            if state_row is None:
                state_row = TaskStateRecord(
                    task_id=snapshot.task_id,
                    updated_at=to_db_datetime(created_at),
                )
            state_row.last_checkpoint_json = dump_json(payload)
            state_row.updated_at = _monotonic(state_row.updated_at, utc_now())
            session.add(state_row)
            self._add_event(
                session=session,
                task_id=snapshot.task_id,
                user_id=task_row.user_id,
                event_type="checkpoint",
                phase_from=None,
                phase_to=None,
                details={"step_id": snapshot.step_id, "step_index": snapshot.step_index},
            )
            session.commit()
        snapshot.created_at = to_utc_aware_datetime(created_at)
        return snapshot

    def list_checkpoints(self, task_id: str) -> list[CheckpointSnapshot]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(CheckpointRecord)
                .where(CheckpointRecord.task_id == task_id)
                .order_by(col(CheckpointRecord.id).asc()),
            ).all()
            return [
                CheckpointSnapshot(
                    task_id=row.task_id,
                    step_id=row.step_id,
                    step_index=row.step_index,
                    state=load_json_object(row.state_json, label="task_checkpoints.state_json"),
                    message=row.message,
                    created_at=to_utc_aware_datetime(row.created_at),
                )
                for row in rows
            ]

    # Audit trail

    def add_task_event(
        self,
        task_id: str,
        event_type: str,
        details: dict[str, object] | None = None,
    ) -> None:
        """Append a free-form audit event for a task."""

        with self._task_lock(task_id), Session(self.engine) as session:
            row = self._get_task_row(session=session, task_id=task_id)
            self._add_event(
                session=session,
                task_id=task_id,
                user_id=row.user_id,
                event_type=event_type,
                phase_from=None,
                phase_to=None,
                details=details or {},
            )
            session.commit()

    def list_task_events(self, task_id: str) -> list[TaskEventView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskEventRecord)
                .where(TaskEventRecord.task_id == task_id)
                .order_by(col(TaskEventRecord.id).asc()),
            ).all()
            return [
                TaskEventView(
                    event_id=int(row.id or 0),
                    task_id=row.task_id,
                    event_type=row.event_type,
                    phase_from=TaskPhase(row.phase_from) if row.phase_from is not None else None,
                    phase_to=TaskPhase(row.phase_to) if row.phase_to is not None else None,
                    created_at=to_utc_aware_datetime(row.created_at),
                    details=json.loads(row.details_json) if row.details_json else {},
                )
                for row in rows
            ]

    def log_error(
        self,
        code: str,
        message: str,
        *,
        task_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Record an engine error for later inspection."""

        logger.error("Task %s error %s: %s", task_id or "-", code, message)
        with Session(self.engine) as session:
            session.add(
                ErrorLogRecord(
                    task_id=task_id,
                    code=code,
                    message=message,
                    details_json=dump_json(details) if details else None,
                    created_at=to_db_datetime(utc_now()),
                ),
            )
            session.commit()

    def list_errors(self, task_id: str | None = None) -> list[ErrorLogView]:
        with Session(self.engine) as session:
            statement = select(ErrorLogRecord)
            if task_id is not None:
                statement = statement.where(ErrorLogRecord.task_id == task_id)
            rows = session.exec(statement.order_by(col(ErrorLogRecord.id).asc())).all()
            return [
                ErrorLogView(
                    error_id=int(row.id or 0),
                    task_id=row.task_id,
                    code=row.code,
                    message=row.message,
                    created_at=to_utc_aware_datetime(row.created_at),
                    details=json.loads(row.details_json) if row.details_json else {},
                )
                for row in rows
            ]

    # Internals

    @contextmanager
    def _task_lock(self, task_id: str) -> Iterator[None]:
        with self._locks_guard:
            lock = self._task_locks.setdefault(task_id, threading.Lock())
        with lock:
            yield

    @staticmethod
    def _ensure_user(*, session: Session, user_id: str, display_name: str) -> None:
        if session.get(AppUser, user_id) is not None:
            return
        session.add(
            AppUser(
                user_id=user_id,
                display_name=display_name,
                created_at=to_db_datetime(utc_now()),
            ),
        )
        session.flush()

    @staticmethod
    def _get_task_row(*, session: Session, task_id: str) -> TaskRecord:
        row = session.get(TaskRecord, task_id)
        if row is None:
            raise TaskNotFound(task_id)
        return row

    @staticmethod
    def _add_event(  # noqa: PLR0913
        *,
        session: Session,
        task_id: str,
        user_id: str,
        event_type: str,
        phase_from: TaskPhase | None,
        phase_to: TaskPhase | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            TaskEventRecord(
                task_id=task_id,
                user_id=user_id,
                event_type=event_type,
                phase_from=phase_from.value if phase_from is not None else None,
                phase_to=phase_to.value if phase_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=to_db_datetime(utc_now()),
            ),
        )


def _monotonic(previous: datetime | None, now: datetime) -> datetime:
    candidate = to_db_datetime(now)
    if previous is None:
        return candidate
    previous_db = to_db_datetime(previous)
    return previous_db if previous_db > candidate else candidate


def _to_task(row: TaskRecord) -> Task:
    return Task(
        id=row.task_id,
        user_id=row.user_id,
        goal=row.goal,
        context=load_json_object(row.context_json, label="tasks.context_json"),
        constraints=constraints_from_list(
            load_json_array(row.constraints_json, label="tasks.constraints_json"),
        ),
        priority=TaskPriority(row.priority),
        deadline=to_utc_aware_datetime(row.deadline) if row.deadline is not None else None,
        status=status_from_dict(load_json_object(row.status_json, label="tasks.status_json")),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_plan(row: PlanRecord) -> ExecutionPlan:
    return ExecutionPlan(
        id=row.plan_id,
        task_id=row.task_id,
        version=row.version,
        steps=[
            step_from_dict(item)
            for item in load_json_array(row.steps_json, label="execution_plans.steps_json")
        ],
        dependencies=dependencies_from_list(
            load_json_array(row.dependencies_json, label="execution_plans.dependencies_json"),
        ),
        error_handling=error_strategy_from_dict(
            load_json_object(row.error_handling_json, label="execution_plans.error_handling_json"),
        ),
        estimates=estimates_from_dict(
            load_json_object(row.estimates_json, label="execution_plans.estimates_json"),
        ),
        checkpoints=checkpoints_from_list(
            load_json_array(row.checkpoints_json, label="execution_plans.checkpoints_json"),
        ),
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _to_step_result_record(*, task_id: str, user_id: str, result: StepResult) -> StepResultRecord:
    return StepResultRecord(
        task_id=task_id,
        user_id=user_id,
        step_id=result.step_id,
        attempt=result.attempt,
        status=result.status.value,
        output_json=dump_json(result.output) if result.output is not None else None,
        error_json=(
            dump_json(step_error_to_dict(result.error)) if result.error is not None else None
        ),
        started_at=to_db_datetime(result.started_at),
        completed_at=(
            to_db_datetime(result.completed_at) if result.completed_at is not None else None
        ),
        duration_ms=result.duration_ms,
        cost=result.cost,
        logs_json=dump_json(logs_to_list(result.logs)),
        tool_calls_json=dump_json(tool_calls_to_list(result.tool_calls)),
        settled=result.settled,
        created_at=to_db_datetime(utc_now()),
    )


def _to_step_result(row: StepResultRecord) -> StepResult:
    return StepResult(
        step_id=row.step_id,
        status=StepStatus(row.status),
        attempt=row.attempt,
        output=json.loads(row.output_json) if row.output_json is not None else None,
        error=step_error_from_dict(json.loads(row.error_json)) if row.error_json else None,
        started_at=to_utc_aware_datetime(row.started_at),
        completed_at=(
            to_utc_aware_datetime(row.completed_at) if row.completed_at is not None else None
        ),
        duration_ms=row.duration_ms,
        cost=row.cost,
        logs=logs_from_list(load_json_array(row.logs_json, label="step_results.logs_json")),
        tool_calls=tool_calls_from_list(
            load_json_array(row.tool_calls_json, label="step_results.tool_calls_json"),
        ),
        settled=row.settled,
    )


def _to_task_state(row: TaskStateRecord) -> TaskState:
    return TaskState(
        task_id=row.task_id,
        current_group_index=row.current_group_index,
        accumulated_context=load_json_object(
            row.accumulated_context_json,
            label="task_states.accumulated_context_json",
        ),
        user_inputs=load_json_object(row.user_inputs_json, label="task_states.user_inputs_json"),
        approved_steps=[
            str(item)
            for item in load_json_array(
                row.approved_steps_json,
                label="task_states.approved_steps_json",
            )
        ],
        last_checkpoint=(
            load_json_object(row.last_checkpoint_json, label="task_states.last_checkpoint_json")
            if row.last_checkpoint_json
            else None
        ),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
