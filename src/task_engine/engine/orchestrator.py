"""Execution orchestrator: walks parallel groups and enforces step error policy.

The store is the only authority for anything that must survive a crash.
The orchestrator keeps an in-memory handle per running task solely to stop
dispatch and cancel in-flight capability calls.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from task_engine.config import OrchestratorSettings, Settings
from task_engine.engine.capabilities import (
    CapabilityRegistry,
    CapabilityRequest,
    CapabilityResponse,
)
from task_engine.engine.errors import (
    APPROVAL_DENIED,
    BUDGET_EXCEEDED,
    CANCELLED,
    CAPABILITY_ERROR,
    DEADLINE_EXCEEDED,
    INTERNAL_ERROR,
    TASK_ALREADY_RUNNING,
    UNKNOWN_CAPABILITY,
    USER_INPUT_REQUIRED,
    CapabilityError,
    CapabilityTimeout,
    InvalidPhaseTransition,
    PlanningFailure,
    PlanValidationError,
    StepInputError,
    TaskEngineError,
    TaskNotFound,
    UserInputRequired,
)
from task_engine.engine.graph import StepGraph, group_step_ids, topological_sort, validate_plan
from task_engine.engine.inputs import evaluate_condition, resolve_step_inputs
from task_engine.engine.models import (
    TERMINAL_PHASES,
    CheckpointSnapshot,
    ConstraintType,
    ErrorStrategyType,
    ExecutionPlan,
    LogEntry,
    LogLevel,
    PlanStep,
    StepError,
    StepResult,
    StepStatus,
    Task,
    TaskError,
    TaskPhase,
    TaskResult,
    TaskState,
    TaskStatus,
    WaitKind,
    WaitRequest,
)
from task_engine.engine.planning import PlanProducer
from task_engine.engine.policy import EffectivePolicy, decide_retry, resolve_policy
from task_engine.engine.repository import StateStore
from task_engine.engine.sink import LoggingSink, ProgressSink
from task_engine.storage.common import utc_now

logger = logging.getLogger(__name__)

FollowUpProvider = Callable[[Task, TaskResult], list[str]]


class ApprovalGate(Protocol):
    """Optional interactive approval for steps that require it."""

    async def request_approval(self, task: Task, step: PlanStep) -> bool:
        """Return True to let the step run."""


@dataclass(slots=True)
class _RunHandle:
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    in_flight: set[asyncio.Task[Any]] = field(default_factory=set)


@dataclass(slots=True)
class _Execution:
    """Working view of one task run, rebuilt from the store on every run."""

    task: Task
    plan: ExecutionPlan
    graph: StepGraph
    groups: list[list[str]]
    topo_index: dict[str, int]
    dispatchable: list[str]
    state: TaskState
    results: list[StepResult]
    handle: _RunHandle
    settled: dict[str, StepResult] = field(default_factory=dict)
    outputs: dict[str, Any] = field(default_factory=dict)
    abort_error: TaskError | None = None
    wait: WaitRequest | None = None

    @property
    def cancelled(self) -> bool:
        return self.handle.cancel_event.is_set()

    @property
    def stop_dispatch(self) -> bool:
        return self.cancelled or self.abort_error is not None

    def total_cost(self) -> float:
        return sum(result.cost for result in self.results)

    def progress(self) -> float:
        if not self.dispatchable:
            return 100.0
        done = sum(1 for step_id in self.dispatchable if step_id in self.settled)
        return round(done / len(self.dispatchable) * 100.0, 2)

    def attempts_of(self, step_id: str) -> int:
        return sum(1 for result in self.results if result.step_id == step_id)


class Orchestrator:
    """Drive tasks from submission through planning, execution and evaluation."""

    def __init__(  # noqa: PLR0913
        self,
        store: StateStore,
        capabilities: CapabilityRegistry,
        *,
        plan_producer: PlanProducer | None = None,
        sink: ProgressSink | None = None,
        approval_gate: ApprovalGate | None = None,
        follow_up_provider: FollowUpProvider | None = None,
        settings: OrchestratorSettings | None = None,
    ) -> None:
        self.store = store
        self.capabilities = capabilities
        self.plan_producer = plan_producer
        self.sink: ProgressSink = sink or LoggingSink()
        self.approval_gate = approval_gate
        self.follow_up_provider = follow_up_provider
        self.settings = settings or OrchestratorSettings()
        self._running: dict[str, _RunHandle] = {}

    # Public API

    async def submit(self, task: Task, plan: ExecutionPlan | None = None) -> TaskResult:
        """Persist a task, obtain and validate its plan, then execute it."""

        if not task.id:
            task.id = self.store.generate_id()
        task.status = TaskStatus(phase=TaskPhase.RECEIVED)
        self.store.save_task(task)
        logger.info("Task %s received for user %s", task.id, task.user_id)

        if plan is None:
            self._set_phase(task.id, TaskPhase.ANALYZING)
            plan = await self._produce_plan(task)
        self._set_phase(task.id, TaskPhase.PLANNING)

        plan.task_id = task.id
        if not plan.id:
            plan.id = self.store.generate_id()
        try:
            validate_plan(plan, known_capabilities=self.capabilities.ids())
        except PlanValidationError as error:
            logger.warning("Task %s plan rejected: %s", task.id, error.message)
            self._fail(task.id, _task_error(error))
            raise

        self.store.save_plan(plan)
        self.store.save_task_state(
            TaskState(task_id=task.id, accumulated_context=dict(task.context)),
        )
        self._set_phase(task.id, TaskPhase.EXECUTING, progress=0.0)
        return await self._run(task.id)

    async def resume(
        self,
        task_id: str,
        *,
        inputs: dict[str, Any] | None = None,
        approvals: Iterable[str] = (),
    ) -> TaskResult:
        """Continue a waiting task, or recover an executing one after a restart."""

        task = self._require_task(task_id)
        phase = task.status.phase
        if task_id in self._running:
            raise TaskEngineError(
                f"Task {task_id} is already running",
                code=TASK_ALREADY_RUNNING,
            )
        if phase in TERMINAL_PHASES or phase in {TaskPhase.RECEIVED, TaskPhase.ANALYZING}:
            raise InvalidPhaseTransition(task_id, phase.value, TaskPhase.EXECUTING.value)
        if self.store.get_plan(task_id) is None:
            raise InvalidPhaseTransition(task_id, phase.value, TaskPhase.EXECUTING.value)
        if phase == TaskPhase.EVALUATING:
            logger.info("Task %s resumed during evaluation; completing", task_id)
            self._set_phase(task_id, TaskPhase.COMPLETED, progress=100.0)
            return self._build_result(task_id)

        state = self.store.get_task_state(task_id) or TaskState(
            task_id=task_id,
            accumulated_context=dict(task.context),
        )
        approved = set(approvals)
        state.user_inputs.update(inputs or {})
        state.approved_steps = sorted(set(state.approved_steps) | approved)
        self.store.save_task_state(state)
        self.store.add_task_event(
            task_id,
            "resumed",
            {"inputs": sorted((inputs or {}).keys()), "approvals": sorted(approved)},
        )
        logger.info("Task %s resumed from phase %s", task_id, phase.value)
        self._set_phase(task_id, TaskPhase.EXECUTING, waiting_for=None, error=None)
        return await self._run(task_id)

    def cancel(self, task_id: str) -> Task:
        """Stop dispatch, cancel in-flight calls and mark the task failed."""

        task = self._require_task(task_id)
        if task.status.phase in TERMINAL_PHASES:
            raise InvalidPhaseTransition(task_id, task.status.phase.value, TaskPhase.FAILED.value)
        handle = self._running.get(task_id)
        if handle is not None:
            handle.cancel_event.set()
            for call in list(handle.in_flight):
                call.cancel()
        logger.info("Task %s cancelled", task_id)
        return self.store.update_task_status(
            task_id,
            TaskStatus(
                phase=TaskPhase.FAILED,
                current_step=task.status.current_step,
                progress=task.status.progress,
                error=TaskError(code=CANCELLED, message="Task cancelled by request."),
            ),
        )

    def get_status(self, task_id: str) -> TaskStatus:
        return self._require_task(task_id).status

    def list_by_user(self, user_id: str) -> list[Task]:
        return self.store.get_tasks_by_user(user_id)

    # Planning

    async def _produce_plan(self, task: Task) -> ExecutionPlan:
        if self.plan_producer is None:
            error = PlanningFailure(
                f"No plan supplied and no plan producer configured for {task.id}",
            )
            self._fail(task.id, _task_error(error))
            raise error
        try:
            return await self.plan_producer.create_plan(task)
        except PlanningFailure as error:
            self._fail(task.id, _task_error(error))
            raise
        except Exception as error:
            failure = PlanningFailure(f"Plan producer failed: {error}")
            self._fail(task.id, _task_error(failure))
            raise failure from error

    # Run loop

    async def _run(self, task_id: str) -> TaskResult:
        handle = _RunHandle()
        self._running[task_id] = handle
        try:
            return await self._execute(task_id, handle)
        except Exception as error:
            logger.exception("Task %s crashed during execution", task_id)
            self.store.log_error(
                INTERNAL_ERROR,
                f"{type(error).__name__}: {error}",
                task_id=task_id,
            )
            task = self.store.get_task(task_id)
            if task is not None and task.status.phase not in TERMINAL_PHASES:
                self._fail(
                    task_id,
                    TaskError(
                        code=INTERNAL_ERROR,
                        message=f"Unexpected error: {error}",
                        details={"exception": type(error).__name__},
                    ),
                )
            return self._build_result(task_id)
        finally:
            self._running.pop(task_id, None)

    async def _execute(self, task_id: str, handle: _RunHandle) -> TaskResult:
        execution = self._load_execution(task_id, handle)
        for group_index, group in enumerate(execution.groups):
            if execution.cancelled:
                break
            limit_error = self._limit_error(execution)
            if limit_error is not None:
                execution.abort_error = limit_error
                break
            pending = [
                step_id
                for step_id in group
                if step_id in execution.dispatchable and step_id not in execution.settled
            ]
            if not pending:
                continue
            execution.state.current_group_index = group_index
            await self._save_state(execution.state)
            await self._run_group(execution, pending)
            self._emit("on_progress", task_id, None, execution.progress())
            if execution.stop_dispatch or execution.wait is not None:
                break

        self._finish(execution)
        return self._build_result(task_id)

    def _load_execution(self, task_id: str, handle: _RunHandle) -> _Execution:
        task = self._require_task(task_id)
        plan = self.store.get_plan(task_id)
        if plan is None:
            raise TaskEngineError(f"Task {task_id} has no stored plan")
        graph = validate_plan(plan)
        groups = group_step_ids(graph)
        topo_index = {step.id: index for index, step in enumerate(topological_sort(plan))}
        fallback_only = {
            override.fallback_step_id
            for override in plan.error_handling.step_overrides.values()
            if override.strategy == ErrorStrategyType.FALLBACK and override.fallback_step_id
        }
        state = self.store.get_task_state(task_id) or TaskState(
            task_id=task_id,
            accumulated_context=dict(task.context),
        )
        execution = _Execution(
            task=task,
            plan=plan,
            graph=graph,
            groups=groups,
            topo_index=topo_index,
            dispatchable=[step_id for step_id in graph.step_ids() if step_id not in fallback_only],
            state=state,
            results=self.store.get_step_results(task_id),
            handle=handle,
        )
        for result in execution.results:
            if result.settled:
                execution.settled[result.step_id] = result
                if result.status == StepStatus.SUCCESS:
                    execution.outputs[result.step_id] = result.output
        return execution

    async def _run_group(self, execution: _Execution, step_ids: list[str]) -> None:
        semaphore = asyncio.Semaphore(self.settings.max_concurrent_steps)

        async def guarded(step_id: str) -> None:
            async with semaphore:
                if execution.stop_dispatch:
                    return
                await self._execute_step(execution, execution.graph.steps_by_id[step_id])

        outcomes = await asyncio.gather(
            *(guarded(step_id) for step_id in step_ids),
            return_exceptions=True,
        )
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome

    def _finish(self, execution: _Execution) -> None:
        task_id = execution.task.id
        if execution.cancelled:
            return
        if execution.abort_error is not None:
            logger.warning("Task %s failed: %s", task_id, execution.abort_error.message)
            self._fail(task_id, execution.abort_error)
            return
        if execution.wait is not None:
            logger.info(
                "Task %s waiting for %s (%s)",
                task_id,
                execution.wait.input_name,
                execution.wait.kind.value,
            )
            self._set_phase(
                task_id,
                TaskPhase.WAITING,
                waiting_for=execution.wait,
                progress=execution.progress(),
            )
            return
        self._set_phase(task_id, TaskPhase.EVALUATING, progress=execution.progress())
        self._set_phase(task_id, TaskPhase.COMPLETED, progress=100.0)
        logger.info("Task %s completed", task_id)

    # Steps

    async def _execute_step(self, execution: _Execution, step: PlanStep) -> None:
        if not self._conditions_met(execution, step):
            now = utc_now()
            await self._record(
                execution,
                StepResult(
                    step_id=step.id,
                    status=StepStatus.SKIPPED,
                    attempt=execution.attempts_of(step.id) + 1,
                    started_at=now,
                    completed_at=now,
                    logs=[
                        LogEntry(
                            level=LogLevel.INFO,
                            message=f"Step {step.name} skipped: dependency condition not met.",
                            timestamp=now,
                        ),
                    ],
                    settled=True,
                ),
            )
            return

        policy = resolve_policy(execution.plan, step, self.settings)
        if step.requires_approval and step.id not in execution.state.approved_steps:
            if self.approval_gate is None:
                execution.wait = execution.wait or WaitRequest(
                    kind=WaitKind.APPROVAL,
                    step_id=step.id,
                    input_name=step.id,
                    prompt=step.approval_prompt or f"Approve step '{step.name}'?",
                )
                return
            approved = await self.approval_gate.request_approval(execution.task, step)
            if not approved:
                now = utc_now()
                denied = StepResult(
                    step_id=step.id,
                    status=StepStatus.FAILED,
                    attempt=execution.attempts_of(step.id) + 1,
                    started_at=now,
                    completed_at=now,
                    error=StepError(
                        code=APPROVAL_DENIED,
                        message=f"Approval denied for step {step.name}.",
                        retryable=False,
                    ),
                )
                await self._handle_terminal_failure(execution, step, policy, denied)
                return
            execution.state.approved_steps.append(step.id)
            await self._save_state(execution.state)

        result = await self._run_attempts(execution, step, policy)
        if result is None:
            return
        if result.status == StepStatus.SUCCESS:
            await self._settle_success(execution, step, result)
            return
        await self._handle_terminal_failure(execution, step, policy, result)

    async def _run_attempts(
        self,
        execution: _Execution,
        step: PlanStep,
        policy: EffectivePolicy,
    ) -> StepResult | None:
        """Attempt a step until success or until retries are exhausted.

        Every failed attempt that will be retried is persisted here; the final
        attempt is returned unrecorded so the caller can settle it. Returns
        None when the step paused the task or the task was cancelled.
        """

        attempt = 0
        while True:
            attempt += 1
            attempt_no = execution.attempts_of(step.id) + 1
            result = await self._attempt(execution, step, policy, attempt_no)
            if result is None:
                return None
            if result.error is not None and result.error.code == CANCELLED:
                await self._record(execution, result)
                return None
            if result.error is not None and result.error.code == USER_INPUT_REQUIRED:
                await self._record(execution, result)
                return None
            if result.status == StepStatus.SUCCESS or result.error is None:
                return result
            decision = decide_retry(
                policy=policy,
                error=result.error,
                attempt=attempt,
                settings=self.settings,
            )
            if not decision.should_retry or execution.stop_dispatch:
                return result
            await self._record(execution, result)
            logger.info(
                "Task %s step %s attempt %s failed (%s); retrying in %.2fs",
                execution.task.id,
                step.id,
                result.attempt,
                result.error.code,
                decision.delay_seconds,
            )
            if decision.delay_seconds > 0:
                await asyncio.sleep(decision.delay_seconds)
            if execution.cancelled:
                return None

    async def _attempt(  # noqa: C901
        self,
        execution: _Execution,
        step: PlanStep,
        policy: EffectivePolicy,
        attempt_no: int,
    ) -> StepResult | None:
        task_id = execution.task.id
        started_at = utc_now()
        started = time.monotonic()
        request = CapabilityRequest(
            task_id=task_id,
            step_id=step.id,
            attempt=attempt_no,
            action=step.action,
            inputs={},
            context=dict(execution.state.accumulated_context),
            guidance=execution.state.user_inputs.get(step.id),
            user_inputs=dict(execution.state.user_inputs),
            on_log=lambda entry: self._emit("on_log", task_id, entry),
            on_tool_call=lambda record: self._emit("on_tool_call", task_id, step.id, record),
        )

        try:
            request.inputs = resolve_step_inputs(
                step,
                context=execution.state.accumulated_context,
                step_outputs=execution.outputs,
                user_inputs=execution.state.user_inputs,
            )
        except UserInputRequired as error:
            execution.wait = execution.wait or WaitRequest(
                kind=WaitKind.INPUT,
                step_id=step.id,
                input_name=error.input_name,
                prompt=error.prompt or error.message,
            )
            return None
        except StepInputError as error:
            return _attempt_result(
                request,
                StepStatus.FAILED,
                started_at=started_at,
                started=started,
                error=StepError(code=error.code, message=error.message, details=error.details),
            )

        provider = self.capabilities.get(step.capability_id)
        if provider is None:
            return _attempt_result(
                request,
                StepStatus.FAILED,
                started_at=started_at,
                started=started,
                error=StepError(
                    code=UNKNOWN_CAPABILITY,
                    message=f"Capability not registered: {step.capability_id}",
                ),
            )

        await asyncio.to_thread(self.store.set_current_step, task_id, step.id)
        if execution.cancelled:
            return None
        call =asyncio.ensure_future(provider.invoke(request))
        execution.handle.in_flight.add(call)
        try:
            raw = await asyncio.wait_for(call, timeout=policy.timeout_seconds)
        except TimeoutError:
            timeout = CapabilityTimeout(step.id, policy.timeout_seconds)
            return _attempt_result(
                request,
                StepStatus.TIMEOUT,
                started_at=started_at,
                started=started,
                error=StepError(
                    code=timeout.code,
                    message=timeout.message,
                    retryable=True,
                    details=timeout.details,
                ),
            )
        except UserInputRequired as error:
            execution.wait = execution.wait or WaitRequest(
                kind=WaitKind.INPUT,
                step_id=step.id,
                input_name=error.input_name,
                prompt=error.prompt or error.message,
            )
            return _attempt_result(
                request,
                StepStatus.FAILED,
                started_at=started_at,
                started=started,
                error=StepError(
                    code=error.code,
                    message=error.message,
                    retryable=True,
                    details=error.details,
                ),
            )
        except CapabilityError as error:
            return _attempt_result(
                request,
                StepStatus.FAILED,
                started_at=started_at,
                started=started,
                error=StepError(
                    code=error.code,
                    message=error.message,
                    retryable=error.retryable,
                    details=error.details,
                ),
            )
        except asyncio.CancelledError:
            if not (execution.cancelled and call.cancelled()):
                raise
            return _attempt_result(
                request,
                StepStatus.FAILED,
                started_at=started_at,
                started=started,
                error=StepError(code=CANCELLED, message="Step cancelled with its task."),
            )
        except Exception as error:  # noqa: BLE001
            return _attempt_result(
                request,
                StepStatus.FAILED,
                started_at=started_at,
                started=started,
                error=StepError(
                    code=CAPABILITY_ERROR,
                    message=f"{type(error).__name__}: {error}",
                    retryable=True,
                    details={"exception": type(error).__name__},
                ),
            )
        finally:
            execution.handle.in_flight.discard(call)

        response = raw if isinstance(raw, CapabilityResponse) else CapabilityResponse(output=raw)
        if execution.cancelled:
            return _attempt_result(
                request,
                StepStatus.FAILED,
                started_at=started_at,
                started=started,
                output=response.output,
                cost=response.cost,
                error=StepError(code=CANCELLED, message="Result arrived after task cancellation."),
            )
        if response.context_updates:
            execution.state.accumulated_context.update(response.context_updates)
        return _attempt_result(
            request,
            StepStatus.SUCCESS,
            started_at=started_at,
            started=started,
            output=response.output,
            cost=response.cost,
        )

    async def _handle_terminal_failure(
        self,
        execution: _Execution,
        step: PlanStep,
        policy: EffectivePolicy,
        result: StepResult,
    ) -> None:
        error = result.error or StepError(code=CAPABILITY_ERROR, message="Step failed.")
        if execution.cancelled:
            await self._record(execution, result)
            return

        strategy = policy.strategy
        if strategy == ErrorStrategyType.RETRY:
            result.settled = True
            await self._record(execution, result)
            logger.info(
                "Task %s step %s failure absorbed after retries",
                execution.task.id,
                step.id,
            )
            return
        if strategy == ErrorStrategyType.SKIP:
            result.status = StepStatus.SKIPPED
            result.settled = True
            await self._record(execution, result)
            logger.info("Task %s step %s skipped after failure", execution.task.id, step.id)
            return
        if strategy == ErrorStrategyType.ASK_USER:
            await self._record(execution, result)
            execution.wait = execution.wait or WaitRequest(
                kind=WaitKind.ASK_USER,
                step_id=step.id,
                input_name=step.id,
                prompt=f"Step '{step.name}' failed ({error.code}): {error.message}. "
                "Provide guidance to retry it.",
            )
            return
        if strategy == ErrorStrategyType.FALLBACK and policy.fallback_step_id is not None:
            await self._record(execution, result)
            await self._run_fallback(execution, step, policy.fallback_step_id, error)
            return

        result.settled = True
        await self._record(execution, result)
        execution.abort_error = _abort_error(step, error)

    async def _run_fallback(
        self,
        execution: _Execution,
        step: PlanStep,
        fallback_step_id: str,
        original_error: StepError,
    ) -> None:
        fallback = execution.graph.steps_by_id[fallback_step_id]
        logger.info(
            "Task %s step %s failed (%s); running fallback %s",
            execution.task.id,
            step.id,
            original_error.code,
            fallback.id,
        )
        fallback_policy = resolve_policy(execution.plan, fallback, self.settings)
        fallback_policy.strategy = ErrorStrategyType.ABORT
        fallback_policy.fallback_step_id = None
        result = await self._run_attempts(execution, fallback, fallback_policy)
        if result is None:
            return
        result.settled = True
        await self._record(execution, result)
        if result.status != StepStatus.SUCCESS:
            execution.abort_error = _abort_error(
                fallback,
                result.error or original_error,
                original_step=step,
            )
            return

        execution.outputs[fallback.id] = result.output
        now = utc_now()
        recovered = StepResult(
            step_id=step.id,
            status=StepStatus.SUCCESS,
            attempt=execution.attempts_of(step.id) + 1,
            output=result.output,
            started_at=result.started_at,
            completed_at=now,
            duration_ms=0,
            cost=0.0,
            logs=[
                LogEntry(
                    level=LogLevel.WARNING,
                    message=f"Step {step.name} recovered via fallback step {fallback.id}.",
                    timestamp=now,
                    data={"fallback_step_id": fallback.id, "error_code": original_error.code},
                ),
            ],
        )
        await self._settle_success(execution, step, recovered)

    async def _settle_success(
        self,
        execution: _Execution,
        step: PlanStep,
        result: StepResult,
    ) -> None:
        result.settled = True
        execution.outputs[step.id] = result.output
        await self._save_state(execution.state)
        await self._record(execution, result)
        for checkpoint in execution.plan.checkpoints:
            if checkpoint.after_step_id != step.id:
                continue
            snapshot = CheckpointSnapshot(
                task_id=execution.task.id,
                step_id=step.id,
                step_index=execution.topo_index.get(step.id, 0),
                state=copy.deepcopy(
                    {
                        "context": execution.state.accumulated_context,
                        "outputs": execution.outputs,
                        "group_index": execution.state.current_group_index,
                    },
                ),
                message=checkpoint.message,
            )
            if checkpoint.save_state:
                await asyncio.to_thread(self.store.save_checkpoint, snapshot)
            if checkpoint.notify_user:
                self._emit(
                    "on_log",
                    execution.task.id,
                    LogEntry(
                        level=LogLevel.INFO,
                        message=checkpoint.message or f"Checkpoint reached after {step.name}.",
                        timestamp=utc_now(),
                        data={
                            "checkpoint": {
                                "step_id": step.id,
                                "step_index": snapshot.step_index,
                                "saved": checkpoint.save_state,
                            },
                        },
                    ),
                )

    async def _save_state(self, state: TaskState) -> None:
        await asyncio.to_thread(self.store.save_task_state, copy.deepcopy(state))

    async def _record(self, execution: _Execution, result: StepResult) -> None:
        execution.results.append(result)
        if result.settled:
            execution.settled[result.step_id] = result
        progress = execution.progress()
        await asyncio.to_thread(
            self.store.record_step_result,
            execution.task.id,
            copy.deepcopy(result),
            progress=progress,
            current_step=result.step_id,
        )
        self._emit("on_progress", execution.task.id, result.step_id, progress)

    def _conditions_met(self, execution: _Execution, step: PlanStep) -> bool:
        scope = {"context": execution.state.accumulated_context, "steps": execution.outputs}
        for dependency in execution.plan.dependencies:
            if dependency.step_id != step.id or not dependency.condition:
                continue
            if not evaluate_condition(dependency.condition, scope):
                return False
        return True

    def _limit_error(self, execution: _Execution) -> TaskError | None:
        task = execution.task
        if (
            self.settings.enforce_deadlines
            and task.deadline is not None
            and utc_now() > task.deadline
        ):
            return TaskError(
                code=DEADLINE_EXCEEDED,
                message=f"Deadline {task.deadline.isoformat()} passed before completion.",
            )
        total_cost = execution.total_cost()
        for constraint in task.constraints:
            if constraint.type != ConstraintType.BUDGET or not constraint.strict:
                continue
            if isinstance(constraint.value, bool) or not isinstance(constraint.value, int | float):
                continue
            if total_cost > constraint.value:
                return TaskError(
                    code=BUDGET_EXCEEDED,
                    message=f"Spent {total_cost:.4f} exceeds budget {constraint.value}.",
                    details={"total_cost": total_cost, "budget": constraint.value},
                )
        return None

    # Status helpers

    def _require_task(self, task_id: str) -> Task:
        task = self.store.get_task(task_id)
        if task is None:
            raise TaskNotFound(task_id)
        return task

    def _set_phase(
        self,
        task_id: str,
        phase: TaskPhase,
        *,
        progress: float | None = None,
        error: TaskError | None = None,
        waiting_for: WaitRequest | None = None,
    ) -> Task:
        current = self._require_task(task_id).status
        return self.store.update_task_status(
            task_id,
            TaskStatus(
                phase=phase,
                current_step=current.current_step,
                progress=current.progress if progress is None else progress,
                error=error,
                waiting_for=waiting_for,
            ),
        )

    def _fail(self, task_id: str, error: TaskError) -> None:
        self._set_phase(task_id, TaskPhase.FAILED, error=error)

    def _emit(self, method: str, *args: Any) -> None:
        try:
            getattr(self.sink, method)(*args)
        except Exception:  # noqa: BLE001
            logger.warning("Progress sink %s raised; event dropped", method, exc_info=True)

    # Results

    def _build_result(self, task_id: str) -> TaskResult:
        task = self._require_task(task_id)
        results = self.store.get_step_results(task_id)
        settled: dict[str, StepResult] = {}
        for result in results:
            if result.settled:
                settled[result.step_id] = result
        outputs = {
            step_id: result.output
            for step_id, result in settled.items()
            if result.status == StepStatus.SUCCESS
        }
        final_output: Any = None
        plan = self.store.get_plan(task_id)
        if plan is not None:
            for step_id in reversed(_plan_order(plan)):
                if step_id in outputs:
                    final_output = outputs[step_id]
                    break
        state = self.store.get_task_state(task_id)
        status = task.status
        task_result = TaskResult(
            task_id=task_id,
            success=status.phase == TaskPhase.COMPLETED,
            phase=status.phase,
            output={
                "context": state.accumulated_context if state is not None else dict(task.context),
                "outputs": outputs,
                "final": final_output,
            },
            summary=_summarize(task, settled),
            step_results=results,
            total_duration_ms=sum(result.duration_ms for result in results),
            total_cost=sum(result.cost for result in results),
            error=status.error,
            waiting_for=status.waiting_for,
        )
        if self.follow_up_provider is not None and status.phase == TaskPhase.COMPLETED:
            try:
                task_result.suggested_follow_ups = list(self.follow_up_provider(task, task_result))
            except Exception:  # noqa: BLE001
                logger.warning("Follow-up provider failed for task %s", task_id, exc_info=True)
        return task_result


def build_orchestrator(
    settings: Settings,
    capabilities: CapabilityRegistry,
    **hooks: Any,
) -> Orchestrator:
    """Validate settings, migrate the configured store and wire an orchestrator.

    ``hooks`` are passed through to ``Orchestrator`` (``plan_producer``, ``sink``,
    ``approval_gate``, ``follow_up_provider``).
    """

    settings.validate()
    store = StateStore.from_settings(settings)
    store.init_schema()
    logger.info(
        "Task engine ready: db=%s max_concurrent_steps=%s",
        settings.db_path,
        settings.orchestrator.max_concurrent_steps,
    )
    return Orchestrator(store, capabilities, settings=settings.orchestrator, **hooks)


def _attempt_result(  # noqa: PLR0913
    request: CapabilityRequest,
    status: StepStatus,
    *,
    started_at: datetime,
    started: float,
    output: Any = None,
    cost: float = 0.0,
    error: StepError | None = None,
) -> StepResult:
    return StepResult(
        step_id=request.step_id,
        status=status,
        attempt=request.attempt,
        output=output,
        error=error,
        started_at=started_at,
        completed_at=utc_now(),
        duration_ms=int((time.monotonic() - started) * 1000),
        cost=cost,
        logs=list(request.logs),
        tool_calls=list(request.tool_calls),
    )


def _task_error(error: TaskEngineError) -> TaskError:
    return TaskError(
        code=error.code,
        message=error.message,
        recoverable=error.recoverable,
        details=error.details,
    )


def _abort_error(
    step: PlanStep,
    error: StepError,
    *,
    original_step: PlanStep | None = None,
) -> TaskError:
    details: dict[str, Any] = {"step_id": step.id}
    if original_step is not None:
        details["original_step_id"] = original_step.id
    if error.details:
        details["error_details"] = error.details
    return TaskError(
        code=error.code,
        message=f"Step '{step.name}' failed: {error.message}",
        recoverable=False,
        details=details,
    )


def _plan_order(plan: ExecutionPlan) -> list[str]:
    return [step.id for step in plan.steps]


def _summarize(task: Task, settled: dict[str, StepResult]) -> str:
    status = task.status
    counts = {kind: 0 for kind in (StepStatus.SUCCESS, StepStatus.SKIPPED, StepStatus.FAILED)}
    for result in settled.values():
        key = StepStatus.FAILED if result.status == StepStatus.TIMEOUT else result.status
        if key in counts:
            counts[key] += 1
    tally = (
        f"{counts[StepStatus.SUCCESS]} succeeded, {counts[StepStatus.SKIPPED]} skipped, "
        f"{counts[StepStatus.FAILED]} failed"
    )
    if status.phase == TaskPhase.COMPLETED:
        return f"Completed '{task.goal}': {tally}."
    if status.phase == TaskPhase.WAITING and status.waiting_for is not None:
        return (
            f"Waiting on '{task.goal}' for {status.waiting_for.kind.value} "
            f"'{status.waiting_for.input_name}': {status.waiting_for.prompt} ({tally})."
        )
    if status.error is not None:
        return f"Failed '{task.goal}' [{status.error.code}]: {status.error.message} ({tally})."
    return f"Task '{task.goal}' is {status.phase.value}: {tally}."
