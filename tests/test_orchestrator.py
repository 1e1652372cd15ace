from __future__ import annotations

import asyncio
import dataclasses
import threading
from datetime import UTC, datetime, timedelta

import allure
import pytest

from task_engine.config import OrchestratorSettings
from task_engine.engine.capabilities import (
    CapabilityRegistry,
    CapabilityRequest,
    CapabilityResponse,
)
from task_engine.engine.errors import (
    CyclicDependency,
    InvalidPhaseTransition,
    MissingReference,
    PlanningFailure,
    TaskNotFound,
    UserInputRequired,
)
from task_engine.engine.models import (
    Checkpoint,
    Constraint,
    ConstraintType,
    Dependency,
    ErrorStrategy,
    ErrorStrategyType,
    ExecutionPlan,
    InputSourceType,
    PlanStep,
    StepAction,
    StepErrorOverride,
    StepInput,
    StepResult,
    StepStatus,
    Task,
    TaskPhase,
    TaskStatus,
    WaitKind,
)
from task_engine.engine.orchestrator import Orchestrator
from task_engine.engine.planning import StaticPlanProducer
from task_engine.engine.repository import StateStore
from task_engine.engine.sink import RecordingSink

pytestmark = [
    allure.epic("Task Execution Engine"),
    allure.feature("Execution Orchestrator"),
]


def _task(*, user_id: str = "alice", **kwargs) -> Task:
    return Task(id="", user_id=user_id, goal=kwargs.pop("goal", "Prepare report"), **kwargs)


def _step(step_id: str, *, capability_id: str = "echo", **kwargs) -> PlanStep:
    params = kwargs.pop("params", {})
    return PlanStep(
        id=step_id,
        name=step_id.upper(),
        capability_id=capability_id,
        action=StepAction(type=step_id, params=params),
        **kwargs,
    )


def _plan(steps: list[PlanStep], edges: list[tuple[str, str]] = (), **kwargs) -> ExecutionPlan:
    dependencies = kwargs.pop(
        "dependencies",
        [Dependency(step_id=after, depends_on=[before]) for after, before in edges],
    )
    return ExecutionPlan(id="", task_id="", steps=steps, dependencies=dependencies, **kwargs)


def _orchestrator(
    store: StateStore,
    registry: CapabilityRegistry,
    settings: OrchestratorSettings,
    **kwargs,
) -> Orchestrator:
    return Orchestrator(store, registry, settings=settings, **kwargs)


def _attempts(result, step_id: str) -> list:
    return [item for item in result.step_results if item.step_id == step_id]


class _Gate:
    def __init__(self, answer: bool) -> None:
        self.answer = answer
        self.asked: list[str] = []

    async def request_approval(self, task: Task, step: PlanStep) -> bool:
        self.asked.append(step.id)
        return self.answer


class _BlockingCapability:
    def __init__(self) -> None:
        self.started = asyncio.Event()
        self.cancelled = False

    async def invoke(self, request: CapabilityRequest) -> CapabilityResponse:
        self.started.set()
        try:
            await asyncio.sleep(30)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        return CapabilityResponse(output="late")


class _ExplodingSink(RecordingSink):
    def on_progress(self, task_id: str, step_id: str | None, percent: float) -> None:
        raise RuntimeError("sink is down")


class _TrackingCapability:
    def __init__(self, delay: float) -> None:
        self.delay = delay
        self.active = 0
        self.peak = 0
        self.started: list[str] = []

    async def invoke(self, request: CapabilityRequest) -> CapabilityResponse:
        self.active += 1
        self.peak = max(self.peak, self.active)
        self.started.append(request.step_id)
        try:
            await asyncio.sleep(self.delay)
        finally:
            self.active -= 1
        return CapabilityResponse(output={"step": request.step_id})


class _KeyedCapability:
    def __init__(self) -> None:
        self.seen: list[dict] = []

    async def invoke(self, request: CapabilityRequest) -> CapabilityResponse:
        self.seen.append(dict(request.user_inputs))
        if "api_key" not in request.user_inputs:
            raise UserInputRequired("api_key", "Paste the reporting API key.")
        return CapabilityResponse(output={"authorized": request.user_inputs["api_key"]})


def _executing_task(store: StateStore, plan: ExecutionPlan, task_id: str) -> None:
    store.save_task(Task(id=task_id, user_id="alice", goal="Recover"))
    store.update_task_status(task_id, TaskStatus(phase=TaskPhase.PLANNING))
    plan.id = f"plan-{task_id}"
    plan.task_id = task_id
    store.save_plan(plan)
    store.update_task_status(task_id, TaskStatus(phase=TaskPhase.EXECUTING))



def test_diamond_plan_completes_with_outputs(store, echo, registry, fast_settings) -> None:
    plan = _plan(
        [
            _step("A", params={"delay_seconds": 0.01}),
            _step("B", params={"delay_seconds": 0.02}),
            _step("C", params={"delay_seconds": 0.01}),
            _step(
                "D",
                inputs=[
                    StepInput(
                        name="left",
                        source_type=InputSourceType.STEP,
                        step_id="B",
                        output_path="action",
                    ),
                    StepInput(
                        name="right",
                        source_type=InputSourceType.STEP,
                        step_id="C",
                        output_path="action",
                    ),
                ],
            ),
        ],
        [("B", "A"), ("C", "A"), ("D", "B"), ("D", "C")],
    )
    orchestrator = _orchestrator(
        store,
        registry,
        fast_settings,
        follow_up_provider=lambda task, result: [f"Review {task.goal}"],
    )

    result = asyncio.run(orchestrator.submit(_task(), plan))

    assert result.success is True
    assert result.phase == TaskPhase.COMPLETED
    assert result.output["final"] == {"action": "D", "left": "B", "right": "C"}
    assert set(result.output["outputs"]) == {"A", "B", "C", "D"}
    assert [request.step_id for request in echo.calls][0] == "A"
    assert [request.step_id for request in echo.calls][-1] == "D"
    assert result.suggested_follow_ups == ["Review Prepare report"]
    assert "4 succeeded" in result.summary

    status = orchestrator.get_status(result.task_id)
    assert status.phase == TaskPhase.COMPLETED
    assert status.progress == 100.0
    plan_saved = store.get_plan(result.task_id)
    assert plan_saved is not None
    assert plan_saved.version == 1


def test_retries_are_bounded_by_max_retries(store, echo, registry, fast_settings) -> None:
    plan = _plan([_step("flaky", params={"fail_times": 5}, max_retries=2)])
    orchestrator = _orchestrator(store, registry, fast_settings)

    result = asyncio.run(orchestrator.submit(_task(), plan))

    attempts = _attempts(result, "flaky")
    assert [item.attempt for item in attempts] == [1, 2, 3]
    assert [item.settled for item in attempts] == [False, False, True]
    assert len(echo.calls) == 3
    assert result.success is False
    assert result.phase == TaskPhase.FAILED
    assert result.error is not None
    assert result.error.code == "ECHO_FAILURE"


def test_flaky_step_succeeds_within_retry_budget(store, echo, registry, fast_settings) -> None:
    plan = _plan([_step("flaky", params={"fail_times": 1})])
    orchestrator = _orchestrator(store, registry, fast_settings)

    result = asyncio.run(orchestrator.submit(_task(), plan))

    assert result.success is True
    attempts = _attempts(result, "flaky")
    assert [item.status for item in attempts] == [StepStatus.FAILED, StepStatus.SUCCESS]
    assert attempts[0].logs[0].message == "echo failure 1 of 1"


def test_skip_strategy_lets_the_task_complete(store, echo, registry, fast_settings) -> None:
    plan = _plan(
        [_step("broken", params={"fail_times": 9}, max_retries=0), _step("after")],
        [("after", "broken")],
        error_handling=ErrorStrategy(
            step_overrides={"broken": StepErrorOverride(strategy=ErrorStrategyType.SKIP)},
        ),
    )
    orchestrator = _orchestrator(store, registry, fast_settings)

    result = asyncio.run(orchestrator.submit(_task(), plan))

    assert result.success is True
    broken = _attempts(result, "broken")
    assert len(broken) == 1
    assert broken[0].status == StepStatus.SKIPPED
    assert broken[0].error is not None
    assert "broken" not in result.output["outputs"]
    assert result.output["final"] == {"action": "after"}


def test_retry_strategy_absorbs_exhausted_failure(store, echo, registry, fast_settings) -> None:
    plan = _plan(
        [_step("broken", params={"fail_times": 9}, max_retries=1), _step("other")],
        error_handling=ErrorStrategy(default=ErrorStrategyType.RETRY),
    )
    orchestrator = _orchestrator(store, registry, fast_settings)

    result = asyncio.run(orchestrator.submit(_task(), plan))

    assert result.success is True
    broken = _attempts(result, "broken")
    assert [item.status for item in broken] == [StepStatus.FAILED, StepStatus.FAILED]
    assert broken[-1].settled is True
    assert "1 failed" in result.summary


def test_abort_stops_later_groups(store, echo, registry, fast_settings) -> None:
    plan = _plan(
        [_step("first", params={"fail_times": 9}, max_retries=0), _step("second")],
        [("second", "first")],
    )
    orchestrator = _orchestrator(store, registry, fast_settings)

    result = asyncio.run(orchestrator.submit(_task(), plan))

    assert result.phase == TaskPhase.FAILED
    assert [request.step_id for request in echo.calls] == ["first"]
    assert result.error is not None
    assert result.error.details == {"step_id": "first"}
    events = [event.event_type for event in store.list_task_events(result.task_id)]
    assert events[0] == "created"
    assert "phase_changed" in events


def test_fallback_output_feeds_dependents(store, echo, registry, fast_settings) -> None:
    plan = _plan(
        [
            _step("primary", params={"fail_times": 9}),
            _step("backup", params={"source": "cache"}),
            _step(
                "consume",
                inputs=[
                    StepInput(
                        name="source",
                        source_type=InputSourceType.STEP,
                        step_id="primary",
                        output_path="source",
                    ),
                ],
            ),
        ],
        [("consume", "primary")],
        error_handling=ErrorStrategy(
            step_overrides={
                "primary": StepErrorOverride(
                    strategy=ErrorStrategyType.FALLBACK,
                    fallback_step_id="backup",
                ),
            },
        ),
    )
    orchestrator = _orchestrator(store, registry, fast_settings)

    result = asyncio.run(orchestrator.submit(_task(), plan))

    assert result.success is True
    primary = _attempts(result, "primary")
    assert [item.status for item in primary] == [StepStatus.FAILED, StepStatus.SUCCESS]
    assert primary[0].settled is False
    assert primary[1].logs[0].level.value == "warning"
    assert result.output["outputs"]["consume"] == {"action": "consume", "source": "cache"}
    assert [request.step_id for request in echo.calls] == ["primary", "backup", "consume"]


def test_timeout_records_timeout_and_cancels_call(store, echo, registry, fast_settings) -> None:
    plan = _plan(
        [_step("slow", params={"delay_seconds": 5}, timeout_seconds=0.05, max_retries=0)],
    )
    orchestrator = _orchestrator(store, registry, fast_settings)

    result = asyncio.run(orchestrator.submit(_task(), plan))

    attempts = _attempts(result, "slow")
    assert len(attempts) == 1
    assert attempts[0].status == StepStatus.TIMEOUT
    assert attempts[0].error is not None
    assert attempts[0].error.code == "TIMEOUT"
    assert result.error is not None
    assert result.error.code == "TIMEOUT"
    assert attempts[0].output is None
    assert len(echo.calls) == 1


def test_user_input_wait_and_resume(store, echo, registry, fast_settings) -> None:
    plan = _plan(
        [
            _step("draft"),
            _step(
                "send",
                inputs=[
                    StepInput(
                        name="recipient",
                        source_type=InputSourceType.USER,
                        prompt="Who should receive the report?",
                    ),
                ],
            ),
        ],
        [("send", "draft")],
    )
    orchestrator = _orchestrator(store, registry, fast_settings)

    waiting = asyncio.run(orchestrator.submit(_task(), plan))

    assert waiting.phase == TaskPhase.WAITING
    assert waiting.success is False
    assert waiting.waiting_for is not None
    assert waiting.waiting_for.kind == WaitKind.INPUT
    assert waiting.waiting_for.input_name == "recipient"
    assert waiting.waiting_for.prompt == "Who should receive the report?"
    assert "Waiting on" in waiting.summary

    resumed = asyncio.run(orchestrator.resume(waiting.task_id, inputs={"recipient": "ops"}))

    assert resumed.success is True
    assert [request.step_id for request in echo.calls] == ["draft", "send"]
    assert resumed.output["final"] == {"action": "send", "recipient": "ops"}
    state = store.get_task_state(waiting.task_id)
    assert state is not None
    assert state.user_inputs == {"recipient": "ops"}
    assert "resumed" in [event.event_type for event in store.list_task_events(waiting.task_id)]


def test_approval_waits_without_gate_and_resumes(store, echo, registry, fast_settings) -> None:
    plan = _plan([_step("publish", requires_approval=True, approval_prompt="Publish now?")])
    orchestrator = _orchestrator(store, registry, fast_settings)

    waiting = asyncio.run(orchestrator.submit(_task(), plan))

    assert waiting.phase == TaskPhase.WAITING
    assert waiting.waiting_for is not None
    assert waiting.waiting_for.kind == WaitKind.APPROVAL
    assert waiting.waiting_for.prompt == "Publish now?"
    assert echo.calls == []

    resumed = asyncio.run(orchestrator.resume(waiting.task_id, approvals=["publish"]))

    assert resumed.success is True
    assert len(echo.calls) == 1


def test_approval_gate_denial_aborts(store, echo, registry, fast_settings) -> None:
    gate = _Gate(answer=False)
    plan = _plan([_step("publish", requires_approval=True)])
    orchestrator = _orchestrator(store, registry, fast_settings, approval_gate=gate)

    result = asyncio.run(orchestrator.submit(_task(), plan))

    assert gate.asked == ["publish"]
    assert echo.calls == []
    assert result.phase == TaskPhase.FAILED
    assert result.error is not None
    assert result.error.code == "APPROVAL_DENIED"


def test_approval_gate_grant_runs_step(store, echo, registry, fast_settings) -> None:
    gate = _Gate(answer=True)
    plan = _plan([_step("publish", requires_approval=True)])
    orchestrator = _orchestrator(store, registry, fast_settings, approval_gate=gate)

    result = asyncio.run(orchestrator.submit(_task(), plan))

    assert result.success is True
    state = store.get_task_state(result.task_id)
    assert state is not None
    assert state.approved_steps == ["publish"]


def test_ask_user_strategy_reruns_step_with_guidance(store, echo, registry, fast_settings) -> None:
    plan = _plan(
        [_step("search", params={"fail_times": 1})],
        error_handling=ErrorStrategy(default=ErrorStrategyType.ASK_USER),
    )
    orchestrator = _orchestrator(store, registry, fast_settings)

    waiting = asyncio.run(orchestrator.submit(_task(), plan))

    assert waiting.phase == TaskPhase.WAITING
    assert waiting.waiting_for is not None
    assert waiting.waiting_for.kind == WaitKind.ASK_USER
    assert waiting.waiting_for.input_name == "search"
    assert len(echo.calls) == 1

    resumed = asyncio.run(
        orchestrator.resume(waiting.task_id, inputs={"search": "use the archive"}),
    )

    assert resumed.success is True
    attempts = _attempts(resumed, "search")
    assert [item.attempt for item in attempts] == [1, 2]
    assert attempts[-1].output == {"action": "search", "guidance": "use the archive"}


def test_cancel_stops_running_task(store, echo, registry, fast_settings) -> None:
    blocker = _BlockingCapability()
    registry.register("block", blocker)
    plan = _plan(
        [_step("wait", capability_id="block"), _step("never")],
        [("never", "wait")],
    )
    orchestrator = _orchestrator(store, registry, fast_settings)
    task = _task()

    async def scenario():
        run = asyncio.create_task(orchestrator.submit(task, plan))
        await asyncio.wait_for(blocker.started.wait(), timeout=5)
        cancelled = orchestrator.cancel(task.id)
        return cancelled, await run

    cancelled, result = asyncio.run(scenario())

    assert cancelled.status.phase == TaskPhase.FAILED
    assert blocker.cancelled is True
    assert echo.calls == []
    assert result.phase == TaskPhase.FAILED
    assert result.error is not None
    assert result.error.code == "CANCELLED"
    wait_attempts = _attempts(result, "wait")
    assert len(wait_attempts) == 1
    assert wait_attempts[0].error is not None
    assert wait_attempts[0].error.code == "CANCELLED"

    with pytest.raises(InvalidPhaseTransition):
        orchestrator.cancel(task.id)


def test_checkpoints_are_saved_and_announced(store, echo, registry, fast_settings) -> None:
    sink = RecordingSink()
    plan = _plan(
        [_step("fetch", params={"context_key": "fetched"}), _step("report")],
        [("report", "fetch")],
        checkpoints=[Checkpoint(after_step_id="fetch", notify_user=True, message="fetched")],
    )
    orchestrator = _orchestrator(store, registry, fast_settings, sink=sink)

    result = asyncio.run(orchestrator.submit(_task(context={"topic": "ops"}), plan))

    assert result.success is True
    checkpoints = store.list_checkpoints(result.task_id)
    assert len(checkpoints) == 1
    assert checkpoints[0].step_index == 0
    assert checkpoints[0].state["outputs"] == {"fetch": {"action": "fetch"}}
    assert checkpoints[0].state["context"]["fetched"] == {"action": "fetch"}
    state = store.get_task_state(result.task_id)
    assert state is not None
    assert state.last_checkpoint is not None
    assert state.last_checkpoint["step_id"] == "fetch"
    announced = [entry for _, entry in sink.logs if entry.data and "checkpoint" in entry.data]
    assert len(announced) == 1
    assert announced[0].message == "fetched"
    assert result.output["context"] == {"topic": "ops", "fetched": {"action": "fetch"}}
    assert sink.progress[-1][2] == 100.0
    assert [record.tool_name for _, _, record in sink.tool_calls] == ["echo", "echo"]


def test_false_condition_skips_dependent(store, echo, registry, fast_settings) -> None:
    plan = _plan(
        [_step("check", params={"ok": False}), _step("act")],
        dependencies=[
            Dependency(step_id="act", depends_on=["check"], condition="steps.check.ok"),
        ],
    )
    orchestrator = _orchestrator(store, registry, fast_settings)

    result = asyncio.run(orchestrator.submit(_task(), plan))

    assert result.success is True
    act = _attempts(result, "act")
    assert len(act) == 1
    assert act[0].status == StepStatus.SKIPPED
    assert [request.step_id for request in echo.calls] == ["check"]


def test_past_deadline_fails_before_dispatch(store, echo, registry, fast_settings) -> None:
    plan = _plan([_step("work")])
    orchestrator = _orchestrator(store, registry, fast_settings)
    task = _task(deadline=datetime.now(tz=UTC) - timedelta(minutes=1))

    result = asyncio.run(orchestrator.submit(task, plan))

    assert result.phase == TaskPhase.FAILED
    assert result.error is not None
    assert result.error.code == "DEADLINE_EXCEEDED"
    assert echo.calls == []


def test_strict_budget_stops_next_group(store, echo, registry, fast_settings) -> None:
    plan = _plan(
        [_step("expensive", params={"cost": 2.0}), _step("next")],
        [("next", "expensive")],
    )
    orchestrator = _orchestrator(store, registry, fast_settings)
    task = _task(constraints=[Constraint(type=ConstraintType.BUDGET, value=1.0, strict=True)])

    result = asyncio.run(orchestrator.submit(task, plan))

    assert result.phase == TaskPhase.FAILED
    assert result.error is not None
    assert result.error.code == "BUDGET_EXCEEDED"
    assert result.total_cost == 2.0
    assert [request.step_id for request in echo.calls] == ["expensive"]


def test_invalid_plan_fails_task_before_execution(store, echo, registry, fast_settings) -> None:
    plan = _plan([_step("a"), _step("b")], [("a", "b"), ("b", "a")])
    orchestrator = _orchestrator(store, registry, fast_settings)
    task = _task()

    with pytest.raises(CyclicDependency):
        asyncio.run(orchestrator.submit(task, plan))

    status = orchestrator.get_status(task.id)
    assert status.phase == TaskPhase.FAILED
    assert status.error is not None
    assert status.error.code == "CYCLIC_DEPENDENCY"
    assert echo.calls == []


def test_unknown_capability_is_rejected_at_validation(store, registry, fast_settings) -> None:
    plan = _plan([_step("a", capability_id="missing")])
    orchestrator = _orchestrator(store, registry, fast_settings)

    with pytest.raises(MissingReference, match="capability missing"):
        asyncio.run(orchestrator.submit(_task(), plan))


def test_plan_producer_supplies_plan(store, echo, registry, fast_settings) -> None:
    producer = StaticPlanProducer(lambda task: _plan([_step("produced")]))
    orchestrator = _orchestrator(store, registry, fast_settings, plan_producer=producer)

    result = asyncio.run(orchestrator.submit(_task()))

    assert result.success is True
    phases = [
        event.phase_to
        for event in store.list_task_events(result.task_id)
        if event.event_type == "phase_changed"
    ]
    assert phases == [
        TaskPhase.ANALYZING,
        TaskPhase.PLANNING,
        TaskPhase.EXECUTING,
        TaskPhase.EVALUATING,
        TaskPhase.COMPLETED,
    ]


def test_missing_plan_producer_fails_planning(store, registry, fast_settings) -> None:
    orchestrator = _orchestrator(store, registry, fast_settings)
    task = _task()

    with pytest.raises(PlanningFailure):
        asyncio.run(orchestrator.submit(task))

    status = orchestrator.get_status(task.id)
    assert status.phase == TaskPhase.FAILED
    assert status.error is not None
    assert status.error.code == "PLANNING_FAILED"


def test_empty_static_plan_is_a_planning_failure(store, registry, fast_settings) -> None:
    producer = StaticPlanProducer(lambda task: _plan([]))
    orchestrator = _orchestrator(store, registry, fast_settings, plan_producer=producer)

    with pytest.raises(PlanningFailure, match="no steps"):
        asyncio.run(orchestrator.submit(_task()))


def test_resume_rejects_terminal_tasks(store, echo, registry, fast_settings) -> None:
    orchestrator = _orchestrator(store, registry, fast_settings)
    result = asyncio.run(orchestrator.submit(_task(), _plan([_step("only")])))

    with pytest.raises(InvalidPhaseTransition):
        asyncio.run(orchestrator.resume(result.task_id))
    with pytest.raises(TaskNotFound):
        asyncio.run(orchestrator.resume("ghost"))


def test_sink_failures_do_not_break_execution(store, echo, registry, fast_settings) -> None:
    orchestrator = _orchestrator(store, registry, fast_settings, sink=_ExplodingSink())

    result = asyncio.run(orchestrator.submit(_task(), _plan([_step("only")])))

    assert result.success is True


def test_list_by_user_and_status(store, echo, registry, fast_settings) -> None:
    orchestrator = _orchestrator(store, registry, fast_settings)
    mine = asyncio.run(orchestrator.submit(_task(user_id="alice"), _plan([_step("a")])))
    asyncio.run(orchestrator.submit(_task(user_id="bob"), _plan([_step("b")])))

    tasks = orchestrator.list_by_user("alice")

    assert [task.id for task in tasks] == [mine.task_id]
    assert tasks[0].status.phase == TaskPhase.COMPLETED
    with pytest.raises(TaskNotFound):
        orchestrator.get_status("ghost")


def test_group_concurrency_is_bounded_by_settings(store, registry, fast_settings) -> None:
    tracker = _TrackingCapability(delay=0.1)
    registry.register("track", tracker)
    settings = dataclasses.replace(fast_settings, max_concurrent_steps=2)
    plan = _plan([_step(f"s{index}", capability_id="track") for index in range(5)])
    orchestrator = _orchestrator(store, registry, settings)

    result = asyncio.run(orchestrator.submit(_task(), plan))

    assert result.success is True
    assert sorted(tracker.started) == ["s0", "s1", "s2", "s3", "s4"]
    assert tracker.peak == 2


def test_abort_waits_for_in_flight_sibling(store, echo, registry, fast_settings) -> None:
    plan = _plan(
        [
            _step("bad", params={"fail_times": 9}, max_retries=0),
            _step("slow", params={"delay_seconds": 0.1}),
            _step("after"),
        ],
        dependencies=[Dependency(step_id="after", depends_on=["bad", "slow"])],
    )
    orchestrator = _orchestrator(store, registry, fast_settings)

    result = asyncio.run(orchestrator.submit(_task(), plan))

    assert result.phase == TaskPhase.FAILED
    assert result.error is not None
    assert result.error.details == {"step_id": "bad"}
    assert [(item.step_id, item.status) for item in result.step_results] == [
        ("bad", StepStatus.FAILED),
        ("slow", StepStatus.SUCCESS),
    ]
    assert result.step_results[1].settled is True
    assert sorted(request.step_id for request in echo.calls) == ["bad", "slow"]


def test_fresh_orchestrator_recovers_executing_task(store, echo, registry, fast_settings) -> None:
    plan = _plan([_step("a"), _step("b")], [("b", "a")])
    _executing_task(store, plan, "t-restart")
    store.record_step_result(
        "t-restart",
        StepResult(
            step_id="a",
            status=StepStatus.SUCCESS,
            started_at=datetime.now(tz=UTC),
            output={"action": "a"},
            settled=True,
        ),
        progress=50.0,
    )

    fresh = _orchestrator(store, registry, fast_settings)
    result = asyncio.run(fresh.resume("t-restart"))

    assert result.phase == TaskPhase.COMPLETED
    assert [request.step_id for request in echo.calls] == ["b"]
    assert result.output["outputs"] == {"a": {"action": "a"}, "b": {"action": "b"}}


def test_task_left_evaluating_is_completed_on_resume(
    store,
    echo,
    registry,
    fast_settings,
) -> None:
    _executing_task(store, _plan([_step("only")]), "t-evaluating")
    store.update_task_status("t-evaluating", TaskStatus(phase=TaskPhase.EVALUATING))

    result = asyncio.run(_orchestrator(store, registry, fast_settings).resume("t-evaluating"))

    assert result.phase == TaskPhase.COMPLETED
    assert result.success is True
    assert echo.calls == []


def test_capability_input_request_is_answered_on_resume(store, registry, fast_settings) -> None:
    keyed = _KeyedCapability()
    registry.register("keyed", keyed)
    plan = _plan([_step("upload", capability_id="keyed")])
    orchestrator = _orchestrator(store, registry, fast_settings)

    waiting = asyncio.run(orchestrator.submit(_task(), plan))

    assert waiting.phase == TaskPhase.WAITING
    assert waiting.waiting_for is not None
    assert waiting.waiting_for.kind == WaitKind.INPUT
    assert waiting.waiting_for.input_name == "api_key"
    assert waiting.waiting_for.prompt == "Paste the reporting API key."

    resumed = asyncio.run(orchestrator.resume(waiting.task_id, inputs={"api_key": "secret"}))

    assert resumed.phase == TaskPhase.COMPLETED
    assert keyed.seen == [{}, {"api_key": "secret"}]
    attempts = _attempts(resumed, "upload")
    assert [item.attempt for item in attempts] == [1, 2]
    assert attempts[0].error is not None
    assert attempts[0].error.code == "USER_INPUT_REQUIRED"
    assert resumed.output["final"] == {"authorized": "secret"}


def test_step_results_are_written_off_the_event_loop(
    store,
    echo,
    registry,
    fast_settings,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    loop_thread = threading.get_ident()
    writer_threads: list[int] = []
    record_step_result = store.record_step_result

    def tracking(*args, **kwargs):
        writer_threads.append(threading.get_ident())
        return record_step_result(*args, **kwargs)

    monkeypatch.setattr(store, "record_step_result", tracking)
    plan = _plan([_step("a"), _step("b")], [("b", "a")])

    result = asyncio.run(_orchestrator(store, registry, fast_settings).submit(_task(), plan))

    assert result.success is True
    assert len(writer_threads) == 2
    assert loop_thread not in writer_threads
