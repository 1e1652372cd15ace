"""Domain models for tasks, execution plans and step results."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class TaskPriority(str, Enum):
    """Relative urgency of a task."""

    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"


class TaskPhase(str, Enum):
    """Task lifecycle phases."""

    RECEIVED = "received"
    ANALYZING = "analyzing"
    PLANNING = "planning"
    EXECUTING = "executing"
    WAITING = "waiting"
    EVALUATING = "evaluating"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_PHASES = frozenset({TaskPhase.COMPLETED, TaskPhase.FAILED})

PHASE_TRANSITIONS: dict[TaskPhase, frozenset[TaskPhase]] = {
    TaskPhase.RECEIVED: frozenset({TaskPhase.ANALYZING, TaskPhase.PLANNING, TaskPhase.FAILED}),
    TaskPhase.ANALYZING: frozenset({TaskPhase.PLANNING, TaskPhase.FAILED}),
    TaskPhase.PLANNING: frozenset({TaskPhase.EXECUTING, TaskPhase.FAILED}),
    TaskPhase.EXECUTING: frozenset({TaskPhase.WAITING, TaskPhase.EVALUATING, TaskPhase.FAILED}),
    TaskPhase.WAITING: frozenset({TaskPhase.EXECUTING, TaskPhase.FAILED}),
    TaskPhase.EVALUATING: frozenset({TaskPhase.COMPLETED, TaskPhase.FAILED}),
    TaskPhase.COMPLETED: frozenset(),
    TaskPhase.FAILED: frozenset(),
}


def is_transition_allowed(current: TaskPhase, target: TaskPhase) -> bool:
    """Same-phase updates are always allowed; otherwise follow the lifecycle graph."""

    return current == target or target in PHASE_TRANSITIONS[current]


class ConstraintType(str, Enum):
    """Kinds of task constraints."""

    BUDGET = "budget"
    TIME = "time"
    APPROVAL = "approval"
    SCOPE = "scope"
    TOOL = "tool"
    CUSTOM = "custom"


class InputSourceType(str, Enum):
    """Where a step input value comes from."""

    LITERAL = "literal"
    CONTEXT = "context"
    STEP = "step"
    USER = "user"


class ErrorStrategyType(str, Enum):
    """What to do when a step exhausts its retries."""

    ABORT = "abort"
    SKIP = "skip"
    RETRY = "retry"
    FALLBACK = "fallback"
    ASK_USER = "ask_user"


class StepStatus(str, Enum):
    """Outcome of one step attempt."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"
    TIMEOUT = "timeout"


class LogLevel(str, Enum):
    """Severity of a step log entry."""

    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class WaitKind(str, Enum):
    """Reason a task is parked in the waiting phase."""

    INPUT = "input"
    APPROVAL = "approval"
    ASK_USER = "ask_user"


@dataclass(slots=True)
class Constraint:
    """One user-imposed limit on task execution."""

    type: ConstraintType
    description: str = ""
    value: Any = None
    strict: bool = False


@dataclass(slots=True)
class TaskError:
    """Task-level failure marker with a stable code."""

    code: str
    message: str
    recoverable: bool = False
    details: dict[str, Any] | None = None


@dataclass(slots=True)
class WaitRequest:
    """What a waiting task needs before it can continue."""

    kind: WaitKind
    step_id: str
    input_name: str
    prompt: str = ""


@dataclass(slots=True)
class TaskStatus:
    """Mutable execution status stored with a task."""

    phase: TaskPhase = TaskPhase.RECEIVED
    current_step: str | None = None
    progress: float = 0.0
    error: TaskError | None = None
    waiting_for: WaitRequest | None = None


@dataclass(slots=True)
class Task:
    """User goal submitted for execution."""

    id: str
    user_id: str
    goal: str
    context: dict[str, Any] = field(default_factory=dict)
    constraints: list[Constraint] = field(default_factory=list)
    priority: TaskPriority = TaskPriority.NORMAL
    deadline: datetime | None = None
    status: TaskStatus = field(default_factory=TaskStatus)
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(slots=True)
class StepInput:
    """One named input of a plan step."""

    name: str
    source_type: InputSourceType = InputSourceType.LITERAL
    value: Any = None
    path: str | None = None
    step_id: str | None = None
    output_path: str | None = None
    prompt: str | None = None
    required: bool = True
    default: Any = None


@dataclass(slots=True)
class StepAction:
    """Action type and static parameters passed to a capability."""

    type: str
    params: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class PlanStep:
    """One unit of work executed by a capability."""

    id: str
    name: str
    capability_id: str
    action: StepAction
    description: str = ""
    inputs: list[StepInput] = field(default_factory=list)
    expected_output: str = ""
    timeout_seconds: float | None = None
    max_retries: int | None = None
    retry_delay_seconds: float | None = None
    requires_approval: bool = False
    approval_prompt: str | None = None


@dataclass(slots=True)
class Dependency:
    """``step_id`` runs after every step in ``depends_on``; ``condition`` guards it."""

    step_id: str
    depends_on: list[str] = field(default_factory=list)
    condition: str | None = None


@dataclass(slots=True)
class StepErrorOverride:
    """Per-step error strategy override."""

    strategy: ErrorStrategyType
    fallback_step_id: str | None = None
    max_retries: int | None = None


@dataclass(slots=True)
class ErrorStrategy:
    """Plan-wide error policy with optional per-step overrides."""

    default: ErrorStrategyType = ErrorStrategyType.ABORT
    step_overrides: dict[str, StepErrorOverride] = field(default_factory=dict)


@dataclass(slots=True)
class PlanEstimates:
    """Planner-provided estimates, informational only."""

    total_duration_seconds: float = 0.0
    total_cost: float = 0.0
    confidence: float = 0.0


@dataclass(slots=True)
class Checkpoint:
    """Save or announce state after a given step settles successfully."""

    after_step_id: str
    save_state: bool = True
    notify_user: bool = False
    message: str | None = None


@dataclass(slots=True)
class ExecutionPlan:
    """Steps, dependency edges, error policy and checkpoints for one task."""

    id: str
    task_id: str
    steps: list[PlanStep]
    version: int = 1
    dependencies: list[Dependency] = field(default_factory=list)
    error_handling: ErrorStrategy = field(default_factory=ErrorStrategy)
    estimates: PlanEstimates = field(default_factory=PlanEstimates)
    checkpoints: list[Checkpoint] = field(default_factory=list)
    created_at: datetime | None = None


@dataclass(slots=True)
class StepError:
    """Error captured on a step attempt."""

    code: str
    message: str
    retryable: bool = False
    details: dict[str, Any] | None = None


@dataclass(slots=True)
class LogEntry:
    """Structured log line produced during step execution."""

    level: LogLevel
    message: str
    timestamp: datetime
    data: dict[str, Any] | None = None


@dataclass(slots=True)
class ToolCallRecord:
    """One tool invocation reported by a capability."""

    tool_name: str
    input: Any
    output: Any = None
    error: str | None = None
    duration_ms: int = 0
    timestamp: datetime | None = None


@dataclass(slots=True)
class StepResult:
    """Immutable record of one step attempt."""

    step_id: str
    status: StepStatus
    started_at: datetime
    attempt: int = 1
    output: Any = None
    error: StepError | None = None
    completed_at: datetime | None = None
    duration_ms: int = 0
    cost: float = 0.0
    logs: list[LogEntry] = field(default_factory=list)
    tool_calls: list[ToolCallRecord] = field(default_factory=list)
    settled: bool = False


@dataclass(slots=True)
class TaskResult:
    """Aggregated outcome returned by submit and resume."""

    task_id: str
    success: bool
    phase: TaskPhase
    output: dict[str, Any]
    summary: str
    step_results: list[StepResult]
    total_duration_ms: int
    total_cost: float
    error: TaskError | None = None
    waiting_for: WaitRequest | None = None
    suggested_follow_ups: list[str] = field(default_factory=list)


@dataclass(slots=True)
class CheckpointSnapshot:
    """Persisted checkpoint taken after a step settled."""

    task_id: str
    step_id: str
    step_index: int
    state: dict[str, Any]
    message: str | None = None
    created_at: datetime | None = None


@dataclass(slots=True)
class TaskState:
    """Runtime state needed to resume a task after a restart or wait."""

    task_id: str
    current_group_index: int = 0
    accumulated_context: dict[str, Any] = field(default_factory=dict)
    user_inputs: dict[str, Any] = field(default_factory=dict)
    approved_steps: list[str] = field(default_factory=list)
    last_checkpoint: dict[str, Any] | None = None
    updated_at: datetime | None = None


@dataclass(slots=True)
class TaskEventView:
    """Task event entry for audit trail."""

    event_id: int
    task_id: str
    event_type: str
    phase_from: TaskPhase | None
    phase_to: TaskPhase | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ErrorLogView:
    """Persisted engine error entry."""

    error_id: int
    task_id: str | None
    code: str
    message: str
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)
