"""Engine exception hierarchy with stable error codes."""

from __future__ import annotations

from typing import Any

PLANNING_FAILED = "PLANNING_FAILED"
CYCLIC_DEPENDENCY = "CYCLIC_DEPENDENCY"
MISSING_REFERENCE = "MISSING_REFERENCE"
MISSING_DEPENDENCY_OUTPUT = "MISSING_DEPENDENCY_OUTPUT"
MISSING_REQUIRED_INPUT = "MISSING_REQUIRED_INPUT"
TIMEOUT = "TIMEOUT"
CAPABILITY_ERROR = "CAPABILITY_ERROR"
UNKNOWN_CAPABILITY = "UNKNOWN_CAPABILITY"
USER_INPUT_REQUIRED = "USER_INPUT_REQUIRED"
APPROVAL_DENIED = "APPROVAL_DENIED"
CANCELLED = "CANCELLED"
DEADLINE_EXCEEDED = "DEADLINE_EXCEEDED"
BUDGET_EXCEEDED = "BUDGET_EXCEEDED"
INTERNAL_ERROR = "INTERNAL_ERROR"
INVALID_PHASE_TRANSITION = "INVALID_PHASE_TRANSITION"
TASK_NOT_FOUND = "TASK_NOT_FOUND"
TASK_ALREADY_RUNNING = "TASK_ALREADY_RUNNING"


class TaskEngineError(Exception):
    """Base error carrying a stable code and recoverability flag."""

    default_code = INTERNAL_ERROR

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        recoverable: bool = False,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.recoverable = recoverable
        self.details = details


class PlanningFailure(TaskEngineError):
    """Plan producer could not build a plan."""

    default_code = PLANNING_FAILED


class PlanValidationError(TaskEngineError):
    """Plan is structurally invalid."""


class CyclicDependency(PlanValidationError):
    """Dependency edges form a cycle."""

    default_code = CYCLIC_DEPENDENCY

    def __init__(self, step_ids: list[str]) -> None:
        super().__init__(
            f"Cyclic dependency among steps: {', '.join(step_ids)}",
            details={"step_ids": list(step_ids)},
        )
        self.step_ids = list(step_ids)


class MissingReference(PlanValidationError):
    """Plan references a step or capability that does not exist."""

    default_code = MISSING_REFERENCE

    def __init__(self, references: list[str]) -> None:
        super().__init__(
            f"Plan references unknown ids: {'; '.join(references)}",
            details={"references": list(references)},
        )
        self.references = list(references)


class StepInputError(TaskEngineError):
    """A step input cannot be resolved."""

    def __init__(self, message: str, *, step_id: str, input_name: str) -> None:
        super().__init__(message, details={"step_id": step_id, "input_name": input_name})
        self.step_id = step_id
        self.input_name = input_name


class MissingDependencyOutput(StepInputError):
    """Referenced step has no successful output at the given path."""

    default_code = MISSING_DEPENDENCY_OUTPUT


class MissingRequiredInput(StepInputError):
    """Required input resolved to nothing and has no default."""

    default_code = MISSING_REQUIRED_INPUT


class CapabilityTimeout(TaskEngineError):
    """Capability invocation exceeded the step timeout."""

    default_code = TIMEOUT

    def __init__(self, step_id: str, timeout_seconds: float) -> None:
        super().__init__(
            f"Step {step_id} timed out after {timeout_seconds:g}s",
            recoverable=True,
            details={"step_id": step_id, "timeout_seconds": timeout_seconds},
        )
        self.timeout_seconds = timeout_seconds


class CapabilityError(TaskEngineError):
    """Failure reported by a capability provider."""

    default_code = CAPABILITY_ERROR

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        retryable: bool = True,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, code=code, recoverable=retryable, details=details)

    @property
    def retryable(self) -> bool:
        return self.recoverable


class UserInputRequired(TaskEngineError):
    """Execution must pause until the user supplies a named input."""

    default_code = USER_INPUT_REQUIRED

    def __init__(self, input_name: str, prompt: str = "") -> None:
        super().__init__(
            prompt or f"User input required: {input_name}",
            recoverable=True,
            details={"input_name": input_name},
        )
        self.input_name = input_name
        self.prompt = prompt


class InvalidPhaseTransition(TaskEngineError):
    """Requested phase change is not allowed by the lifecycle."""

    default_code = INVALID_PHASE_TRANSITION

    def __init__(self, task_id: str, current: str, target: str) -> None:
        super().__init__(
            f"Task {task_id}: transition {current} -> {target} is not allowed",
            details={"task_id": task_id, "from": current, "to": target},
        )
        self.current = current
        self.target = target


class TaskNotFound(TaskEngineError):
    """Task id is unknown to the state store."""

    default_code = TASK_NOT_FOUND

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task not found: {task_id}", details={"task_id": task_id})
        self.task_id = task_id
