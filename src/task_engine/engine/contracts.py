"""JSON-object contracts for plans, task status and step results."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any

from task_engine.engine.models import (
    Checkpoint,
    Constraint,
    ConstraintType,
    Dependency,
    ErrorStrategy,
    ErrorStrategyType,
    ExecutionPlan,
    InputSourceType,
    LogEntry,
    LogLevel,
    PlanEstimates,
    PlanStep,
    StepAction,
    StepError,
    StepErrorOverride,
    StepInput,
    TaskError,
    TaskPhase,
    TaskStatus,
    ToolCallRecord,
    WaitKind,
    WaitRequest,
)
from task_engine.storage.common import from_iso


def dump_json(payload: Any) -> str:
    """Serialize payload using deterministic formatting."""

    return json.dumps(payload, ensure_ascii=False, sort_keys=True, default=_json_default)


def load_json_object(raw: str, *, label: str) -> dict[str, Any]:
    """Load JSON document and validate top-level object type."""

    payload = json.loads(raw)
    if not isinstance(payload, dict):
        raise TypeError(f"Expected JSON object in {label}")
    return payload


def load_json_array(raw: str, *, label: str) -> list[Any]:
    """Load JSON document and validate top-level array type."""

    payload = json.loads(raw)
    if not isinstance(payload, list):
        raise TypeError(f"Expected JSON array in {label}")
    return payload


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _iso_or_none(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_optional_datetime(value: Any, *, label: str) -> datetime | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise TypeError(f"{label} must be an ISO datetime string")
    return from_iso(value)


def _require_str(raw: dict[str, Any], key: str, *, label: str) -> str:
    value = raw.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{label}.{key} must be a non-empty string")
    return value


def _optional_str(raw: dict[str, Any], key: str, *, label: str) -> str | None:
    value = raw.get(key)
    if value is not None and not isinstance(value, str):
        raise TypeError(f"{label}.{key} must be a string when provided")
    return value


def _require_str_list(raw: dict[str, Any], key: str, *, label: str) -> list[str]:
    value = raw.get(key)
    if not isinstance(value, list) or not value:
        raise TypeError(f"{label}.{key} must be a non-empty array of step ids")
    if not all(isinstance(item, str) and item.strip() for item in value):
        raise ValueError(f"{label}.{key} entries must be non-empty strings")
    return list(value)


def _optional_number(raw: dict[str, Any], key: str, *, label: str) -> float | None:
    value = raw.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int | float):
        raise TypeError(f"{label}.{key} must be a number when provided")
    return float(value)


def _optional_int(raw: dict[str, Any], key: str, *, label: str) -> int | None:
    value = raw.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValueError(f"{label}.{key} must be a non-negative integer when provided")
    return value


# Plans


def plan_to_dict(plan: ExecutionPlan) -> dict[str, Any]:
    """Convert a plan to a JSON-compatible object."""

    return {
        "id": plan.id,
        "task_id": plan.task_id,
        "version": plan.version,
        "steps": [step_to_dict(step) for step in plan.steps],
        "dependencies": dependencies_to_list(plan.dependencies),
        "error_handling": error_strategy_to_dict(plan.error_handling),
        "estimates": estimates_to_dict(plan.estimates),
        "checkpoints": checkpoints_to_list(plan.checkpoints),
        "created_at": _iso_or_none(plan.created_at),
    }


def plan_from_dict(raw: dict[str, Any]) -> ExecutionPlan:
    """Validate and build a plan from a JSON-compatible object."""

    raw_steps = raw.get("steps")
    if not isinstance(raw_steps, list):
        raise TypeError("plan.steps must be an array")
    version = raw.get("version", 1)
    if isinstance(version, bool) or not isinstance(version, int) or version < 1:
        raise ValueError("plan.version must be an integer >= 1")
    error_handling_raw = raw.get("error_handling", {})
    if not isinstance(error_handling_raw, dict):
        raise TypeError("plan.error_handling must be an object")
    estimates_raw = raw.get("estimates", {})
    if not isinstance(estimates_raw, dict):
        raise TypeError("plan.estimates must be an object")
    return ExecutionPlan(
        id=_require_str(raw, "id", label="plan"),
        task_id=_require_str(raw, "task_id", label="plan"),
        version=version,
        steps=[step_from_dict(item) for item in raw_steps],
        dependencies=dependencies_from_list(raw.get("dependencies", [])),
        error_handling=error_strategy_from_dict(error_handling_raw),
        estimates=estimates_from_dict(estimates_raw),
        checkpoints=checkpoints_from_list(raw.get("checkpoints", [])),
        created_at=_parse_optional_datetime(raw.get("created_at"), label="plan.created_at"),
    )


def step_to_dict(step: PlanStep) -> dict[str, Any]:
    return {
        "id": step.id,
        "name": step.name,
        "description": step.description,
        "capability_id": step.capability_id,
        "action": {"type": step.action.type, "params": dict(step.action.params)},
        "inputs": [
            {
                "name": item.name,
                "source_type": item.source_type.value,
                "value": item.value,
                "path": item.path,
                "step_id": item.step_id,
                "output_path": item.output_path,
                "prompt": item.prompt,
                "required": item.required,
                "default": item.default,
            }
            for item in step.inputs
        ],
        "expected_output": step.expected_output,
        "timeout_seconds": step.timeout_seconds,
        "max_retries": step.max_retries,
        "retry_delay_seconds": step.retry_delay_seconds,
        "requires_approval": step.requires_approval,
        "approval_prompt": step.approval_prompt,
    }


def step_from_dict(raw: Any) -> PlanStep:
    if not isinstance(raw, dict):
        raise TypeError("plan.steps entry must be an object")
    label = "plan.step"
    action_raw = raw.get("action")
    if not isinstance(action_raw, dict):
        raise TypeError(f"{label}.action must be an object")
    params = action_raw.get("params", {})
    if not isinstance(params, dict):
        raise TypeError(f"{label}.action.params must be an object")
    inputs_raw = raw.get("inputs", [])
    if not isinstance(inputs_raw, list):
        raise TypeError(f"{label}.inputs must be an array")
    requires_approval = raw.get("requires_approval", False)
    if not isinstance(requires_approval, bool):
        raise TypeError(f"{label}.requires_approval must be a boolean")
    return PlanStep(
        id=_require_str(raw, "id", label=label),
        name=str(raw.get("name") or raw["id"]),
        description=str(raw.get("description", "")),
        capability_id=_require_str(raw, "capability_id", label=label),
        action=StepAction(
            type=_require_str(action_raw, "type", label=f"{label}.action"),
            params=params,
        ),
        inputs=[_step_input_from_dict(item) for item in inputs_raw],
        expected_output=str(raw.get("expected_output", "")),
        timeout_seconds=_optional_number(raw, "timeout_seconds", label=label),
        max_retries=_optional_int(raw, "max_retries", label=label),
        retry_delay_seconds=_optional_number(raw, "retry_delay_seconds", label=label),
        requires_approval=requires_approval,
        approval_prompt=_optional_str(raw, "approval_prompt", label=label),
    )


def _step_input_from_dict(raw: Any) -> StepInput:
    if not isinstance(raw, dict):
        raise TypeError("plan.step.inputs entry must be an object")
    label = "plan.step.input"
    try:
        source_type = InputSourceType(raw.get("source_type", "literal"))
    except ValueError as error:
        raise ValueError(
            f"{label}.source_type is not supported: {raw.get('source_type')!r}",
        ) from error
    required = raw.get("required", True)
    if not isinstance(required, bool):
        raise TypeError(f"{label}.required must be a boolean")
    return StepInput(
        name=_require_str(raw, "name", label=label),
        source_type=source_type,
        value=raw.get("value"),
        path=_optional_str(raw, "path", label=label),
        step_id=_optional_str(raw, "step_id", label=label),
        output_path=_optional_str(raw, "output_path", label=label),
        prompt=_optional_str(raw, "prompt", label=label),
        required=required,
        default=raw.get("default"),
    )


def dependencies_to_list(dependencies: list[Dependency]) -> list[dict[str, Any]]:
    return [
        {
            "step_id": item.step_id,
            "depends_on": list(item.depends_on),
            "condition": item.condition,
        }
        for item in dependencies
    ]


def dependencies_from_list(raw: Any) -> list[Dependency]:
    if not isinstance(raw, list):
        raise TypeError("plan.dependencies must be an array")
    dependencies: list[Dependency] = []
    for item in raw:
        if not isinstance(item, dict):
            raise TypeError("plan.dependencies entry must be an object")
        dependencies.append(
            Dependency(
                step_id=_require_str(item, "step_id", label="plan.dependency"),
                depends_on=_require_str_list(item, "depends_on", label="plan.dependency"),
                condition=_optional_str(item, "condition", label="plan.dependency"),
            ),
        )
    return dependencies


def error_strategy_to_dict(strategy: ErrorStrategy) -> dict[str, Any]:
    return {
        "default": strategy.default.value,
        "step_overrides": {
            step_id: {
                "strategy": override.strategy.value,
                "fallback_step_id": override.fallback_step_id,
                "max_retries": override.max_retries,
            }
            for step_id, override in strategy.step_overrides.items()
        },
    }


def error_strategy_from_dict(raw: dict[str, Any]) -> ErrorStrategy:
    overrides_raw = raw.get("step_overrides", {})
    if not isinstance(overrides_raw, dict):
        raise TypeError("plan.error_handling.step_overrides must be an object")
    overrides: dict[str, StepErrorOverride] = {}
    for step_id, item in overrides_raw.items():
        if not isinstance(item, dict):
            raise TypeError("plan.error_handling.step_overrides entry must be an object")
        label = f"plan.error_handling.step_overrides.{step_id}"
        overrides[str(step_id)] = StepErrorOverride(
            strategy=_strategy_type(item.get("strategy"), label=f"{label}.strategy"),
            fallback_step_id=_optional_str(item, "fallback_step_id", label=label),
            max_retries=_optional_int(item, "max_retries", label=label),
        )
    return ErrorStrategy(
        default=_strategy_type(raw.get("default", "abort"), label="plan.error_handling.default"),
        step_overrides=overrides,
    )


def _strategy_type(value: Any, *, label: str) -> ErrorStrategyType:
    try:
        return ErrorStrategyType(value)
    except ValueError as error:
        raise ValueError(f"{label} is not a supported strategy: {value!r}") from error


def estimates_to_dict(estimates: PlanEstimates) -> dict[str, Any]:
    return {
        "total_duration_seconds": estimates.total_duration_seconds,
        "total_cost": estimates.total_cost,
        "confidence": estimates.confidence,
    }


def estimates_from_dict(raw: dict[str, Any]) -> PlanEstimates:
    label = "plan.estimates"
    return PlanEstimates(
        total_duration_seconds=_optional_number(raw, "total_duration_seconds", label=label) or 0.0,
        total_cost=_optional_number(raw, "total_cost", label=label) or 0.0,
        confidence=_optional_number(raw, "confidence", label=label) or 0.0,
    )


def checkpoints_to_list(checkpoints: list[Checkpoint]) -> list[dict[str, Any]]:
    return [
        {
            "after_step_id": item.after_step_id,
            "save_state": item.save_state,
            "notify_user": item.notify_user,
            "message": item.message,
        }
        for item in checkpoints
    ]


def checkpoints_from_list(raw: Any) -> list[Checkpoint]:
    if not isinstance(raw, list):
        raise TypeError("plan.checkpoints must be an array")
    checkpoints: list[Checkpoint] = []
    for item in raw:
        if not isinstance(item, dict):
            raise TypeError("plan.checkpoints entry must be an object")
        checkpoints.append(
            Checkpoint(
                after_step_id=_require_str(item, "after_step_id", label="plan.checkpoint"),
                save_state=bool(item.get("save_state", True)),
                notify_user=bool(item.get("notify_user", False)),
                message=_optional_str(item, "message", label="plan.checkpoint"),
            ),
        )
    return checkpoints


# Task status and constraints


def constraints_to_list(constraints: list[Constraint]) -> list[dict[str, Any]]:
    return [
        {
            "type": item.type.value,
            "description": item.description,
            "value": item.value,
            "strict": item.strict,
        }
        for item in constraints
    ]


def constraints_from_list(raw: list[Any]) -> list[Constraint]:
    constraints: list[Constraint] = []
    for item in raw:
        if not isinstance(item, dict):
            raise TypeError("task.constraints entry must be an object")
        constraints.append(
            Constraint(
                type=ConstraintType(item.get("type", "custom")),
                description=str(item.get("description", "")),
                value=item.get("value"),
                strict=bool(item.get("strict", False)),
            ),
        )
    return constraints


def task_error_to_dict(error: TaskError | None) -> dict[str, Any] | None:
    if error is None:
        return None
    return {
        "code": error.code,
        "message": error.message,
        "recoverable": error.recoverable,
        "details": error.details,
    }


def task_error_from_dict(raw: Any) -> TaskError | None:
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise TypeError("task.status.error must be an object")
    return TaskError(
        code=str(raw["code"]),
        message=str(raw.get("message", "")),
        recoverable=bool(raw.get("recoverable", False)),
        details=raw.get("details"),
    )


def wait_request_to_dict(request: WaitRequest | None) -> dict[str, Any] | None:
    if request is None:
        return None
    return {
        "kind": request.kind.value,
        "step_id": request.step_id,
        "input_name": request.input_name,
        "prompt": request.prompt,
    }


def wait_request_from_dict(raw: Any) -> WaitRequest | None:
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise TypeError("task.status.waiting_for must be an object")
    return WaitRequest(
        kind=WaitKind(raw["kind"]),
        step_id=str(raw["step_id"]),
        input_name=str(raw["input_name"]),
        prompt=str(raw.get("prompt", "")),
    )


def status_to_dict(status: TaskStatus) -> dict[str, Any]:
    return {
        "phase": status.phase.value,
        "current_step": status.current_step,
        "progress": status.progress,
        "error": task_error_to_dict(status.error),
        "waiting_for": wait_request_to_dict(status.waiting_for),
    }


def status_from_dict(raw: dict[str, Any]) -> TaskStatus:
    return TaskStatus(
        phase=TaskPhase(raw.get("phase", TaskPhase.RECEIVED.value)),
        current_step=raw.get("current_step"),
        progress=float(raw.get("progress", 0.0)),
        error=task_error_from_dict(raw.get("error")),
        waiting_for=wait_request_from_dict(raw.get("waiting_for")),
    )


# Step results


def step_error_to_dict(error: StepError | None) -> dict[str, Any] | None:
    if error is None:
        return None
    return {
        "code": error.code,
        "message": error.message,
        "retryable": error.retryable,
        "details": error.details,
    }


def step_error_from_dict(raw: Any) -> StepError | None:
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise TypeError("step_result.error must be an object")
    return StepError(
        code=str(raw["code"]),
        message=str(raw.get("message", "")),
        retryable=bool(raw.get("retryable", False)),
        details=raw.get("details"),
    )


def logs_to_list(logs: list[LogEntry]) -> list[dict[str, Any]]:
    return [
        {
            "level": entry.level.value,
            "message": entry.message,
            "timestamp": entry.timestamp.isoformat(),
            "data": entry.data,
        }
        for entry in logs
    ]


def logs_from_list(raw: list[Any]) -> list[LogEntry]:
    entries: list[LogEntry] = []
    for item in raw:
        if not isinstance(item, dict):
            raise TypeError("step_result.logs entry must be an object")
        entries.append(
            LogEntry(
                level=LogLevel(item.get("level", "info")),
                message=str(item.get("message", "")),
                timestamp=from_iso(str(item["timestamp"])),
                data=item.get("data"),
            ),
        )
    return entries


def tool_calls_to_list(records: list[ToolCallRecord]) -> list[dict[str, Any]]:
    return [
        {
            "tool_name": record.tool_name,
            "input": record.input,
            "output": record.output,
            "error": record.error,
            "duration_ms": record.duration_ms,
            "timestamp": _iso_or_none(record.timestamp),
        }
        for record in records
    ]


def tool_calls_from_list(raw: list[Any]) -> list[ToolCallRecord]:
    records: list[ToolCallRecord] = []
    for item in raw:
        if not isinstance(item, dict):
            raise TypeError("step_result.tool_calls entry must be an object")
        records.append(
            ToolCallRecord(
                tool_name=str(item["tool_name"]),
                input=item.get("input"),
                output=item.get("output"),
                error=item.get("error"),
                duration_ms=int(item.get("duration_ms", 0)),
                timestamp=_parse_optional_datetime(
                    item.get("timestamp"),
                    label="step_result.tool_calls.timestamp",
                ),
            ),
        )
    return records
