"""Step input resolution and dependency guard evaluation."""

from __future__ import annotations

import json
import re
from collections.abc import Mapping
from typing import Any

from task_engine.engine.errors import (
    MissingDependencyOutput,
    MissingRequiredInput,
    UserInputRequired,
)
from task_engine.engine.models import InputSourceType, PlanStep, StepInput

_MISSING = object()
_PLACEHOLDER_PATTERN = re.compile(r"^\$\{(?P<body>.*)\}$", re.DOTALL)
_COMPARISON_PATTERN = re.compile(r"^(?P<left>[^=!]+?)\s*(?P<op>==|!=)\s*(?P<right>.+)$", re.DOTALL)


def get_nested_value(payload: Any, path: str | None, default: Any = None) -> Any:
    """Walk a dotted path through mappings and sequences."""

    value = _lookup(payload, path)
    return default if value is _MISSING else value


def _lookup(payload: Any, path: str | None) -> Any:
    if path is None or not path.strip():
        return payload
    current = payload
    for part in path.strip().split("."):
        if isinstance(current, Mapping):
            if part not in current:
                return _MISSING
            current = current[part]
        elif isinstance(current, list | tuple) and part.lstrip("-").isdigit():
            index = int(part)
            if not -len(current) <= index < len(current):
                return _MISSING
            current = current[index]
        else:
            return _MISSING
    return current


def resolve_step_inputs(
    step: PlanStep,
    *,
    context: Mapping[str, Any],
    step_outputs: Mapping[str, Any],
    user_inputs: Mapping[str, Any],
) -> dict[str, Any]:
    """Merge resolved step inputs over the action's static params.

    ``step_outputs`` holds the output of every step that settled successfully.
    """

    resolved: dict[str, Any] = dict(step.action.params)
    for item in step.inputs:
        value = _resolve_one(
            step,
            item,
            context=context,
            step_outputs=step_outputs,
            user_inputs=user_inputs,
        )
        if value is not _MISSING:
            resolved[item.name] = value
    return resolved


def _resolve_one(
    step: PlanStep,
    item: StepInput,
    *,
    context: Mapping[str, Any],
    step_outputs: Mapping[str, Any],
    user_inputs: Mapping[str, Any],
) -> Any:
    if item.source_type == InputSourceType.LITERAL:
        value = item.value if item.value is not None else _MISSING
    elif item.source_type == InputSourceType.CONTEXT:
        value = _lookup(context, item.path if item.path is not None else item.name)
    elif item.source_type == InputSourceType.STEP:
        if item.step_id is None or item.step_id not in step_outputs:
            value = _MISSING
        else:
            value = _lookup(step_outputs[item.step_id], item.output_path)
    else:
        value = user_inputs.get(item.name, _MISSING)

    if value is not _MISSING and value is not None:
        return value
    if item.default is not None:
        return item.default
    if not item.required:
        return _MISSING

    if item.source_type == InputSourceType.USER:
        raise UserInputRequired(
            item.name,
            item.prompt or f"Please provide '{item.name}' for {step.name}",
        )
    if item.source_type == InputSourceType.STEP:
        raise MissingDependencyOutput(
            f"Step {step.id} input '{item.name}' needs output "
            f"{item.output_path or '<whole>'} of step {item.step_id}",
            step_id=step.id,
            input_name=item.name,
        )
    raise MissingRequiredInput(
        f"Required input not found: {item.name}",
        step_id=step.id,
        input_name=item.name,
    )


def evaluate_condition(expression: str, scope: Mapping[str, Any]) -> bool:
    """Evaluate a dependency guard against ``{"context": ..., "steps": ...}``.

    Supported forms: ``path``, ``!path``, ``path == <json>`` and
    ``path != <json>``, optionally wrapped in ``${...}``.
    """

    text = expression.strip()
    match = _PLACEHOLDER_PATTERN.match(text)
    if match is not None:
        text = match.group("body").strip()
    if not text:
        raise ValueError("Condition expression must not be empty")

    comparison = _COMPARISON_PATTERN.match(text)
    if comparison is not None:
        left = get_nested_value(scope, comparison.group("left").strip())
        right = _parse_literal(comparison.group("right").strip())
        equal = left == right
        return equal if comparison.group("op") == "==" else not equal

    negate = False
    while text.startswith("!"):
        negate = not negate
        text = text[1:].strip()
    if text in {"true", "false"}:
        result = text == "true"
    else:
        result = bool(get_nested_value(scope, text))
    return not result if negate else result


def _parse_literal(raw: str) -> Any:
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        if len(raw) >= 2 and raw[0] == raw[-1] == "'":  # noqa: PLR2004
            return raw[1:-1]
        return raw
