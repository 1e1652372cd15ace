from __future__ import annotations

import allure
import pytest

from task_engine.engine.contracts import load_json_object, plan_from_dict, plan_to_dict
from task_engine.engine.models import ErrorStrategyType, InputSourceType

pytestmark = [
    allure.epic("Task Execution Engine"),
    allure.feature("Plan Contracts"),
]


def _raw_plan() -> dict:
    return {
        "id": "plan-1",
        "task_id": "task-1",
        "steps": [
            {
                "id": "fetch",
                "capability_id": "echo",
                "action": {"type": "fetch", "params": {"url": "https://example.com"}},
            },
            {
                "id": "report",
                "name": "Report",
                "capability_id": "echo",
                "action": {"type": "report"},
                "inputs": [
                    {
                        "name": "body",
                        "source_type": "step",
                        "step_id": "fetch",
                        "output_path": "text",
                    },
                ],
                "timeout_seconds": 3,
            },
        ],
        "dependencies": [{"step_id": "report", "depends_on": ["fetch"]}],
        "error_handling": {
            "default": "skip",
            "step_overrides": {"fetch": {"strategy": "retry", "max_retries": 4}},
        },
        "checkpoints": [{"after_step_id": "fetch", "notify_user": True}],
    }


def test_plan_from_dict_applies_defaults() -> None:
    plan = plan_from_dict(_raw_plan())

    assert plan.version == 1
    assert plan.steps[0].name == "fetch"
    assert plan.steps[0].inputs == []
    assert plan.steps[1].inputs[0].source_type == InputSourceType.STEP
    assert plan.steps[1].inputs[0].required is True
    assert plan.steps[1].timeout_seconds == 3
    assert plan.dependencies[0].depends_on == ["fetch"]
    assert plan.dependencies[0].condition is None
    assert plan.error_handling.default == ErrorStrategyType.SKIP
    assert plan.error_handling.step_overrides["fetch"].max_retries == 4
    assert plan.checkpoints[0].save_state is True
    assert plan.created_at is None


def test_plan_to_dict_is_json_object_compatible() -> None:
    payload = plan_to_dict(plan_from_dict(_raw_plan()))

    assert payload["steps"][1]["inputs"][0]["source_type"] == "step"
    assert payload["error_handling"]["default"] == "skip"
    assert payload["dependencies"] == [
        {"step_id": "report", "depends_on": ["fetch"], "condition": None},
    ]
    assert payload["created_at"] is None


@pytest.mark.parametrize(
    ("mutate", "error_type", "message"),
    [
        (lambda raw: raw.update(steps={}), TypeError, "plan.steps must be an array"),
        (lambda raw: raw.update(version=0), ValueError, "plan.version"),
        (lambda raw: raw.update(id=""), ValueError, "plan.id"),
        (
            lambda raw: raw["steps"][0].update(action="fetch"),
            TypeError,
            "plan.step.action must be an object",
        ),
        (
            lambda raw: raw["steps"][1]["inputs"][0].update(source_type="oracle"),
            ValueError,
            "source_type is not supported",
        ),
        (
            lambda raw: raw["error_handling"].update(default="panic"),
            ValueError,
            "not a supported strategy",
        ),
        (
            lambda raw: raw["dependencies"].append("fetch"),
            TypeError,
            "plan.dependencies entry",
        ),
        (
            lambda raw: raw["dependencies"][0].update(depends_on="fetch"),
            TypeError,
            "depends_on must be a non-empty array",
        ),
        (
            lambda raw: raw["dependencies"][0].update(depends_on=["fetch", ""]),
            ValueError,
            "depends_on entries must be non-empty strings",
        ),
    ],
)
def test_plan_from_dict_rejects_malformed_input(mutate, error_type, message: str) -> None:
    raw = _raw_plan()
    mutate(raw)

    with pytest.raises(error_type, match=message):
        plan_from_dict(raw)


def test_load_json_object_rejects_arrays() -> None:
    with pytest.raises(TypeError, match="Expected JSON object in tasks.context_json"):
        load_json_object("[1, 2]", label="tasks.context_json")
