"""Plan producer interface and a static implementation."""

from __future__ import annotations

from collections.abc import Callable
from typing import Protocol

from task_engine.engine.errors import PlanningFailure
from task_engine.engine.models import ExecutionPlan, Task


class PlanProducer(Protocol):
    """Protocol implemented by planners."""

    async def create_plan(self, task: Task) -> ExecutionPlan:
        """Build an execution plan for the task or raise ``PlanningFailure``."""


class StaticPlanProducer:
    """Build plans from a factory callable; used for pre-authored workflows."""

    def __init__(self, factory: Callable[[Task], ExecutionPlan | None]) -> None:
        self._factory = factory

    async def create_plan(self, task: Task) -> ExecutionPlan:
        try:
            plan = self._factory(task)
        except PlanningFailure:
            raise
        except (KeyError, TypeError, ValueError) as error:
            raise PlanningFailure(f"Plan factory failed for task {task.id}: {error}") from error
        if plan is None:
            raise PlanningFailure(f"No plan available for task {task.id}")
        if not plan.steps:
            raise PlanningFailure(f"Plan for task {task.id} has no steps")
        return plan
