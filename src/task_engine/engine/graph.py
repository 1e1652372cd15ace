"""Dependency graph analysis for execution plans.

Steps live in an arena keyed by id; edges are kept as adjacency sets in both
directions. Ordering is Kahn's algorithm with ties broken by the step's
position in the plan, so results are deterministic for a given plan.
"""

from __future__ import annotations

import heapq
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from task_engine.engine.errors import CyclicDependency, MissingReference
from task_engine.engine.models import ExecutionPlan, PlanStep

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class StepGraph:
    """Arena of plan steps with prerequisite/dependent adjacency maps."""

    steps_by_id: dict[str, PlanStep]
    order: dict[str, int]
    dependencies: dict[str, set[str]] = field(default_factory=dict)
    dependents: dict[str, set[str]] = field(default_factory=dict)

    def step_ids(self) -> list[str]:
        return sorted(self.steps_by_id, key=self.order.__getitem__)

    def prerequisites_of(self, step_id: str) -> set[str]:
        return self.dependencies.get(step_id, set())


def build_step_graph(plan: ExecutionPlan) -> StepGraph:
    """Build the adjacency representation; unknown ids raise ``MissingReference``."""

    steps_by_id: dict[str, PlanStep] = {}
    order: dict[str, int] = {}
    duplicates: list[str] = []
    for index, step in enumerate(plan.steps):
        if step.id in steps_by_id:
            duplicates.append(f"duplicate step id {step.id}")
            continue
        steps_by_id[step.id] = step
        order[step.id] = index

    missing: list[str] = list(duplicates)
    dependencies: dict[str, set[str]] = {step_id: set() for step_id in steps_by_id}
    dependents: dict[str, set[str]] = {step_id: set() for step_id in steps_by_id}
    for edge in plan.dependencies:
        if edge.step_id not in steps_by_id:
            missing.append(f"dependency step_id {edge.step_id}")
            continue
        for prerequisite in edge.depends_on:
            if prerequisite not in steps_by_id:
                missing.append(f"dependency depends_on {prerequisite}")
                continue
            dependencies[edge.step_id].add(prerequisite)
            dependents[prerequisite].add(edge.step_id)
    if missing:
        raise MissingReference(missing)

    return StepGraph(
        steps_by_id=steps_by_id,
        order=order,
        dependencies=dependencies,
        dependents=dependents,
    )


def validate_plan(
    plan: ExecutionPlan,
    *,
    known_capabilities: Iterable[str] | None = None,
) -> StepGraph:
    """Check every reference in the plan and reject cycles.

    Returns the built graph so callers do not rebuild it.
    """

    graph = build_step_graph(plan)
    missing: list[str] = []
    for checkpoint in plan.checkpoints:
        if checkpoint.after_step_id not in graph.steps_by_id:
            missing.append(f"checkpoint after_step_id {checkpoint.after_step_id}")
    for step_id, override in plan.error_handling.step_overrides.items():
        if step_id not in graph.steps_by_id:
            missing.append(f"error override step {step_id}")
        if override.fallback_step_id is not None:
            if override.fallback_step_id not in graph.steps_by_id:
                missing.append(f"fallback step {override.fallback_step_id}")
            elif override.fallback_step_id == step_id:
                missing.append(f"fallback step {step_id} points at itself")
    if known_capabilities is not None:
        capability_ids = set(known_capabilities)
        for step_id in graph.step_ids():
            capability_id = graph.steps_by_id[step_id].capability_id
            if capability_id not in capability_ids:
                missing.append(f"capability {capability_id} (step {step_id})")
    if missing:
        raise MissingReference(missing)

    _kahn_order(graph)
    return graph


def topological_sort(plan: ExecutionPlan) -> list[PlanStep]:
    """Total order over steps; each dependency precedes its dependents."""

    graph = build_step_graph(plan)
    return [graph.steps_by_id[step_id] for step_id in _kahn_order(graph)]


def group_parallel_steps(plan: ExecutionPlan) -> list[list[PlanStep]]:
    """Partition steps into sequential groups of mutually independent steps.

    Group 0 holds steps without prerequisites; group k holds the remaining
    steps whose prerequisites all sit in groups 0..k-1.
    """

    graph = build_step_graph(plan)
    return [[graph.steps_by_id[step_id] for step_id in group] for group in _level_groups(graph)]


def group_step_ids(graph: StepGraph) -> list[list[str]]:
    """Parallel groups as step id lists for an already built graph."""

    return _level_groups(graph)


def _kahn_order(graph: StepGraph) -> list[str]:
    in_degree = {step_id: len(prereqs) for step_id, prereqs in graph.dependencies.items()}
    ready = [
        (graph.order[step_id], step_id) for step_id, degree in in_degree.items() if degree == 0
    ]
    heapq.heapify(ready)

    ordered: list[str] = []
    while ready:
        _, step_id = heapq.heappop(ready)
        ordered.append(step_id)
        for dependent in graph.dependents[step_id]:
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                heapq.heappush(ready, (graph.order[dependent], dependent))

    if len(ordered) != len(graph.steps_by_id):
        unresolved = [step_id for step_id in graph.step_ids() if in_degree[step_id] > 0]
        logger.warning("Plan dependency cycle among steps: %s", ", ".join(unresolved))
        raise CyclicDependency(unresolved)
    return ordered


def _level_groups(graph: StepGraph) -> list[list[str]]:
    remaining = graph.step_ids()
    placed: set[str] = set()
    groups: list[list[str]] = []
    while remaining:
        group = [step_id for step_id in remaining if graph.dependencies[step_id] <= placed]
        if not group:
            raise CyclicDependency(remaining)
        groups.append(group)
        placed.update(group)
        remaining = [step_id for step_id in remaining if step_id not in placed]
    return groups
