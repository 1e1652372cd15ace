"""Task execution engine: plan graph analysis, durable state and orchestration."""

from task_engine.engine.errors import (
    CapabilityError,
    CapabilityTimeout,
    CyclicDependency,
    MissingReference,
    PlanningFailure,
    TaskEngineError,
    UserInputRequired,
)
from task_engine.engine.orchestrator import Orchestrator, build_orchestrator
from task_engine.engine.repository import StateStore

__all__ = [
    "CapabilityError",
    "CapabilityTimeout",
    "CyclicDependency",
    "MissingReference",
    "Orchestrator",
    "PlanningFailure",
    "StateStore",
    "TaskEngineError",
    "UserInputRequired",
    "build_orchestrator",
]
