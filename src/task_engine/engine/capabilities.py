"""Capability provider interface and the registry the orchestrator dispatches to."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from typing import Any, Protocol

from task_engine.engine.models import LogEntry, LogLevel, StepAction, ToolCallRecord
from task_engine.storage.common import utc_now


@dataclass(slots=True)
class CapabilityRequest:
    """Inputs required to execute one step attempt."""

    task_id: str
    step_id: str
    attempt: int
    action: StepAction
    inputs: dict[str, Any]
    context: dict[str, Any]
    guidance: Any = None
    user_inputs: dict[str, Any] = field(default_factory=dict)
    logs: list[LogEntry] = field(default_factory=list)
    tool_calls: list[ToolCallRecord] = field(default_factory=list)
    on_log: Callable[[LogEntry], None] | None = None
    on_tool_call: Callable[[ToolCallRecord], None] | None = None

    def log(
        self,
        message: str,
        *,
        level: LogLevel = LogLevel.INFO,
        data: dict[str, Any] | None = None,
    ) -> LogEntry:
        """Attach a log line to the step result and forward it to the sink."""

        entry = LogEntry(level=level, message=message, timestamp=utc_now(), data=data)
        self.logs.append(entry)
        if self.on_log is not None:
            self.on_log(entry)
        return entry

    def record_tool_call(  # noqa: PLR0913
        self,
        tool_name: str,
        tool_input: Any,
        *,
        output: Any = None,
        error: str | None = None,
        duration_ms: int = 0,
    ) -> ToolCallRecord:
        """Attach a tool invocation record to the step result."""

        record = ToolCallRecord(
            tool_name=tool_name,
            input=tool_input,
            output=output,
            error=error,
            duration_ms=duration_ms,
            timestamp=utc_now(),
        )
        self.tool_calls.append(record)
        if self.on_tool_call is not None:
            self.on_tool_call(record)
        return record


@dataclass(slots=True)
class CapabilityResponse:
    """Execution outcome from a capability provider."""

    output: Any
    cost: float = 0.0
    context_updates: dict[str, Any] = field(default_factory=dict)


class CapabilityProvider(Protocol):
    """Protocol implemented by step executors.

    ``invoke`` must be cancellable. It raises ``CapabilityError`` for
    reportable failures and ``UserInputRequired`` to pause the task; the answer
    arrives in ``request.user_inputs`` under the requested input name once the
    task is resumed. A plain return value is treated as the step output with
    zero cost.
    """

    async def invoke(self, request: CapabilityRequest) -> CapabilityResponse | Any:
        """Run one step attempt."""


class CapabilityRegistry:
    """Explicit capability id -> provider mapping."""

    def __init__(self, providers: dict[str, CapabilityProvider] | None = None) -> None:
        self._providers: dict[str, CapabilityProvider] = dict(providers or {})

    def register(self, capability_id: str, provider: CapabilityProvider) -> None:
        if not capability_id.strip():
            raise ValueError("capability_id must be a non-empty string")
        self._providers[capability_id] = provider

    def get(self, capability_id: str) -> CapabilityProvider | None:
        return self._providers.get(capability_id)

    def ids(self) -> list[str]:
        return sorted(self._providers)

    def __contains__(self, capability_id: object) -> bool:
        return capability_id in self._providers

    def __iter__(self) -> Iterator[str]:
        return iter(self.ids())

    def __len__(self) -> int:
        return len(self._providers)
