"""Progress and log sinks for task execution events."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Protocol

from task_engine.engine.models import LogEntry, LogLevel, ToolCallRecord

progress_logger = logging.getLogger("task_engine.progress")

_LEVELS = {
    LogLevel.DEBUG: logging.DEBUG,
    LogLevel.INFO: logging.INFO,
    LogLevel.WARNING: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}


class ProgressSink(Protocol):
    """Receiver of fire-and-forget execution events."""

    def on_log(self, task_id: str, entry: LogEntry) -> None: ...

    def on_progress(self, task_id: str, step_id: str | None, percent: float) -> None: ...

    def on_tool_call(self, task_id: str, step_id: str, record: ToolCallRecord) -> None: ...


class LoggingSink:
    """Forward execution events to the ``task_engine.progress`` logger."""

    def on_log(self, task_id: str, entry: LogEntry) -> None:
        progress_logger.log(_LEVELS[entry.level], "[%s] %s", task_id, entry.message)

    def on_progress(self, task_id: str, step_id: str | None, percent: float) -> None:
        progress_logger.info("[%s] progress %.1f%% (step=%s)", task_id, percent, step_id or "-")

    def on_tool_call(self, task_id: str, step_id: str, record: ToolCallRecord) -> None:
        progress_logger.debug(
            "[%s] step %s called tool %s in %sms",
            task_id,
            step_id,
            record.tool_name,
            record.duration_ms,
        )


@dataclass(slots=True)
class RecordingSink:
    """Keep every event in memory; handy for tests and embedding callers."""

    logs: list[tuple[str, LogEntry]] = field(default_factory=list)
    progress: list[tuple[str, str | None, float]] = field(default_factory=list)
    tool_calls: list[tuple[str, str, ToolCallRecord]] = field(default_factory=list)

    def on_log(self, task_id: str, entry: LogEntry) -> None:
        self.logs.append((task_id, entry))

    def on_progress(self, task_id: str, step_id: str | None, percent: float) -> None:
        self.progress.append((task_id, step_id, percent))

    def on_tool_call(self, task_id: str, step_id: str, record: ToolCallRecord) -> None:
        self.tool_calls.append((task_id, step_id, record))
