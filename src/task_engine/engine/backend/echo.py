"""Local deterministic capability for integration tests and smoke runs."""

from __future__ import annotations

import asyncio
from typing import Any

from task_engine.engine.capabilities import CapabilityRequest, CapabilityResponse
from task_engine.engine.errors import CapabilityError


class EchoCapability:
    """Echo resolved inputs back as the step output.

    Recognised action params: ``delay_seconds`` sleeps before answering,
    ``cost`` is reported as the attempt cost, ``fail_times`` makes the first N
    invocations per step fail with a retryable error, ``context_key`` publishes
    the output into the task context.
    """

    def __init__(self) -> None:
        self.calls: list[CapabilityRequest] = []
        self._failures: dict[tuple[str, str], int] = {}

    async def invoke(self, request: CapabilityRequest) -> CapabilityResponse:
        self.calls.append(request)
        params = request.action.params
        delay = float(params.get("delay_seconds", 0.0))
        if delay > 0:
            await asyncio.sleep(delay)

        key = (request.task_id, request.step_id)
        fail_times = int(params.get("fail_times", 0))
        if self._failures.get(key, 0) < fail_times:
            self._failures[key] = self._failures.get(key, 0) + 1
            request.log(f"echo failure {self._failures[key]} of {fail_times}")
            raise CapabilityError(
                f"Echo configured to fail {fail_times} time(s)",
                code="ECHO_FAILURE",
                retryable=True,
            )

        payload = {
            name: value
            for name, value in request.inputs.items()
            if name not in {"delay_seconds", "cost", "fail_times", "context_key"}
        }
        output: dict[str, Any] = {"action": request.action.type, **payload}
        if request.guidance is not None:
            output["guidance"] = request.guidance
        request.record_tool_call("echo", payload, output=output)
        request.log(f"echo {request.action.type} completed")
        context_key = params.get("context_key")
        return CapabilityResponse(
            output=output,
            cost=float(params.get("cost", 0.0)),
            context_updates={str(context_key): output} if context_key else {},
        )
