"""Per-step error policy: strategy resolution, retry bounds and backoff."""

from __future__ import annotations

from dataclasses import dataclass

from task_engine.config import OrchestratorSettings
from task_engine.engine.models import (
    ErrorStrategyType,
    ExecutionPlan,
    PlanStep,
    StepError,
)


@dataclass(slots=True)
class EffectivePolicy:
    """Error handling that applies to one step."""

    strategy: ErrorStrategyType
    max_retries: int
    retry_delay_seconds: float
    timeout_seconds: float
    fallback_step_id: str | None = None


@dataclass(slots=True)
class RetryDecision:
    """Decision returned by retry policy."""

    should_retry: bool
    delay_seconds: float
    reason: str


def resolve_policy(
    plan: ExecutionPlan,
    step: PlanStep,
    settings: OrchestratorSettings,
) -> EffectivePolicy:
    """Per-step override wins over the plan default; step fields win over settings."""

    override = plan.error_handling.step_overrides.get(step.id)
    strategy = override.strategy if override is not None else plan.error_handling.default
    if override is not None and override.max_retries is not None:
        max_retries = override.max_retries
    elif step.max_retries is not None:
        max_retries = step.max_retries
    else:
        max_retries = settings.default_max_retries
    return EffectivePolicy(
        strategy=strategy,
        max_retries=max(0, max_retries),
        retry_delay_seconds=(
            step.retry_delay_seconds
            if step.retry_delay_seconds is not None
            else settings.default_retry_delay_seconds
        ),
        timeout_seconds=(
            step.timeout_seconds
            if step.timeout_seconds is not None
            else settings.default_step_timeout_seconds
        ),
        fallback_step_id=override.fallback_step_id if override is not None else None,
    )


def compute_retry_delay(
    *,
    base_seconds: float,
    retry_number: int,
    backoff: str,
    max_delay_seconds: float,
) -> float:
    """Delay before retry ``retry_number`` (1-based)."""

    if base_seconds <= 0:
        return 0.0
    if backoff == "exponential":
        return min(max_delay_seconds, base_seconds * (2 ** max(retry_number - 1, 0)))
    return min(max_delay_seconds, base_seconds)


def decide_retry(
    *,
    policy: EffectivePolicy,
    error: StepError,
    attempt: int,
    settings: OrchestratorSettings,
) -> RetryDecision:
    """Retry a retryable failure while attempts remain, except under fallback/ask_user."""

    if policy.strategy in {ErrorStrategyType.FALLBACK, ErrorStrategyType.ASK_USER}:
        return RetryDecision(
            should_retry=False,
            delay_seconds=0.0,
            reason=f"Strategy {policy.strategy.value} handles failures without retries.",
        )
    if not error.retryable:
        return RetryDecision(
            should_retry=False,
            delay_seconds=0.0,
            reason=f"Error {error.code} is not retryable.",
        )
    if attempt > policy.max_retries:
        return RetryDecision(
            should_retry=False,
            delay_seconds=0.0,
            reason=f"Retry budget exhausted after {attempt} attempts.",
        )
    return RetryDecision(
        should_retry=True,
        delay_seconds=compute_retry_delay(
            base_seconds=policy.retry_delay_seconds,
            retry_number=attempt,
            backoff=settings.retry_backoff,
            max_delay_seconds=settings.retry_max_delay_seconds,
        ),
        reason=f"Retry {attempt} of {policy.max_retries}.",
    )
