"""Runtime configuration for the task execution engine."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

SUPPORTED_BACKOFF_MODES = ("fixed", "exponential")


@dataclass(slots=True)
class StorageSettings:
    """SQLite state store settings."""

    busy_timeout_ms: int = 5_000


@dataclass(slots=True)
class OrchestratorSettings:
    """Step dispatch, timeout and retry defaults."""

    max_concurrent_steps: int = 3
    default_step_timeout_seconds: float = 60.0
    default_max_retries: int = 2
    default_retry_delay_seconds: float = 1.0
    retry_backoff: str = "fixed"
    retry_max_delay_seconds: float = 60.0
    enforce_deadlines: bool = True


@dataclass(slots=True)
class UserContextSettings:
    """User context settings."""

    user_id: str = "default_user"
    user_name: str = "Default User"


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".task_engine.db")
    storage: StorageSettings = field(default_factory=StorageSettings)
    orchestrator: OrchestratorSettings = field(default_factory=OrchestratorSettings)
    user_context: UserContextSettings = field(default_factory=UserContextSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("TASK_ENGINE_DB_PATH", ".task_engine.db")),
            storage=StorageSettings(
                busy_timeout_ms=int(os.getenv("TASK_ENGINE_DB_BUSY_TIMEOUT_MS", "5000")),
            ),
            orchestrator=OrchestratorSettings(
                max_concurrent_steps=int(os.getenv("TASK_ENGINE_MAX_CONCURRENT_STEPS", "3")),
                default_step_timeout_seconds=float(
                    os.getenv("TASK_ENGINE_DEFAULT_STEP_TIMEOUT_SECONDS", "60"),
                ),
                default_max_retries=int(os.getenv("TASK_ENGINE_DEFAULT_MAX_RETRIES", "2")),
                default_retry_delay_seconds=float(
                    os.getenv("TASK_ENGINE_DEFAULT_RETRY_DELAY_SECONDS", "1.0"),
                ),
                retry_backoff=os.getenv("TASK_ENGINE_RETRY_BACKOFF", "fixed").strip().lower(),
                retry_max_delay_seconds=float(
                    os.getenv("TASK_ENGINE_RETRY_MAX_DELAY_SECONDS", "60"),
                ),
                enforce_deadlines=_env_bool("TASK_ENGINE_ENFORCE_DEADLINES", default=True),
            ),
            user_context=UserContextSettings(
                user_id=os.getenv("TASK_ENGINE_USER_ID", "default_user"),
                user_name=os.getenv("TASK_ENGINE_USER_NAME", "Default User"),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error if any setting is out of range."""

        if self.storage.busy_timeout_ms <= 0:
            raise ValueError("TASK_ENGINE_DB_BUSY_TIMEOUT_MS must be > 0.")
        orchestrator = self.orchestrator
        if orchestrator.max_concurrent_steps <= 0:
            raise ValueError("TASK_ENGINE_MAX_CONCURRENT_STEPS must be a positive integer.")
        if orchestrator.default_step_timeout_seconds <= 0:
            raise ValueError("TASK_ENGINE_DEFAULT_STEP_TIMEOUT_SECONDS must be > 0.")
        if orchestrator.default_max_retries < 0:
            raise ValueError("TASK_ENGINE_DEFAULT_MAX_RETRIES must be >= 0.")
        if orchestrator.default_retry_delay_seconds < 0:
            raise ValueError("TASK_ENGINE_DEFAULT_RETRY_DELAY_SECONDS must be >= 0.")
        if orchestrator.retry_backoff not in SUPPORTED_BACKOFF_MODES:
            raise ValueError(
                "Invalid TASK_ENGINE_RETRY_BACKOFF: "
                f"{orchestrator.retry_backoff!r}. Expected one of: "
                f"{', '.join(SUPPORTED_BACKOFF_MODES)}.",
            )
        if orchestrator.retry_max_delay_seconds < orchestrator.default_retry_delay_seconds:
            raise ValueError(
                "TASK_ENGINE_RETRY_MAX_DELAY_SECONDS must be >= "
                "TASK_ENGINE_DEFAULT_RETRY_DELAY_SECONDS.",
            )
        if not self.user_context.user_id.strip():
            raise ValueError("TASK_ENGINE_USER_ID must be a non-empty string.")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
