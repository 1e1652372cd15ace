"""Shared test fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest

from task_engine.config import OrchestratorSettings
from task_engine.engine.backend.echo import EchoCapability
from task_engine.engine.capabilities import CapabilityRegistry
from task_engine.engine.repository import StateStore


@pytest.fixture()
def store(tmp_path: Path):
    """Migrated state store in a temporary SQLite file."""
    repository = StateStore(tmp_path / "engine.db")
    repository.init_schema()
    yield repository
    repository.close()


@pytest.fixture()
def echo() -> EchoCapability:
    return EchoCapability()


@pytest.fixture()
def registry(echo: EchoCapability) -> CapabilityRegistry:
    return CapabilityRegistry({"echo": echo})


@pytest.fixture()
def fast_settings() -> OrchestratorSettings:
    """Orchestrator settings with no retry sleeps and short timeouts."""
    return OrchestratorSettings(
        max_concurrent_steps=3,
        default_step_timeout_seconds=5.0,
        default_max_retries=2,
        default_retry_delay_seconds=0.0,
    )
