"""Test configuration and fixtures."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from sinfonia_orchestrator.orchestrator.config import OrchestratorSettings
from sinfonia_orchestrator.orchestrator.workflow.coordinator import PipelineCoordinator
from sinfonia_orchestrator.orchestrator.workflow.store import WorkflowIndexStore


_ENV_VARS = (
    "SINFONIA_HANDOFFS_DIR",
    "SINFONIA_WORKFLOWS_DIR",
    "SINFONIA_COORDINATOR_PERSONA",
    "SINFONIA_SUMMARY_WORD_LIMIT",
    "SINFONIA_ROUTES",
    "LOG_LEVEL",
)


class FakeClock:
    """Returns strictly increasing ISO timestamps, one second apart."""

    def __init__(self, start: datetime | None = None) -> None:
        self._now = start or datetime(2024, 1, 1, 12, 0, 0, tzinfo=UTC)

    def __call__(self) -> str:
        self._now += timedelta(seconds=1)
        return self._now.isoformat(timespec="milliseconds")


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Remove settings variables that could leak in from the developer's shell."""
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def settings(clean_env: None) -> OrchestratorSettings:
    """Provide default settings that ignore any local `.env`."""
    return OrchestratorSettings(_env_file=None)


@pytest.fixture
def work_dir(tmp_path: Path) -> Path:
    """Provide an empty project directory."""
    path = tmp_path / "project"
    path.mkdir()
    return path


@pytest.fixture
def handoffs_root(work_dir: Path, settings: OrchestratorSettings) -> Path:
    return settings.handoffs_root(work_dir)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(handoffs_root: Path, clock: FakeClock) -> WorkflowIndexStore:
    """Provide a store with a deterministic clock."""
    return WorkflowIndexStore(handoffs_root, clock=clock)


@pytest.fixture
def coordinator(
    work_dir: Path, settings: OrchestratorSettings, store: WorkflowIndexStore
) -> PipelineCoordinator:
    """Provide a coordinator sharing the fixture store."""
    return PipelineCoordinator(work_dir, settings=settings, store=store)
