"""Shared fixtures for workflow engine tests."""

import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import pytest

from src.workflow.provisioner import WorktreeProvisioner, WorktreeSpec
from src.workflow.sources.models import (
    GitHubSourceConfig,
    Policy,
    PriorityFilter,
    StoppingPoint,
    Task,
    TaskSourceKind,
)
from src.workflow.workers import PhaseInput, WorkerResult

NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


def run_async(coro):
    """Run an async coroutine synchronously for testing."""
    return asyncio.run(coro)


def make_task(
    task_id: str = "7",
    title: str = "Fix crash on empty config",
    labels: Optional[List[str]] = None,
    age_days: float = 1.0,
    source_kind: TaskSourceKind = TaskSourceKind.GITHUB,
) -> Task:
    return Task(
        id=task_id,
        title=title,
        body="",
        labels=labels or [],
        created_at=NOW - timedelta(days=age_days),
        source_ref="acme/widgets",
        source_kind=source_kind,
    )


def make_policy(
    priority_filter: PriorityFilter = PriorityFilter.ALL,
    stopping_point: StoppingPoint = StoppingPoint.PR_CREATED,
) -> Policy:
    return Policy(
        task_source=GitHubSourceConfig(repository="acme/widgets"),
        priority_filter=priority_filter,
        stopping_point=stopping_point,
    )


class OfflineProvisioner(WorktreeProvisioner):
    """Plans like the real provisioner but creates plain directories."""

    def __init__(self, base_path: Path):
        super().__init__(repo_root=base_path, base_path=base_path / "worktrees")
        self.removed: List[Path] = []

    async def provision(self, spec: WorktreeSpec) -> Path:
        spec.path.mkdir(parents=True, exist_ok=True)
        return spec.path

    async def remove(self, path: Path) -> bool:
        self.removed.append(Path(path))
        return True


class ScriptedWorker:
    """Worker returning scripted results per phase.

    ``script`` maps a phase name to a list of results consumed in order;
    the last one repeats. An Exception in the list is raised instead.
    Phases without a script complete with an empty result.
    """

    def __init__(self, script: Optional[Dict[str, List[Any]]] = None):
        self.script = {k: list(v) for k, v in (script or {}).items()}
        self.calls: List[PhaseInput] = []

    async def run(self, phase_input: PhaseInput) -> WorkerResult:
        self.calls.append(phase_input)
        queue = self.script.get(phase_input.phase)
        if not queue:
            return WorkerResult.completed()
        outcome = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def phases(self) -> List[str]:
        return [call.phase for call in self.calls]


@pytest.fixture
def state_dir(tmp_path: Path) -> Path:
    path = tmp_path / ".workflow"
    path.mkdir()
    return path


@pytest.fixture
def task_factory() -> Callable[..., Task]:
    return make_task


@pytest.fixture
def policy() -> Policy:
    return make_policy()
