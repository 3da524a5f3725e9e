"""Unit tests for the WorkflowOrchestrator.

Uses real on-disk registry and checkpoint logs, scripted workers, and a
provisioner that plans worktrees without calling git.
"""

import asyncio
from pathlib import Path
from typing import Optional
from unittest.mock import AsyncMock

import pytest

from src.workflow.discovery import DiscoveryService
from src.workflow.errors import (
    AlreadyClaimed,
    AmbiguousResume,
    CorruptState,
    IterationLimitExceeded,
    ResumeTargetNotFound,
)
from src.workflow.orchestrator import WorkflowOrchestrator
from src.workflow.sources.adapter import SourceAdapterRegistry
from src.workflow.sources.models import OpenChange, TaskSourceKind
from src.workflow.state import CheckpointLog, InstanceStatus, Phase, StepStatus, TaskRegistry
from src.workflow.workers import PendingApprovalGate, StaticApprovalGate, WorkerResult, WorkerSet
from tests.conftest import OfflineProvisioner, ScriptedWorker, make_policy, make_task, run_async


APPROVE = WorkerResult.completed(approved=True)


class BlockingWorker(ScriptedWorker):
    """Holds one phase open until the test lets it finish."""

    def __init__(self, phase: str, outcome: Optional[WorkerResult] = None):
        super().__init__({"review-loop": [APPROVE]})
        self.blocked_phase = phase
        self.outcome = outcome
        self.entered = asyncio.Event()
        self.proceed = asyncio.Event()

    async def run(self, phase_input):
        if phase_input.phase != self.blocked_phase:
            return await super().run(phase_input)
        self.calls.append(phase_input)
        self.entered.set()
        await self.proceed.wait()
        return self.outcome or WorkerResult.completed()


def build_orchestrator(tmp_path: Path, worker=None, gate=None, tasks=None, changes=None):
    state_dir = tmp_path / ".workflow"
    registry = TaskRegistry.for_state_dir(state_dir)

    adapter = AsyncMock()
    adapter.fetch.return_value = tasks or []
    change_source = AsyncMock()
    change_source.list_open_changes.return_value = changes or []
    adapters = SourceAdapterRegistry()
    adapters.register(TaskSourceKind.GITHUB, adapter, change_source=change_source)

    return WorkflowOrchestrator(
        registry=registry,
        discovery=DiscoveryService(adapters, registry),
        workers=WorkerSet.uniform(worker or ScriptedWorker({"review-loop": [APPROVE]})),
        approval_gate=gate or StaticApprovalGate(),
        provisioner=OfflineProvisioner(tmp_path),
        state_dir=state_dir,
    )


class TestDiscover:
    def test_excludes_claimed_and_in_flight(self, tmp_path):
        tasks = [
            make_task("1", labels=["critical"]),
            make_task("2", labels=["high"]),
            make_task("3", labels=["bug"]),
        ]
        orchestrator = build_orchestrator(
            tmp_path, tasks=tasks, changes=[OpenChange(body="Fixes #2")]
        )
        run_async(orchestrator.prepare_start(tasks[0], make_policy()))

        ranked = run_async(orchestrator.discover(make_policy()))

        assert [item.task.id for item in ranked] == ["3"]

    def test_limit_defaults_to_ranking_limit(self, tmp_path):
        tasks = [make_task(str(i)) for i in range(1, 10)]
        orchestrator = build_orchestrator(tmp_path, tasks=tasks)
        orchestrator.ranking_limit = 2
        assert len(run_async(orchestrator.discover(make_policy()))) == 2
        assert len(run_async(orchestrator.discover(make_policy(), limit=4))) == 4


class TestStart:
    def test_start_ships_and_releases(self, tmp_path):
        orchestrator = build_orchestrator(tmp_path)
        status = run_async(orchestrator.start(make_task(), make_policy()))

        assert status == InstanceStatus.SHIPPED
        assert orchestrator.registry.list() == []
        assert orchestrator.status() == []

    def test_second_start_of_same_task_is_already_claimed(self, tmp_path):
        orchestrator = build_orchestrator(tmp_path)
        run_async(orchestrator.prepare_start(make_task(), make_policy()))

        with pytest.raises(AlreadyClaimed):
            run_async(orchestrator.prepare_start(make_task(), make_policy()))

    def test_branch_ends_with_task_id(self, tmp_path):
        orchestrator = build_orchestrator(tmp_path)
        machine = run_async(orchestrator.prepare_start(make_task("42"), make_policy()))
        assert machine.document.branch == "task/github-fix-crash-on-empty-config-42"
        assert machine.resume_args == ["task/github-fix-crash-on-empty-config-42"]

    def test_same_issue_through_two_sources_gets_separate_worktrees(self, tmp_path):
        orchestrator = build_orchestrator(tmp_path)
        run_async(orchestrator.prepare_start(make_task("7"), make_policy()))
        run_async(
            orchestrator.prepare_start(
                make_task("7", source_kind=TaskSourceKind.GH_PROJECTS), make_policy()
            )
        )

        claims = orchestrator.registry.list()
        assert len(claims) == 2
        assert claims[0].worktree != claims[1].worktree
        assert claims[0].branch != claims[1].branch

    def test_reclaim_after_abort_keeps_previous_log(self, tmp_path):
        orchestrator = build_orchestrator(tmp_path)
        first = run_async(orchestrator.prepare_start(make_task(), make_policy()))
        first.log.append_step(Phase.POLICY_SELECTION, StepStatus.STARTED)
        run_async(orchestrator.abort("7", force=True))

        second = run_async(orchestrator.prepare_start(make_task(), make_policy()))

        assert second.log.entries() == []
        [previous] = second.log.archived()
        history = CheckpointLog(previous).load()
        assert history.status == InstanceStatus.ABORTED
        assert [(e.step, e.status) for e in history.steps] == [
            (Phase.POLICY_SELECTION, StepStatus.STARTED)
        ]

    def test_log_initialization_failure_releases_claim(self, tmp_path, monkeypatch):
        orchestrator = build_orchestrator(tmp_path)

        def broken_initialize(self, *args, **kwargs):
            raise OSError("disk full")

        monkeypatch.setattr(CheckpointLog, "initialize", broken_initialize)
        with pytest.raises(OSError):
            run_async(orchestrator.prepare_start(make_task(), make_policy()))
        assert orchestrator.registry.list() == []


class TestResume:
    def test_resume_halted_instance(self, tmp_path):
        rejecting = ScriptedWorker({"review-loop": [WorkerResult.completed(approved=False)]})
        orchestrator = build_orchestrator(tmp_path, worker=rejecting)
        with pytest.raises(IterationLimitExceeded) as exc_info:
            run_async(orchestrator.start(make_task(), make_policy()))

        [summary] = orchestrator.status()
        assert summary.status == InstanceStatus.HALTED
        assert summary.resume_from == Phase.REVIEW_LOOP

        orchestrator.workers = WorkerSet.uniform(ScriptedWorker({"review-loop": [APPROVE]}))
        target = exc_info.value.resume_args[0]
        assert run_async(orchestrator.resume(target)) == InstanceStatus.SHIPPED
        assert orchestrator.registry.list() == []

    def test_resume_without_target_and_several_claims_is_ambiguous(self, tmp_path):
        orchestrator = build_orchestrator(tmp_path)
        run_async(orchestrator.prepare_start(make_task("1"), make_policy()))
        run_async(orchestrator.prepare_start(make_task("2"), make_policy()))
        logs = [
            CheckpointLog.for_instance(tmp_path / ".workflow", key).path
            for key in ("github-1", "github-2")
        ]
        registry_before = orchestrator.registry.path.read_bytes()
        logs_before = [path.read_bytes() for path in logs]

        with pytest.raises(AmbiguousResume):
            orchestrator.prepare_resume()

        assert orchestrator.registry.path.read_bytes() == registry_before
        assert [path.read_bytes() for path in logs] == logs_before
        assert orchestrator._running == {}

    def test_resume_unknown_target(self, tmp_path):
        orchestrator = build_orchestrator(tmp_path)
        with pytest.raises(ResumeTargetNotFound):
            orchestrator.prepare_resume("nope")

    def test_resume_with_missing_log_is_corrupt(self, tmp_path):
        orchestrator = build_orchestrator(tmp_path)
        machine = run_async(orchestrator.prepare_start(make_task(), make_policy()))
        machine.log.path.unlink()

        with pytest.raises(CorruptState):
            orchestrator.prepare_resume("7")


class TestAbort:
    def test_force_abort_of_idle_instance_marks_log_and_releases(self, tmp_path):
        orchestrator = build_orchestrator(tmp_path)
        machine = run_async(orchestrator.prepare_start(make_task(), make_policy()))

        result = run_async(orchestrator.abort("7", remove_worktree=True, force=True))

        assert result.released is True
        assert result.worktree_removed is True
        assert result.cancel_requested is False
        assert machine.log.read_status() == InstanceStatus.ABORTED
        assert machine.log.exists()
        assert orchestrator.registry.list() == []
        assert orchestrator.provisioner.removed == [Path(machine.document.worktree)]

    def test_abort_of_instance_running_elsewhere_keeps_claim(self, tmp_path):
        orchestrator = build_orchestrator(tmp_path)
        machine = run_async(orchestrator.prepare_start(make_task(), make_policy()))

        result = run_async(orchestrator.abort("7", remove_worktree=True))

        assert result.cancel_requested is True
        assert result.released is False
        assert result.worktree_removed is False
        assert machine.log.read_status() == InstanceStatus.ABORTED
        assert [claim.id for claim in orchestrator.registry.list()] == ["7"]
        assert orchestrator.provisioner.removed == []

        again = run_async(orchestrator.abort("7"))
        assert again.released is False
        assert [claim.id for claim in orchestrator.registry.list()] == ["7"]

        # whoever drives the instance next finishes the abort
        assert run_async(orchestrator.resume("7")) == InstanceStatus.ABORTED
        assert orchestrator.registry.list() == []

    def test_abort_halted_instance_releases(self, tmp_path):
        rejecting = ScriptedWorker({"review-loop": [WorkerResult.completed(approved=False)]})
        orchestrator = build_orchestrator(tmp_path, worker=rejecting)
        with pytest.raises(IterationLimitExceeded):
            run_async(orchestrator.start(make_task(), make_policy()))

        result = run_async(orchestrator.abort("7"))

        assert result.released is True
        assert result.cancel_requested is False
        assert orchestrator.registry.list() == []

    def test_abort_from_another_orchestrator_waits_for_phase_boundary(self, tmp_path):
        async def scenario():
            worker = BlockingWorker("exploration")
            owner = build_orchestrator(tmp_path, worker=worker)
            other = build_orchestrator(tmp_path)

            machine = await owner.prepare_start(make_task(), make_policy())
            run = owner.launch(machine)
            await worker.entered.wait()

            result = await other.abort("7")
            with pytest.raises(AlreadyClaimed):
                await other.prepare_start(make_task(), make_policy())

            worker.proceed.set()
            return machine, result, await run, other

        machine, result, status, other = run_async(scenario())

        assert result.cancel_requested is True
        assert result.released is False
        assert status == InstanceStatus.ABORTED
        assert (Phase.EXPLORATION, StepStatus.COMPLETED) in [
            (entry.step, entry.status) for entry in machine.log.entries()
        ]
        assert other.registry.list() == []
        run_async(other.prepare_start(make_task(), make_policy()))

    def test_phase_failure_after_remote_abort_still_aborts(self, tmp_path):
        async def scenario():
            worker = BlockingWorker(
                "exploration", outcome=WorkerResult.failed(reason="interrupted")
            )
            owner = build_orchestrator(tmp_path, worker=worker)
            other = build_orchestrator(tmp_path)

            machine = await owner.prepare_start(make_task(), make_policy())
            run = owner.launch(machine)
            await worker.entered.wait()
            await other.abort("7")
            worker.proceed.set()
            return machine, await run

        machine, status = run_async(scenario())

        assert status == InstanceStatus.ABORTED
        assert machine.log.read_status() == InstanceStatus.ABORTED
        assert machine.log.last_step().status == StepStatus.FAILED
        assert TaskRegistry.for_state_dir(tmp_path / ".workflow").list() == []

    def test_abort_running_instance_cancels_at_boundary(self, tmp_path):
        gate = PendingApprovalGate()
        orchestrator = build_orchestrator(tmp_path, gate=gate)

        async def scenario():
            machine = await orchestrator.prepare_start(make_task(), make_policy())
            run = orchestrator.launch(machine)
            while not gate.pending():
                await asyncio.sleep(0.01)
            result = await orchestrator.abort("7")
            return result, await run

        result, status = run_async(scenario())

        assert result.cancel_requested is True
        assert status == InstanceStatus.ABORTED
        assert orchestrator.registry.list() == []

    def test_abort_corrupt_instance_still_releases(self, tmp_path):
        orchestrator = build_orchestrator(tmp_path)
        machine = run_async(orchestrator.prepare_start(make_task(), make_policy()))
        machine.log.path.write_text("{")

        result = run_async(orchestrator.abort("7"))

        assert result.released is True
        assert orchestrator.registry.list() == []


class TestStatusAndApproval:
    def test_status_is_read_only(self, tmp_path):
        orchestrator = build_orchestrator(tmp_path)
        machine = run_async(orchestrator.prepare_start(make_task(), make_policy()))
        registry_before = orchestrator.registry.path.read_text()
        log_before = machine.log.path.read_text()

        [summary] = orchestrator.status()

        assert summary.task_id == "7"
        assert summary.status == InstanceStatus.RUNNING
        assert summary.resume_from == Phase.POLICY_SELECTION
        assert summary.running_locally is False
        assert orchestrator.registry.path.read_text() == registry_before
        assert machine.log.path.read_text() == log_before

    def test_status_reports_corrupt_log(self, tmp_path):
        orchestrator = build_orchestrator(tmp_path)
        machine = run_async(orchestrator.prepare_start(make_task(), make_policy()))
        machine.log.path.write_text("[]")

        [summary] = orchestrator.status()
        assert summary.error is not None

    def test_approve_resolves_pending_gate(self, tmp_path):
        gate = PendingApprovalGate()
        orchestrator = build_orchestrator(tmp_path, gate=gate)

        async def scenario():
            machine = await orchestrator.prepare_start(make_task(), make_policy())
            run = orchestrator.launch(machine)
            while not gate.pending():
                await asyncio.sleep(0.01)
            [summary] = orchestrator.status()
            assert summary.awaiting_approval is True
            assert summary.running_locally is True
            assert orchestrator.approve("7", True, decided_by="lead")
            return await run

        assert run_async(scenario()) == InstanceStatus.SHIPPED

    def test_approve_without_pending_returns_false(self, tmp_path):
        orchestrator = build_orchestrator(tmp_path, gate=PendingApprovalGate())
        run_async(orchestrator.prepare_start(make_task(), make_policy()))
        assert orchestrator.approve("7", True) is False
