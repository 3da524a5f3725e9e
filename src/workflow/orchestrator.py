"""Workflow orchestrator: the engine's public surface.

Connects discovery, the task registry, checkpoint logs and the state
machine:

- discover: ranked candidates for a policy
- start: claim a task, initialize its log and run it
- resume: resolve a claim from a target and continue from its log
- abort: cancel a locally running instance, or mark the log aborted and
  release the claim once no machine can still be inside a phase
- status: read-only view of every claimed instance
- approve: answer a pending plan approval

Starting and resuming are split into a synchronous prepare step, which
surfaces AlreadyClaimed, AmbiguousResume and CorruptState to the caller,
and a drive step that runs the machine and may be scheduled in the
background.
"""

import asyncio
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from pydantic import BaseModel, ConfigDict, Field

from src.workflow.discovery import DEFAULT_RANKING_LIMIT, DiscoveryService
from src.workflow.errors import AlreadyClaimed, CorruptState
from src.workflow.events import EventEmitter, EventType, NullEventEmitter, WorkflowEvent
from src.workflow.provisioner import WorktreeProvisioner
from src.workflow.sources.models import Policy, ScoredTask, Task
from src.workflow.state import (
    CheckpointLog,
    ClaimRecord,
    InstanceRef,
    InstanceStatus,
    Phase,
    TaskRegistry,
    WorkflowStateMachine,
)
from src.workflow.workers import ApprovalGate, PendingApprovalGate, WorkerSet

logger = logging.getLogger(__name__)


class InstanceSummary(BaseModel):
    """Status of one claimed instance, built from its claim and its log."""

    model_config = ConfigDict(populate_by_name=True)

    task_id: str = Field(..., alias="taskId")
    source: str
    title: Optional[str] = None
    branch: str
    worktree: str
    status: InstanceStatus
    current_phase: Optional[Phase] = Field(default=None, alias="currentPhase")
    resume_from: Optional[Phase] = Field(default=None, alias="resumeFrom")
    last_activity_at: Optional[datetime] = Field(default=None, alias="lastActivityAt")
    running_locally: bool = Field(default=False, alias="runningLocally")
    awaiting_approval: bool = Field(default=False, alias="awaitingApproval")
    error: Optional[str] = None


class AbortResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    task_id: str = Field(..., alias="taskId")
    source: str
    branch: str
    cancel_requested: bool = Field(default=False, alias="cancelRequested")
    released: bool = False
    worktree_removed: bool = Field(default=False, alias="worktreeRemoved")


class WorkflowOrchestrator:
    """Runs workflow instances against shared on-disk state.

    Attributes:
        registry: Shared task registry.
        discovery: Candidate discovery and ranking.
        workers: Workers for the worker-driven phases.
        approval_gate: Gate awaited during plan-approval.
        provisioner: Plans and creates instance worktrees.
        state_dir: Directory holding instance checkpoint logs.
        emitter: Observability sink shared by all machines.
    """

    def __init__(
        self,
        registry: TaskRegistry,
        discovery: DiscoveryService,
        workers: WorkerSet,
        approval_gate: ApprovalGate,
        provisioner: WorktreeProvisioner,
        state_dir: Path,
        emitter: Optional[EventEmitter] = None,
        max_review_iterations: int = 3,
        max_validation_retries: int = 3,
        ranking_limit: int = DEFAULT_RANKING_LIMIT,
        lock_timeout: float = 10.0,
    ):
        self.registry = registry
        self.discovery = discovery
        self.workers = workers
        self.approval_gate = approval_gate
        self.provisioner = provisioner
        self.state_dir = Path(state_dir)
        self.emitter = emitter or NullEventEmitter()
        self.max_review_iterations = max_review_iterations
        self.max_validation_retries = max_validation_retries
        self.ranking_limit = ranking_limit
        self.lock_timeout = lock_timeout

        self._running: Dict[str, WorkflowStateMachine] = {}
        self._background: Set["asyncio.Task[Any]"] = set()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _log_for(self, claim_key: str) -> CheckpointLog:
        return CheckpointLog.for_instance(
            self.state_dir, claim_key, lock_timeout=self.lock_timeout
        )

    def _machine_for(self, log: CheckpointLog) -> WorkflowStateMachine:
        return WorkflowStateMachine(
            log=log,
            registry=self.registry,
            workers=self.workers,
            approval_gate=self.approval_gate,
            provisioner=self.provisioner,
            emitter=self.emitter,
            max_review_iterations=self.max_review_iterations,
            max_validation_retries=self.max_validation_retries,
        )

    def is_running(self, claim: ClaimRecord) -> bool:
        return claim.instance_key in self._running

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    async def discover(self, policy: Policy, limit: Optional[int] = None) -> List[ScoredTask]:
        """Return ranked, unclaimed candidates for ``policy``.

        Raises:
            SourceUnavailable: If the policy's source cannot be fetched.
        """
        return await self.discovery.discover(
            policy, limit=limit if limit is not None else self.ranking_limit
        )

    # ------------------------------------------------------------------
    # Start / resume
    # ------------------------------------------------------------------

    async def prepare_start(self, task: Task, policy: Policy) -> WorkflowStateMachine:
        """Claim ``task`` and initialize its checkpoint log.

        Raises:
            AlreadyClaimed: If another instance holds the task.
            LockTimeout: If the registry lock could not be acquired.
        """
        spec = self.provisioner.plan(task)
        claim = self.registry.claim(
            task.id,
            task.source_kind,
            InstanceRef(worktree=str(spec.path), branch=spec.branch, title=task.title),
        )
        log = self._log_for(claim.instance_key)
        try:
            log.initialize(task, policy, worktree=str(spec.path), branch=spec.branch)
        except Exception:
            logger.exception(
                "Failed to initialize checkpoint log, releasing claim",
                extra={"task_id": task.id, "source": task.source_kind.value},
            )
            self.registry.release(task.id, task.source_kind)
            raise

        await self._emit_claimed(task, spec.branch)
        return self._machine_for(log)

    def prepare_resume(self, target: Optional[str] = None) -> WorkflowStateMachine:
        """Resolve ``target`` to a claim and load its log.

        Raises:
            ResumeTargetNotFound: If no claim matches.
            AmbiguousResume: If several claims match.
            AlreadyClaimed: If the instance is already running in this process.
            CorruptState: If the instance's log is missing or invalid.
        """
        claim = self.registry.resolve_resume(target)
        if self.is_running(claim):
            raise AlreadyClaimed(
                claim.id,
                claim.source.value,
                owner_branch=claim.branch,
                owner_worktree=claim.worktree,
            )

        log = self._log_for(claim.instance_key)
        document = log.load()
        logger.info(
            "Resuming workflow instance",
            extra={
                "task_id": claim.id,
                "source": claim.source.value,
                "branch": claim.branch,
                "status": document.status.value,
                "resume_from": document.resume_from.value if document.resume_from else None,
            },
        )
        return self._machine_for(log)

    async def drive(self, machine: WorkflowStateMachine) -> InstanceStatus:
        """Run a prepared machine until it ships, halts or aborts."""
        key = machine.key
        self._running[key] = machine
        try:
            return await machine.run()
        finally:
            self._running.pop(key, None)

    async def start(self, task: Task, policy: Policy) -> InstanceStatus:
        machine = await self.prepare_start(task, policy)
        return await self.drive(machine)

    async def resume(self, target: Optional[str] = None) -> InstanceStatus:
        machine = self.prepare_resume(target)
        return await self.drive(machine)

    def launch(self, machine: WorkflowStateMachine) -> "asyncio.Task[InstanceStatus]":
        """Drive a prepared machine in the background."""
        task = asyncio.create_task(self.drive(machine), name=f"workflow-{machine.key}")
        self._running[machine.key] = machine
        self._background.add(task)
        task.add_done_callback(self._on_background_done)
        return task

    def _on_background_done(self, task: "asyncio.Task[Any]") -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(
                "Background workflow instance stopped: %s",
                error,
                extra={"task_name": task.get_name()},
            )

    async def shutdown(self) -> None:
        """Cancel background instances; their logs stay resumable."""
        tasks = list(self._background)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Orchestrator shut down", extra={"cancelled": len(tasks)})

    # ------------------------------------------------------------------
    # Abort
    # ------------------------------------------------------------------

    async def abort(
        self,
        target: Optional[str] = None,
        remove_worktree: bool = False,
        force: bool = False,
    ) -> AbortResult:
        """Abort the instance matching ``target``.

        A machine running in this process is asked to cancel and aborts at
        its next phase boundary, releasing the claim itself. Otherwise the
        log is marked aborted. If the log says the instance is still
        running, or was already marked aborted while its claim is still
        held, it may be inside a phase in another process: the claim
        stays until that machine reaches its next boundary and releases
        it. Halted instances, unreadable logs and ``force`` release the
        claim here. The log is kept.

        Args:
            target: Task id, branch or worktree path; None when only one
                instance is claimed.
            remove_worktree: Also remove the worktree once the claim is
                released.
            force: Release the claim even if the log says the instance is
                running, for instances whose process has died.

        Raises:
            ResumeTargetNotFound: If no claim matches.
            AmbiguousResume: If several claims match.
        """
        claim = self.registry.resolve_resume(target)
        result = AbortResult(task_id=claim.id, source=claim.source.value, branch=claim.branch)

        machine = self._running.get(claim.instance_key)
        if machine is not None:
            machine.request_cancel()
            result.cancel_requested = True
            return result

        log = self._log_for(claim.instance_key)
        recorded: Optional[InstanceStatus] = None
        try:
            recorded = log.read_status()
            if recorded != InstanceStatus.ABORTED:
                log.mark(InstanceStatus.ABORTED)
        except CorruptState as e:
            logger.warning(
                "Aborting instance with unreadable checkpoint log",
                extra={"task_id": claim.id, "source": claim.source.value, "error": e.message},
            )

        if recorded in (InstanceStatus.RUNNING, InstanceStatus.ABORTED) and not force:
            result.cancel_requested = True
            logger.warning(
                "Abort recorded, claim kept until the running instance stops",
                extra={"task_id": claim.id, "source": claim.source.value, "branch": claim.branch},
            )
            return result

        result.released = self.registry.release(claim.id, claim.source)
        if remove_worktree:
            result.worktree_removed = await self.provisioner.remove(Path(claim.worktree))

        logger.warning(
            "Workflow instance aborted",
            extra={"task_id": claim.id, "source": claim.source.value, "branch": claim.branch},
        )
        await self._emit(EventType.ABORTED, claim.id, claim.source.value, branch=claim.branch)
        return result

    # ------------------------------------------------------------------
    # Status and approval
    # ------------------------------------------------------------------

    def status(self) -> List[InstanceSummary]:
        """Describe every claimed instance. Never mutates state."""
        pending = self.pending_approvals()
        summaries: List[InstanceSummary] = []
        for claim in self.registry.list():
            summary = InstanceSummary(
                task_id=claim.id,
                source=claim.source.value,
                title=claim.title,
                branch=claim.branch,
                worktree=claim.worktree,
                status=claim.status,
                last_activity_at=claim.last_activity_at,
                running_locally=self.is_running(claim),
                awaiting_approval=claim.instance_key in pending,
            )
            try:
                document = self._log_for(claim.instance_key).load()
            except CorruptState as e:
                summary.error = e.message
            else:
                summary.status = document.status
                summary.current_phase = document.workflow.current_phase
                summary.resume_from = document.resume_from
                summary.last_activity_at = document.workflow.last_activity_at
            summaries.append(summary)
        return summaries

    def pending_approvals(self) -> Dict[str, Dict[str, Any]]:
        if isinstance(self.approval_gate, PendingApprovalGate):
            return self.approval_gate.pending()
        return {}

    def approve(
        self,
        task_id: str,
        approved: bool,
        feedback: str = "",
        decided_by: Optional[str] = None,
    ) -> bool:
        """Answer the pending plan approval of the instance owning ``task_id``.

        Returns:
            True if a pending approval was resolved.

        Raises:
            ResumeTargetNotFound: If no claim matches ``task_id``.
            AmbiguousResume: If several claims match.
        """
        claim = self.registry.resolve_resume(task_id)
        if not isinstance(self.approval_gate, PendingApprovalGate):
            logger.warning(
                "Approval gate does not accept external decisions",
                extra={"task_id": claim.id},
            )
            return False
        return self.approval_gate.decide(
            claim.instance_key, approved, feedback=feedback, decided_by=decided_by
        )

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def _emit_claimed(self, task: Task, branch: str) -> None:
        await self._emit(
            EventType.CLAIMED, task.id, task.source_kind.value, branch=branch, title=task.title
        )

    async def _emit(self, event_type: EventType, task_id: str, source: str, **details: Any) -> None:
        try:
            await self.emitter.emit(
                WorkflowEvent(event_type=event_type, task_id=task_id, source=source, details=details)
            )
        except Exception:
            logger.exception(
                "Failed to emit workflow event",
                extra={"task_id": task_id, "event_type": event_type.value},
            )
