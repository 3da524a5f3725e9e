"""Interfaces consumed by the state machine.

Workers are opaque: the machine hands each one a PhaseInput and gets back
a WorkerResult. What a worker does inside (an agent CLI, a test double, a
human) is not the machine's concern.

Defines:
- PhaseInput / WorkerResult: the worker call contract
- ExternalWorker: protocol every phase worker implements
- WorkerSet: the workers for every worker-driven phase
- ApprovalGate: protocol for the plan approval suspension point
- PendingApprovalGate: gate resolved out-of-band (e.g. over HTTP)
- StaticApprovalGate: gate that always returns the same decision
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field

from src.workflow.sources.models import Policy, Task


logger = logging.getLogger(__name__)


class WorkerStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"


class PhaseInput(BaseModel):
    """Everything a worker receives for one phase run.

    Attributes:
        phase: Phase (or sub-phase, e.g. "cleanup") being executed.
        task: The claimed task.
        policy: The selection-time policy.
        worktree: Isolated worktree the worker operates in.
        branch: Branch checked out in the worktree.
        attempt: 1-based attempt number of the phase.
        context: Results of earlier phases the worker may need (plan,
            validation fix list, review feedback).
    """

    model_config = ConfigDict(populate_by_name=True)

    phase: str
    task: Task
    policy: Policy
    worktree: str
    branch: str
    attempt: int = 1
    context: Dict[str, Any] = Field(default_factory=dict)


class WorkerResult(BaseModel):
    """Outcome of one worker run.

    A review worker signals approval with ``result["approved"] is True``.
    A validation worker lists required fixes under ``result["fixes"]``.
    """

    status: WorkerStatus
    result: Dict[str, Any] = Field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status == WorkerStatus.COMPLETED

    @classmethod
    def completed(cls, **result: Any) -> "WorkerResult":
        return cls(status=WorkerStatus.COMPLETED, result=result)

    @classmethod
    def failed(cls, **result: Any) -> "WorkerResult":
        return cls(status=WorkerStatus.FAILED, result=result)


@runtime_checkable
class ExternalWorker(Protocol):
    """A worker that executes one phase."""

    async def run(self, phase_input: PhaseInput) -> WorkerResult:
        """Execute the phase.

        Raises:
            Exception: Any exception is recorded as a phase failure.
        """
        ...


@dataclass
class WorkerSet:
    """Workers for every worker-driven phase.

    ``cleanup`` and ``coverage`` are the two pre-review gates, run
    concurrently.
    """

    exploration: ExternalWorker
    planning: ExternalWorker
    implementation: ExternalWorker
    cleanup: ExternalWorker
    coverage: ExternalWorker
    review: ExternalWorker
    validation: ExternalWorker
    docs: ExternalWorker
    ship: ExternalWorker

    @classmethod
    def uniform(cls, worker: ExternalWorker) -> "WorkerSet":
        """Use one worker for every phase; it dispatches on PhaseInput.phase."""
        return cls(
            exploration=worker,
            planning=worker,
            implementation=worker,
            cleanup=worker,
            coverage=worker,
            review=worker,
            validation=worker,
            docs=worker,
            ship=worker,
        )


@dataclass
class ApprovalDecision:
    approved: bool
    feedback: str = ""
    decided_by: Optional[str] = None


@runtime_checkable
class ApprovalGate(Protocol):
    """The single unbounded suspension point of the machine."""

    async def await_approval(
        self, instance_key: str, plan: Dict[str, Any]
    ) -> ApprovalDecision:
        ...


class StaticApprovalGate:
    """Approval gate returning a fixed decision. Useful for unattended runs."""

    def __init__(self, approved: bool = True, feedback: str = ""):
        self.decision = ApprovalDecision(approved=approved, feedback=feedback)
        self.requests: List[str] = []

    async def await_approval(
        self, instance_key: str, plan: Dict[str, Any]
    ) -> ApprovalDecision:
        self.requests.append(instance_key)
        return self.decision


@dataclass
class _PendingApproval:
    future: "asyncio.Future[ApprovalDecision]"
    plan: Dict[str, Any] = field(default_factory=dict)


class PendingApprovalGate:
    """Approval gate resolved by an external caller.

    ``await_approval`` parks a future per instance; ``decide`` resolves it.
    There is no timeout: the machine waits until someone decides or the
    instance is cancelled.
    """

    def __init__(self) -> None:
        self._pending: Dict[str, _PendingApproval] = {}

    def pending(self) -> Dict[str, Dict[str, Any]]:
        """Instance keys awaiting a decision, with the plan under review."""
        return {key: entry.plan for key, entry in self._pending.items()}

    async def await_approval(
        self, instance_key: str, plan: Dict[str, Any]
    ) -> ApprovalDecision:
        loop = asyncio.get_running_loop()
        entry = _PendingApproval(future=loop.create_future(), plan=plan)
        self._pending[instance_key] = entry
        logger.info("Awaiting plan approval", extra={"instance": instance_key})
        try:
            return await entry.future
        finally:
            self._pending.pop(instance_key, None)

    def decide(
        self,
        instance_key: str,
        approved: bool,
        feedback: str = "",
        decided_by: Optional[str] = None,
    ) -> bool:
        """Resolve a pending approval.

        Returns:
            True if a pending approval was resolved, False if none exists.
        """
        entry = self._pending.get(instance_key)
        if entry is None or entry.future.done():
            return False
        entry.future.set_result(
            ApprovalDecision(approved=approved, feedback=feedback, decided_by=decided_by)
        )
        logger.info(
            "Plan approval decided",
            extra={"instance": instance_key, "approved": approved},
        )
        return True
