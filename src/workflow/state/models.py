"""Workflow state models.

This module defines the data models for the workflow state machine:
- Phase: Enum of all workflow phases, in canonical order
- StepStatus: Checkpoint entry status (started, completed, failed)
- InstanceStatus: Lifecycle status of a workflow instance
- CheckpointEntry: One append-only record in an instance's checkpoint log
- ClaimRecord: One row of the shared task registry
- WorkflowInstance: Runtime view reconstructed from registry and log
- RESUME_PHASE_AFTER: Total map from a completed step to the next phase

Persisted models allow extra fields so that documents written by newer
versions round-trip through older readers unchanged.
"""

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from src.workflow.errors import CorruptState
from src.workflow.sources.models import Policy, Task, TaskSourceKind


class Phase(str, Enum):
    """Workflow phases an instance progresses through.

    Phase Flow:
        policy-selection → task-discovery → worktree-setup → exploration
        → planning → plan-approval → implementation → pre-review-gates
        → review-loop → delivery-validation → docs-update → ship

    A failed delivery-validation routes back to implementation. Any other
    failure halts the instance until it is resumed or aborted.

    Attributes:
        POLICY_SELECTION: Record the selection-time policy.
        TASK_DISCOVERY: Record the selected task.
        WORKTREE_SETUP: Create the isolated worktree and branch.
        EXPLORATION: Worker explores the codebase for the task.
        PLANNING: Worker produces an implementation plan.
        PLAN_APPROVAL: Human approval gate; unbounded suspension.
        IMPLEMENTATION: Worker implements the plan (and any fix list).
        PRE_REVIEW_GATES: Cleanup and coverage checks, run concurrently.
        REVIEW_LOOP: Bounded review iterations until approval.
        DELIVERY_VALIDATION: Quality gate; failure yields a fix list.
        DOCS_UPDATE: Worker updates documentation.
        SHIP: Worker delivers up to the policy's stopping point.
    """

    POLICY_SELECTION = "policy-selection"
    TASK_DISCOVERY = "task-discovery"
    WORKTREE_SETUP = "worktree-setup"
    EXPLORATION = "exploration"
    PLANNING = "planning"
    PLAN_APPROVAL = "plan-approval"
    IMPLEMENTATION = "implementation"
    PRE_REVIEW_GATES = "pre-review-gates"
    REVIEW_LOOP = "review-loop"
    DELIVERY_VALIDATION = "delivery-validation"
    DOCS_UPDATE = "docs-update"
    SHIP = "ship"


CANONICAL_PHASE_ORDER: Tuple[Phase, ...] = (
    Phase.POLICY_SELECTION,
    Phase.TASK_DISCOVERY,
    Phase.WORKTREE_SETUP,
    Phase.EXPLORATION,
    Phase.PLANNING,
    Phase.PLAN_APPROVAL,
    Phase.IMPLEMENTATION,
    Phase.PRE_REVIEW_GATES,
    Phase.REVIEW_LOOP,
    Phase.DELIVERY_VALIDATION,
    Phase.DOCS_UPDATE,
    Phase.SHIP,
)


# Phase entered after each step completes. None means the instance has
# shipped. Every Phase is a key: the table is total by construction and
# test_resume_mapping_is_total guards it.
RESUME_PHASE_AFTER: Dict[Phase, Optional[Phase]] = {
    Phase.POLICY_SELECTION: Phase.TASK_DISCOVERY,
    Phase.TASK_DISCOVERY: Phase.WORKTREE_SETUP,
    Phase.WORKTREE_SETUP: Phase.EXPLORATION,
    Phase.EXPLORATION: Phase.PLANNING,
    Phase.PLANNING: Phase.PLAN_APPROVAL,
    Phase.PLAN_APPROVAL: Phase.IMPLEMENTATION,
    Phase.IMPLEMENTATION: Phase.PRE_REVIEW_GATES,
    Phase.PRE_REVIEW_GATES: Phase.REVIEW_LOOP,
    Phase.REVIEW_LOOP: Phase.DELIVERY_VALIDATION,
    Phase.DELIVERY_VALIDATION: Phase.DOCS_UPDATE,
    Phase.DOCS_UPDATE: Phase.SHIP,
    Phase.SHIP: None,
}


def parse_phase(step_name: str) -> Phase:
    """Map a persisted step name to its Phase.

    Raises:
        CorruptState: If the name is not a known step. Unknown names are
            never defaulted.
    """
    try:
        return Phase(step_name)
    except ValueError:
        raise CorruptState(f"Unknown step name {step_name!r}") from None


def next_phase_after(step_name: str) -> Optional[Phase]:
    """Return the phase entered after ``step_name`` completes.

    Returns:
        The next phase, or None if the step is the final one.

    Raises:
        CorruptState: If the step name is unknown.
    """
    return RESUME_PHASE_AFTER[parse_phase(step_name)]


class StepStatus(str, Enum):
    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"


class InstanceStatus(str, Enum):
    """Lifecycle status of a workflow instance.

    RUNNING and HALTED instances hold their registry claim; SHIPPED and
    ABORTED are terminal and have released it.
    """

    RUNNING = "running"
    HALTED = "halted"
    SHIPPED = "shipped"
    ABORTED = "aborted"


TERMINAL_STATUSES = frozenset({InstanceStatus.SHIPPED, InstanceStatus.ABORTED})


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CheckpointEntry(BaseModel):
    """One record in an instance's checkpoint log.

    Attributes:
        step: The phase this entry belongs to.
        status: started when the phase is entered, completed or failed
            when it is exited.
        timestamp: When the entry was written (UTC).
        attempt: 1-based attempt number of the phase.
        result: Optional phase result or failure details.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    step: Phase
    status: StepStatus
    timestamp: datetime = Field(default_factory=utc_now)
    attempt: int = Field(default=1, ge=1)
    result: Optional[Dict[str, Any]] = None


class InstanceRef(BaseModel):
    """Identifies the instance claiming a task."""

    worktree: str = Field(..., min_length=1)
    branch: str = Field(..., min_length=1)
    title: Optional[str] = None


class ClaimRecord(BaseModel):
    """One row of the shared task registry.

    At most one record exists per (source, id); the registry enforces
    this under its inter-process lock.

    Attributes:
        id: Task identifier within its source.
        source: Source kind of the task.
        title: Task title, for humans reading the registry.
        worktree: Worktree path of the owning instance.
        branch: Branch of the owning instance.
        claimed_at: When the claim was created (UTC).
        status: running or halted.
        last_activity_at: Last time the owning instance touched the claim.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str = Field(..., min_length=1)
    source: TaskSourceKind
    title: Optional[str] = None
    worktree: str = Field(..., min_length=1, alias="worktreePath")
    branch: str = Field(..., min_length=1)
    claimed_at: datetime = Field(default_factory=utc_now, alias="claimedAt")
    status: InstanceStatus = InstanceStatus.RUNNING
    last_activity_at: datetime = Field(
        default_factory=utc_now, alias="lastActivityAt"
    )

    @property
    def key(self) -> Tuple[str, str]:
        return (self.source.value, self.id)

    @property
    def instance_key(self) -> str:
        return instance_key(self.source, self.id)

    def describe(self) -> str:
        return f"{self.source.value}:{self.id} ({self.branch})"


_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def instance_key(source: TaskSourceKind, task_id: str) -> str:
    """Build a filesystem-safe key identifying one instance."""
    safe_id = _UNSAFE_KEY_CHARS.sub("_", task_id).strip("_") or "task"
    return f"{source.value}-{safe_id}"


class WorkflowInstance(BaseModel):
    """Runtime view of one workflow instance.

    Reconstructed from the registry claim and the checkpoint log; never
    persisted on its own.
    """

    task: Task
    policy: Policy
    worktree: str
    branch: str
    current_phase: Optional[Phase] = None
    status: InstanceStatus = InstanceStatus.RUNNING
    attempts: Dict[Phase, int] = Field(default_factory=dict)
    validation_retries: int = 0

    @property
    def key(self) -> str:
        return instance_key(self.task.source_kind, self.task.id)

    @property
    def resume_args(self) -> List[str]:
        return [self.branch]
