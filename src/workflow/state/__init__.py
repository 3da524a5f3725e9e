"""Workflow state machine and persistence.

Phase flow:
- policy-selection → task-discovery → worktree-setup → exploration
- → planning → plan-approval → implementation → pre-review-gates
- → review-loop → delivery-validation → docs-update → ship

State is persisted in two tiers: a shared task registry guarding against
duplicate claims, and a per-instance checkpoint log that drives resume.
Both are JSON documents rewritten atomically under inter-process file locks.
"""

from src.workflow.state.models import (
    CANONICAL_PHASE_ORDER,
    RESUME_PHASE_AFTER,
    CheckpointEntry,
    ClaimRecord,
    InstanceRef,
    InstanceStatus,
    Phase,
    StepStatus,
    WorkflowInstance,
    instance_key,
    next_phase_after,
)
from src.workflow.state.checkpoint import (
    CheckpointDocument,
    CheckpointLog,
    InvalidTransitionError,
    resume_phase,
    validate_phase_order,
)
from src.workflow.state.registry import TaskRegistry
from src.workflow.state.machine import WorkflowStateMachine

__all__ = [
    # Models
    "CANONICAL_PHASE_ORDER",
    "RESUME_PHASE_AFTER",
    "CheckpointEntry",
    "ClaimRecord",
    "InstanceRef",
    "InstanceStatus",
    "Phase",
    "StepStatus",
    "WorkflowInstance",
    "instance_key",
    "next_phase_after",
    # Checkpoint log
    "CheckpointDocument",
    "CheckpointLog",
    "InvalidTransitionError",
    "resume_phase",
    "validate_phase_order",
    # Registry
    "TaskRegistry",
    # State machine
    "WorkflowStateMachine",
]
