"""Error taxonomy for the workflow engine.

Every error raised across a component boundary derives from WorkflowError
and carries a machine-readable kind, the phase it occurred in (if any) and
the exact arguments that resume the instance. The rendered message always
includes all three so user-visible failures are actionable.

Kinds:
- SourceUnavailable: a task source could not be fetched (recoverable)
- AlreadyClaimed: another instance owns the task (choose another task)
- CorruptState: a persisted document failed structural validation (fatal)
- AmbiguousResume: more than one instance matches a resume target (fatal)
- ResumeTargetNotFound: no instance matches a resume target
- ValidationFailed: a quality gate failed (recoverable by backward retry)
- IterationLimitExceeded: a bounded loop ran out of iterations (fatal)
- PhaseFailed: a worker reported or raised a failure (halts the machine)
- PlanRejected: the approval gate rejected the plan (halts the machine)
- LockTimeout: the shared registry lock could not be acquired
- PolicySelectionError: policy responses could not be turned into a Policy
- WorktreeError: the isolated worktree could not be created or removed
"""

from typing import Any, Dict, List, Optional, Sequence


class WorkflowError(Exception):
    """Base class for all workflow engine errors.

    Attributes:
        kind: Error kind name, stable across releases.
        message: Human-readable description without kind/phase decoration.
        phase: Phase value the error occurred in, if any.
        resume_args: Arguments that resume the affected instance.
        details: Structured context recorded alongside the failure.
        recoverable: Whether the caller may retry without human action.
    """

    kind: str = "WorkflowError"
    recoverable: bool = False

    def __init__(
        self,
        message: str,
        phase: Optional[str] = None,
        resume_args: Optional[Sequence[str]] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.phase = phase
        self.resume_args: List[str] = list(resume_args or [])
        self.details: Dict[str, Any] = dict(details or {})
        super().__init__(self.render())

    def render(self) -> str:
        """Render the kind, phase and resume command into one line."""
        parts = [f"{self.kind}: {self.message}"]
        if self.phase:
            parts.append(f"phase={self.phase}")
        if self.resume_args:
            parts.append(f"resume with: resume {' '.join(self.resume_args)}")
        return " | ".join(parts)

    def with_context(
        self,
        phase: Optional[str] = None,
        resume_args: Optional[Sequence[str]] = None,
    ) -> "WorkflowError":
        """Attach phase and resume arguments after the fact.

        Errors raised deep inside a worker call do not know which instance
        they belong to; the state machine fills this in before surfacing.
        """
        if phase and not self.phase:
            self.phase = phase
        if resume_args and not self.resume_args:
            self.resume_args = list(resume_args)
        self.args = (self.render(),)
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.kind,
            "message": self.message,
            "phase": self.phase,
            "resume": self.resume_args,
            "details": self.details,
        }


class SourceUnavailable(WorkflowError):
    kind = "SourceUnavailable"
    recoverable = True

    def __init__(self, message: str, source: Optional[str] = None, **kwargs: Any):
        self.source = source
        super().__init__(message, **kwargs)


class AlreadyClaimed(WorkflowError):
    kind = "AlreadyClaimed"
    recoverable = True

    def __init__(
        self,
        task_id: str,
        source: str,
        owner_branch: Optional[str] = None,
        owner_worktree: Optional[str] = None,
    ):
        self.task_id = task_id
        self.source = source
        self.owner_branch = owner_branch
        self.owner_worktree = owner_worktree
        message = f"Task {source}:{task_id} is already claimed"
        if owner_branch:
            message += f" by branch {owner_branch}"
        if owner_worktree:
            message += f" ({owner_worktree})"
        super().__init__(message)


class CorruptState(WorkflowError):
    kind = "CorruptState"

    def __init__(self, message: str, path: Optional[str] = None, **kwargs: Any):
        self.path = path
        if path:
            message = f"{message} [{path}]"
        super().__init__(message, **kwargs)


class AmbiguousResume(WorkflowError):
    kind = "AmbiguousResume"

    def __init__(self, target: Optional[str], candidates: Sequence[str]):
        self.target = target
        self.candidates = list(candidates)
        subject = f"'{target}'" if target else "no argument"
        message = (
            f"Resume target {subject} matches {len(self.candidates)} active "
            f"instances: {', '.join(self.candidates)}"
        )
        super().__init__(message, details={"candidates": self.candidates})


class ResumeTargetNotFound(WorkflowError):
    kind = "ResumeTargetNotFound"

    def __init__(self, target: Optional[str]):
        self.target = target
        if target:
            message = f"No active instance matches '{target}'"
        else:
            message = "No active instances to resume"
        super().__init__(message)


class ValidationFailed(WorkflowError):
    kind = "ValidationFailed"
    recoverable = True

    def __init__(self, fixes: Sequence[Any], **kwargs: Any):
        self.fixes = list(fixes)
        super().__init__(
            f"Delivery validation failed with {len(self.fixes)} required fixes",
            details={"fixes": self.fixes},
            **kwargs,
        )


class IterationLimitExceeded(WorkflowError):
    kind = "IterationLimitExceeded"

    def __init__(self, limit: int, phase: str, **kwargs: Any):
        self.limit = limit
        super().__init__(
            f"Exceeded {limit} iterations without success; human intervention required",
            phase=phase,
            **kwargs,
        )


class PhaseFailed(WorkflowError):
    kind = "PhaseFailed"


class PlanRejected(WorkflowError):
    kind = "PlanRejected"


class LockTimeout(WorkflowError):
    kind = "LockTimeout"
    recoverable = True


class PolicySelectionError(WorkflowError):
    kind = "PolicySelectionError"
    recoverable = True


class WorktreeError(WorkflowError):
    kind = "WorktreeError"
