"""Per-instance checkpoint log.

Each workflow instance owns one JSON document recording every phase entry
and exit. The log is the source of truth for resume: the phase to continue
from is always derived from the last entry, never from memory.

Layout:

    {
      "task": {...},
      "policy": {...},
      "worktree": "...",
      "branch": "...",
      "steps": [{"step": "planning", "status": "started", ...}, ...],
      "workflow": {"lastActivityAt": ..., "currentPhase": ..., "status": ...},
      "resume": {"resumeFromStep": "implementation"}
    }

Logs live under the state directory rather than inside the worktree, so
they survive worktree removal on abort. When a task is claimed again, the
previous run's log is kept next to the new one as
``flow.<archivedAt>.json``.

Log validity is checked by walking the entries with a cursor into the
canonical phase order:
- a started or completed entry must name the phase at the cursor
- completed and failed entries must close a started entry for the same step
- completed advances the cursor
- a failed delivery-validation rewinds the cursor to implementation
- any other failure leaves the cursor in place
- nothing may follow the completion of ship
"""

import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from src.workflow.errors import CorruptState, WorkflowError
from src.workflow.sources.models import Policy, Task
from src.workflow.state.models import (
    CANONICAL_PHASE_ORDER,
    CheckpointEntry,
    InstanceStatus,
    Phase,
    StepStatus,
    next_phase_after,
    parse_phase,
)
from src.workflow.state.storage import locked, read_json_document, write_json_atomic


logger = logging.getLogger(__name__)


CHECKPOINT_FILENAME = "flow.json"
ARCHIVE_PATTERN = "flow.*.json"
INSTANCES_DIRNAME = "instances"


class InvalidTransitionError(WorkflowError):
    """Raised when appending an entry would break the phase order.

    Attributes:
        step: The phase of the rejected entry.
        status: The status of the rejected entry.
    """

    kind = "InvalidTransition"

    def __init__(self, step: Phase, status: StepStatus, reason: str):
        self.step = step
        self.status = status
        super().__init__(
            f"Cannot record {step.value} {status.value}: {reason}",
            phase=step.value,
        )


class WorkflowMeta(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    last_activity_at: Optional[datetime] = Field(default=None, alias="lastActivityAt")
    current_phase: Optional[Phase] = Field(default=None, alias="currentPhase")
    status: InstanceStatus = InstanceStatus.RUNNING


class ResumeMeta(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    resume_from_step: Optional[Phase] = Field(default=None, alias="resumeFromStep")


class CheckpointDocument(BaseModel):
    """Validated view of a checkpoint log document."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    task: Task
    policy: Policy
    worktree: str
    branch: str
    steps: List[CheckpointEntry] = Field(default_factory=list)
    workflow: WorkflowMeta = Field(default_factory=WorkflowMeta)
    resume: ResumeMeta = Field(default_factory=ResumeMeta)

    @property
    def status(self) -> InstanceStatus:
        return self.workflow.status

    @property
    def resume_from(self) -> Optional[Phase]:
        return resume_phase(self.steps)


def _order_violation(
    entries: Sequence[CheckpointEntry],
) -> Optional[str]:
    """Return a description of the first ordering violation, if any."""
    cursor = 0
    open_step: Optional[Phase] = None
    shipped = False

    for index, entry in enumerate(entries):
        if shipped:
            return f"entry {index} follows the completion of ship"

        expected = CANONICAL_PHASE_ORDER[cursor]

        if entry.status == StepStatus.STARTED:
            if entry.step != expected:
                return f"entry {index} starts {entry.step.value}, expected {expected.value}"
            open_step = entry.step
            continue

        if open_step != entry.step:
            return f"entry {index} closes {entry.step.value} which was not started"
        open_step = None

        if entry.status == StepStatus.COMPLETED:
            if entry.step == Phase.SHIP:
                shipped = True
            else:
                cursor += 1
        elif entry.step == Phase.DELIVERY_VALIDATION:
            cursor = CANONICAL_PHASE_ORDER.index(Phase.IMPLEMENTATION)

    return None


def validate_phase_order(entries: Sequence[CheckpointEntry]) -> bool:
    """Return True if the entries form a valid phase history."""
    return _order_violation(entries) is None


def resume_phase(entries: Sequence[CheckpointEntry]) -> Optional[Phase]:
    """Derive the phase to resume from, using only the last entry.

    Returns:
        The phase to enter next, or None if the instance has shipped.

    Raises:
        CorruptState: If the last entry names an unknown step.
    """
    if not entries:
        return CANONICAL_PHASE_ORDER[0]

    last = entries[-1]
    if last.status == StepStatus.COMPLETED:
        return next_phase_after(last.step.value)

    step = parse_phase(last.step.value)
    if last.status == StepStatus.FAILED and step == Phase.DELIVERY_VALIDATION:
        return Phase.IMPLEMENTATION
    return step


def attempts_from_entries(entries: Sequence[CheckpointEntry]) -> Dict[Phase, int]:
    """Count how many times each phase has been entered."""
    attempts: Dict[Phase, int] = {}
    for entry in entries:
        if entry.status == StepStatus.STARTED:
            attempts[entry.step] = attempts.get(entry.step, 0) + 1
    return attempts


def validation_retries_from_entries(entries: Sequence[CheckpointEntry]) -> int:
    """Count failed delivery validations, i.e. rewinds to implementation."""
    return sum(
        1
        for entry in entries
        if entry.step == Phase.DELIVERY_VALIDATION
        and entry.status == StepStatus.FAILED
    )


class CheckpointLog:
    """Append-only phase log for one workflow instance.

    Every append rewrites the whole document under the instance's lock
    and replaces it atomically; an interrupted append leaves the previous
    document intact.

    Attributes:
        path: Location of the log document.
        lock_timeout: Seconds to wait for the log lock.

    Example:
        >>> log = CheckpointLog.for_instance(state_dir, "github-7")
        >>> log.initialize(task, policy, worktree="../wt/fix-7", branch="task/fix-7")
        >>> log.append_step(Phase.POLICY_SELECTION, StepStatus.STARTED)
    """

    def __init__(self, path: Path, lock_timeout: float = 10.0):
        self.path = Path(path)
        self.lock_timeout = lock_timeout

    @classmethod
    def for_instance(
        cls,
        state_dir: Path,
        key: str,
        lock_timeout: float = 10.0,
    ) -> "CheckpointLog":
        path = Path(state_dir) / INSTANCES_DIRNAME / key / CHECKPOINT_FILENAME
        return cls(path, lock_timeout=lock_timeout)

    def exists(self) -> bool:
        return self.path.exists()

    def archived(self) -> List[Path]:
        """Logs of earlier runs of the same task, oldest first."""
        return sorted(self.path.parent.glob(ARCHIVE_PATTERN))

    def _archive_previous(self, now: datetime) -> Path:
        stamp = now.strftime("%Y%m%dT%H%M%S%fZ")
        target = self.path.with_name(f"{self.path.stem}.{stamp}.json")
        suffix = 1
        while target.exists():
            target = self.path.with_name(f"{self.path.stem}.{stamp}-{suffix}.json")
            suffix += 1
        os.replace(self.path, target)
        return target

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def _read_raw(self) -> Dict[str, Any]:
        raw = read_json_document(self.path)
        if raw is None:
            raise CorruptState("Checkpoint log is missing", path=str(self.path))
        return raw

    def _validate(self, raw: Dict[str, Any]) -> CheckpointDocument:
        steps = raw.get("steps", [])
        if not isinstance(steps, list):
            raise CorruptState("'steps' must be a list", path=str(self.path))
        for index, entry in enumerate(steps):
            if not isinstance(entry, dict):
                raise CorruptState(
                    f"Step entry {index} is not an object", path=str(self.path)
                )
            parse_phase(str(entry.get("step")))

        try:
            document = CheckpointDocument.model_validate(raw)
        except ValidationError as e:
            raise CorruptState(
                f"Checkpoint log is invalid: {e.error_count()} errors",
                path=str(self.path),
            ) from e

        violation = _order_violation(document.steps)
        if violation:
            raise CorruptState(
                f"Checkpoint log out of order: {violation}", path=str(self.path)
            )
        return document

    def load(self) -> CheckpointDocument:
        """Load and validate the log.

        Raises:
            CorruptState: If the log is missing, unreadable, structurally
                invalid, names an unknown step or is out of order.
        """
        return self._validate(self._read_raw())

    def entries(self) -> List[CheckpointEntry]:
        return self.load().steps

    def last_step(self) -> Optional[CheckpointEntry]:
        steps = self.entries()
        return steps[-1] if steps else None

    def read_status(self) -> InstanceStatus:
        return self.load().status

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    def initialize(
        self,
        task: Task,
        policy: Policy,
        worktree: str,
        branch: str,
    ) -> CheckpointDocument:
        """Create a fresh log for a newly claimed task.

        A previous log at the same location (from an aborted or shipped
        run of the same task) is archived first, never overwritten.
        """
        now = datetime.now(timezone.utc)
        document = CheckpointDocument(
            task=task,
            policy=policy,
            worktree=worktree,
            branch=branch,
            steps=[],
            workflow=WorkflowMeta(
                last_activity_at=now,
                current_phase=None,
                status=InstanceStatus.RUNNING,
            ),
            resume=ResumeMeta(resume_from_step=CANONICAL_PHASE_ORDER[0]),
        )
        with locked(self.path, self.lock_timeout):
            if self.path.exists():
                archived = self._archive_previous(now)
                logger.info(
                    "Archived previous checkpoint log",
                    extra={"path": str(self.path), "archived": str(archived)},
                )
            write_json_atomic(
                self.path, document.model_dump(mode="json", by_alias=True)
            )

        logger.info(
            "Initialized checkpoint log",
            extra={"path": str(self.path), "task_id": task.id, "branch": branch},
        )
        return document

    def append_step(
        self,
        step: Phase,
        status: StepStatus,
        result: Optional[Dict[str, Any]] = None,
        attempt: Optional[int] = None,
    ) -> CheckpointEntry:
        """Append one entry, all-or-nothing.

        Args:
            step: Phase the entry belongs to.
            status: started, completed or failed.
            result: Optional phase result or failure details.
            attempt: Attempt number; derived from the log when omitted.

        Returns:
            The appended entry.

        Raises:
            InvalidTransitionError: If the entry would break the phase order.
            CorruptState: If the existing log is invalid.
        """
        with locked(self.path, self.lock_timeout):
            raw = self._read_raw()
            document = self._validate(raw)
            steps = document.steps

            if attempt is None:
                started = attempts_from_entries(steps).get(step, 0)
                attempt = started + 1 if status == StepStatus.STARTED else max(started, 1)

            entry = CheckpointEntry(
                step=step,
                status=status,
                timestamp=datetime.now(timezone.utc),
                attempt=attempt,
                result=result,
            )

            violation = _order_violation(steps + [entry])
            if violation:
                raise InvalidTransitionError(step, status, violation)

            raw_steps = list(raw.get("steps", []))
            raw_steps.append(entry.model_dump(mode="json", by_alias=True, exclude_none=True))
            raw["steps"] = raw_steps

            workflow = dict(raw.get("workflow") or {})
            workflow["lastActivityAt"] = entry.timestamp.isoformat()
            workflow["currentPhase"] = step.value
            raw["workflow"] = workflow

            next_phase = resume_phase(steps + [entry])
            resume = dict(raw.get("resume") or {})
            resume["resumeFromStep"] = next_phase.value if next_phase else None
            raw["resume"] = resume

            write_json_atomic(self.path, raw)

        logger.debug(
            "Checkpoint appended",
            extra={
                "path": str(self.path),
                "step": step.value,
                "status": status.value,
                "attempt": attempt,
            },
        )
        return entry

    def mark(self, status: InstanceStatus) -> None:
        """Set the instance status recorded in the log.

        Raises:
            CorruptState: If the log is missing or invalid.
        """
        with locked(self.path, self.lock_timeout):
            raw = self._read_raw()
            self._validate(raw)
            workflow = dict(raw.get("workflow") or {})
            workflow["status"] = status.value
            workflow["lastActivityAt"] = datetime.now(timezone.utc).isoformat()
            raw["workflow"] = workflow
            write_json_atomic(self.path, raw)

        logger.info(
            "Checkpoint log marked",
            extra={"path": str(self.path), "status": status.value},
        )
