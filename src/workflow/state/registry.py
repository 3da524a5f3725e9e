"""Shared task registry.

The registry is a single JSON document listing every task currently claimed
by a workflow instance in this repository:

    {"tasks": [{"id": "7", "source": "github", "branch": ..., ...}]}

It is the only resource shared between concurrently running instances.
Every mutation is a read-modify-write performed while holding the
inter-process lock, finished by an atomic replace, so two instances racing
to claim the same task see exactly one success.

Unknown top-level keys and unknown per-record fields are carried through
rewrites untouched.
"""

import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple

from pydantic import ValidationError

from src.workflow.errors import (
    AlreadyClaimed,
    AmbiguousResume,
    CorruptState,
    ResumeTargetNotFound,
)
from src.workflow.sources.models import TaskSourceKind
from src.workflow.state.models import ClaimRecord, InstanceRef, InstanceStatus
from src.workflow.state.storage import locked, read_json_document, write_json_atomic


logger = logging.getLogger(__name__)


REGISTRY_FILENAME = "tasks.json"


class TaskRegistry:
    """File-backed registry of claimed tasks.

    Attributes:
        path: Location of the registry document.
        lock_timeout: Seconds to wait for the inter-process lock.

    Example:
        >>> registry = TaskRegistry(Path(".workflow/tasks.json"))
        >>> record = registry.claim("7", TaskSourceKind.GITHUB,
        ...     InstanceRef(worktree="../wt/fix-7", branch="task/fix-7"))
        >>> registry.release("7", TaskSourceKind.GITHUB)
        True
    """

    def __init__(self, path: Path, lock_timeout: float = 10.0):
        self.path = Path(path)
        self.lock_timeout = lock_timeout

    @classmethod
    def for_state_dir(cls, state_dir: Path, lock_timeout: float = 10.0) -> "TaskRegistry":
        return cls(Path(state_dir) / REGISTRY_FILENAME, lock_timeout=lock_timeout)

    # ------------------------------------------------------------------
    # Document handling
    # ------------------------------------------------------------------

    def _read(self) -> Tuple[Dict[str, Any], List[ClaimRecord]]:
        """Load and validate the registry document.

        Raises:
            CorruptState: If the document is structurally invalid.
        """
        document = read_json_document(self.path)
        if document is None:
            return {"tasks": []}, []

        raw_tasks = document.get("tasks", [])
        if not isinstance(raw_tasks, list):
            raise CorruptState("'tasks' must be a list", path=str(self.path))

        records: List[ClaimRecord] = []
        seen: Set[Tuple[str, str]] = set()
        for index, raw in enumerate(raw_tasks):
            if not isinstance(raw, dict):
                raise CorruptState(
                    f"Registry entry {index} is not an object", path=str(self.path)
                )
            try:
                record = ClaimRecord.model_validate(raw)
            except ValidationError as e:
                raise CorruptState(
                    f"Registry entry {index} is invalid: {e.error_count()} errors",
                    path=str(self.path),
                ) from e
            if record.key in seen:
                raise CorruptState(
                    f"Duplicate claim for {record.source.value}:{record.id}",
                    path=str(self.path),
                )
            seen.add(record.key)
            records.append(record)

        return document, records

    def _write(self, document: Dict[str, Any], records: List[ClaimRecord]) -> None:
        payload = dict(document)
        payload["tasks"] = [
            record.model_dump(mode="json", by_alias=True) for record in records
        ]
        write_json_atomic(self.path, payload)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def claim(
        self,
        task_id: str,
        source: TaskSourceKind,
        instance: InstanceRef,
    ) -> ClaimRecord:
        """Claim a task for one workflow instance.

        Args:
            task_id: Task identifier within its source.
            source: Source kind of the task.
            instance: Worktree and branch of the claiming instance.

        Returns:
            The new claim record.

        Raises:
            AlreadyClaimed: If a record for (source, task_id) already exists.
            CorruptState: If the registry document is invalid.
            LockTimeout: If the registry lock could not be acquired.
        """
        with locked(self.path, self.lock_timeout):
            document, records = self._read()
            for existing in records:
                if existing.key == (source.value, task_id):
                    logger.info(
                        "Task already claimed",
                        extra={
                            "task_id": task_id,
                            "source": source.value,
                            "owner_branch": existing.branch,
                        },
                    )
                    raise AlreadyClaimed(
                        task_id,
                        source.value,
                        owner_branch=existing.branch,
                        owner_worktree=existing.worktree,
                    )

            now = datetime.now(timezone.utc)
            record = ClaimRecord(
                id=task_id,
                source=source,
                title=instance.title,
                worktree=instance.worktree,
                branch=instance.branch,
                claimed_at=now,
                status=InstanceStatus.RUNNING,
                last_activity_at=now,
            )
            records.append(record)
            self._write(document, records)

        logger.info(
            "Claimed task",
            extra={
                "task_id": task_id,
                "source": source.value,
                "branch": instance.branch,
                "worktree": instance.worktree,
            },
        )
        return record

    def release(self, task_id: str, source: TaskSourceKind) -> bool:
        """Remove the claim for a task.

        Returns:
            True if a claim was removed, False if none existed.
        """
        with locked(self.path, self.lock_timeout):
            document, records = self._read()
            remaining = [r for r in records if r.key != (source.value, task_id)]
            if len(remaining) == len(records):
                return False
            self._write(document, remaining)

        logger.info(
            "Released task",
            extra={"task_id": task_id, "source": source.value},
        )
        return True

    def update_status(
        self,
        task_id: str,
        source: TaskSourceKind,
        status: InstanceStatus,
    ) -> Optional[ClaimRecord]:
        """Set a claim's status and touch its activity timestamp.

        Returns:
            The updated record, or None if the task is not claimed.
        """
        with locked(self.path, self.lock_timeout):
            document, records = self._read()
            for index, record in enumerate(records):
                if record.key == (source.value, task_id):
                    updated = record.model_copy(
                        update={
                            "status": status,
                            "last_activity_at": datetime.now(timezone.utc),
                        }
                    )
                    records[index] = updated
                    self._write(document, records)
                    return updated
        return None

    # ------------------------------------------------------------------
    # Queries (never mutate)
    # ------------------------------------------------------------------

    def list(self) -> List[ClaimRecord]:
        """Return every claim, in registry order."""
        _, records = self._read()
        return records

    def get(self, task_id: str, source: TaskSourceKind) -> Optional[ClaimRecord]:
        for record in self.list():
            if record.key == (source.value, task_id):
                return record
        return None

    def claimed_ids(self, source: Optional[TaskSourceKind] = None) -> Set[str]:
        """Ids of claimed tasks, optionally restricted to one source kind."""
        return {
            record.id
            for record in self.list()
            if source is None or record.source == source
        }

    def resolve_resume(self, target: Optional[str] = None) -> ClaimRecord:
        """Resolve a resume argument to exactly one claim.

        Matching runs at three levels: exact task id, then branch (exact or
        ending in ``-<target>`` / ``/<target>``), then an existing path equal
        to a claim's worktree. A tie across any of the levels is a hard
        failure; no level takes precedence over another.

        Args:
            target: Task id, branch name or worktree path. None resolves the
                only active claim.

        Raises:
            AmbiguousResume: If more than one distinct claim matches.
            ResumeTargetNotFound: If no claim matches.
        """
        records = self.list()

        if target is None:
            if not records:
                raise ResumeTargetNotFound(None)
            if len(records) > 1:
                raise AmbiguousResume(None, [r.describe() for r in records])
            return records[0]

        matches: Dict[Tuple[str, str], ClaimRecord] = {}

        for record in records:
            if record.id == target:
                matches[record.key] = record

        for record in records:
            branch = record.branch
            if (
                branch == target
                or branch.endswith("-" + target)
                or branch.endswith("/" + target)
            ):
                matches[record.key] = record

        if os.path.exists(target):
            resolved = _normalize_path(target)
            for record in records:
                if _normalize_path(record.worktree) == resolved:
                    matches[record.key] = record

        if not matches:
            raise ResumeTargetNotFound(target)
        if len(matches) > 1:
            candidates = [r.describe() for r in matches.values()]
            logger.warning(
                "Ambiguous resume target",
                extra={"target": target, "candidates": candidates},
            )
            raise AmbiguousResume(target, candidates)
        return next(iter(matches.values()))


def _normalize_path(path: str) -> str:
    return os.path.normcase(os.path.realpath(path))
