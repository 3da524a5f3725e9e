"""In-flight detection.

A task is in flight when an open pull/merge request already works on it.
The heuristic below matches on branch names and descriptions, so it may
over- or under-match; the registry remains the only hard guarantee
against duplicate work. Detection is advisory and fails open.
"""

import logging
import re
from typing import Any, Iterable, List, Optional, Protocol, Set, runtime_checkable

from src.workflow.sources.adapter import ChangeSource
from src.workflow.sources.models import OpenChange, Task


logger = logging.getLogger(__name__)


@runtime_checkable
class InFlightDetector(Protocol):
    async def in_flight_ids(self, config: Any, candidates: List[Task]) -> Set[str]:
        """Return ids of candidates that already have an open change."""
        ...


def _closing_reference(task_id: str) -> "re.Pattern[str]":
    return re.compile(
        rf"\b(?:close[sd]?|fix(?:e[sd])?|resolve[sd]?)\s+#{re.escape(task_id)}\b",
        re.IGNORECASE,
    )


def change_mentions(change: OpenChange, task_id: str) -> bool:
    """Return True if an open change appears to address ``task_id``."""
    if change.branch.endswith(f"-{task_id}"):
        return True
    if _closing_reference(task_id).search(change.body or ""):
        return True
    return f"(#{task_id})" in (change.title or "")


def match_in_flight(changes: Iterable[OpenChange], candidates: Iterable[Task]) -> Set[str]:
    changes = list(changes)
    return {
        task.id
        for task in candidates
        if any(change_mentions(change, task.id) for change in changes)
    }


class HeuristicInFlightDetector:
    """Matches candidates against a source's open pull/merge requests.

    Attributes:
        change_source: Lists open changes; None disables detection.
    """

    def __init__(self, change_source: Optional[ChangeSource] = None):
        self.change_source = change_source

    async def in_flight_ids(self, config: Any, candidates: List[Task]) -> Set[str]:
        if self.change_source is None or not candidates:
            return set()
        try:
            changes = await self.change_source.list_open_changes(config)
        except Exception as e:
            logger.warning(
                "In-flight detection unavailable, continuing without it",
                extra={"source": config.kind.value, "error": str(e)},
            )
            return set()

        ids = match_in_flight(changes, candidates)
        if ids:
            logger.info(
                "Excluding in-flight tasks",
                extra={"source": config.kind.value, "task_ids": sorted(ids)},
            )
        return ids
