"""Task source adapter interface and record normalization.

Backends return loosely-typed records; adapters normalize them into Task
at this boundary so nothing past it ever sees a backend payload. Records
missing an id, title, labels or creation time are skipped with a warning
rather than failing the whole fetch.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, runtime_checkable

from pydantic import ValidationError

from src.workflow.errors import SourceUnavailable
from src.workflow.sources.models import OpenChange, Task, TaskSourceKind


logger = logging.getLogger(__name__)


@runtime_checkable
class TaskSourceAdapter(Protocol):
    """Fetches candidate tasks from one kind of source."""

    async def fetch(self, config: Any) -> List[Task]:
        """Return normalized candidate tasks for ``config``.

        Raises:
            SourceUnavailable: If the backend cannot be reached or read.
        """
        ...


@runtime_checkable
class ChangeSource(Protocol):
    """Lists open pull/merge requests for in-flight detection."""

    async def list_open_changes(self, config: Any) -> List[OpenChange]:
        ...


def _label_names(raw_labels: Any) -> Optional[List[str]]:
    if not isinstance(raw_labels, list):
        return None
    names: List[str] = []
    for label in raw_labels:
        if isinstance(label, str):
            names.append(label)
        elif isinstance(label, Mapping) and isinstance(label.get("name"), str):
            names.append(label["name"])
        else:
            return None
    return names


def _first(raw: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if raw.get(key) is not None:
            return raw[key]
    return None


def normalize_record(
    raw: Mapping[str, Any],
    kind: TaskSourceKind,
    default_ref: str = "",
) -> Optional[Task]:
    """Normalize one backend record into a Task.

    Accepts the common spellings backends use (``number``/``iid``/``id``,
    ``createdAt``/``created_at``, labels as names or ``{"name": ...}``).

    Returns:
        The Task, or None if the record is malformed.
    """
    if not isinstance(raw, Mapping):
        logger.warning(
            "Skipping non-object task record",
            extra={"source": kind.value, "record_type": type(raw).__name__},
        )
        return None

    task_id = _first(raw, "id", "number", "iid")
    labels = _label_names(_first(raw, "labels"))
    created_at = _first(raw, "createdAt", "created_at")

    missing = []
    if task_id is None or task_id == "":
        missing.append("id")
    if not raw.get("title"):
        missing.append("title")
    if labels is None:
        missing.append("labels")
    if not created_at:
        missing.append("createdAt")
    if missing:
        logger.warning(
            "Skipping malformed task record",
            extra={"source": kind.value, "missing_fields": missing},
        )
        return None

    try:
        return Task(
            id=task_id,
            title=raw["title"],
            body=raw.get("body") or raw.get("description") or "",
            labels=labels,
            created_at=created_at,
            source_ref=_first(raw, "sourceRef", "url", "html_url", "web_url") or default_ref,
            source_kind=kind,
        )
    except ValidationError as e:
        logger.warning(
            "Skipping invalid task record",
            extra={"source": kind.value, "error_count": e.error_count()},
        )
        return None


def normalize_records(
    records: Iterable[Any],
    kind: TaskSourceKind,
    default_ref: str = "",
) -> List[Task]:
    tasks = []
    for raw in records:
        task = normalize_record(raw, kind, default_ref)
        if task is not None:
            tasks.append(task)
    return tasks


def file_timestamp(mtime: float) -> datetime:
    return datetime.fromtimestamp(mtime, tz=timezone.utc)


class SourceAdapterRegistry:
    """Dispatches a source configuration to its adapter.

    The ``other`` kind is free text with no adapter; asking for it raises
    SourceUnavailable, as does any kind nobody registered.
    """

    def __init__(self) -> None:
        self._adapters: Dict[TaskSourceKind, TaskSourceAdapter] = {}
        self._change_sources: Dict[TaskSourceKind, ChangeSource] = {}

    def register(
        self,
        kind: TaskSourceKind,
        adapter: TaskSourceAdapter,
        change_source: Optional[ChangeSource] = None,
    ) -> None:
        self._adapters[kind] = adapter
        if change_source is not None:
            self._change_sources[kind] = change_source

    def for_config(self, config: Any) -> TaskSourceAdapter:
        kind = config.kind
        adapter = self._adapters.get(kind)
        if adapter is None:
            if kind == TaskSourceKind.OTHER:
                raise SourceUnavailable(
                    "Free-text sources cannot be fetched automatically: "
                    f"{getattr(config, 'description', '')!r}",
                    source=kind.value,
                )
            raise SourceUnavailable(
                f"No adapter registered for source {kind.value}",
                source=kind.value,
            )
        return adapter

    def change_source_for(self, config: Any) -> Optional[ChangeSource]:
        return self._change_sources.get(config.kind)

    @property
    def kinds(self) -> List[TaskSourceKind]:
        return list(self._adapters)
