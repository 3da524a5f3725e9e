"""Local markdown checklist source.

Reads tasks from the first of PLAN.md, tasks.md or TODO.md at the
repository root, or from a configured path. Each unchecked item is a task:

    - [ ] Fix crash on empty config [bug, p1]
      Optional indented description lines become the body.

A trailing ``[a, b]`` group is the label list. The id is a short stable
hash of the item text, so it survives edits elsewhere in the file.
"""

import hashlib
import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from src.workflow.errors import SourceUnavailable
from src.workflow.sources.adapter import file_timestamp, normalize_records
from src.workflow.sources.models import LocalSourceConfig, Task, TaskSourceKind


logger = logging.getLogger(__name__)


DEFAULT_TASK_FILES = ("PLAN.md", "tasks.md", "TODO.md")

_UNCHECKED_ITEM = re.compile(r"^(?P<indent>\s*)[-*+]\s+\[ \]\s+(?P<text>.+?)\s*$")
_ANY_ITEM = re.compile(r"^\s*[-*+]\s+")
_TRAILING_LABELS = re.compile(r"\s*\[(?P<labels>[^\[\]]*)\]\s*$")


def task_id_for(text: str) -> str:
    return hashlib.sha1(text.strip().encode("utf-8")).hexdigest()[:8]


def parse_checklist(content: str, created_at: Any, ref: str) -> List[Dict[str, Any]]:
    """Turn unchecked checklist items into raw task records."""
    records: List[Dict[str, Any]] = []
    lines = content.splitlines()
    index = 0
    while index < len(lines):
        match = _UNCHECKED_ITEM.match(lines[index])
        if not match:
            index += 1
            continue

        text = match.group("text")
        labels: List[str] = []
        label_match = _TRAILING_LABELS.search(text)
        if label_match:
            labels = [
                label.strip()
                for label in label_match.group("labels").split(",")
                if label.strip()
            ]
            text = text[: label_match.start()].rstrip()

        indent = len(match.group("indent"))
        body_lines: List[str] = []
        line_number = index + 1
        index += 1
        while index < len(lines):
            line = lines[index]
            if not line.strip():
                break
            line_indent = len(line) - len(line.lstrip())
            if line_indent <= indent or _ANY_ITEM.match(line):
                break
            body_lines.append(line.strip())
            index += 1

        if not text:
            continue
        records.append(
            {
                "id": task_id_for(text),
                "title": text,
                "body": "\n".join(body_lines),
                "labels": labels,
                "createdAt": created_at,
                "url": f"{ref}:{line_number}",
            }
        )
    return records


def read_checklist_file(path: Path, kind: TaskSourceKind) -> List[Task]:
    """Read a checklist file into tasks.

    Raises:
        SourceUnavailable: If the file cannot be read.
    """
    try:
        content = path.read_text(encoding="utf-8")
        mtime = path.stat().st_mtime
    except OSError as e:
        raise SourceUnavailable(
            f"Cannot read task file {path}: {e}", source=kind.value
        ) from e
    records = parse_checklist(content, file_timestamp(mtime), str(path))
    return normalize_records(records, kind, default_ref=str(path))


class LocalTasksAdapter:
    """Unchecked items of a markdown checklist in the repository."""

    def __init__(self, repo_root: Path, candidates: Sequence[str] = DEFAULT_TASK_FILES):
        self.repo_root = Path(repo_root)
        self.candidates = tuple(candidates)

    def locate(self, config: LocalSourceConfig) -> Optional[Path]:
        if config.path:
            path = Path(config.path)
            if not path.is_absolute():
                path = self.repo_root / path
            return path if path.is_file() else None
        for name in self.candidates:
            path = self.repo_root / name
            if path.is_file():
                return path
        return None

    async def fetch(self, config: LocalSourceConfig) -> List[Task]:
        path = self.locate(config)
        if path is None:
            wanted = config.path or ", ".join(self.candidates)
            raise SourceUnavailable(
                f"No local task file found ({wanted})",
                source=TaskSourceKind.LOCAL.value,
            )
        tasks = read_checklist_file(path, TaskSourceKind.LOCAL)
        logger.info(
            "Read local tasks", extra={"task_file": str(path), "count": len(tasks)}
        )
        return tasks
