"""User-defined task sources.

- file: a JSON document (a list of records, or ``{"tasks": [...]}``) or a
  markdown checklist, read from the given path
- cli: a command whose stdout is such a JSON document
- mcp / skill: reachable only from inside an agent session; the engine
  reports them as unavailable
"""

import asyncio
import json
import logging
import shlex
from pathlib import Path
from typing import Any, List

from src.workflow.errors import SourceUnavailable
from src.workflow.sources.adapter import normalize_records
from src.workflow.sources.local import read_checklist_file
from src.workflow.sources.models import CustomSourceConfig, CustomSourceType, Task, TaskSourceKind


logger = logging.getLogger(__name__)

CLI_TIMEOUT_SECONDS = 60


def _records_from_document(document: Any, origin: str) -> List[Any]:
    if isinstance(document, dict) and isinstance(document.get("tasks"), list):
        return document["tasks"]
    if isinstance(document, list):
        return document
    raise SourceUnavailable(
        f"{origin} did not produce a task list", source=TaskSourceKind.CUSTOM.value
    )


class CustomSourceAdapter:
    """Fetches tasks from a custom file or CLI tool."""

    def __init__(self, repo_root: Path, timeout_seconds: int = CLI_TIMEOUT_SECONDS):
        self.repo_root = Path(repo_root)
        self.timeout_seconds = timeout_seconds

    async def fetch(self, config: CustomSourceConfig) -> List[Task]:
        if config.type == CustomSourceType.FILE:
            tasks = self._read_file(config.tool)
        elif config.type == CustomSourceType.CLI:
            tasks = await self._run_cli(config.tool)
        else:
            raise SourceUnavailable(
                f"{config.type.value} source {config.tool!r} is only reachable "
                "from an agent session",
                source=TaskSourceKind.CUSTOM.value,
            )
        logger.info(
            "Fetched custom tasks",
            extra={"custom_type": config.type.value, "tool": config.tool, "count": len(tasks)},
        )
        return tasks

    def _read_file(self, tool: str) -> List[Task]:
        path = Path(tool)
        if not path.is_absolute():
            path = self.repo_root / path
        if not path.is_file():
            raise SourceUnavailable(
                f"Custom task file not found: {path}", source=TaskSourceKind.CUSTOM.value
            )

        if path.suffix.lower() != ".json":
            return read_checklist_file(path, TaskSourceKind.CUSTOM)

        try:
            document = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise SourceUnavailable(
                f"Cannot read custom task file {path}: {e}",
                source=TaskSourceKind.CUSTOM.value,
            ) from e
        records = _records_from_document(document, str(path))
        return normalize_records(records, TaskSourceKind.CUSTOM, default_ref=str(path))

    async def _run_cli(self, tool: str) -> List[Task]:
        argv = shlex.split(tool)
        if not argv:
            raise SourceUnavailable("Empty custom CLI command", source=TaskSourceKind.CUSTOM.value)

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(self.repo_root),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError as e:
            process.kill()
            raise SourceUnavailable(
                f"Custom CLI {argv[0]} timed out after {self.timeout_seconds}s",
                source=TaskSourceKind.CUSTOM.value,
            ) from e
        except OSError as e:
            raise SourceUnavailable(
                f"Failed to run custom CLI {argv[0]}: {e}",
                source=TaskSourceKind.CUSTOM.value,
            ) from e

        if process.returncode != 0:
            raise SourceUnavailable(
                f"Custom CLI {argv[0]} exited with {process.returncode}: "
                f"{stderr.decode('utf-8', errors='replace').strip()[:500]}",
                source=TaskSourceKind.CUSTOM.value,
            )

        try:
            document = json.loads(stdout.decode("utf-8", errors="replace"))
        except json.JSONDecodeError as e:
            raise SourceUnavailable(
                f"Custom CLI {argv[0]} did not print JSON",
                source=TaskSourceKind.CUSTOM.value,
            ) from e
        records = _records_from_document(document, argv[0])
        return normalize_records(records, TaskSourceKind.CUSTOM, default_ref=tool)
