"""Git worktree provisioning for workflow instances.

Each instance works in its own git worktree on its own branch, so
instances never share a working copy. Names are derived from the task:

    branch:   <prefix>/<source>-<slug(title)>-<id>
    worktree: <base>/<source>-<slug(title)>-<id>

The source kind keeps the same issue claimed through two sources (say
github and gh-projects) in separate worktrees. The branch ends in
``-<id>``, which is what in-flight detection looks for in open pull/merge
requests.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple

from src.workflow.errors import WorktreeError
from src.workflow.sources.models import Task

logger = logging.getLogger(__name__)

GIT_TIMEOUT_SECONDS = 120
MAX_SLUG_LENGTH = 40

_SLUG_INVALID = re.compile(r"[^a-z0-9]+")
_ID_INVALID = re.compile(r"[^A-Za-z0-9._-]+")


def slugify(text: str, max_length: int = MAX_SLUG_LENGTH) -> str:
    slug = _SLUG_INVALID.sub("-", text.lower()).strip("-")
    slug = slug[:max_length].rstrip("-")
    return slug or "task"


@dataclass(frozen=True)
class WorktreeSpec:
    """Where an instance's worktree lives and which branch it uses."""

    path: Path
    branch: str


class WorktreeProvisioner:
    """Creates and removes git worktrees for workflow instances.

    Attributes:
        repo_root: Repository the worktrees are created from.
        base_path: Directory worktrees are created under.
        branch_prefix: Prefix of every instance branch.
    """

    def __init__(
        self,
        repo_root: Path,
        base_path: Path,
        branch_prefix: str = "task",
        timeout_seconds: int = GIT_TIMEOUT_SECONDS,
    ):
        self.repo_root = Path(repo_root)
        self.base_path = Path(base_path)
        self.branch_prefix = branch_prefix.strip("/")
        self.timeout_seconds = timeout_seconds

    def plan(self, task: Task) -> WorktreeSpec:
        """Derive the worktree path and branch for a task without touching git."""
        safe_id = _ID_INVALID.sub("_", task.id).strip("_") or "task"
        name = f"{task.source_kind.value}-{slugify(task.title)}-{safe_id}"
        branch = f"{self.branch_prefix}/{name}" if self.branch_prefix else name
        return WorktreeSpec(path=self.base_path / name, branch=branch)

    async def provision(self, spec: WorktreeSpec) -> Path:
        """Create the worktree, or reuse it if it already exists on ``spec.branch``.

        Raises:
            WorktreeError: If git fails or times out, or if the existing
                worktree has another branch checked out.
        """
        if (spec.path / ".git").exists():
            checked_out = await self._current_branch(spec.path)
            if checked_out != spec.branch:
                raise WorktreeError(
                    f"Worktree {spec.path} is on branch {checked_out or '<detached>'}, "
                    f"expected {spec.branch}"
                )
            logger.info(
                "Reusing existing worktree",
                extra={"worktree": str(spec.path), "branch": spec.branch},
            )
            return spec.path

        spec.path.parent.mkdir(parents=True, exist_ok=True)

        if await self._branch_exists(spec.branch):
            args = ["worktree", "add", str(spec.path), spec.branch]
        else:
            args = ["worktree", "add", "-b", spec.branch, str(spec.path)]

        code, _, stderr = await self._git(*args)
        if code != 0:
            raise WorktreeError(
                f"git worktree add failed for {spec.branch}: {stderr.strip()}"
            )

        logger.info(
            "Created worktree",
            extra={"worktree": str(spec.path), "branch": spec.branch},
        )
        return spec.path

    async def remove(self, path: Path) -> bool:
        """Remove a worktree. The branch is kept.

        Returns:
            True if a worktree was removed, False if none existed.

        Raises:
            WorktreeError: If git fails to remove an existing worktree.
        """
        path = Path(path)
        if not path.exists():
            return False

        code, _, stderr = await self._git("worktree", "remove", "--force", str(path))
        if code != 0:
            raise WorktreeError(f"git worktree remove failed for {path}: {stderr.strip()}")

        logger.info("Removed worktree", extra={"worktree": str(path)})
        return True

    async def list_worktrees(self) -> List[Path]:
        code, stdout, stderr = await self._git("worktree", "list", "--porcelain")
        if code != 0:
            raise WorktreeError(f"git worktree list failed: {stderr.strip()}")
        return [
            Path(line[len("worktree "):])
            for line in stdout.splitlines()
            if line.startswith("worktree ")
        ]

    async def _branch_exists(self, branch: str) -> bool:
        code, _, _ = await self._git(
            "rev-parse", "--verify", "--quiet", f"refs/heads/{branch}"
        )
        return code == 0

    async def _current_branch(self, path: Path) -> Optional[str]:
        code, stdout, stderr = await self._git(
            "rev-parse", "--abbrev-ref", "HEAD", cwd=path
        )
        if code != 0:
            raise WorktreeError(f"Cannot read branch of worktree {path}: {stderr.strip()}")
        branch = stdout.strip()
        return None if branch in ("", "HEAD") else branch

    async def _git(self, *args: str, cwd: Optional[Path] = None) -> Tuple[int, str, str]:
        try:
            process = await asyncio.create_subprocess_exec(
                "git",
                "-C",
                str(cwd or self.repo_root),
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError as exc:
            process.kill()
            raise WorktreeError(
                f"git {args[0]} timed out after {self.timeout_seconds}s"
            ) from exc
        except OSError as exc:
            raise WorktreeError(f"Failed to execute git: {exc}") from exc

        return (
            process.returncode if process.returncode is not None else -1,
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
        )
