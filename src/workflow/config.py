"""Workflow engine configuration using pydantic-settings.

This module defines the WorkflowSettings class that reads configuration
from environment variables with the WORKFLOW_ prefix. Every field has a
default, so the engine starts against the current directory with only
logging enabled.
"""

from pathlib import Path
from typing import List, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from src.workflow.events.emitter import EventSinkType


class WorkflowSettings(BaseSettings):
    """Workflow engine configuration from environment variables.

    All environment variables are prefixed with WORKFLOW_ (e.g.
    WORKFLOW_GITHUB_TOKEN). Paths relative to ``repo_root`` are resolved
    against it.
    """

    model_config = SettingsConfigDict(
        env_prefix="WORKFLOW_",
        case_sensitive=False,
    )

    # -------------------------------------------------------------------------
    # Repository and state
    # -------------------------------------------------------------------------
    # Repository the workflow operates on
    repo_root: str = "."

    # Directory holding tasks.json, instance logs and the source preference
    state_dir: str = ".workflow"

    # Directory worktrees are created under; empty means <repo>-worktrees
    # next to the repository
    worktree_base: str = ""

    # Prefix of every instance branch
    branch_prefix: str = "task"

    # Seconds to wait for the shared registry lock
    lock_timeout: float = 10.0

    # -------------------------------------------------------------------------
    # Loop limits and ranking
    # -------------------------------------------------------------------------
    max_review_iterations: int = 3
    max_validation_retries: int = 3
    ranking_limit: int = 5

    # -------------------------------------------------------------------------
    # GitHub
    # -------------------------------------------------------------------------
    github_token: Optional[str] = None
    github_base_url: str = "https://api.github.com"
    github_repository: Optional[str] = None

    # -------------------------------------------------------------------------
    # GitLab
    # -------------------------------------------------------------------------
    gitlab_token: Optional[str] = None
    gitlab_base_url: str = "https://gitlab.com/api/v4"
    gitlab_project: Optional[str] = None

    # -------------------------------------------------------------------------
    # Workers
    # -------------------------------------------------------------------------
    # Agent CLI invoked for every worker phase
    worker_command: str = "agent-worker"

    # Timeout in seconds for one worker run
    worker_timeout: int = 3600

    # Timeout in seconds for a custom CLI task source
    custom_source_timeout: int = 60

    # -------------------------------------------------------------------------
    # Observability
    # -------------------------------------------------------------------------
    event_sinks: List[EventSinkType] = [EventSinkType.LOGGING, EventSinkType.METRICS]

    # -------------------------------------------------------------------------
    # Server
    # -------------------------------------------------------------------------
    host: str = "0.0.0.0"
    port: int = 8080

    # -------------------------------------------------------------------------
    # Derived paths
    # -------------------------------------------------------------------------
    @property
    def repo_path(self) -> Path:
        return Path(self.repo_root).expanduser().resolve()

    @property
    def state_path(self) -> Path:
        path = Path(self.state_dir).expanduser()
        return path if path.is_absolute() else self.repo_path / path

    @property
    def worktree_path(self) -> Path:
        if self.worktree_base:
            path = Path(self.worktree_base).expanduser()
            return path if path.is_absolute() else self.repo_path / path
        repo = self.repo_path
        return repo.parent / f"{repo.name}-worktrees"

    # -------------------------------------------------------------------------
    # Validators
    # -------------------------------------------------------------------------
    @field_validator("state_dir", "repo_root")
    @classmethod
    def validate_not_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("path cannot be empty")
        return v

    @field_validator("branch_prefix")
    @classmethod
    def validate_branch_prefix(cls, v: str) -> str:
        """Validate that the branch prefix is usable in a git ref."""
        v = v.strip().strip("/")
        if not v:
            raise ValueError("branch_prefix cannot be empty")
        if any(c in v for c in " ~^:?*[\\") or ".." in v:
            raise ValueError("branch_prefix contains characters not allowed in git refs")
        return v

    @field_validator("lock_timeout")
    @classmethod
    def validate_lock_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("lock_timeout must be positive")
        return v

    @field_validator("max_review_iterations", "ranking_limit")
    @classmethod
    def validate_at_least_one(cls, v: int) -> int:
        if v < 1:
            raise ValueError("value must be at least 1")
        return v

    @field_validator("max_validation_retries")
    @classmethod
    def validate_retries(cls, v: int) -> int:
        if v < 0:
            raise ValueError("max_validation_retries cannot be negative")
        return v

    @field_validator("github_base_url", "gitlab_base_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        """Validate that an API base URL is a valid URL format."""
        if not v.startswith(("http://", "https://")):
            raise ValueError("base URL must start with http:// or https://")
        return v.rstrip("/")

    @field_validator("github_repository")
    @classmethod
    def validate_github_repository(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        parts = v.strip().split("/")
        if len(parts) != 2 or not all(parts):
            raise ValueError("github_repository must be in owner/repo form")
        return v.strip()

    @field_validator("worker_command")
    @classmethod
    def validate_worker_command(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("worker_command cannot be empty")
        return v

    @field_validator("worker_timeout", "custom_source_timeout")
    @classmethod
    def validate_timeout(cls, v: int) -> int:
        if v < 1:
            raise ValueError("timeout must be at least 1 second")
        return v

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        """Validate that port is in valid range."""
        if not 1 <= v <= 65535:
            raise ValueError("port must be between 1 and 65535")
        return v


def get_settings() -> WorkflowSettings:
    """Create and return a WorkflowSettings instance.

    Raises:
        pydantic.ValidationError: If a configured value is invalid.
    """
    return WorkflowSettings()
