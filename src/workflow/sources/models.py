"""Task, source configuration and policy models.

This module defines the canonical records the engine core works with:
- Task: the normalized work item every adapter produces
- TaskSourceConfig: tagged union of source configurations, discriminated
  by the ``source`` field
- Policy: source, priority filter and stopping point chosen at selection
- ScoredTask / OpenChange: discovery pipeline records

Adapters normalize their loosely-typed backend payloads into these shapes
at the boundary, so the core only ever sees one Task shape. Persisted
fields use camelCase aliases; Python code uses snake_case names.
"""

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    field_validator,
)


PROJECT_OWNER_PATTERN = re.compile(r"^(@me|[a-zA-Z0-9][a-zA-Z0-9_-]*)$")


class TaskSourceKind(str, Enum):
    """Kinds of task sources a policy can point at."""

    GITHUB = "github"
    GH_PROJECTS = "gh-projects"
    GITLAB = "gitlab"
    LOCAL = "local"
    CUSTOM = "custom"
    OTHER = "other"


class CustomSourceType(str, Enum):
    """How a custom source is reached.

    CLI and FILE sources can be fetched by the engine. MCP and SKILL
    sources are only reachable from inside an agent session.
    """

    CLI = "cli"
    MCP = "mcp"
    SKILL = "skill"
    FILE = "file"


class _SourceConfigBase(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    @property
    def kind(self) -> TaskSourceKind:
        return TaskSourceKind(self.source)  # type: ignore[attr-defined]


class GitHubSourceConfig(_SourceConfigBase):
    source: Literal["github"] = "github"
    repository: Optional[str] = Field(
        default=None,
        description='Repository in "{owner}/{repo}" form; defaults to settings',
    )


class GitHubProjectsSourceConfig(_SourceConfigBase):
    source: Literal["gh-projects"] = "gh-projects"
    project_number: int = Field(..., gt=0, alias="projectNumber")
    owner: str = Field(..., min_length=1)

    @field_validator("owner")
    @classmethod
    def validate_owner(cls, v: str) -> str:
        v = v.strip()
        if not PROJECT_OWNER_PATTERN.match(v):
            raise ValueError("owner must be @me or an org/user name")
        return v


class GitLabSourceConfig(_SourceConfigBase):
    source: Literal["gitlab"] = "gitlab"
    project: Optional[str] = Field(
        default=None,
        description='Project path ("group/project") or numeric id; defaults to settings',
    )


class LocalSourceConfig(_SourceConfigBase):
    source: Literal["local"] = "local"
    path: Optional[str] = Field(
        default=None,
        description="Task file path; defaults to PLAN.md, tasks.md or TODO.md",
    )


class CustomSourceConfig(_SourceConfigBase):
    source: Literal["custom"] = "custom"
    type: CustomSourceType
    tool: str = Field(..., min_length=1)


class OtherSourceConfig(_SourceConfigBase):
    source: Literal["other"] = "other"
    description: str = ""


TaskSourceConfig = Annotated[
    Union[
        GitHubSourceConfig,
        GitHubProjectsSourceConfig,
        GitLabSourceConfig,
        LocalSourceConfig,
        CustomSourceConfig,
        OtherSourceConfig,
    ],
    Field(discriminator="source"),
]

_source_config_adapter: TypeAdapter = TypeAdapter(TaskSourceConfig)


def parse_source_config(data: Dict[str, Any]) -> Any:
    """Validate a raw mapping into the matching TaskSourceConfig variant.

    Raises:
        pydantic.ValidationError: If the mapping matches no variant.
    """
    return _source_config_adapter.validate_python(data)


class PriorityFilter(str, Enum):
    ALL = "all"
    BUGS = "bugs"
    SECURITY = "security"
    FEATURES = "features"


class StoppingPoint(str, Enum):
    """How far a workflow instance takes its task.

    The values are ordinal: implemented < pr-created < merged < deployed
    < production. Use ``rank`` or ``reaches`` to compare.
    """

    IMPLEMENTED = "implemented"
    PR_CREATED = "pr-created"
    MERGED = "merged"
    DEPLOYED = "deployed"
    PRODUCTION = "production"

    @property
    def rank(self) -> int:
        return STOPPING_POINT_ORDER.index(self)

    def reaches(self, other: "StoppingPoint") -> bool:
        """Return True if this stopping point is at or beyond ``other``."""
        return self.rank >= other.rank


STOPPING_POINT_ORDER = (
    StoppingPoint.IMPLEMENTED,
    StoppingPoint.PR_CREATED,
    StoppingPoint.MERGED,
    StoppingPoint.DEPLOYED,
    StoppingPoint.PRODUCTION,
)


class Policy(BaseModel):
    """Selection-time policy, immutable and persisted for resume.

    Attributes:
        task_source: Where tasks come from.
        priority_filter: Which category of tasks to consider.
        stopping_point: How far the instance takes its task.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    task_source: TaskSourceConfig = Field(..., alias="taskSource")
    priority_filter: PriorityFilter = Field(
        default=PriorityFilter.ALL, alias="priorityFilter"
    )
    stopping_point: StoppingPoint = Field(
        default=StoppingPoint.MERGED, alias="stoppingPoint"
    )


class Task(BaseModel):
    """Normalized work item.

    Tasks are externally owned and immutable; the only derived value,
    the ranking score, is carried separately by ScoredTask.

    Attributes:
        id: Identifier unique within its source.
        title: Task title (cannot be empty).
        body: Task description (may be empty).
        labels: Label names attached to the task.
        created_at: Creation timestamp (UTC).
        source_ref: URL, file path or tool name the task came from.
        source_kind: Kind of source that produced the task.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1)
    body: str = ""
    labels: List[str] = Field(default_factory=list)
    created_at: datetime = Field(..., alias="createdAt")
    source_ref: str = Field(default="", alias="sourceRef")
    source_kind: TaskSourceKind = Field(..., alias="sourceKind")

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v: Any) -> Any:
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        return v

    @field_validator("created_at")
    @classmethod
    def ensure_utc(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v.astimezone(timezone.utc)

    def age_days(self, now: Optional[datetime] = None) -> float:
        now = now or datetime.now(timezone.utc)
        return (now - self.created_at).total_seconds() / 86400


class ScoredTask(BaseModel):
    model_config = ConfigDict(frozen=True)

    task: Task
    score: int


class OpenChange(BaseModel):
    """An open pull/merge request, used for in-flight detection."""

    model_config = ConfigDict(frozen=True)

    branch: str = ""
    title: str = ""
    body: str = ""
    url: Optional[str] = None
