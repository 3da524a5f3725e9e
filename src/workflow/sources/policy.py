"""Policy selection questions and response parsing.

Builds the three selection questions (source, priority, stop point) with
the cached source preference offered first, and turns the chosen labels
back into a Policy. Option labels are capped at 30 characters because
some question UIs reject longer ones.
"""

import logging
import re
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field

from src.workflow.errors import PolicySelectionError
from src.workflow.sources.cache import PreferenceCache
from src.workflow.sources.models import (
    PROJECT_OWNER_PATTERN,
    CustomSourceConfig,
    CustomSourceType,
    GitHubProjectsSourceConfig,
    GitHubSourceConfig,
    GitLabSourceConfig,
    LocalSourceConfig,
    OtherSourceConfig,
    Policy,
    PriorityFilter,
    StoppingPoint,
    TaskSourceKind,
)


logger = logging.getLogger(__name__)


MAX_LABEL_LENGTH = 30
LAST_USED_SUFFIX = " (last used)"
ELLIPSIS = "…"

PROJECT_NUMBER_PATTERN = re.compile(r"^[1-9][0-9]*$")
_NON_PRINTABLE = re.compile(r"[^\x20-\x7E]")

SOURCE_LABELS = {
    TaskSourceKind.GITHUB: "GitHub",
    TaskSourceKind.GH_PROJECTS: "GitHub Projects",
    TaskSourceKind.GITLAB: "GitLab",
    TaskSourceKind.LOCAL: "Local",
    TaskSourceKind.CUSTOM: "Custom",
    TaskSourceKind.OTHER: "Other",
}

SOURCE_OPTION_CONFIGS = {
    "GitHub Issues": GitHubSourceConfig,
    "GitHub Projects": None,
    "GitLab Issues": GitLabSourceConfig,
    "Local tasks.md": LocalSourceConfig,
}

PRIORITY_OPTIONS = {
    "All": PriorityFilter.ALL,
    "Bugs": PriorityFilter.BUGS,
    "Security": PriorityFilter.SECURITY,
    "Features": PriorityFilter.FEATURES,
}

STOP_POINT_OPTIONS = {
    "Merged": StoppingPoint.MERGED,
    "PR Created": StoppingPoint.PR_CREATED,
    "Implemented": StoppingPoint.IMPLEMENTED,
    "Deployed": StoppingPoint.DEPLOYED,
    "Production": StoppingPoint.PRODUCTION,
}

CUSTOM_TYPE_OPTIONS = {
    "CLI Tool": CustomSourceType.CLI,
    "MCP Server": CustomSourceType.MCP,
    "Skill": CustomSourceType.SKILL,
    "File Path": CustomSourceType.FILE,
}

CUSTOM_NAME_QUESTIONS = {
    CustomSourceType.CLI: ("CLI Command", "Which command lists your tasks (JSON output)?"),
    CustomSourceType.MCP: ("MCP Server", "Which MCP server provides your tasks?"),
    CustomSourceType.SKILL: ("Skill Name", "Which skill lists your tasks?"),
    CustomSourceType.FILE: ("File Path", "Which file contains your tasks?"),
}


class QuestionOption(BaseModel):
    label: str = Field(..., max_length=MAX_LABEL_LENGTH)
    description: str = ""


class Question(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    header: str
    question: str
    options: List[QuestionOption] = Field(default_factory=list)
    multi_select: bool = Field(default=False, alias="multiSelect")
    hint: Optional[str] = None


class PolicyQuestions(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    questions: List[Question]
    cached_preference: Optional[Dict[str, Any]] = Field(
        default=None, alias="cachedPreference"
    )


class PolicyResponses(BaseModel):
    """Answers to the policy questions.

    Attributes:
        source: Chosen source option label.
        priority: Chosen priority option label.
        stop_point: Chosen stop point option label.
        custom: ``{"type": <type label>, "name": <tool>}`` for Custom,
            ``{"description": ...}`` for Other.
        project: ``{"number": ..., "owner": ...}`` for GitHub Projects.
    """

    model_config = ConfigDict(populate_by_name=True)

    source: str
    priority: str = "All"
    stop_point: str = Field(default="Merged", alias="stopPoint")
    custom: Optional[Dict[str, Any]] = None
    project: Optional[Dict[str, Any]] = None


def source_label(config: Any) -> str:
    """Human label for a source configuration."""
    if isinstance(config, CustomSourceConfig):
        return f"{config.tool} ({config.type.value})"
    return SOURCE_LABELS.get(config.kind, config.kind.value.capitalize())


def last_used_label(base: str) -> str:
    """Build the "(last used)" option label within the length cap."""
    max_base = MAX_LABEL_LENGTH - len(LAST_USED_SUFFIX)
    if len(base) > max_base:
        base = base[: max_base - 1] + ELLIPSIS
    return f"{base}{LAST_USED_SUFFIX}"


def get_policy_questions(cache: PreferenceCache) -> PolicyQuestions:
    cached = cache.get_preference()

    source_options: List[QuestionOption] = []
    if cached is not None:
        base = source_label(cached)
        source_options.append(
            QuestionOption(
                label=last_used_label(base),
                description=f"Use your previous choice: {base}",
            )
        )

    source_options.extend(
        [
            QuestionOption(label="GitHub Issues", description="Open issues of the repository"),
            QuestionOption(label="GitHub Projects", description="Issues from a GitHub Project board"),
            QuestionOption(label="GitLab Issues", description="Open issues of the GitLab project"),
            QuestionOption(label="Local tasks.md", description="Read from PLAN.md, tasks.md, or TODO.md"),
            QuestionOption(label="Custom", description="Specify your tool: CLI, MCP, Skill, or file path"),
            QuestionOption(label="Other", description="Describe your source - agent figures it out"),
        ]
    )

    return PolicyQuestions(
        questions=[
            Question(
                header="Source",
                question="Where should I look for tasks?",
                options=source_options,
            ),
            Question(
                header="Priority",
                question="What type of tasks to prioritize?",
                options=[
                    QuestionOption(label="All", description="Consider all tasks, pick by score"),
                    QuestionOption(label="Bugs", description="Focus on bug fixes"),
                    QuestionOption(label="Security", description="Security issues first"),
                    QuestionOption(label="Features", description="New feature development"),
                ],
            ),
            Question(
                header="Stop Point",
                question="How far should I take this task?",
                options=[
                    QuestionOption(label="Merged", description="Until PR is merged to main"),
                    QuestionOption(label="PR Created", description="Stop after creating PR"),
                    QuestionOption(label="Implemented", description="Stop after local implementation"),
                    QuestionOption(label="Deployed", description="Deploy to staging"),
                    QuestionOption(label="Production", description="Full production deployment"),
                ],
            ),
        ],
        cached_preference=(
            cached.model_dump(mode="json", by_alias=True) if cached is not None else None
        ),
    )


def get_custom_type_questions() -> PolicyQuestions:
    return PolicyQuestions(
        questions=[
            Question(
                header="Custom Type",
                question="How should I reach your task source?",
                options=[QuestionOption(label=label) for label in CUSTOM_TYPE_OPTIONS],
            )
        ]
    )


def get_custom_name_question(custom_type: str) -> PolicyQuestions:
    header, question = CUSTOM_NAME_QUESTIONS[map_custom_type(custom_type)]
    return PolicyQuestions(questions=[Question(header=header, question=question)])


def get_project_questions() -> PolicyQuestions:
    return PolicyQuestions(
        questions=[
            Question(
                header="Project Number",
                question="What is the GitHub Project number?",
                hint="e.g. 1, 5, 42 (from the project URL)",
            ),
            Question(
                header="Project Owner",
                question="Who owns this project?",
                hint="@me, my-org, or a GitHub username",
            ),
        ]
    )


def is_using_cached(selection: str) -> bool:
    return LAST_USED_SUFFIX.strip() in selection


def needs_custom_follow_up(selection: str) -> bool:
    return selection == "Custom"


def needs_other_description(selection: str) -> bool:
    return selection == "Other"


def needs_project_follow_up(selection: str) -> bool:
    return selection == "GitHub Projects"


def map_custom_type(selection: str) -> CustomSourceType:
    """Accept either an option label ("CLI Tool") or a value ("cli")."""
    if selection in CUSTOM_TYPE_OPTIONS:
        return CUSTOM_TYPE_OPTIONS[selection]
    try:
        return CustomSourceType(selection.strip().lower())
    except ValueError:
        raise PolicySelectionError(
            f"Unknown custom source type: {_sanitize(selection, 32)!r}"
        ) from None


def _sanitize(value: Any, limit: int) -> str:
    return _NON_PRINTABLE.sub("?", str(value))[:limit]


def _map_source(
    responses: PolicyResponses, cache: PreferenceCache
) -> Any:
    selection = responses.source

    if is_using_cached(selection):
        cached = cache.get_preference()
        if cached is None:
            raise PolicySelectionError(
                "Cached source preference not found. Please select a source."
            )
        return cached

    if selection == "Custom":
        details = responses.custom or {}
        tool = str(details.get("name") or details.get("tool") or "").strip()
        if not tool:
            raise PolicySelectionError("Custom source requires a tool name or path")
        return CustomSourceConfig(type=map_custom_type(str(details.get("type", ""))), tool=tool)

    if selection == "Other":
        description = (responses.custom or {}).get("description") or ""
        return OtherSourceConfig(description=str(description))

    if selection == "GitHub Projects":
        return None

    config_cls = SOURCE_OPTION_CONFIGS.get(selection, GitHubSourceConfig)
    return config_cls()


def _project_config(project: Mapping[str, Any]) -> GitHubProjectsSourceConfig:
    raw_number = str(project.get("number", "")).strip()
    if not PROJECT_NUMBER_PATTERN.match(raw_number):
        raise PolicySelectionError(
            f'Invalid project number: "{_sanitize(project.get("number", ""), 32)}". '
            "Must be a positive integer."
        )
    raw_owner = project.get("owner") or ""
    owner = str(raw_owner).strip()
    if not owner or not PROJECT_OWNER_PATTERN.match(owner):
        raise PolicySelectionError(
            f'Invalid project owner: "{_sanitize(raw_owner, 64)}" '
            "(use @me or an org/user name)"
        )
    return GitHubProjectsSourceConfig(project_number=int(raw_number), owner=owner)


def parse_and_cache_policy(
    responses: Any, cache: PreferenceCache
) -> Policy:
    """Turn question answers into a Policy and remember the source.

    Args:
        responses: PolicyResponses or an equivalent mapping.
        cache: Where the source preference is remembered.

    Raises:
        PolicySelectionError: If the answers cannot form a valid policy.
    """
    if not isinstance(responses, PolicyResponses):
        responses = PolicyResponses.model_validate(responses)

    task_source = _map_source(responses, cache)

    if task_source is None or isinstance(task_source, GitHubProjectsSourceConfig):
        if responses.project:
            task_source = _project_config(responses.project)
        elif task_source is None:
            raise PolicySelectionError(
                "GitHub Projects source requires project number and owner. "
                "Ask the project questions first."
            )

    policy = Policy(
        task_source=task_source,
        priority_filter=PRIORITY_OPTIONS.get(responses.priority, PriorityFilter.ALL),
        stopping_point=STOP_POINT_OPTIONS.get(responses.stop_point, StoppingPoint.MERGED),
    )

    cache.save_preference(task_source)
    logger.info(
        "Policy selected",
        extra={
            "source": task_source.kind.value,
            "priority_filter": policy.priority_filter.value,
            "stopping_point": policy.stopping_point.value,
        },
    )
    return policy
