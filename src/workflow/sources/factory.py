"""Wiring of task source adapters from settings."""

import logging
from dataclasses import dataclass, field
from typing import List

from src.workflow.config import WorkflowSettings
from src.workflow.sources.adapter import SourceAdapterRegistry
from src.workflow.sources.custom import CustomSourceAdapter
from src.workflow.sources.github import (
    GitHubIssuesAdapter,
    GitHubProjectsAdapter,
    GitHubPullRequestSource,
    github_headers,
)
from src.workflow.sources.gitlab import (
    GitLabIssuesAdapter,
    GitLabMergeRequestSource,
    gitlab_headers,
)
from src.workflow.sources.http import HttpSourceClient
from src.workflow.sources.local import LocalTasksAdapter
from src.workflow.sources.models import TaskSourceKind


logger = logging.getLogger(__name__)


@dataclass
class SourceWiring:
    """Adapter registry plus the HTTP clients it owns."""

    adapters: SourceAdapterRegistry
    clients: List[HttpSourceClient] = field(default_factory=list)

    async def close(self) -> None:
        for client in self.clients:
            await client.close()


def build_source_registry(settings: WorkflowSettings) -> SourceWiring:
    """Register an adapter for every fetchable source kind.

    GitHub Projects items live in repositories, so in-flight detection for
    them uses the configured GitHub repository's pull requests.
    """
    github = HttpSourceClient(
        source=TaskSourceKind.GITHUB.value,
        base_url=settings.github_base_url,
        headers=github_headers(settings.github_token),
    )
    gitlab = HttpSourceClient(
        source=TaskSourceKind.GITLAB.value,
        base_url=settings.gitlab_base_url,
        headers=gitlab_headers(settings.gitlab_token),
    )

    pulls = GitHubPullRequestSource(github, settings.github_repository)
    registry = SourceAdapterRegistry()
    registry.register(
        TaskSourceKind.GITHUB,
        GitHubIssuesAdapter(github, settings.github_repository),
        change_source=pulls,
    )
    registry.register(
        TaskSourceKind.GH_PROJECTS,
        GitHubProjectsAdapter(github),
        change_source=pulls if settings.github_repository else None,
    )
    registry.register(
        TaskSourceKind.GITLAB,
        GitLabIssuesAdapter(gitlab, settings.gitlab_project),
        change_source=GitLabMergeRequestSource(gitlab, settings.gitlab_project),
    )
    registry.register(TaskSourceKind.LOCAL, LocalTasksAdapter(settings.repo_path))
    registry.register(
        TaskSourceKind.CUSTOM,
        CustomSourceAdapter(settings.repo_path, timeout_seconds=settings.custom_source_timeout),
    )

    logger.info(
        "Registered task sources",
        extra={"kinds": [kind.value for kind in registry.kinds]},
    )
    return SourceWiring(adapters=registry, clients=[github, gitlab])
