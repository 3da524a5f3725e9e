"""GitHub task sources.

- GitHubIssuesAdapter: open issues of a repository (REST)
- GitHubProjectsAdapter: open issues on a ProjectV2 board (GraphQL)
- GitHubPullRequestSource: open pull requests, for in-flight detection
"""

import logging
from typing import Any, Dict, List, Optional

from src.workflow.errors import SourceUnavailable
from src.workflow.sources.adapter import normalize_records
from src.workflow.sources.http import HttpSourceClient
from src.workflow.sources.models import (
    GitHubProjectsSourceConfig,
    GitHubSourceConfig,
    OpenChange,
    Task,
    TaskSourceKind,
)


logger = logging.getLogger(__name__)


GITHUB_API_VERSION = "2022-11-28"
PROJECT_ITEMS_PAGE_SIZE = 100
PROJECT_MAX_PAGES = 10

_PROJECT_ITEMS_FIELDS = """
      items(first: $pageSize, after: $cursor) {
        pageInfo { hasNextPage endCursor }
        nodes {
          content {
            __typename
            ... on Issue {
              number
              title
              body
              url
              state
              createdAt
              labels(first: 20) { nodes { name } }
            }
          }
        }
      }
"""

VIEWER_PROJECT_QUERY = (
    "query($number: Int!, $pageSize: Int!, $cursor: String) {\n"
    "  viewer {\n"
    "    projectV2(number: $number) {"
    + _PROJECT_ITEMS_FIELDS
    + "    }\n  }\n}"
)

OWNER_PROJECT_QUERY = (
    "query($owner: String!, $number: Int!, $pageSize: Int!, $cursor: String) {\n"
    "  repositoryOwner(login: $owner) {\n"
    "    ... on ProjectV2Owner {\n"
    "      projectV2(number: $number) {"
    + _PROJECT_ITEMS_FIELDS
    + "      }\n    }\n  }\n}"
)


def github_headers(token: Optional[str]) -> Dict[str, str]:
    headers = {
        "Accept": "application/vnd.github+json",
        "X-GitHub-Api-Version": GITHUB_API_VERSION,
        "User-Agent": "task-workflow/1.0",
    }
    if token:
        headers["Authorization"] = f"Bearer {token}"
    return headers


def _require_repository(config_repo: Optional[str], default: Optional[str]) -> str:
    repository = config_repo or default
    if not repository or "/" not in repository:
        raise SourceUnavailable(
            "No GitHub repository configured (expected owner/repo)",
            source=TaskSourceKind.GITHUB.value,
        )
    return repository


class GitHubIssuesAdapter:
    """Open issues of one repository. Pull requests are filtered out."""

    def __init__(self, client: HttpSourceClient, default_repository: Optional[str] = None):
        self.client = client
        self.default_repository = default_repository

    async def fetch(self, config: GitHubSourceConfig) -> List[Task]:
        repository = _require_repository(config.repository, self.default_repository)
        items = await self.client.get_paginated(
            f"/repos/{repository}/issues",
            params={"state": "open", "per_page": 100},
        )
        records = [
            {
                "id": item.get("number"),
                "title": item.get("title"),
                "body": item.get("body"),
                "labels": item.get("labels"),
                "createdAt": item.get("created_at"),
                "url": item.get("html_url"),
            }
            for item in items
            if isinstance(item, dict) and "pull_request" not in item
        ]
        tasks = normalize_records(records, TaskSourceKind.GITHUB, default_ref=repository)
        logger.info(
            "Fetched GitHub issues",
            extra={"repository": repository, "count": len(tasks)},
        )
        return tasks


class GitHubPullRequestSource:
    """Open pull requests of one repository."""

    def __init__(self, client: HttpSourceClient, default_repository: Optional[str] = None):
        self.client = client
        self.default_repository = default_repository

    async def list_open_changes(self, config: Any) -> List[OpenChange]:
        repository = _require_repository(
            getattr(config, "repository", None), self.default_repository
        )
        items = await self.client.get_paginated(
            f"/repos/{repository}/pulls",
            params={"state": "open", "per_page": 100},
        )
        return [
            OpenChange(
                branch=(item.get("head") or {}).get("ref") or "",
                title=item.get("title") or "",
                body=item.get("body") or "",
                url=item.get("html_url"),
            )
            for item in items
            if isinstance(item, dict)
        ]


class GitHubProjectsAdapter:
    """Open issues on a GitHub ProjectV2 board.

    ``@me`` resolves through the authenticated viewer; any other owner is
    looked up as a user or organization.
    """

    def __init__(self, client: HttpSourceClient):
        self.client = client

    async def fetch(self, config: GitHubProjectsSourceConfig) -> List[Task]:
        records: List[Dict[str, Any]] = []
        cursor: Optional[str] = None

        for _ in range(PROJECT_MAX_PAGES):
            items = await self._fetch_page(config, cursor)
            for node in items.get("nodes") or []:
                content = (node or {}).get("content") or {}
                if content.get("__typename") != "Issue" or content.get("state") != "OPEN":
                    continue
                records.append(
                    {
                        "id": content.get("number"),
                        "title": content.get("title"),
                        "body": content.get("body"),
                        "labels": (content.get("labels") or {}).get("nodes"),
                        "createdAt": content.get("createdAt"),
                        "url": content.get("url"),
                    }
                )
            page_info = items.get("pageInfo") or {}
            if not page_info.get("hasNextPage"):
                break
            cursor = page_info.get("endCursor")

        ref = f"{config.owner}/projects/{config.project_number}"
        tasks = normalize_records(records, TaskSourceKind.GH_PROJECTS, default_ref=ref)
        logger.info(
            "Fetched GitHub project items",
            extra={"project": ref, "count": len(tasks)},
        )
        return tasks

    async def _fetch_page(
        self, config: GitHubProjectsSourceConfig, cursor: Optional[str]
    ) -> Dict[str, Any]:
        variables: Dict[str, Any] = {
            "number": config.project_number,
            "pageSize": PROJECT_ITEMS_PAGE_SIZE,
            "cursor": cursor,
        }
        if config.owner == "@me":
            query = VIEWER_PROJECT_QUERY
            owner_key = "viewer"
        else:
            query = OWNER_PROJECT_QUERY
            owner_key = "repositoryOwner"
            variables["owner"] = config.owner

        payload = await self.client.post_json(
            "/graphql", {"query": query, "variables": variables}
        )
        if not isinstance(payload, dict):
            raise SourceUnavailable(
                "GitHub GraphQL returned a non-object response",
                source=TaskSourceKind.GH_PROJECTS.value,
            )
        if payload.get("errors"):
            messages = [str(err.get("message")) for err in payload["errors"] if isinstance(err, dict)]
            raise SourceUnavailable(
                f"GitHub GraphQL error: {'; '.join(messages) or 'unknown error'}",
                source=TaskSourceKind.GH_PROJECTS.value,
            )

        owner = (payload.get("data") or {}).get(owner_key) or {}
        project = owner.get("projectV2")
        if not project:
            raise SourceUnavailable(
                f"GitHub project {config.owner}#{config.project_number} not found",
                source=TaskSourceKind.GH_PROJECTS.value,
            )
        return project.get("items") or {}
