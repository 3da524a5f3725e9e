"""GitLab task sources (REST v4).

- GitLabIssuesAdapter: open issues of a project
- GitLabMergeRequestSource: open merge requests, for in-flight detection

Tasks use the project-local ``iid`` as their id, matching ``#<iid>``
references in merge request descriptions.
"""

import logging
from typing import Any, Dict, List, Optional
from urllib.parse import quote

from src.workflow.errors import SourceUnavailable
from src.workflow.sources.adapter import normalize_records
from src.workflow.sources.http import HttpSourceClient
from src.workflow.sources.models import GitLabSourceConfig, OpenChange, Task, TaskSourceKind


logger = logging.getLogger(__name__)


def gitlab_headers(token: Optional[str]) -> Dict[str, str]:
    headers = {"Accept": "application/json", "User-Agent": "task-workflow/1.0"}
    if token:
        headers["PRIVATE-TOKEN"] = token
    return headers


def _project_path(config_project: Optional[str], default: Optional[str]) -> str:
    project = config_project or default
    if not project:
        raise SourceUnavailable(
            "No GitLab project configured", source=TaskSourceKind.GITLAB.value
        )
    return quote(str(project), safe="")


class GitLabIssuesAdapter:
    def __init__(self, client: HttpSourceClient, default_project: Optional[str] = None):
        self.client = client
        self.default_project = default_project

    async def fetch(self, config: GitLabSourceConfig) -> List[Task]:
        project = _project_path(config.project, self.default_project)
        items = await self.client.get_paginated(
            f"/projects/{project}/issues",
            params={"state": "opened", "per_page": 100},
        )
        records = [
            {
                "id": item.get("iid"),
                "title": item.get("title"),
                "body": item.get("description"),
                "labels": item.get("labels"),
                "createdAt": item.get("created_at"),
                "url": item.get("web_url"),
            }
            for item in items
            if isinstance(item, dict)
        ]
        tasks = normalize_records(records, TaskSourceKind.GITLAB)
        logger.info(
            "Fetched GitLab issues",
            extra={"project": config.project or self.default_project, "count": len(tasks)},
        )
        return tasks


class GitLabMergeRequestSource:
    def __init__(self, client: HttpSourceClient, default_project: Optional[str] = None):
        self.client = client
        self.default_project = default_project

    async def list_open_changes(self, config: Any) -> List[OpenChange]:
        project = _project_path(getattr(config, "project", None), self.default_project)
        items = await self.client.get_paginated(
            f"/projects/{project}/merge_requests",
            params={"state": "opened", "per_page": 100},
        )
        return [
            OpenChange(
                branch=item.get("source_branch") or "",
                title=item.get("title") or "",
                body=item.get("description") or "",
                url=item.get("web_url"),
            )
            for item in items
            if isinstance(item, dict)
        ]
