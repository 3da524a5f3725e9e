"""Task sources, source preference and policy selection.

Adapters:
- GitHubIssuesAdapter / GitHubProjectsAdapter: GitHub REST and GraphQL
- GitLabIssuesAdapter: GitLab REST v4
- LocalTasksAdapter: markdown checklist in the repository
- CustomSourceAdapter: user-supplied JSON file or CLI tool

Open pull/merge request listings (GitHubPullRequestSource,
GitLabMergeRequestSource) feed in-flight detection. build_source_registry
in sources.factory wires everything from WorkflowSettings.
"""
