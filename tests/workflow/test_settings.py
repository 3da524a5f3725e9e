"""Tests for WorkflowSettings loading and validation."""

import os

import pytest
from pydantic import ValidationError

from src.workflow.config import WorkflowSettings, get_settings
from src.workflow.events import EventSinkType


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in list(os.environ):
        if key.startswith("WORKFLOW_"):
            monkeypatch.delenv(key)


class TestDefaults:
    def test_defaults(self):
        settings = get_settings()
        assert settings.state_dir == ".workflow"
        assert settings.branch_prefix == "task"
        assert settings.max_review_iterations == 3
        assert settings.max_validation_retries == 3
        assert settings.ranking_limit == 5
        assert settings.github_repository is None
        assert settings.event_sinks == [EventSinkType.LOGGING, EventSinkType.METRICS]

    def test_derived_paths(self, tmp_path):
        repo = tmp_path / "widgets"
        settings = WorkflowSettings(repo_root=str(repo))
        assert settings.repo_path == repo.resolve()
        assert settings.state_path == repo.resolve() / ".workflow"
        assert settings.worktree_path == tmp_path.resolve() / "widgets-worktrees"

    def test_explicit_paths(self, tmp_path):
        settings = WorkflowSettings(
            repo_root=str(tmp_path),
            state_dir=str(tmp_path / "state"),
            worktree_base="wt",
        )
        assert settings.state_path == tmp_path / "state"
        assert settings.worktree_path == tmp_path.resolve() / "wt"


class TestEnvironment:
    def test_reads_prefixed_variables(self, monkeypatch):
        monkeypatch.setenv("WORKFLOW_GITHUB_TOKEN", "ghp_secret")
        monkeypatch.setenv("WORKFLOW_GITHUB_REPOSITORY", "acme/widgets")
        monkeypatch.setenv("WORKFLOW_MAX_REVIEW_ITERATIONS", "5")
        monkeypatch.setenv("WORKFLOW_EVENT_SINKS", '["metrics"]')

        settings = get_settings()

        assert settings.github_token == "ghp_secret"
        assert settings.github_repository == "acme/widgets"
        assert settings.max_review_iterations == 5
        assert settings.event_sinks == [EventSinkType.METRICS]

    def test_trailing_slash_is_stripped(self, monkeypatch):
        monkeypatch.setenv("WORKFLOW_GITLAB_BASE_URL", "https://gitlab.example.com/api/v4/")
        assert get_settings().gitlab_base_url == "https://gitlab.example.com/api/v4"


class TestValidation:
    @pytest.mark.parametrize(
        "field, value",
        [
            ("state_dir", "  "),
            ("branch_prefix", "/"),
            ("branch_prefix", "my branch"),
            ("branch_prefix", "a..b"),
            ("lock_timeout", 0),
            ("max_review_iterations", 0),
            ("ranking_limit", 0),
            ("max_validation_retries", -1),
            ("github_base_url", "api.github.com"),
            ("github_repository", "widgets"),
            ("github_repository", "acme/widgets/extra"),
            ("worker_command", ""),
            ("worker_timeout", 0),
            ("custom_source_timeout", 0),
            ("port", 70000),
        ],
    )
    def test_invalid_values(self, field, value):
        with pytest.raises(ValidationError):
            WorkflowSettings(**{field: value})

    def test_zero_validation_retries_allowed(self):
        assert WorkflowSettings(max_validation_retries=0).max_validation_retries == 0

    def test_branch_prefix_is_normalized(self):
        assert WorkflowSettings(branch_prefix=" agent/ ").branch_prefix == "agent"

    def test_blank_repository_means_unset(self):
        assert WorkflowSettings(github_repository="  ").github_repository is None
