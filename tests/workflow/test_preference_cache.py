"""Tests for the last-used source preference cache."""

import json

from src.workflow.sources.cache import PreferenceCache, should_cache
from src.workflow.sources.models import (
    CustomSourceConfig,
    CustomSourceType,
    GitHubProjectsSourceConfig,
    GitHubSourceConfig,
    OtherSourceConfig,
)


def test_location_under_state_dir(tmp_path):
    cache = PreferenceCache.for_state_dir(tmp_path)
    assert cache.path == tmp_path / "sources" / "preference.json"


def test_round_trip(tmp_path):
    cache = PreferenceCache.for_state_dir(tmp_path)
    config = CustomSourceConfig(type=CustomSourceType.FILE, tool="backlog.json")

    assert cache.save_preference(config) is True
    assert cache.get_preference() == config

    document = json.loads(cache.path.read_text())
    assert document["taskSource"] == {"source": "custom", "type": "file", "tool": "backlog.json"}
    assert "savedAt" in document


def test_projects_persist_camel_case(tmp_path):
    cache = PreferenceCache.for_state_dir(tmp_path)
    cache.save_preference(GitHubProjectsSourceConfig(project_number=3, owner="acme"))
    document = json.loads(cache.path.read_text())
    assert document["taskSource"]["projectNumber"] == 3


def test_other_is_not_cached_and_keeps_previous(tmp_path):
    cache = PreferenceCache.for_state_dir(tmp_path)
    cache.save_preference(GitHubSourceConfig(repository="acme/widgets"))

    assert cache.save_preference(OtherSourceConfig(description="ask Sam")) is False
    assert cache.get_preference() == GitHubSourceConfig(repository="acme/widgets")


def test_should_cache_rules():
    assert should_cache(GitHubSourceConfig())
    assert should_cache(GitHubProjectsSourceConfig(project_number=1, owner="@me"))
    assert not should_cache(OtherSourceConfig())


def test_missing_file_means_no_preference(tmp_path):
    assert PreferenceCache.for_state_dir(tmp_path).get_preference() is None


def test_corrupt_file_means_no_preference(tmp_path):
    cache = PreferenceCache.for_state_dir(tmp_path)
    cache.path.parent.mkdir(parents=True)
    cache.path.write_text("{not json")
    assert cache.get_preference() is None


def test_unknown_source_means_no_preference(tmp_path):
    cache = PreferenceCache.for_state_dir(tmp_path)
    cache.path.parent.mkdir(parents=True)
    cache.path.write_text(json.dumps({"taskSource": {"source": "jira"}}))
    assert cache.get_preference() is None


def test_clear(tmp_path):
    cache = PreferenceCache.for_state_dir(tmp_path)
    cache.save_preference(GitHubSourceConfig())
    cache.clear()
    cache.clear()
    assert cache.get_preference() is None
