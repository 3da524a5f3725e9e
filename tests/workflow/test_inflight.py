"""Unit tests for in-flight detection."""

from unittest.mock import AsyncMock

import pytest

from src.workflow.discovery.inflight import (
    HeuristicInFlightDetector,
    change_mentions,
    match_in_flight,
)
from src.workflow.errors import SourceUnavailable
from src.workflow.sources.models import GitHubSourceConfig, OpenChange
from tests.conftest import make_task, run_async


class TestChangeMentions:
    @pytest.mark.parametrize(
        "change",
        [
            OpenChange(branch="task/fix-crash-42"),
            OpenChange(body="This closes #42."),
            OpenChange(body="Fixes #42"),
            OpenChange(body="resolved #42 and more"),
            OpenChange(title="Fix crash (#42)"),
        ],
    )
    def test_matches(self, change):
        assert change_mentions(change, "42")

    @pytest.mark.parametrize(
        "change",
        [
            OpenChange(branch="task/fix-crash-142"),
            OpenChange(branch="task/fix-42-crash"),
            OpenChange(body="closes #420"),
            OpenChange(body="see #42 for context"),
            OpenChange(body="encloses #42"),
            OpenChange(title="Fix crash #42"),
        ],
    )
    def test_does_not_match(self, change):
        assert not change_mentions(change, "42")

    def test_match_in_flight_returns_matching_ids(self):
        tasks = [make_task("1"), make_task("2"), make_task("3")]
        changes = [OpenChange(branch="task/a-2"), OpenChange(body="Fixes #3")]
        assert match_in_flight(changes, tasks) == {"2", "3"}


class TestHeuristicInFlightDetector:
    def test_uses_change_source(self):
        source = AsyncMock()
        source.list_open_changes.return_value = [OpenChange(branch="task/x-7")]
        detector = HeuristicInFlightDetector(source)
        config = GitHubSourceConfig(repository="acme/widgets")

        ids = run_async(detector.in_flight_ids(config, [make_task("7"), make_task("8")]))

        assert ids == {"7"}
        source.list_open_changes.assert_awaited_once_with(config)

    def test_fails_open_when_source_errors(self):
        source = AsyncMock()
        source.list_open_changes.side_effect = SourceUnavailable("down", source="github")
        detector = HeuristicInFlightDetector(source)

        ids = run_async(
            detector.in_flight_ids(GitHubSourceConfig(), [make_task("7")])
        )

        assert ids == set()

    def test_no_change_source_means_nothing_in_flight(self):
        detector = HeuristicInFlightDetector(None)
        assert run_async(detector.in_flight_ids(GitHubSourceConfig(), [make_task("7")])) == set()
