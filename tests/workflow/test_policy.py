"""Tests for policy selection questions and response parsing."""

import pytest

from src.workflow.errors import PolicySelectionError
from src.workflow.sources.cache import PreferenceCache
from src.workflow.sources.models import (
    CustomSourceConfig,
    CustomSourceType,
    GitHubProjectsSourceConfig,
    GitHubSourceConfig,
    GitLabSourceConfig,
    LocalSourceConfig,
    OtherSourceConfig,
    PriorityFilter,
    StoppingPoint,
)
from src.workflow.sources.policy import (
    LAST_USED_SUFFIX,
    MAX_LABEL_LENGTH,
    PolicyResponses,
    get_custom_name_question,
    get_custom_type_questions,
    get_policy_questions,
    get_project_questions,
    is_using_cached,
    last_used_label,
    map_custom_type,
    needs_custom_follow_up,
    needs_other_description,
    needs_project_follow_up,
    parse_and_cache_policy,
)


@pytest.fixture
def cache(tmp_path):
    return PreferenceCache.for_state_dir(tmp_path / ".workflow")


def labels(question):
    return [option.label for option in question.options]


class TestQuestions:
    def test_without_cache(self, cache):
        questions = get_policy_questions(cache)
        source, priority, stop_point = questions.questions

        assert labels(source) == [
            "GitHub Issues",
            "GitHub Projects",
            "GitLab Issues",
            "Local tasks.md",
            "Custom",
            "Other",
        ]
        assert labels(priority) == ["All", "Bugs", "Security", "Features"]
        assert labels(stop_point) == ["Merged", "PR Created", "Implemented", "Deployed", "Production"]
        assert questions.cached_preference is None

    def test_cached_source_is_offered_first(self, cache):
        cache.save_preference(GitLabSourceConfig(project="group/app"))

        questions = get_policy_questions(cache)
        first = questions.questions[0].options[0]

        assert first.label == "GitLab (last used)"
        assert questions.cached_preference == {"source": "gitlab", "project": "group/app"}

    def test_custom_cached_label_is_truncated(self, cache):
        cache.save_preference(
            CustomSourceConfig(type=CustomSourceType.CLI, tool="very-long-internal-tracker-cli")
        )

        label = get_policy_questions(cache).questions[0].options[0].label

        assert len(label) == MAX_LABEL_LENGTH
        assert label.endswith(LAST_USED_SUFFIX)
        assert label.startswith("very-long-intern")

    @pytest.mark.parametrize("base", ["", "GitHub", "x" * 18, "y" * 19, "z" * 80])
    def test_last_used_label_never_exceeds_cap(self, base):
        label = last_used_label(base)
        assert len(label) <= MAX_LABEL_LENGTH
        assert is_using_cached(label)

    def test_serialized_questions_use_camel_case(self, cache):
        payload = get_policy_questions(cache).model_dump(mode="json", by_alias=True)
        assert payload["questions"][0]["multiSelect"] is False
        assert "cachedPreference" in payload

    def test_follow_up_questions(self):
        assert labels(get_custom_type_questions().questions[0]) == [
            "CLI Tool",
            "MCP Server",
            "Skill",
            "File Path",
        ]
        assert get_custom_name_question("CLI Tool").questions[0].header == "CLI Command"
        assert get_custom_name_question("file").questions[0].header == "File Path"
        headers = [q.header for q in get_project_questions().questions]
        assert headers == ["Project Number", "Project Owner"]

    def test_follow_up_predicates(self):
        assert needs_custom_follow_up("Custom")
        assert needs_other_description("Other")
        assert needs_project_follow_up("GitHub Projects")
        assert not needs_project_follow_up("GitHub Issues")
        assert not is_using_cached("GitHub Issues")


class TestMapCustomType:
    @pytest.mark.parametrize(
        "selection, expected",
        [
            ("CLI Tool", CustomSourceType.CLI),
            ("MCP Server", CustomSourceType.MCP),
            ("Skill", CustomSourceType.SKILL),
            ("File Path", CustomSourceType.FILE),
            ("cli", CustomSourceType.CLI),
            (" FILE ", CustomSourceType.FILE),
        ],
    )
    def test_labels_and_values(self, selection, expected):
        assert map_custom_type(selection) == expected

    def test_unknown_type(self):
        with pytest.raises(PolicySelectionError, match="Unknown custom source type"):
            map_custom_type("carrier pigeon")


class TestParseAndCachePolicy:
    @pytest.mark.parametrize(
        "source, expected",
        [
            ("GitHub Issues", GitHubSourceConfig()),
            ("GitLab Issues", GitLabSourceConfig()),
            ("Local tasks.md", LocalSourceConfig()),
        ],
    )
    def test_plain_sources(self, cache, source, expected):
        policy = parse_and_cache_policy(
            PolicyResponses(source=source, priority="Bugs", stop_point="PR Created"), cache
        )
        assert policy.task_source == expected
        assert policy.priority_filter == PriorityFilter.BUGS
        assert policy.stopping_point == StoppingPoint.PR_CREATED
        assert cache.get_preference() == expected

    def test_defaults_and_unknown_labels(self, cache):
        policy = parse_and_cache_policy({"source": "GitHub Issues", "priority": "Urgent"}, cache)
        assert policy.priority_filter == PriorityFilter.ALL
        assert policy.stopping_point == StoppingPoint.MERGED

    def test_accepts_camel_case_mapping(self, cache):
        policy = parse_and_cache_policy(
            {"source": "GitHub Issues", "stopPoint": "Production"}, cache
        )
        assert policy.stopping_point == StoppingPoint.PRODUCTION

    def test_custom_source(self, cache):
        policy = parse_and_cache_policy(
            {"source": "Custom", "custom": {"type": "CLI Tool", "name": " linear-cli "}},
            cache,
        )
        assert policy.task_source == CustomSourceConfig(type=CustomSourceType.CLI, tool="linear-cli")
        assert cache.get_preference() == policy.task_source

    def test_custom_source_requires_tool(self, cache):
        with pytest.raises(PolicySelectionError, match="tool name"):
            parse_and_cache_policy({"source": "Custom", "custom": {"type": "cli"}}, cache)

    def test_other_source_is_never_cached(self, cache):
        policy = parse_and_cache_policy(
            {"source": "Other", "custom": {"description": "tickets in our wiki"}}, cache
        )
        assert policy.task_source == OtherSourceConfig(description="tickets in our wiki")
        assert cache.get_preference() is None

    def test_projects_requires_follow_up(self, cache):
        with pytest.raises(PolicySelectionError, match="project number and owner"):
            parse_and_cache_policy({"source": "GitHub Projects"}, cache)

    def test_projects_with_follow_up(self, cache):
        policy = parse_and_cache_policy(
            {"source": "GitHub Projects", "project": {"number": " 12 ", "owner": "@me"}},
            cache,
        )
        assert policy.task_source == GitHubProjectsSourceConfig(project_number=12, owner="@me")
        assert cache.get_preference() == policy.task_source

    @pytest.mark.parametrize("number", ["0", "-3", "abc", "1.5", "", None])
    def test_invalid_project_number(self, cache, number):
        with pytest.raises(PolicySelectionError, match="Invalid project number"):
            parse_and_cache_policy(
                {"source": "GitHub Projects", "project": {"number": number, "owner": "acme"}},
                cache,
            )
        assert cache.get_preference() is None

    @pytest.mark.parametrize("owner", ["", "   ", "-acme", "acme corp", "me@", "a/b"])
    def test_invalid_project_owner(self, cache, owner):
        with pytest.raises(PolicySelectionError, match="Invalid project owner"):
            parse_and_cache_policy(
                {"source": "GitHub Projects", "project": {"number": "3", "owner": owner}},
                cache,
            )

    def test_error_echo_is_sanitized_and_capped(self, cache):
        hostile = "\x1b[31m" + "9" * 100
        with pytest.raises(PolicySelectionError) as exc_info:
            parse_and_cache_policy(
                {"source": "GitHub Projects", "project": {"number": hostile, "owner": "acme"}},
                cache,
            )
        assert "\x1b" not in exc_info.value.message
        assert "9" * 33 not in exc_info.value.message

    def test_last_used_selection_reuses_cache(self, cache):
        cached = GitHubProjectsSourceConfig(project_number=4, owner="acme")
        cache.save_preference(cached)
        label = get_policy_questions(cache).questions[0].options[0].label

        policy = parse_and_cache_policy({"source": label, "priority": "Security"}, cache)

        assert policy.task_source == cached
        assert policy.priority_filter == PriorityFilter.SECURITY

    def test_last_used_without_cache(self, cache):
        with pytest.raises(PolicySelectionError, match="Cached source preference not found"):
            parse_and_cache_policy({"source": "GitHub (last used)"}, cache)
