"""Tests for full-text search over learning notes."""
from unittest.mock import patch

import pytest

from memory_notes.config import config
from memory_notes.exceptions import ErrorCode, SearchError


@pytest.fixture
def sample_notes(make_note):
    """A small corpus spread over two repositories."""
    return {
        "timeout": make_note(
            repo_key="acme/api",
            title="Gateway timeout on export",
            problem="Export endpoint returns 504 timeout",
            solution="Stream the export instead of buffering; timeout gone",
        ),
        "leak": make_note(
            repo_key="acme/api",
            title="Memory leak in worker",
            problem="RSS grows until OOM",
            solution="Close the cursor in the finally block",
            root_cause="Cursor kept alive by a cache",
        ),
        "cache": make_note(
            repo_key="acme/web",
            title="Stale cache after deploy",
            problem="Users see old assets",
            solution="Version asset filenames",
            applies_when="Any deploy touching static assets",
        ),
    }


class TestSearchBasics:
    """Tests for matching and ranking."""

    def test_matches_title(self, learning_service, sample_notes):
        results = learning_service.search("leak")
        assert [n.id for n in results] == [sample_notes["leak"]]

    def test_matches_every_indexed_field(self, learning_service, sample_notes):
        assert [n.id for n in learning_service.search("RSS")] == [sample_notes["leak"]]
        assert [n.id for n in learning_service.search("buffering")] == [sample_notes["timeout"]]
        assert [n.id for n in learning_service.search("alive")] == [sample_notes["leak"]]
        assert [n.id for n in learning_service.search("touching")] == [sample_notes["cache"]]
        assert [n.id for n in learning_service.search("web")] == [sample_notes["cache"]]

    def test_case_insensitive(self, learning_service, sample_notes):
        assert [n.id for n in learning_service.search("GATEWAY")] == [sample_notes["timeout"]]

    def test_or_query(self, learning_service, sample_notes):
        ids = {n.id for n in learning_service.search("leak OR stale")}
        assert ids == {sample_notes["leak"], sample_notes["cache"]}

    def test_phrase_prefix_and_column_queries(self, learning_service, sample_notes):
        assert [n.id for n in learning_service.search('"memory leak"')] == [sample_notes["leak"]]
        assert [n.id for n in learning_service.search("depl*")] == [sample_notes["cache"]]
        assert [n.id for n in learning_service.search("title:worker")] == [sample_notes["leak"]]

    def test_no_match(self, learning_service, sample_notes):
        assert learning_service.search("kubernetes") == []

    def test_best_match_first(self, learning_service, make_note):
        weak = make_note(
            title="Unrelated batch job",
            problem="A long description of a nightly job " * 10 + "with one deadlock",
            solution="Retry it",
        )
        strong = make_note(
            title="Deadlock in deadlock detector",
            problem="Deadlock",
            solution="Order the locks to avoid the deadlock",
        )

        assert [n.id for n in learning_service.search("deadlock")] == [strong, weak]

    def test_results_are_full_notes(self, learning_service, sample_notes):
        note = learning_service.search("leak")[0]
        assert note.root_cause == "Cursor kept alive by a cache"
        assert note.created_at and note.updated_at


class TestSearchScopeAndLimits:
    """Tests for repository scoping and result limits."""

    def test_repo_scope(self, learning_service, make_note):
        a = make_note(repo_key="repo-a", title="shared keyword")
        make_note(repo_key="repo-b", title="shared keyword")

        assert [n.id for n in learning_service.search("keyword", repo_key="repo-a")] == [a]
        assert len(learning_service.search("keyword")) == 2
        assert learning_service.search("keyword", repo_key="repo-c") == []

    def test_limit(self, learning_service, make_note):
        for i in range(10):
            make_note(title=f"Retry storm {i}")
        assert len(learning_service.search("storm", limit=5)) == 5

    def test_default_limit(self, learning_service, make_note):
        for i in range(12):
            make_note(title=f"Retry storm {i}")
        assert len(learning_service.search("storm")) == 10

    @pytest.mark.parametrize("limit", [0, -3])
    def test_non_positive_limit_uses_default(self, learning_service, make_note, limit):
        for i in range(12):
            make_note(title=f"Retry storm {i}")
        assert len(learning_service.search("storm", limit=limit)) == 10

    @pytest.mark.parametrize("limit", [None, 0, -3])
    def test_every_default_follows_config(self, learning_service, note_repository, make_note, monkeypatch, limit):
        """Omitted and non-positive limits share config.default_search_limit."""
        monkeypatch.setattr(config, "default_search_limit", 3)
        for i in range(5):
            make_note(title=f"Retry storm {i}")

        assert len(learning_service.search("storm", limit=limit)) == 3
        assert len(note_repository.search("storm", limit=limit)) == 3
        assert len(note_repository.index.search("storm", limit=limit)) == 3

    @pytest.mark.parametrize("query", ["", "   ", None])
    def test_blank_query_returns_nothing(self, learning_service, sample_notes, query):
        assert learning_service.search(query) == []

    @pytest.mark.parametrize("query", ["", "   ", None])
    def test_blank_query_opens_no_session(self, note_repository, query):
        with patch.object(note_repository.index, "_session_factory") as session_factory:
            assert note_repository.search(query) == []
        session_factory.assert_not_called()


class TestSearchErrors:
    """Invalid FTS5 syntax is reported, not swallowed."""

    @pytest.mark.parametrize("query", ['"unbalanced', "leak AND", "(leak"])
    def test_invalid_syntax_raises(self, learning_service, sample_notes, query):
        with pytest.raises(SearchError) as exc_info:
            learning_service.search(query)
        assert exc_info.value.code == ErrorCode.SEARCH_INVALID_QUERY
        assert exc_info.value.query == query

    def test_search_error_counted_in_metrics(self, learning_service, sample_notes, isolated_metrics):
        with pytest.raises(SearchError):
            learning_service.search('"unbalanced')
        stats = isolated_metrics.get_metrics()["search"]
        assert stats["error_count"] == 1
