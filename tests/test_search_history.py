"""Tests for SearchHistoryService."""

import pytest

from searchmatic.errors import AuthenticationError, NotFoundError
from searchmatic.services import SearchHistoryService


@pytest.fixture
def history(database):
    return SearchHistoryService(database)


class TestSearchHistory:
    """Tests for saving and listing searches."""

    def test_save_and_list_newest_first(self, history, user, project):
        """Test that entries come back newest first with their filters."""
        history.save_search_query(user, project.id, "(exercise)", 120, {"query": "exercise", "max_results": 50})
        history.save_search_query(user, project.id, "(yoga)", 7)

        entries = history.get_search_history(user, project.id)

        assert [e.query for e in entries] == ["(yoga)", "(exercise)"]
        assert entries[1].result_count == 120
        assert entries[1].filters == {"query": "exercise", "max_results": 50}
        assert entries[0].filters == {}
        assert entries[0].database_name == "pubmed"
        assert entries[0].user_id == user.id

    def test_limit(self, history, user, project):
        for term in ("a", "b", "c"):
            history.save_search_query(user, project.id, term, 1)
        assert [e.query for e in history.get_search_history(user, project.id, limit=2)] == ["c", "b"]

    def test_negative_count_stored_as_zero(self, history, user, project):
        assert history.save_search_query(user, project.id, "q", -5).result_count == 0

    def test_scoped_to_owner(self, history, user, other_user, project):
        """Test that another user can neither read nor write the history."""
        history.save_search_query(user, project.id, "(exercise)", 3)

        with pytest.raises(NotFoundError):
            history.get_search_history(other_user, project.id)
        with pytest.raises(NotFoundError):
            history.save_search_query(other_user, project.id, "(hijack)", 1)

    def test_requires_user(self, history, project):
        with pytest.raises(AuthenticationError):
            history.save_search_query(None, project.id, "q", 1)

    def test_removed_with_project(self, history, projects, user, project, database):
        history.save_search_query(user, project.id, "(exercise)", 3)
        projects.delete_project(user, project.id)
        assert database.fetch_one("SELECT COUNT(*) AS n FROM search_history")["n"] == 0
