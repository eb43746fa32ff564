"""Saved searches per project."""

import logging
from typing import Any, Optional

from ..storage.database import from_json, to_json
from ..storage.models import SearchHistoryEntry, User
from .base import BaseService

logger = logging.getLogger(__name__)


def _row_to_entry(row) -> SearchHistoryEntry:
    return SearchHistoryEntry(
        id=row["id"],
        project_id=row["project_id"],
        user_id=row["user_id"],
        database_name=row["database_name"],
        query=row["query"],
        filters=from_json(row["filters"], {}),
        result_count=row["result_count"],
        created_at=row["created_at"],
    )


class SearchHistoryService(BaseService):
    """Record the searches run for a project and list them back."""

    service_name = "search_history"

    def save_search_query(
        self,
        user: User,
        project_id: str,
        query: str,
        result_count: int,
        filters: Optional[dict[str, Any]] = None,
        database_name: str = "pubmed",
    ) -> SearchHistoryEntry:
        """
        Store one executed search.

        Args:
            user: Calling user
            project_id: Project the search was run for
            query: The query string sent to the database
            result_count: Total matches reported
            filters: Structured filters behind the query
            database_name: Literature database searched
        """
        user = self.require_user(user)
        self.require_project(user, project_id)
        entry = SearchHistoryEntry(
            project_id=project_id,
            user_id=user.id,
            database_name=database_name,
            query=query,
            filters=filters or {},
            result_count=max(0, int(result_count)),
        )
        with self.database.transaction() as conn:
            conn.execute("""
                INSERT INTO search_history (id, project_id, user_id, database_name, query, filters, result_count, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                entry.id,
                entry.project_id,
                entry.user_id,
                entry.database_name,
                entry.query,
                to_json(entry.filters),
                entry.result_count,
                entry.created_at.isoformat(),
            ))
            self.touch_project(project_id, conn)
        logger.info(f"Saved {database_name} search for {project_id} ({entry.result_count} results)")
        return entry

    def get_search_history(self, user: User, project_id: str, limit: Optional[int] = None) -> list[SearchHistoryEntry]:
        """Searches for a project, newest first."""
        self.require_project(user, project_id)
        sql = "SELECT * FROM search_history WHERE project_id = ? ORDER BY created_at DESC, rowid DESC"
        params: tuple = (project_id,)
        if limit is not None:
            sql += " LIMIT ?"
            params = (project_id, limit)
        return [_row_to_entry(row) for row in self.database.fetch_all(sql, params)]
