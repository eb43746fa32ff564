"""Shared plumbing for Searchmatic services."""

import logging
import time
from datetime import datetime
from typing import Any, Callable, Optional, TypeVar

from ..errors import AuthenticationError, NotFoundError
from ..storage.models import User

logger = logging.getLogger(__name__)

T = TypeVar("T")


class BaseService:
    """
    Base class for database-backed services.

    Every public operation takes the calling User and only touches rows
    that user owns; rows owned by someone else behave as if missing.
    """

    service_name = "service"

    def __init__(self, database):
        self.database = database

    def execute(self, action: str, operation: Callable[[], T], metadata: Optional[dict] = None) -> T:
        """
        Run an operation with timing and consistent logging.

        Failures are logged with their duration and re-raised unchanged.
        """
        name = f"{self.service_name}.{action}"
        logger.debug(f"Executing {name} {metadata or ''}")
        start = time.perf_counter()
        try:
            result = operation()
        except Exception as e:
            duration_ms = (time.perf_counter() - start) * 1000
            logger.error(f"{name} failed after {duration_ms:.1f}ms: {e}")
            raise
        duration_ms = (time.perf_counter() - start) * 1000
        logger.info(f"Completed {name} in {duration_ms:.1f}ms")
        return result

    @staticmethod
    def require_user(user: Optional[User]) -> User:
        if user is None:
            raise AuthenticationError()
        return user

    def require_project(self, user: Optional[User], project_id: str):
        """Return the project row owned by user or raise NotFoundError."""
        user = self.require_user(user)
        row = self.database.fetch_one(
            "SELECT * FROM projects WHERE id = ? AND user_id = ?",
            (project_id, user.id),
        )
        if row is None:
            raise NotFoundError("Project", project_id)
        return row

    def touch_project(self, project_id: str, conn=None) -> None:
        """Bump the project's last activity timestamp."""
        sql = "UPDATE projects SET last_activity_at = ? WHERE id = ?"
        params = (datetime.now().isoformat(), project_id)
        if conn is not None:
            conn.execute(sql, params)
            return
        with self.database.transaction() as c:
            c.execute(sql, params)


def build_update(updates: dict[str, Any], allowed: set[str], encoders: Optional[dict] = None) -> tuple[str, list]:
    """
    Turn a dict of column updates into a SET clause.

    Unknown keys are ignored; encoders map column names to value converters
    (JSON columns, enums).
    """
    encoders = encoders or {}
    columns, params = [], []
    for key, value in updates.items():
        if key not in allowed:
            continue
        if key in encoders:
            value = encoders[key](value)
        elif hasattr(value, "value"):
            value = value.value
        columns.append(f"{key} = ?")
        params.append(value)
    return ", ".join(columns), params
