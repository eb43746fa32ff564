"""SQLite connection handling for the Searchmatic workspace database."""

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator, Optional

from config.settings import get_settings

from ..errors import MigrationError
from .migrations import CORE_MIGRATIONS, MigrationEngine

logger = logging.getLogger(__name__)


def to_json(value: Any) -> str:
    """Encode a list/dict column."""
    return json.dumps(value, default=str)


def from_json(value: Optional[str], default: Any = None) -> Any:
    """Decode a list/dict column, returning default for NULL."""
    if value is None or value == "":
        return default
    return json.loads(value)


def now_iso() -> str:
    return datetime.now().isoformat()


class Database:
    """Thin wrapper around a single SQLite file."""

    def __init__(self, path: Path | str):
        """
        Args:
            path: Database file path. The parent directory is created if needed.
        """
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def connect(self) -> sqlite3.Connection:
        """Open a connection with Row results and foreign keys enforced."""
        conn = sqlite3.connect(self.path, timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Commit on success, roll back on error, always close."""
        conn = self.connect()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def fetch_one(self, sql: str, params: tuple = ()) -> Optional[sqlite3.Row]:
        conn = self.connect()
        try:
            return conn.execute(sql, params).fetchone()
        finally:
            conn.close()

    def fetch_all(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        conn = self.connect()
        try:
            return conn.execute(sql, params).fetchall()
        finally:
            conn.close()

    def initialize(self):
        """Bring the schema up to date."""
        engine = MigrationEngine(self)
        result = engine.apply_migrations(CORE_MIGRATIONS)
        if not result.success:
            raise MigrationError(result.message)
        logger.debug(result.message)
        return result


def get_database(settings=None) -> Database:
    """Create and initialize the workspace database from settings."""
    if settings is None:
        settings = get_settings()
    settings.ensure_directories()
    database = Database(settings.database_path)
    database.initialize()
    return database
