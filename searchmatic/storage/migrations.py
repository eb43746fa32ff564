"""Schema migrations executed against the workspace SQLite database."""

import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from ..errors import MigrationError

logger = logging.getLogger(__name__)


@dataclass
class Migration:
    """A named schema change with an optional down script."""
    id: str
    name: str
    up_sql: str
    down_sql: str = ""


@dataclass
class MigrationRecord:
    migration_id: str
    migration_name: str
    applied_at: datetime
    success: bool
    error_message: Optional[str] = None


@dataclass
class MigrationResult:
    success: bool
    message: str
    applied: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


class MigrationEngine:
    """Apply and roll back migrations, recording each outcome."""

    def __init__(self, database):
        self.database = database
        self._initialized = False

    def _connect(self) -> sqlite3.Connection:
        conn = self.database.connect()
        # Transactions are managed explicitly in the scripts
        conn.isolation_level = None
        return conn

    def initialize(self) -> None:
        """Create the schema_migrations bookkeeping table."""
        if self._initialized:
            return
        conn = self._connect()
        try:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS schema_migrations (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    migration_id TEXT NOT NULL UNIQUE,
                    migration_name TEXT NOT NULL,
                    applied_at TEXT NOT NULL,
                    success INTEGER NOT NULL DEFAULT 1,
                    error_message TEXT
                )
            """)
        finally:
            conn.close()
        self._initialized = True

    def get_applied_migrations(self) -> list[str]:
        """Ids of migrations that completed successfully."""
        self.initialize()
        rows = self.database.fetch_all(
            "SELECT migration_id FROM schema_migrations WHERE success = 1 ORDER BY id"
        )
        return [row["migration_id"] for row in rows]

    def _record(self, conn: sqlite3.Connection, migration: Migration, success: bool, error: Optional[str] = None):
        conn.execute(
            """
            INSERT OR REPLACE INTO schema_migrations
                (migration_id, migration_name, applied_at, success, error_message)
            VALUES (?, ?, ?, ?, ?)
            """,
            (migration.id, migration.name, datetime.now().isoformat(), 1 if success else 0, error),
        )

    def _run_script(self, conn: sqlite3.Connection, sql: str, bookkeeping) -> None:
        """Run a script and its schema_migrations change as one transaction."""
        try:
            conn.executescript(f"BEGIN;\n{sql}")
            bookkeeping(conn)
            conn.execute("COMMIT")
        except sqlite3.Error:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise

    def apply_migration(self, migration: Migration) -> bool:
        """
        Execute one migration in a transaction.

        Returns:
            True if the DDL ran and was recorded, False if it failed. A
            failure rolls back the DDL and is recorded with its error.
        """
        self.initialize()
        conn = self._connect()
        try:
            logger.info(f"Applying migration {migration.id}: {migration.name}")
            try:
                self._run_script(
                    conn, migration.up_sql, lambda c: self._record(c, migration, success=True)
                )
            except sqlite3.Error as e:
                logger.error(f"Migration {migration.id} failed: {e}")
                self._record(conn, migration, success=False, error=str(e))
                return False
            return True
        finally:
            conn.close()

    def apply_migrations(self, migrations: list[Migration]) -> MigrationResult:
        """Apply pending migrations in order, stopping at the first failure."""
        applied_ids = set(self.get_applied_migrations())
        pending = [m for m in migrations if m.id not in applied_ids]

        if not pending:
            return MigrationResult(success=True, message="All migrations already applied")

        applied, failed = [], []
        for migration in pending:
            if self.apply_migration(migration):
                applied.append(migration.id)
            else:
                failed.append(migration.id)
                break

        if failed:
            message = f"Applied {len(applied)} migrations, {len(failed)} failed"
        else:
            message = f"Successfully applied {len(applied)} migrations"
        logger.info(message)
        return MigrationResult(success=not failed, message=message, applied=applied, failed=failed)

    def rollback_migration(self, migration: Migration) -> None:
        """Run the down script and forget the migration."""
        if migration.id not in self.get_applied_migrations():
            raise MigrationError(f"Migration {migration.id} is not applied")
        if not migration.down_sql.strip():
            raise MigrationError(f"Migration {migration.id} has no down script")

        conn = self._connect()
        try:
            try:
                self._run_script(
                    conn,
                    migration.down_sql,
                    lambda c: c.execute("DELETE FROM schema_migrations WHERE migration_id = ?", (migration.id,)),
                )
            except sqlite3.Error as e:
                raise MigrationError(f"Rollback of {migration.id} failed: {e}") from e
            logger.info(f"Rolled back migration {migration.id}")
        finally:
            conn.close()

    def get_migration_history(self) -> list[MigrationRecord]:
        self.initialize()
        rows = self.database.fetch_all(
            "SELECT * FROM schema_migrations ORDER BY applied_at, id"
        )
        return [
            MigrationRecord(
                migration_id=row["migration_id"],
                migration_name=row["migration_name"],
                applied_at=datetime.fromisoformat(row["applied_at"]),
                success=bool(row["success"]),
                error_message=row["error_message"],
            )
            for row in rows
        ]


# =============================================================================
# CORE SCHEMA
# =============================================================================

CORE_MIGRATIONS = [
    Migration(
        id="001",
        name="users_and_projects",
        up_sql="""
            CREATE TABLE users (
                id TEXT PRIMARY KEY,
                email TEXT NOT NULL UNIQUE,
                password_hash TEXT NOT NULL,
                full_name TEXT,
                organization TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );
            CREATE TABLE revoked_tokens (
                jti TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                revoked_at TEXT NOT NULL,
                expires_at TEXT
            );
            CREATE TABLE projects (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                title TEXT NOT NULL,
                description TEXT,
                project_type TEXT NOT NULL DEFAULT 'systematic_review',
                status TEXT NOT NULL DEFAULT 'draft',
                research_domain TEXT,
                progress_percentage INTEGER NOT NULL DEFAULT 0,
                current_stage TEXT NOT NULL DEFAULT 'Planning',
                last_activity_at TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );
            CREATE INDEX idx_projects_user ON projects(user_id);
        """,
        down_sql="""
            DROP TABLE projects;
            DROP TABLE revoked_tokens;
            DROP TABLE users;
        """,
    ),
    Migration(
        id="002",
        name="protocols",
        up_sql="""
            CREATE TABLE protocols (
                id TEXT PRIMARY KEY,
                project_id TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
                user_id TEXT NOT NULL,
                title TEXT NOT NULL,
                description TEXT,
                research_question TEXT,
                framework_type TEXT NOT NULL DEFAULT 'pico',
                population TEXT,
                intervention TEXT,
                comparison TEXT,
                outcome TEXT,
                sample TEXT,
                phenomenon TEXT,
                design TEXT,
                evaluation TEXT,
                research_type TEXT,
                inclusion_criteria TEXT,
                exclusion_criteria TEXT,
                search_strategy TEXT,
                databases TEXT,
                keywords TEXT,
                study_types TEXT,
                status TEXT NOT NULL DEFAULT 'draft',
                is_locked INTEGER NOT NULL DEFAULT 0,
                locked_at TEXT,
                version INTEGER NOT NULL DEFAULT 1,
                ai_generated INTEGER NOT NULL DEFAULT 0,
                ai_guidance_used TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );
            CREATE INDEX idx_protocols_project ON protocols(project_id);
            CREATE TABLE protocol_guidance (
                project_id TEXT PRIMARY KEY REFERENCES projects(id) ON DELETE CASCADE,
                user_id TEXT NOT NULL,
                request_type TEXT NOT NULL,
                review_type TEXT,
                focus_area TEXT,
                guidance TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );
        """,
        down_sql="""
            DROP TABLE protocol_guidance;
            DROP TABLE protocols;
        """,
    ),
    Migration(
        id="003",
        name="conversations",
        up_sql="""
            CREATE TABLE conversations (
                id TEXT PRIMARY KEY,
                project_id TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
                user_id TEXT NOT NULL,
                title TEXT NOT NULL DEFAULT 'New Conversation',
                context TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );
            CREATE TABLE messages (
                id TEXT PRIMARY KEY,
                conversation_id TEXT NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
                role TEXT NOT NULL CHECK (role IN ('user', 'assistant', 'system')),
                content TEXT NOT NULL,
                metadata TEXT,
                created_at TEXT NOT NULL
            );
            CREATE INDEX idx_conversations_project ON conversations(project_id);
            CREATE INDEX idx_messages_conversation ON messages(conversation_id, created_at);
        """,
        down_sql="""
            DROP TABLE messages;
            DROP TABLE conversations;
        """,
    ),
    Migration(
        id="004",
        name="studies",
        up_sql="""
            CREATE TABLE studies (
                id TEXT PRIMARY KEY,
                project_id TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
                user_id TEXT NOT NULL,
                title TEXT NOT NULL,
                authors TEXT,
                publication_year INTEGER,
                publication_date TEXT,
                journal TEXT,
                doi TEXT,
                pmid TEXT,
                url TEXT,
                abstract TEXT,
                keywords TEXT,
                study_type TEXT NOT NULL DEFAULT 'article',
                status TEXT NOT NULL DEFAULT 'pending',
                screening_notes TEXT,
                screening_decision TEXT,
                quality_score REAL,
                is_duplicate INTEGER NOT NULL DEFAULT 0,
                duplicate_of TEXT REFERENCES studies(id) ON DELETE SET NULL,
                similarity_hash TEXT,
                extraction_data TEXT,
                source TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );
            CREATE INDEX idx_studies_project ON studies(project_id, status);
            CREATE INDEX idx_studies_pmid ON studies(project_id, pmid);
            CREATE INDEX idx_studies_doi ON studies(project_id, doi);
        """,
        down_sql="DROP TABLE studies;",
    ),
    Migration(
        id="005",
        name="extraction",
        up_sql="""
            CREATE TABLE extraction_templates (
                id TEXT PRIMARY KEY,
                project_id TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
                user_id TEXT NOT NULL,
                name TEXT NOT NULL,
                description TEXT,
                fields TEXT NOT NULL,
                is_active INTEGER NOT NULL DEFAULT 1,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );
            CREATE TABLE study_extractions (
                id TEXT PRIMARY KEY,
                study_id TEXT NOT NULL REFERENCES studies(id) ON DELETE CASCADE,
                template_id TEXT NOT NULL REFERENCES extraction_templates(id) ON DELETE CASCADE,
                project_id TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
                extracted_values TEXT NOT NULL,
                extracted_by TEXT NOT NULL DEFAULT 'manual',
                notes TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                UNIQUE (study_id, template_id)
            );
        """,
        down_sql="""
            DROP TABLE study_extractions;
            DROP TABLE extraction_templates;
        """,
    ),
    Migration(
        id="006",
        name="duplicates_exports_audit",
        up_sql="""
            CREATE TABLE duplicate_detections (
                id TEXT PRIMARY KEY,
                project_id TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
                study_id TEXT NOT NULL REFERENCES studies(id) ON DELETE CASCADE,
                duplicate_of TEXT NOT NULL REFERENCES studies(id) ON DELETE CASCADE,
                similarity_score REAL NOT NULL,
                matched_fields TEXT,
                status TEXT NOT NULL DEFAULT 'potential',
                created_at TEXT NOT NULL,
                UNIQUE (study_id, duplicate_of)
            );
            CREATE TABLE export_logs (
                id TEXT PRIMARY KEY,
                project_id TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
                user_id TEXT NOT NULL,
                export_format TEXT NOT NULL,
                record_count INTEGER NOT NULL DEFAULT 0,
                file_name TEXT,
                filters TEXT,
                created_at TEXT NOT NULL
            );
            CREATE TABLE ai_audit_log (
                id TEXT PRIMARY KEY,
                user_id TEXT,
                project_id TEXT,
                operation TEXT NOT NULL,
                prompt TEXT NOT NULL,
                response TEXT NOT NULL,
                success INTEGER NOT NULL DEFAULT 1,
                error_message TEXT,
                input_tokens INTEGER NOT NULL DEFAULT 0,
                output_tokens INTEGER NOT NULL DEFAULT 0,
                cost REAL NOT NULL DEFAULT 0,
                model TEXT,
                timestamp TEXT NOT NULL
            );
            CREATE INDEX idx_audit_operation ON ai_audit_log(operation);
            CREATE INDEX idx_audit_project ON ai_audit_log(project_id);
        """,
        down_sql="""
            DROP TABLE ai_audit_log;
            DROP TABLE export_logs;
            DROP TABLE duplicate_detections;
        """,
    ),
    Migration(
        id="007",
        name="search_history",
        up_sql="""
            CREATE TABLE search_history (
                id TEXT PRIMARY KEY,
                project_id TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
                user_id TEXT NOT NULL,
                database_name TEXT NOT NULL DEFAULT 'pubmed',
                query TEXT NOT NULL,
                filters TEXT,
                result_count INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL
            );
            CREATE INDEX idx_search_history_project ON search_history(project_id, created_at);
        """,
        down_sql="""
            DROP TABLE search_history;
        """,
    ),
]
