"""Project CRUD, statistics and dashboard figures."""

import logging
import math
from datetime import datetime
from typing import Optional

from ..errors import NotFoundError, ValidationError
from ..storage.models import (
    DashboardStats,
    Project,
    ProjectAnalytics,
    ProjectStats,
    ProjectStatus,
    ProjectType,
    ProjectWithStats,
    User,
)
from .base import BaseService, build_update

logger = logging.getLogger(__name__)

STATUS_DISPLAY = {
    ProjectStatus.DRAFT: ("Draft", "gray"),
    ProjectStatus.ACTIVE: ("Active", "blue"),
    ProjectStatus.REVIEW: ("In Review", "orange"),
    ProjectStatus.COMPLETED: ("Completed", "green"),
    ProjectStatus.ARCHIVED: ("Archived", "red"),
}

UPDATABLE_FIELDS = {
    "title",
    "description",
    "project_type",
    "status",
    "research_domain",
    "progress_percentage",
    "current_stage",
}


def get_status_display(status: str) -> str:
    """Human label for a project status; unknown values pass through."""
    try:
        return STATUS_DISPLAY[ProjectStatus(status)][0]
    except ValueError:
        return status


def get_status_color(status: str) -> str:
    try:
        return STATUS_DISPLAY[ProjectStatus(status)][1]
    except ValueError:
        return "gray"


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def _percent(part: int, whole: int) -> int:
    if whole <= 0:
        return 0
    return _round_half_up(part / whole * 100)


def _row_to_project(row) -> Project:
    return Project(
        id=row["id"],
        user_id=row["user_id"],
        title=row["title"],
        description=row["description"],
        project_type=row["project_type"],
        status=row["status"],
        research_domain=row["research_domain"],
        progress_percentage=row["progress_percentage"],
        current_stage=row["current_stage"],
        last_activity_at=row["last_activity_at"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class ProjectService(BaseService):
    """Create, list, update and delete review projects."""

    service_name = "projectService"

    def create_project(
        self,
        user: User,
        title: str,
        description: Optional[str] = None,
        project_type: ProjectType | str = ProjectType.SYSTEMATIC_REVIEW,
        research_domain: Optional[str] = None,
    ) -> Project:
        user = self.require_user(user)
        if not (title or "").strip():
            raise ValidationError("Project title is required")

        project = Project(
            user_id=user.id,
            title=title.strip(),
            description=description,
            project_type=project_type,
            research_domain=research_domain,
        )

        def _insert():
            with self.database.transaction() as conn:
                conn.execute("""
                    INSERT INTO projects (
                        id, user_id, title, description, project_type, status,
                        research_domain, progress_percentage, current_stage,
                        last_activity_at, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    project.id,
                    project.user_id,
                    project.title,
                    project.description,
                    project.project_type.value,
                    project.status.value,
                    project.research_domain,
                    project.progress_percentage,
                    project.current_stage,
                    project.last_activity_at.isoformat(),
                    project.created_at.isoformat(),
                    project.updated_at.isoformat(),
                ))
            return project

        return self.execute("createProject", _insert, {"title": project.title})

    def list_projects(self, user: User) -> list[ProjectWithStats]:
        """All of the user's projects, most recently active first."""
        user = self.require_user(user)
        rows = self.database.fetch_all(
            "SELECT * FROM projects WHERE user_id = ? ORDER BY last_activity_at DESC",
            (user.id,),
        )
        stats = self._stats_by_project(user.id)
        return [
            ProjectWithStats(**_row_to_project(row).model_dump(), stats=stats.get(row["id"], ProjectStats()))
            for row in rows
        ]

    def get_project(self, user: User, project_id: str) -> Optional[ProjectWithStats]:
        user = self.require_user(user)
        row = self.database.fetch_one(
            "SELECT * FROM projects WHERE id = ? AND user_id = ?",
            (project_id, user.id),
        )
        if row is None:
            return None
        return ProjectWithStats(**_row_to_project(row).model_dump(), stats=self._compute_stats(project_id))

    def update_project(self, user: User, project_id: str, **updates) -> Project:
        """Update allowed fields; touches updated_at and last_activity_at."""
        self.require_project(user, project_id)

        if "title" in updates and not (updates["title"] or "").strip():
            raise ValidationError("Project title is required")
        if "progress_percentage" in updates:
            progress = int(updates["progress_percentage"])
            if not 0 <= progress <= 100:
                raise ValidationError("Progress must be between 0 and 100")
        if "status" in updates:
            updates["status"] = ProjectStatus(updates["status"])
        if "project_type" in updates:
            updates["project_type"] = ProjectType(updates["project_type"])

        set_clause, params = build_update(updates, UPDATABLE_FIELDS)
        now = datetime.now().isoformat()
        set_clause = f"{set_clause}, " if set_clause else ""

        def _update():
            with self.database.transaction() as conn:
                conn.execute(
                    f"UPDATE projects SET {set_clause}updated_at = ?, last_activity_at = ? "
                    "WHERE id = ? AND user_id = ?",
                    (*params, now, now, project_id, user.id),
                )
            return self.get_project(user, project_id)

        return self.execute("updateProject", _update, {"project_id": project_id})

    def delete_project(self, user: User, project_id: str) -> None:
        """Delete a project; dependent rows go with it through ON DELETE CASCADE."""
        self.require_project(user, project_id)

        def _delete():
            with self.database.transaction() as conn:
                conn.execute(
                    "DELETE FROM projects WHERE id = ? AND user_id = ?",
                    (project_id, user.id),
                )

        self.execute("deleteProject", _delete, {"project_id": project_id})

    # =========================================================================
    # STATISTICS
    # =========================================================================

    def _compute_stats(self, project_id: str) -> ProjectStats:
        row = self.database.fetch_one("""
            SELECT
                COUNT(*) AS total,
                SUM(CASE WHEN status IN ('pending', 'screening') THEN 1 ELSE 0 END) AS pending,
                SUM(CASE WHEN status = 'included' THEN 1 ELSE 0 END) AS included,
                SUM(CASE WHEN status = 'excluded' THEN 1 ELSE 0 END) AS excluded,
                SUM(CASE WHEN status = 'duplicate' THEN 1 ELSE 0 END) AS duplicates,
                MAX(updated_at) AS last_updated
            FROM studies WHERE project_id = ?
        """, (project_id,))
        return ProjectStats(
            total_studies=row["total"] or 0,
            pending_studies=row["pending"] or 0,
            included_studies=row["included"] or 0,
            excluded_studies=row["excluded"] or 0,
            duplicate_studies=row["duplicates"] or 0,
            last_updated=row["last_updated"],
        )

    def _stats_by_project(self, user_id: str) -> dict[str, ProjectStats]:
        rows = self.database.fetch_all("""
            SELECT
                s.project_id AS project_id,
                COUNT(*) AS total,
                SUM(CASE WHEN s.status IN ('pending', 'screening') THEN 1 ELSE 0 END) AS pending,
                SUM(CASE WHEN s.status = 'included' THEN 1 ELSE 0 END) AS included,
                SUM(CASE WHEN s.status = 'excluded' THEN 1 ELSE 0 END) AS excluded,
                SUM(CASE WHEN s.status = 'duplicate' THEN 1 ELSE 0 END) AS duplicates,
                MAX(s.updated_at) AS last_updated
            FROM studies s JOIN projects p ON p.id = s.project_id
            WHERE p.user_id = ?
            GROUP BY s.project_id
        """, (user_id,))
        return {
            row["project_id"]: ProjectStats(
                total_studies=row["total"],
                pending_studies=row["pending"] or 0,
                included_studies=row["included"] or 0,
                excluded_studies=row["excluded"] or 0,
                duplicate_studies=row["duplicates"] or 0,
                last_updated=row["last_updated"],
            )
            for row in rows
        }

    def get_project_stats(self, user: User, project_id: str) -> ProjectStats:
        self.require_project(user, project_id)
        return self._compute_stats(project_id)

    def get_project_analytics(self, user: User, project_id: str) -> ProjectAnalytics:
        """Screening completion and inclusion rates, as whole percentages."""
        stats = self.get_project_stats(user, project_id)
        screened = stats.included_studies + stats.excluded_studies
        return ProjectAnalytics(
            stats=stats,
            completion_rate=_percent(screened, stats.total_studies),
            inclusion_rate=_percent(stats.included_studies, screened),
        )

    def get_dashboard_stats(self, user: User) -> DashboardStats:
        user = self.require_user(user)
        row = self.database.fetch_one("""
            SELECT
                COUNT(*) AS total,
                SUM(CASE WHEN status = 'active' THEN 1 ELSE 0 END) AS active,
                SUM(CASE WHEN status = 'completed' THEN 1 ELSE 0 END) AS completed,
                AVG(progress_percentage) AS avg_progress
            FROM projects WHERE user_id = ?
        """, (user.id,))
        return DashboardStats(
            total_projects=row["total"] or 0,
            active_projects=row["active"] or 0,
            completed_projects=row["completed"] or 0,
            average_progress=_round_half_up(row["avg_progress"] or 0),
        )

    def require_existing(self, user: User, project_id: str) -> ProjectWithStats:
        project = self.get_project(user, project_id)
        if project is None:
            raise NotFoundError("Project", project_id)
        return project
