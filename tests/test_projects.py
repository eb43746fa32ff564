"""Tests for ProjectService."""

import pytest

from searchmatic.errors import AuthenticationError, NotFoundError, ValidationError
from searchmatic.services import get_status_color, get_status_display
from searchmatic.storage import ProjectStatus, ProjectType, StudyStatus


class TestCreateProject:
    """Tests for ProjectService.create_project."""

    def test_defaults(self, projects, user):
        """Test a new project's defaults."""
        project = projects.create_project(user, "  Statins and dementia  ")

        assert project.title == "Statins and dementia"
        assert project.user_id == user.id
        assert project.status == ProjectStatus.DRAFT
        assert project.project_type == ProjectType.SYSTEMATIC_REVIEW
        assert project.progress_percentage == 0
        assert project.current_stage == "Planning"

    def test_empty_title(self, projects, user):
        """Test that a title is required."""
        with pytest.raises(ValidationError, match="title is required"):
            projects.create_project(user, "   ")

    def test_requires_user(self, projects):
        """Test that anonymous calls are rejected."""
        with pytest.raises(AuthenticationError):
            projects.create_project(None, "Title")

    def test_project_type(self, projects, user):
        """Test choosing a project type by value."""
        project = projects.create_project(user, "Scoping", project_type="scoping_review")
        assert project.project_type == ProjectType.SCOPING_REVIEW


class TestReadProjects:
    """Tests for listing and fetching projects."""

    def test_list_is_scoped_to_owner(self, projects, user, other_user, project):
        """Test that users only see their own projects."""
        projects.create_project(other_user, "Bob's review")

        mine = projects.list_projects(user)
        assert [p.id for p in mine] == [project.id]
        assert len(projects.list_projects(other_user)) == 1

    def test_list_most_recent_activity_first(self, projects, user, project):
        """Test ordering by last activity."""
        second = projects.create_project(user, "Second")
        projects.update_project(user, project.id, current_stage="Screening")

        assert [p.id for p in projects.list_projects(user)] == [project.id, second.id]

    def test_list_includes_stats(self, projects, user, project, make_study, studies):
        """Test per-project study counts in the listing."""
        make_study("A")
        included = make_study("B")
        studies.update_status(user, included.id, StudyStatus.INCLUDED)

        listed = projects.list_projects(user)[0]
        assert listed.stats.total_studies == 2
        assert listed.stats.pending_studies == 1
        assert listed.stats.included_studies == 1

    def test_get_other_users_project(self, projects, other_user, project):
        """Test that another user's project looks missing."""
        assert projects.get_project(other_user, project.id) is None

    def test_get_missing(self, projects, user):
        assert projects.get_project(user, "missing") is None

    def test_require_existing(self, projects, user):
        with pytest.raises(NotFoundError):
            projects.require_existing(user, "missing")


class TestUpdateProject:
    """Tests for ProjectService.update_project."""

    def test_update_fields(self, projects, user, project):
        """Test that allowed fields change and unknown keys are ignored."""
        updated = projects.update_project(
            user, project.id, status="active", progress_percentage=40, owner="ignored"
        )
        assert updated.status == ProjectStatus.ACTIVE
        assert updated.progress_percentage == 40
        assert updated.updated_at >= project.updated_at

    def test_progress_range(self, projects, user, project):
        """Test the progress bounds."""
        with pytest.raises(ValidationError, match="between 0 and 100"):
            projects.update_project(user, project.id, progress_percentage=120)

    def test_blank_title(self, projects, user, project):
        with pytest.raises(ValidationError):
            projects.update_project(user, project.id, title="")

    def test_not_owner(self, projects, other_user, project):
        """Test that only the owner can update."""
        with pytest.raises(NotFoundError):
            projects.update_project(other_user, project.id, title="Hijacked")


class TestDeleteProject:
    """Tests for ProjectService.delete_project."""

    def test_cascades_to_studies(self, projects, user, project, make_study, database):
        """Test that studies are removed with their project."""
        make_study("Doomed study")
        projects.delete_project(user, project.id)

        assert projects.get_project(user, project.id) is None
        assert database.fetch_one("SELECT COUNT(*) AS n FROM studies")["n"] == 0

    def test_not_owner(self, projects, other_user, project):
        with pytest.raises(NotFoundError):
            projects.delete_project(other_user, project.id)


class TestProjectStatistics:
    """Tests for project statistics and analytics."""

    def test_analytics(self, projects, studies, user, project, make_study):
        """Test completion and inclusion rates as whole percentages."""
        made = [make_study(f"Study {i}") for i in range(4)]
        studies.update_status(user, made[0].id, "included")
        studies.update_status(user, made[1].id, "excluded")
        studies.update_status(user, made[2].id, "excluded")

        analytics = projects.get_project_analytics(user, project.id)
        assert analytics.stats.total_studies == 4
        assert analytics.completion_rate == 75
        assert analytics.inclusion_rate == 33

    def test_rates_round_half_up(self, projects, studies, user, project, make_study):
        """Test that 12.5% rounds up to 13%."""
        made = [make_study(f"Study {i}") for i in range(8)]
        studies.update_status(user, made[0].id, "included")

        analytics = projects.get_project_analytics(user, project.id)
        assert analytics.completion_rate == 13
        assert analytics.inclusion_rate == 100

    def test_average_progress_rounds_half_up(self, projects, user, project):
        projects.create_project(user, "Second")
        projects.update_project(user, project.id, progress_percentage=25)

        assert projects.get_dashboard_stats(user).average_progress == 13

    def test_analytics_empty_project(self, projects, user, project):
        """Test that empty projects have zero rates."""
        analytics = projects.get_project_analytics(user, project.id)
        assert analytics.completion_rate == 0
        assert analytics.inclusion_rate == 0

    def test_dashboard(self, projects, user, project):
        """Test dashboard totals across projects."""
        second = projects.create_project(user, "Second")
        projects.update_project(user, project.id, status="active", progress_percentage=50)
        projects.update_project(user, second.id, status="completed", progress_percentage=100)

        stats = projects.get_dashboard_stats(user)
        assert stats.total_projects == 2
        assert stats.active_projects == 1
        assert stats.completed_projects == 1
        assert stats.average_progress == 75

    def test_dashboard_no_projects(self, projects, other_user):
        stats = projects.get_dashboard_stats(other_user)
        assert stats.total_projects == 0
        assert stats.average_progress == 0


class TestStatusDisplay:
    """Tests for project status labels."""

    def test_known_status(self):
        assert get_status_display("review") == "In Review"
        assert get_status_color("completed") == "green"

    def test_unknown_status_passes_through(self):
        assert get_status_display("paused") == "paused"
        assert get_status_color("paused") == "gray"
