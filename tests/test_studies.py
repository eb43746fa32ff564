"""Tests for StudyService."""

import pytest

from searchmatic.errors import NotFoundError, ValidationError
from searchmatic.storage import PubMedArticle, StudyStatus


class TestStudyCrud:
    """Tests for creating, reading, updating and deleting studies."""

    def test_create_joins_author_list(self, make_study):
        """Test that an author list is stored semicolon separated."""
        study = make_study("Walking and mood", authors=["Smith J", "Doe A"], publication_year=2021)

        assert study.authors == "Smith J; Doe A"
        assert study.author_list == ["Smith J", "Doe A"]
        assert study.status == StudyStatus.PENDING
        assert study.similarity_hash

    def test_create_requires_title(self, make_study):
        with pytest.raises(ValidationError, match="title is required"):
            make_study("  ")

    def test_create_in_other_users_project(self, studies, other_user, project):
        """Test that studies cannot be added to someone else's project."""
        with pytest.raises(NotFoundError):
            studies.create_study(other_user, project.id, "Intruder")

    def test_list_newest_first(self, studies, user, project, make_study):
        first = make_study("First")
        second = make_study("Second")
        assert [s.id for s in studies.list_studies(user, project.id)] == [second.id, first.id]

    def test_list_by_status(self, studies, user, project, make_study):
        """Test filtering by status."""
        make_study("Pending one")
        included = make_study("Included one")
        studies.update_status(user, included.id, "included")

        result = studies.list_studies(user, project.id, status=StudyStatus.INCLUDED)
        assert [s.id for s in result] == [included.id]

    def test_get_is_scoped_to_owner(self, studies, other_user, make_study):
        study = make_study("Private")
        assert studies.get_study(other_user, study.id) is None
        with pytest.raises(NotFoundError):
            studies.require_study(other_user, study.id)

    def test_update_study(self, studies, user, make_study):
        """Test field updates including JSON columns."""
        study = make_study("Old title")
        updated = studies.update_study(user, study.id, title="New title", keywords=["a", "b"], journal="BMJ")

        assert updated.title == "New title"
        assert updated.keywords == ["a", "b"]
        assert updated.journal == "BMJ"
        assert updated.similarity_hash != study.similarity_hash

    def test_delete_study(self, studies, user, make_study):
        study = make_study("Gone")
        studies.delete_study(user, study.id)
        assert studies.get_study(user, study.id) is None


class TestScreeningStatus:
    """Tests for StudyService.update_status."""

    def test_included_sets_decision(self, studies, user, make_study):
        """Test that inclusion also records the screening decision."""
        study = make_study("Trial")
        updated = studies.update_status(user, study.id, StudyStatus.INCLUDED, screening_notes="Meets PICO")

        assert updated.status == StudyStatus.INCLUDED
        assert updated.screening_decision == "included"
        assert updated.screening_notes == "Meets PICO"

    def test_screening_keeps_decision_empty(self, studies, user, make_study):
        study = make_study("Trial")
        assert studies.update_status(user, study.id, "screening").screening_decision is None

    def test_back_to_pending_clears_decision(self, studies, user, make_study):
        """Test that re-queuing a screened study drops its old decision."""
        study = make_study("Trial")
        studies.update_status(user, study.id, "included")

        assert studies.update_status(user, study.id, "pending").screening_decision is None
        studies.update_status(user, study.id, "excluded")
        assert studies.update_status(user, study.id, "screening").screening_decision is None

    def test_invalid_status(self, studies, user, make_study):
        study = make_study("Trial")
        with pytest.raises(ValueError):
            studies.update_status(user, study.id, "maybe")

    def test_status_counts(self, studies, user, project, make_study):
        """Test that every status is reported with a total."""
        make_study("A")
        excluded = make_study("B")
        studies.update_status(user, excluded.id, "excluded")

        counts = studies.get_status_counts(user, project.id)
        assert counts["pending"] == 1
        assert counts["excluded"] == 1
        assert counts["included"] == 0
        assert counts["extracted"] == 0
        assert counts["total"] == 2


class TestBulkStatus:
    """Tests for StudyService.bulk_update_status."""

    def test_updates_all(self, studies, user, project, make_study):
        """Test that every study gets the status and its decision."""
        made = [make_study(f"Trial {i}") for i in range(3)]

        updated = studies.bulk_update_status(user, [s.id for s in made], "excluded")

        assert [s.id for s in updated] == [s.id for s in made]
        assert all(s.status == StudyStatus.EXCLUDED for s in updated)
        assert studies.get_status_counts(user, project.id)["excluded"] == 3
        assert studies.get_study(user, made[0].id).screening_decision == "excluded"

    def test_foreign_study_changes_nothing(self, studies, projects, user, other_user, make_study):
        """Test that one study the caller does not own blocks the whole batch."""
        mine = make_study("Mine")
        theirs_project = projects.create_project(other_user, "Bob's review")
        theirs = studies.create_study(other_user, theirs_project.id, "Theirs")

        with pytest.raises(NotFoundError):
            studies.bulk_update_status(user, [mine.id, theirs.id], "included")

        assert studies.get_study(user, mine.id).status == StudyStatus.PENDING
        assert studies.get_study(other_user, theirs.id).status == StudyStatus.PENDING

    def test_invalid_status_changes_nothing(self, studies, user, make_study):
        study = make_study("Trial")
        with pytest.raises(ValueError):
            studies.bulk_update_status(user, [study.id], "maybe")
        assert studies.get_study(user, study.id).status == StudyStatus.PENDING

    def test_repeats_and_empty(self, studies, user, make_study):
        study = make_study("Trial")
        assert len(studies.bulk_update_status(user, [study.id, study.id], "screening")) == 1
        assert studies.bulk_update_status(user, [], "screening") == []


class TestDuplicates:
    """Tests for marking duplicates."""

    def test_mark_and_unmark(self, studies, user, make_study):
        """Test the duplicate round trip."""
        original = make_study("Original")
        copy = make_study("Copy")

        marked = studies.mark_duplicate(user, copy.id, original.id)
        assert marked.is_duplicate
        assert marked.duplicate_of == original.id
        assert marked.status == StudyStatus.DUPLICATE

        restored = studies.unmark_duplicate(user, copy.id)
        assert not restored.is_duplicate
        assert restored.duplicate_of is None
        assert restored.status == StudyStatus.PENDING

    def test_cannot_duplicate_itself(self, studies, user, make_study):
        study = make_study("Self")
        with pytest.raises(ValidationError, match="cannot duplicate itself"):
            studies.mark_duplicate(user, study.id, study.id)

    def test_different_projects(self, studies, projects, user, make_study):
        """Test that duplicates must share a project."""
        elsewhere = projects.create_project(user, "Elsewhere")
        first = make_study("Here")
        second = make_study("There", project_id=elsewhere.id)
        with pytest.raises(ValidationError, match="same project"):
            studies.mark_duplicate(user, second.id, first.id)


class TestPubMedImport:
    """Tests for StudyService.import_pubmed_articles."""

    def _article(self, pmid, title="A trial", doi=None, **kwargs):
        return PubMedArticle(
            pmid=pmid,
            title=title,
            doi=doi,
            authors=["Smith J", "Doe A"],
            publication_year=2020,
            url=f"https://pubmed.ncbi.nlm.nih.gov/{pmid}/",
            **kwargs,
        )

    def test_imports_articles(self, studies, user, project):
        """Test that article fields become study fields."""
        summary = studies.import_pubmed_articles(
            user, project.id, [self._article("111", keywords=["exercise"], journal="Lancet")]
        )

        assert summary.imported == 1
        assert summary.skipped == 0
        study = studies.get_study(user, summary.study_ids[0])
        assert study.pmid == "111"
        assert study.authors == "Smith J; Doe A"
        assert study.source == "PubMed"
        assert study.keywords == ["exercise"]

    def test_skips_existing_pmid_and_doi(self, studies, user, project, make_study):
        """Test skipping by PMID and by case-insensitive DOI."""
        make_study("Existing", pmid="111")
        make_study("Existing DOI", doi="10.1000/ABC")

        summary = studies.import_pubmed_articles(user, project.id, [
            self._article("111"),
            self._article("222", doi="10.1000/abc"),
            self._article("333"),
        ])
        assert summary.imported == 1
        assert summary.skipped == 2

    def test_skips_repeats_within_batch(self, studies, user, project):
        summary = studies.import_pubmed_articles(user, project.id, [self._article("111"), self._article("111")])
        assert (summary.imported, summary.skipped) == (1, 1)

    def test_skips_articles_without_title(self, studies, user, project):
        summary = studies.import_pubmed_articles(user, project.id, [self._article("111", title="")])
        assert (summary.imported, summary.skipped) == (0, 1)
