"""Tests for export formatters and ExportService."""

import io
import json
import re
from datetime import date, timedelta

import openpyxl
import pandas as pd
import pytest

from searchmatic.errors import NotFoundError
from searchmatic.export import ExportService, to_bibtex, to_csv, to_endnote, to_prisma, to_xlsx
from searchmatic.export.exporters import apply_filters
from searchmatic.storage import ExportFormat, Study, StudyStatus


@pytest.fixture
def exports(database):
    return ExportService(database)


@pytest.fixture
def article():
    return Study(
        project_id="p",
        user_id="u",
        title="Exercise for {late-life} depression",
        authors="Smith J; Doe A",
        journal="BMJ",
        publication_year=2021,
        doi="10.1000/ex",
        url="https://example.org/ex",
        abstract="Exercise helped.",
    )


@pytest.fixture
def report():
    return Study(project_id="p", user_id="u", title="Grey literature report")


class TestToCsv:
    """Tests for to_csv."""

    def test_empty(self):
        assert to_csv([]) == "No data to export"

    def test_header_union_and_quoting(self):
        """Test first-seen header order, quoting and list joining."""
        rows = [
            {"title": "Plain", "year": 2020},
            {"title": 'Commas, "quotes"', "keywords": ["a", "b"]},
        ]
        assert to_csv(rows) == (
            "title,year,keywords\n"
            "Plain,2020,\n"
            '"Commas, ""quotes""",,a; b\n'
        )

    def test_cell_values(self):
        """Test enums, None and multi-line text."""
        rows = [{"status": StudyStatus.INCLUDED, "notes": None, "abstract": "Line one\nLine two", "n": 3}]
        assert to_csv(rows) == 'status,notes,abstract,n\nincluded,,"Line one\nLine two",3\n'


class TestReferenceFormats:
    """Tests for BibTeX and EndNote output."""

    def test_bibtex_article(self, article):
        text = to_bibtex([article])
        assert text.startswith("@article{smith20211,\n")
        assert "  title = {Exercise for late-life depression}" in text
        assert "  author = {Smith J and Doe A}" in text
        assert "  year = {2021}" in text

    def test_bibtex_misc(self, report):
        text = to_bibtex([report])
        assert text.startswith("@misc{studynd1,\n")
        assert "author" not in text

    def test_bibtex_empty(self):
        assert to_bibtex([]) == ""

    def test_endnote(self, article, report):
        text = to_endnote([article, report])
        records = text.strip().split("\n\n")
        assert len(records) == 2
        assert records[0].splitlines()[:4] == [
            "%0 Journal Article",
            "%T Exercise for {late-life} depression",
            "%A Smith J",
            "%A Doe A",
        ]
        assert "%R 10.1000/ex" in records[0]
        assert records[1] == "%0 Journal Article\n%T Grey literature report"


class TestToPrisma:
    """Tests for to_prisma."""

    def test_counts(self):
        counts = {"total": 10, "duplicate": 2, "excluded": 3, "included": 1, "extracted": 1, "pending": 2, "screening": 1}
        text = to_prisma({"title": "My review"}, counts)

        assert text.startswith("PRISMA Flow Summary: My review\n")
        assert "  Records identified: 10" in text
        assert "  Duplicates removed: 2" in text
        assert "  Records screened: 8" in text
        assert "  Awaiting screening: 3" in text
        assert "  Studies included in review: 2" in text


class TestToXlsx:
    """Tests for to_xlsx."""

    def test_sheets(self):
        content = to_xlsx({
            "Studies": pd.DataFrame([{"title": "A", "year": 2020}]),
            "A very long sheet name that Excel would reject": pd.DataFrame([{"x": 1}]),
        })
        workbook = openpyxl.load_workbook(io.BytesIO(content))

        assert workbook.sheetnames == ["Studies", "A very long sheet name that Exc"]
        rows = list(workbook["Studies"].values)
        assert rows == [("title", "year"), ("A", 2020)]


class TestApplyFilters:
    """Tests for apply_filters."""

    def test_status_and_dates(self, article, report):
        article.status = StudyStatus.INCLUDED
        yesterday = (date.today() - timedelta(days=1)).isoformat()
        tomorrow = (date.today() + timedelta(days=1)).isoformat()

        assert apply_filters([article, report], {"status": "included"}) == [article]
        assert apply_filters([article, report], {"date_from": tomorrow}) == []
        assert apply_filters([article, report], {"date_from": yesterday, "date_to": tomorrow}) == [article, report]
        assert apply_filters([article, report], None) == [article, report]


class TestExportService:
    """Tests for ExportService."""

    @pytest.fixture
    def populated(self, studies, user, make_study):
        included = make_study("Included trial", authors="Smith J", journal="BMJ", publication_year=2021)
        studies.update_status(user, included.id, "included")
        make_study("Pending trial", keywords=["exercise", "aged"])
        return included

    def test_csv(self, exports, user, project, populated):
        """Test the CSV export and its log entry."""
        result = exports.export_project(user, project.id, "csv")

        assert result.record_count == 2
        assert result.mime_type == "text/csv"
        assert result.file_name.startswith("exercise_for_depression_in_older_adults_")
        assert result.file_name.endswith(".csv")
        assert result.content.splitlines()[0].startswith("id,title,authors")
        assert "exercise; aged" in result.content

        logs = exports.list_export_logs(user, project.id)
        assert len(logs) == 1
        assert logs[0].export_format == ExportFormat.CSV
        assert logs[0].record_count == 2

    def test_file_names_unique(self, exports, user, project, populated):
        """Test that back-to-back exports of one project get distinct names."""
        names = {exports.export_project(user, project.id, "csv").file_name for _ in range(5)}
        assert len(names) == 5
        assert all(re.fullmatch(r"exercise_for_depression_in_older_adults_\d{8}_\d{6}_[0-9a-f]{6}\.csv", n) for n in names)

    def test_filters_are_logged(self, exports, user, project, populated):
        result = exports.export_project(user, project.id, ExportFormat.BIBTEX, {"screening_decision": "included"})

        assert result.record_count == 1
        assert result.content.startswith("@article{smith20211")
        assert exports.list_export_logs(user, project.id)[0].filters == {"screening_decision": "included"}

    def test_json(self, exports, user, project, populated):
        data = json.loads(exports.export_project(user, project.id, "json").content)
        assert data["project"]["title"] == project.title
        assert len(data["articles"]) == 2

    def test_xlsx(self, exports, user, project, populated):
        """Test the workbook with studies and a status summary."""
        result = exports.export_project(user, project.id, "xlsx")
        workbook = openpyxl.load_workbook(io.BytesIO(result.content))

        assert workbook.sheetnames == ["Studies", "Summary"]
        assert workbook["Studies"].max_row == 3
        summary = dict(list(workbook["Summary"].values)[1:])
        assert summary["included"] == 1
        assert summary["total"] == 2

    def test_prisma(self, exports, user, project, populated):
        content = exports.export_project(user, project.id, "prisma").content
        assert "Studies included in review: 1" in content

    def test_other_user(self, exports, other_user, project):
        with pytest.raises(NotFoundError):
            exports.export_project(other_user, project.id, "csv")

    def test_unknown_format(self, exports, user, project):
        with pytest.raises(ValueError):
            exports.export_project(user, project.id, "docx")
