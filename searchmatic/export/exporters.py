"""Export project studies to CSV, Excel, JSON, BibTeX, EndNote and PRISMA text."""

import io
import json
import logging
import re
import uuid
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Optional

import pandas as pd

from ..services.base import BaseService
from ..services.study_service import StudyService
from ..storage.database import from_json
from ..storage.database import to_json as encode_json
from ..storage.models import ExportFormat, ExportLog, Study, StudyStatus, User

logger = logging.getLogger(__name__)

NO_DATA = "No data to export"

STUDY_COLUMNS = [
    "id", "title", "authors", "publication_year", "publication_date", "journal",
    "doi", "pmid", "url", "abstract", "keywords", "study_type", "status",
    "screening_decision", "screening_notes", "is_duplicate", "source", "created_at",
]

FILE_TYPES = {
    ExportFormat.CSV: ("csv", "text/csv"),
    ExportFormat.JSON: ("json", "application/json"),
    ExportFormat.XLSX: ("xlsx", "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"),
    ExportFormat.BIBTEX: ("bib", "application/x-bibtex"),
    ExportFormat.ENDNOTE: ("enw", "application/x-endnote-refer"),
    ExportFormat.PRISMA: ("txt", "text/plain"),
}


@dataclass
class ExportResult:
    content: bytes | str
    file_name: str
    mime_type: str
    record_count: int


def _cell(value: Any) -> Any:
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        return "; ".join(str(v) for v in value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if hasattr(value, "value"):
        return value.value
    return value


def study_rows(studies: list[Study]) -> list[dict[str, Any]]:
    """Flat dicts with the exported study columns."""
    rows = []
    for study in studies:
        data = study.model_dump()
        rows.append({column: data.get(column) for column in STUDY_COLUMNS})
    return rows


# =============================================================================
# FORMATTERS
# =============================================================================

def to_csv(rows: list[dict[str, Any]]) -> str:
    """
    CSV text whose header is every key in first-seen order.

    Values containing a comma, quote or newline are quoted; lists are
    joined with "; ".
    """
    if not rows:
        return NO_DATA

    # object dtype keeps integers from turning into floats next to gaps
    df = pd.DataFrame([{key: _cell(value) for key, value in row.items()} for row in rows], dtype=object)
    return df.to_csv(index=False, lineterminator="\n")


def to_json(project: dict[str, Any], studies: list[Study]) -> str:
    payload = {
        "project": project,
        "articles": [s.model_dump(mode="json") for s in studies],
        "exported_at": datetime.now().isoformat(),
    }
    return json.dumps(payload, indent=2, default=str)


def _bibtex_key(study: Study, index: int) -> str:
    authors = study.author_list
    last_name = authors[0].split()[0] if authors else "study"
    year = study.publication_year or "nd"
    return re.sub(r"[^a-z0-9]", "", f"{last_name}{year}{index}".lower())


def _bibtex_value(value: Any) -> str:
    return str(value).replace("{", "").replace("}", "")


def to_bibtex(studies: list[Study]) -> str:
    """@article entries for journal papers, @misc for everything else."""
    entries = []
    for index, study in enumerate(studies, start=1):
        entry_type = "article" if study.journal else "misc"
        fields = [("title", study.title)]
        if study.author_list:
            fields.append(("author", " and ".join(study.author_list)))
        fields.extend([
            ("journal", study.journal),
            ("year", study.publication_year),
            ("doi", study.doi),
            ("url", study.url),
            ("abstract", study.abstract),
        ])
        body = ",\n".join(
            f"  {name} = {{{_bibtex_value(value)}}}" for name, value in fields if value
        )
        entries.append(f"@{entry_type}{{{_bibtex_key(study, index)},\n{body}\n}}")
    return "\n\n".join(entries) + ("\n" if entries else "")


def to_endnote(studies: list[Study]) -> str:
    """EndNote tagged import format, one blank line between records."""
    records = []
    for study in studies:
        lines = ["%0 Journal Article", f"%T {study.title}"]
        lines.extend(f"%A {author}" for author in study.author_list)
        if study.journal:
            lines.append(f"%J {study.journal}")
        if study.publication_year:
            lines.append(f"%D {study.publication_year}")
        if study.doi:
            lines.append(f"%R {study.doi}")
        if study.url:
            lines.append(f"%U {study.url}")
        if study.abstract:
            lines.append(f"%X {study.abstract}")
        records.append("\n".join(lines))
    return "\n\n".join(records) + ("\n" if records else "")


def to_prisma(project: dict[str, Any], counts: dict[str, int]) -> str:
    """Plain-text PRISMA flow summary from study status counts."""
    identified = counts.get("total", 0)
    duplicates = counts.get(StudyStatus.DUPLICATE.value, 0)
    screened = identified - duplicates
    excluded = counts.get(StudyStatus.EXCLUDED.value, 0)
    included = counts.get(StudyStatus.INCLUDED.value, 0) + counts.get(StudyStatus.EXTRACTED.value, 0)
    awaiting = counts.get(StudyStatus.PENDING.value, 0) + counts.get(StudyStatus.SCREENING.value, 0)

    lines = [
        f"PRISMA Flow Summary: {project.get('title', '')}",
        f"Generated: {datetime.now().strftime('%Y-%m-%d %H:%M')}",
        "",
        "IDENTIFICATION",
        f"  Records identified: {identified}",
        f"  Duplicates removed: {duplicates}",
        "",
        "SCREENING",
        f"  Records screened: {screened}",
        f"  Records excluded: {excluded}",
        f"  Awaiting screening: {awaiting}",
        "",
        "INCLUDED",
        f"  Studies included in review: {included}",
    ]
    return "\n".join(lines) + "\n"


def to_xlsx(sheets: dict[str, pd.DataFrame]) -> bytes:
    """Workbook bytes with one sheet per DataFrame."""
    buffer = io.BytesIO()
    with pd.ExcelWriter(buffer, engine='openpyxl') as writer:
        for name, df in sheets.items():
            # Excel limits sheet names to 31 characters
            df.to_excel(writer, sheet_name=name[:31], index=False)
    return buffer.getvalue()


# =============================================================================
# EXPORT SERVICE
# =============================================================================

def _as_date(value: Any) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def apply_filters(studies: list[Study], filters: Optional[dict[str, Any]]) -> list[Study]:
    """Filter on status, screening_decision and a created_at date range."""
    if not filters:
        return studies
    status = filters.get("status")
    decision = filters.get("screening_decision")
    date_from = _as_date(filters.get("date_from"))
    date_to = _as_date(filters.get("date_to"))

    result = []
    for study in studies:
        if status and study.status.value != getattr(status, "value", status):
            continue
        if decision and study.screening_decision != decision:
            continue
        created = study.created_at.date()
        if date_from and created < date_from:
            continue
        if date_to and created > date_to:
            continue
        result.append(study)
    return result


def _slug(text: str) -> str:
    return re.sub(r"[^a-z0-9]+", "_", text.lower()).strip("_")[:40] or "project"


class ExportService(BaseService):
    """Render a project's studies in an export format and log the export."""

    service_name = "exportService"

    def __init__(self, database):
        super().__init__(database)
        self.studies = StudyService(database)

    def export_project(
        self,
        user: User,
        project_id: str,
        fmt: ExportFormat | str,
        filters: Optional[dict[str, Any]] = None,
    ) -> ExportResult:
        """
        Export a project's studies.

        Args:
            user: Calling user
            project_id: Project to export
            fmt: Export format
            filters: status, screening_decision, date_from, date_to

        Returns:
            ExportResult with file content, name and MIME type
        """
        fmt = ExportFormat(fmt)
        project_row = self.require_project(user, project_id)
        project = {key: project_row[key] for key in project_row.keys()}
        studies = apply_filters(self.studies.list_studies(user, project_id), filters)

        def _render():
            if fmt == ExportFormat.CSV:
                return to_csv(study_rows(studies))
            if fmt == ExportFormat.JSON:
                return to_json(project, studies)
            if fmt == ExportFormat.BIBTEX:
                return to_bibtex(studies)
            if fmt == ExportFormat.ENDNOTE:
                return to_endnote(studies)
            if fmt == ExportFormat.PRISMA:
                return to_prisma(project, self.studies.get_status_counts(user, project_id))
            counts = self.studies.get_status_counts(user, project_id)
            rows = [{k: _cell(v) for k, v in row.items()} for row in study_rows(studies)]
            return to_xlsx({
                "Studies": pd.DataFrame(rows, columns=STUDY_COLUMNS),
                "Summary": pd.DataFrame(list(counts.items()), columns=["Status", "Count"]),
            })

        content = self.execute("exportProject", _render, {"project_id": project_id, "format": fmt.value})
        extension, mime_type = FILE_TYPES[fmt]
        # Suffix keeps same-second exports of one project apart
        file_name = f"{_slug(project['title'])}_{datetime.now().strftime('%Y%m%d_%H%M%S')}_{uuid.uuid4().hex[:6]}.{extension}"
        record_count = len(studies)

        self._log_export(user, project_id, fmt, record_count, file_name, filters or {})
        return ExportResult(content=content, file_name=file_name, mime_type=mime_type, record_count=record_count)

    def _log_export(self, user, project_id, fmt, record_count, file_name, filters) -> None:
        log = ExportLog(
            project_id=project_id,
            user_id=user.id,
            export_format=fmt,
            record_count=record_count,
            file_name=file_name,
            filters={k: _cell(v) for k, v in filters.items()},
        )
        with self.database.transaction() as conn:
            conn.execute("""
                INSERT INTO export_logs (id, project_id, user_id, export_format, record_count, file_name, filters, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                log.id,
                log.project_id,
                log.user_id,
                log.export_format.value,
                log.record_count,
                log.file_name,
                encode_json(log.filters),
                log.created_at.isoformat(),
            ))
            self.touch_project(project_id, conn)
        logger.info(f"Exported {record_count} studies from {project_id} as {fmt.value}")

    def list_export_logs(self, user: User, project_id: str) -> list[ExportLog]:
        self.require_project(user, project_id)
        rows = self.database.fetch_all(
            "SELECT * FROM export_logs WHERE project_id = ? ORDER BY created_at DESC, rowid DESC",
            (project_id,),
        )
        return [
            ExportLog(
                id=row["id"],
                project_id=row["project_id"],
                user_id=row["user_id"],
                export_format=row["export_format"],
                record_count=row["record_count"],
                file_name=row["file_name"],
                filters=from_json(row["filters"], {}),
                created_at=row["created_at"],
            )
            for row in rows
        ]
