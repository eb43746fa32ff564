"""Studies within a project: CRUD, screening status and PubMed import."""

import hashlib
import logging
from datetime import datetime
from typing import Any, Optional

from ..dedup.deduplicator import normalize_doi, normalize_text
from ..errors import NotFoundError, ValidationError
from ..storage.database import from_json, to_json
from ..storage.models import ImportSummary, PubMedArticle, Study, StudyStatus, StudyType, User
from .base import BaseService, build_update

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = {
    "title", "authors", "publication_year", "publication_date", "journal",
    "doi", "pmid", "url", "abstract", "keywords", "study_type", "status",
    "screening_notes", "screening_decision", "quality_score", "extraction_data",
    "source",
}

JSON_COLUMNS = {"keywords": [], "extraction_data": {}}


def similarity_hash(title: str) -> str:
    """Stable hash of the normalized title, used to spot exact title repeats."""
    return hashlib.sha1(normalize_text(title).encode("utf-8")).hexdigest()


def status_changes(status: StudyStatus) -> dict[str, Any]:
    """Column changes for moving a study to status; the decision follows it."""
    changes: dict[str, Any] = {"status": status}
    if status in (StudyStatus.INCLUDED, StudyStatus.EXCLUDED):
        changes["screening_decision"] = status.value
    elif status in (StudyStatus.PENDING, StudyStatus.SCREENING):
        # Back in the queue, so an earlier decision no longer stands
        changes["screening_decision"] = None
    return changes


def _row_to_study(row) -> Study:
    data = {key: row[key] for key in row.keys()}
    for column, default in JSON_COLUMNS.items():
        data[column] = from_json(data.get(column), default)
    data["is_duplicate"] = bool(data["is_duplicate"])
    return Study(**data)


def article_to_fields(article: PubMedArticle) -> dict[str, Any]:
    """Study fields for a PubMed article."""
    return {
        "authors": "; ".join(article.authors) or None,
        "publication_year": article.publication_year,
        "publication_date": article.publication_date,
        "journal": article.journal,
        "doi": article.doi,
        "pmid": article.pmid,
        "url": article.url,
        "abstract": article.abstract,
        "keywords": list(article.keywords),
        "source": "PubMed",
    }


class StudyService(BaseService):
    """Manage the studies screened in a project."""

    service_name = "studyService"

    def _insert(self, conn, study: Study) -> None:
        conn.execute("""
            INSERT INTO studies (
                id, project_id, user_id, title, authors, publication_year, publication_date,
                journal, doi, pmid, url, abstract, keywords, study_type, status,
                screening_notes, screening_decision, quality_score, is_duplicate, duplicate_of,
                similarity_hash, extraction_data, source, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            study.id,
            study.project_id,
            study.user_id,
            study.title,
            study.authors,
            study.publication_year,
            study.publication_date,
            study.journal,
            study.doi,
            study.pmid,
            study.url,
            study.abstract,
            to_json(study.keywords),
            study.study_type.value,
            study.status.value,
            study.screening_notes,
            study.screening_decision,
            study.quality_score,
            1 if study.is_duplicate else 0,
            study.duplicate_of,
            study.similarity_hash,
            to_json(study.extraction_data),
            study.source,
            study.created_at.isoformat(),
            study.updated_at.isoformat(),
        ))

    def _build_study(self, user: User, project_id: str, title: str, fields: dict) -> Study:
        if not (title or "").strip():
            raise ValidationError("Study title is required")
        extra = {k: v for k, v in fields.items() if k in UPDATABLE_FIELDS and v is not None}
        if isinstance(extra.get("authors"), list):
            extra["authors"] = "; ".join(extra["authors"])
        return Study(
            project_id=project_id,
            user_id=user.id,
            title=title.strip(),
            similarity_hash=similarity_hash(title),
            **extra,
        )

    def create_study(self, user: User, project_id: str, title: str, **fields) -> Study:
        self.require_project(user, project_id)
        study = self._build_study(user, project_id, title, fields)

        def _create():
            with self.database.transaction() as conn:
                self._insert(conn, study)
                self.touch_project(project_id, conn)
            return study

        return self.execute("createStudy", _create, {"project_id": project_id})

    def list_studies(
        self,
        user: User,
        project_id: str,
        status: Optional[StudyStatus | str] = None,
    ) -> list[Study]:
        """Studies in a project, newest first, optionally filtered by status."""
        self.require_project(user, project_id)
        query = "SELECT * FROM studies WHERE project_id = ?"
        params: list[Any] = [project_id]
        if status:
            query += " AND status = ?"
            params.append(StudyStatus(status).value)
        query += " ORDER BY created_at DESC, rowid DESC"
        return [_row_to_study(row) for row in self.database.fetch_all(query, tuple(params))]

    def get_study(self, user: User, study_id: str) -> Optional[Study]:
        user = self.require_user(user)
        row = self.database.fetch_one("""
            SELECT s.* FROM studies s
            JOIN projects p ON p.id = s.project_id
            WHERE s.id = ? AND p.user_id = ?
        """, (study_id, user.id))
        return _row_to_study(row) if row else None

    def require_study(self, user: User, study_id: str) -> Study:
        study = self.get_study(user, study_id)
        if study is None:
            raise NotFoundError("Study", study_id)
        return study

    def update_study(self, user: User, study_id: str, **updates) -> Study:
        study = self.require_study(user, study_id)
        if "title" in updates:
            if not (updates["title"] or "").strip():
                raise ValidationError("Study title is required")
            updates["similarity_hash"] = similarity_hash(updates["title"])
        if "status" in updates:
            updates["status"] = StudyStatus(updates["status"])
        if "study_type" in updates:
            updates["study_type"] = StudyType(updates["study_type"])
        if isinstance(updates.get("authors"), list):
            updates["authors"] = "; ".join(updates["authors"])

        encoders = {column: to_json for column in JSON_COLUMNS}
        set_clause, params = build_update(updates, UPDATABLE_FIELDS | {"similarity_hash"}, encoders)
        set_clause = f"{set_clause}, " if set_clause else ""

        with self.database.transaction() as conn:
            conn.execute(
                f"UPDATE studies SET {set_clause}updated_at = ? WHERE id = ?",
                (*params, datetime.now().isoformat(), study_id),
            )
            self.touch_project(study.project_id, conn)
        return self.require_study(user, study_id)

    def update_status(
        self,
        user: User,
        study_id: str,
        status: StudyStatus | str,
        screening_notes: Optional[str] = None,
    ) -> Study:
        """
        Move a study through screening.

        Included/excluded set the screening decision; pending/screening clear it.
        """
        updates = status_changes(StudyStatus(status))
        if screening_notes is not None:
            updates["screening_notes"] = screening_notes
        return self.update_study(user, study_id, **updates)

    def bulk_update_status(self, user: User, study_ids: list[str], status: StudyStatus | str) -> list[Study]:
        """
        Give many studies the same status in one transaction.

        Every ID is checked before anything is written, so an unknown or
        foreign study leaves all of them unchanged.

        Returns:
            The updated studies, in the order given (repeats dropped)
        """
        status = StudyStatus(status)
        studies = [self.require_study(user, study_id) for study_id in dict.fromkeys(study_ids)]
        if not studies:
            return []

        set_clause, params = build_update(status_changes(status), {"status", "screening_decision"})
        now = datetime.now().isoformat()
        with self.database.transaction() as conn:
            conn.executemany(
                f"UPDATE studies SET {set_clause}, updated_at = ? WHERE id = ?",
                [(*params, now, study.id) for study in studies],
            )
            for project_id in {study.project_id for study in studies}:
                self.touch_project(project_id, conn)

        logger.info(f"Set {len(studies)} studies to {status.value}")
        return [self.require_study(user, study.id) for study in studies]

    def delete_study(self, user: User, study_id: str) -> None:
        study = self.require_study(user, study_id)
        with self.database.transaction() as conn:
            conn.execute("DELETE FROM studies WHERE id = ?", (study_id,))
            self.touch_project(study.project_id, conn)

    # =========================================================================
    # DUPLICATES
    # =========================================================================

    def mark_duplicate(self, user: User, study_id: str, duplicate_of: str, conn=None) -> Study:
        """Mark a study as a duplicate; pass conn to write inside a caller's transaction."""
        study = self.require_study(user, study_id)
        original = self.require_study(user, duplicate_of)
        if study_id == duplicate_of:
            raise ValidationError("A study cannot duplicate itself")
        if original.project_id != study.project_id:
            raise ValidationError("Duplicate studies must belong to the same project")

        now = datetime.now()
        self._write(
            conn,
            study.project_id,
            "UPDATE studies SET is_duplicate = 1, duplicate_of = ?, status = ?, updated_at = ? WHERE id = ?",
            (duplicate_of, StudyStatus.DUPLICATE.value, now.isoformat(), study_id),
        )
        return study.model_copy(update={
            "is_duplicate": True, "duplicate_of": duplicate_of, "status": StudyStatus.DUPLICATE, "updated_at": now,
        })

    def unmark_duplicate(self, user: User, study_id: str, conn=None) -> Study:
        study = self.require_study(user, study_id)
        now = datetime.now()
        self._write(
            conn,
            study.project_id,
            "UPDATE studies SET is_duplicate = 0, duplicate_of = NULL, status = ?, updated_at = ? WHERE id = ?",
            (StudyStatus.PENDING.value, now.isoformat(), study_id),
        )
        return study.model_copy(update={
            "is_duplicate": False, "duplicate_of": None, "status": StudyStatus.PENDING, "updated_at": now,
        })

    def _write(self, conn, project_id: str, sql: str, params: tuple) -> None:
        if conn is not None:
            conn.execute(sql, params)
            self.touch_project(project_id, conn)
            return
        with self.database.transaction() as c:
            c.execute(sql, params)
            self.touch_project(project_id, c)

    # =========================================================================
    # IMPORT
    # =========================================================================

    def import_pubmed_articles(
        self,
        user: User,
        project_id: str,
        articles: list[PubMedArticle],
    ) -> ImportSummary:
        """
        Add PubMed articles to a project, skipping ones already present.

        An article is skipped when its PMID or DOI (case insensitive) is
        already in the project or earlier in the same batch.

        Returns:
            ImportSummary with imported/skipped counts and the new study IDs
        """
        self.require_project(user, project_id)
        rows = self.database.fetch_all(
            "SELECT pmid, doi FROM studies WHERE project_id = ?", (project_id,)
        )
        seen_pmids = {row["pmid"] for row in rows if row["pmid"]}
        seen_dois = {normalize_doi(row["doi"]) for row in rows if row["doi"]}

        summary = ImportSummary()
        studies = []
        for article in articles:
            doi = normalize_doi(article.doi)
            if (article.pmid and article.pmid in seen_pmids) or (doi and doi in seen_dois):
                summary.skipped += 1
                continue
            if not (article.title or "").strip():
                logger.warning(f"Skipping PubMed article {article.pmid} without a title")
                summary.skipped += 1
                continue
            if article.pmid:
                seen_pmids.add(article.pmid)
            if doi:
                seen_dois.add(doi)
            studies.append(self._build_study(user, project_id, article.title, article_to_fields(article)))

        def _import():
            with self.database.transaction() as conn:
                for study in studies:
                    self._insert(conn, study)
                if studies:
                    self.touch_project(project_id, conn)

        self.execute("importPubMedArticles", _import, {"project_id": project_id, "count": len(studies)})
        summary.imported = len(studies)
        summary.study_ids = [study.id for study in studies]
        logger.info(f"Imported {summary.imported} studies into {project_id}, skipped {summary.skipped}")
        return summary

    def get_status_counts(self, user: User, project_id: str) -> dict[str, int]:
        """Number of studies per status, with every status present."""
        self.require_project(user, project_id)
        rows = self.database.fetch_all(
            "SELECT status, COUNT(*) AS n FROM studies WHERE project_id = ? GROUP BY status",
            (project_id,),
        )
        counts = {status.value: 0 for status in StudyStatus}
        for row in rows:
            counts[row["status"]] = row["n"]
        counts["total"] = sum(row["n"] for row in rows)
        return counts
