"""Persisted duplicate detections and project-wide deduplication runs."""

import logging
from typing import Optional

from ..errors import NotFoundError
from ..services.base import BaseService
from ..services.study_service import StudyService
from ..storage.database import from_json, to_json
from ..storage.models import DuplicateDetection, DuplicateStatus, StudyStatus, User
from .deduplicator import BatchResult, Deduplicator

logger = logging.getLogger(__name__)


def _row_to_detection(row) -> DuplicateDetection:
    return DuplicateDetection(
        id=row["id"],
        project_id=row["project_id"],
        study_id=row["study_id"],
        duplicate_of=row["duplicate_of"],
        similarity_score=row["similarity_score"],
        matched_fields=from_json(row["matched_fields"], []),
        status=row["status"],
        created_at=row["created_at"],
    )


class DetectionStore(BaseService):
    """Record, review and resolve potential duplicates within a project."""

    service_name = "duplicateDetection"

    def __init__(self, database, deduplicator: Optional[Deduplicator] = None):
        super().__init__(database)
        self.deduplicator = deduplicator or Deduplicator()
        self.studies = StudyService(database)

    def record_detection(
        self,
        user: User,
        project_id: str,
        study_id: str,
        duplicate_of: str,
        similarity_score: float,
        matched_fields: Optional[list[str]] = None,
    ) -> Optional[DuplicateDetection]:
        """Store a potential duplicate; returns None if the pair is already recorded."""
        self.require_project(user, project_id)
        detection = DuplicateDetection(
            project_id=project_id,
            study_id=study_id,
            duplicate_of=duplicate_of,
            similarity_score=min(max(similarity_score, 0.0), 1.0),
            matched_fields=matched_fields or [],
        )
        with self.database.transaction() as conn:
            cursor = conn.execute("""
                INSERT OR IGNORE INTO duplicate_detections (
                    id, project_id, study_id, duplicate_of, similarity_score,
                    matched_fields, status, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                detection.id,
                detection.project_id,
                detection.study_id,
                detection.duplicate_of,
                detection.similarity_score,
                to_json(detection.matched_fields),
                detection.status.value,
                detection.created_at.isoformat(),
            ))
        return detection if cursor.rowcount else None

    def list_detections(
        self,
        user: User,
        project_id: str,
        status: Optional[DuplicateStatus | str] = None,
    ) -> list[DuplicateDetection]:
        """Detections for a project, highest similarity first."""
        self.require_project(user, project_id)
        query = "SELECT * FROM duplicate_detections WHERE project_id = ?"
        params = [project_id]
        if status:
            query += " AND status = ?"
            params.append(DuplicateStatus(status).value)
        query += " ORDER BY similarity_score DESC, created_at ASC"
        return [_row_to_detection(row) for row in self.database.fetch_all(query, tuple(params))]

    def get_detection(self, user: User, detection_id: str) -> DuplicateDetection:
        user = self.require_user(user)
        row = self.database.fetch_one("""
            SELECT d.* FROM duplicate_detections d
            JOIN projects p ON p.id = d.project_id
            WHERE d.id = ? AND p.user_id = ?
        """, (detection_id, user.id))
        if row is None:
            raise NotFoundError("Duplicate detection", detection_id)
        return _row_to_detection(row)

    def resolve_detection(self, user: User, detection_id: str, confirm: bool) -> DuplicateDetection:
        """
        Confirm or reject a potential duplicate.

        Confirming marks the study as a duplicate of the other; rejecting
        clears any duplicate mark the study carried from this pair.
        """
        detection = self.get_detection(user, detection_id)
        status = DuplicateStatus.CONFIRMED if confirm else DuplicateStatus.REJECTED
        study = self.studies.get_study(user, detection.study_id)

        # The decision and the study change land together or not at all
        with self.database.transaction() as conn:
            conn.execute(
                "UPDATE duplicate_detections SET status = ? WHERE id = ?",
                (status.value, detection_id),
            )
            if confirm:
                self.studies.mark_duplicate(user, detection.study_id, detection.duplicate_of, conn=conn)
            elif study and study.duplicate_of == detection.duplicate_of:
                self.studies.unmark_duplicate(user, detection.study_id, conn=conn)

        logger.info(f"Detection {detection_id} {status.value}")
        return detection.model_copy(update={"status": status})

    def run_project_deduplication(
        self,
        user: User,
        project_id: str,
        study_ids: Optional[list[str]] = None,
    ) -> tuple[list[DuplicateDetection], BatchResult]:
        """
        Batch-deduplicate a project's non-duplicate studies.

        Args:
            user: Calling user
            project_id: Project to scan
            study_ids: Restrict the scan to these studies

        Returns:
            (newly recorded detections, the raw batch result)
        """
        studies = [
            s for s in self.studies.list_studies(user, project_id)
            if s.status != StudyStatus.DUPLICATE
        ]
        if study_ids is not None:
            wanted = set(study_ids)
            studies = [s for s in studies if s.id in wanted]
        # Oldest first so the earliest import leads each group
        studies.reverse()

        batch = self.execute(
            "runProjectDeduplication",
            lambda: self.deduplicator.batch_deduplicate(studies),
            {"project_id": project_id, "studies": len(studies)},
        )

        detections = []
        for match in batch.detections:
            detection = self.record_detection(
                user,
                project_id,
                study_id=match.record.id,
                duplicate_of=match.duplicate_of.id,
                similarity_score=match.score,
                matched_fields=match.matched_fields,
            )
            if detection is not None:
                detections.append(detection)

        logger.info(
            f"Deduplication of {project_id}: {len(batch.duplicate_groups)} groups, "
            f"{len(detections)} new detections"
        )
        return detections, batch
