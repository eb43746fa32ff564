"""Job handlers for PubMed search import, duplicate detection and exports."""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from ..dedup.detection_store import DetectionStore
from ..export.exporters import ExportService
from ..search.pubmed_client import PubMedClient, build_search_query
from ..services.search_history import SearchHistoryService
from ..services.study_service import StudyService
from ..storage.models import SearchFilters, User
from .processor import Job, JobConfig, JobProcessor

logger = logging.getLogger(__name__)

PUBMED_SEARCH = "pubmed_search"
DUPLICATE_DETECTION = "duplicate_detection"
DATA_EXPORT = "data_export"

SEARCH_CHUNK_SIZE = 20


@dataclass
class JobContext:
    """What handlers need to act for the workspace user."""
    user: User
    database: Any
    exports_path: Path
    pubmed_client: Optional[PubMedClient] = None


class JobHandlers:
    """Handlers bound to one workspace user."""

    def __init__(self, context: JobContext):
        self.context = context
        self.studies = StudyService(context.database)
        self.detections = DetectionStore(context.database)
        self.exports = ExportService(context.database)
        self.search_history = SearchHistoryService(context.database)
        self.pubmed = context.pubmed_client or PubMedClient()

    def pubmed_search(self, job: Job, report_progress) -> dict:
        """
        Search PubMed and import the results into a project.

        Payload:
            project_id, filters (SearchFilters fields), max_results
        """
        payload = job.payload
        project_id = payload["project_id"]
        filters = SearchFilters(**payload.get("filters", {}))
        max_results = int(payload.get("max_results") or filters.max_results)

        report_progress(5)
        ids, total = self.pubmed.search_ids(filters.model_copy(update={"max_results": max_results}))
        ids = ids[:max_results]
        self.search_history.save_search_query(
            self.context.user, project_id, build_search_query(filters), total, filters.model_dump(mode="json")
        )
        report_progress(10)

        articles = []
        chunks = [ids[i:i + SEARCH_CHUNK_SIZE] for i in range(0, len(ids), SEARCH_CHUNK_SIZE)]
        for index, chunk in enumerate(chunks):
            articles.extend(self.pubmed.fetch_articles(chunk))
            report_progress(10 + (index + 1) / len(chunks) * 80)

        summary = self.studies.import_pubmed_articles(self.context.user, project_id, articles)
        report_progress(100)
        return {
            "total_found": total,
            "fetched": len(articles),
            "imported": summary.imported,
            "skipped": summary.skipped,
        }

    def duplicate_detection(self, job: Job, report_progress) -> dict:
        """Payload: project_id, optional study_ids."""
        report_progress(10)
        detections, batch = self.detections.run_project_deduplication(
            self.context.user,
            job.payload["project_id"],
            study_ids=job.payload.get("study_ids"),
        )
        report_progress(100)
        return {
            "detections": len(detections),
            "groups": len(batch.duplicate_groups),
            "unique": len(batch.unique_records),
        }

    def data_export(self, job: Job, report_progress) -> dict:
        """Payload: project_id, format, optional filters. Writes the file under exports_path."""
        report_progress(10)
        result = self.exports.export_project(
            self.context.user,
            job.payload["project_id"],
            job.payload["format"],
            filters=job.payload.get("filters"),
        )
        report_progress(80)

        self.context.exports_path.mkdir(parents=True, exist_ok=True)
        file_path = self.context.exports_path / result.file_name
        if isinstance(result.content, bytes):
            file_path.write_bytes(result.content)
        else:
            file_path.write_text(result.content, encoding="utf-8")

        report_progress(100)
        logger.info(f"Wrote export {file_path}")
        return {"file_path": str(file_path), "record_count": result.record_count}

    def register_all(self, processor: JobProcessor) -> None:
        processor.register_handler(PUBMED_SEARCH, self.pubmed_search)
        processor.register_handler(DUPLICATE_DETECTION, self.duplicate_detection)
        processor.register_handler(DATA_EXPORT, self.data_export)


# =============================================================================
# CONVENIENCE ADDERS
# =============================================================================

def add_search_job(
    processor: JobProcessor,
    project_id: str,
    filters: SearchFilters | dict,
    max_results: int = 100,
) -> str:
    if isinstance(filters, SearchFilters):
        filters = filters.model_dump(mode="json")
    return processor.add_job(
        PUBMED_SEARCH,
        {"project_id": project_id, "filters": filters, "max_results": max_results},
        JobConfig(priority=8, timeout=60.0),
    )


def add_duplicate_detection_job(
    processor: JobProcessor,
    project_id: str,
    study_ids: Optional[list[str]] = None,
) -> str:
    payload: dict[str, Any] = {"project_id": project_id}
    if study_ids is not None:
        payload["study_ids"] = study_ids
    return processor.add_job(DUPLICATE_DETECTION, payload, JobConfig(priority=6, timeout=120.0))


def add_export_job(
    processor: JobProcessor,
    project_id: str,
    fmt: str,
    filters: Optional[dict[str, Any]] = None,
) -> str:
    payload: dict[str, Any] = {"project_id": project_id, "format": getattr(fmt, "value", fmt)}
    if filters:
        payload["filters"] = filters
    return processor.add_job(DATA_EXPORT, payload, JobConfig(priority=4, timeout=180.0))
