"""Background job processing."""

from .processor import Job, JobConfig, JobProcessor, JobStatus
from .handlers import (
    JobContext,
    JobHandlers,
    add_search_job,
    add_duplicate_detection_job,
    add_export_job,
)

__all__ = [
    "Job",
    "JobConfig",
    "JobProcessor",
    "JobStatus",
    "JobContext",
    "JobHandlers",
    "add_search_job",
    "add_duplicate_detection_job",
    "add_export_job",
]
