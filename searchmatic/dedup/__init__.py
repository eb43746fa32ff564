"""Duplicate detection module.

DetectionStore lives in dedup.detection_store and is imported from there,
since it depends on the services package.
"""

from .deduplicator import (
    Deduplicator,
    SimilarityResult,
    DuplicateMatch,
    BatchResult,
    SIMILARITY_THRESHOLDS,
)

__all__ = [
    "Deduplicator",
    "SimilarityResult",
    "DuplicateMatch",
    "BatchResult",
    "SIMILARITY_THRESHOLDS",
]
