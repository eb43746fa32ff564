"""Similarity scoring and duplicate detection for bibliographic records."""

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional


SIMILARITY_THRESHOLDS = {
    "title": 0.85,
    "authors": 0.75,
    "doi": 1.0,
    "pmid": 1.0,
    "journal": 0.8,
    "publication_date": 0.9,
}

FIELD_WEIGHTS = {
    "title": 0.4,
    "authors": 0.25,
    "journal": 0.15,
    "publication_date": 0.1,
    "doi": 0.05,
    "pmid": 0.05,
}

COMPLETENESS_FIELDS = ("title", "authors", "abstract", "journal", "doi", "pmid", "publication_date")

DOI_PREFIXES = (
    "https://doi.org/",
    "http://doi.org/",
    "https://dx.doi.org/",
    "http://dx.doi.org/",
    "doi:",
)

_DATE_PATTERN = re.compile(r"^(\d{4})(?:[-/](\d{1,2}))?")


@dataclass
class SimilarityResult:
    """Overall score plus per-field similarities for a pair of records."""
    score: float
    matched_fields: list[str] = field(default_factory=list)
    details: dict[str, float] = field(default_factory=dict)


@dataclass
class DuplicateMatch:
    """A candidate that looks like a duplicate of a record."""
    record: Any
    duplicate_of: Any
    score: float
    matched_fields: list[str] = field(default_factory=list)

    @property
    def notes(self) -> str:
        return f"Detected {len(self.matched_fields)} matching fields: {', '.join(self.matched_fields)}"


@dataclass
class BatchResult:
    """Outcome of deduplicating a list of records."""
    duplicate_groups: list[list[Any]] = field(default_factory=list)
    unique_records: list[Any] = field(default_factory=list)
    detections: list[DuplicateMatch] = field(default_factory=list)

    @property
    def duplicate_count(self) -> int:
        return sum(len(group) - 1 for group in self.duplicate_groups)


# =============================================================================
# FIELD ACCESS
# =============================================================================

def get_field(record: Any, name: str) -> Any:
    """Read a field from a dict or an object."""
    if isinstance(record, dict):
        return record.get(name)
    return getattr(record, name, None)


def record_id(record: Any) -> Optional[str]:
    return get_field(record, "id") or get_field(record, "pmid")


def author_names(record: Any) -> list[str]:
    """Authors as a list, whether stored as a list or a ';'/',' separated string."""
    authors = get_field(record, "authors")
    if not authors:
        return []
    if isinstance(authors, str):
        separator = ";" if ";" in authors else ","
        return [a.strip() for a in authors.split(separator) if a.strip()]
    return [str(a).strip() for a in authors if str(a).strip()]


def record_date(record: Any) -> Optional[str]:
    date = get_field(record, "publication_date")
    if date:
        return str(date)
    year = get_field(record, "publication_year")
    return str(year) if year else None


def normalize_doi(doi: Optional[str]) -> str:
    """Lowercase a DOI and strip resolver prefixes."""
    if not doi:
        return ""
    doi = doi.strip().lower()
    for prefix in DOI_PREFIXES:
        if doi.startswith(prefix):
            doi = doi[len(prefix):]
    return doi.strip()


def normalize_text(text: Optional[str]) -> str:
    """Lowercase, strip punctuation and collapse whitespace."""
    if not text:
        return ""
    text = re.sub(r"[^\w\s]", "", text.lower())
    return re.sub(r"\s+", " ", text).strip()


def _normalize_author(name: str) -> str:
    # Initials carry little signal across sources
    name = normalize_text(name)
    return " ".join(token for token in name.split() if len(token) > 1)


def _words(text: str) -> set[str]:
    return {word for word in text.split() if len(word) > 2}


def _trigrams(text: str) -> set[str]:
    compact = re.sub(r"\s+", "", text)
    return {compact[i:i + 3] for i in range(len(compact) - 2)}


def jaccard(a: set, b: set) -> float:
    if not a and not b:
        return 1.0
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)


def _parse_date(value: str) -> tuple[Optional[int], Optional[int]]:
    match = _DATE_PATTERN.match(value.strip())
    if not match:
        return None, None
    year = int(match.group(1))
    month = int(match.group(2)) if match.group(2) else None
    return year, month


# =============================================================================
# DEDUPLICATOR
# =============================================================================

class Deduplicator:
    """
    Score pairs of bibliographic records and group likely duplicates.

    Records may be pydantic models (Study, PubMedArticle) or plain dicts.
    A DOI or PMID match is treated as certain; otherwise fields present
    on both records contribute to a weighted score.
    """

    def __init__(self, threshold: float = 0.8, thresholds: Optional[dict[str, float]] = None):
        """
        Initialize deduplicator.

        Args:
            threshold: Overall score at which two records count as duplicates
            thresholds: Per-field overrides for when a field counts as matched
        """
        self.threshold = threshold
        self.thresholds = {**SIMILARITY_THRESHOLDS, **(thresholds or {})}

    # -------------------------------------------------------------------------
    # Field similarities
    # -------------------------------------------------------------------------

    @staticmethod
    def normalize_text(text: Optional[str]) -> str:
        return normalize_text(text)

    def text_similarity(self, text1: Optional[str], text2: Optional[str]) -> float:
        """Blend of word Jaccard (70%) and character trigram Jaccard (30%)."""
        a, b = normalize_text(text1), normalize_text(text2)
        if not a or not b:
            return 0.0
        if a == b:
            return 1.0
        return jaccard(_words(a), _words(b)) * 0.7 + jaccard(_trigrams(a), _trigrams(b)) * 0.3

    def author_similarity(self, authors1: list[str], authors2: list[str]) -> float:
        """Share of authors with a close match in the other list."""
        if not authors1 or not authors2:
            return 0.0
        normalized2 = [_normalize_author(a) for a in authors2]
        matches = 0
        for author in authors1:
            name = _normalize_author(author)
            if any(self.text_similarity(name, other) > 0.8 for other in normalized2):
                matches += 1
        return matches / max(len(authors1), len(authors2))

    def date_similarity(self, date1: Optional[str], date2: Optional[str]) -> float:
        if not date1 or not date2:
            return 0.0
        year1, month1 = _parse_date(str(date1))
        year2, month2 = _parse_date(str(date2))
        if year1 is None or year2 is None:
            return 0.0
        if year1 == year2:
            if month1 == month2:
                return 1.0
            return 0.9
        if abs(year1 - year2) == 1:
            return 0.7
        return 0.0

    @staticmethod
    def exact_match(field_name: str, value1: Any, value2: Any) -> bool:
        if not value1 or not value2:
            return False
        if field_name == "doi":
            return normalize_doi(str(value1)) == normalize_doi(str(value2))
        return str(value1).strip() == str(value2).strip()

    # -------------------------------------------------------------------------
    # Record similarity
    # -------------------------------------------------------------------------

    def calculate_similarity(self, record1: Any, record2: Any) -> SimilarityResult:
        """
        Compare two records field by field.

        Returns:
            SimilarityResult with the overall score, the fields that reached
            their thresholds, and each field's similarity
        """
        details: dict[str, float] = {}

        for name in ("doi", "pmid"):
            value1, value2 = get_field(record1, name), get_field(record2, name)
            if value1 and value2:
                details[name] = 1.0 if self.exact_match(name, value1, value2) else 0.0

        for name in ("title", "journal"):
            value1, value2 = get_field(record1, name), get_field(record2, name)
            if value1 and value2:
                details[name] = self.text_similarity(value1, value2)

        authors1, authors2 = author_names(record1), author_names(record2)
        if authors1 and authors2:
            details["authors"] = self.author_similarity(authors1, authors2)

        date1, date2 = record_date(record1), record_date(record2)
        if date1 and date2:
            details["publication_date"] = self.date_similarity(date1, date2)

        matched = [name for name, value in details.items() if value >= self.thresholds[name]]
        return SimilarityResult(
            score=self._overall_score(details),
            matched_fields=matched,
            details=details,
        )

    @staticmethod
    def _overall_score(details: dict[str, float]) -> float:
        if details.get("doi") == 1.0 or details.get("pmid") == 1.0:
            return 1.0
        total_weight = sum(FIELD_WEIGHTS[name] for name in details)
        if total_weight == 0:
            return 0.0
        return sum(value * FIELD_WEIGHTS[name] for name, value in details.items()) / total_weight

    def find_potential_duplicates(
        self,
        record: Any,
        candidates: list[Any],
        threshold: Optional[float] = None,
    ) -> list[DuplicateMatch]:
        """Candidates scoring at or above threshold, best first."""
        threshold = self.threshold if threshold is None else threshold
        matches = []
        for candidate in candidates:
            if candidate is record:
                continue
            similarity = self.calculate_similarity(record, candidate)
            if similarity.score >= threshold:
                matches.append(DuplicateMatch(
                    record=record,
                    duplicate_of=candidate,
                    score=similarity.score,
                    matched_fields=similarity.matched_fields,
                ))
        return sorted(matches, key=lambda m: m.score, reverse=True)

    def batch_deduplicate(self, records: list[Any], threshold: Optional[float] = None) -> BatchResult:
        """
        Group records greedily: each unprocessed record collects every later
        record that scores at or above threshold against it.
        """
        threshold = self.threshold if threshold is None else threshold
        result = BatchResult()
        processed: set[int] = set()

        for i, leader in enumerate(records):
            if i in processed:
                continue
            processed.add(i)
            group = [leader]

            for j in range(i + 1, len(records)):
                if j in processed:
                    continue
                similarity = self.calculate_similarity(leader, records[j])
                if similarity.score >= threshold:
                    group.append(records[j])
                    processed.add(j)
                    result.detections.append(DuplicateMatch(
                        record=records[j],
                        duplicate_of=leader,
                        score=similarity.score,
                        matched_fields=similarity.matched_fields,
                    ))

            if len(group) > 1:
                result.duplicate_groups.append(group)
            else:
                result.unique_records.append(leader)

        return result

    # -------------------------------------------------------------------------
    # Merging
    # -------------------------------------------------------------------------

    @staticmethod
    def _count_fields(record: Any) -> int:
        """Count how many key bibliographic fields are filled."""
        count = 0
        for name in COMPLETENESS_FIELDS:
            if name == "authors":
                value = author_names(record)
            elif name == "publication_date":
                value = record_date(record)
            else:
                value = get_field(record, name)
            if value:
                count += 1
        return count

    def merge_records(self, records: list[Any]) -> Optional[dict]:
        """
        Merge duplicates into one record, starting from the most complete.

        Missing fields are filled from the others, authors are combined in
        order without repeats and the longest abstract is kept.
        """
        if not records:
            return None

        as_dicts = [r if isinstance(r, dict) else r.model_dump() for r in records]
        if len(as_dicts) == 1:
            return dict(as_dicts[0])

        base_index = max(range(len(records)), key=lambda i: (self._count_fields(records[i]), -i))
        merged = dict(as_dicts[base_index])
        authors = author_names(records[base_index])

        for index, other in enumerate(as_dicts):
            if index == base_index:
                continue
            for key, value in other.items():
                if not merged.get(key) and value:
                    merged[key] = value
            for name in author_names(records[index]):
                if name not in authors:
                    authors.append(name)
            abstract = other.get("abstract")
            if abstract and len(abstract) > len(merged.get("abstract") or ""):
                merged["abstract"] = abstract

        if authors:
            merged["authors"] = "; ".join(authors) if isinstance(merged.get("authors"), str) else authors

        merged["merge_metadata"] = {
            **(merged.get("merge_metadata") or {}),
            "merged_from": [record_id(r) for r in records],
            "merged_at": datetime.now().isoformat(),
            "duplicate_resolution": "auto_merged",
        }
        return merged

    def detection_rules(self) -> dict[str, Callable[[Any, Any], bool]]:
        """Predicates for exact, strong (>= 0.9) and moderate (>= 0.7) duplicates."""

        def exact(a: Any, b: Any) -> bool:
            return (
                self.exact_match("doi", get_field(a, "doi"), get_field(b, "doi"))
                or self.exact_match("pmid", get_field(a, "pmid"), get_field(b, "pmid"))
            )

        return {
            "exact": exact,
            "strong": lambda a, b: self.calculate_similarity(a, b).score >= 0.9,
            "moderate": lambda a, b: self.calculate_similarity(a, b).score >= 0.7,
        }
