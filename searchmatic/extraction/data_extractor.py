"""AI-assisted data extraction from study records."""

import logging
import re
from typing import Callable, Optional

from ..llm.base_client import BaseLLMClient, extract_json
from ..llm.cost_tracker import BudgetExceededError, CostTracker, OperationType
from ..llm.prompts import DATA_EXTRACTION_SYSTEM, DATA_EXTRACTION_USER, format_fields_for_extraction
from ..storage.audit_logger import AuditLogger
from ..storage.models import ExtractedValue, ExtractionTemplate, FieldType, Study

logger = logging.getLogger(__name__)

NOT_REPORTED = {"", "NR", "NOT REPORTED", "N/A", "NA", "NULL", "NONE"}


def study_text(study: Study) -> str:
    """Citation details and abstract as plain text for the prompt."""
    parts = [f"Title: {study.title}"]
    if study.authors:
        parts.append(f"Authors: {study.authors}")
    if study.journal:
        parts.append(f"Journal: {study.journal}")
    if study.publication_year:
        parts.append(f"Year: {study.publication_year}")
    if study.abstract:
        parts.append(f"Abstract: {study.abstract}")
    return "\n".join(parts)


def _coerce(value, field_type: FieldType):
    """Convert an extracted string to the field's type; leaves it as-is if that fails."""
    if field_type == FieldType.NUMBER and isinstance(value, str):
        match = re.search(r"-?\d+(?:\.\d+)?", value.replace(",", ""))
        if match:
            number = float(match.group())
            return int(number) if number.is_integer() else number
    if field_type == FieldType.BOOLEAN and isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "yes"):
            return True
        if lowered in ("false", "no"):
            return False
    if field_type == FieldType.MULTISELECT and isinstance(value, str):
        return [v.strip() for v in re.split(r"[;,]", value) if v.strip()]
    return value


class DataExtractor:
    """Extract template fields from study text with an LLM."""

    # Maximum characters to send to LLM
    MAX_TEXT_CHARS = 50000

    def __init__(
        self,
        llm_client: BaseLLMClient,
        cost_tracker: Optional[CostTracker] = None,
        audit_logger: Optional[AuditLogger] = None,
        project_id: Optional[str] = None,
    ):
        self.llm_client = llm_client
        self.cost_tracker = cost_tracker
        self.audit_logger = audit_logger
        self.project_id = project_id

    def _truncate_text(self, text: str) -> str:
        """Truncate text to fit within context limits."""
        if len(text) <= self.MAX_TEXT_CHARS:
            return text

        # Keep beginning and end for context
        half = self.MAX_TEXT_CHARS // 2
        return text[:half] + "\n\n[...text truncated...]\n\n" + text[-half:]

    def estimate_cost(self, n_studies: int, template: ExtractionTemplate, avg_text_length: int = 4000) -> float:
        avg_input_tokens = min(avg_text_length, self.MAX_TEXT_CHARS) // 4 + 500
        avg_output_tokens = 50 * len(template.fields)
        return self.llm_client.estimate_cost(avg_input_tokens * n_studies, avg_output_tokens * n_studies)

    def _parse(self, content: str) -> dict:
        data = extract_json(content)
        if data is not None:
            extractions = data.get("extractions", data)
            # A null or list "extractions" reports nothing usable
            return extractions if isinstance(extractions, dict) else {}

        # Fall back to "field: value" lines
        values = {}
        for match in re.finditer(r"^\s*[-*]?\s*([^:\n]+):\s*(.+)$", content, re.MULTILINE):
            values[match.group(1).strip()] = match.group(2).strip()
        return values

    def extract(self, text: str, template: ExtractionTemplate) -> list[ExtractedValue]:
        """
        Extract every template field from text.

        Args:
            text: Study text (citation, abstract or full text)
            template: Template listing the fields to extract

        Returns:
            One ExtractedValue per template field, in template order. Fields
            the model did not report have value None and confidence 0.
        """
        prompt = DATA_EXTRACTION_USER.format(
            fields_with_descriptions=format_fields_for_extraction(template.fields),
            study_text=self._truncate_text(text),
        )
        messages = [
            {"role": "system", "content": DATA_EXTRACTION_SYSTEM},
            {"role": "user", "content": prompt},
        ]

        # Low temperature for accurate extraction
        response = self.llm_client.chat(messages=messages, temperature=0.2, max_tokens=2000, json_mode=True)

        if self.cost_tracker:
            self.cost_tracker.add_response(OperationType.DATA_EXTRACTION, response, project_id=self.project_id)
        if self.audit_logger:
            self.audit_logger.log_response(
                OperationType.DATA_EXTRACTION.value,
                prompt[:5000] + "..." if len(prompt) > 5000 else prompt,
                response,
                project_id=self.project_id,
            )

        raw = self._parse(response.content)
        lowered = {str(k).lower(): v for k, v in raw.items()}

        values = []
        for field in template.fields:
            field_data = raw.get(field.name, lowered.get(field.name.lower()))
            if isinstance(field_data, dict):
                value = field_data.get("value")
                source = field_data.get("source_quote")
                confidence = field_data.get("confidence")
            else:
                # Handle case where LLM returns simple value instead of dict
                value, source, confidence = field_data, None, None

            if value is None or (isinstance(value, str) and value.strip().upper() in NOT_REPORTED):
                values.append(ExtractedValue(field_name=field.name, value=None, confidence=0.0))
                continue

            try:
                confidence = float(confidence) if confidence is not None else 0.5
            except (TypeError, ValueError):
                confidence = 0.5
            values.append(ExtractedValue(
                field_name=field.name,
                value=_coerce(value, field.field_type),
                confidence=min(max(confidence, 0.0), 1.0),
                source_text=source,
            ))
        return values

    def extract_from_study(self, study: Study, template: ExtractionTemplate) -> list[ExtractedValue]:
        return self.extract(study_text(study), template)

    def extract_batch(
        self,
        studies: list[Study],
        template: ExtractionTemplate,
        progress_callback: Optional[Callable[[int, int, str], None]] = None,
        stop_on_budget: bool = True,
    ) -> tuple[dict[str, list[ExtractedValue]], bool]:
        """
        Extract data from multiple studies.

        Returns:
            Tuple of (values by study ID, completed flag)
        """
        results = {}
        total = len(studies)

        for i, study in enumerate(studies):
            if progress_callback:
                progress_callback(i, total, f"Extracting: {study.title[:40]}...")
            try:
                results[study.id] = self.extract_from_study(study, template)
            except BudgetExceededError:
                if stop_on_budget:
                    if progress_callback:
                        progress_callback(i, total, "Stopped: Budget limit exceeded")
                    return results, False
                raise

        if progress_callback:
            progress_callback(total, total, "Extraction complete")
        return results, True


def values_to_dict(values: list[ExtractedValue]) -> dict:
    """Field name to value, skipping fields that were not reported."""
    return {v.field_name: v.value for v in values if v.value is not None}
