"""LLM-assisted field recommendation for extraction templates."""

import logging
from typing import Optional

from ..llm.base_client import BaseLLMClient, extract_json
from ..llm.cost_tracker import CostTracker, OperationType
from ..llm.prompts import FIELD_RECOMMENDATION_SYSTEM, FIELD_RECOMMENDATION_USER
from ..storage.audit_logger import AuditLogger
from ..storage.models import ExtractionField, FieldType

logger = logging.getLogger(__name__)


STUDY_FIELDS = [
    ExtractionField(name="first_author", description="First author's last name", required=True),
    ExtractionField(
        name="publication_year",
        description="Year of publication",
        field_type=FieldType.NUMBER,
        required=True,
    ),
    ExtractionField(name="country", description="Country where study was conducted"),
    ExtractionField(
        name="study_design",
        description="Study design",
        field_type=FieldType.SELECT,
        required=True,
        options=["RCT", "Cohort", "Case-control", "Cross-sectional", "Qualitative", "Other"],
    ),
]

# Default extraction fields per question framework
DEFAULT_FIELDS = {
    "pico": [
        ExtractionField(name="sample_size", description="Total number of participants", field_type=FieldType.NUMBER),
        ExtractionField(name="population", description="Participant characteristics", field_type=FieldType.TEXTAREA),
        ExtractionField(name="intervention", description="Intervention details (dose, duration, frequency)"),
        ExtractionField(name="comparator", description="Comparator or control condition"),
        ExtractionField(name="primary_outcome", description="Primary outcome measure", required=True),
        ExtractionField(name="effect_estimate", description="Main effect estimate (e.g., OR, RR, MD)"),
        ExtractionField(name="follow_up_duration", description="Duration of follow-up"),
    ],
    "spider": [
        ExtractionField(name="sample", description="Who took part and how they were recruited", field_type=FieldType.TEXTAREA),
        ExtractionField(name="phenomenon_of_interest", description="Experience or behaviour studied"),
        ExtractionField(name="data_collection", description="Interviews, focus groups, observation..."),
        ExtractionField(name="analysis_method", description="Qualitative analysis approach"),
        ExtractionField(name="key_themes", description="Main themes or findings", field_type=FieldType.TEXTAREA),
    ],
}


class FieldRecommender:
    """Recommend extraction fields based on research question."""

    def __init__(
        self,
        llm_client: BaseLLMClient,
        cost_tracker: Optional[CostTracker] = None,
        audit_logger: Optional[AuditLogger] = None,
        project_id: Optional[str] = None,
    ):
        """
        Initialize field recommender.

        Args:
            llm_client: LLM client for generating recommendations
            cost_tracker: Optional cost tracker
            audit_logger: Optional audit logger
            project_id: Optional project ID for logging
        """
        self.llm_client = llm_client
        self.cost_tracker = cost_tracker
        self.audit_logger = audit_logger
        self.project_id = project_id

    @staticmethod
    def get_default_fields(framework_type: str = "pico") -> list[ExtractionField]:
        """Study characteristics followed by the framework's fields."""
        framework_type = getattr(framework_type, "value", framework_type)
        framework_fields = DEFAULT_FIELDS.get(framework_type, DEFAULT_FIELDS["pico"])
        return [f.model_copy() for f in STUDY_FIELDS + framework_fields]

    def recommend_fields(
        self,
        research_question: str,
        framework_type: str = "pico",
        sample_text: Optional[str] = None,
    ) -> list[ExtractionField]:
        """
        Recommend extraction fields for a research question.

        Args:
            research_question: The review's research question
            framework_type: pico, spider or other
            sample_text: Optional abstract of a typical included study

        Returns:
            List of recommended ExtractionField objects; the framework
            defaults if the reply cannot be parsed
        """
        framework_type = getattr(framework_type, "value", framework_type)
        sample = f"\nExample study:\n{sample_text[:3000]}\n" if sample_text else ""
        prompt = FIELD_RECOMMENDATION_USER.format(
            research_question=research_question,
            framework_type=framework_type.upper(),
            sample_text=sample,
        )
        messages = [
            {"role": "system", "content": FIELD_RECOMMENDATION_SYSTEM},
            {"role": "user", "content": prompt},
        ]

        response = self.llm_client.chat(messages=messages, temperature=0.3, max_tokens=1500, json_mode=True)

        if self.cost_tracker:
            self.cost_tracker.add_response(OperationType.FIELD_RECOMMENDATION, response, project_id=self.project_id)
        if self.audit_logger:
            self.audit_logger.log_response(
                OperationType.FIELD_RECOMMENDATION.value, prompt, response, project_id=self.project_id
            )

        data = extract_json(response.content)
        recommended = data.get("recommended_fields") if data else None
        if not isinstance(recommended, list):
            logger.warning("Could not parse field recommendations; using defaults")
            return self.get_default_fields(framework_type)

        fields = []
        seen = set()
        for i, field_data in enumerate(recommended):
            if not isinstance(field_data, dict):
                continue
            name = str(field_data.get("name") or field_data.get("field_name") or f"field_{i + 1}").strip()
            if not name or name in seen:
                continue
            try:
                field_type = FieldType(str(field_data.get("field_type", "text")).lower())
            except ValueError:
                field_type = FieldType.TEXT
            options = [str(o) for o in field_data.get("options") or []]
            if field_type in (FieldType.SELECT, FieldType.MULTISELECT) and not options:
                field_type = FieldType.TEXT
            seen.add(name)
            fields.append(ExtractionField(
                name=name,
                description=field_data.get("description") or None,
                field_type=field_type,
                required=bool(field_data.get("required", False)),
                options=options if field_type in (FieldType.SELECT, FieldType.MULTISELECT) else [],
            ))

        return fields or self.get_default_fields(framework_type)

    def merge_with_defaults(
        self,
        recommended_fields: list[ExtractionField],
        framework_type: str = "pico",
    ) -> list[ExtractionField]:
        """Defaults first, with recommended fields overriding by name."""
        merged = {f.name: f for f in self.get_default_fields(framework_type)}
        for field in recommended_fields:
            merged[field.name] = field
        return list(merged.values())
