"""Turn AI protocol guidance into protocol field updates."""

import re
from typing import Any, Optional

from ..llm.base_client import extract_json

PICO_FIELDS = ("population", "intervention", "comparison", "outcome")
SPIDER_FIELDS = ("sample", "phenomenon", "design", "evaluation", "research_type")

# Fields whose change bumps the protocol version
SIGNIFICANT_FIELDS = (
    "research_question",
    "framework_type",
    "inclusion_criteria",
    "exclusion_criteria",
    "search_strategy",
)

# (field, label regex, labels that end the section)
PICO_SECTIONS = [
    ("population", r"Population", r"Intervention"),
    ("intervention", r"Intervention", r"Comparison"),
    ("comparison", r"Comparison", r"Outcome"),
    ("outcome", r"Outcome", None),
]

SPIDER_SECTIONS = [
    ("sample", r"Sample", r"Phenomenon"),
    ("phenomenon", r"Phenomenon(?: of Interest)?", r"Design"),
    ("design", r"Design", r"Evaluation"),
    ("evaluation", r"Evaluation", r"Research type"),
    ("research_type", r"Research type", None),
]

BULLET_PATTERN = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s*")


def _line_section(text: str, label: str, stop: Optional[str] = None) -> Optional[str]:
    """Text after a label up to the end of the line (or the stop label)."""
    lookahead = r"\n|\Z" if stop is None else rf"\n|{stop}|\Z"
    match = re.search(rf"{label}[:\-\s*]*(.*?)(?={lookahead})", text, re.IGNORECASE)
    if not match:
        return None
    return match.group(1).strip(" *")


def _block_section(text: str, label: str, stops: Optional[str] = None) -> Optional[str]:
    """Multi-line block after a label up to one of the stop labels or the end."""
    lookahead = r"\Z" if stops is None else rf"{stops}|\Z"
    match = re.search(rf"{label}[:\-\s*]*([\s\S]*?)(?={lookahead})", text, re.IGNORECASE)
    return match.group(1) if match else None


def split_items(block: str) -> list[str]:
    """Split a criteria block into one item per line, dropping bullet markers."""
    items = []
    for line in block.splitlines():
        item = BULLET_PATTERN.sub("", line).strip(" *")
        if item:
            items.append(item)
    return items


def split_terms(text: str, separators: str = r",|;|\n") -> list[str]:
    return [t.strip() for t in re.split(separators, text) if t.strip()]


def _as_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return split_items(value) if "\n" in value else split_terms(value, r",|;")
    return [str(v).strip() for v in value if str(v).strip()]


def _framework_sections(text: str, framework_type: str) -> dict:
    sections = {"pico": PICO_SECTIONS, "spider": SPIDER_SECTIONS}.get(framework_type, [])
    components = {}
    for field, label, stop in sections:
        value = _line_section(text, label, stop)
        if value:
            components[field] = value
    return components


def _parse_structured(data: dict, framework_type: str) -> dict:
    """Map a JSON guidance object onto protocol fields."""
    components: dict[str, Any] = {}

    framework = data.get(framework_type) if framework_type in ("pico", "spider") else None
    if isinstance(framework, dict):
        allowed = PICO_FIELDS if framework_type == "pico" else SPIDER_FIELDS
        for field in allowed:
            value = framework.get(field)
            if field == "phenomenon" and value is None:
                value = framework.get("phenomenon_of_interest")
            if isinstance(value, str) and value.strip():
                components[field] = value.strip()

    if isinstance(data.get("research_question"), str) and data["research_question"].strip():
        components["research_question"] = data["research_question"].strip()

    for field in ("inclusion_criteria", "exclusion_criteria", "keywords", "databases"):
        if field in data:
            components[field] = _as_list(data[field])

    return components


def parse_ai_guidance(guidance: str, framework_type: str) -> dict:
    """
    Extract protocol fields from AI guidance.

    JSON replies are mapped directly. Free-text replies fall back to
    labelled sections ("Population: ...", "Inclusion Criteria: ...").

    Args:
        guidance: Raw LLM reply
        framework_type: "pico", "spider" or "other"

    Returns:
        Dict of protocol fields found in the guidance
    """
    framework_type = getattr(framework_type, "value", framework_type)

    data = extract_json(guidance)
    if data is not None:
        return _parse_structured(data, framework_type)

    components: dict[str, Any] = _framework_sections(guidance, framework_type)

    inclusion = _block_section(guidance, r"Inclusion Criteria", r"Exclusion Criteria|Search Strategy")
    if inclusion is not None:
        components["inclusion_criteria"] = split_items(inclusion)

    exclusion = _block_section(guidance, r"Exclusion Criteria", r"Search Strategy")
    if exclusion is not None:
        components["exclusion_criteria"] = split_items(exclusion)

    keywords = _line_section(guidance, r"Keywords?", r"Database")
    if keywords is not None:
        components["keywords"] = split_terms(keywords)

    databases = _line_section(guidance, r"Databases?")
    if databases is not None:
        components["databases"] = split_terms(databases)

    return components


def parse_ai_refinements(guidance: str, focus_area: str, existing) -> dict:
    """
    Extract updates for one focus area of an existing protocol.

    Args:
        guidance: Raw LLM reply
        focus_area: inclusion, exclusion, search_strategy, framework, pico or spider
        existing: The Protocol being refined

    Returns:
        Dict of protocol updates; empty when nothing relevant was found
    """
    updates: dict[str, Any] = {}
    framework_type = getattr(existing.framework_type, "value", existing.framework_type)

    if focus_area == "inclusion":
        block = _block_section(guidance, r"(?:Inclusion|Include)", r"Exclusion")
        if block is not None:
            updates["inclusion_criteria"] = split_items(block)

    elif focus_area == "exclusion":
        block = _block_section(guidance, r"(?:Exclusion|Exclude)")
        if block is not None:
            updates["exclusion_criteria"] = split_items(block)

    elif focus_area == "search_strategy":
        keywords = _line_section(guidance, r"Keywords?", r"Database")
        if keywords is not None:
            updates["keywords"] = split_terms(keywords, r",|;")

        databases = _line_section(guidance, r"Databases?")
        if databases is not None:
            updates["databases"] = split_terms(databases, r",|;")

        updates["search_strategy"] = dict(existing.search_strategy or {})

    elif focus_area in ("framework", "pico") and framework_type == "pico":
        updates.update(_framework_sections(guidance, "pico"))

    elif focus_area == "spider" and framework_type == "spider":
        updates.update(_framework_sections(guidance, "spider"))

    return updates


def is_significant_update(updates: dict) -> bool:
    """True if the update touches a field that warrants a new version."""
    return any(field in updates for field in SIGNIFICANT_FIELDS)
