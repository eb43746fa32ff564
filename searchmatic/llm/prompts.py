"""Prompt templates for Searchmatic AI features."""

# =============================================================================
# PROTOCOL GUIDANCE PROMPTS
# =============================================================================

PROTOCOL_CREATE_SYSTEM = """You are a world-class research methodology expert specializing
in systematic literature reviews and meta-analyses. You help researchers create
comprehensive, high-quality research protocols following PRISMA, Cochrane, and JBI guidelines.

Create a complete research protocol with specific, actionable components.
Always provide structured, detailed guidance with rationale."""

PROTOCOL_CREATE_USER = """Create a comprehensive research protocol for a {review_type} with this research question:

"{research_question}"

Please provide a structured protocol including:
1. Background and rationale
2. Objectives (primary and secondary)
3. Methods ({framework_name} framework, inclusion/exclusion criteria)
4. Search strategy (databases, keywords, limits)
5. Study selection process
6. Data extraction plan
7. Quality assessment approach
8. Data synthesis methods

Respond in JSON format:
{{
    "research_question": "refined research question",
    "pico": {{"population": "...", "intervention": "...", "comparison": "...", "outcome": "..."}},
    "spider": {{"sample": "...", "phenomenon": "...", "design": "...", "evaluation": "...", "research_type": "..."}},
    "inclusion_criteria": ["criterion 1", "..."],
    "exclusion_criteria": ["criterion 1", "..."],
    "keywords": ["keyword 1", "..."],
    "databases": ["PubMed", "..."],
    "rationale": "why these choices fit the question"
}}
Only fill the framework object that matches {framework_name}."""

PROTOCOL_VALIDATE_SYSTEM = """You are a senior research methodology reviewer. Evaluate research
protocols for completeness, rigor, and adherence to established guidelines (PRISMA, Cochrane, JBI).

Provide constructive feedback with specific recommendations for improvement."""

PROTOCOL_VALIDATE_USER = """Please validate this {review_type} protocol for the research question: "{research_question}"

Current Protocol:
{protocol_json}

Evaluate:
1. Completeness - Are all essential components present?
2. Clarity - Are objectives and methods clearly defined?
3. Feasibility - Is the approach realistic and well-planned?
4. Rigor - Does it meet methodological standards?
5. Compliance - Does it follow relevant guidelines?

Respond in JSON format:
{{
    "overall_score": 0 to 10,
    "strengths": ["..."],
    "issues": ["..."],
    "recommendations": ["..."]
}}"""

PROTOCOL_IMPROVE_SYSTEM = """You are an expert research methodology consultant. Help researchers
enhance their protocols by providing specific improvements and refinements while
maintaining scientific rigor."""

PROTOCOL_IMPROVE_USER = """Improve this {review_type} protocol for: "{research_question}"

Current Protocol:
{protocol_json}

{focus_instruction}
{additional_context}
Write the improved sections under these headings, one item per line:

Population:
Intervention:
Comparison:
Outcome:
Inclusion Criteria:
Exclusion Criteria:
Keywords:
Databases:

Explain your improvements briefly after the headings."""

FRAMEWORK_SYSTEM = """You are a research framework specialist. Generate detailed, well-structured
research frameworks (PICO, SPIDER) that guide systematic literature searches and reviews."""

FRAMEWORK_USER = """Create a detailed {framework_name} framework for this {review_type}:

Research Question: "{research_question}"

Provide:
1. Structured framework components
2. Specific definitions for each element
3. Search terms derived from framework
4. Inclusion/exclusion criteria based on framework

Format as structured JSON with detailed explanations."""

FRAMEWORK_NAMES = {
    "pico": "PICO (Population, Intervention, Comparison, Outcome)",
    "spider": "SPIDER (Sample, Phenomenon of Interest, Design, Evaluation, Research type)",
    "search_strategy": "comprehensive search strategy with databases, keywords, and syntax",
    "data_extraction": "data extraction framework with specific fields and procedures",
    "quality_assessment": "quality assessment framework with appropriate tools and criteria",
}

# Sampling parameters per guidance type
GUIDANCE_PARAMETERS = {
    "create": {"temperature": 0.3, "max_tokens": 3000},
    "validate": {"temperature": 0.2, "max_tokens": 2500},
    "improve": {"temperature": 0.3, "max_tokens": 3000},
    "framework": {"temperature": 0.2, "max_tokens": 2000},
}

# =============================================================================
# CHAT PROMPTS
# =============================================================================

CHAT_SYSTEM = """You are Searchmatic, an AI research assistant for systematic literature reviews.
You help researchers refine research questions, design protocols, build search
strategies, screen studies and plan data extraction. Be precise, cite methodological
guidance (PRISMA, Cochrane, JBI) where relevant, and say so when you are unsure."""

CHAT_PROJECT_CONTEXT = """
Current project: {title}
Project description: {description}"""

CHAT_CONVERSATION_CONTEXT = """
Conversation context: {context}"""

# =============================================================================
# DATA EXTRACTION PROMPTS
# =============================================================================

FIELD_RECOMMENDATION_SYSTEM = """You are an expert in systematic review data extraction.
Your task is to recommend data fields to extract based on the research question
and the review framework."""

FIELD_RECOMMENDATION_USER = """Based on this systematic review research question,
recommend data fields for an extraction form:

Research Question: {research_question}
Framework: {framework_type}
{sample_text}
Respond in JSON format:
{{
    "recommended_fields": [
        {{
            "name": "field name",
            "description": "what to extract",
            "field_type": "text" or "number" or "date" or "boolean" or "select" or "multiselect" or "textarea",
            "options": ["only for select/multiselect"],
            "required": true or false
        }}
    ]
}}"""

DATA_EXTRACTION_SYSTEM = """You are an expert systematic review data extractor.
Your task is to accurately extract specific data fields from study records.
If information is not reported, use null."""

DATA_EXTRACTION_USER = """Extract the following data fields from this study:

Fields to extract:
{fields_with_descriptions}

Study:
{study_text}

For numeric fields, extract the numeric value only (no units).
For select fields, answer with one of the listed options.

Respond in JSON format:
{{
    "extractions": {{
        "field name": {{
            "value": "extracted value or null",
            "source_quote": "brief quote where found (or null)",
            "confidence": 0.0 to 1.0
        }}
    }}
}}"""


def format_fields_for_extraction(fields: list) -> str:
    """Render template fields as a bullet list for the extraction prompt."""
    lines = []
    for f in fields:
        line = f"- {f.name} ({f.field_type.value}): {f.description or 'no description'}"
        if f.options:
            line += f" Options: {', '.join(f.options)}"
        lines.append(line)
    return "\n".join(lines)
