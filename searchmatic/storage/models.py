"""Pydantic data models for Searchmatic."""

from datetime import datetime
from enum import Enum
from typing import Any, Optional, Literal
from pydantic import BaseModel, Field
import uuid


def _new_id() -> str:
    return str(uuid.uuid4())


class ProjectType(str, Enum):
    """Kinds of literature review a project can run."""
    SYSTEMATIC_REVIEW = "systematic_review"
    META_ANALYSIS = "meta_analysis"
    SCOPING_REVIEW = "scoping_review"
    NARRATIVE_REVIEW = "narrative_review"
    UMBRELLA_REVIEW = "umbrella_review"
    CUSTOM = "custom"


class ProjectStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    REVIEW = "review"
    COMPLETED = "completed"
    ARCHIVED = "archived"


class FrameworkType(str, Enum):
    """Question frameworks for protocols."""
    PICO = "pico"  # Population, Intervention, Comparison, Outcome
    SPIDER = "spider"  # Sample, Phenomenon of Interest, Design, Evaluation, Research type
    OTHER = "other"


class ProtocolStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    COMPLETED = "completed"
    ARCHIVED = "archived"


class StudyType(str, Enum):
    ARTICLE = "article"
    THESIS = "thesis"
    BOOK = "book"
    CONFERENCE_PAPER = "conference_paper"
    REPORT = "report"
    PATENT = "patent"
    OTHER = "other"


class StudyStatus(str, Enum):
    """Screening workflow states for a study."""
    PENDING = "pending"
    SCREENING = "screening"
    INCLUDED = "included"
    EXCLUDED = "excluded"
    DUPLICATE = "duplicate"
    EXTRACTED = "extracted"


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class FieldType(str, Enum):
    """Data types for extraction form fields."""
    TEXT = "text"
    NUMBER = "number"
    DATE = "date"
    BOOLEAN = "boolean"
    SELECT = "select"
    MULTISELECT = "multiselect"
    TEXTAREA = "textarea"


class ExportFormat(str, Enum):
    CSV = "csv"
    JSON = "json"
    XLSX = "xlsx"
    BIBTEX = "bibtex"
    ENDNOTE = "endnote"
    PRISMA = "prisma"


class DuplicateStatus(str, Enum):
    POTENTIAL = "potential"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"


# =============================================================================
# USER MODELS
# =============================================================================

class User(BaseModel):
    """An authenticated researcher profile."""
    id: str = Field(default_factory=_new_id)
    email: str
    full_name: Optional[str] = None
    organization: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)


class AuthSession(BaseModel):
    """Result of a successful sign-in."""
    access_token: str
    token_type: str = "bearer"
    expires_at: datetime
    user: User


# =============================================================================
# PROJECT MODELS
# =============================================================================

class Project(BaseModel):
    """A literature review project owned by one user."""
    id: str = Field(default_factory=_new_id)
    user_id: str
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    project_type: ProjectType = ProjectType.SYSTEMATIC_REVIEW
    status: ProjectStatus = ProjectStatus.DRAFT
    research_domain: Optional[str] = None
    progress_percentage: int = Field(default=0, ge=0, le=100)
    current_stage: str = "Planning"
    last_activity_at: datetime = Field(default_factory=datetime.now)
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)

    class Config:
        json_encoders = {datetime: lambda v: v.isoformat()}


class ProjectStats(BaseModel):
    """Study counts for a project."""
    total_studies: int = 0
    pending_studies: int = 0
    included_studies: int = 0
    excluded_studies: int = 0
    duplicate_studies: int = 0
    last_updated: Optional[datetime] = None


class ProjectWithStats(Project):
    stats: ProjectStats = Field(default_factory=ProjectStats)


class ProjectAnalytics(BaseModel):
    stats: ProjectStats
    completion_rate: int = 0  # screened / total, percent
    inclusion_rate: int = 0  # included / screened, percent


class DashboardStats(BaseModel):
    total_projects: int = 0
    active_projects: int = 0
    completed_projects: int = 0
    average_progress: int = 0


# =============================================================================
# PROTOCOL MODELS
# =============================================================================

class Protocol(BaseModel):
    """A review protocol: question, framework, criteria and search plan."""
    id: str = Field(default_factory=_new_id)
    project_id: str
    user_id: str
    title: str = Field(..., min_length=1)
    description: Optional[str] = None
    research_question: Optional[str] = None
    framework_type: FrameworkType = FrameworkType.PICO

    # PICO
    population: Optional[str] = None
    intervention: Optional[str] = None
    comparison: Optional[str] = None
    outcome: Optional[str] = None

    # SPIDER
    sample: Optional[str] = None
    phenomenon: Optional[str] = None
    design: Optional[str] = None
    evaluation: Optional[str] = None
    research_type: Optional[str] = None

    inclusion_criteria: list[str] = Field(default_factory=list)
    exclusion_criteria: list[str] = Field(default_factory=list)
    search_strategy: dict[str, Any] = Field(default_factory=dict)
    databases: list[str] = Field(default_factory=list)
    keywords: list[str] = Field(default_factory=list)
    study_types: list[str] = Field(default_factory=list)

    status: ProtocolStatus = ProtocolStatus.DRAFT
    is_locked: bool = False
    locked_at: Optional[datetime] = None
    version: int = 1

    ai_generated: bool = False
    ai_guidance_used: dict[str, Any] = Field(default_factory=dict)

    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)

    class Config:
        json_encoders = {datetime: lambda v: v.isoformat()}


# =============================================================================
# CHAT MODELS
# =============================================================================

class Conversation(BaseModel):
    id: str = Field(default_factory=_new_id)
    project_id: str
    user_id: str
    title: str = "New Conversation"
    context: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)


class Message(BaseModel):
    id: str = Field(default_factory=_new_id)
    conversation_id: str
    role: MessageRole
    content: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.now)


# =============================================================================
# STUDY MODELS
# =============================================================================

class Study(BaseModel):
    """A bibliographic record imported into a project."""
    id: str = Field(default_factory=_new_id)
    project_id: str
    user_id: str
    title: str = Field(..., min_length=1)
    authors: Optional[str] = None  # "Smith J; Doe A"
    publication_year: Optional[int] = None
    publication_date: Optional[str] = None  # YYYY[-MM[-DD]]
    journal: Optional[str] = None
    doi: Optional[str] = None
    pmid: Optional[str] = None
    url: Optional[str] = None
    abstract: Optional[str] = None
    keywords: list[str] = Field(default_factory=list)
    study_type: StudyType = StudyType.ARTICLE
    status: StudyStatus = StudyStatus.PENDING
    screening_notes: Optional[str] = None
    screening_decision: Optional[Literal["included", "excluded"]] = None
    quality_score: Optional[float] = None
    is_duplicate: bool = False
    duplicate_of: Optional[str] = None
    similarity_hash: Optional[str] = None
    extraction_data: dict[str, Any] = Field(default_factory=dict)
    source: Optional[str] = None  # PubMed, manual, ...
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)

    class Config:
        json_encoders = {datetime: lambda v: v.isoformat()}

    @property
    def author_list(self) -> list[str]:
        if not self.authors:
            return []
        return [a.strip() for a in self.authors.split(";") if a.strip()]


class ImportSummary(BaseModel):
    imported: int = 0
    skipped: int = 0
    study_ids: list[str] = Field(default_factory=list)


# =============================================================================
# PUBMED MODELS
# =============================================================================

class PubMedArticle(BaseModel):
    """An article parsed from an efetch response."""
    pmid: str
    title: str = ""
    authors: list[str] = Field(default_factory=list)
    abstract: Optional[str] = None
    journal: Optional[str] = None
    journal_abbrev: Optional[str] = None
    publication_date: Optional[str] = None
    publication_year: Optional[int] = None
    doi: Optional[str] = None
    pmc_id: Optional[str] = None
    keywords: list[str] = Field(default_factory=list)
    mesh_terms: list[str] = Field(default_factory=list)
    publication_types: list[str] = Field(default_factory=list)
    language: Optional[str] = None
    url: Optional[str] = None


class SearchFilters(BaseModel):
    """Filters translated into a PubMed query."""
    query: Optional[str] = None

    # PICO components
    population: Optional[str] = None
    intervention: Optional[str] = None
    comparison: Optional[str] = None
    outcome: Optional[str] = None

    start_year: Optional[str] = None
    end_year: Optional[str] = None

    publication_types: list[str] = Field(default_factory=list)
    study_types: list[str] = Field(default_factory=list)
    languages: list[str] = Field(default_factory=list)
    journals: list[str] = Field(default_factory=list)

    has_abstract: bool = False
    is_free_full_text: bool = False

    max_results: int = Field(default=100, ge=1)
    offset: int = Field(default=0, ge=0)
    sort_by: Literal["relevance", "date", "first_author", "last_author", "journal", "title"] = "relevance"


class SearchResult(BaseModel):
    articles: list[PubMedArticle] = Field(default_factory=list)
    total_count: int = 0
    query: str = ""
    has_more: bool = False
    next_offset: Optional[int] = None


# =============================================================================
# EXTRACTION MODELS
# =============================================================================

class ExtractionField(BaseModel):
    """Definition of one field on an extraction form."""
    name: str = Field(..., min_length=1)
    field_type: FieldType = FieldType.TEXT
    description: Optional[str] = None
    required: bool = False
    options: list[str] = Field(default_factory=list)  # select / multiselect


class ExtractionTemplate(BaseModel):
    id: str = Field(default_factory=_new_id)
    project_id: str
    user_id: str
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    fields: list[ExtractionField] = Field(default_factory=list)
    is_active: bool = True
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)


class ExtractedValue(BaseModel):
    """Single extracted data value."""
    field_name: str
    value: Any = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    source_text: Optional[str] = None


class StudyExtraction(BaseModel):
    """Values filled in for one study against one template."""
    id: str = Field(default_factory=_new_id)
    study_id: str
    template_id: str
    project_id: str
    values: dict[str, Any] = Field(default_factory=dict)
    extracted_by: Literal["ai", "manual"] = "manual"
    notes: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)


# =============================================================================
# DEDUPLICATION / EXPORT / AUDIT MODELS
# =============================================================================

class DuplicateDetection(BaseModel):
    id: str = Field(default_factory=_new_id)
    project_id: str
    study_id: str
    duplicate_of: str
    similarity_score: float = Field(..., ge=0.0, le=1.0)
    matched_fields: list[str] = Field(default_factory=list)
    status: DuplicateStatus = DuplicateStatus.POTENTIAL
    created_at: datetime = Field(default_factory=datetime.now)


class ExportLog(BaseModel):
    id: str = Field(default_factory=_new_id)
    project_id: str
    user_id: str
    export_format: ExportFormat
    record_count: int = 0
    file_name: Optional[str] = None
    filters: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.now)


class SearchHistoryEntry(BaseModel):
    """A search run against a literature database for a project."""
    id: str = Field(default_factory=_new_id)
    project_id: str
    user_id: str
    database_name: str = "pubmed"
    query: str
    filters: dict[str, Any] = Field(default_factory=dict)
    result_count: int = 0
    created_at: datetime = Field(default_factory=datetime.now)


class AuditEntry(BaseModel):
    """Single audit log entry for an LLM call."""
    id: str = Field(default_factory=_new_id)
    user_id: Optional[str] = None
    project_id: Optional[str] = None
    operation: str
    prompt: str
    response: str
    success: bool = True
    error_message: Optional[str] = None
    input_tokens: int = 0
    output_tokens: int = 0
    cost: float = 0.0
    model: str = ""
    timestamp: datetime = Field(default_factory=datetime.now)

    class Config:
        json_encoders = {datetime: lambda v: v.isoformat()}
