"""Storage module for Searchmatic."""

from .models import (
    ProjectType,
    ProjectStatus,
    FrameworkType,
    ProtocolStatus,
    StudyType,
    StudyStatus,
    MessageRole,
    FieldType,
    ExportFormat,
    DuplicateStatus,
    User,
    AuthSession,
    Project,
    ProjectStats,
    ProjectWithStats,
    ProjectAnalytics,
    DashboardStats,
    Protocol,
    Conversation,
    Message,
    Study,
    ImportSummary,
    PubMedArticle,
    SearchFilters,
    SearchResult,
    SearchHistoryEntry,
    ExtractionField,
    ExtractionTemplate,
    ExtractedValue,
    StudyExtraction,
    DuplicateDetection,
    ExportLog,
    AuditEntry,
)
from .database import Database, get_database
from .audit_logger import AuditLogger

__all__ = [
    # Enums
    "ProjectType",
    "ProjectStatus",
    "FrameworkType",
    "ProtocolStatus",
    "StudyType",
    "StudyStatus",
    "MessageRole",
    "FieldType",
    "ExportFormat",
    "DuplicateStatus",
    # Account models
    "User",
    "AuthSession",
    # Project models
    "Project",
    "ProjectStats",
    "ProjectWithStats",
    "ProjectAnalytics",
    "DashboardStats",
    # Protocol and chat models
    "Protocol",
    "Conversation",
    "Message",
    # Study and search models
    "Study",
    "ImportSummary",
    "PubMedArticle",
    "SearchFilters",
    "SearchResult",
    "SearchHistoryEntry",
    # Extraction models
    "ExtractionField",
    "ExtractionTemplate",
    "ExtractedValue",
    "StudyExtraction",
    # Dedup, export and audit models
    "DuplicateDetection",
    "ExportLog",
    "AuditEntry",
    # Managers
    "Database",
    "get_database",
    "AuditLogger",
]
