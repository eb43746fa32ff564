"""Project, protocol, chat and study services."""

from .base import BaseService
from .project_service import ProjectService, get_status_display, get_status_color
from .protocol_guidance import ProtocolGuidanceService, GuidanceRequest, GuidanceResponse
from .protocol_service import ProtocolService
from .chat_service import ChatService
from .study_service import StudyService
from .search_history import SearchHistoryService

__all__ = [
    "BaseService",
    "ProjectService",
    "get_status_display",
    "get_status_color",
    "ProtocolGuidanceService",
    "GuidanceRequest",
    "GuidanceResponse",
    "ProtocolService",
    "ChatService",
    "StudyService",
    "SearchHistoryService",
]
