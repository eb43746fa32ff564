"""Shared workspace state for the Streamlit pages."""

import logging
from dataclasses import dataclass
from typing import Optional

import streamlit as st

from config.settings import Settings, configure_logging, get_settings
from searchmatic.auth import AuthService
from searchmatic.cache import invalidate_project
from searchmatic.dedup.detection_store import DetectionStore
from searchmatic.errors import SearchmaticError
from searchmatic.export import ExportService
from searchmatic.extraction import TemplateService
from searchmatic.jobs import JobContext, JobHandlers, JobProcessor, JobStatus
from searchmatic.llm import BaseLLMClient, CostTracker, create_client, get_llm_client
from searchmatic.search import PubMedClient
from searchmatic.services import (
    ChatService,
    ProjectService,
    ProtocolGuidanceService,
    ProtocolService,
    SearchHistoryService,
    StudyService,
)
from searchmatic.storage import AuditLogger, Database, ProjectWithStats, User, get_database

logger = logging.getLogger(__name__)


@dataclass
class Workspace:
    """Services bound to the local workspace user for one browser session."""
    settings: Settings
    database: Database
    user: User
    llm_client: Optional[BaseLLMClient]
    cost_tracker: CostTracker
    audit_logger: AuditLogger
    projects: ProjectService
    protocols: ProtocolService
    chat: ChatService
    studies: StudyService
    search_history: SearchHistoryService
    detections: DetectionStore
    templates: TemplateService
    exports: ExportService
    pubmed: PubMedClient
    jobs: JobProcessor

    @property
    def ai_enabled(self) -> bool:
        return self.llm_client is not None

    def set_llm_client(self, llm_client: Optional[BaseLLMClient]) -> None:
        """Swap the LLM client used by the AI-backed services."""
        self.llm_client = llm_client
        self.chat.llm_client = llm_client
        self.protocols.guidance_service.llm_client = llm_client


def _forget_finished_job_data(job) -> None:
    if job.status == JobStatus.COMPLETED and job.payload.get("project_id"):
        invalidate_project(job.payload["project_id"])


@st.cache_resource
def _shared_resources():
    """Database, workspace user and job processor shared by every browser session."""
    settings = get_settings()
    configure_logging(settings)
    database = get_database(settings)
    user = AuthService(database, settings).ensure_local_user()
    pubmed = PubMedClient.from_settings(settings)

    processor = JobProcessor(
        max_concurrent=settings.jobs.max_concurrent,
        poll_interval=settings.jobs.poll_interval,
        storage_path=settings.jobs_path,
    )
    context = JobContext(
        user=user,
        database=database,
        exports_path=settings.exports_path,
        pubmed_client=pubmed,
    )
    JobHandlers(context).register_all(processor)
    processor.add_listener(_forget_finished_job_data)
    processor.start()
    logger.info(f"Workspace ready for {user.email} at {settings.storage.base_path}")
    return settings, database, user, pubmed, processor


def get_workspace() -> Workspace:
    """Return this session's Workspace, building it on first use."""
    if "workspace" not in st.session_state:
        settings, database, user, pubmed, processor = _shared_resources()
        llm_client = get_llm_client(settings)
        cost_tracker = CostTracker(
            budget_limit=settings.cost.budget_limit,
            warning_threshold=settings.cost.warning_threshold,
        )
        audit_logger = AuditLogger(database, user_id=user.id)
        guidance = ProtocolGuidanceService(llm_client, database, cost_tracker, audit_logger)

        st.session_state.workspace = Workspace(
            settings=settings,
            database=database,
            user=user,
            llm_client=llm_client,
            cost_tracker=cost_tracker,
            audit_logger=audit_logger,
            projects=ProjectService(database),
            protocols=ProtocolService(database, guidance),
            chat=ChatService(database, llm_client, cost_tracker, audit_logger, settings),
            studies=StudyService(database),
            search_history=SearchHistoryService(database),
            detections=DetectionStore(database),
            templates=TemplateService(database),
            exports=ExportService(database),
            pubmed=pubmed,
            jobs=processor,
        )
    return st.session_state.workspace


# =============================================================================
# PROJECT SELECTION
# =============================================================================

def select_project(project_id: Optional[str]) -> None:
    st.session_state.current_project_id = project_id


def get_current_project(workspace: Workspace) -> Optional[ProjectWithStats]:
    """The selected project, or None if nothing is selected or it was deleted."""
    project_id = st.session_state.get("current_project_id")
    if not project_id:
        return None
    project = workspace.projects.get_project(workspace.user, project_id)
    if project is None:
        select_project(None)
    return project


def require_project(workspace: Workspace) -> ProjectWithStats:
    """Return the selected project or stop the page with a hint."""
    project = get_current_project(workspace)
    if project is None:
        st.info("👋 **No project selected.** Choose or create one on the **Projects** page.")
        st.stop()
    return project


def render_project_picker(workspace: Workspace) -> Optional[ProjectWithStats]:
    """Sidebar selectbox over the user's projects."""
    projects = workspace.projects.list_projects(workspace.user)
    with st.sidebar:
        if not projects:
            st.caption("No projects yet")
            return None

        ids = [p.id for p in projects]
        current = st.session_state.get("current_project_id")
        index = ids.index(current) if current in ids else 0
        titles = {p.id: p.title for p in projects}
        selected = st.selectbox(
            "Project",
            options=ids,
            index=index,
            format_func=lambda pid: titles[pid],
            key="sidebar_project",
        )
        select_project(selected)
    return next(p for p in projects if p.id == selected)


# =============================================================================
# LLM CONNECTION
# =============================================================================

def render_llm_settings(workspace: Workspace) -> None:
    """Sidebar form to connect an LLM provider for this session."""
    with st.sidebar.expander("🤖 AI Provider", expanded=not workspace.ai_enabled):
        if workspace.ai_enabled:
            st.success(f"Connected: {workspace.llm_client.model}")

        provider = st.selectbox("Provider", ["openai", "anthropic"], key="llm_provider")
        llm = workspace.settings.llm
        default_model = llm.openai_default_model if provider == "openai" else llm.anthropic_default_model
        model = st.text_input("Model", value=default_model, key=f"llm_model_{provider}")
        api_key = st.text_input("API Key", type="password", key="llm_api_key")

        if st.button("Connect", key="llm_connect", disabled=not api_key):
            try:
                client = create_client(provider, api_key, model, max_retries=llm.max_retries)
            except ValueError as e:
                st.error(str(e))
                return
            workspace.set_llm_client(client)
            st.success(f"Connected to {provider} ({model})")
            st.rerun()


def show_error(error: Exception, action: str = "Operation") -> None:
    """Display a service error; unexpected errors are logged with a traceback."""
    if isinstance(error, SearchmaticError):
        st.error(f"{action} failed: {error}")
    else:
        logger.exception(f"{action} failed")
        st.error(f"{action} failed unexpectedly: {error}")
