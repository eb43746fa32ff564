"""Application settings and configuration."""

import os
import logging
import secrets
from pathlib import Path
from typing import Optional
from dataclasses import dataclass, field
from functools import lru_cache

logger = logging.getLogger(__name__)


@dataclass
class LLMSettings:
    """LLM provider settings."""
    default_provider: str = "openai"

    # OpenAI
    openai_api_key: Optional[str] = None
    openai_default_model: str = "gpt-4o"

    # Anthropic
    anthropic_api_key: Optional[str] = None
    anthropic_default_model: str = "claude-sonnet-4-20250514"

    # Protocol guidance defaults
    default_temperature: float = 0.3
    default_max_tokens: int = 3000

    # Chat defaults
    chat_temperature: float = 0.7
    chat_max_tokens: int = 1000
    chat_history_limit: int = 20

    max_retries: int = 3
    retry_delay: float = 1.0


@dataclass
class CostSettings:
    """Budget tracking for AI calls."""
    budget_limit: Optional[float] = None
    warning_threshold: float = 0.8


@dataclass
class StorageSettings:
    """Storage configuration."""
    base_path: str = field(
        default_factory=lambda: str(Path.home() / "searchmatic_data")
    )
    database_name: str = "searchmatic.db"
    exports_dir: str = "exports"


@dataclass
class AuthSettings:
    """Authentication configuration."""
    # Unset means a secret generated once per workspace, see Settings.get_jwt_secret
    jwt_secret: Optional[str] = None
    jwt_algorithm: str = "HS256"
    jwt_audience: str = "authenticated"
    token_ttl_minutes: int = 60 * 24
    password_min_length: int = 8
    pbkdf2_iterations: int = 200_000

    # Workspace user the Streamlit app runs as
    local_user_email: str = "researcher@searchmatic.local"
    local_user_name: str = "Local Researcher"


@dataclass
class PubMedSettings:
    """NCBI E-utilities configuration."""
    api_key: Optional[str] = None
    email: Optional[str] = None
    tool: str = "searchmatic"
    rate_limit_delay: float = 0.334
    timeout: int = 30
    max_results: int = 10000


@dataclass
class JobSettings:
    """Background job processor configuration."""
    max_concurrent: int = 3
    poll_interval: float = 1.0
    queue_file: str = "jobs.json"


@dataclass
class UISettings:
    """UI configuration."""
    page_title: str = "Searchmatic"
    page_icon: str = "🔎"
    layout: str = "wide"
    items_per_page: int = 25


@dataclass
class Settings:
    """Application settings container."""
    llm: LLMSettings = field(default_factory=LLMSettings)
    cost: CostSettings = field(default_factory=CostSettings)
    storage: StorageSettings = field(default_factory=StorageSettings)
    auth: AuthSettings = field(default_factory=AuthSettings)
    pubmed: PubMedSettings = field(default_factory=PubMedSettings)
    jobs: JobSettings = field(default_factory=JobSettings)
    ui: UISettings = field(default_factory=UISettings)

    # App info
    app_name: str = "Searchmatic"
    version: str = "1.0.0"
    debug: bool = False

    def __post_init__(self):
        """Load settings from environment variables."""
        self._load_from_env()

    def _load_from_env(self):
        """Load settings from environment variables."""
        # LLM API keys
        if os.getenv("OPENAI_API_KEY"):
            self.llm.openai_api_key = os.getenv("OPENAI_API_KEY")

        if os.getenv("ANTHROPIC_API_KEY"):
            self.llm.anthropic_api_key = os.getenv("ANTHROPIC_API_KEY")

        if os.getenv("SEARCHMATIC_DEFAULT_PROVIDER"):
            self.llm.default_provider = os.getenv("SEARCHMATIC_DEFAULT_PROVIDER").lower()

        # Debug mode
        if os.getenv("SEARCHMATIC_DEBUG"):
            self.debug = os.getenv("SEARCHMATIC_DEBUG").lower() in ("true", "1", "yes")

        # Storage path
        if os.getenv("SEARCHMATIC_STORAGE_PATH"):
            self.storage.base_path = os.getenv("SEARCHMATIC_STORAGE_PATH")

        # Auth
        if os.getenv("SEARCHMATIC_JWT_SECRET"):
            self.auth.jwt_secret = os.getenv("SEARCHMATIC_JWT_SECRET")

        if os.getenv("SEARCHMATIC_LOCAL_USER_EMAIL"):
            self.auth.local_user_email = os.getenv("SEARCHMATIC_LOCAL_USER_EMAIL")

        # PubMed; an API key raises the NCBI limit to 10 requests/s
        if os.getenv("NCBI_API_KEY"):
            self.pubmed.api_key = os.getenv("NCBI_API_KEY")
            self.pubmed.rate_limit_delay = 0.1

        if os.getenv("NCBI_EMAIL"):
            self.pubmed.email = os.getenv("NCBI_EMAIL")

    @property
    def database_path(self) -> Path:
        return Path(self.storage.base_path) / self.storage.database_name

    @property
    def jobs_path(self) -> Path:
        return Path(self.storage.base_path) / self.jobs.queue_file

    @property
    def exports_path(self) -> Path:
        return Path(self.storage.base_path) / self.storage.exports_dir

    @property
    def jwt_secret_path(self) -> Path:
        return Path(self.storage.base_path) / ".jwt_secret"

    def get_jwt_secret(self) -> str:
        """
        Return the token signing secret.

        SEARCHMATIC_JWT_SECRET wins; otherwise a random secret is created on
        first use and kept in the workspace so tokens survive restarts.
        """
        if self.auth.jwt_secret:
            return self.auth.jwt_secret

        path = self.jwt_secret_path
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            with open(path, "x", encoding="utf-8") as f:
                f.write(secrets.token_urlsafe(32))
            logger.info("Generated a new token signing secret at %s", path)
        except FileExistsError:
            logger.debug("Reusing token signing secret at %s", path)
        self.auth.jwt_secret = path.read_text(encoding="utf-8").strip()
        return self.auth.jwt_secret

    def ensure_directories(self):
        """Create storage directories if missing."""
        Path(self.storage.base_path).mkdir(parents=True, exist_ok=True)
        self.exports_path.mkdir(parents=True, exist_ok=True)


@lru_cache()
def get_settings() -> Settings:
    """Get application settings (cached)."""
    return Settings()


def configure_logging(settings: Optional[Settings] = None):
    """Configure root logging from settings."""
    settings = settings or get_settings()
    logging.basicConfig(
        level=logging.DEBUG if settings.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# Model pricing information (per 1M tokens)
MODEL_PRICING = {
    # OpenAI
    "gpt-4.1": {"input": 2.00, "output": 8.00},
    "gpt-4o": {"input": 2.50, "output": 10.00},
    "gpt-4o-mini": {"input": 0.15, "output": 0.60},
    "gpt-4-turbo": {"input": 10.00, "output": 30.00},
    "gpt-4": {"input": 30.00, "output": 60.00},
    "gpt-3.5-turbo": {"input": 0.50, "output": 1.50},

    # Anthropic
    "claude-sonnet-4-20250514": {"input": 3.00, "output": 15.00},
    "claude-opus-4-20250514": {"input": 15.00, "output": 75.00},
    "claude-3-7-sonnet-latest": {"input": 3.00, "output": 15.00},
    "claude-3-5-sonnet-latest": {"input": 3.00, "output": 15.00},
    "claude-3-5-haiku-latest": {"input": 0.80, "output": 4.00},
}


# Review types offered for protocol guidance
REVIEW_TYPES = {
    "systematic_review": {
        "label": "Systematic Review",
        "description": "Comprehensive review following PRISMA guidelines",
    },
    "meta_analysis": {
        "label": "Meta-Analysis",
        "description": "Statistical synthesis of quantitative results",
    },
    "scoping_review": {
        "label": "Scoping Review",
        "description": "Maps key concepts and evidence types in a field",
    },
    "narrative_review": {
        "label": "Narrative Review",
        "description": "Qualitative summary of literature",
    },
    "umbrella_review": {
        "label": "Umbrella Review",
        "description": "Review of existing systematic reviews",
    },
}


# Protocol sections the AI can focus on
FOCUS_AREAS = {
    "pico": "Focus on developing a clear PICO framework (Population, Intervention, Comparison, Outcome).",
    "spider": "Focus on the SPIDER framework (Sample, Phenomenon of Interest, Design, Evaluation, Research type) for qualitative research.",
    "inclusion": "Focus on developing specific, measurable inclusion criteria.",
    "exclusion": "Focus on developing clear exclusion criteria that minimize bias.",
    "search_strategy": "Focus on developing a comprehensive search strategy including databases, keywords, and Boolean operators.",
    "data_extraction": "Focus on planning what data to extract from included studies.",
    "quality_assessment": "Focus on selecting appropriate quality assessment tools and risk of bias evaluation.",
}
