"""
Pytest Configuration and Fixtures
==================================
Shared fixtures for the Searchmatic test suite.
"""

import os
import sys
from typing import Optional

import pytest

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config.settings import Settings
from searchmatic.auth import AuthService
from searchmatic.llm import BaseLLMClient, LLMResponse
from searchmatic.services import ProjectService, StudyService
from searchmatic.storage import get_database


# =============================================================================
# ENVIRONMENT FIXTURES
# =============================================================================

@pytest.fixture(autouse=True)
def mock_environment(monkeypatch):
    """Keep real keys and paths out of the tests."""
    for name in (
        "OPENAI_API_KEY",
        "ANTHROPIC_API_KEY",
        "SEARCHMATIC_DEFAULT_PROVIDER",
        "SEARCHMATIC_STORAGE_PATH",
        "SEARCHMATIC_JWT_SECRET",
        "SEARCHMATIC_LOCAL_USER_EMAIL",
        "NCBI_API_KEY",
        "NCBI_EMAIL",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def settings(tmp_path):
    """Settings pointing at a temporary workspace, with cheap password hashing."""
    settings = Settings()
    settings.storage.base_path = str(tmp_path / "workspace")
    settings.auth.pbkdf2_iterations = 1000
    settings.pubmed.rate_limit_delay = 0
    return settings


# =============================================================================
# DATABASE FIXTURES
# =============================================================================

@pytest.fixture
def database(settings):
    return get_database(settings)


@pytest.fixture
def auth(database, settings):
    return AuthService(database, settings)


@pytest.fixture
def user(auth):
    return auth.sign_up("alice@example.com", "correct-horse", full_name="Alice Researcher")


@pytest.fixture
def other_user(auth):
    return auth.sign_up("bob@example.com", "battery-staple", full_name="Bob Reviewer")


@pytest.fixture
def projects(database):
    return ProjectService(database)


@pytest.fixture
def studies(database):
    return StudyService(database)


@pytest.fixture
def project(projects, user):
    return projects.create_project(
        user,
        title="Exercise for Depression in Older Adults",
        description="Effect of structured exercise on depressive symptoms",
        research_domain="Psychiatry",
    )


@pytest.fixture
def make_study(studies, user, project):
    """Create a study in the default project."""
    def _make(title: str, **fields):
        return studies.create_study(user, fields.pop("project_id", project.id), title, **fields)
    return _make


# =============================================================================
# LLM FIXTURES
# =============================================================================

class FakeLLMClient(BaseLLMClient):
    """Returns queued replies and records every request."""

    def __init__(self, replies: Optional[list] = None, model: str = "gpt-4o-mini", cost: float = 0.001):
        super().__init__(api_key="test-key", model=model)
        self.replies = list(replies or [])
        self.cost = cost
        self.calls = []

    def queue(self, *replies) -> None:
        self.replies.extend(replies)

    def chat(self, messages, temperature=0.7, max_tokens=1000, json_mode=False) -> LLMResponse:
        self.calls.append({
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "json_mode": json_mode,
        })
        reply = self.replies.pop(0) if self.replies else "OK"
        if isinstance(reply, Exception):
            raise reply
        return LLMResponse(
            content=reply,
            input_tokens=100,
            output_tokens=50,
            total_tokens=150,
            cost=self.cost,
            model=self.model,
        )

    def estimate_cost(self, input_tokens: int, output_tokens: int) -> float:
        return (input_tokens + output_tokens) / 1_000_000

    def count_tokens(self, text: str) -> int:
        return len(text.split())

    @property
    def provider_name(self) -> str:
        return "Fake"

    @property
    def supported_models(self) -> list[str]:
        return [self.model]


@pytest.fixture
def fake_llm():
    return FakeLLMClient()


@pytest.fixture
def llm_factory():
    """Build FakeLLMClients with custom replies."""
    return FakeLLMClient
