"""Tests for ProtocolGuidanceService."""

import pytest

from searchmatic.errors import NotFoundError, SearchmaticError, ValidationError
from searchmatic.llm import CostTracker
from searchmatic.services import GuidanceRequest, ProtocolGuidanceService
from searchmatic.storage import AuditLogger


@pytest.fixture
def audit(database, user):
    return AuditLogger(database, user_id=user.id)


@pytest.fixture
def make_service(database, audit):
    def _make(llm):
        return ProtocolGuidanceService(llm, database, cost_tracker=CostTracker(), audit_logger=audit)
    return _make


class TestRequestValidation:
    """Tests for request checks before any LLM call."""

    def test_create_requires_question(self, make_service, fake_llm, user):
        with pytest.raises(ValidationError, match="research question is required"):
            make_service(fake_llm).get_guidance(user, GuidanceRequest(type="create", research_question="  "))
        assert fake_llm.calls == []

    def test_framework_requires_question(self, make_service, fake_llm, user):
        with pytest.raises(ValidationError):
            make_service(fake_llm).get_guidance(user, GuidanceRequest(type="framework"))

    def test_improve_requires_protocol(self, make_service, fake_llm, user):
        with pytest.raises(ValidationError, match="current protocol"):
            make_service(fake_llm).get_guidance(user, GuidanceRequest(type="improve", research_question="Q"))

    def test_no_llm(self, make_service, user):
        with pytest.raises(SearchmaticError, match="AI service not available"):
            make_service(None).get_guidance(user, GuidanceRequest(type="create", research_question="Q"))

    def test_other_users_project(self, make_service, fake_llm, other_user, project):
        request = GuidanceRequest(type="create", research_question="Q", project_id=project.id)
        with pytest.raises(NotFoundError):
            make_service(fake_llm).get_guidance(other_user, request)


class TestGetGuidance:
    """Tests for successful and failed guidance calls."""

    def test_structured_reply(self, make_service, llm_factory, user, audit):
        """Test a JSON reply with cost and audit records."""
        llm = llm_factory(['{"research_question": "Refined?", "keywords": ["a"]}'])
        service = make_service(llm)

        response = service.get_guidance(user, GuidanceRequest(type="create", research_question="Does exercise help?"))

        assert response.structured
        assert response.guidance["research_question"] == "Refined?"
        assert response.cost == pytest.approx(0.001)
        assert llm.calls[0]["json_mode"] is True
        assert llm.calls[0]["temperature"] == 0.3
        assert "Does exercise help?" in llm.calls[0]["messages"][-1]["content"]
        assert service.cost_tracker.total_cost == pytest.approx(0.001)
        assert audit.get_entries()[0].operation == "protocol_guidance"

    def test_unstructured_reply(self, make_service, llm_factory, user):
        """Test that prose replies are kept raw."""
        response = make_service(llm_factory(["Consider narrowing the population."])).get_guidance(
            user, GuidanceRequest(type="create", research_question="Q")
        )
        assert not response.structured
        assert response.guidance == {"raw_response": "Consider narrowing the population."}

    def test_improve_uses_text_mode(self, make_service, llm_factory, user):
        llm = llm_factory(["Inclusion:\n- RCTs"])
        make_service(llm).get_guidance(user, GuidanceRequest(
            type="improve",
            research_question="Q",
            current_protocol={"title": "P"},
            focus_area="inclusion",
            additional_context="Older adults only",
        ))
        assert llm.calls[0]["json_mode"] is False
        assert "Older adults only" in llm.calls[0]["messages"][-1]["content"]

    def test_failed_call_is_audited(self, make_service, llm_factory, user, audit):
        """Test that LLM errors are logged as failures and re-raised."""
        llm = llm_factory([RuntimeError("provider down")])
        with pytest.raises(RuntimeError, match="provider down"):
            make_service(llm).get_guidance(user, GuidanceRequest(type="validate", current_protocol={"title": "P"}))

        entry = audit.get_entries()[0]
        assert entry.success is False
        assert entry.error_message == "provider down"


class TestSavedGuidance:
    """Tests for the per-project guidance store."""

    def test_latest_guidance_is_kept(self, make_service, llm_factory, user, project):
        """Test that a second request replaces the first."""
        service = make_service(llm_factory(['{"step": 1}', "Second reply"]))
        service.get_guidance(user, GuidanceRequest(type="create", research_question="Q", project_id=project.id))
        service.get_guidance(user, GuidanceRequest(
            type="framework", research_question="Q", focus_area="spider", project_id=project.id
        ))

        saved = service.get_saved_guidance(user, project.id)
        assert saved.type == "framework"
        assert saved.focus_area == "spider"
        assert saved.raw_text == "Second reply"
        assert not saved.structured

    def test_nothing_saved(self, make_service, fake_llm, user, project):
        assert make_service(fake_llm).get_saved_guidance(user, project.id) is None

    def test_no_project_is_not_saved(self, make_service, fake_llm, user, project, database):
        make_service(fake_llm).get_guidance(user, GuidanceRequest(type="create", research_question="Q"))
        assert database.fetch_one("SELECT COUNT(*) AS n FROM protocol_guidance")["n"] == 0
