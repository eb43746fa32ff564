"""Tests for ProtocolService and protocol guidance parsing."""

import json

import pytest

from searchmatic.errors import NotFoundError, ProtocolLockedError, SearchmaticError, ValidationError
from searchmatic.services import ProtocolGuidanceService, ProtocolService
from searchmatic.services.protocol_parsing import (
    is_significant_update,
    parse_ai_guidance,
    parse_ai_refinements,
    split_items,
    split_terms,
)
from searchmatic.storage import FrameworkType, ProtocolStatus


TEXT_GUIDANCE = """Population: Adults over 65 with depression
Intervention: Structured exercise programs
Comparison: Usual care
Outcome: Depressive symptoms

Inclusion Criteria:
- Randomized controlled trials
- Participants aged 65+

Exclusion Criteria:
* Case reports
1. Animal studies

Search Strategy:
Keywords: exercise, depression, older adults
Databases: PubMed, Embase
"""

JSON_GUIDANCE = json.dumps({
    "research_question": "Does exercise reduce depression in older adults?",
    "pico": {
        "population": "Adults over 65",
        "intervention": "Exercise",
        "comparison": "",
        "outcome": "Depressive symptoms",
    },
    "inclusion_criteria": ["RCTs", "English language"],
    "exclusion_criteria": "Case reports; Animal studies",
    "keywords": ["exercise", "depression"],
    "databases": ["PubMed"],
})


@pytest.fixture
def protocols(database):
    return ProtocolService(database)


@pytest.fixture
def protocol(protocols, user, project):
    return protocols.create_protocol(
        user,
        project.id,
        "Exercise protocol",
        research_question="Does exercise reduce depression?",
        inclusion_criteria=["RCTs"],
    )


class TestGuidanceParsing:
    """Tests for parse_ai_guidance and helpers."""

    def test_text_guidance_pico(self):
        """Test labelled free-text sections."""
        components = parse_ai_guidance(TEXT_GUIDANCE, "pico")

        assert components["population"] == "Adults over 65 with depression"
        assert components["intervention"] == "Structured exercise programs"
        assert components["comparison"] == "Usual care"
        assert components["outcome"] == "Depressive symptoms"
        assert components["inclusion_criteria"] == ["Randomized controlled trials", "Participants aged 65+"]
        assert components["exclusion_criteria"] == ["Case reports", "Animal studies"]
        assert components["keywords"] == ["exercise", "depression", "older adults"]
        assert components["databases"] == ["PubMed", "Embase"]

    def test_json_guidance(self):
        """Test that JSON replies are mapped directly."""
        components = parse_ai_guidance(JSON_GUIDANCE, "pico")

        assert components["population"] == "Adults over 65"
        assert "comparison" not in components
        assert components["research_question"].startswith("Does exercise")
        assert components["inclusion_criteria"] == ["RCTs", "English language"]
        assert components["exclusion_criteria"] == ["Case reports", "Animal studies"]
        assert components["databases"] == ["PubMed"]

    def test_json_spider(self):
        """Test SPIDER fields including the long phenomenon key."""
        reply = json.dumps({"spider": {"sample": "Nurses", "phenomenon_of_interest": "Burnout", "design": "Interviews"}})
        components = parse_ai_guidance(reply, FrameworkType.SPIDER)
        assert components == {"sample": "Nurses", "phenomenon": "Burnout", "design": "Interviews"}

    def test_framework_other_ignores_pico(self):
        components = parse_ai_guidance(JSON_GUIDANCE, "other")
        assert "population" not in components
        assert components["keywords"] == ["exercise", "depression"]

    def test_nothing_found(self):
        assert parse_ai_guidance("I cannot help with that.", "pico") == {}

    def test_split_items(self):
        assert split_items("- one\n  2) two\n\n• three\n") == ["one", "two", "three"]

    def test_split_terms(self):
        assert split_terms("a, b; c\n d") == ["a", "b", "c", "d"]

    def test_significant_update(self):
        assert is_significant_update({"inclusion_criteria": []})
        assert not is_significant_update({"description": "x", "title": "y"})


class TestRefinementParsing:
    """Tests for parse_ai_refinements."""

    def test_inclusion(self, protocol):
        updates = parse_ai_refinements("Inclusion:\n- RCTs\n- Adults 65+\n", "inclusion", protocol)
        assert updates == {"inclusion_criteria": ["RCTs", "Adults 65+"]}

    def test_exclusion(self, protocol):
        updates = parse_ai_refinements("Exclude:\n- Case reports", "exclusion", protocol)
        assert updates == {"exclusion_criteria": ["Case reports"]}

    def test_search_strategy(self, protocol):
        """Test keywords and databases with the strategy carried over."""
        updates = parse_ai_refinements("Keywords: a, b\nDatabases: PubMed; Embase", "search_strategy", protocol)
        assert updates["keywords"] == ["a", "b"]
        assert updates["databases"] == ["PubMed", "Embase"]
        assert updates["search_strategy"] == {}

    def test_framework_for_pico_protocol(self, protocol):
        updates = parse_ai_refinements("Population: Adults\nOutcome: Mood", "framework", protocol)
        assert updates == {"population": "Adults", "outcome": "Mood"}

    def test_spider_focus_on_pico_protocol(self, protocol):
        assert parse_ai_refinements("Sample: Nurses", "spider", protocol) == {}


class TestProtocolCrud:
    """Tests for protocol create, read, update and delete."""

    def test_create_defaults(self, protocol, user):
        assert protocol.user_id == user.id
        assert protocol.version == 1
        assert protocol.status == ProtocolStatus.DRAFT
        assert not protocol.is_locked
        assert protocol.inclusion_criteria == ["RCTs"]

    def test_create_ignores_lock_fields(self, protocols, user, project):
        """Test that lock state and version cannot be set on create."""
        created = protocols.create_protocol(user, project.id, "Sneaky", is_locked=True, version=7)
        assert not created.is_locked
        assert created.version == 1

    def test_create_requires_title(self, protocols, user, project):
        with pytest.raises(ValidationError):
            protocols.create_protocol(user, project.id, " ")

    def test_create_in_other_users_project(self, protocols, other_user, project):
        with pytest.raises(NotFoundError):
            protocols.create_protocol(other_user, project.id, "Intruder")

    def test_round_trip(self, protocols, protocol, user):
        """Test that JSON columns survive storage."""
        loaded = protocols.get_protocol(user, protocol.id)
        assert loaded.inclusion_criteria == ["RCTs"]
        assert loaded.research_question == "Does exercise reduce depression?"

    def test_list_scoped(self, protocols, protocol, user, other_user, project):
        assert [p.id for p in protocols.list_protocols(user, project.id)] == [protocol.id]
        assert protocols.list_protocols(other_user) == []

    def test_significant_update_bumps_version(self, protocols, protocol, user):
        updated = protocols.update_protocol(user, protocol.id, {"exclusion_criteria": ["Case reports"]})
        assert updated.version == 2
        assert updated.exclusion_criteria == ["Case reports"]

    def test_minor_update_keeps_version(self, protocols, protocol, user):
        updated = protocols.update_protocol(user, protocol.id, {"description": "Notes"})
        assert updated.version == 1
        assert updated.description == "Notes"

    def test_delete(self, protocols, protocol, user):
        protocols.delete_protocol(user, protocol.id)
        assert protocols.get_protocol(user, protocol.id) is None


class TestProtocolLocking:
    """Tests for locking, unlocking and duplicating protocols."""

    def test_lock_sets_active(self, protocols, protocol, user):
        locked = protocols.lock_protocol(user, protocol.id)
        assert locked.is_locked
        assert locked.locked_at is not None
        assert locked.status == ProtocolStatus.ACTIVE

    def test_locked_cannot_change(self, protocols, protocol, user):
        """Test that updates and deletes are refused while locked."""
        protocols.lock_protocol(user, protocol.id)
        with pytest.raises(ProtocolLockedError):
            protocols.update_protocol(user, protocol.id, {"title": "Changed"})
        with pytest.raises(ProtocolLockedError):
            protocols.delete_protocol(user, protocol.id)

    def test_unlock(self, protocols, protocol, user):
        protocols.lock_protocol(user, protocol.id)
        unlocked = protocols.unlock_protocol(user, protocol.id)
        assert not unlocked.is_locked
        assert unlocked.locked_at is None
        assert protocols.update_protocol(user, protocol.id, {"title": "Changed"}).title == "Changed"

    def test_duplicate(self, protocols, protocol, user):
        """Test that a copy is an unlocked draft at version 1."""
        protocols.update_protocol(user, protocol.id, {"research_question": "New question"})
        protocols.lock_protocol(user, protocol.id)

        copy = protocols.duplicate_protocol(user, protocol.id)

        assert copy.id != protocol.id
        assert copy.title == "Copy of Exercise protocol"
        assert copy.version == 1
        assert not copy.is_locked
        assert copy.status == ProtocolStatus.DRAFT
        assert protocols.get_protocol(user, copy.id).research_question == "New question"


class TestProtocolAI:
    """Tests for AI generation and refinement."""

    def test_without_ai_service(self, protocols, user, project):
        with pytest.raises(SearchmaticError, match="AI service not available"):
            protocols.generate_protocol_from_ai(user, project.id, "Does exercise help?")

    def test_generate_from_ai(self, database, user, project, llm_factory):
        """Test a protocol drafted from JSON guidance."""
        service = ProtocolService(database, ProtocolGuidanceService(llm_factory([JSON_GUIDANCE]), database))

        protocol = service.generate_protocol_from_ai(user, project.id, "Does exercise reduce depression in older adults?")

        assert protocol.title.startswith("AI-Generated Protocol: Does exercise")
        assert protocol.ai_generated
        assert protocol.population == "Adults over 65"
        assert protocol.inclusion_criteria == ["RCTs", "English language"]
        assert protocol.research_question == "Does exercise reduce depression in older adults?"
        assert protocol.ai_guidance_used["framework_type"] == "pico"

    def test_refine_with_ai(self, database, user, protocol, llm_factory):
        """Test merging refined inclusion criteria."""
        llm = llm_factory(["Inclusion:\n- RCTs\n- Adults 65+"])
        service = ProtocolService(database, ProtocolGuidanceService(llm, database))

        refined = service.refine_protocol_with_ai(user, protocol.id, "inclusion", "Focus on older adults")

        assert refined.inclusion_criteria == ["RCTs", "Adults 65+"]
        assert refined.version == 2
        assert "inclusion" in refined.ai_guidance_used
        assert llm.calls[0]["json_mode"] is False

    def test_refine_locked(self, database, user, protocol, llm_factory):
        service = ProtocolService(database, ProtocolGuidanceService(llm_factory(), database))
        service.lock_protocol(user, protocol.id)
        with pytest.raises(ProtocolLockedError):
            service.refine_protocol_with_ai(user, protocol.id, "inclusion")
