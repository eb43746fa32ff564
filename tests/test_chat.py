"""Tests for ChatService."""

import pytest

from searchmatic.errors import NotFoundError, SearchmaticError, ValidationError
from searchmatic.llm import CostTracker
from searchmatic.services import ChatService
from searchmatic.storage import AuditLogger, MessageRole


@pytest.fixture
def audit(database, user):
    return AuditLogger(database, user_id=user.id)


@pytest.fixture
def make_chat(database, settings, audit):
    def _make(llm=None):
        return ChatService(database, llm, cost_tracker=CostTracker(), audit_logger=audit, settings=settings)
    return _make


@pytest.fixture
def conversation(make_chat, user, project):
    return make_chat().create_conversation(user, project.id, "Search ideas", context="Focus on RCTs")


class TestConversations:
    """Tests for conversation CRUD."""

    def test_create_defaults_title(self, make_chat, user, project):
        conversation = make_chat().create_conversation(user, project.id, "   ")
        assert conversation.title == "New Conversation"

    def test_create_in_other_users_project(self, make_chat, other_user, project):
        with pytest.raises(NotFoundError):
            make_chat().create_conversation(other_user, project.id)

    def test_list_most_recent_first(self, make_chat, user, project, conversation):
        """Test that a new message moves a conversation to the top."""
        chat = make_chat()
        newer = chat.create_conversation(user, project.id, "Newer")
        chat.create_message(user, conversation.id, "user", "Bump")

        assert [c.id for c in chat.list_conversations(user, project.id)] == [conversation.id, newer.id]

    def test_get_scoped_to_owner(self, make_chat, other_user, conversation):
        assert make_chat().get_conversation(other_user, conversation.id) is None

    def test_update(self, make_chat, user, conversation):
        """Test that blank titles keep the old title."""
        chat = make_chat()
        updated = chat.update_conversation(user, conversation.id, title="  ", context="Observational too")
        assert updated.title == "Search ideas"
        assert chat.get_conversation(user, conversation.id).context == "Observational too"

    def test_delete_removes_messages(self, make_chat, user, conversation, database):
        chat = make_chat()
        chat.create_message(user, conversation.id, MessageRole.USER, "Hello")
        chat.delete_conversation(user, conversation.id)

        assert chat.get_conversation(user, conversation.id) is None
        assert database.fetch_one("SELECT COUNT(*) AS n FROM messages")["n"] == 0


class TestMessages:
    """Tests for storing and reading messages."""

    def test_chronological_order(self, make_chat, user, conversation):
        chat = make_chat()
        chat.create_message(user, conversation.id, "user", "First")
        chat.create_message(user, conversation.id, "assistant", "Second", metadata={"cost": 0.1})

        messages = chat.get_messages(user, conversation.id)
        assert [m.content for m in messages] == ["First", "Second"]
        assert messages[1].role == MessageRole.ASSISTANT
        assert messages[1].metadata == {"cost": 0.1}

    def test_empty_content(self, make_chat, user, conversation):
        with pytest.raises(ValidationError, match="content is required"):
            make_chat().create_message(user, conversation.id, "user", "  ")

    def test_invalid_role(self, make_chat, user, conversation):
        with pytest.raises(ValueError):
            make_chat().create_message(user, conversation.id, "tool", "Hi")

    def test_delete_message(self, make_chat, user, other_user, conversation):
        chat = make_chat()
        message = chat.create_message(user, conversation.id, "user", "Oops")
        with pytest.raises(NotFoundError):
            chat.delete_message(other_user, message.id)
        chat.delete_message(user, message.id)
        assert chat.get_messages(user, conversation.id) == []


class TestPromptBuilding:
    """Tests for ChatService.build_prompt_messages."""

    def test_system_prompt_has_context(self, make_chat, user, project, conversation):
        chat = make_chat()
        chat.create_message(user, conversation.id, "user", "Which databases?")

        messages = chat.build_prompt_messages(user, conversation)

        assert messages[0]["role"] == "system"
        assert project.title in messages[0]["content"]
        assert "Focus on RCTs" in messages[0]["content"]
        assert messages[1] == {"role": "user", "content": "Which databases?"}

    def test_history_limit(self, make_chat, user, conversation, settings):
        """Test that only the most recent messages are sent."""
        settings.llm.chat_history_limit = 2
        chat = make_chat()
        for i in range(4):
            chat.create_message(user, conversation.id, "user", f"Message {i}")

        messages = chat.build_prompt_messages(user, conversation)
        assert [m["content"] for m in messages[1:]] == ["Message 2", "Message 3"]


class TestSendMessage:
    """Tests for ChatService.send_message."""

    def test_reply_is_stored_with_usage(self, make_chat, llm_factory, user, conversation, audit):
        """Test the round trip through the LLM."""
        llm = llm_factory(["Try PubMed and Embase."])
        chat = make_chat(llm)

        reply = chat.send_message(user, conversation.id, "Which databases?", temperature=0.2)

        assert reply.role == MessageRole.ASSISTANT
        assert reply.content == "Try PubMed and Embase."
        assert reply.metadata == {
            "input_tokens": 100,
            "output_tokens": 50,
            "total_tokens": 150,
            "cost": 0.001,
            "model": "gpt-4o-mini",
        }
        assert [m.role for m in chat.get_messages(user, conversation.id)] == [MessageRole.USER, MessageRole.ASSISTANT]
        assert llm.calls[0]["temperature"] == 0.2
        assert llm.calls[0]["messages"][-1] == {"role": "user", "content": "Which databases?"}
        assert chat.cost_tracker.total_cost == pytest.approx(0.001)
        assert audit.get_entries()[0].operation == "chat_completion"

    def test_empty_reply_placeholder(self, make_chat, llm_factory, user, conversation):
        reply = make_chat(llm_factory([""])).send_message(user, conversation.id, "Hello")
        assert reply.content == "(empty response)"

    def test_no_llm_stores_nothing(self, make_chat, user, conversation):
        chat = make_chat()
        with pytest.raises(SearchmaticError, match="AI service not available"):
            chat.send_message(user, conversation.id, "Hello")
        assert chat.get_messages(user, conversation.id) == []

    def test_llm_error_keeps_user_message(self, make_chat, llm_factory, user, conversation, audit):
        """Test that failures propagate and are audited."""
        chat = make_chat(llm_factory([ConnectionError("network down")]))

        with pytest.raises(ConnectionError):
            chat.send_message(user, conversation.id, "Hello")

        messages = chat.get_messages(user, conversation.id)
        assert [m.content for m in messages] == ["Hello"]
        entry = audit.get_entries()[0]
        assert entry.success is False
        assert entry.error_message == "network down"
