"""Project-scoped AI chat: conversations, messages and completions."""

import logging
from datetime import datetime
from typing import Any, Optional

from ..errors import NotFoundError, SearchmaticError, ValidationError
from ..llm.base_client import BaseLLMClient, sanitize_messages
from ..llm.cost_tracker import CostTracker, OperationType
from ..llm.prompts import CHAT_CONVERSATION_CONTEXT, CHAT_PROJECT_CONTEXT, CHAT_SYSTEM
from ..storage.audit_logger import AuditLogger
from ..storage.database import from_json, to_json
from ..storage.models import Conversation, Message, MessageRole, User
from .base import BaseService

logger = logging.getLogger(__name__)


def _row_to_conversation(row) -> Conversation:
    return Conversation(
        id=row["id"],
        project_id=row["project_id"],
        user_id=row["user_id"],
        title=row["title"],
        context=row["context"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_message(row) -> Message:
    return Message(
        id=row["id"],
        conversation_id=row["conversation_id"],
        role=row["role"],
        content=row["content"],
        metadata=from_json(row["metadata"], {}),
        created_at=row["created_at"],
    )


class ChatService(BaseService):
    """Conversations belong to a project; messages belong to a conversation."""

    service_name = "chatService"

    def __init__(
        self,
        database,
        llm_client: Optional[BaseLLMClient] = None,
        cost_tracker: Optional[CostTracker] = None,
        audit_logger: Optional[AuditLogger] = None,
        settings=None,
    ):
        super().__init__(database)
        self.llm_client = llm_client
        self.cost_tracker = cost_tracker
        self.audit_logger = audit_logger
        self.temperature = settings.llm.chat_temperature if settings else 0.7
        self.max_tokens = settings.llm.chat_max_tokens if settings else 1000
        self.history_limit = settings.llm.chat_history_limit if settings else 20

    # =========================================================================
    # CONVERSATIONS
    # =========================================================================

    def create_conversation(
        self,
        user: User,
        project_id: str,
        title: str = "New Conversation",
        context: Optional[str] = None,
    ) -> Conversation:
        self.require_project(user, project_id)
        conversation = Conversation(
            project_id=project_id,
            user_id=user.id,
            title=(title or "").strip() or "New Conversation",
            context=context,
        )
        with self.database.transaction() as conn:
            conn.execute("""
                INSERT INTO conversations (id, project_id, user_id, title, context, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (
                conversation.id,
                conversation.project_id,
                conversation.user_id,
                conversation.title,
                conversation.context,
                conversation.created_at.isoformat(),
                conversation.updated_at.isoformat(),
            ))
            self.touch_project(project_id, conn)
        return conversation

    def list_conversations(self, user: User, project_id: Optional[str] = None) -> list[Conversation]:
        """Most recently active first."""
        user = self.require_user(user)
        query = "SELECT * FROM conversations WHERE user_id = ?"
        params: list[Any] = [user.id]
        if project_id:
            query += " AND project_id = ?"
            params.append(project_id)
        query += " ORDER BY updated_at DESC"
        return [_row_to_conversation(row) for row in self.database.fetch_all(query, tuple(params))]

    def get_conversation(self, user: User, conversation_id: str) -> Optional[Conversation]:
        user = self.require_user(user)
        row = self.database.fetch_one(
            "SELECT * FROM conversations WHERE id = ? AND user_id = ?",
            (conversation_id, user.id),
        )
        return _row_to_conversation(row) if row else None

    def _require_conversation(self, user: User, conversation_id: str) -> Conversation:
        conversation = self.get_conversation(user, conversation_id)
        if conversation is None:
            raise NotFoundError("Conversation", conversation_id)
        return conversation

    def update_conversation(
        self,
        user: User,
        conversation_id: str,
        title: Optional[str] = None,
        context: Optional[str] = None,
    ) -> Conversation:
        conversation = self._require_conversation(user, conversation_id)
        updated = conversation.model_copy(update={
            "title": title.strip() if title and title.strip() else conversation.title,
            "context": context if context is not None else conversation.context,
            "updated_at": datetime.now(),
        })
        with self.database.transaction() as conn:
            conn.execute(
                "UPDATE conversations SET title = ?, context = ?, updated_at = ? WHERE id = ?",
                (updated.title, updated.context, updated.updated_at.isoformat(), conversation_id),
            )
        return updated

    def delete_conversation(self, user: User, conversation_id: str) -> None:
        """Delete a conversation and its messages."""
        self._require_conversation(user, conversation_id)
        with self.database.transaction() as conn:
            conn.execute("DELETE FROM messages WHERE conversation_id = ?", (conversation_id,))
            conn.execute("DELETE FROM conversations WHERE id = ?", (conversation_id,))

    # =========================================================================
    # MESSAGES
    # =========================================================================

    def create_message(
        self,
        user: User,
        conversation_id: str,
        role: MessageRole | str,
        content: str,
        metadata: Optional[dict] = None,
    ) -> Message:
        """Store a message and bump the conversation's updated_at."""
        conversation = self._require_conversation(user, conversation_id)
        if not (content or "").strip():
            raise ValidationError("Message content is required")

        message = Message(
            conversation_id=conversation_id,
            role=role,
            content=content,
            metadata=metadata or {},
        )
        with self.database.transaction() as conn:
            conn.execute("""
                INSERT INTO messages (id, conversation_id, role, content, metadata, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (
                message.id,
                message.conversation_id,
                message.role.value,
                message.content,
                to_json(message.metadata),
                message.created_at.isoformat(),
            ))
            conn.execute(
                "UPDATE conversations SET updated_at = ? WHERE id = ?",
                (message.created_at.isoformat(), conversation_id),
            )
            self.touch_project(conversation.project_id, conn)
        return message

    def get_messages(self, user: User, conversation_id: str) -> list[Message]:
        """Messages in chronological order."""
        self._require_conversation(user, conversation_id)
        rows = self.database.fetch_all(
            "SELECT * FROM messages WHERE conversation_id = ? ORDER BY created_at ASC, rowid ASC",
            (conversation_id,),
        )
        return [_row_to_message(row) for row in rows]

    def delete_message(self, user: User, message_id: str) -> None:
        user = self.require_user(user)
        row = self.database.fetch_one("""
            SELECT m.id FROM messages m
            JOIN conversations c ON c.id = m.conversation_id
            WHERE m.id = ? AND c.user_id = ?
        """, (message_id, user.id))
        if row is None:
            raise NotFoundError("Message", message_id)
        with self.database.transaction() as conn:
            conn.execute("DELETE FROM messages WHERE id = ?", (message_id,))

    # =========================================================================
    # AI COMPLETION
    # =========================================================================

    def build_prompt_messages(self, user: User, conversation: Conversation) -> list[dict]:
        """System prompt with project context followed by recent history."""
        project = self.require_project(user, conversation.project_id)
        system_prompt = CHAT_SYSTEM + CHAT_PROJECT_CONTEXT.format(
            title=project["title"],
            description=project["description"] or "No description provided",
        )
        if conversation.context:
            system_prompt += CHAT_CONVERSATION_CONTEXT.format(context=conversation.context)

        history = self.get_messages(user, conversation.id)[-self.history_limit:]
        messages = [{"role": "system", "content": system_prompt}]
        messages.extend({"role": m.role.value, "content": m.content} for m in history)
        return sanitize_messages(messages)

    def send_message(
        self,
        user: User,
        conversation_id: str,
        content: str,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> Message:
        """
        Store the user's message, ask the LLM, and store its reply.

        The user message stays stored if the LLM call fails; the error
        propagates to the caller.

        Returns:
            The assistant Message
        """
        if self.llm_client is None:
            raise SearchmaticError("AI service not available")

        conversation = self._require_conversation(user, conversation_id)
        self.create_message(user, conversation_id, MessageRole.USER, content)
        messages = self.build_prompt_messages(user, conversation)

        def _complete():
            return self.llm_client.chat(
                messages,
                temperature=self.temperature if temperature is None else temperature,
                max_tokens=max_tokens or self.max_tokens,
            )

        try:
            response = self.execute("sendMessage", _complete, {"conversation_id": conversation_id})
        except Exception as e:
            if self.audit_logger:
                self.audit_logger.log_llm_call(
                    operation=OperationType.CHAT_COMPLETION.value,
                    prompt=content,
                    response="",
                    model=self.llm_client.model,
                    project_id=conversation.project_id,
                    user_id=user.id,
                    success=False,
                    error_message=str(e),
                )
            raise

        if self.cost_tracker:
            self.cost_tracker.add_response(OperationType.CHAT_COMPLETION, response, project_id=conversation.project_id)
        if self.audit_logger:
            self.audit_logger.log_llm_call(
                operation=OperationType.CHAT_COMPLETION.value,
                prompt=content,
                response=response.content,
                input_tokens=response.input_tokens,
                output_tokens=response.output_tokens,
                cost=response.cost,
                model=response.model,
                project_id=conversation.project_id,
                user_id=user.id,
            )

        return self.create_message(
            user,
            conversation_id,
            MessageRole.ASSISTANT,
            response.content or "(empty response)",
            metadata=response.usage_metadata(),
        )
