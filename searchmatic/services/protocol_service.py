"""Protocol CRUD, locking and AI-assisted generation."""

import logging
import uuid
from datetime import datetime
from typing import Any, Optional

from ..errors import NotFoundError, ProtocolLockedError, SearchmaticError, ValidationError
from ..storage.database import from_json, to_json
from ..storage.models import FrameworkType, Protocol, ProtocolStatus, User
from .base import BaseService, build_update
from .protocol_guidance import GuidanceRequest, ProtocolGuidanceService
from .protocol_parsing import is_significant_update, parse_ai_guidance, parse_ai_refinements

logger = logging.getLogger(__name__)

JSON_COLUMNS = {
    "inclusion_criteria": [],
    "exclusion_criteria": [],
    "search_strategy": {},
    "databases": [],
    "keywords": [],
    "study_types": [],
    "ai_guidance_used": {},
}

TEXT_COLUMNS = (
    "title", "description", "research_question", "framework_type",
    "population", "intervention", "comparison", "outcome",
    "sample", "phenomenon", "design", "evaluation", "research_type",
    "status",
)

UPDATABLE_FIELDS = set(TEXT_COLUMNS) | set(JSON_COLUMNS)

# UI focus areas map onto guidance focus areas
FOCUS_AREA_MAP = {
    "framework": "pico",
    "inclusion": "inclusion",
    "exclusion": "exclusion",
    "search_strategy": "search_strategy",
    "general": "pico",
}


def _row_to_protocol(row) -> Protocol:
    data = {key: row[key] for key in row.keys()}
    for column, default in JSON_COLUMNS.items():
        data[column] = from_json(data.get(column), default)
    data["is_locked"] = bool(data["is_locked"])
    data["ai_generated"] = bool(data["ai_generated"])
    return Protocol(**data)


class ProtocolService(BaseService):
    """Manage review protocols for a user's projects."""

    service_name = "protocolService"

    def __init__(self, database, guidance_service: Optional[ProtocolGuidanceService] = None):
        super().__init__(database)
        self.guidance_service = guidance_service

    # =========================================================================
    # CRUD
    # =========================================================================

    def _insert(self, protocol: Protocol) -> Protocol:
        columns = ["id", "project_id", "user_id", *TEXT_COLUMNS, *JSON_COLUMNS,
                   "is_locked", "locked_at", "version", "ai_generated", "created_at", "updated_at"]
        values = [protocol.id, protocol.project_id, protocol.user_id]
        for column in TEXT_COLUMNS:
            value = getattr(protocol, column)
            values.append(getattr(value, "value", value))
        values.extend(to_json(getattr(protocol, column)) for column in JSON_COLUMNS)
        values.extend([
            1 if protocol.is_locked else 0,
            protocol.locked_at.isoformat() if protocol.locked_at else None,
            protocol.version,
            1 if protocol.ai_generated else 0,
            protocol.created_at.isoformat(),
            protocol.updated_at.isoformat(),
        ])
        placeholders = ", ".join("?" for _ in columns)
        with self.database.transaction() as conn:
            conn.execute(
                f"INSERT INTO protocols ({', '.join(columns)}) VALUES ({placeholders})",
                values,
            )
            self.touch_project(protocol.project_id, conn)
        return protocol

    def create_protocol(self, user: User, project_id: str, title: str, **fields) -> Protocol:
        """
        Create a draft protocol in one of the user's projects.

        New protocols start unlocked at version 1; lock state, version and
        AI provenance cannot be set here except ai_generated/ai_guidance_used.
        """
        self.require_project(user, project_id)
        if not (title or "").strip():
            raise ValidationError("Protocol title is required")

        allowed = UPDATABLE_FIELDS | {"ai_generated"}
        extra = {k: v for k, v in fields.items() if k in allowed and v is not None}
        protocol = Protocol(project_id=project_id, user_id=user.id, title=title.strip(), **extra)
        return self.execute("createProtocol", lambda: self._insert(protocol), {"project_id": project_id})

    def list_protocols(self, user: User, project_id: Optional[str] = None) -> list[Protocol]:
        user = self.require_user(user)
        query = "SELECT * FROM protocols WHERE user_id = ?"
        params: list[Any] = [user.id]
        if project_id:
            query += " AND project_id = ?"
            params.append(project_id)
        query += " ORDER BY updated_at DESC"
        return [_row_to_protocol(row) for row in self.database.fetch_all(query, tuple(params))]

    def get_protocol(self, user: User, protocol_id: str) -> Optional[Protocol]:
        user = self.require_user(user)
        row = self.database.fetch_one(
            "SELECT * FROM protocols WHERE id = ? AND user_id = ?",
            (protocol_id, user.id),
        )
        return _row_to_protocol(row) if row else None

    def _require_protocol(self, user: User, protocol_id: str) -> Protocol:
        protocol = self.get_protocol(user, protocol_id)
        if protocol is None:
            raise NotFoundError("Protocol", protocol_id)
        return protocol

    def update_protocol(self, user: User, protocol_id: str, updates: dict[str, Any]) -> Protocol:
        """
        Apply field updates to an unlocked protocol.

        Significant changes (question, framework, criteria, search strategy)
        increment the version.

        Raises:
            NotFoundError: If the protocol does not exist for this user
            ProtocolLockedError: If the protocol is locked
        """
        existing = self._require_protocol(user, protocol_id)
        if existing.is_locked:
            raise ProtocolLockedError("Cannot update locked protocol")

        if "framework_type" in updates:
            updates["framework_type"] = FrameworkType(updates["framework_type"])
        if "status" in updates:
            updates["status"] = ProtocolStatus(updates["status"])
        if "title" in updates and not (updates["title"] or "").strip():
            raise ValidationError("Protocol title is required")

        encoders = {column: to_json for column in JSON_COLUMNS}
        set_clause, params = build_update(updates, UPDATABLE_FIELDS, encoders)
        version = existing.version + 1 if is_significant_update(updates) else existing.version
        set_clause = f"{set_clause}, " if set_clause else ""

        def _update():
            with self.database.transaction() as conn:
                conn.execute(
                    f"UPDATE protocols SET {set_clause}version = ?, updated_at = ? WHERE id = ? AND user_id = ?",
                    (*params, version, datetime.now().isoformat(), protocol_id, user.id),
                )
                self.touch_project(existing.project_id, conn)
            return self._require_protocol(user, protocol_id)

        return self.execute("updateProtocol", _update, {"protocol_id": protocol_id, "version": version})

    def delete_protocol(self, user: User, protocol_id: str) -> None:
        existing = self._require_protocol(user, protocol_id)
        if existing.is_locked:
            raise ProtocolLockedError("Cannot delete locked protocol")

        with self.database.transaction() as conn:
            conn.execute("DELETE FROM protocols WHERE id = ? AND user_id = ?", (protocol_id, user.id))
        logger.info(f"Deleted protocol {protocol_id}")

    def lock_protocol(self, user: User, protocol_id: str) -> Protocol:
        """Freeze a protocol; it becomes the active protocol of record."""
        self._require_protocol(user, protocol_id)
        now = datetime.now().isoformat()
        with self.database.transaction() as conn:
            conn.execute(
                "UPDATE protocols SET is_locked = 1, locked_at = ?, status = ?, updated_at = ? "
                "WHERE id = ? AND user_id = ?",
                (now, ProtocolStatus.ACTIVE.value, now, protocol_id, user.id),
            )
        return self._require_protocol(user, protocol_id)

    def unlock_protocol(self, user: User, protocol_id: str) -> Protocol:
        self._require_protocol(user, protocol_id)
        with self.database.transaction() as conn:
            conn.execute(
                "UPDATE protocols SET is_locked = 0, locked_at = NULL, updated_at = ? "
                "WHERE id = ? AND user_id = ?",
                (datetime.now().isoformat(), protocol_id, user.id),
            )
        return self._require_protocol(user, protocol_id)

    def duplicate_protocol(self, user: User, protocol_id: str, new_title: Optional[str] = None) -> Protocol:
        """Copy a protocol as a new unlocked draft at version 1."""
        existing = self._require_protocol(user, protocol_id)
        copy = existing.model_copy(update={
            "id": str(uuid.uuid4()),
            "title": new_title or f"Copy of {existing.title}",
            "status": ProtocolStatus.DRAFT,
            "is_locked": False,
            "locked_at": None,
            "version": 1,
            "created_at": datetime.now(),
            "updated_at": datetime.now(),
        })
        return self._insert(copy)

    # =========================================================================
    # AI ASSISTANCE
    # =========================================================================

    def _require_guidance(self) -> ProtocolGuidanceService:
        if self.guidance_service is None:
            raise SearchmaticError("AI service not available")
        return self.guidance_service

    def get_ai_guidance(
        self,
        user: User,
        research_question: str,
        framework_type: str = "pico",
        focus_area: Optional[str] = None,
        current_protocol: Optional[Protocol] = None,
        additional_context: Optional[str] = None,
        project_id: Optional[str] = None,
    ) -> str:
        """Guidance text for a question, or for improving an existing protocol."""
        mapped_focus = FOCUS_AREA_MAP.get(focus_area or "general", focus_area)
        request = GuidanceRequest(
            type="improve" if current_protocol is not None else "create",
            research_question=research_question,
            focus_area=mapped_focus,
            framework_type=getattr(framework_type, "value", framework_type),
            current_protocol=current_protocol.model_dump(mode="json") if current_protocol else None,
            additional_context=additional_context,
            project_id=project_id,
        )
        return self._require_guidance().get_guidance(user, request).raw_text

    def generate_protocol_from_ai(
        self,
        user: User,
        project_id: str,
        research_question: str,
        framework_type: FrameworkType | str = FrameworkType.PICO,
    ) -> Protocol:
        """Draft a full protocol from a research question."""
        self.require_project(user, project_id)
        framework_type = FrameworkType(framework_type)

        guidance = self.get_ai_guidance(user, research_question, framework_type.value, project_id=project_id)
        components = parse_ai_guidance(guidance, framework_type.value)
        components.pop("research_question", None)

        return self.create_protocol(
            user,
            project_id,
            title=f"AI-Generated Protocol: {research_question[:50]}...",
            description="Protocol generated with AI assistance",
            research_question=research_question,
            framework_type=framework_type,
            ai_generated=True,
            ai_guidance_used={
                "timestamp": datetime.now().isoformat(),
                "guidance": guidance,
                "framework_type": framework_type.value,
            },
            **components,
        )

    def refine_protocol_with_ai(
        self,
        user: User,
        protocol_id: str,
        focus_area: str,
        additional_context: Optional[str] = None,
    ) -> Protocol:
        """Ask for improvements to one area and merge them into the protocol."""
        existing = self._require_protocol(user, protocol_id)
        if existing.is_locked:
            raise ProtocolLockedError("Cannot refine locked protocol")

        guidance = self.get_ai_guidance(
            user,
            existing.research_question or existing.title,
            existing.framework_type.value,
            focus_area=focus_area,
            current_protocol=existing,
            additional_context=additional_context,
            project_id=existing.project_id,
        )
        refinements = parse_ai_refinements(guidance, focus_area, existing)

        ai_guidance_used = dict(existing.ai_guidance_used)
        ai_guidance_used[focus_area] = {
            "timestamp": datetime.now().isoformat(),
            "guidance": guidance,
            "additional_context": additional_context,
        }
        return self.update_protocol(user, protocol_id, {**refinements, "ai_guidance_used": ai_guidance_used})
