"""AI guidance for writing, validating and improving review protocols."""

import json
import logging
from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

from config.settings import FOCUS_AREAS, REVIEW_TYPES
from ..errors import SearchmaticError, ValidationError
from ..llm.base_client import BaseLLMClient, extract_json
from ..llm.cost_tracker import CostTracker, OperationType
from ..llm.prompts import (
    FRAMEWORK_NAMES,
    FRAMEWORK_SYSTEM,
    FRAMEWORK_USER,
    GUIDANCE_PARAMETERS,
    PROTOCOL_CREATE_SYSTEM,
    PROTOCOL_CREATE_USER,
    PROTOCOL_IMPROVE_SYSTEM,
    PROTOCOL_IMPROVE_USER,
    PROTOCOL_VALIDATE_SYSTEM,
    PROTOCOL_VALIDATE_USER,
)
from ..storage.audit_logger import AuditLogger
from ..storage.database import from_json, to_json
from ..storage.models import User
from .base import BaseService

logger = logging.getLogger(__name__)

GuidanceType = Literal["create", "validate", "improve", "framework"]


class GuidanceRequest(BaseModel):
    type: GuidanceType
    research_question: Optional[str] = None
    review_type: str = "systematic_review"
    focus_area: Optional[str] = None
    framework_type: str = "pico"
    current_protocol: Optional[dict[str, Any]] = None
    additional_context: Optional[str] = None
    project_id: Optional[str] = None


class GuidanceResponse(BaseModel):
    success: bool = True
    guidance: dict[str, Any] = Field(default_factory=dict)
    raw_text: str = ""
    structured: bool = False
    type: GuidanceType
    focus_area: Optional[str] = None
    review_type: str = "systematic_review"
    timestamp: datetime = Field(default_factory=datetime.now)
    cost: float = 0.0


class ProtocolGuidanceService(BaseService):
    """Ask the LLM for protocol guidance and remember the latest per project."""

    service_name = "protocolGuidance"

    def __init__(
        self,
        llm_client: Optional[BaseLLMClient],
        database=None,
        cost_tracker: Optional[CostTracker] = None,
        audit_logger: Optional[AuditLogger] = None,
    ):
        super().__init__(database)
        self.llm_client = llm_client
        self.cost_tracker = cost_tracker
        self.audit_logger = audit_logger

    def _build_messages(self, request: GuidanceRequest) -> list[dict]:
        review_label = REVIEW_TYPES.get(request.review_type, {}).get("label", request.review_type)
        focus = FOCUS_AREAS.get(request.focus_area or "", "")
        protocol_json = json.dumps(request.current_protocol or {}, indent=2, default=str)

        if request.type == "create":
            framework_name = FRAMEWORK_NAMES.get(request.framework_type, FRAMEWORK_NAMES["pico"])
            user_prompt = PROTOCOL_CREATE_USER.format(
                review_type=review_label,
                research_question=request.research_question,
                framework_name=framework_name,
            )
            if focus:
                user_prompt += f"\n\n{focus}"
            system_prompt = PROTOCOL_CREATE_SYSTEM

        elif request.type == "validate":
            user_prompt = PROTOCOL_VALIDATE_USER.format(
                review_type=review_label,
                research_question=request.research_question or "",
                protocol_json=protocol_json,
            )
            system_prompt = PROTOCOL_VALIDATE_SYSTEM

        elif request.type == "improve":
            context = ""
            if request.additional_context:
                context = f"Additional context from the researcher: {request.additional_context}\n"
            user_prompt = PROTOCOL_IMPROVE_USER.format(
                review_type=review_label,
                research_question=request.research_question or "",
                protocol_json=protocol_json,
                focus_instruction=focus,
                additional_context=context,
            )
            system_prompt = PROTOCOL_IMPROVE_SYSTEM

        else:
            framework_name = FRAMEWORK_NAMES.get(request.focus_area or "pico", FRAMEWORK_NAMES["pico"])
            user_prompt = FRAMEWORK_USER.format(
                framework_name=framework_name,
                review_type=review_label,
                research_question=request.research_question,
            )
            system_prompt = FRAMEWORK_SYSTEM

        return [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ]

    def get_guidance(self, user: Optional[User], request: GuidanceRequest) -> GuidanceResponse:
        """
        Generate guidance of the requested type.

        Raises:
            ValidationError: If the request lacks a research question where one is needed
            SearchmaticError: If no LLM client is configured
        """
        user = self.require_user(user)
        if request.type in ("create", "framework") and not (request.research_question or "").strip():
            raise ValidationError("A research question is required")
        if request.type in ("validate", "improve") and not request.current_protocol:
            raise ValidationError("The current protocol is required")
        if self.llm_client is None:
            raise SearchmaticError("AI service not available")
        if request.project_id:
            self.require_project(user, request.project_id)

        messages = self._build_messages(request)
        params = GUIDANCE_PARAMETERS[request.type]
        json_mode = request.type != "improve"

        def _call():
            try:
                response = self.llm_client.chat(
                    messages,
                    temperature=params["temperature"],
                    max_tokens=params["max_tokens"],
                    json_mode=json_mode,
                )
            except Exception as e:
                if self.audit_logger:
                    self.audit_logger.log_llm_call(
                        operation=OperationType.PROTOCOL_GUIDANCE.value,
                        prompt=messages[-1]["content"],
                        response="",
                        model=self.llm_client.model,
                        project_id=request.project_id,
                        user_id=user.id,
                        success=False,
                        error_message=str(e),
                    )
                raise
            return response

        response = self.execute("getGuidance", _call, {"type": request.type, "focus_area": request.focus_area})

        if self.cost_tracker:
            self.cost_tracker.add_response(OperationType.PROTOCOL_GUIDANCE, response, project_id=request.project_id)
        if self.audit_logger:
            self.audit_logger.log_llm_call(
                operation=OperationType.PROTOCOL_GUIDANCE.value,
                prompt=messages[-1]["content"],
                response=response.content,
                input_tokens=response.input_tokens,
                output_tokens=response.output_tokens,
                cost=response.cost,
                model=response.model,
                project_id=request.project_id,
                user_id=user.id,
            )

        data = extract_json(response.content)
        result = GuidanceResponse(
            guidance=data if data is not None else {"raw_response": response.content},
            raw_text=response.content,
            structured=data is not None,
            type=request.type,
            focus_area=request.focus_area,
            review_type=request.review_type,
            cost=response.cost,
        )

        if request.project_id and self.database is not None:
            self._save(user, request, result)

        return result

    def _save(self, user: User, request: GuidanceRequest, result: GuidanceResponse) -> None:
        with self.database.transaction() as conn:
            conn.execute("""
                INSERT INTO protocol_guidance (
                    project_id, user_id, request_type, review_type, focus_area, guidance, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(project_id) DO UPDATE SET
                    request_type = excluded.request_type,
                    review_type = excluded.review_type,
                    focus_area = excluded.focus_area,
                    guidance = excluded.guidance,
                    updated_at = excluded.updated_at
            """, (
                request.project_id,
                user.id,
                request.type,
                request.review_type,
                request.focus_area,
                to_json({"guidance": result.guidance, "raw_text": result.raw_text}),
                result.timestamp.isoformat(),
            ))

    def get_saved_guidance(self, user: Optional[User], project_id: str) -> Optional[GuidanceResponse]:
        """Latest guidance stored for a project, if any."""
        self.require_project(user, project_id)
        row = self.database.fetch_one(
            "SELECT * FROM protocol_guidance WHERE project_id = ?", (project_id,)
        )
        if row is None:
            return None
        stored = from_json(row["guidance"], {})
        guidance = stored.get("guidance", {})
        return GuidanceResponse(
            guidance=guidance,
            raw_text=stored.get("raw_text", ""),
            structured="raw_response" not in guidance,
            type=row["request_type"],
            focus_area=row["focus_area"],
            review_type=row["review_type"] or "systematic_review",
            timestamp=row["updated_at"],
        )
