"""Cost tracking and budget management for AI operations."""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional
from enum import Enum

logger = logging.getLogger(__name__)


class OperationType(str, Enum):
    """Types of LLM operations for cost tracking."""
    PROTOCOL_GUIDANCE = "protocol_guidance"
    PROTOCOL_GENERATION = "protocol_generation"
    PROTOCOL_REFINEMENT = "protocol_refinement"
    CHAT_COMPLETION = "chat_completion"
    DATA_EXTRACTION = "data_extraction"
    FIELD_RECOMMENDATION = "field_recommendation"
    OTHER = "other"


@dataclass
class CostEntry:
    """Single cost tracking entry."""
    operation: OperationType
    input_tokens: int
    output_tokens: int
    cost: float
    timestamp: datetime
    project_id: Optional[str] = None
    model: str = ""
    notes: str = ""


@dataclass
class CostEstimate:
    """Cost estimate for an operation."""
    operation: OperationType
    n_items: int
    avg_input_tokens: int
    avg_output_tokens: int
    estimated_cost: float
    model: str


class BudgetExceededError(Exception):
    """Raised when budget limit is exceeded."""
    def __init__(self, current_cost: float, budget_limit: float, operation: str):
        self.current_cost = current_cost
        self.budget_limit = budget_limit
        self.operation = operation
        super().__init__(
            f"Budget exceeded during {operation}. "
            f"Current: ${current_cost:.4f}, Limit: ${budget_limit:.2f}"
        )


class CostTracker:
    """Track costs and enforce an optional budget for LLM calls."""

    TOKEN_ESTIMATES = {
        OperationType.PROTOCOL_GUIDANCE: {"input": 600, "output": 1500},
        OperationType.PROTOCOL_GENERATION: {"input": 600, "output": 2000},
        OperationType.PROTOCOL_REFINEMENT: {"input": 1200, "output": 1200},
        OperationType.CHAT_COMPLETION: {"input": 1500, "output": 400},
        OperationType.DATA_EXTRACTION: {"input": 3000, "output": 500},
        OperationType.FIELD_RECOMMENDATION: {"input": 300, "output": 400},
    }

    def __init__(self, budget_limit: Optional[float] = None, warning_threshold: float = 0.8):
        """
        Args:
            budget_limit: Optional maximum budget in USD. When set, add_cost
                raises BudgetExceededError once it would be exceeded.
            warning_threshold: Fraction of the budget at which a warning is logged.
        """
        self.budget_limit = budget_limit
        self.warning_threshold = warning_threshold
        self.entries: list[CostEntry] = []
        self._paused = False

    @property
    def total_cost(self) -> float:
        return sum(e.cost for e in self.entries)

    @property
    def remaining_budget(self) -> Optional[float]:
        if self.budget_limit is None:
            return None
        return max(0, self.budget_limit - self.total_cost)

    @property
    def is_paused(self) -> bool:
        return self._paused

    @property
    def near_budget(self) -> bool:
        if not self.budget_limit:
            return False
        return self.total_cost >= self.budget_limit * self.warning_threshold

    def set_budget_limit(self, limit: Optional[float]) -> None:
        self.budget_limit = limit
        self._paused = False

    def estimate_cost(
        self,
        llm_client,
        operation: OperationType,
        n_items: int = 1,
        avg_input_tokens: Optional[int] = None,
        avg_output_tokens: Optional[int] = None,
    ) -> CostEstimate:
        """
        Estimate cost for an operation before running it.

        Args:
            llm_client: LLM client used for pricing
            operation: Type of operation
            n_items: Number of calls planned
            avg_input_tokens: Override default input token estimate
            avg_output_tokens: Override default output token estimate
        """
        defaults = self.TOKEN_ESTIMATES.get(operation, {"input": 500, "output": 200})
        input_tokens = avg_input_tokens or defaults["input"]
        output_tokens = avg_output_tokens or defaults["output"]

        return CostEstimate(
            operation=operation,
            n_items=n_items,
            avg_input_tokens=input_tokens,
            avg_output_tokens=output_tokens,
            estimated_cost=llm_client.estimate_cost(input_tokens * n_items, output_tokens * n_items),
            model=llm_client.model,
        )

    def add_cost(
        self,
        operation: OperationType,
        input_tokens: int,
        output_tokens: int,
        cost: float,
        project_id: Optional[str] = None,
        model: str = "",
        notes: str = "",
        check_budget: bool = True,
    ) -> bool:
        """
        Record the cost of a completed call.

        Returns:
            True if recorded, False if the budget would be exceeded and
            check_budget is False.

        Raises:
            BudgetExceededError: If check_budget is True and the budget is exceeded
        """
        new_total = self.total_cost + cost

        if self.budget_limit is not None and new_total > self.budget_limit:
            self._paused = True
            if check_budget:
                raise BudgetExceededError(new_total, self.budget_limit, operation.value)
            return False

        self.entries.append(CostEntry(
            operation=operation,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost=cost,
            timestamp=datetime.now(),
            project_id=project_id,
            model=model,
            notes=notes,
        ))

        if self.near_budget:
            logger.warning(f"AI spend ${self.total_cost:.4f} is near the ${self.budget_limit:.2f} budget")
        return True

    def add_response(self, operation: OperationType, response, project_id: Optional[str] = None, notes: str = "") -> bool:
        """Record an LLMResponse."""
        return self.add_cost(
            operation=operation,
            input_tokens=response.input_tokens,
            output_tokens=response.output_tokens,
            cost=response.cost,
            project_id=project_id,
            model=response.model,
            notes=notes,
        )

    def get_summary(self) -> dict:
        """Cost breakdown by operation."""
        summary = {
            "total_cost": self.total_cost,
            "budget_limit": self.budget_limit,
            "remaining_budget": self.remaining_budget,
            "total_entries": len(self.entries),
            "total_input_tokens": sum(e.input_tokens for e in self.entries),
            "total_output_tokens": sum(e.output_tokens for e in self.entries),
            "by_operation": {},
        }

        for op_type in OperationType:
            op_entries = self.get_entries_for_operation(op_type)
            if op_entries:
                summary["by_operation"][op_type.value] = {
                    "count": len(op_entries),
                    "total_cost": sum(e.cost for e in op_entries),
                    "total_input_tokens": sum(e.input_tokens for e in op_entries),
                    "total_output_tokens": sum(e.output_tokens for e in op_entries),
                }

        return summary

    def get_entries_for_project(self, project_id: str) -> list[CostEntry]:
        return [e for e in self.entries if e.project_id == project_id]

    def get_entries_for_operation(self, operation: OperationType) -> list[CostEntry]:
        return [e for e in self.entries if e.operation == operation]

    def reset(self) -> None:
        self.entries.clear()
        self._paused = False
