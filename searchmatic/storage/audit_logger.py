"""Audit logging for Searchmatic AI calls."""

import csv
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

from .models import AuditEntry

logger = logging.getLogger(__name__)


class AuditLogger:
    """Record every LLM call for transparency and reproducibility."""

    def __init__(self, database, user_id: Optional[str] = None):
        """
        Args:
            database: Workspace Database
            user_id: Default user recorded with each entry
        """
        self.database = database
        self.user_id = user_id

    def log_llm_call(
        self,
        operation: str,
        prompt: str,
        response: str,
        input_tokens: int = 0,
        output_tokens: int = 0,
        cost: float = 0.0,
        model: str = "",
        project_id: Optional[str] = None,
        user_id: Optional[str] = None,
        success: bool = True,
        error_message: Optional[str] = None,
    ) -> AuditEntry:
        """
        Log an LLM call with all details.

        Args:
            operation: Operation type (e.g. 'protocol_guidance')
            prompt: The prompt sent to the LLM
            response: The LLM's response, or "" when the call failed
            project_id: Project the call was made for, if any
            success: False when the call raised
            error_message: The error text for failed calls

        Returns:
            The stored AuditEntry
        """
        entry = AuditEntry(
            user_id=user_id or self.user_id,
            project_id=project_id,
            operation=operation,
            prompt=prompt,
            response=response,
            success=success,
            error_message=error_message,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost=cost,
            model=model,
        )

        with self.database.transaction() as conn:
            conn.execute("""
                INSERT INTO ai_audit_log (
                    id, user_id, project_id, operation, prompt, response,
                    success, error_message, input_tokens, output_tokens,
                    cost, model, timestamp
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                entry.id,
                entry.user_id,
                entry.project_id,
                entry.operation,
                entry.prompt,
                entry.response,
                1 if entry.success else 0,
                entry.error_message,
                entry.input_tokens,
                entry.output_tokens,
                entry.cost,
                entry.model,
                entry.timestamp.isoformat(),
            ))

        if not success:
            logger.warning(f"Audited failed {operation} call: {error_message}")
        return entry

    def log_response(self, operation: str, prompt: str, response, project_id: Optional[str] = None) -> AuditEntry:
        """Log a successful call from its LLMResponse."""
        return self.log_llm_call(
            operation=operation,
            prompt=prompt,
            response=response.content,
            input_tokens=response.input_tokens,
            output_tokens=response.output_tokens,
            cost=response.cost,
            model=response.model,
            project_id=project_id,
        )

    def get_entries(
        self,
        project_id: Optional[str] = None,
        operation: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[AuditEntry]:
        """Retrieve entries for this logger's user, newest first."""
        query = "SELECT * FROM ai_audit_log WHERE 1=1"
        params = []

        if self.user_id:
            query += " AND user_id = ?"
            params.append(self.user_id)

        if project_id:
            query += " AND project_id = ?"
            params.append(project_id)

        if operation:
            query += " AND operation = ?"
            params.append(operation)

        query += " ORDER BY timestamp DESC"

        if limit:
            query += " LIMIT ?"
            params.append(int(limit))

        rows = self.database.fetch_all(query, tuple(params))
        return [
            AuditEntry(
                id=row["id"],
                user_id=row["user_id"],
                project_id=row["project_id"],
                operation=row["operation"],
                prompt=row["prompt"],
                response=row["response"],
                success=bool(row["success"]),
                error_message=row["error_message"],
                input_tokens=row["input_tokens"],
                output_tokens=row["output_tokens"],
                cost=row["cost"],
                model=row["model"] or "",
                timestamp=datetime.fromisoformat(row["timestamp"]),
            )
            for row in rows
        ]

    def export_to_csv(self, output_path: str | Path, project_id: Optional[str] = None) -> str:
        """Write entries to CSV with truncated prompt/response previews."""
        output_path = Path(output_path)
        fieldnames = [
            "id", "project_id", "operation", "success", "input_tokens",
            "output_tokens", "cost", "model", "timestamp",
            "prompt_preview", "response_preview",
        ]

        with open(output_path, "w", newline="", encoding="utf-8") as f:
            writer = csv.DictWriter(f, fieldnames=fieldnames)
            writer.writeheader()
            for e in self.get_entries(project_id=project_id):
                writer.writerow({
                    "id": e.id,
                    "project_id": e.project_id,
                    "operation": e.operation,
                    "success": e.success,
                    "input_tokens": e.input_tokens,
                    "output_tokens": e.output_tokens,
                    "cost": e.cost,
                    "model": e.model,
                    "timestamp": e.timestamp.isoformat(),
                    "prompt_preview": e.prompt[:200] + "..." if len(e.prompt) > 200 else e.prompt,
                    "response_preview": e.response[:200] + "..." if len(e.response) > 200 else e.response,
                })

        return str(output_path)

    def export_to_json(self, output_path: str | Path, project_id: Optional[str] = None) -> str:
        entries = self.get_entries(project_id=project_id)
        data = {
            "export_timestamp": datetime.now().isoformat(),
            "total_entries": len(entries),
            "total_cost": sum(e.cost for e in entries),
            "entries": [json.loads(e.model_dump_json()) for e in entries],
        }
        with open(output_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
        return str(output_path)

    def get_summary(self, project_id: Optional[str] = None) -> dict:
        """Totals by operation and by model."""
        entries = self.get_entries(project_id=project_id)

        summary = {
            "total_calls": len(entries),
            "failed_calls": sum(1 for e in entries if not e.success),
            "total_cost": sum(e.cost for e in entries),
            "total_input_tokens": sum(e.input_tokens for e in entries),
            "total_output_tokens": sum(e.output_tokens for e in entries),
            "by_operation": {},
            "by_model": {},
        }

        for entry in entries:
            op = summary["by_operation"].setdefault(
                entry.operation, {"count": 0, "cost": 0.0, "input_tokens": 0, "output_tokens": 0}
            )
            op["count"] += 1
            op["cost"] += entry.cost
            op["input_tokens"] += entry.input_tokens
            op["output_tokens"] += entry.output_tokens

            by_model = summary["by_model"].setdefault(entry.model, {"count": 0, "cost": 0.0})
            by_model["count"] += 1
            by_model["cost"] += entry.cost

        return summary
