"""Extraction templates, value validation and stored study extractions."""

import logging
from datetime import date, datetime
from typing import Any, Optional

import pandas as pd

from ..errors import NotFoundError, ValidationError
from ..services.base import BaseService
from ..storage.database import from_json, to_json
from ..storage.models import (
    ExtractionField,
    ExtractionTemplate,
    FieldType,
    Study,
    StudyExtraction,
    StudyStatus,
    User,
)

logger = logging.getLogger(__name__)


def _row_to_template(row) -> ExtractionTemplate:
    return ExtractionTemplate(
        id=row["id"],
        project_id=row["project_id"],
        user_id=row["user_id"],
        name=row["name"],
        description=row["description"],
        fields=[ExtractionField(**f) for f in from_json(row["fields"], [])],
        is_active=bool(row["is_active"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_extraction(row) -> StudyExtraction:
    return StudyExtraction(
        id=row["id"],
        study_id=row["study_id"],
        template_id=row["template_id"],
        project_id=row["project_id"],
        values=from_json(row["extracted_values"], {}),
        extracted_by=row["extracted_by"],
        notes=row["notes"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip()) or value == []


def _is_iso_date(value: Any) -> bool:
    if isinstance(value, (date, datetime)):
        return True
    try:
        date.fromisoformat(str(value))
    except ValueError:
        return False
    return True


def _is_number(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    try:
        float(value)
    except (TypeError, ValueError):
        return False
    return True


def validate_values(template: ExtractionTemplate, values: dict[str, Any]) -> list[str]:
    """
    Check values against a template's field definitions.

    Returns:
        List of human readable errors; empty when the values are valid
    """
    errors = []
    for field in template.fields:
        value = values.get(field.name)
        if _is_blank(value):
            if field.required:
                errors.append(f"{field.name} is required")
            continue

        if field.field_type == FieldType.NUMBER and not _is_number(value):
            errors.append(f"{field.name} must be a number")
        elif field.field_type == FieldType.DATE and not _is_iso_date(value):
            errors.append(f"{field.name} must be a date (YYYY-MM-DD)")
        elif field.field_type == FieldType.BOOLEAN and not isinstance(value, bool):
            errors.append(f"{field.name} must be true or false")
        elif field.field_type == FieldType.SELECT and field.options and value not in field.options:
            errors.append(f"{field.name} must be one of: {', '.join(field.options)}")
        elif field.field_type == FieldType.MULTISELECT:
            selected = value if isinstance(value, list) else [value]
            invalid = [v for v in selected if field.options and v not in field.options]
            if invalid:
                errors.append(f"{field.name} has invalid options: {', '.join(map(str, invalid))}")
    return errors


def _check_fields(fields: list[ExtractionField]) -> None:
    names = [f.name for f in fields]
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        raise ValidationError(f"Duplicate field names: {', '.join(duplicates)}")
    for field in fields:
        if field.field_type in (FieldType.SELECT, FieldType.MULTISELECT) and not field.options:
            raise ValidationError(f"{field.name} needs at least one option")


class TemplateService(BaseService):
    """Manage extraction templates and the values captured with them."""

    service_name = "extractionService"

    # =========================================================================
    # TEMPLATES
    # =========================================================================

    def create_template(
        self,
        user: User,
        project_id: str,
        name: str,
        fields: list[ExtractionField | dict],
        description: Optional[str] = None,
    ) -> ExtractionTemplate:
        self.require_project(user, project_id)
        if not (name or "").strip():
            raise ValidationError("Template name is required")
        fields = [f if isinstance(f, ExtractionField) else ExtractionField(**f) for f in fields]
        _check_fields(fields)

        template = ExtractionTemplate(
            project_id=project_id,
            user_id=user.id,
            name=name.strip(),
            description=description,
            fields=fields,
        )
        with self.database.transaction() as conn:
            conn.execute("""
                INSERT INTO extraction_templates (
                    id, project_id, user_id, name, description, fields, is_active, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                template.id,
                template.project_id,
                template.user_id,
                template.name,
                template.description,
                to_json([f.model_dump(mode="json") for f in template.fields]),
                1,
                template.created_at.isoformat(),
                template.updated_at.isoformat(),
            ))
            self.touch_project(project_id, conn)
        return template

    def list_templates(self, user: User, project_id: str, include_inactive: bool = False) -> list[ExtractionTemplate]:
        self.require_project(user, project_id)
        query = "SELECT * FROM extraction_templates WHERE project_id = ?"
        if not include_inactive:
            query += " AND is_active = 1"
        query += " ORDER BY created_at ASC"
        return [_row_to_template(row) for row in self.database.fetch_all(query, (project_id,))]

    def get_template(self, user: User, template_id: str) -> ExtractionTemplate:
        user = self.require_user(user)
        row = self.database.fetch_one(
            "SELECT * FROM extraction_templates WHERE id = ? AND user_id = ?",
            (template_id, user.id),
        )
        if row is None:
            raise NotFoundError("Extraction template", template_id)
        return _row_to_template(row)

    def update_template(
        self,
        user: User,
        template_id: str,
        name: Optional[str] = None,
        description: Optional[str] = None,
        fields: Optional[list[ExtractionField | dict]] = None,
    ) -> ExtractionTemplate:
        template = self.get_template(user, template_id)
        updates: dict[str, Any] = {"updated_at": datetime.now()}
        if name is not None:
            if not name.strip():
                raise ValidationError("Template name is required")
            updates["name"] = name.strip()
        if description is not None:
            updates["description"] = description
        if fields is not None:
            fields = [f if isinstance(f, ExtractionField) else ExtractionField(**f) for f in fields]
            _check_fields(fields)
            updates["fields"] = fields

        updated = template.model_copy(update=updates)
        with self.database.transaction() as conn:
            conn.execute(
                "UPDATE extraction_templates SET name = ?, description = ?, fields = ?, updated_at = ? WHERE id = ?",
                (
                    updated.name,
                    updated.description,
                    to_json([f.model_dump(mode="json") for f in updated.fields]),
                    updated.updated_at.isoformat(),
                    template_id,
                ),
            )
        return updated

    def delete_template(self, user: User, template_id: str) -> None:
        """Deactivate a template; its stored extractions are kept."""
        self.get_template(user, template_id)
        with self.database.transaction() as conn:
            conn.execute(
                "UPDATE extraction_templates SET is_active = 0, updated_at = ? WHERE id = ?",
                (datetime.now().isoformat(), template_id),
            )

    def duplicate_template(self, user: User, template_id: str, new_name: Optional[str] = None) -> ExtractionTemplate:
        template = self.get_template(user, template_id)
        return self.create_template(
            user,
            template.project_id,
            new_name or f"Copy of {template.name}",
            [f.model_copy() for f in template.fields],
            description=template.description,
        )

    # =========================================================================
    # EXTRACTIONS
    # =========================================================================

    def _require_study(self, user: User, study_id: str):
        row = self.database.fetch_one("""
            SELECT s.id, s.project_id FROM studies s
            JOIN projects p ON p.id = s.project_id
            WHERE s.id = ? AND p.user_id = ?
        """, (study_id, user.id))
        if row is None:
            raise NotFoundError("Study", study_id)
        return row

    def save_extraction(
        self,
        user: User,
        study_id: str,
        template_id: str,
        values: dict[str, Any],
        extracted_by: str = "manual",
        notes: Optional[str] = None,
    ) -> StudyExtraction:
        """
        Validate and store the values for a study; replaces earlier values
        for the same study and template and marks the study extracted.

        Raises:
            ValidationError: If any value fails its field definition
        """
        template = self.get_template(user, template_id)
        study = self._require_study(user, study_id)
        if study["project_id"] != template.project_id:
            raise ValidationError("Study and template belong to different projects")

        errors = validate_values(template, values)
        if errors:
            raise ValidationError("; ".join(errors))

        known = {f.name for f in template.fields}
        extraction = StudyExtraction(
            study_id=study_id,
            template_id=template_id,
            project_id=template.project_id,
            values={k: v for k, v in values.items() if k in known},
            extracted_by=extracted_by,
            notes=notes,
        )
        now = extraction.updated_at.isoformat()

        def _save():
            with self.database.transaction() as conn:
                conn.execute("""
                    INSERT INTO study_extractions (
                        id, study_id, template_id, project_id, extracted_values,
                        extracted_by, notes, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(study_id, template_id) DO UPDATE SET
                        extracted_values = excluded.extracted_values,
                        extracted_by = excluded.extracted_by,
                        notes = excluded.notes,
                        updated_at = excluded.updated_at
                """, (
                    extraction.id,
                    study_id,
                    template_id,
                    extraction.project_id,
                    to_json(extraction.values),
                    extraction.extracted_by,
                    notes,
                    extraction.created_at.isoformat(),
                    now,
                ))
                conn.execute(
                    "UPDATE studies SET status = ?, extraction_data = ?, updated_at = ? WHERE id = ?",
                    (StudyStatus.EXTRACTED.value, to_json(extraction.values), now, study_id),
                )
                self.touch_project(extraction.project_id, conn)
            return self.get_extraction(user, study_id, template_id)

        return self.execute("saveExtraction", _save, {"study_id": study_id, "template_id": template_id})

    def get_extraction(self, user: User, study_id: str, template_id: str) -> Optional[StudyExtraction]:
        self._require_study(user, study_id)
        row = self.database.fetch_one(
            "SELECT * FROM study_extractions WHERE study_id = ? AND template_id = ?",
            (study_id, template_id),
        )
        return _row_to_extraction(row) if row else None

    def list_extractions(
        self,
        user: User,
        project_id: str,
        template_id: Optional[str] = None,
    ) -> list[StudyExtraction]:
        self.require_project(user, project_id)
        query = "SELECT * FROM study_extractions WHERE project_id = ?"
        params = [project_id]
        if template_id:
            query += " AND template_id = ?"
            params.append(template_id)
        query += " ORDER BY updated_at DESC"
        return [_row_to_extraction(row) for row in self.database.fetch_all(query, tuple(params))]


def extractions_to_dataframe(
    template: ExtractionTemplate,
    extractions: list[StudyExtraction],
    studies: Optional[list[Study]] = None,
) -> pd.DataFrame:
    """
    One row per study, one column per template field.

    Args:
        template: Template whose fields become columns
        extractions: Extractions made with that template
        studies: Studies used to add title/authors/year columns

    Returns:
        DataFrame with study_id first, then study details, then fields
    """
    by_id = {s.id: s for s in studies or []}
    field_names = [f.name for f in template.fields]
    rows = []
    for extraction in extractions:
        if extraction.template_id != template.id:
            continue
        row: dict[str, Any] = {"study_id": extraction.study_id}
        study = by_id.get(extraction.study_id)
        if study is not None:
            row["title"] = study.title
            row["authors"] = study.authors
            row["year"] = study.publication_year
        for name in field_names:
            value = extraction.values.get(name)
            row[name] = "; ".join(map(str, value)) if isinstance(value, list) else value
        row["extracted_by"] = extraction.extracted_by
        rows.append(row)

    leading = ["study_id"] + (["title", "authors", "year"] if studies else [])
    return pd.DataFrame(rows, columns=leading + field_names + ["extracted_by"])
