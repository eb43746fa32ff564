"""Data Extraction page: templates, extraction forms and AI extraction."""

from datetime import date

import pandas as pd
import streamlit as st
from pathlib import Path
import sys

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from components.cost_display import render_cost_estimate, render_cost_summary_card
from components.progress_bar import ProgressTracker
from components.session import get_workspace, render_llm_settings, render_project_picker, require_project, show_error
from searchmatic.errors import SearchmaticError, ValidationError
from searchmatic.export import to_xlsx
from searchmatic.extraction import DataExtractor, FieldRecommender, extractions_to_dataframe, values_to_dict
from searchmatic.llm import OperationType
from searchmatic.storage import ExtractionField, FieldType, StudyStatus

EXTRACTABLE = (StudyStatus.INCLUDED, StudyStatus.EXTRACTED)

FIELD_COLUMNS = ["name", "field_type", "description", "required", "options"]


def init_session_state():
    """Initialize session state variables."""
    if "draft_fields" not in st.session_state:
        st.session_state.draft_fields = None
    if "ai_values" not in st.session_state:
        st.session_state.ai_values = {}


def fields_to_frame(fields: list[ExtractionField]) -> pd.DataFrame:
    return pd.DataFrame(
        [
            {
                "name": f.name,
                "field_type": f.field_type.value,
                "description": f.description or "",
                "required": f.required,
                "options": ", ".join(f.options),
            }
            for f in fields
        ],
        columns=FIELD_COLUMNS,
    )


def frame_to_fields(df: pd.DataFrame) -> list[dict]:
    fields = []
    for row in df.to_dict("records"):
        name = str(row.get("name") or "").strip()
        if not name:
            continue
        fields.append({
            "name": name,
            "field_type": row.get("field_type") or FieldType.TEXT.value,
            "description": row.get("description") or None,
            "required": bool(row.get("required")),
            "options": [o.strip() for o in str(row.get("options") or "").split(",") if o.strip()],
        })
    return fields


def extractable_studies(workspace, project):
    studies = workspace.studies.list_studies(workspace.user, project.id)
    return [s for s in studies if s.status in EXTRACTABLE]


# =============================================================================
# TEMPLATES
# =============================================================================

def render_field_suggestions(workspace, project):
    """Start a draft from framework defaults or AI recommendations."""
    protocols = workspace.protocols.list_protocols(workspace.user, project.id)
    protocol = protocols[0] if protocols else None
    framework = protocol.framework_type.value if protocol else "pico"

    col1, col2 = st.columns(2)
    with col1:
        if st.button(f"Start from {framework.upper()} defaults"):
            st.session_state.draft_fields = FieldRecommender.get_default_fields(framework)
            st.rerun()
    with col2:
        question = (protocol.research_question if protocol else None) or project.title
        if st.button("🤖 Recommend fields with AI", disabled=not workspace.ai_enabled):
            recommender = FieldRecommender(
                workspace.llm_client, workspace.cost_tracker, workspace.audit_logger, project.id
            )
            with st.spinner("Asking the AI..."):
                try:
                    recommended = recommender.recommend_fields(question, framework)
                except Exception as e:
                    show_error(e, "Field recommendation")
                    return
            st.session_state.draft_fields = recommender.merge_with_defaults(recommended, framework)
            st.rerun()


def render_new_template(workspace, project):
    st.markdown("#### New template")
    render_field_suggestions(workspace, project)

    draft = st.session_state.draft_fields or []
    with st.form("new_template_form"):
        name = st.text_input("Template name", value="Data extraction form")
        description = st.text_input("Description")
        edited = st.data_editor(
            fields_to_frame(draft),
            num_rows="dynamic",
            use_container_width=True,
            column_config={
                "field_type": st.column_config.SelectboxColumn(
                    "Type", options=[t.value for t in FieldType], default=FieldType.TEXT.value
                ),
                "required": st.column_config.CheckboxColumn("Required", default=False),
                "options": st.column_config.TextColumn("Options (comma separated)"),
            },
            key="new_template_fields",
        )
        if st.form_submit_button("Create Template", type="primary"):
            try:
                workspace.templates.create_template(
                    workspace.user, project.id, name, frame_to_fields(edited), description=description or None
                )
            except (SearchmaticError, ValueError) as e:
                show_error(e, "Create template")
                return
            st.session_state.draft_fields = None
            st.success("Template created")
            st.rerun()


def render_template_manager(workspace, project):
    templates = workspace.templates.list_templates(workspace.user, project.id)
    for template in templates:
        with st.expander(f"📝 {template.name} ({len(template.fields)} fields)"):
            with st.form(f"edit_template_{template.id}"):
                name = st.text_input("Name", value=template.name)
                description = st.text_input("Description", value=template.description or "")
                edited = st.data_editor(
                    fields_to_frame(template.fields),
                    num_rows="dynamic",
                    use_container_width=True,
                    column_config={
                        "field_type": st.column_config.SelectboxColumn(
                            "Type", options=[t.value for t in FieldType]
                        ),
                        "required": st.column_config.CheckboxColumn("Required"),
                    },
                    key=f"fields_{template.id}",
                )
                if st.form_submit_button("Save"):
                    try:
                        workspace.templates.update_template(
                            workspace.user,
                            template.id,
                            name=name,
                            description=description,
                            fields=frame_to_fields(edited),
                        )
                    except (SearchmaticError, ValueError) as e:
                        show_error(e, "Update template")
                        return
                    st.rerun()

            col1, col2 = st.columns(2)
            with col1:
                if st.button("📄 Duplicate", key=f"dup_{template.id}"):
                    workspace.templates.duplicate_template(workspace.user, template.id)
                    st.rerun()
            with col2:
                if st.button("🗑️ Archive", key=f"archive_{template.id}"):
                    workspace.templates.delete_template(workspace.user, template.id)
                    st.rerun()

    st.markdown("---")
    render_new_template(workspace, project)


# =============================================================================
# EXTRACTION FORM
# =============================================================================

def render_field_input(field: ExtractionField, value, key: str):
    """Widget for one field; returns the entered value."""
    label = f"{field.name}{' *' if field.required else ''}"
    help_text = field.description
    if field.field_type == FieldType.TEXTAREA:
        return st.text_area(label, value=value or "", help=help_text, key=key)
    if field.field_type == FieldType.NUMBER:
        text = st.text_input(label, value="" if value is None else str(value), help=help_text, key=key)
        return text.strip() or None
    if field.field_type == FieldType.DATE:
        text = st.text_input(label, value=str(value or ""), placeholder="YYYY-MM-DD", help=help_text, key=key)
        return text.strip() or None
    if field.field_type == FieldType.BOOLEAN:
        choice = st.selectbox(
            label, ["", "Yes", "No"], index={None: 0, True: 1, False: 2}.get(value, 0), help=help_text, key=key
        )
        return {"Yes": True, "No": False}.get(choice)
    if field.field_type == FieldType.SELECT:
        options = [""] + field.options
        index = options.index(value) if value in options else 0
        return st.selectbox(label, options, index=index, help=help_text, key=key) or None
    if field.field_type == FieldType.MULTISELECT:
        default = [v for v in (value or []) if v in field.options]
        return st.multiselect(label, field.options, default=default, help=help_text, key=key)
    return st.text_input(label, value=value or "", help=help_text, key=key)


def _number(value):
    if value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return value
    return int(number) if number.is_integer() else number


def render_extraction_form(workspace, project, template):
    studies = extractable_studies(workspace, project)
    if not studies:
        st.info("Include studies on the **Studies** page before extracting data.")
        return

    titles = {s.id: f"{'📊 ' if s.status == StudyStatus.EXTRACTED else ''}{s.title[:90]}" for s in studies}
    study_id = st.selectbox("Study", list(titles), format_func=titles.get)
    study = next(s for s in studies if s.id == study_id)

    with st.expander("Study details"):
        st.markdown(f"**{study.title}**")
        st.caption(f"{study.authors or ''} · {study.journal or ''} {study.publication_year or ''}")
        st.write(study.abstract or "No abstract")

    existing = workspace.templates.get_extraction(workspace.user, study.id, template.id)
    values = dict(existing.values) if existing else {}
    ai_key = f"{study.id}:{template.id}"
    ai_values = st.session_state.ai_values.get(ai_key)

    if workspace.ai_enabled and st.button("🤖 Pre-fill with AI"):
        extractor = DataExtractor(workspace.llm_client, workspace.cost_tracker, workspace.audit_logger, project.id)
        with st.spinner("Extracting..."):
            try:
                extracted = extractor.extract_from_study(study, template)
            except Exception as e:
                show_error(e, "AI extraction")
                return
        st.session_state.ai_values[ai_key] = {v.field_name: v for v in extracted}
        st.rerun()

    if ai_values:
        values.update({name: v.value for name, v in ai_values.items() if v.value is not None})
        st.caption("Values pre-filled by AI. Check them against the source before saving.")

    with st.form(f"extract_{study.id}_{template.id}"):
        entered = {}
        for field in template.fields:
            entered[field.name] = render_field_input(field, values.get(field.name), f"val_{study.id}_{field.name}")
            if ai_values and field.name in ai_values:
                extracted = ai_values[field.name]
                if extracted.value is not None:
                    quote = f" · \"{extracted.source_text[:120]}\"" if extracted.source_text else ""
                    st.caption(f"AI confidence {extracted.confidence:.0%}{quote}")
        notes = st.text_area("Notes", value=(existing.notes or "") if existing else "")

        if st.form_submit_button("💾 Save Extraction", type="primary"):
            for field in template.fields:
                if field.field_type == FieldType.NUMBER:
                    entered[field.name] = _number(entered[field.name])
            try:
                workspace.templates.save_extraction(
                    workspace.user,
                    study.id,
                    template.id,
                    entered,
                    extracted_by="ai" if ai_values else "manual",
                    notes=notes or None,
                )
            except ValidationError as e:
                show_error(e, "Validation")
                return
            st.session_state.ai_values.pop(ai_key, None)
            st.success("Extraction saved")
            st.rerun()


# =============================================================================
# BATCH AI EXTRACTION
# =============================================================================

def render_batch_extraction(workspace, project, template):
    if not workspace.ai_enabled:
        st.warning("Connect an AI provider in the sidebar to run AI extraction.")
        return

    studies = [s for s in extractable_studies(workspace, project) if s.status == StudyStatus.INCLUDED]
    if not studies:
        st.info("No included studies are waiting for extraction.")
        return

    estimate = workspace.cost_tracker.estimate_cost(
        workspace.llm_client,
        OperationType.DATA_EXTRACTION,
        n_items=len(studies),
        avg_output_tokens=50 * len(template.fields),
    )
    within_budget = render_cost_estimate(
        estimate, workspace.cost_tracker.budget_limit, workspace.cost_tracker.total_cost
    )

    if st.button(f"🤖 Extract {len(studies)} studies", type="primary", disabled=not within_budget):
        extractor = DataExtractor(workspace.llm_client, workspace.cost_tracker, workspace.audit_logger, project.id)
        tracker = ProgressTracker(len(studies), "AI data extraction")
        try:
            results, completed = extractor.extract_batch(studies, template, tracker.get_callback())
        except Exception as e:
            tracker.error(str(e))
            show_error(e, "AI extraction")
            return

        saved, rejected = 0, []
        for study_id, extracted in results.items():
            try:
                workspace.templates.save_extraction(
                    workspace.user, study_id, template.id, values_to_dict(extracted), extracted_by="ai"
                )
                saved += 1
            except ValidationError as e:
                rejected.append((study_id, str(e)))

        tracker.complete(f"Saved {saved} extractions")
        if not completed:
            st.warning("Stopped early: the budget limit was reached.")
        if rejected:
            with st.expander(f"⚠️ {len(rejected)} extractions need manual review"):
                for study_id, error in rejected:
                    st.markdown(f"- `{study_id}`: {error}")


def render_results(workspace, project, template):
    extractions = workspace.templates.list_extractions(workspace.user, project.id, template.id)
    if not extractions:
        st.info("No extractions saved with this template yet.")
        return
    studies = workspace.studies.list_studies(workspace.user, project.id)
    df = extractions_to_dataframe(template, extractions, studies)
    st.dataframe(df, use_container_width=True)
    stem = f"extractions_{template.name.replace(' ', '_')}_{date.today():%Y%m%d}"
    col1, col2 = st.columns(2)
    with col1:
        st.download_button("📥 Download CSV", df.to_csv(index=False), file_name=f"{stem}.csv", mime="text/csv")
    with col2:
        st.download_button(
            "📥 Download Excel",
            to_xlsx({"Extractions": df}),
            file_name=f"{stem}.xlsx",
            mime="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        )


def main():
    st.title("📊 Data Extraction")
    init_session_state()
    workspace = get_workspace()
    render_project_picker(workspace)
    with st.sidebar:
        st.markdown("---")
        render_cost_summary_card(workspace.cost_tracker)
    render_llm_settings(workspace)
    project = require_project(workspace)

    templates = workspace.templates.list_templates(workspace.user, project.id)
    tab_names = ["Templates"] + (["Extract", "AI Batch", "Results"] if templates else [])
    tabs = st.tabs(tab_names)
    with tabs[0]:
        render_template_manager(workspace, project)
    if not templates:
        return

    names = {t.id: t.name for t in templates}
    with st.sidebar:
        template_id = st.selectbox("Template", list(names), format_func=names.get)
    template = next(t for t in templates if t.id == template_id)

    with tabs[1]:
        render_extraction_form(workspace, project, template)
    with tabs[2]:
        render_batch_extraction(workspace, project, template)
    with tabs[3]:
        render_results(workspace, project, template)


if __name__ == "__main__":
    main()
