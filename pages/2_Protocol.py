"""Protocol page: review question, framework, criteria and AI guidance."""

import json

import streamlit as st
from pathlib import Path
import sys

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from config.settings import REVIEW_TYPES
from components.cost_display import render_cost_summary_card
from components.session import get_workspace, render_llm_settings, render_project_picker, require_project, show_error
from searchmatic.errors import SearchmaticError
from searchmatic.services import GuidanceRequest
from searchmatic.services.protocol_parsing import PICO_FIELDS, SPIDER_FIELDS
from searchmatic.storage import FrameworkType

FIELD_LABELS = {
    "population": "Population",
    "intervention": "Intervention",
    "comparison": "Comparison",
    "outcome": "Outcome",
    "sample": "Sample",
    "phenomenon": "Phenomenon of Interest",
    "design": "Design",
    "evaluation": "Evaluation",
    "research_type": "Research Type",
}

REFINE_FOCUS = {
    "framework": "Question framework",
    "inclusion": "Inclusion criteria",
    "exclusion": "Exclusion criteria",
    "search_strategy": "Search strategy",
    "general": "General improvements",
}


def init_session_state():
    """Initialize session state variables."""
    if "protocol_id" not in st.session_state:
        st.session_state.protocol_id = None


def _lines(text: str) -> list[str]:
    return [line.strip() for line in text.splitlines() if line.strip()]


def render_protocol_selector(workspace, project):
    protocols = workspace.protocols.list_protocols(workspace.user, project.id)
    if not protocols:
        st.info("This project has no protocol yet. Create one below or let the AI draft it.")
        st.session_state.protocol_id = None
        return None

    ids = [p.id for p in protocols]
    if st.session_state.protocol_id not in ids:
        st.session_state.protocol_id = ids[0]
    labels = {p.id: f"{'🔒 ' if p.is_locked else ''}{p.title} (v{p.version})" for p in protocols}
    st.session_state.protocol_id = st.selectbox(
        "Protocol",
        options=ids,
        index=ids.index(st.session_state.protocol_id),
        format_func=lambda pid: labels[pid],
    )
    return next(p for p in protocols if p.id == st.session_state.protocol_id)


def render_create_form(workspace, project):
    with st.expander("➕ New protocol", expanded=False):
        with st.form("new_protocol_form", clear_on_submit=True):
            title = st.text_input("Title")
            research_question = st.text_area("Research Question", height=80)
            framework = st.selectbox("Framework", [f.value for f in FrameworkType], format_func=str.upper)
            if st.form_submit_button("Create Protocol", type="primary"):
                try:
                    protocol = workspace.protocols.create_protocol(
                        workspace.user,
                        project.id,
                        title=title,
                        research_question=research_question or None,
                        framework_type=framework,
                    )
                except SearchmaticError as e:
                    show_error(e, "Create protocol")
                    return
                st.session_state.protocol_id = protocol.id
                st.rerun()


def render_ai_generate(workspace, project):
    with st.expander("🤖 Draft a protocol with AI", expanded=False):
        if not workspace.ai_enabled:
            st.warning("Connect an AI provider in the sidebar to use this feature.")
            return
        research_question = st.text_area("Research Question", key="ai_generate_question", height=80)
        framework = st.radio("Framework", ["pico", "spider"], format_func=str.upper, horizontal=True)
        if st.button("Generate Protocol", type="primary", disabled=not research_question.strip()):
            with st.spinner("Drafting protocol..."):
                try:
                    protocol = workspace.protocols.generate_protocol_from_ai(
                        workspace.user, project.id, research_question, framework
                    )
                except Exception as e:
                    show_error(e, "AI protocol generation")
                    return
            st.session_state.protocol_id = protocol.id
            st.success("Protocol drafted")
            st.rerun()


def render_protocol_form(workspace, protocol):
    """Edit form; read-only when the protocol is locked."""
    locked = protocol.is_locked
    if locked:
        locked_on = f" on {protocol.locked_at:%Y-%m-%d %H:%M}" if protocol.locked_at else ""
        st.info(f"🔒 Locked{locked_on}. Unlock to edit.")

    with st.form(f"protocol_form_{protocol.id}"):
        title = st.text_input("Title", value=protocol.title, disabled=locked)
        description = st.text_area("Description", value=protocol.description or "", disabled=locked)
        research_question = st.text_area(
            "Research Question", value=protocol.research_question or "", disabled=locked
        )
        frameworks = [f.value for f in FrameworkType]
        framework = st.selectbox(
            "Framework",
            frameworks,
            index=frameworks.index(protocol.framework_type.value),
            format_func=str.upper,
            disabled=locked,
        )

        st.markdown("#### Framework")
        field_names = SPIDER_FIELDS if protocol.framework_type == FrameworkType.SPIDER else PICO_FIELDS
        framework_values = {}
        cols = st.columns(2)
        for i, name in enumerate(field_names):
            with cols[i % 2]:
                framework_values[name] = st.text_area(
                    FIELD_LABELS[name], value=getattr(protocol, name) or "", height=80, disabled=locked
                )

        st.markdown("#### Eligibility")
        col1, col2 = st.columns(2)
        with col1:
            inclusion = st.text_area(
                "Inclusion criteria (one per line)",
                value="\n".join(protocol.inclusion_criteria),
                height=150,
                disabled=locked,
            )
        with col2:
            exclusion = st.text_area(
                "Exclusion criteria (one per line)",
                value="\n".join(protocol.exclusion_criteria),
                height=150,
                disabled=locked,
            )

        st.markdown("#### Search")
        col1, col2 = st.columns(2)
        with col1:
            databases = st.text_input("Databases (comma separated)", value=", ".join(protocol.databases), disabled=locked)
            keywords = st.text_input("Keywords (comma separated)", value=", ".join(protocol.keywords), disabled=locked)
        with col2:
            study_types = st.text_input(
                "Study types (comma separated)", value=", ".join(protocol.study_types), disabled=locked
            )
        search_strategy = st.text_area(
            "Search strategy (JSON)",
            value=json.dumps(protocol.search_strategy, indent=2) if protocol.search_strategy else "",
            height=120,
            disabled=locked,
        )

        if st.form_submit_button("Save Protocol", type="primary", disabled=locked):
            try:
                strategy = json.loads(search_strategy) if search_strategy.strip() else {}
            except json.JSONDecodeError as e:
                st.error(f"Search strategy is not valid JSON: {e}")
                return
            updates = {
                "title": title,
                "description": description or None,
                "research_question": research_question or None,
                "framework_type": framework,
                "inclusion_criteria": _lines(inclusion),
                "exclusion_criteria": _lines(exclusion),
                "databases": [d.strip() for d in databases.split(",") if d.strip()],
                "keywords": [k.strip() for k in keywords.split(",") if k.strip()],
                "study_types": [s.strip() for s in study_types.split(",") if s.strip()],
                "search_strategy": strategy,
                **{name: value or None for name, value in framework_values.items()},
            }
            try:
                workspace.protocols.update_protocol(workspace.user, protocol.id, updates)
            except SearchmaticError as e:
                show_error(e, "Save protocol")
                return
            st.success("Protocol saved")
            st.rerun()


def render_protocol_actions(workspace, protocol):
    col1, col2, col3 = st.columns(3)
    with col1:
        if protocol.is_locked:
            if st.button("🔓 Unlock", use_container_width=True):
                workspace.protocols.unlock_protocol(workspace.user, protocol.id)
                st.rerun()
        elif st.button("🔒 Lock", use_container_width=True):
            workspace.protocols.lock_protocol(workspace.user, protocol.id)
            st.rerun()
    with col2:
        if st.button("📄 Duplicate", use_container_width=True):
            copy = workspace.protocols.duplicate_protocol(workspace.user, protocol.id)
            st.session_state.protocol_id = copy.id
            st.rerun()
    with col3:
        if st.button("🗑️ Delete", use_container_width=True, disabled=protocol.is_locked):
            try:
                workspace.protocols.delete_protocol(workspace.user, protocol.id)
            except SearchmaticError as e:
                show_error(e, "Delete protocol")
                return
            st.session_state.protocol_id = None
            st.rerun()


def render_ai_refine(workspace, protocol):
    st.markdown("### 🤖 AI Refinement")
    if not workspace.ai_enabled:
        st.warning("Connect an AI provider in the sidebar to use AI refinement.")
        return
    if protocol.is_locked:
        st.caption("Unlock the protocol to apply AI refinements.")
        return

    focus_area = st.selectbox("Focus", list(REFINE_FOCUS), format_func=REFINE_FOCUS.get)
    context = st.text_area("Additional context (optional)", key="refine_context")
    if st.button("Refine Protocol", type="primary"):
        with st.spinner("Asking the AI..."):
            try:
                workspace.protocols.refine_protocol_with_ai(
                    workspace.user, protocol.id, focus_area, additional_context=context or None
                )
            except Exception as e:
                show_error(e, "AI refinement")
                return
        st.success("Protocol refined. Review the updated fields above.")
        st.rerun()

    if protocol.ai_guidance_used:
        with st.expander("Guidance history"):
            for area, entry in protocol.ai_guidance_used.items():
                if isinstance(entry, dict):
                    st.markdown(f"**{area}** · {entry.get('timestamp', '')}")
                    st.text(str(entry.get("guidance", ""))[:2000])


def render_guidance_panel(workspace, project, protocol):
    """Free-form guidance: validate the protocol or get framework help."""
    st.markdown("### 🧭 Protocol Guidance")
    guidance_service = workspace.protocols.guidance_service

    saved = guidance_service.get_saved_guidance(workspace.user, project.id)
    if not workspace.ai_enabled:
        st.warning("Connect an AI provider in the sidebar to request guidance.")
    else:
        col1, col2 = st.columns(2)
        with col1:
            request_type = st.selectbox(
                "Guidance type",
                ["validate", "framework", "create"],
                format_func={"validate": "Validate protocol", "framework": "Framework help",
                             "create": "Protocol outline"}.get,
            )
        with col2:
            review_type = st.selectbox(
                "Review type", list(REVIEW_TYPES), format_func=lambda k: REVIEW_TYPES[k]["label"]
            )
        if st.button("Get Guidance"):
            request = GuidanceRequest(
                type=request_type,
                research_question=(protocol.research_question if protocol else None) or project.title,
                review_type=review_type,
                framework_type=protocol.framework_type.value if protocol else "pico",
                current_protocol=protocol.model_dump(mode="json") if protocol else None,
                project_id=project.id,
            )
            with st.spinner("Asking the AI..."):
                try:
                    saved = guidance_service.get_guidance(workspace.user, request)
                except Exception as e:
                    show_error(e, "Guidance")
                    return

    if saved is not None:
        st.caption(f"{saved.type} guidance · {saved.timestamp:%Y-%m-%d %H:%M}")
        if saved.structured:
            st.json(saved.guidance)
        else:
            st.markdown(saved.raw_text)


def render_sidebar(workspace):
    render_project_picker(workspace)
    with st.sidebar:
        st.markdown("---")
        render_cost_summary_card(workspace.cost_tracker)
    render_llm_settings(workspace)


def main():
    st.title("📋 Protocol")
    init_session_state()
    workspace = get_workspace()
    render_sidebar(workspace)
    project = require_project(workspace)

    protocol = render_protocol_selector(workspace, project)
    render_create_form(workspace, project)
    render_ai_generate(workspace, project)

    if protocol is not None:
        st.markdown("---")
        render_protocol_actions(workspace, protocol)
        render_protocol_form(workspace, protocol)
        st.markdown("---")
        render_ai_refine(workspace, protocol)

    st.markdown("---")
    render_guidance_panel(workspace, project, protocol)


if __name__ == "__main__":
    main()
