"""Projects page: create, edit and delete review projects."""

import streamlit as st
from pathlib import Path
import sys

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from config.settings import REVIEW_TYPES
from components.session import get_workspace, get_current_project, select_project, show_error
from searchmatic.errors import SearchmaticError
from searchmatic.services import get_status_display
from searchmatic.storage import ProjectStatus, ProjectType

PROJECT_TYPE_LABELS = {key: value["label"] for key, value in REVIEW_TYPES.items()}
PROJECT_TYPE_LABELS[ProjectType.CUSTOM.value] = "Custom"

STAGES = ["Planning", "Protocol", "Searching", "Screening", "Extraction", "Synthesis", "Reporting"]


def render_new_project_form(workspace):
    st.subheader("Create New Project")

    with st.form("new_project_form", clear_on_submit=True):
        title = st.text_input("Project Title", placeholder="e.g., Exercise for Depression in Older Adults")
        description = st.text_area("Description", height=100)
        project_type = st.selectbox(
            "Review Type",
            options=[t.value for t in ProjectType],
            format_func=lambda x: PROJECT_TYPE_LABELS.get(x, x),
        )
        research_domain = st.text_input("Research Domain", placeholder="e.g., Psychiatry")

        if st.form_submit_button("Create Project", type="primary"):
            try:
                project = workspace.projects.create_project(
                    workspace.user,
                    title=title,
                    description=description or None,
                    project_type=project_type,
                    research_domain=research_domain or None,
                )
            except SearchmaticError as e:
                show_error(e, "Create project")
                return
            select_project(project.id)
            st.success(f"Project '{project.title}' created!")
            st.rerun()


def render_project_editor(workspace, project):
    """Edit form, analytics and delete for the selected project."""
    st.subheader(f"📌 {project.title}")

    analytics = workspace.projects.get_project_analytics(workspace.user, project.id)
    col1, col2, col3, col4 = st.columns(4)
    with col1:
        st.metric("Studies", analytics.stats.total_studies)
    with col2:
        st.metric("Pending", analytics.stats.pending_studies)
    with col3:
        st.metric("Screened", f"{analytics.completion_rate}%")
    with col4:
        st.metric("Inclusion Rate", f"{analytics.inclusion_rate}%")

    with st.form(f"edit_project_{project.id}"):
        title = st.text_input("Title", value=project.title)
        description = st.text_area("Description", value=project.description or "", height=100)
        col1, col2 = st.columns(2)
        with col1:
            statuses = [s.value for s in ProjectStatus]
            status = st.selectbox(
                "Status",
                options=statuses,
                index=statuses.index(project.status.value),
                format_func=get_status_display,
            )
            stage = st.selectbox(
                "Current Stage",
                options=STAGES,
                index=STAGES.index(project.current_stage) if project.current_stage in STAGES else 0,
            )
        with col2:
            research_domain = st.text_input("Research Domain", value=project.research_domain or "")
            progress = st.slider("Progress (%)", 0, 100, value=project.progress_percentage)

        if st.form_submit_button("Save Changes", type="primary"):
            try:
                workspace.projects.update_project(
                    workspace.user,
                    project.id,
                    title=title,
                    description=description or None,
                    status=status,
                    current_stage=stage,
                    research_domain=research_domain or None,
                    progress_percentage=progress,
                )
            except SearchmaticError as e:
                show_error(e, "Update project")
                return
            st.success("Project updated")
            st.rerun()

    with st.expander("🗑️ Delete project"):
        st.warning("Deleting a project removes its protocols, conversations, studies and extractions.")
        confirm = st.checkbox("I understand", key=f"confirm_delete_{project.id}")
        if st.button("Delete Project", disabled=not confirm, key=f"delete_{project.id}"):
            try:
                workspace.projects.delete_project(workspace.user, project.id)
            except SearchmaticError as e:
                show_error(e, "Delete project")
                return
            select_project(None)
            st.success("Project deleted")
            st.rerun()


def render_project_table(workspace):
    projects = workspace.projects.list_projects(workspace.user)
    if not projects:
        st.info("No projects yet")
        return

    current = get_current_project(workspace)
    for project in projects:
        col1, col2, col3 = st.columns([5, 2, 1])
        with col1:
            marker = "📌 " if current and current.id == project.id else ""
            st.markdown(f"{marker}**{project.title}** · {PROJECT_TYPE_LABELS.get(project.project_type.value, '')}")
        with col2:
            st.caption(f"{get_status_display(project.status)} · {project.stats.total_studies} studies")
        with col3:
            if st.button("Select", key=f"select_{project.id}"):
                select_project(project.id)
                st.rerun()


def main():
    st.title("📁 Projects")
    workspace = get_workspace()

    tab1, tab2 = st.tabs(["All Projects", "New Project"])
    with tab1:
        render_project_table(workspace)
        project = get_current_project(workspace)
        if project:
            st.markdown("---")
            render_project_editor(workspace, project)
    with tab2:
        render_new_project_form(workspace)


if __name__ == "__main__":
    main()
