"""
Searchmatic

A Streamlit application for running systematic literature reviews:
projects, protocols with AI guidance, PubMed search, duplicate review,
data extraction and exports.

Run with: streamlit run app.py
"""

import streamlit as st

from components.cost_display import render_cost_summary_card
from components.session import (
    get_current_project,
    get_workspace,
    render_llm_settings,
    select_project,
)
from searchmatic.services import get_status_display

# Configure page
st.set_page_config(
    page_title="Searchmatic",
    page_icon="🔎",
    layout="wide",
    initial_sidebar_state="expanded",
    menu_items={
        'About': """
        # Searchmatic

        AI-assisted systematic literature reviews.

        Features:
        - Review projects and protocols (PICO / SPIDER)
        - AI protocol guidance and research chat
        - PubMed search and import
        - Duplicate detection and screening
        - Data extraction forms with AI assistance
        - CSV, Excel, JSON, BibTeX, EndNote and PRISMA exports
        - Background jobs for long-running work

        Supports both OpenAI and Anthropic models.
        """
    }
)


def main():
    """Main application entry point."""
    workspace = get_workspace()

    st.title("🔎 Searchmatic")
    st.markdown(f"Welcome, **{workspace.user.full_name or workspace.user.email}**.")

    render_sidebar(workspace)
    render_dashboard_stats(workspace)
    st.markdown("---")
    render_project_list(workspace)

    with st.expander("📖 Review workflow", expanded=False):
        st.markdown("""
        1. **Projects** - Create a review project
        2. **Protocol** - Define the question, framework and criteria; ask the AI for guidance
        3. **AI Chat** - Discuss the review with the research assistant
        4. **Search** - Search PubMed and import studies
        5. **Studies** - Screen studies and review duplicates
        6. **Data Extraction** - Build extraction forms and fill them, manually or with AI
        7. **Export** - Download studies, extractions and a PRISMA summary
        8. **Background Jobs** - Follow long-running searches, dedup runs and exports
        """)


def render_dashboard_stats(workspace):
    stats = workspace.projects.get_dashboard_stats(workspace.user)

    col1, col2, col3, col4 = st.columns(4)
    with col1:
        st.metric("Projects", stats.total_projects)
    with col2:
        st.metric("Active", stats.active_projects)
    with col3:
        st.metric("Completed", stats.completed_projects)
    with col4:
        st.metric("Average Progress", f"{stats.average_progress}%")


def render_project_list(workspace):
    """Render the user's projects with a button to open each."""
    st.header("Your Projects")

    projects = workspace.projects.list_projects(workspace.user)
    if not projects:
        st.info("""
        👋 **No projects yet**

        Go to **Projects** in the sidebar to create your first review.
        """)
        return

    current = get_current_project(workspace)
    for project in projects:
        with st.container(border=True):
            col1, col2, col3 = st.columns([4, 2, 1])
            with col1:
                marker = "📌 " if current and current.id == project.id else ""
                st.markdown(f"{marker}**{project.title}**")
                if project.description:
                    st.caption(project.description[:200])
            with col2:
                st.markdown(f"{get_status_display(project.status)} · {project.current_stage}")
                st.progress(project.progress_percentage / 100)
                st.caption(
                    f"{project.stats.total_studies} studies · "
                    f"{project.stats.included_studies} included · "
                    f"{project.stats.duplicate_studies} duplicates"
                )
            with col3:
                if st.button("Open", key=f"open_{project.id}"):
                    select_project(project.id)
                    st.rerun()


def render_sidebar(workspace):
    with st.sidebar:
        project = get_current_project(workspace)
        if project:
            st.markdown(f"**Current project:** {project.title}")
        else:
            st.caption("No project selected")
        st.markdown("---")
        render_cost_summary_card(workspace.cost_tracker)
    render_llm_settings(workspace)


if __name__ == "__main__":
    main()
