"""Background Jobs page: queue status, job details and scheduler control."""

import streamlit as st
from pathlib import Path
import sys

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from components.job_monitor import jobs_to_dataframe, render_job_list, render_job_stats
from components.session import get_workspace, render_project_picker
from searchmatic.jobs import JobStatus


def render_controls(processor):
    col1, col2, col3 = st.columns(3)
    with col1:
        if processor.is_running:
            if st.button("⏸️ Pause scheduler"):
                processor.stop(wait=False)
                st.rerun()
        elif st.button("▶️ Start scheduler", type="primary"):
            processor.start()
            st.rerun()
    with col2:
        if st.button("🧹 Clear finished jobs"):
            removed = processor.clear_finished_jobs()
            st.success(f"Removed {removed} jobs")
    with col3:
        if st.button("🔄 Refresh"):
            st.rerun()


def main():
    st.title("⚙️ Background Jobs")
    workspace = get_workspace()
    render_project_picker(workspace)
    processor = workspace.jobs

    render_job_stats(processor)
    render_controls(processor)
    st.markdown("---")

    choice = st.selectbox("Show", ["all"] + [s.value for s in JobStatus], format_func=str.title)
    status = None if choice == "all" else JobStatus(choice)

    tab1, tab2 = st.tabs(["Jobs", "Table"])
    with tab1:
        render_job_list(processor, status)
    with tab2:
        jobs = processor.get_jobs(status)
        if jobs:
            st.dataframe(jobs_to_dataframe(jobs), use_container_width=True, hide_index=True)
        else:
            st.info("No jobs")


if __name__ == "__main__":
    main()
