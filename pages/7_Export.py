"""Export page: download project data, review export history and the AI audit trail."""

from datetime import datetime

import pandas as pd
import streamlit as st
from pathlib import Path
import sys

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from components.job_monitor import render_job_badge
from components.session import get_workspace, render_project_picker, require_project, show_error
from searchmatic.errors import SearchmaticError
from searchmatic.jobs import add_export_job
from searchmatic.storage import ExportFormat, StudyStatus

FORMAT_LABELS = {
    ExportFormat.CSV: "CSV spreadsheet",
    ExportFormat.XLSX: "Excel workbook",
    ExportFormat.JSON: "JSON (project and studies)",
    ExportFormat.BIBTEX: "BibTeX references",
    ExportFormat.ENDNOTE: "EndNote references",
    ExportFormat.PRISMA: "PRISMA flow summary",
}


def init_session_state():
    """Initialize session state variables."""
    if "export_result" not in st.session_state:
        st.session_state.export_result = None
    if "export_job_id" not in st.session_state:
        st.session_state.export_job_id = None


def render_filters() -> dict:
    """Filter widgets; returns a JSON-safe filter dict."""
    with st.expander("Filters", expanded=False):
        col1, col2 = st.columns(2)
        with col1:
            status = st.selectbox("Status", ["any"] + [s.value for s in StudyStatus], format_func=str.title)
            date_from = st.date_input("Added from", value=None)
        with col2:
            decision = st.selectbox("Screening decision", ["any", "included", "excluded"], format_func=str.title)
            date_to = st.date_input("Added until", value=None)

    filters = {}
    if status != "any":
        filters["status"] = status
    if decision != "any":
        filters["screening_decision"] = decision
    if date_from:
        filters["date_from"] = date_from.isoformat()
    if date_to:
        filters["date_to"] = date_to.isoformat()
    return filters


def render_export(workspace, project):
    st.markdown("### 📤 Export Studies")
    fmt = st.radio(
        "Format",
        list(FORMAT_LABELS),
        format_func=FORMAT_LABELS.get,
        horizontal=True,
    )
    filters = render_filters()

    col1, col2 = st.columns(2)
    with col1:
        if st.button("Prepare download", type="primary"):
            try:
                st.session_state.export_result = workspace.exports.export_project(
                    workspace.user, project.id, fmt, filters
                )
            except SearchmaticError as e:
                st.session_state.export_result = None
                show_error(e, "Export")
    with col2:
        if st.button("Export in background"):
            st.session_state.export_job_id = add_export_job(workspace.jobs, project.id, fmt, filters)
            st.success(f"Export job queued. The file is written to {workspace.settings.exports_path}.")
    render_job_badge(workspace.jobs, st.session_state.export_job_id)

    result = st.session_state.export_result
    if result is not None:
        st.success(f"{result.record_count} studies ready in `{result.file_name}`")
        st.download_button(
            f"📥 Download {result.file_name}",
            result.content,
            file_name=result.file_name,
            mime=result.mime_type,
        )


def render_export_history(workspace, project):
    logs = workspace.exports.list_export_logs(workspace.user, project.id)
    if not logs:
        st.info("No exports yet.")
        return
    df = pd.DataFrame([
        {
            "When": log.created_at.strftime("%Y-%m-%d %H:%M"),
            "Format": log.export_format.value,
            "Records": log.record_count,
            "File": log.file_name or "",
            "Filters": ", ".join(f"{k}={v}" for k, v in log.filters.items()),
        }
        for log in logs
    ])
    st.dataframe(df, use_container_width=True, hide_index=True)


def render_audit_log(workspace, project):
    """AI usage for this project, with a CSV copy of the log."""
    audit = workspace.audit_logger
    summary = audit.get_summary(project_id=project.id)
    if summary["total_calls"] == 0:
        st.info("No AI calls recorded for this project.")
        return

    col1, col2, col3, col4 = st.columns(4)
    with col1:
        st.metric("AI Calls", summary["total_calls"])
    with col2:
        st.metric("Failed", summary["failed_calls"])
    with col3:
        st.metric("Total Cost", f"${summary['total_cost']:.4f}")
    with col4:
        st.metric("Tokens", f"{summary['total_input_tokens'] + summary['total_output_tokens']:,}")

    st.markdown("#### By operation")
    st.dataframe(
        pd.DataFrame.from_dict(summary["by_operation"], orient="index").rename_axis("operation"),
        use_container_width=True,
    )

    entries = audit.get_entries(project_id=project.id, limit=50)
    with st.expander("Recent calls"):
        for entry in entries:
            icon = "✅" if entry.success else "❌"
            st.markdown(
                f"{icon} `{entry.timestamp:%Y-%m-%d %H:%M}` **{entry.operation}** · {entry.model} · ${entry.cost:.4f}"
            )
            if entry.error_message:
                st.caption(entry.error_message)

    if st.button("Prepare audit log CSV"):
        exports_path = workspace.settings.exports_path
        exports_path.mkdir(parents=True, exist_ok=True)
        path = audit.export_to_csv(
            exports_path / f"audit_log_{datetime.now():%Y%m%d_%H%M%S}.csv", project_id=project.id
        )
        st.download_button(
            "📥 Download audit log",
            Path(path).read_text(encoding="utf-8"),
            file_name=Path(path).name,
            mime="text/csv",
        )


def main():
    st.title("📤 Export")
    init_session_state()
    workspace = get_workspace()
    render_project_picker(workspace)
    project = require_project(workspace)

    tab1, tab2, tab3 = st.tabs(["Export", "History", "AI Audit Log"])
    with tab1:
        render_export(workspace, project)
    with tab2:
        render_export_history(workspace, project)
    with tab3:
        render_audit_log(workspace, project)


if __name__ == "__main__":
    main()
