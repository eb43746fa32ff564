"""Studies page: screening decisions and duplicate review."""

import pandas as pd
import streamlit as st
from pathlib import Path
import sys

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from components.job_monitor import render_job_badge
from components.progress_bar import render_simple_progress
from components.session import get_workspace, render_project_picker, require_project, show_error
from components.status_chart import create_status_chart
from searchmatic.cache import cache_keys, invalidate_project, project_cache, with_cache
from searchmatic.errors import SearchmaticError
from searchmatic.jobs import add_duplicate_detection_job
from searchmatic.storage import DuplicateStatus, StudyStatus, StudyType

STATUS_ICONS = {
    StudyStatus.PENDING: "⏳",
    StudyStatus.SCREENING: "🔎",
    StudyStatus.INCLUDED: "✅",
    StudyStatus.EXCLUDED: "❌",
    StudyStatus.DUPLICATE: "♊",
    StudyStatus.EXTRACTED: "📊",
}


def init_session_state():
    """Initialize session state variables."""
    if "dedup_job_id" not in st.session_state:
        st.session_state.dedup_job_id = None


def status_counts(workspace, project_id: str) -> dict[str, int]:
    return with_cache(
        project_cache,
        cache_keys.stats(project_id),
        lambda: workspace.studies.get_status_counts(workspace.user, project_id),
    )


def render_counts(workspace, project):
    counts = status_counts(workspace, project.id)
    cols = st.columns(len(StudyStatus))
    for col, status in zip(cols, StudyStatus):
        with col:
            st.metric(f"{STATUS_ICONS[status]} {status.value.title()}", counts[status.value])
    screened = counts[StudyStatus.INCLUDED.value] + counts[StudyStatus.EXCLUDED.value] + counts[StudyStatus.EXTRACTED.value]
    render_simple_progress(screened, counts["total"] - counts[StudyStatus.DUPLICATE.value], "Screened")
    if counts["total"]:
        with st.expander("📈 Status distribution"):
            chart_type = st.radio("Chart", ["bar", "pie"], horizontal=True, format_func=str.title)
            st.plotly_chart(create_status_chart(counts, chart_type), use_container_width=True)


def render_study_card(workspace, project, study):
    with st.container(border=True):
        st.markdown(f"{STATUS_ICONS[study.status]} **{study.title}**")
        st.caption(
            f"{study.authors or 'Unknown authors'} · {study.journal or ''} {study.publication_year or ''}"
            + (f" · PMID {study.pmid}" if study.pmid else "")
            + (f" · DOI {study.doi}" if study.doi else "")
        )
        if study.abstract:
            with st.expander("Abstract"):
                st.write(study.abstract)
        if study.is_duplicate:
            st.caption(f"Duplicate of `{study.duplicate_of}`")
            return

        notes = st.text_input("Screening notes", value=study.screening_notes or "", key=f"notes_{study.id}")
        col1, col2, col3, col4 = st.columns(4)
        decision = None
        with col1:
            if st.button("✅ Include", key=f"inc_{study.id}"):
                decision = StudyStatus.INCLUDED
        with col2:
            if st.button("❌ Exclude", key=f"exc_{study.id}"):
                decision = StudyStatus.EXCLUDED
        with col3:
            if st.button("🔎 Maybe", key=f"scr_{study.id}"):
                decision = StudyStatus.SCREENING
        with col4:
            if st.button("🗑️ Delete", key=f"del_{study.id}"):
                workspace.studies.delete_study(workspace.user, study.id)
                invalidate_project(project.id)
                st.rerun()

        if decision is not None:
            try:
                workspace.studies.update_status(workspace.user, study.id, decision, screening_notes=notes or None)
            except SearchmaticError as e:
                show_error(e, "Screening")
                return
            invalidate_project(project.id)
            st.rerun()


def render_screening(workspace, project):
    statuses = ["all"] + [s.value for s in StudyStatus]
    col1, col2 = st.columns([1, 3])
    with col1:
        status = st.selectbox("Status", statuses, format_func=str.title)
    with col2:
        term = st.text_input("Filter by title", placeholder="type to filter")

    studies = workspace.studies.list_studies(workspace.user, project.id, None if status == "all" else status)
    if term:
        studies = [s for s in studies if term.lower() in s.title.lower()]
    if not studies:
        st.info("No studies match. Import some from the **Search** page or add one manually.")
        return

    page_size = workspace.settings.ui.items_per_page
    pages = max(1, (len(studies) + page_size - 1) // page_size)
    page = st.number_input("Page", min_value=1, max_value=pages, value=1) - 1
    st.caption(f"{len(studies)} studies · page {page + 1} of {pages}")
    for study in studies[page * page_size:(page + 1) * page_size]:
        render_study_card(workspace, project, study)


def render_add_study(workspace, project):
    with st.form("add_study_form", clear_on_submit=True):
        title = st.text_input("Title")
        authors = st.text_input("Authors", help="Separate authors with ';'")
        col1, col2, col3 = st.columns(3)
        with col1:
            year = st.number_input("Year", min_value=0, max_value=2100, value=0)
        with col2:
            journal = st.text_input("Journal")
        with col3:
            study_type = st.selectbox("Type", [t.value for t in StudyType])
        col1, col2 = st.columns(2)
        with col1:
            doi = st.text_input("DOI")
        with col2:
            pmid = st.text_input("PMID")
        abstract = st.text_area("Abstract")

        if st.form_submit_button("Add Study", type="primary"):
            try:
                workspace.studies.create_study(
                    workspace.user,
                    project.id,
                    title=title,
                    authors=authors or None,
                    publication_year=int(year) or None,
                    journal=journal or None,
                    study_type=study_type,
                    doi=doi or None,
                    pmid=pmid or None,
                    abstract=abstract or None,
                    source="manual",
                )
            except (SearchmaticError, ValueError) as e:
                show_error(e, "Add study")
                return
            invalidate_project(project.id)
            st.success("Study added")


def render_duplicates(workspace, project):
    """Run detection and confirm or reject potential duplicates."""
    col1, col2 = st.columns(2)
    with col1:
        if st.button("♊ Find duplicates now", type="primary"):
            with st.spinner("Comparing studies..."):
                try:
                    detections, batch = workspace.detections.run_project_deduplication(workspace.user, project.id)
                except SearchmaticError as e:
                    show_error(e, "Duplicate detection")
                    return
            st.success(
                f"Found {len(batch.duplicate_groups)} duplicate groups; "
                f"{len(detections)} new pairs to review"
            )
    with col2:
        if st.button("Run in background"):
            st.session_state.dedup_job_id = add_duplicate_detection_job(workspace.jobs, project.id)
    render_job_badge(workspace.jobs, st.session_state.dedup_job_id)

    detections = workspace.detections.list_detections(workspace.user, project.id, DuplicateStatus.POTENTIAL)
    if not detections:
        st.info("No potential duplicates awaiting review.")
        return

    studies = {s.id: s for s in workspace.studies.list_studies(workspace.user, project.id)}
    st.markdown(f"**{len(detections)}** potential duplicates")
    for detection in detections:
        study = studies.get(detection.study_id)
        original = studies.get(detection.duplicate_of)
        if study is None or original is None:
            continue
        with st.container(border=True):
            st.markdown(
                f"**Similarity {detection.similarity_score:.0%}** · matched on "
                f"{', '.join(detection.matched_fields) or 'combined fields'}"
            )
            df = pd.DataFrame(
                {
                    "Candidate": [study.title, study.authors, study.publication_year, study.doi, study.pmid],
                    "Kept record": [original.title, original.authors, original.publication_year, original.doi, original.pmid],
                },
                index=["Title", "Authors", "Year", "DOI", "PMID"],
            ).astype(str)
            st.dataframe(df, use_container_width=True)
            col1, col2 = st.columns(2)
            with col1:
                if st.button("Confirm duplicate", key=f"confirm_{detection.id}"):
                    workspace.detections.resolve_detection(workspace.user, detection.id, confirm=True)
                    invalidate_project(project.id)
                    st.rerun()
            with col2:
                if st.button("Not a duplicate", key=f"reject_{detection.id}"):
                    workspace.detections.resolve_detection(workspace.user, detection.id, confirm=False)
                    invalidate_project(project.id)
                    st.rerun()


def main():
    st.title("📑 Studies")
    init_session_state()
    workspace = get_workspace()
    render_project_picker(workspace)
    project = require_project(workspace)

    render_counts(workspace, project)
    tab1, tab2, tab3 = st.tabs(["Screening", "Duplicates", "Add Study"])
    with tab1:
        render_screening(workspace, project)
    with tab2:
        render_duplicates(workspace, project)
    with tab3:
        render_add_study(workspace, project)


if __name__ == "__main__":
    main()
