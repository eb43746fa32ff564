"""Search page: build PubMed queries, preview results and import studies."""

import streamlit as st
from pathlib import Path
import sys

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from components.job_monitor import render_job_badge
from components.session import get_workspace, render_project_picker, require_project, show_error
from searchmatic.cache import cache_keys, invalidate_project, search_cache, with_cache
from searchmatic.errors import SearchmaticError
from searchmatic.jobs import add_search_job
from searchmatic.search import build_search_query
from searchmatic.search.pubmed_client import STUDY_TYPE_TERMS
from searchmatic.storage import SearchFilters

SORT_LABELS = {
    "relevance": "Best match",
    "date": "Most recent",
    "first_author": "First author",
    "last_author": "Last author",
    "journal": "Journal",
    "title": "Title",
}

LANGUAGES = ["english", "spanish", "french", "german", "italian", "portuguese", "chinese", "japanese"]


def init_session_state():
    """Initialize session state variables."""
    if "search_filters" not in st.session_state:
        st.session_state.search_filters = None
    if "search_offset" not in st.session_state:
        st.session_state.search_offset = 0
    if "search_job_id" not in st.session_state:
        st.session_state.search_job_id = None
    if "search_unsaved" not in st.session_state:
        st.session_state.search_unsaved = False


def _split(text: str) -> list[str]:
    return [part.strip() for part in text.split(",") if part.strip()]


def render_filter_form(workspace, project):
    """Filter form; stores SearchFilters in session state on submit."""
    protocols = workspace.protocols.list_protocols(workspace.user, project.id)
    protocol = protocols[0] if protocols else None

    with st.form("search_form"):
        query = st.text_input(
            "Search query",
            value=" OR ".join(protocol.keywords) if protocol and protocol.keywords else "",
            help="PubMed syntax is supported, e.g. depression[MeSH] AND exercise",
        )

        with st.expander("PICO terms", expanded=False):
            col1, col2 = st.columns(2)
            with col1:
                population = st.text_input("Population", value=(protocol.population if protocol else "") or "")
                intervention = st.text_input("Intervention", value=(protocol.intervention if protocol else "") or "")
            with col2:
                comparison = st.text_input("Comparison", value=(protocol.comparison if protocol else "") or "")
                outcome = st.text_input("Outcome", value=(protocol.outcome if protocol else "") or "")

        with st.expander("Filters", expanded=False):
            col1, col2 = st.columns(2)
            with col1:
                start_year = st.text_input("From year", placeholder="e.g. 2010")
                study_types = st.multiselect(
                    "Study types",
                    list(STUDY_TYPE_TERMS),
                    format_func=lambda t: t.replace("_", " ").title(),
                )
                languages = st.multiselect("Languages", LANGUAGES, format_func=str.title)
            with col2:
                end_year = st.text_input("To year", placeholder="e.g. 2024")
                journals = st.text_input("Journals (comma separated)")
                publication_types = st.text_input("Publication types (comma separated)")
            has_abstract = st.checkbox("Only records with an abstract")
            free_full_text = st.checkbox("Only free full text")

        col1, col2 = st.columns(2)
        with col1:
            max_results = st.number_input("Results per page", min_value=10, max_value=500, value=50, step=10)
        with col2:
            sort_by = st.selectbox("Sort by", list(SORT_LABELS), format_func=SORT_LABELS.get)

        if st.form_submit_button("🔍 Search PubMed", type="primary"):
            st.session_state.search_filters = SearchFilters(
                query=query or None,
                population=population or None,
                intervention=intervention or None,
                comparison=comparison or None,
                outcome=outcome or None,
                start_year=start_year or None,
                end_year=end_year or None,
                study_types=study_types,
                languages=languages,
                journals=_split(journals),
                publication_types=_split(publication_types),
                has_abstract=has_abstract,
                is_free_full_text=free_full_text,
                max_results=int(max_results),
                sort_by=sort_by,
            )
            st.session_state.search_offset = 0
            st.session_state.search_unsaved = True


def run_search(workspace, project, filters: SearchFilters):
    query = build_search_query(filters)
    key = cache_keys.search(project.id, query, filters.model_dump(mode="json"))
    return with_cache(search_cache, key, lambda: workspace.pubmed.search_articles(filters))


def render_results(workspace, project, filters: SearchFilters):
    page_filters = filters.model_copy(update={"offset": st.session_state.search_offset})
    try:
        with st.spinner("Searching PubMed..."):
            result = run_search(workspace, project, page_filters)
    except SearchmaticError as e:
        show_error(e, "Search")
        return

    if st.session_state.search_unsaved and st.session_state.search_offset == 0:
        try:
            workspace.search_history.save_search_query(
                workspace.user, project.id, result.query, result.total_count, filters.model_dump(mode="json")
            )
        except SearchmaticError as e:
            show_error(e, "Search history")
        st.session_state.search_unsaved = False

    st.code(result.query, language="text")
    st.markdown(f"**{result.total_count:,}** matching records · showing {len(result.articles)}")
    if not result.articles:
        st.info("No results. Try broader search terms or check spelling.")
        return

    selected = []
    for article in result.articles:
        with st.container(border=True):
            col1, col2 = st.columns([1, 12])
            with col1:
                if st.checkbox("Select", key=f"pick_{article.pmid}", value=True, label_visibility="collapsed"):
                    selected.append(article)
            with col2:
                st.markdown(f"**{article.title}**")
                authors = ", ".join(article.authors[:3]) + (" et al." if len(article.authors) > 3 else "")
                st.caption(
                    f"{authors} · {article.journal or ''} {article.publication_year or ''} · "
                    f"PMID [{article.pmid}]({article.url})"
                )
                if article.abstract:
                    with st.expander("Abstract"):
                        st.write(article.abstract)
                if st.button("Similar articles", key=f"related_{article.pmid}"):
                    render_related(workspace, article.pmid)

    col1, col2, col3 = st.columns(3)
    with col1:
        if st.button(f"📥 Import {len(selected)} selected", type="primary", disabled=not selected):
            try:
                summary = workspace.studies.import_pubmed_articles(workspace.user, project.id, selected)
            except SearchmaticError as e:
                show_error(e, "Import")
                return
            invalidate_project(project.id)
            st.success(f"Imported {summary.imported} studies, skipped {summary.skipped} already in the project")
    with col2:
        if st.session_state.search_offset > 0 and st.button("⬅️ Previous page"):
            st.session_state.search_offset = max(0, st.session_state.search_offset - filters.max_results)
            st.rerun()
    with col3:
        if result.has_more and st.button("Next page ➡️"):
            st.session_state.search_offset = result.next_offset
            st.rerun()


def render_related(workspace, pmid: str):
    try:
        with st.spinner("Finding similar articles..."):
            related = workspace.pubmed.get_related_articles(pmid, max_results=5)
    except SearchmaticError as e:
        show_error(e, "Similar articles")
        return
    if not related:
        st.caption("PubMed lists no similar articles.")
    for article in related:
        st.markdown(f"- [{article.title}]({article.url}) ({article.publication_year or 'n.d.'})")


def render_history(workspace, project):
    """Past searches for the project, each one re-runnable."""
    entries = workspace.search_history.get_search_history(workspace.user, project.id, limit=20)
    if not entries:
        st.info("No searches run for this project yet.")
        return
    for entry in entries:
        col1, col2 = st.columns([5, 1])
        with col1:
            st.code(entry.query, language="text")
            st.caption(f"{entry.result_count:,} results · {entry.created_at:%Y-%m-%d %H:%M}")
        with col2:
            if entry.filters and st.button("Run again", key=f"rerun_{entry.id}"):
                st.session_state.search_filters = SearchFilters(**entry.filters)
                st.session_state.search_offset = 0
                st.session_state.search_unsaved = True
                st.rerun()


def render_background_import(workspace, project, filters: SearchFilters):
    """Queue a job that imports every match, up to a limit."""
    st.markdown("### 🗂️ Import all results in the background")
    col1, col2 = st.columns([2, 1])
    with col1:
        limit = st.number_input(
            "Maximum records to import",
            min_value=1,
            max_value=workspace.settings.pubmed.max_results,
            value=min(500, workspace.settings.pubmed.max_results),
        )
    with col2:
        if st.button("Check count"):
            try:
                check = workspace.pubmed.validate_query(filters)
            except SearchmaticError as e:
                show_error(e, "Query check")
            else:
                st.metric("Matches", f"{check['estimated_results']:,}")
                if check["suggestion"]:
                    st.caption(check["suggestion"])

    if st.button("Start background import"):
        st.session_state.search_job_id = add_search_job(workspace.jobs, project.id, filters, max_results=int(limit))
        st.success("Search job queued. Follow it here or on the Background Jobs page.")
    render_job_badge(workspace.jobs, st.session_state.search_job_id)


def main():
    st.title("🔍 PubMed Search")
    init_session_state()
    workspace = get_workspace()
    render_project_picker(workspace)
    project = require_project(workspace)

    render_filter_form(workspace, project)
    filters = st.session_state.search_filters
    if filters is None:
        st.info("Enter a query or PICO terms and press **Search PubMed**.")
        with st.expander("🕘 Search history"):
            render_history(workspace, project)
        return

    try:
        build_search_query(filters)
    except SearchmaticError as e:
        show_error(e, "Search")
        return

    tab1, tab2, tab3 = st.tabs(["Results", "Background Import", "History"])
    with tab1:
        render_results(workspace, project, filters)
    with tab2:
        render_background_import(workspace, project, filters)
    with tab3:
        render_history(workspace, project)


if __name__ == "__main__":
    main()
