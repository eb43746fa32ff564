"""Background job monitoring components for Streamlit."""

from typing import Optional

import pandas as pd
import streamlit as st

from searchmatic.jobs import Job, JobProcessor, JobStatus

STATUS_ICONS = {
    JobStatus.PENDING: "⏳",
    JobStatus.RUNNING: "🔄",
    JobStatus.RETRYING: "🔁",
    JobStatus.COMPLETED: "✅",
    JobStatus.FAILED: "❌",
}

JOB_LABELS = {
    "pubmed_search": "PubMed search",
    "duplicate_detection": "Duplicate detection",
    "data_export": "Data export",
}


def job_label(job: Job) -> str:
    return JOB_LABELS.get(job.type, job.type.replace("_", " ").title())


def render_job_stats(processor: JobProcessor) -> None:
    stats = processor.get_stats()
    cols = st.columns(5)
    for col, status in zip(cols, JobStatus):
        with col:
            st.metric(f"{STATUS_ICONS[status]} {status.value.title()}", stats[status.value])
    st.caption(
        f"Running {stats['current_running']} of {stats['max_concurrent']} slots · "
        f"{stats['total']} jobs · scheduler {'on' if processor.is_running else 'off'}"
    )


def render_job_card(processor: JobProcessor, job: Job) -> None:
    """One job with progress, result or error, and a cancel button while queued."""
    with st.container(border=True):
        col1, col2 = st.columns([4, 1])
        with col1:
            st.markdown(f"{STATUS_ICONS[job.status]} **{job_label(job)}** · `{job.id}`")
            st.caption(
                f"Priority {job.config.priority} · attempt {job.retries + (0 if job.is_finished else 1)}"
                f"/{job.config.max_retries} · updated {job.updated_at.strftime('%H:%M:%S')}"
            )
        with col2:
            if job.status in (JobStatus.PENDING, JobStatus.RETRYING):
                if st.button("Cancel", key=f"cancel_{job.id}"):
                    processor.cancel_job(job.id)
                    st.rerun()

        if job.status in (JobStatus.RUNNING, JobStatus.RETRYING):
            st.progress(job.progress / 100.0)
        if job.error:
            st.error(job.error)
        if job.status == JobStatus.COMPLETED and job.result:
            st.json(job.result, expanded=False)


def render_job_list(processor: JobProcessor, status: Optional[JobStatus] = None) -> None:
    jobs = processor.get_jobs(status)
    if not jobs:
        st.info("No jobs")
        return
    for job in jobs:
        render_job_card(processor, job)


def jobs_to_dataframe(jobs: list[Job]) -> pd.DataFrame:
    return pd.DataFrame([
        {
            "ID": job.id,
            "Type": job_label(job),
            "Status": job.status.value,
            "Progress": round(job.progress),
            "Retries": job.retries,
            "Priority": job.config.priority,
            "Created": job.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            "Error": job.error or "",
        }
        for job in jobs
    ])


def render_job_badge(processor: JobProcessor, job_id: Optional[str]) -> None:
    """Inline status of a job started from another page."""
    if not job_id:
        return
    job = processor.get_job(job_id)
    if job is None:
        return
    st.caption(f"{STATUS_ICONS[job.status]} {job_label(job)}: {job.status.value} ({job.progress:.0f}%)")
    if job.status == JobStatus.RUNNING:
        st.progress(job.progress / 100.0)
    elif job.status == JobStatus.FAILED and job.error:
        st.error(job.error)
