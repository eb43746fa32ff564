"""Tests for the background job processor and its handlers."""

import json
import threading
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from searchmatic.jobs import (
    Job,
    JobConfig,
    JobContext,
    JobHandlers,
    JobProcessor,
    JobStatus,
    add_duplicate_detection_job,
    add_export_job,
    add_search_job,
)
from searchmatic.storage import PubMedArticle, SearchFilters


FAST = JobConfig(max_retries=3, retry_delay=0, timeout=5.0)


@pytest.fixture
def storage_path(tmp_path):
    return tmp_path / "jobs" / "queue.json"


@pytest.fixture
def processor(storage_path):
    processor = JobProcessor(max_concurrent=1, poll_interval=0.01, storage_path=storage_path)
    yield processor
    processor.shutdown()


# =============================================================================
# PROCESSOR
# =============================================================================

class TestJobProcessor:
    """Tests for JobProcessor scheduling."""

    def test_completes_job(self, processor):
        """Test that a handler's return value becomes the result."""
        processor.register_handler("echo", lambda job, progress: {"echo": job.payload["value"]})
        job_id = processor.add_job("echo", {"value": 42}, FAST)

        assert processor.run_pending() == 1

        job = processor.get_job(job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.result == {"echo": 42}
        assert job.progress == 100.0
        assert job.error is None

    def test_priority_order(self, processor):
        """Test highest priority first, then oldest first."""
        order = []
        processor.register_handler("record", lambda job, progress: order.append(job.payload["name"]))
        processor.add_job("record", {"name": "low"}, JobConfig(priority=1))
        processor.add_job("record", {"name": "high-first"}, JobConfig(priority=9))
        processor.add_job("record", {"name": "high-second"}, JobConfig(priority=9))

        assert processor.run_pending() == 3
        assert order == ["high-first", "high-second", "low"]

    def test_retries_until_max(self, processor):
        """Test that a failing job is attempted max_retries times."""
        def fail(job, progress):
            raise RuntimeError("upstream unavailable")

        processor.register_handler("flaky", fail)
        job_id = processor.add_job("flaky", {}, FAST)

        assert processor.run_pending() == 3

        job = processor.get_job(job_id)
        assert job.status == JobStatus.FAILED
        assert job.retries == 3
        assert job.error == "upstream unavailable"

    def test_succeeds_after_retry(self, processor):
        attempts = []

        def flaky(job, progress):
            attempts.append(1)
            if len(attempts) == 1:
                raise ValueError("first try")
            return "ok"

        processor.register_handler("flaky", flaky)
        job_id = processor.add_job("flaky", {}, FAST)

        assert processor.run_pending() == 2
        assert processor.get_job(job_id).status == JobStatus.COMPLETED
        assert processor.get_job(job_id).retries == 1

    def test_retry_waits_for_delay(self, processor):
        """Test that a retrying job is not run before its delay elapses."""
        def fail(job, progress):
            raise RuntimeError("boom")

        processor.register_handler("slow-retry", fail)
        job_id = processor.add_job("slow-retry", {}, JobConfig(max_retries=2, retry_delay=60.0))

        assert processor.run_pending() == 1
        assert processor.get_job(job_id).status == JobStatus.RETRYING

    def test_timeout(self, processor):
        """Test that a handler exceeding its timeout fails the attempt."""
        release = threading.Event()
        processor.register_handler("hang", lambda job, progress: release.wait(5))
        job_id = processor.add_job("hang", {}, JobConfig(max_retries=1, timeout=0.05))

        try:
            processor.run_pending()
        finally:
            release.set()

        job = processor.get_job(job_id)
        assert job.status == JobStatus.FAILED
        assert job.error == "Job timeout"

    def test_missing_handler(self, processor):
        job_id = processor.add_job("unknown", {}, FAST)
        assert processor.run_pending() == 1

        job = processor.get_job(job_id)
        assert job.status == JobStatus.FAILED
        assert job.error == "No handler found for job type: unknown"

    def test_progress_is_clamped_and_reported(self, processor):
        seen = []
        processor.add_listener(lambda job: seen.append((job.status, job.progress)))

        def work(job, progress):
            progress(40)
            progress(250)

        processor.register_handler("work", work)
        processor.add_job("work", {}, FAST)
        processor.run_pending()

        assert (JobStatus.RUNNING, 40.0) in seen
        assert (JobStatus.RUNNING, 100.0) in seen
        assert seen[-1] == (JobStatus.COMPLETED, 100.0)

    def test_failing_listener_does_not_stop_job(self, processor):
        def broken(job):
            raise RuntimeError("listener bug")

        processor.add_listener(broken)
        processor.register_handler("echo", lambda job, progress: "done")
        job_id = processor.add_job("echo", {}, FAST)
        processor.run_pending()

        assert processor.get_job(job_id).status == JobStatus.COMPLETED

    def test_cancel(self, processor):
        """Test that pending jobs cancel and running ones do not."""
        pending_id = processor.add_job("echo", {}, FAST)
        running_id = processor.add_job("echo", {}, FAST)
        processor.get_job(running_id).status = JobStatus.RUNNING

        assert processor.cancel_job(pending_id)
        assert not processor.cancel_job(running_id)
        assert not processor.cancel_job("job_missing")

        cancelled = processor.get_job(pending_id)
        assert cancelled.status == JobStatus.FAILED
        assert cancelled.error == "Cancelled by user"

    def test_stats_and_clear(self, processor):
        processor.register_handler("echo", lambda job, progress: None)
        processor.add_job("echo", {}, FAST)
        processor.add_job("missing", {}, FAST)
        processor.run_pending()
        processor.add_job("echo", {}, FAST)

        stats = processor.get_stats()
        assert stats["completed"] == 1
        assert stats["failed"] == 1
        assert stats["pending"] == 1
        assert stats["total"] == 3
        assert stats["current_running"] == 0
        assert stats["max_concurrent"] == 1

        assert processor.clear_finished_jobs() == 2
        assert [job.status for job in processor.get_jobs()] == [JobStatus.PENDING]

    def test_get_jobs_by_status(self, processor):
        job_id = processor.add_job("echo", {}, FAST)
        processor.cancel_job(job_id)
        processor.add_job("echo", {}, FAST)

        assert [job.id for job in processor.get_jobs("failed")] == [job_id]
        assert len(processor.get_jobs(JobStatus.PENDING)) == 1

    def test_background_thread(self, processor):
        """Test that the scheduler thread runs queued work."""
        done = threading.Event()

        def work(job, progress):
            done.set()
            return "background"

        processor.register_handler("work", work)
        processor.start()
        assert processor.is_running
        job_id = processor.add_job("work", {}, FAST)

        assert done.wait(5)
        processor.stop()

        assert not processor.is_running
        assert processor.get_job(job_id).result == "background"


class TestJobPersistence:
    """Tests for the JSON-backed queue."""

    def test_queue_survives_restart(self, processor, storage_path):
        job_id = processor.add_job("echo", {"value": 1}, JobConfig(priority=7))

        reloaded = JobProcessor(storage_path=storage_path)
        try:
            job = reloaded.get_job(job_id)
            assert job.payload == {"value": 1}
            assert job.config.priority == 7
            assert job.status == JobStatus.PENDING
        finally:
            reloaded.shutdown()

    def test_interrupted_jobs_restart(self, storage_path):
        """Test that running and retrying jobs load as pending."""
        jobs = [
            Job(id="job_running", type="echo", payload={}, status=JobStatus.RUNNING).to_dict(),
            Job(id="job_retrying", type="echo", payload={}, status=JobStatus.RETRYING).to_dict(),
            Job(id="job_done", type="echo", payload={}, status=JobStatus.COMPLETED).to_dict(),
        ]
        storage_path.parent.mkdir(parents=True)
        storage_path.write_text(json.dumps({"jobs": jobs}), encoding="utf-8")

        processor = JobProcessor(storage_path=storage_path)
        try:
            assert processor.get_job("job_running").status == JobStatus.PENDING
            assert processor.get_job("job_retrying").status == JobStatus.PENDING
            assert processor.get_job("job_done").status == JobStatus.COMPLETED
        finally:
            processor.shutdown()

    def test_unreadable_file(self, storage_path):
        storage_path.parent.mkdir(parents=True)
        storage_path.write_text("not json", encoding="utf-8")

        processor = JobProcessor(storage_path=storage_path)
        try:
            assert processor.get_jobs() == []
        finally:
            processor.shutdown()


class TestConcurrentPersistence:
    """Tests for saving the queue while several jobs run at once."""

    @pytest.fixture
    def parallel(self, storage_path):
        processor = JobProcessor(max_concurrent=4, poll_interval=0.01, storage_path=storage_path)
        yield processor
        processor.shutdown()

    def test_progress_from_parallel_jobs(self, parallel, storage_path):
        """Test that frequent progress saves from parallel jobs never fail a job."""
        def spin(job, progress):
            for i in range(100):
                progress(i)
            return job.payload["n"]

        parallel.register_handler("spin", spin)
        ids = [parallel.add_job("spin", {"n": n}, FAST) for n in range(8)]

        assert parallel.run_pending() == 8

        for job_id in ids:
            job = parallel.get_job(job_id)
            assert job.status == JobStatus.COMPLETED, job.error
            assert job.retries == 0

        saved = json.loads(storage_path.read_text(encoding="utf-8"))["jobs"]
        assert sorted(item["status"] for item in saved) == ["completed"] * 8
        assert not storage_path.with_suffix(".tmp").exists()

    def test_add_job_from_many_threads(self, parallel, storage_path):
        errors = []

        def add_many():
            try:
                for _ in range(25):
                    parallel.add_job("echo", {}, FAST)
            except OSError as e:
                errors.append(e)

        threads = [threading.Thread(target=add_many) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        reloaded = JobProcessor(storage_path=storage_path)
        try:
            assert len(reloaded.get_jobs()) == 200
        finally:
            reloaded.shutdown()


# =============================================================================
# HANDLERS
# =============================================================================

class TestJobHandlers:
    """Tests for the search, deduplication and export handlers."""

    @pytest.fixture
    def pubmed_client(self):
        return MagicMock()

    @pytest.fixture
    def handlers(self, database, user, tmp_path, pubmed_client, processor):
        handlers = JobHandlers(JobContext(
            user=user,
            database=database,
            exports_path=tmp_path / "exports",
            pubmed_client=pubmed_client,
        ))
        handlers.register_all(processor)
        return handlers

    def test_search_job_imports_articles(self, handlers, processor, pubmed_client, studies, user, project, make_study):
        """Test the PubMed search job end to end with a stubbed client."""
        make_study("Already here", pmid="2")
        pubmed_client.search_ids.return_value = (["1", "2"], 57)
        pubmed_client.fetch_articles.return_value = [
            PubMedArticle(pmid="1", title="Resistance training in late life", doi="10.1/a"),
            PubMedArticle(pmid="2", title="Already here"),
        ]

        job_id = add_search_job(processor, project.id, SearchFilters(query="exercise"), max_results=2)
        processor.run_pending()

        job = processor.get_job(job_id)
        assert job.status == JobStatus.COMPLETED, job.error
        assert job.result == {"total_found": 57, "fetched": 2, "imported": 1, "skipped": 1}
        assert job.config.priority == 8
        sent = pubmed_client.search_ids.call_args.args[0]
        assert sent.query == "exercise"
        assert sent.max_results == 2
        assert len(studies.list_studies(user, project.id)) == 2

        history = handlers.search_history.get_search_history(user, project.id)
        assert [(h.query, h.result_count) for h in history] == [("(exercise)", 57)]

    def test_search_fetches_in_chunks(self, handlers, pubmed_client, project):
        pubmed_client.search_ids.return_value = ([str(i) for i in range(45)], 45)
        pubmed_client.fetch_articles.return_value = []
        progress = []

        job = Job(id="job_1", type="pubmed_search", payload={"project_id": project.id, "filters": {"query": "exercise"}, "max_results": 45})
        result = handlers.pubmed_search(job, progress.append)

        assert pubmed_client.fetch_articles.call_count == 3
        assert result["fetched"] == 0
        assert progress[0] == 5
        assert progress[-1] == 100

    def test_duplicate_detection_job(self, handlers, processor, project, make_study):
        fields = dict(authors="Smith J; Doe A", journal="BMJ", publication_year=2020)
        make_study("Exercise and depression in older adults", **fields)
        make_study("Exercise and depression in older adults", **fields)
        make_study("Statins and dementia risk", authors="Lee K", journal="Lancet", publication_year=2010)

        job_id = add_duplicate_detection_job(processor, project.id)
        processor.run_pending()

        job = processor.get_job(job_id)
        assert job.status == JobStatus.COMPLETED, job.error
        assert job.result == {"detections": 1, "groups": 1, "unique": 1}
        assert "study_ids" not in job.payload

    def test_export_job_writes_file(self, handlers, processor, project, make_study, tmp_path):
        """Test that the export job writes its file under the exports path."""
        make_study("Exercise and mood", authors="Smith J", journal="BMJ", publication_year=2021)

        job_id = add_export_job(processor, project.id, "bibtex")
        processor.run_pending()

        job = processor.get_job(job_id)
        assert job.status == JobStatus.COMPLETED, job.error
        assert job.result["record_count"] == 1
        path = Path(job.result["file_path"])
        assert path.parent == tmp_path / "exports"
        assert path.suffix == ".bib"
        assert path.read_text(encoding="utf-8").startswith("@article{smith20211")

    def test_export_job_for_missing_project_retries(self, handlers, processor):
        """Test that a failed export is scheduled for another attempt."""
        job_id = add_export_job(processor, "missing-project", "csv")
        processor.run_pending()

        job = processor.get_job(job_id)
        assert job.status == JobStatus.RETRYING
        assert job.retries == 1
        assert job.error
