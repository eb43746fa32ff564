"""Background job queue with priorities, timeouts, retries and a JSON-backed store."""

import json
import logging
import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FutureTimeout
from concurrent.futures import wait as wait_futures
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRYING = "retrying"


FINISHED = (JobStatus.COMPLETED, JobStatus.FAILED)


@dataclass
class JobConfig:
    max_retries: int = 3
    retry_delay: float = 5.0  # seconds
    timeout: float = 30.0  # seconds
    priority: int = 5  # higher runs first


@dataclass
class Job:
    """A queued unit of work and its outcome."""
    id: str
    type: str
    payload: dict[str, Any]
    status: JobStatus = JobStatus.PENDING
    progress: float = 0.0
    result: Any = None
    error: Optional[str] = None
    retries: int = 0
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)
    config: JobConfig = field(default_factory=JobConfig)
    retry_at: Optional[float] = None  # monotonic time a retrying job becomes pending

    @property
    def is_finished(self) -> bool:
        return self.status in FINISHED

    def to_dict(self) -> dict:
        data = asdict(self)
        data["status"] = self.status.value
        data["created_at"] = self.created_at.isoformat()
        data["updated_at"] = self.updated_at.isoformat()
        data.pop("retry_at")
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Job":
        return cls(
            id=data["id"],
            type=data["type"],
            payload=data.get("payload") or {},
            status=JobStatus(data.get("status", "pending")),
            progress=data.get("progress", 0.0),
            result=data.get("result"),
            error=data.get("error"),
            retries=data.get("retries", 0),
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
            config=JobConfig(**data.get("config", {})),
        )


JobHandler = Callable[[Job, Callable[[float], None]], Any]


def _new_job_id() -> str:
    return f"job_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


class JobProcessor:
    """
    Run registered job handlers on a bounded thread pool.

    Pending jobs run highest priority first, oldest first within a
    priority. Each attempt is bounded by the job's timeout; failures are
    retried after retry_delay until max_retries attempts have failed.
    The queue is saved to storage_path on every change.
    """

    def __init__(
        self,
        max_concurrent: int = 3,
        poll_interval: float = 1.0,
        storage_path: Optional[Path | str] = None,
    ):
        """
        Initialize job processor.

        Args:
            max_concurrent: Maximum jobs running at once
            poll_interval: Seconds between scheduler passes
            storage_path: JSON file the queue is persisted to
        """
        self.max_concurrent = max_concurrent
        self.poll_interval = poll_interval
        self.storage_path = Path(storage_path) if storage_path else None

        self._jobs: dict[str, Job] = {}
        self._handlers: dict[str, JobHandler] = {}
        self._listeners: list[Callable[[Job], None]] = []
        self._lock = threading.RLock()
        self._save_lock = threading.Lock()
        self._wake = threading.Event()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._running_count = 0
        self._active: list[Future] = []

        # Supervisors wait on handler futures so a timed-out handler cannot
        # hold a concurrency slot.
        self._supervisors = ThreadPoolExecutor(max_workers=max_concurrent, thread_name_prefix="job-supervisor")
        self._workers = ThreadPoolExecutor(max_workers=max_concurrent * 2, thread_name_prefix="job-worker")

        self._load()

    # =========================================================================
    # PERSISTENCE
    # =========================================================================

    def _load(self) -> None:
        if not self.storage_path or not self.storage_path.exists():
            return
        try:
            data = json.loads(self.storage_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Could not load job queue from {self.storage_path}: {e}")
            return

        for item in data.get("jobs", []):
            job = Job.from_dict(item)
            # Work interrupted by a restart starts over
            if job.status in (JobStatus.RUNNING, JobStatus.RETRYING):
                job.status = JobStatus.PENDING
            self._jobs[job.id] = job
        logger.info(f"Loaded {len(self._jobs)} jobs from {self.storage_path}")

    def _save(self) -> None:
        if not self.storage_path:
            return
        # Writers share one temp file, so snapshot, write and replace happen
        # under one lock and the newest snapshot always lands last.
        with self._save_lock:
            with self._lock:
                payload = {"jobs": [job.to_dict() for job in self._jobs.values()]}
            self.storage_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.storage_path.with_suffix(".tmp")
            tmp_path.write_text(json.dumps(payload, indent=2, default=str), encoding="utf-8")
            tmp_path.replace(self.storage_path)

    def _changed(self, job: Job) -> None:
        job.updated_at = datetime.now()
        self._save()
        for listener in list(self._listeners):
            try:
                listener(job)
            except Exception:
                logger.exception(f"Job listener failed for {job.id}")

    # =========================================================================
    # QUEUE API
    # =========================================================================

    def register_handler(self, job_type: str, handler: JobHandler) -> None:
        self._handlers[job_type] = handler

    def add_listener(self, listener: Callable[[Job], None]) -> None:
        self._listeners.append(listener)

    def add_job(self, job_type: str, payload: dict[str, Any], config: Optional[JobConfig] = None) -> str:
        """Queue a job and wake the scheduler; returns the job ID."""
        job = Job(id=_new_job_id(), type=job_type, payload=payload, config=config or JobConfig())
        with self._lock:
            self._jobs[job.id] = job
        logger.info(f"Queued {job_type} job {job.id} (priority {job.config.priority})")
        self._changed(job)
        self._wake.set()
        return job.id

    def get_job(self, job_id: str) -> Optional[Job]:
        return self._jobs.get(job_id)

    def get_jobs(self, status: Optional[JobStatus | str] = None) -> list[Job]:
        """Jobs in scheduling order, optionally filtered by status."""
        with self._lock:
            jobs = list(self._jobs.values())
        if status:
            jobs = [j for j in jobs if j.status == JobStatus(status)]
        return sorted(jobs, key=lambda j: (-j.config.priority, j.created_at))

    def get_stats(self) -> dict[str, int]:
        with self._lock:
            jobs = list(self._jobs.values())
        stats = {status.value: sum(1 for j in jobs if j.status == status) for status in JobStatus}
        stats["total"] = len(jobs)
        stats["current_running"] = self._running_count
        stats["max_concurrent"] = self.max_concurrent
        return stats

    def cancel_job(self, job_id: str) -> bool:
        """Fail a job that has not started; running jobs cannot be cancelled."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status == JobStatus.RUNNING:
                return False
            job.status = JobStatus.FAILED
            job.error = "Cancelled by user"
            job.retry_at = None
        self._changed(job)
        return True

    def clear_finished_jobs(self) -> int:
        """Remove completed and failed jobs; returns how many were removed."""
        with self._lock:
            finished = [job_id for job_id, job in self._jobs.items() if job.is_finished]
            for job_id in finished:
                del self._jobs[job_id]
        self._save()
        return len(finished)

    # =========================================================================
    # SCHEDULING
    # =========================================================================

    def _promote_retries(self) -> None:
        now = time.monotonic()
        promoted = []
        with self._lock:
            for job in self._jobs.values():
                if job.status == JobStatus.RETRYING and (job.retry_at is None or job.retry_at <= now):
                    job.status = JobStatus.PENDING
                    job.retry_at = None
                    promoted.append(job)
        for job in promoted:
            self._changed(job)

    def _dispatch(self) -> list[Future]:
        """Start as many pending jobs as free slots allow."""
        self._promote_retries()
        started = []
        with self._lock:
            for job in self.get_jobs(JobStatus.PENDING):
                if self._running_count >= self.max_concurrent:
                    break
                job.status = JobStatus.RUNNING
                self._running_count += 1
                started.append(job)
        futures = []
        for job in started:
            self._changed(job)
            future = self._supervisors.submit(self._run_job, job)
            futures.append(future)
        with self._lock:
            self._active = [f for f in self._active if not f.done()] + futures
        return futures

    def _run_job(self, job: Job) -> None:
        try:
            handler = self._handlers.get(job.type)
            if handler is None:
                job.status = JobStatus.FAILED
                job.error = f"No handler found for job type: {job.type}"
                logger.error(job.error)
                return

            def report_progress(progress: float) -> None:
                job.progress = max(0.0, min(100.0, float(progress)))
                self._changed(job)

            logger.info(f"Running {job.type} job {job.id} (attempt {job.retries + 1})")
            future = self._workers.submit(handler, job, report_progress)
            try:
                result = future.result(timeout=job.config.timeout)
            except FutureTimeout:
                future.cancel()
                self._fail_attempt(job, "Job timeout")
                return
            except Exception as e:
                self._fail_attempt(job, str(e) or e.__class__.__name__)
                return

            job.status = JobStatus.COMPLETED
            job.progress = 100.0
            job.result = result
            job.error = None
            logger.info(f"Completed {job.type} job {job.id}")
        finally:
            with self._lock:
                self._running_count -= 1
            self._changed(job)
            self._wake.set()

    def _fail_attempt(self, job: Job, error: str) -> None:
        job.retries += 1
        job.error = error
        if job.retries < job.config.max_retries:
            job.status = JobStatus.RETRYING
            job.retry_at = time.monotonic() + job.config.retry_delay
            logger.warning(f"{job.type} job {job.id} failed ({error}); retry {job.retries} in {job.config.retry_delay}s")
        else:
            job.status = JobStatus.FAILED
            logger.error(f"{job.type} job {job.id} failed after {job.retries} attempts: {error}")

    def run_pending(self, timeout: Optional[float] = None) -> int:
        """
        Run queued jobs in the calling thread until none are ready.

        Retries whose delay has elapsed are run again. Returns the number
        of attempts made.
        """
        attempts = 0
        while True:
            futures = self._dispatch()
            if not futures:
                break
            attempts += len(futures)
            wait_futures(futures, timeout=timeout)
        return attempts

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self._dispatch()
            except Exception:
                logger.exception("Error in job scheduling loop")
            self._wake.wait(self.poll_interval)
            self._wake.clear()

    def start(self) -> None:
        """Start the background scheduler thread."""
        if self.is_running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="job-scheduler", daemon=True)
        self._thread.start()
        logger.info("Job processor started")

    def stop(self, wait: bool = True) -> None:
        self._stop.set()
        self._wake.set()
        if self._thread is not None and wait:
            self._thread.join()
        self._thread = None
        if wait:
            with self._lock:
                active = list(self._active)
            for future in active:
                future.result()
        logger.info("Job processor stopped")

    def shutdown(self) -> None:
        """Stop scheduling and release the thread pools."""
        self.stop(wait=True)
        self._supervisors.shutdown(wait=True)
        self._workers.shutdown(wait=False, cancel_futures=True)

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
