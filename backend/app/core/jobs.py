"""
Background job runtime.

Every unit of background work (one connection sync, one webhook event, one
conversion batch) is a Job enqueued on a JobQueue. The queue gives
at-least-once execution with a bounded number of attempts, a fixed backoff
between attempts and a per-job wall-clock timeout. Jobs must tolerate being
run more than once.

Two runtimes are provided:
- BackgroundJobQueue: APScheduler BackgroundScheduler, used by the web app.
- ImmediateJobQueue: runs jobs in the caller's thread, used by the CLI and tests.
"""

import logging
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.date import DateTrigger

from app.core.config import settings

logger = logging.getLogger(__name__)


class JobTimeout(Exception):
    """A job attempt exceeded its wall-clock timeout."""


class Job:
    """Base class for queued background work."""

    name: str = "job"
    attempts: int = 1
    timeout: Optional[int] = None  # seconds

    def __init__(self):
        self._cancelled = threading.Event()

    def handle(self) -> Any:
        raise NotImplementedError

    def run(self) -> Any:
        """Run one attempt. Cancellation is only checked here, at entry."""
        if self._cancelled.is_set():
            logger.info(f"{self.name} cancelled before start, skipping")
            return None
        return self.handle()

    def cancel(self) -> None:
        self._cancelled.set()

    def is_cancelled(self) -> bool:
        return self._cancelled.is_set()

    def should_retry(self, exc: BaseException) -> bool:
        """Whether a failed attempt may be retried by the queue."""
        return True

    def failed(self, exc: BaseException) -> None:
        """Terminal-failure hook. Logging only, never compensating action."""
        logger.error(f"Job {self.name} failed permanently: {exc}")

    def describe(self) -> str:
        return self.name


class JobQueue:
    """Common enqueue/retry logic shared by the runtimes."""

    def __init__(self, backoff_seconds: float = 0.0):
        self.backoff_seconds = backoff_seconds
        self._jobs: Dict[str, Job] = {}

    def enqueue(self, job: Job, attempts: Optional[int] = None, timeout: Optional[int] = None) -> str:
        attempts = attempts or job.attempts or 1
        timeout = timeout if timeout is not None else job.timeout
        job_id = f"{job.name}:{uuid.uuid4().hex[:12]}"
        self._jobs[job_id] = job
        logger.info(f"Enqueued {job.describe()} as {job_id} (attempts={attempts}, timeout={timeout})")
        self._dispatch(job_id, job, 1, attempts, timeout)
        return job_id

    def cancel(self, job_id: str) -> bool:
        job = self._jobs.get(job_id)
        if job is None:
            return False
        job.cancel()
        return True

    def _dispatch(self, job_id: str, job: Job, attempt: int, attempts: int, timeout: Optional[int]) -> None:
        raise NotImplementedError

    def _run_once(self, job: Job, timeout: Optional[int]) -> Any:
        return job.run()

    def _run_attempt(self, job_id: str, job: Job, attempt: int, attempts: int, timeout: Optional[int]) -> bool:
        """Run one attempt. Returns True when the job is finished (success or terminal failure)."""
        try:
            self._run_once(job, timeout)
            logger.info(f"{job_id} completed on attempt {attempt}/{attempts}")
            self._jobs.pop(job_id, None)
            return True
        except Exception as e:
            if attempt < attempts and job.should_retry(e):
                logger.warning(f"{job_id} attempt {attempt}/{attempts} failed: {e}, retrying")
                return False
            logger.error(f"{job_id} giving up after attempt {attempt}/{attempts}: {e}")
            self._jobs.pop(job_id, None)
            try:
                job.failed(e)
            except Exception as hook_error:
                logger.error(f"failed() hook of {job_id} raised: {hook_error}", exc_info=True)
            return True


class ImmediateJobQueue(JobQueue):
    """Runs jobs synchronously in the caller's thread. Timeouts are not enforced."""

    def _dispatch(self, job_id: str, job: Job, attempt: int, attempts: int, timeout: Optional[int]) -> None:
        while not self._run_attempt(job_id, job, attempt, attempts, timeout):
            attempt += 1
            if self.backoff_seconds:
                threading.Event().wait(self.backoff_seconds)


class BackgroundJobQueue(JobQueue):
    """
    APScheduler-backed queue.

    Attempts are scheduled as one-shot date jobs; a retry is a new date job
    ``backoff_seconds`` later. Each attempt runs on a worker pool so that the
    scheduler thread can stop waiting after ``timeout`` seconds. A timed-out
    attempt keeps running in its worker until its current network call
    returns; it is not interrupted.
    """

    def __init__(
        self,
        scheduler: Optional[BackgroundScheduler] = None,
        max_workers: Optional[int] = None,
        backoff_seconds: Optional[float] = None,
    ):
        super().__init__(
            backoff_seconds=settings.JOB_RETRY_BACKOFF_SECONDS if backoff_seconds is None else backoff_seconds
        )
        self.scheduler = scheduler or BackgroundScheduler()
        self._workers = ThreadPoolExecutor(
            max_workers=max_workers or settings.JOB_WORKER_THREADS,
            thread_name_prefix="job-worker",
        )

    def start(self) -> None:
        if not self.scheduler.running:
            self.scheduler.start()
            logger.info("Background job queue started")

    def shutdown(self, wait: bool = False) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=wait)
        self._workers.shutdown(wait=wait)
        logger.info("Background job queue stopped")

    def _dispatch(self, job_id: str, job: Job, attempt: int, attempts: int, timeout: Optional[int]) -> None:
        delay = 0 if attempt == 1 else self.backoff_seconds
        run_date = datetime.now(timezone.utc) + timedelta(seconds=delay)
        self.scheduler.add_job(
            self._execute,
            trigger=DateTrigger(run_date=run_date),
            args=[job_id, job, attempt, attempts, timeout],
            id=f"{job_id}#{attempt}",
            name=f"{job.describe()} (attempt {attempt}/{attempts})",
            misfire_grace_time=None,
        )

    def _execute(self, job_id: str, job: Job, attempt: int, attempts: int, timeout: Optional[int]) -> None:
        if not self._run_attempt(job_id, job, attempt, attempts, timeout):
            self._dispatch(job_id, job, attempt + 1, attempts, timeout)

    def _run_once(self, job: Job, timeout: Optional[int]) -> Any:
        future = self._workers.submit(job.run)
        try:
            return future.result(timeout=timeout)
        except FutureTimeout:
            raise JobTimeout(f"{job.describe()} exceeded {timeout}s")


# Process-wide queue instance
_job_queue: Optional[JobQueue] = None


def get_job_queue() -> JobQueue:
    """Get or create the process-wide job queue (started BackgroundJobQueue)."""
    global _job_queue
    if _job_queue is None:
        queue = BackgroundJobQueue()
        queue.start()
        _job_queue = queue
    return _job_queue


def set_job_queue(queue: Optional[JobQueue]) -> None:
    """Install a specific queue (the scheduler's, or an ImmediateJobQueue in the CLI/tests)."""
    global _job_queue
    _job_queue = queue
