"""
Job queue front-end for generation work.

Jobs are pulled by worker threads in priority order (1 first, FIFO within a
priority) and retried with fixed or exponential backoff while attempts
remain. Callers wait by polling on a fixed interval; a caller giving up
never cancels the job.
"""

import itertools
import logging
import queue
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from ugc_guard.config.loader import QueueSettings
from ugc_guard.storage.models import utcnow

from .errors import STILL_PROCESSING_MESSAGE

logger = logging.getLogger(__name__)

DEFAULT_PRIORITY = 5
# Seconds a worker blocks on an empty queue before rechecking for shutdown
WORKER_IDLE_SECONDS = 0.1


class JobStatus(Enum):
    QUEUED = "queued"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


PROGRESS = {
    JobStatus.QUEUED: 0,
    JobStatus.ACTIVE: 50,
    JobStatus.COMPLETED: 100,
    JobStatus.FAILED: 100,
}


@dataclass(frozen=True)
class Backoff:
    """Delay between job attempts."""
    type: str = "exponential"  # or "fixed"
    delay_ms: int = 2000

    def delay_for(self, attempts_made: int) -> float:
        """Delay in milliseconds after ``attempts_made`` failed attempts."""
        if self.type == "fixed":
            return self.delay_ms
        return self.delay_ms * 2 ** (attempts_made - 1)


@dataclass(frozen=True)
class JobOptions:
    priority: int = DEFAULT_PRIORITY
    attempts: Optional[int] = None
    backoff: Optional[Backoff] = None


@dataclass
class GenerationJob:
    """A unit of queued work and its outcome."""
    id: str
    type: str
    payload: Any
    priority: int
    attempts: int
    backoff: Backoff
    status: JobStatus = JobStatus.QUEUED
    attempts_made: int = 0
    result: Any = None
    error: Optional[str] = None
    exception: Optional[BaseException] = None
    created_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None


@dataclass(frozen=True)
class JobStatusView:
    status: str
    progress: int
    result: Any = None
    error: Optional[str] = None


@dataclass(frozen=True)
class JobOutcome:
    success: bool
    data: Any = None
    error: Optional[str] = None


class JobQueue:
    """Priority job queue served by a pool of worker threads."""

    def __init__(
        self,
        settings: Optional[QueueSettings] = None,
        is_retryable: Callable[[BaseException], bool] = lambda e: True,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize the queue. Workers start on ``start()``.

        Args:
            settings: Worker count, polling and retention settings
            is_retryable: Decides whether a failed attempt may be retried
            clock: Returns the current aware UTC datetime
            sleep: Used by ``await_completion`` between polls
        """
        self.settings = settings or QueueSettings()
        self.is_retryable = is_retryable
        self.clock = clock
        self.sleep = sleep
        self._handlers: Dict[str, Callable[[Any], Any]] = {}
        self._jobs: Dict[str, GenerationJob] = {}
        self._lock = threading.Lock()
        self._queue: "queue.PriorityQueue" = queue.PriorityQueue()
        self._sequence = itertools.count()
        self._stop = threading.Event()
        self._running = threading.Event()
        self._running.set()
        self._workers: List[threading.Thread] = []

    def register(self, job_type: str, handler: Callable[[Any], Any]) -> None:
        self._handlers[job_type] = handler

    def start(self) -> None:
        if self._workers:
            return
        self._stop.clear()
        for index in range(self.settings.workers):
            worker = threading.Thread(
                target=self._work, name=f"job-worker-{index}", daemon=True,
            )
            worker.start()
            self._workers.append(worker)
        logger.info("Job queue started with %d workers", self.settings.workers)

    def shutdown(self, wait: bool = True) -> None:
        self._stop.set()
        self._running.set()
        if wait:
            for worker in self._workers:
                worker.join()
        self._workers = []
        logger.info("Job queue stopped")

    def pause(self) -> None:
        """Stop workers from picking up new jobs. Running jobs finish."""
        self._running.clear()
        logger.info("Job queue paused")

    def resume(self) -> None:
        self._running.set()
        logger.info("Job queue resumed")

    @property
    def is_paused(self) -> bool:
        return not self._running.is_set()

    def enqueue(self, job_type: str, payload: Any, options: Optional[JobOptions] = None) -> str:
        """Queue a job.

        Raises:
            ValueError: If no handler is registered for ``job_type``
        """
        if job_type not in self._handlers:
            raise ValueError(f"No handler registered for job type '{job_type}'")
        options = options or JobOptions()
        job = GenerationJob(
            id=uuid.uuid4().hex,
            type=job_type,
            payload=payload,
            priority=options.priority,
            attempts=options.attempts or self.settings.default_attempts,
            backoff=options.backoff or Backoff("exponential", self.settings.backoff_delay_ms),
            created_at=self.clock(),
        )
        with self._lock:
            self._jobs[job.id] = job
        self._queue.put((job.priority, next(self._sequence), job.id))
        logger.debug("Queued %s job %s at priority %d", job_type, job.id, job.priority)
        return job.id

    def enqueue_batch(self, items: List[tuple]) -> List[str]:
        """Queue several ``(job_type, payload, options)`` items; each is tracked on its own."""
        return [self.enqueue(*item) for item in items]

    def get_job(self, job_id: str) -> Optional[GenerationJob]:
        with self._lock:
            return self._jobs.get(job_id)

    def get_job_status(self, job_id: str) -> Optional[JobStatusView]:
        """Return a job's status, or None once it has been reclaimed."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return None
            return JobStatusView(
                status=job.status.value,
                progress=PROGRESS[job.status],
                result=job.result,
                error=job.error,
            )

    def await_completion(self, job_id: str, timeout_ms: Optional[int] = None) -> JobOutcome:
        """Poll a job until it is terminal or ``timeout_ms`` elapses.

        The job is left running on timeout.
        """
        if timeout_ms is None:
            timeout_ms = self.settings.wait_timeout_ms
        deadline = time.monotonic() + timeout_ms / 1000
        interval = self.settings.poll_interval_ms / 1000

        while True:
            job = self.get_job(job_id)
            if job is None:
                return JobOutcome(success=False, error=f"Job not found: {job_id}")
            if job.status == JobStatus.COMPLETED:
                return JobOutcome(success=True, data=job.result)
            if job.status == JobStatus.FAILED:
                return JobOutcome(success=False, error=job.error)
            if time.monotonic() >= deadline:
                logger.info("Stopped waiting on job %s; it is still %s", job_id, job.status.value)
                return JobOutcome(success=False, error=STILL_PROCESSING_MESSAGE)
            self.sleep(interval)

    def clean(self, grace_ms: int, status: JobStatus) -> List[str]:
        """Remove terminal jobs of ``status`` that finished over ``grace_ms`` ago.

        Returns:
            Ids of the removed jobs
        """
        if not status.is_terminal:
            raise ValueError("Only completed or failed jobs can be cleaned")
        cutoff = self.clock() - timedelta(milliseconds=grace_ms)
        with self._lock:
            removed = [
                job.id for job in self._jobs.values()
                if job.status == status and job.finished_at is not None and job.finished_at <= cutoff
            ]
            for job_id in removed:
                del self._jobs[job_id]
        logger.info("Cleaned %d %s jobs", len(removed), status.value)
        return removed

    def health(self) -> Dict[str, Any]:
        with self._lock:
            counts = {status: 0 for status in JobStatus}
            for job in self._jobs.values():
                counts[job.status] += 1
        return {
            "waiting": counts[JobStatus.QUEUED],
            "active": counts[JobStatus.ACTIVE],
            "completed": counts[JobStatus.COMPLETED],
            "failed": counts[JobStatus.FAILED],
            "paused": self.is_paused,
            "workers": len(self._workers),
        }

    def _work(self) -> None:
        while not self._stop.is_set():
            self._running.wait()
            if self._stop.is_set():
                return
            try:
                _, _, job_id = self._queue.get(timeout=WORKER_IDLE_SECONDS)
            except queue.Empty:
                continue
            try:
                job = self.get_job(job_id)
                if job is not None:
                    self._run(job)
            finally:
                self._queue.task_done()

    def _run(self, job: GenerationJob) -> None:
        handler = self._handlers[job.type]
        with self._lock:
            job.status = JobStatus.ACTIVE

        while True:
            job.attempts_made += 1
            try:
                result = handler(job.payload)
            except Exception as e:
                retry = job.attempts_made < job.attempts and self.is_retryable(e)
                if retry:
                    delay_ms = job.backoff.delay_for(job.attempts_made)
                    logger.warning(
                        "Job %s attempt %d/%d failed (%s); retrying in %dms",
                        job.id, job.attempts_made, job.attempts, e, delay_ms,
                    )
                    if self._stop.wait(delay_ms / 1000):
                        self._finish(job, JobStatus.FAILED, error=e)
                        return
                    continue
                logger.error("Job %s failed after %d attempts: %s", job.id, job.attempts_made, e)
                self._finish(job, JobStatus.FAILED, error=e)
                return

            self._finish(job, JobStatus.COMPLETED, result=result)
            logger.info("Job %s completed", job.id)
            return

    def _finish(self, job: GenerationJob, status: JobStatus, result: Any = None,
                error: Optional[BaseException] = None) -> None:
        with self._lock:
            job.result = result
            if error is not None:
                job.exception = error
                job.error = getattr(error, "user_message", None) or str(error)
            job.finished_at = self.clock()
            job.status = status
            self._reclaim(status)

    def _reclaim(self, status: JobStatus) -> None:
        keep = (
            self.settings.remove_on_complete if status == JobStatus.COMPLETED
            else self.settings.remove_on_fail
        )
        finished = sorted(
            (job for job in self._jobs.values() if job.status == status),
            key=lambda job: job.finished_at,
        )
        for job in finished[:max(0, len(finished) - keep)]:
            del self._jobs[job.id]
