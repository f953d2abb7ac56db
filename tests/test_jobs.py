"""
Unit tests for the job queue.

Tests priority ordering, retries with backoff, caller timeouts,
pause/resume, cleaning and retention.
"""

import threading
from datetime import timedelta

import pytest

from ugc_guard.config.loader import QueueSettings
from ugc_guard.core.errors import STILL_PROCESSING_MESSAGE, GenerationExhausted
from ugc_guard.core.jobs import Backoff, JobOptions, JobQueue, JobStatus

from conftest import FIXED_NOW

FAST = JobOptions(backoff=Backoff("fixed", 1))


def _settings(**overrides):
    values = dict(workers=1, poll_interval_ms=5, wait_timeout_ms=2000, backoff_delay_ms=1)
    values.update(overrides)
    return QueueSettings(**values)


@pytest.fixture
def job_queue():
    q = JobQueue(_settings())
    yield q
    q.shutdown()


class TestBackoff:
    """Test backoff delays."""

    def test_exponential(self):
        """Delay doubles per failed attempt."""
        backoff = Backoff("exponential", 2000)
        assert [backoff.delay_for(n) for n in (1, 2, 3)] == [2000, 4000, 8000]

    def test_fixed(self):
        """Fixed delay never grows."""
        backoff = Backoff("fixed", 500)
        assert backoff.delay_for(1) == backoff.delay_for(5) == 500


class TestProcessing:
    """Test job execution."""

    def test_completes(self, job_queue):
        """A successful handler completes the job with its result."""
        job_queue.register("echo", lambda payload: payload.upper())
        job_queue.start()
        job_id = job_queue.enqueue("echo", "hello")

        outcome = job_queue.await_completion(job_id)
        assert outcome.success
        assert outcome.data == "HELLO"
        status = job_queue.get_job_status(job_id)
        assert status.status == "completed"
        assert status.progress == 100

    def test_unknown_job_type(self, job_queue):
        """Jobs need a registered handler."""
        with pytest.raises(ValueError, match="No handler registered"):
            job_queue.enqueue("missing", None)

    def test_queued_progress(self, job_queue):
        """A job not yet picked up reports zero progress."""
        job_queue.register("noop", lambda payload: None)
        job_id = job_queue.enqueue("noop", None)
        status = job_queue.get_job_status(job_id)
        assert (status.status, status.progress) == ("queued", 0)

    def test_priority_order(self, job_queue):
        """Lower priority numbers run first; FIFO within a priority."""
        order = []
        job_queue.register("record", order.append)
        job_queue.pause()
        job_queue.start()
        ids = [
            job_queue.enqueue("record", "low", JobOptions(priority=9)),
            job_queue.enqueue("record", "first-high", JobOptions(priority=1)),
            job_queue.enqueue("record", "normal", JobOptions()),
            job_queue.enqueue("record", "second-high", JobOptions(priority=1)),
        ]
        job_queue.resume()
        for job_id in ids:
            assert job_queue.await_completion(job_id).success
        assert order == ["first-high", "second-high", "normal", "low"]

    def test_batch_tracked_individually(self, job_queue):
        """Each batch item gets its own job id."""
        job_queue.register("echo", lambda payload: payload)
        job_queue.start()
        ids = job_queue.enqueue_batch([("echo", 1, None), ("echo", 2, FAST)])
        assert len(set(ids)) == 2
        assert [job_queue.await_completion(i).data for i in ids] == [1, 2]


class TestRetries:
    """Test job-level retries."""

    def test_retries_until_success(self, job_queue):
        """A handler that fails twice succeeds on the third attempt."""
        calls = []

        def flaky(payload):
            calls.append(payload)
            if len(calls) < 3:
                raise RuntimeError("transient")
            return "done"

        job_queue.register("flaky", flaky)
        job_queue.start()
        job_id = job_queue.enqueue("flaky", "x", FAST)
        assert job_queue.await_completion(job_id).data == "done"
        assert job_queue.get_job(job_id).attempts_made == 3

    def test_fails_after_attempts(self, job_queue):
        """Exhausted attempts fail the job with the error message."""
        def broken(payload):
            raise RuntimeError("always broken")

        job_queue.register("broken", broken)
        job_queue.start()
        job_id = job_queue.enqueue("broken", None, JobOptions(attempts=2, backoff=Backoff("fixed", 1)))
        outcome = job_queue.await_completion(job_id)
        assert not outcome.success
        assert outcome.error == "always broken"
        job = job_queue.get_job(job_id)
        assert job.attempts_made == 2
        assert isinstance(job.exception, RuntimeError)

    def test_non_retryable_not_retried(self):
        """The retry filter stops retries for domain errors."""
        q = JobQueue(_settings(), is_retryable=lambda e: not isinstance(e, GenerationExhausted))
        attempts = []

        def exhausted(payload):
            attempts.append(payload)
            raise GenerationExhausted(1, None)

        q.register("gen", exhausted)
        q.start()
        job_id = q.enqueue("gen", None, FAST)
        outcome = q.await_completion(job_id)
        q.shutdown()
        assert not outcome.success
        assert len(attempts) == 1
        assert outcome.error == GenerationExhausted(1, None).user_message


class TestWaiting:
    """Test caller-side waiting."""

    def test_timeout_does_not_cancel(self, job_queue):
        """A caller timeout leaves the job running to completion."""
        release = threading.Event()

        def slow(payload):
            release.wait(timeout=5)
            return "late"

        job_queue.register("slow", slow)
        job_queue.start()
        job_id = job_queue.enqueue("slow", None)

        outcome = job_queue.await_completion(job_id, timeout_ms=30)
        assert not outcome.success
        assert outcome.error == STILL_PROCESSING_MESSAGE
        assert job_queue.get_job_status(job_id).status in ("queued", "active")

        release.set()
        outcome = job_queue.await_completion(job_id)
        assert outcome.success
        assert outcome.data == "late"
        assert job_queue.get_job_status(job_id).status == "completed"

    def test_unknown_job(self, job_queue):
        """Waiting on an unknown id fails fast."""
        outcome = job_queue.await_completion("nope", timeout_ms=10)
        assert not outcome.success
        assert "Job not found" in outcome.error
        assert job_queue.get_job_status("nope") is None


class TestPauseResume:
    """Test pausing the workers."""

    def test_paused_queue_holds_jobs(self, job_queue):
        """Nothing runs while paused; everything runs after resume."""
        job_queue.register("echo", lambda payload: payload)
        job_queue.pause()
        job_queue.start()
        job_id = job_queue.enqueue("echo", "held")

        assert job_queue.is_paused
        assert job_queue.await_completion(job_id, timeout_ms=30).error == STILL_PROCESSING_MESSAGE
        assert job_queue.health()["waiting"] == 1

        job_queue.resume()
        assert job_queue.await_completion(job_id).success
        assert not job_queue.health()["paused"]


class TestRetention:
    """Test cleaning and automatic reclaiming."""

    def test_clean_respects_grace(self):
        """Only jobs finished longer ago than the grace period are removed."""
        now = [FIXED_NOW]
        q = JobQueue(_settings(), clock=lambda: now[0])
        q.register("echo", lambda payload: payload)
        q.start()
        job_id = q.enqueue("echo", 1)
        q.await_completion(job_id)

        assert q.clean(60_000, JobStatus.COMPLETED) == []
        now[0] = FIXED_NOW + timedelta(minutes=2)
        assert q.clean(60_000, JobStatus.FAILED) == []
        assert q.clean(60_000, JobStatus.COMPLETED) == [job_id]
        assert q.get_job_status(job_id) is None
        q.shutdown()

    def test_clean_rejects_live_status(self, job_queue):
        """Queued or active jobs are never cleaned."""
        with pytest.raises(ValueError):
            job_queue.clean(0, JobStatus.ACTIVE)

    def test_reclaims_oldest_completed(self):
        """Only the most recent completed jobs are retained."""
        q = JobQueue(_settings(remove_on_complete=2))
        q.register("echo", lambda payload: payload)
        q.start()
        ids = []
        for n in range(3):
            ids.append(q.enqueue("echo", n))
            q.await_completion(ids[-1])
        q.shutdown()

        assert q.get_job_status(ids[0]) is None
        assert q.get_job_status(ids[2]).status == "completed"
        assert q.health()["completed"] == 2

    def test_health_counts(self, job_queue):
        """Health reports counts per state and worker count."""
        job_queue.register("echo", lambda payload: payload)
        job_queue.start()
        job_queue.await_completion(job_queue.enqueue("echo", 1))
        health = job_queue.health()
        assert health["completed"] == 1
        assert health["waiting"] == 0
        assert health["workers"] == 1
