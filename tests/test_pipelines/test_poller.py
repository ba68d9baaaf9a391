"""
Tests for Job Poller

Tests for storyreel/pipelines/poller.py
"""

import pytest

from storyreel.core.constants import JobState
from storyreel.core.retry import PollPolicy
from storyreel.llm.api_clients import JobStatus
from storyreel.pipelines.poller import JobPoller, PollTarget
from storyreel.pipelines.task_queue import TaskQueue

RUNNING = JobStatus(state=JobState.RUNNING)
POLICY = PollPolicy(interval=0, max_attempts=3)


class RecordingTarget(PollTarget):
    """Poll target returning scripted statuses."""

    label = "Thumbnail generation"
    poll_label = "Thumbnail"

    def __init__(self, statuses=None, error=None, active=True):
        self.statuses = list(statuses or [])
        self.error = error
        self.active = active
        self.checks = 0
        self.attempts = []
        self.completed = []
        self.failed = []

    @property
    def key(self):
        return "thumb-1"

    def is_active(self, job_id):
        return self.active

    def record_attempt(self, attempt):
        self.attempts.append(attempt)

    async def check(self, job_id):
        self.checks += 1
        if self.error is not None:
            raise self.error
        return self.statuses.pop(0) if self.statuses else RUNNING

    async def on_completed(self, job_id, status):
        self.completed.append((job_id, status.result_url))

    async def on_failed(self, job_id, message):
        self.failed.append((job_id, message))


@pytest.fixture
def poller():
    return JobPoller(TaskQueue())


class TestJobPoller:
    """Tests for poll cycles and their outcomes."""

    @pytest.mark.asyncio
    async def test_completes_after_running(self, poller):
        """Test running statuses are polled until success."""
        target = RecordingTarget([RUNNING, JobStatus(state=JobState.SUCCEEDED, result_url="https://cdn/x.png")])

        assert poller.start(target, "job-1", POLICY) is True
        await poller.queue.drain()

        assert target.completed == [("job-1", "https://cdn/x.png")]
        assert target.attempts == [1, 2]
        assert target.failed == []
        assert not poller.is_polling(target, "job-1")

    @pytest.mark.asyncio
    async def test_provider_failure(self, poller):
        """Test a failed job reports the provider's error."""
        target = RecordingTarget([JobStatus(state=JobState.FAILED, error="Content policy")])

        poller.start(target, "job-1", POLICY)
        await poller.queue.drain()

        assert target.failed == [("job-1", "Content policy")]

    @pytest.mark.asyncio
    async def test_provider_failure_without_message(self, poller):
        """Test a failure without text gets a generic message."""
        target = RecordingTarget([JobStatus(state=JobState.FAILED)])

        poller.start(target, "job-1", POLICY)
        await poller.queue.drain()

        assert target.failed == [("job-1", "Thumbnail generation failed")]

    @pytest.mark.asyncio
    async def test_times_out_at_ceiling(self, poller):
        """Test a job still running after max_attempts checks times out."""
        target = RecordingTarget()

        poller.start(target, "job-1", POLICY)
        await poller.queue.drain()

        assert target.checks == 3
        assert target.failed == [("job-1", "Thumbnail generation timed out")]

    @pytest.mark.asyncio
    async def test_check_errors_exhaust_ceiling(self, poller):
        """Test repeated check errors end in a polling failure."""
        target = RecordingTarget(error=RuntimeError("connection reset"))

        poller.start(target, "job-1", POLICY)
        await poller.queue.drain()

        assert target.checks == 3
        assert target.failed == [("job-1", "Thumbnail polling failed: connection reset")]

    @pytest.mark.asyncio
    async def test_inactive_target_stops(self, poller):
        """Test polling stops when the record no longer tracks the job."""
        target = RecordingTarget(active=False)

        poller.start(target, "job-1", POLICY)
        await poller.queue.drain()

        assert target.checks == 0
        assert target.failed == []
        assert not poller.is_polling(target, "job-1")

    @pytest.mark.asyncio
    async def test_duplicate_start(self, poller):
        """Test the same job is only polled once."""
        target = RecordingTarget([JobStatus(state=JobState.SUCCEEDED, result_url="u")])

        assert poller.start(target, "job-1", POLICY) is True
        assert poller.start(target, "job-1", POLICY) is False
        await poller.queue.drain()

        assert target.checks == 1

    @pytest.mark.asyncio
    async def test_resume_from_persisted_attempt(self, poller):
        """Test a resumed poller continues the attempt count."""
        target = RecordingTarget()

        poller.start(target, "job-1", POLICY, attempt=2, delay=0)
        await poller.queue.drain()

        assert target.attempts == [3]
        assert target.failed == [("job-1", "Thumbnail generation timed out")]
