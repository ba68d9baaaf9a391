"""
Job Poller

Turns an asynchronously executing external job into a terminal outcome.
Each check is its own delayed task on the queue; the only state carried
between cycles is the job id and the attempt count, both of which targets
persist on their owning record so polling can be re-armed after a restart.

Outcomes per cycle:
- provider reports success: ``on_completed``
- provider reports failure: ``on_failed`` with the provider's error
- check raised: retry after a longer delay, or fail with
  "<poll_label> polling failed: <error>" once the ceiling is reached
- still running at the ceiling: ``on_failed`` with "<label> timed out"
"""

from abc import ABC, abstractmethod
from typing import Optional, Set

from storyreel.core.logging_config import get_logger
from storyreel.core.retry import PollPolicy
from storyreel.llm.api_clients import JobStatus
from storyreel.pipelines.task_queue import TaskQueue

logger = get_logger("pipelines.poller")


class PollTarget(ABC):
    """What to check and what to do with the outcome."""

    label: str = "Job"
    poll_label: Optional[str] = None

    @property
    @abstractmethod
    def key(self) -> str:
        """Identity of the owning record, e.g. ``clip-12``."""
        pass

    @abstractmethod
    async def check(self, job_id: str) -> JobStatus:
        pass

    @abstractmethod
    async def on_completed(self, job_id: str, status: JobStatus) -> None:
        pass

    @abstractmethod
    async def on_failed(self, job_id: str, message: str) -> None:
        pass

    def is_active(self, job_id: str) -> bool:
        """False once the owning record is gone or tracks a different job."""
        return True

    def record_attempt(self, attempt: int) -> None:
        """Persist the attempt counter before the check runs."""
        pass


class JobPoller:
    """Schedules poll cycles for any ``PollTarget``."""

    def __init__(self, queue: TaskQueue):
        self.queue = queue
        self._active: Set[str] = set()

    def _token(self, target: PollTarget, job_id: str) -> str:
        return f"{target.key}:{job_id}"

    def is_polling(self, target: PollTarget, job_id: str) -> bool:
        return self._token(target, job_id) in self._active

    def start(
        self,
        target: PollTarget,
        job_id: str,
        policy: PollPolicy,
        attempt: int = 0,
        delay: Optional[float] = None,
    ) -> bool:
        """
        Begin polling ``job_id``; ``attempt`` resumes a persisted counter.

        Returns False if this job is already being polled.
        """
        token = self._token(target, job_id)
        if token in self._active:
            logger.debug(f"Already polling {token}")
            return False

        self._active.add(token)
        self._schedule(target, job_id, policy, attempt, policy.initial_delay if delay is None else delay)
        logger.info(f"Polling {target.label} {token} (attempt {attempt}/{policy.max_attempts})")
        return True

    def _schedule(self, target: PollTarget, job_id: str, policy: PollPolicy, attempt: int, delay: float) -> None:
        self.queue.dispatch(
            f"poll:{target.key}",
            self._cycle,
            target,
            job_id,
            policy,
            attempt,
            delay=delay,
        )

    async def _cycle(self, target: PollTarget, job_id: str, policy: PollPolicy, attempt: int) -> None:
        token = self._token(target, job_id)

        if not target.is_active(job_id):
            logger.info(f"Stopped polling {token}: job no longer tracked")
            self._active.discard(token)
            return

        attempt += 1
        target.record_attempt(attempt)

        try:
            status = await target.check(job_id)
            if status.succeeded:
                await target.on_completed(job_id, status)
                self._active.discard(token)
                return
        except Exception as e:
            if attempt >= policy.max_attempts:
                logger.error(f"Polling {token} failed at attempt {attempt}: {e}")
                await self._fail(target, job_id, f"{target.poll_label or target.label} polling failed: {e}")
                return
            wait = policy.next_delay(errored=True)
            logger.warning(f"Error polling {token} (attempt {attempt}): {e}. Retrying in {wait:.0f}s")
            self._schedule(target, job_id, policy, attempt, wait)
            return

        if status.failed:
            logger.warning(f"{target.label} {token} failed: {status.error}")
            await self._fail(target, job_id, status.error or f"{target.label} failed")
            return

        if attempt >= policy.max_attempts:
            logger.error(f"{target.label} {token} timed out after {attempt} polls")
            await self._fail(target, job_id, f"{target.label} timed out")
            return

        self._schedule(target, job_id, policy, attempt, policy.next_delay())

    async def _fail(self, target: PollTarget, job_id: str, message: str) -> None:
        try:
            await target.on_failed(job_id, message)
        finally:
            self._active.discard(self._token(target, job_id))
