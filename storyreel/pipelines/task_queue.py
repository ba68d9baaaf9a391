"""
Storyreel Task Queue

Background task execution on a named lane. Every unit of pipeline work
(stage workers, clip submissions, poll cycles, concatenation) is dispatched
here as an independent task with its own delay, retry budget and
wall-clock timeout.

Waiting is always a fresh delayed task, never a worker held in a sleep loop.
"""

import asyncio
import inspect
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from storyreel.core.exceptions import PreconditionError
from storyreel.core.logging_config import get_logger
from storyreel.core.retry import RetryConfig, calculate_delay

logger = get_logger("pipelines.task_queue")

SINGLE_ATTEMPT = RetryConfig.fixed(1, 0)


class TaskTimeoutError(Exception):
    """Raised when a task exceeds its wall-clock budget."""
    pass


@dataclass
class TaskSpec:
    """A dispatched unit of work."""
    name: str
    func: Callable[..., Awaitable[Any]]
    args: tuple = ()
    kwargs: Dict[str, Any] = field(default_factory=dict)
    delay: float = 0.0
    retry: RetryConfig = field(default_factory=lambda: SINGLE_ATTEMPT)
    timeout: Optional[float] = None
    unique_key: Optional[str] = None
    on_failure: Optional[Callable[[Exception], Any]] = None


class TaskQueue:
    """
    Asyncio-backed queue with bounded concurrency.

    Example:
        queue = TaskQueue(lane="pipeline", max_workers=4)
        queue.dispatch("characters", worker.run, story.id, unique_key=f"characters-{story.id}")
        await queue.drain()
    """

    def __init__(self, lane: str = "pipeline", max_workers: int = 4, default_timeout: Optional[float] = 600):
        self.lane = lane
        self.max_workers = max_workers
        self.default_timeout = default_timeout
        self._semaphore = asyncio.Semaphore(max_workers)
        self._tasks: Set[asyncio.Task] = set()
        self._in_flight: Set[str] = set()
        self._completed = 0
        self._failed = 0

    @property
    def pending_count(self) -> int:
        return len(self._tasks)

    def is_in_flight(self, unique_key: str) -> bool:
        return unique_key in self._in_flight

    def dispatch(
        self,
        name: str,
        func: Callable[..., Awaitable[Any]],
        *args: Any,
        delay: float = 0.0,
        retry: Optional[RetryConfig] = None,
        timeout: Optional[float] = None,
        unique_key: Optional[str] = None,
        on_failure: Optional[Callable[[Exception], Any]] = None,
        **kwargs: Any,
    ) -> bool:
        """
        Schedule ``func(*args, **kwargs)`` on this lane.

        Returns False (and schedules nothing) when a task with the same
        ``unique_key`` is still queued or running. Must be called from
        inside a running event loop.
        """
        if unique_key and unique_key in self._in_flight:
            logger.info(f"[{self.lane}] Skipping {name}: {unique_key} already in flight")
            return False

        spec = TaskSpec(
            name=name,
            func=func,
            args=args,
            kwargs=kwargs,
            delay=delay,
            retry=retry or SINGLE_ATTEMPT,
            timeout=timeout if timeout is not None else self.default_timeout,
            unique_key=unique_key,
            on_failure=on_failure,
        )

        if unique_key:
            self._in_flight.add(unique_key)

        task = asyncio.get_running_loop().create_task(self._run(spec), name=f"{self.lane}:{name}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.debug(f"[{self.lane}] Dispatched {name} (delay={delay}s)")
        return True

    async def _attempt(self, spec: TaskSpec) -> None:
        async with self._semaphore:
            if spec.timeout:
                try:
                    await asyncio.wait_for(spec.func(*spec.args, **spec.kwargs), spec.timeout)
                except asyncio.TimeoutError as e:
                    raise TaskTimeoutError(f"{spec.name} exceeded {spec.timeout}s") from e
            else:
                await spec.func(*spec.args, **spec.kwargs)

    async def _run(self, spec: TaskSpec) -> None:
        try:
            if spec.delay > 0:
                await asyncio.sleep(spec.delay)

            attempts = spec.retry.max_retries + 1
            for attempt in range(attempts):
                try:
                    await self._attempt(spec)
                    self._completed += 1
                    return
                except PreconditionError as e:
                    logger.warning(f"[{self.lane}] {spec.name} rejected: {e}")
                    self._failed += 1
                    return
                except Exception as e:
                    if attempt + 1 < attempts:
                        wait = calculate_delay(attempt, spec.retry)
                        logger.warning(
                            f"[{self.lane}] {spec.name} attempt {attempt + 1}/{attempts} failed: {e}. "
                            f"Retrying in {wait:.0f}s"
                        )
                        if wait > 0:
                            await asyncio.sleep(wait)
                        continue

                    self._failed += 1
                    logger.error(f"[{self.lane}] {spec.name} failed after {attempts} attempt(s): {e}")
                    if spec.on_failure:
                        await self._notify_failure(spec, e)
        finally:
            if spec.unique_key:
                self._in_flight.discard(spec.unique_key)

    async def _notify_failure(self, spec: TaskSpec, error: Exception) -> None:
        try:
            result = spec.on_failure(error)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"[{self.lane}] Failure handler for {spec.name} raised: {e}")

    async def drain(self) -> None:
        """Wait until no task is queued or running, including tasks spawned meanwhile."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel everything still waiting or running."""
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
        self._in_flight.clear()

    def get_stats(self) -> Dict[str, Any]:
        return {
            "lane": self.lane,
            "max_workers": self.max_workers,
            "pending": len(self._tasks),
            "in_flight_keys": sorted(self._in_flight),
            "completed": self._completed,
            "failed": self._failed,
        }
