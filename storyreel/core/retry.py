"""
Retry and polling policies.

Backoff calculation for retried tasks and the interval/ceiling pairs that
drive external job polling.
"""

import asyncio
import random
from dataclasses import dataclass
from typing import Any, Callable, Optional, Tuple, Type, TypeVar

from storyreel.core.logging_config import get_logger

logger = get_logger("core.retry")

T = TypeVar("T")


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_retries: int = 3
    base_delay: float = 1.0  # seconds
    max_delay: float = 60.0
    exponential_base: float = 2.0
    jitter: bool = True
    jitter_range: Tuple[float, float] = (0.5, 1.5)
    retryable_exceptions: Tuple[Type[Exception], ...] = (Exception,)

    @classmethod
    def fixed(cls, tries: int, backoff: float) -> "RetryConfig":
        """Constant backoff between a bounded number of attempts."""
        return cls(
            max_retries=max(tries - 1, 0),
            base_delay=backoff,
            max_delay=backoff,
            exponential_base=1.0,
            jitter=False,
        )


DEFAULT_RETRY_CONFIG = RetryConfig()


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """
    Calculate delay before next retry attempt.

    Args:
        attempt: Current attempt number (0-indexed)
        config: Retry configuration

    Returns:
        Delay in seconds before next attempt
    """
    delay = config.base_delay * (config.exponential_base ** attempt)
    delay = min(delay, config.max_delay)

    if config.jitter:
        delay *= random.uniform(*config.jitter_range)

    return delay


async def retry_async_call(
    func: Callable[..., T],
    *args: Any,
    config: Optional[RetryConfig] = None,
    **kwargs: Any
) -> T:
    """
    Retry an async function call with exponential backoff.

    Example:
        body = await retry_async_call(client.get, url, config=DOWNLOAD_RETRY_CONFIG)
    """
    config = config or DEFAULT_RETRY_CONFIG
    last_exception: Optional[Exception] = None

    for attempt in range(config.max_retries + 1):
        try:
            return await func(*args, **kwargs)
        except config.retryable_exceptions as e:
            last_exception = e

            if attempt < config.max_retries:
                delay = calculate_delay(attempt, config)
                logger.warning(
                    f"Attempt {attempt + 1}/{config.max_retries + 1} failed: {e}. "
                    f"Retrying in {delay:.2f}s..."
                )
                await asyncio.sleep(delay)
            else:
                logger.error(f"All {config.max_retries + 1} attempts failed. Last error: {e}")

    if last_exception:
        raise last_exception

    raise RuntimeError("Retry logic failed unexpectedly")


@dataclass(frozen=True)
class PollPolicy:
    """
    How often an external job is checked and for how long.

    A check that raises waits ``interval * error_backoff_factor`` before the
    next attempt; both outcomes count toward ``max_attempts``.
    """
    interval: float
    max_attempts: int
    initial_delay: float = 0.0
    error_backoff_factor: float = 2.0

    def next_delay(self, errored: bool = False) -> float:
        if errored:
            return self.interval * self.error_backoff_factor
        return self.interval

    @property
    def ceiling_seconds(self) -> float:
        return self.initial_delay + self.interval * self.max_attempts


DOWNLOAD_RETRY_CONFIG = RetryConfig(
    max_retries=2,
    base_delay=1.0,
    max_delay=10.0,
    exponential_base=2.0,
    jitter=True
)
