"""Backoff for best-effort database writes.

Used for writes that should try harder than usual but whose final failure
is logged rather than raised by the caller, such as the terminal state of
a scheduler run. Email sends are never retried here: a timed-out send may
already have been accepted by the provider, so failed sends are logged and
retried explicitly through the retry coordinator.
"""

import asyncio
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from bookmail.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass
class RetryConfig:
    """How often and how patiently to retry."""

    max_attempts: int = 3
    backoff_base: float = 0.2
    backoff_max: float = 2.0
    jitter: bool = True
    retryable_exceptions: tuple[type[Exception], ...] = (Exception,)

    def delay_for(self, failures: int) -> float:
        """Seconds to wait after the given number of failed attempts."""
        delay = min(self.backoff_base * (2 ** (failures - 1)), self.backoff_max)
        if self.jitter:
            delay *= 0.5 + random.random()
        return delay


async def retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    config: RetryConfig | None = None,
    operation_name: str = "operation",
) -> T:
    """
    Await ``fn()`` until it succeeds or the attempts run out.

    Args:
        fn: Zero-argument coroutine function
        config: Retry configuration, defaults if not provided
        operation_name: Name bound to the log lines

    Returns:
        Result of the first successful call

    Raises:
        Exception: The last error once every attempt has failed, or the first
            error that is not in ``retryable_exceptions``
    """
    config = config or RetryConfig()
    attempts = max(1, config.max_attempts)
    log = logger.bind(operation=operation_name, max_attempts=attempts)

    failures = 0
    while True:
        try:
            return await fn()
        except config.retryable_exceptions as e:
            failures += 1
            if failures >= attempts:
                log.bind(error=str(e)).error("retry_exhausted")
                raise

            delay = config.delay_for(failures)
            log.bind(attempt=failures, delay_seconds=round(delay, 2), error=str(e)).warning(
                "retry_attempt"
            )
            await asyncio.sleep(delay)
