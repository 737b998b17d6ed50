"""
Bounded retry with a fixed backoff for fallible async actions.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Optional, TypeVar

import structlog

logger = structlog.get_logger()

T = TypeVar("T")

FailureCallback = Callable[[int, Exception], None]
RetryClassifier = Callable[[Exception], bool]


class RetryExhaustedError(Exception):
    """Raised when every allowed attempt of an action has failed."""

    def __init__(self, attempts: int, last_error: Exception):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Action failed after {attempts} attempt(s): {last_error}")


@dataclass(frozen=True)
class RetryPolicy:
    """How many times to retry and how long to wait in between."""

    max_retries: int = 3
    backoff_ms: int = 1000

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.backoff_ms < 0:
            raise ValueError(f"backoff_ms must be >= 0, got {self.backoff_ms}")

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1


async def run_with_retry(
    action: Callable[[], Awaitable[T]],
    max_retries: int,
    backoff_ms: int,
    on_failure: Optional[FailureCallback] = None,
    should_retry: Optional[RetryClassifier] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run ``action`` up to ``max_retries + 1`` times.

    Args:
        action: Zero-argument coroutine function to run.
        max_retries: Retries allowed after the first attempt.
        backoff_ms: Fixed delay between attempts, in milliseconds.
        on_failure: Called with ``(attempt, error)`` after every failed attempt.
        should_retry: Returns False for errors that must not be retried.
            Every error is retried when omitted.
        sleep: Coroutine used for the backoff delay.

    Returns:
        The value returned by the first successful attempt.

    Raises:
        RetryExhaustedError: If the last allowed attempt failed, or an error
            was classified as not retryable.
    """
    policy = RetryPolicy(max_retries=max_retries, backoff_ms=backoff_ms)
    attempt = 0

    while True:
        attempt += 1
        try:
            return await action()
        except Exception as e:
            if on_failure is not None:
                on_failure(attempt, e)

            if should_retry is not None and not should_retry(e):
                logger.debug("retry_aborted_terminal_error", attempt=attempt, error=str(e))
                raise RetryExhaustedError(attempt, e) from e

            if attempt >= policy.max_attempts:
                raise RetryExhaustedError(attempt, e) from e

            logger.debug(
                "retry_scheduled",
                attempt=attempt,
                max_attempts=policy.max_attempts,
                backoff_ms=policy.backoff_ms,
                error=str(e),
            )
            await sleep(policy.backoff_ms / 1000)
