"""
Retry and backoff utilities
Bounded exponential-backoff retries driven by an error classifier.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

from shared.exceptions.pipeline import ErrorClass, classify_exception

logger = logging.getLogger(__name__)

T = TypeVar('T')

Classifier = Callable[[BaseException], ErrorClass]
Sleep = Callable[[float], Awaitable[Any]]


class RetryError(Exception):
    """Raised when an operation gives up (budget exhausted or fatal error)"""
    def __init__(self, message: str, last_error: Optional[BaseException] = None, attempts: int = 0,
                 error_class: ErrorClass = ErrorClass.TRANSIENT):
        super().__init__(message)
        self.last_error = last_error
        self.attempts = attempts
        self.error_class = error_class

    @property
    def retryable(self) -> bool:
        return self.error_class == ErrorClass.TRANSIENT


def exponential_backoff(attempt: int,
                        base_delay: float = 1.0,
                        max_delay: float = 60.0,
                        jitter: bool = True,
                        multiplier: float = 2.0) -> float:
    """
    Exponential backoff

    Args:
        attempt: Number of failed attempts so far, minus one (starts at 0)
        base_delay: Delay after the first failure (seconds)
        max_delay: Upper bound (seconds)
        jitter: Apply a random 0.5 - 1.0 factor
        multiplier: Growth factor per attempt

    Returns:
        Seconds to wait
    """
    delay = min(base_delay * (multiplier ** attempt), max_delay)

    if jitter:
        delay *= (0.5 + random.random() * 0.5)

    return delay


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0
    jitter: bool = True

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be >= 0")

    @classmethod
    def from_settings(cls, retry: Any, worker: str) -> "RetryPolicy":
        """Budget for `worker` (purchase, allocation, session, cache) from RetrySettings."""
        return cls(
            max_attempts=getattr(retry, f"{worker}_max_attempts"),
            base_delay=getattr(retry, f"{worker}_base_delay"),
            max_delay=getattr(retry, f"{worker}_max_delay"),
            jitter=retry.retry_jitter,
        )

    def delay_for(self, attempt: int) -> float:
        """Delay after the `attempt`-th failure (1-based)."""
        return exponential_backoff(
            max(0, attempt - 1),
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            jitter=self.jitter,
            multiplier=self.multiplier,
        )


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    classify: Classifier = classify_exception,
    operation: str = "operation",
    sleep: Sleep = asyncio.sleep,
    on_retry: Optional[Callable[[BaseException, int, float], None]] = None,
) -> T:
    """
    Run `fn` until it succeeds, a FATAL error occurs, or the budget runs out.

    Raises:
        RetryError: carrying the last error, the attempt count, and the class
            of the last error (FATAL for an immediate stop).
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            result = await fn()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            error_class = classify(e)
            if error_class == ErrorClass.FATAL:
                logger.error(f"{operation} failed with a non-retryable error on attempt {attempt}: {e!r}")
                raise RetryError(f"{operation} failed: {e}", e, attempt, ErrorClass.FATAL) from e

            if attempt >= policy.max_attempts:
                logger.error(f"{operation} failed after {attempt} attempts: {e!r}")
                raise RetryError(
                    f"Max attempts ({policy.max_attempts}) exceeded for {operation}: {e}",
                    e,
                    attempt,
                    ErrorClass.TRANSIENT,
                ) from e

            wait_time = policy.delay_for(attempt)
            logger.warning(
                f"Attempt {attempt}/{policy.max_attempts} failed for {operation}: {e!r}; "
                f"retrying in {wait_time:.2f}s"
            )
            if on_retry:
                on_retry(e, attempt, wait_time)
            await sleep(wait_time)
            continue

        if attempt > 1:
            logger.info(f"{operation} succeeded after {attempt} attempts")
        return result
