"""Retry utilities for handling transient failures.

Provides the bounded exponential backoff policy attached to every pipeline
activity, and a decorator that applies the same policy to any async
callable (used for collaborator calls made outside the runtime).

Key Exports:
    RetryPolicy: Immutable backoff policy (initial delay, coefficient,
        maximum delay, maximum attempts, non-retryable error types).
    async_retry: Decorator for adding retry logic to async functions.

Example:
    >>> from khitomer.utils.retry import RetryPolicy, async_retry
    >>>
    >>> @async_retry(RetryPolicy(maximum_attempts=5), exceptions=(ExternalServiceError,))
    ... async def fetch_issue(key: str) -> dict:
    ...     return await tracker.get_task(key)

Backoff Formula:
    delay(attempt) = min(initial_interval * backoff_coefficient ** (attempt - 1),
                         maximum_interval)
    For the defaults: 1s, 2s, 4s, ... capped at 60s.
"""

import asyncio
import functools
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, TypeVar

import structlog

from khitomer.exceptions import ExternalServiceError

log = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff policy.

    Attributes:
        initial_interval: Delay in seconds before the second attempt.
        backoff_coefficient: Multiplier applied to the delay per attempt.
        maximum_interval: Upper bound for a single delay, in seconds.
        maximum_attempts: Total attempts including the first one.
        non_retryable: Exception types that fail immediately without retry.
    """

    initial_interval: float = 1.0
    backoff_coefficient: float = 2.0
    maximum_interval: float = 60.0
    maximum_attempts: int = 3
    non_retryable: tuple[type[BaseException], ...] = ()

    def __post_init__(self) -> None:
        if self.maximum_attempts < 1:
            raise ValueError("maximum_attempts must be at least 1")
        if self.backoff_coefficient < 1.0:
            raise ValueError("backoff_coefficient must be >= 1.0")

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after the given (1-based) failed attempt."""
        delay = self.initial_interval * (self.backoff_coefficient ** (attempt - 1))
        return min(delay, self.maximum_interval)

    def should_retry(self, error: BaseException, attempt: int) -> bool:
        """Whether another attempt is allowed after ``error`` on ``attempt``."""
        if attempt >= self.maximum_attempts:
            return False
        if isinstance(error, ExternalServiceError) and not error.transient:
            return False
        return not isinstance(error, self.non_retryable)


def async_retry(
    policy: RetryPolicy | None = None,
    exceptions: tuple[type[Exception], ...] = (Exception,),
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Decorator for async functions with exponential backoff retry logic.

    Args:
        policy: Backoff policy; defaults to ``RetryPolicy()``.
        exceptions: Exception types that trigger a retry. Others propagate
            immediately, as do types listed in ``policy.non_retryable``.

    Returns:
        A decorator function that wraps async functions with retry logic.

    Raises:
        The last caught exception once attempts are exhausted.

    Note:
        Each retry is logged at WARNING level and exhausted retries at
        ERROR level.
    """
    policy = policy or RetryPolicy()

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            attempt = 0
            while True:
                attempt += 1
                try:
                    return await func(*args, **kwargs)
                except exceptions as e:
                    if not policy.should_retry(e, attempt):
                        log.error(
                            "retry_exhausted",
                            function=func.__name__,
                            attempts=attempt,
                            error=str(e),
                        )
                        raise

                    delay = policy.delay_for(attempt)
                    log.warning(
                        "retry_attempt",
                        function=func.__name__,
                        attempt=attempt,
                        max_attempts=policy.maximum_attempts,
                        delay=delay,
                        error=str(e),
                    )
                    await asyncio.sleep(delay)

        return wrapper

    return decorator
