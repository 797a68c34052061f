"""
Retry Policy

A single retry loop shared by every call site that talks to a flaky
collaborator. Parameterized by attempt count and a backoff function that maps
the number of the attempt that just failed to a delay in seconds.
"""

import time
from typing import Callable, Optional, Tuple, Type, TypeVar

from photobooth.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


def linear_backoff(base_delay_seconds: float) -> Callable[[int], float]:
    """Delay of `base * attempt`: 2s, 4s, 6s... for a 2s base."""
    def backoff(attempt: int) -> float:
        return base_delay_seconds * attempt
    return backoff


class RetryExhaustedError(Exception):
    """Every attempt failed. Carries the last failure and the attempt count."""

    def __init__(self, attempts: int, last_error: BaseException):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Failed after {attempts} attempts: {last_error}")


class RetryPolicy:
    """
    Run a callable up to `max_attempts` times.

    Usage:
        policy = RetryPolicy(max_attempts=3, backoff=linear_backoff(2.0))
        data = policy.call(fetch, url, operation="gemini_enhance")
    """

    def __init__(
        self,
        max_attempts: int = 3,
        backoff: Optional[Callable[[int], float]] = None,
        retry_on: Tuple[Type[BaseException], ...] = (Exception,),
        sleep: Callable[[float], None] = time.sleep
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.backoff = backoff or linear_backoff(2.0)
        self.retry_on = retry_on
        self.sleep = sleep

    def call(self, func: Callable[..., T], *args, operation: str = "call", **kwargs) -> T:
        last_error: Optional[BaseException] = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                return func(*args, **kwargs)
            except self.retry_on as e:
                last_error = e
                logger.warning(
                    "retry_attempt_failed",
                    operation=operation,
                    attempt=attempt,
                    max_attempts=self.max_attempts,
                    error=str(e),
                    error_type=type(e).__name__
                )
                if attempt < self.max_attempts:
                    self.sleep(self.backoff(attempt))

        raise RetryExhaustedError(self.max_attempts, last_error)
