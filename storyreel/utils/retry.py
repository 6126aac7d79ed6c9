"""Retry with exponential backoff and jitter for async network calls.

Used for every call to the storage and AI backends, not only asset fetches.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from storyreel.config import Settings, get_settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff: delay = min(base * 2**attempt, max) + U(0, jitter)."""

    max_attempts: int = 5
    base_delay_s: float = 1.0
    max_delay_s: float = 30.0
    jitter_s: float = 2.0

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "RetryPolicy":
        settings = settings or get_settings()
        return cls(
            max_attempts=settings.retry_max_attempts,
            base_delay_s=settings.retry_base_delay_s,
            max_delay_s=settings.retry_max_delay_s,
            jitter_s=settings.retry_jitter_s,
        )

    def delay_for(self, attempt: int) -> float:
        """Delay before the retry that follows the given 0-based attempt."""
        backoff = min(self.base_delay_s * (2 ** attempt), self.max_delay_s)
        return backoff + random.uniform(0, self.jitter_s)


class RetryExhaustedError(Exception):
    """Raised when every attempt failed with a retryable error."""

    def __init__(self, attempts: int, last_error: BaseException):
        super().__init__(f"Failed after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    policy: Optional[RetryPolicy] = None,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run ``operation`` until it succeeds or the policy gives up.

    Only exceptions listed in ``retry_on`` are retried; anything else
    propagates immediately. When attempts run out a ``RetryExhaustedError``
    chained to the last failure is raised.

    Args:
        operation: Zero-argument callable returning a fresh awaitable per attempt
        policy: Backoff parameters (defaults from settings)
        retry_on: Exception types considered transient
        on_retry: Called with (attempt number, error, delay seconds) before sleeping
        sleep: Injected for tests
    """
    policy = policy or RetryPolicy.from_settings()
    attempts = max(1, policy.max_attempts)

    for attempt in range(attempts):
        try:
            return await operation()
        except retry_on as e:
            if attempt + 1 >= attempts:
                logger.error(f"[RETRY] Failed after {attempts} attempts: {e}")
                raise RetryExhaustedError(attempts, e) from e

            delay = policy.delay_for(attempt)
            if on_retry:
                on_retry(attempt + 1, e, delay)
            else:
                logger.warning(f"[RETRY] Attempt {attempt + 1} failed: {e}. Retrying in {delay:.2f}s")
            await sleep(delay)

    # Unreachable: the loop either returns or raises
    raise RuntimeError("Retry loop exited unexpectedly")
