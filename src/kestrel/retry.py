"""
Retry logic with exponential backoff.

Used for connection establishment and message submission. Only errors whose
`retryable` attribute is true are retried; everything else propagates at
once. When the attempts run out the last error is raised unchanged, so
callers always see one of the typed errors from kestrel.core.errors.
"""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from kestrel.core import KestrelError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """Configuration for retry behavior."""

    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    exponential_base: float = 2.0
    jitter: bool = True

    @classmethod
    def from_config(cls, sync_config) -> "RetryPolicy":
        return cls(
            max_attempts=sync_config.max_attempts,
            initial_delay=sync_config.backoff_initial,
            max_delay=sync_config.backoff_max,
        )


def exponential_backoff(attempt: int, policy: RetryPolicy) -> float:
    """
    Calculate the delay before the next attempt.

    Args:
        attempt: Attempt that just failed (0-indexed)
        policy: Retry policy

    Returns:
        Delay in seconds
    """
    delay = min(policy.initial_delay * (policy.exponential_base ** attempt), policy.max_delay)
    if policy.jitter and delay > 0:
        # Add jitter (0-25% of delay)
        delay += random.uniform(0, delay * 0.25)
    return delay


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    description: str = "operation",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Await `operation()` until it succeeds or fails with a non-retryable error.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt
        policy: Retry policy
        description: Used in log messages
        sleep: Injected for tests

    Raises:
        KestrelError: The first non-retryable error, or the last retryable
            one once max_attempts is reached.
    """
    attempts = max(1, policy.max_attempts)
    attempt = 0
    while True:
        try:
            return await operation()
        except KestrelError as e:
            if not e.retryable or attempt + 1 >= attempts:
                raise
            delay = exponential_backoff(attempt, policy)
            logger.warning(
                f"{description} failed (attempt {attempt + 1}/{attempts}): {e}; "
                f"retrying in {delay:.1f}s"
            )
            await sleep(delay)
            attempt += 1
