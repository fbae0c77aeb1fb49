"""Retry and polling policies.

Backoff is expressed as a ``RetryPolicy`` value passed to each retryable
operation, with time supplied by a ``Clock`` so tests can run without sleeping.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Iterator
from dataclasses import dataclass
from typing import Protocol, TypeVar

from burrow.constants import (
    GATEWAY_CALL_DEADLINE_SECONDS,
    GATEWAY_MAX_ATTEMPTS,
    POLL_BACKOFF_MULTIPLIER,
    POLL_BASE_DELAY_SECONDS,
    POLL_MAX_DELAY_SECONDS,
)
from burrow.providers.exceptions import CloudApiError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Clock(Protocol):
    """Source of monotonic time and sleeping."""

    def monotonic(self) -> float: ...

    async def sleep(self, seconds: float) -> None: ...


class SystemClock:
    """Clock backed by ``time.monotonic`` and ``asyncio.sleep``."""

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


class DeadlineExceededError(Exception):
    """A retry or poll loop ran past its deadline."""

    def __init__(self, description: str, deadline: float, last_error: Exception | None = None) -> None:
        super().__init__(f"{description} did not complete within {deadline:g}s")
        self.description = description
        self.deadline = deadline
        self.last_error = last_error


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff with an overall deadline.

    Attributes
    ----------
    max_attempts : int | None
        Maximum number of attempts, or None to rely on the deadline alone
    base_delay : float
        Delay after the first attempt in seconds
    max_delay : float
        Upper bound for any single delay
    multiplier : float
        Growth factor between consecutive delays
    deadline : float
        Overall budget in seconds; retries never extend it
    """

    max_attempts: int | None = GATEWAY_MAX_ATTEMPTS
    base_delay: float = 1.0
    max_delay: float = 8.0
    multiplier: float = 2.0
    deadline: float = GATEWAY_CALL_DEADLINE_SECONDS

    def __post_init__(self) -> None:
        if self.max_attempts is not None and self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.deadline <= 0:
            raise ValueError("deadline must be positive")

    def delays(self) -> Iterator[float]:
        """Yield the delay to wait after each failed attempt."""
        delay = self.base_delay
        attempt = 1
        while self.max_attempts is None or attempt < self.max_attempts:
            yield min(delay, self.max_delay)
            delay *= self.multiplier
            attempt += 1

    @classmethod
    def polling(cls, deadline: float, base_delay: float = POLL_BASE_DELAY_SECONDS,
                max_delay: float = POLL_MAX_DELAY_SECONDS) -> RetryPolicy:
        """Policy for lifecycle polls: unlimited attempts within ``deadline``."""
        return cls(
            max_attempts=None,
            base_delay=base_delay,
            max_delay=max_delay,
            multiplier=POLL_BACKOFF_MULTIPLIER,
            deadline=deadline,
        )


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    clock: Clock,
    description: str = "operation",
) -> T:
    """Run ``operation`` retrying transient ``CloudApiError`` failures.

    Parameters
    ----------
    operation : Callable[[], Awaitable[T]]
        Coroutine factory performing one attempt
    policy : RetryPolicy
        Attempts, backoff and deadline
    clock : Clock
        Time source
    description : str
        Used in log messages

    Returns
    -------
    T
        Result of the first successful attempt

    Raises
    ------
    CloudApiError
        The permanent error, or the last transient error once attempts or the
        deadline are exhausted
    """
    start = clock.monotonic()
    delays = policy.delays()

    while True:
        try:
            return await operation()
        except CloudApiError as e:
            if not e.transient:
                raise

            delay = next(delays, None)
            remaining = policy.deadline - (clock.monotonic() - start)

            if delay is None or remaining <= delay:
                logger.debug("Giving up on %s after transient error: %s", description, e)
                raise

            logger.debug("Transient error in %s, retrying in %.1fs: %s", description, delay, e)
            await clock.sleep(delay)


async def poll_until(
    check: Callable[[], Awaitable[T | None]],
    policy: RetryPolicy,
    clock: Clock,
    description: str = "poll",
) -> T:
    """Call ``check`` until it returns a value other than None.

    Transient gateway errors raised by ``check`` count as a not-yet-done poll;
    permanent errors propagate. The deadline is measured from the first call
    and is never extended.

    Raises
    ------
    DeadlineExceededError
        If ``check`` has not produced a value within ``policy.deadline``
    """
    start = clock.monotonic()
    delays = policy.delays()
    last_error: Exception | None = None

    while True:
        try:
            result = await check()
        except CloudApiError as e:
            if not e.transient:
                raise
            logger.debug("Transient error while polling %s: %s", description, e)
            last_error = e
            result = None

        if result is not None:
            return result

        elapsed = clock.monotonic() - start
        remaining = policy.deadline - elapsed
        delay = next(delays, None)

        if remaining <= 0 or delay is None:
            raise DeadlineExceededError(description, policy.deadline, last_error)

        await clock.sleep(min(delay, remaining))
