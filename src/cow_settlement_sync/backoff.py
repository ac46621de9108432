"""Exponential backoff for network-bound calls.

I/O boundaries (the RPC block source and the settlement API client) raise
``RetryableError`` subclasses for failures worth retrying. Errors raised by
third-party code that never reach such a boundary are classified with a
message heuristic kept in ``RETRYABLE_MESSAGE_FRAGMENTS``.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from cow_settlement_sync.config import BackoffSettings

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 5
DEFAULT_BASE_DELAY_SECONDS = 2.0
DEFAULT_MAX_DELAY_SECONDS = 60.0
DEFAULT_MULTIPLIER = 2.0
MAX_JITTER_SECONDS = 1.0

RETRYABLE_MESSAGE_FRAGMENTS = (
    "timeout",
    "timed out",
    "connection reset",
    "econnreset",
    "etimedout",
    "enotfound",
    "getaddrinfo",
    "rate limit",
    "too many requests",
    "429",
    "500",
    "502",
    "503",
    "504",
    "internal server error",
    "bad gateway",
    "service unavailable",
    "gateway timeout",
    "block range",
    "query returned more than",
)


class RetryableError(Exception):
    """Marker base class for failures that may succeed when retried."""


def is_retryable(error: BaseException) -> bool:
    """Classify an error as retryable or fatal."""
    if isinstance(error, RetryableError):
        return True
    if isinstance(error, asyncio.TimeoutError):
        return True
    message = str(error).lower()
    return any(fragment in message for fragment in RETRYABLE_MESSAGE_FRAGMENTS)


@dataclass(frozen=True)
class BackoffPolicy:
    """Bounded exponential backoff parameters."""

    max_retries: int = DEFAULT_MAX_RETRIES
    base_delay: float = DEFAULT_BASE_DELAY_SECONDS
    max_delay: float = DEFAULT_MAX_DELAY_SECONDS
    multiplier: float = DEFAULT_MULTIPLIER

    @classmethod
    def from_settings(cls, settings: BackoffSettings) -> BackoffPolicy:
        return cls(
            max_retries=settings.max_retries,
            base_delay=settings.base_delay_seconds,
            max_delay=settings.max_delay_seconds,
            multiplier=settings.multiplier,
        )

    def delay_for(self, attempt: int) -> float:
        """Delay before retrying after the given zero-based failed attempt."""
        return min(self.base_delay * (self.multiplier**attempt), self.max_delay)


class BackoffExecutor:
    """Runs async operations with bounded exponential backoff.

    Example:
        ```python
        executor = BackoffExecutor(BackoffPolicy(max_retries=3))
        number = await executor.run(source.latest_block_number, "latest_block_number")
        ```
    """

    def __init__(
        self,
        policy: BackoffPolicy | None = None,
        *,
        jitter: bool = False,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
    ) -> None:
        """Initialize the executor.

        Args:
            policy: Retry bounds. Defaults to BackoffPolicy().
            jitter: Add up to one second of random delay on top of each backoff.
            sleep: Awaitable sleep function (injectable for tests).
            rng: Source of uniform [0, 1) values for jitter.
        """
        self.policy = policy or BackoffPolicy()
        self.jitter = jitter
        self._sleep = sleep
        self._rng = rng

    def compute_delay(self, attempt: int) -> float:
        delay = self.policy.delay_for(attempt)
        if self.jitter:
            delay += self._rng() * MAX_JITTER_SECONDS
        return delay

    async def run(self, operation: Callable[[], Awaitable[T]], name: str) -> T:
        """Execute ``operation``, retrying retryable failures.

        Args:
            operation: Zero-argument coroutine function to execute.
            name: Operation name used in log messages.

        Returns:
            The operation's result.

        Raises:
            Exception: The last error, once it is fatal or retries are exhausted.
        """
        attempts = self.policy.max_retries + 1
        for attempt in range(attempts):
            try:
                return await operation()
            except Exception as e:
                if not is_retryable(e):
                    logger.error("%s failed with non-retryable error: %s", name, e)
                    raise
                if attempt == attempts - 1:
                    logger.error("%s failed after %d attempts: %s", name, attempts, e)
                    raise

                delay = self.compute_delay(attempt)
                logger.warning(
                    "%s attempt %d/%d failed: %s. Retrying in %.1f seconds...",
                    name,
                    attempt + 1,
                    attempts,
                    e,
                    delay,
                )
                await self._sleep(delay)

        raise AssertionError("unreachable")
