"""
Bounded retry for calls leaving the workflow core.

User directory lookups and ticket/problem history mirroring go through
call_with_retry: a fixed number of attempts, exponential backoff, and a
per-attempt timeout. Exhaustion surfaces as StorageUnavailable.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

from .errors import StorageUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 3
    base_delay: float = 0.1
    max_delay: float = 2.0
    timeout: float = 5.0

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            attempts=settings.EXTERNAL_CALL_ATTEMPTS,
            base_delay=settings.EXTERNAL_CALL_BASE_DELAY,
            max_delay=settings.EXTERNAL_CALL_MAX_DELAY,
            timeout=settings.EXTERNAL_CALL_TIMEOUT,
        )

    def delay_for(self, attempt: int) -> float:
        """Backoff before the attempt after `attempt` (1-based)."""
        return min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))


# Failures worth another attempt; anything else propagates immediately
RETRYABLE = (StorageUnavailable, ConnectionError, asyncio.TimeoutError)


async def call_with_retry(
    operation: Callable[..., Awaitable[T]],
    *args: Any,
    policy: RetryPolicy,
    description: str
) -> T:
    """
    Await operation(*args) under the retry policy.

    Raises StorageUnavailable naming `description` once every attempt
    has failed.
    """
    attempts = max(1, policy.attempts)
    for attempt in range(1, attempts + 1):
        try:
            return await asyncio.wait_for(operation(*args), policy.timeout)
        except RETRYABLE as exc:
            if attempt == attempts:
                logger.error(
                    "%s failed after %d attempts: %r", description, attempts, exc
                )
                raise StorageUnavailable(
                    f"{description} failed after {attempts} attempts.",
                    condition="external_call_exhausted"
                ) from exc
            delay = policy.delay_for(attempt)
            logger.warning(
                "%s failed (attempt %d/%d), retrying in %.2fs: %r",
                description, attempt, attempts, delay, exc
            )
            await asyncio.sleep(delay)
    raise AssertionError("unreachable")
