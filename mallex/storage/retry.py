"""Bounded exponential-backoff retry for remote store operations.

Transient faults (unavailable, deadline exceeded, internal, resource
exhausted) are retried with a delay of ``backoff_base ** n`` seconds
before retry ``n``. Anything else propagates on the first failure.

Every call keeps its own attempt counter, so concurrent operations never
disturb each other's retry accounting.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from mallex.errors import RETRYABLE_CODES, RemoteStoreError, SyncFailed, TransientSyncError
from mallex.protocols import RemoteOperation

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3
DEFAULT_BACKOFF_BASE = 2.0

Sleep = Callable[[float], Awaitable[Any]]


@dataclass(frozen=True)
class RetryPolicy:
    """How many times to retry a transient failure and how long to wait."""

    max_retries: int = DEFAULT_MAX_RETRIES
    backoff_base: float = DEFAULT_BACKOFF_BASE

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError("max_retries cannot be negative")
        if self.backoff_base < 0:
            raise ValueError("backoff_base cannot be negative")

    def delay_for(self, retry_number: int) -> float:
        """Seconds to wait before retry ``retry_number`` (1-based)."""
        return self.backoff_base**retry_number


def is_retryable(error: BaseException) -> bool:
    """Check whether a remote error is classified as transient."""
    if isinstance(error, TransientSyncError):
        return True
    return isinstance(error, RemoteStoreError) and error.code in RETRYABLE_CODES


async def with_retry(
    operation: RemoteOperation,
    *,
    policy: Optional[RetryPolicy] = None,
    sleep: Optional[Sleep] = None,
    description: str = "remote operation",
) -> Any:
    """Run a remote operation, retrying transient failures.

    Args:
        operation: Zero-argument callable returning a fresh awaitable per
            attempt.
        policy: Retry budget and backoff. Defaults to 3 retries, base 2.
        sleep: Awaitable sleep used between attempts (injectable for tests).
        description: Label used in logs and in the SyncFailed message.

    Returns:
        Whatever the operation returns.

    Raises:
        SyncFailed: After ``max_retries + 1`` attempts all failed transiently.
        RemoteStoreError: Immediately, for non-transient faults.
    """
    policy = policy or RetryPolicy()
    sleep = sleep or asyncio.sleep
    retries = 0

    while True:
        try:
            return await operation()
        except RemoteStoreError as e:
            if not is_retryable(e):
                logger.debug(f"{description}: non-retryable error {e.code}, giving up")
                raise
            if retries >= policy.max_retries:
                logger.error(f"{description}: retry budget exhausted after {retries + 1} attempts")
                raise SyncFailed(description, retries + 1, e) from e
            retries += 1
            delay = policy.delay_for(retries)
            logger.warning(f"{description}: retry {retries}/{policy.max_retries} in {delay:g}s ({e})")
            await sleep(delay)
