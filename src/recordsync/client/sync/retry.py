"""Retry logic with a bounded timeout per attempt.

This module provides:
- run_with_timeout: Run an async operation, retrying only when it times out
- OperationTimeoutError: Raised once every attempt has timed out
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

import httpx

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Default retry configuration
DEFAULT_MAX_RETRIES = 1
DEFAULT_TIMEOUT = 3.0  # seconds
DEFAULT_RETRY_INTERVAL = 0.0  # seconds, fixed (no backoff)

# Failures that count as a timeout of the attempt
TIMEOUT_EXCEPTIONS: tuple[type[BaseException], ...] = (
    TimeoutError,
    httpx.TimeoutException,
)


class OperationTimeoutError(TimeoutError):
    """Every attempt of an operation timed out.

    Attributes:
        attempts: Number of attempts made.
        timeout: Per-attempt timeout in seconds.
    """

    def __init__(self, attempts: int, timeout: float) -> None:
        self.attempts = attempts
        self.timeout = timeout
        super().__init__(
            f"Request timed out after {attempts} attempt(s) of {timeout:.1f}s"
        )


async def run_with_timeout(
    operation: Callable[[], Awaitable[T]],
    max_retries: int = DEFAULT_MAX_RETRIES,
    timeout: float = DEFAULT_TIMEOUT,
    retry_interval: float = DEFAULT_RETRY_INTERVAL,
) -> T:
    """Execute an async operation with a per-attempt timeout.

    Each attempt gets ``timeout`` seconds. An attempt that does not settle
    in time is cancelled (the awaited coroutine receives CancelledError at
    its current suspension point) and counts as a timeout. Only timeouts
    are retried, at a fixed interval; any other exception propagates
    immediately.

    Args:
        operation: Factory returning a fresh awaitable for each attempt.
        max_retries: Retries allowed after the first timed-out attempt.
        timeout: Seconds allowed per attempt.
        retry_interval: Seconds to wait between attempts.

    Returns:
        Result of the first attempt that settles in time.

    Raises:
        OperationTimeoutError: After max_retries + 1 timed-out attempts.
        Exception: Any non-timeout failure of the operation, unchanged.
    """
    attempts = max(max_retries, 0) + 1

    for attempt in range(1, attempts + 1):
        try:
            return await asyncio.wait_for(operation(), timeout=timeout)
        except TIMEOUT_EXCEPTIONS as e:
            if attempt == attempts:
                logger.error(f"All {attempts} attempt(s) timed out: {e!r}")
                raise OperationTimeoutError(attempts, timeout) from e

            logger.warning(
                f"Request timed out, retrying... "
                f"({attempts - attempt} retries left)"
            )
            if retry_interval > 0:
                await asyncio.sleep(retry_interval)

    # Should not reach here, but satisfy type checker
    raise RuntimeError("Unexpected retry loop exit")
