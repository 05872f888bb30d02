"""
Retrying request executor.

Runs one asynchronous unit of work with a per-attempt timeout and
exponential backoff between attempts. It knows nothing about what the
work is; callers signal non-retryable failures by raising a
CompletionError whose category is not retryable.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from merkle_chat.errors import CompletionError, ErrorCategory

logger = logging.getLogger(__name__)

T = TypeVar("T")

BACKOFF_BASE_SECONDS = 1.0

RetryHook = Callable[[int, CompletionError, float], None]


def backoff_delay(attempt: int) -> float:
    """Seconds to wait before 0-indexed `attempt` (1s, 2s, 4s, ...)."""
    if attempt < 1:
        return 0.0
    return (2 ** (attempt - 1)) * BACKOFF_BASE_SECONDS


class RetryingExecutor:

    def __init__(self, sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self._sleep = sleep

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        max_retries: int,
        per_attempt_timeout_ms: int,
        on_retry: Optional[RetryHook] = None,
    ) -> T:
        """Run `operation` until it succeeds or the retry budget is spent.

        `operation` is called once per attempt and must return a fresh
        awaitable each time. A timed-out attempt is cancelled, which aborts
        whatever I/O it was awaiting. Raises the last CompletionError.
        """
        max_retries = max(0, max_retries)
        timeout = per_attempt_timeout_ms / 1000
        last_error: Optional[CompletionError] = None

        for attempt in range(max_retries + 1):
            if attempt > 0:
                delay = backoff_delay(attempt)
                if on_retry is not None:
                    on_retry(attempt, last_error, delay)
                logger.info(
                    "Retrying in %.1fs (attempt %d of %d): %s",
                    delay, attempt + 1, max_retries + 1, last_error.category.value,
                )
                await self._sleep(delay)

            try:
                return await asyncio.wait_for(operation(), timeout=timeout)
            except asyncio.TimeoutError:
                last_error = CompletionError(ErrorCategory.TIMEOUT)
                logger.warning("Attempt %d timed out after %dms", attempt + 1, per_attempt_timeout_ms)
            except CompletionError as e:
                if not e.retryable:
                    logger.warning("Attempt %d failed (not retryable): %s", attempt + 1, e.category.value)
                    raise
                last_error = e
                logger.warning("Attempt %d failed: %s", attempt + 1, e.category.value)

        logger.error("Giving up after %d attempts: %s", max_retries + 1, last_error.category.value)
        raise last_error
