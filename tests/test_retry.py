"""Tests for the retrying request executor."""
import asyncio

import pytest
from pydantic import ValidationError

from merkle_chat.config import Settings
from merkle_chat.errors import CompletionError, ErrorCategory
from merkle_chat.retry import RetryingExecutor, backoff_delay


def test_backoff_delay_doubles():
    assert [backoff_delay(k) for k in range(1, 5)] == [1.0, 2.0, 4.0, 8.0]


class FlakyOperation:
    def __init__(self, failures, category=ErrorCategory.SERVICE_UNAVAILABLE, result="ok"):
        self.failures = failures
        self.category = category
        self.result = result
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise CompletionError(self.category)
        return self.result


@pytest.mark.asyncio
async def test_permanent_failure_attempts_max_retries_plus_one(recording_sleep):
    executor = RetryingExecutor(sleep=recording_sleep)
    operation = FlakyOperation(failures=100)

    with pytest.raises(CompletionError) as exc_info:
        await executor.run(operation, max_retries=3, per_attempt_timeout_ms=1000)

    assert exc_info.value.category == ErrorCategory.SERVICE_UNAVAILABLE
    assert operation.calls == 4
    assert recording_sleep.delays == [1.0, 2.0, 4.0]


@pytest.mark.asyncio
async def test_non_retryable_error_short_circuits(recording_sleep):
    executor = RetryingExecutor(sleep=recording_sleep)
    operation = FlakyOperation(failures=100, category=ErrorCategory.AUTH_ERROR)

    with pytest.raises(CompletionError) as exc_info:
        await executor.run(operation, max_retries=3, per_attempt_timeout_ms=1000)

    assert exc_info.value.category == ErrorCategory.AUTH_ERROR
    assert operation.calls == 1
    assert recording_sleep.delays == []


@pytest.mark.asyncio
async def test_recovers_after_transient_failures(recording_sleep):
    executor = RetryingExecutor(sleep=recording_sleep)
    operation = FlakyOperation(failures=2, category=ErrorCategory.RATE_LIMITED)
    retries = []

    result = await executor.run(
        operation,
        max_retries=3,
        per_attempt_timeout_ms=1000,
        on_retry=lambda attempt, error, delay: retries.append((attempt, error.category, delay)),
    )

    assert result == "ok"
    assert operation.calls == 3
    assert retries == [
        (1, ErrorCategory.RATE_LIMITED, 1.0),
        (2, ErrorCategory.RATE_LIMITED, 2.0),
    ]


@pytest.mark.asyncio
async def test_timeout_cancels_the_attempt(recording_sleep):
    executor = RetryingExecutor(sleep=recording_sleep)
    cancelled = []

    async def hangs():
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            cancelled.append(True)
            raise

    with pytest.raises(CompletionError) as exc_info:
        await executor.run(hangs, max_retries=1, per_attempt_timeout_ms=20)

    assert exc_info.value.category == ErrorCategory.TIMEOUT
    assert cancelled == [True, True]
    assert recording_sleep.delays == [1.0]


@pytest.mark.asyncio
async def test_zero_retries_means_single_attempt(recording_sleep):
    executor = RetryingExecutor(sleep=recording_sleep)
    operation = FlakyOperation(failures=1)

    with pytest.raises(CompletionError):
        await executor.run(operation, max_retries=0, per_attempt_timeout_ms=1000)

    assert operation.calls == 1


@pytest.mark.asyncio
async def test_negative_retry_budget_still_makes_one_attempt(recording_sleep):
    executor = RetryingExecutor(sleep=recording_sleep)
    operation = FlakyOperation(failures=1)

    with pytest.raises(CompletionError) as exc_info:
        await executor.run(operation, max_retries=-2, per_attempt_timeout_ms=1000)

    assert exc_info.value.category == ErrorCategory.SERVICE_UNAVAILABLE
    assert operation.calls == 1


def test_settings_reject_negative_retry_budget():
    with pytest.raises(ValidationError):
        Settings(_env_file=None, max_retries=-1)
