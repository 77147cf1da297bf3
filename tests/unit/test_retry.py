"""
Tests for retry with exponential backoff.
"""

import pytest

from notesync.config.settings import RetryConfig
from notesync.exceptions import AuthFailedError, NetworkTransientError
from notesync.sync.retry import calculate_delay, retry_with_backoff


class Flaky:
    def __init__(self, errors, result="ok"):
        self.errors = list(errors)
        self.result = result
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result


class Sleeper:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


class TestCalculateDelay:

    def test_exponential_growth_with_cap(self):
        config = RetryConfig(base_delay=1.0, max_delay=10.0, multiplier=2.0)

        delays = [calculate_delay(attempt, config) for attempt in range(6)]

        assert delays == [1.0, 2.0, 4.0, 8.0, 10.0, 10.0]


class TestRetryWithBackoff:

    @pytest.mark.asyncio
    async def test_succeeds_after_transient_failures(self):
        operation = Flaky([NetworkTransientError(), NetworkTransientError()])
        sleep = Sleeper()

        result = await retry_with_backoff(operation, RetryConfig(), sleep=sleep)

        assert result == "ok"
        assert operation.calls == 3
        assert sleep.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        operation = Flaky([NetworkTransientError(message=f"fail {i}") for i in range(5)])
        sleep = Sleeper()

        with pytest.raises(NetworkTransientError, match="fail 2"):
            await retry_with_backoff(operation, RetryConfig(max_attempts=3), sleep=sleep)

        assert operation.calls == 3
        assert len(sleep.delays) == 2

    @pytest.mark.asyncio
    async def test_non_transient_errors_are_not_retried(self):
        operation = Flaky([AuthFailedError()])
        sleep = Sleeper()

        with pytest.raises(AuthFailedError):
            await retry_with_backoff(operation, RetryConfig(), sleep=sleep)

        assert operation.calls == 1
        assert sleep.delays == []
