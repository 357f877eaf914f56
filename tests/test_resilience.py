"""Tests for retry with exponential backoff."""

import asyncio

import pytest

from bucket_log_cache.exceptions import NetworkUnavailableError
from bucket_log_cache.resilience import RetryConfig, retry_with_backoff


class StatusError(Exception):
    def __init__(self, status: int):
        super().__init__(f"HTTP {status}")
        self.status = status


class Flaky:
    """Callable failing a fixed number of times before succeeding."""

    def __init__(self, failures: int, exc: Exception):
        self.failures = failures
        self.exc = exc
        self.calls = 0

    async def __call__(self, value: str = "ok") -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc
        return value


@pytest.fixture
def no_wait() -> RetryConfig:
    return RetryConfig(max_attempts=4, backoff_base=0.0)


class TestRetryWithBackoff:
    async def test_success_first_try(self, no_wait: RetryConfig):
        fn = Flaky(0, ConnectionError())

        assert await retry_with_backoff(fn, "value", config=no_wait) == "value"
        assert fn.calls == 1

    async def test_recovers(self, no_wait: RetryConfig, caplog):
        fn = Flaky(2, NetworkUnavailableError("list_bucket_ids"))

        result = await retry_with_backoff(fn, config=no_wait, context_msg="bucket 3")

        assert result == "ok"
        assert fn.calls == 3
        assert "RETRY_RECOVERED" in caplog.text
        assert "[bucket 3]" in caplog.text

    async def test_exhausted_reraises_last_error(self, no_wait: RetryConfig):
        fn = Flaky(10, TimeoutError("slow"))

        with pytest.raises(TimeoutError):
            await retry_with_backoff(fn, config=no_wait)
        assert fn.calls == 4

    async def test_non_retryable_raises_immediately(self, no_wait: RetryConfig):
        fn = Flaky(1, ValueError("bad request"))

        with pytest.raises(ValueError):
            await retry_with_backoff(fn, config=no_wait)
        assert fn.calls == 1

    async def test_retryable_status_code(self, no_wait: RetryConfig):
        fn = Flaky(1, StatusError(503))

        assert await retry_with_backoff(fn, config=no_wait) == "ok"
        assert fn.calls == 2

    async def test_non_retryable_status_code(self, no_wait: RetryConfig):
        fn = Flaky(1, StatusError(400))

        with pytest.raises(StatusError):
            await retry_with_backoff(fn, config=no_wait)

    async def test_cancellation_not_retried(self, no_wait: RetryConfig):
        fn = Flaky(1, asyncio.CancelledError())

        with pytest.raises(asyncio.CancelledError):
            await retry_with_backoff(fn, config=no_wait)
        assert fn.calls == 1


class TestRetryConfig:
    def test_delays(self):
        config = RetryConfig(backoff_base=1.0, backoff_multiplier=2.0, backoff_max=10.0)

        assert [config.delay_for(n) for n in range(1, 7)] == [1.0, 2.0, 4.0, 8.0, 10.0, 10.0]
