"""Tests for the retry helper and the strategy runner."""
import asyncio

import pytest

from viralshort.utils.fallback import AllStrategiesFailed, Strategy, run_strategies
from viralshort.utils.retry import exponential_backoff, retry_async


class _Flaky:
    """Fails a fixed number of times before succeeding."""

    def __init__(self, failures: int, error: Exception):
        self.failures = failures
        self.error = error
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return "ok"


class _SleepRecorder:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay: float):
        self.delays.append(delay)


def always(error: Exception) -> bool:
    return True


def never(error: Exception) -> bool:
    return False


class TestRetryAsync:
    def test_exponential_backoff(self):
        delay = exponential_backoff(2.0)
        assert [delay(i) for i in range(3)] == [2.0, 4.0, 8.0]

    @pytest.mark.asyncio
    async def test_succeeds_after_transient_failures(self):
        operation = _Flaky(2, ConnectionError("connection interrupted"))
        sleep = _SleepRecorder()

        result = await retry_async(operation, always, max_attempts=3, sleep=sleep)

        assert result == "ok"
        assert operation.calls == 3
        assert sleep.delays == [2.0, 4.0]

    @pytest.mark.asyncio
    async def test_raises_last_error_when_exhausted(self):
        operation = _Flaky(10, TimeoutError("timed out"))
        sleep = _SleepRecorder()

        with pytest.raises(TimeoutError):
            await retry_async(operation, always, max_attempts=3, sleep=sleep)

        assert operation.calls == 3
        assert sleep.delays == [2.0, 4.0]

    @pytest.mark.asyncio
    async def test_non_retryable_error_is_raised_immediately(self):
        operation = _Flaky(10, ValueError("bad input"))
        sleep = _SleepRecorder()

        with pytest.raises(ValueError):
            await retry_async(operation, never, max_attempts=3, sleep=sleep)

        assert operation.calls == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_custom_backoff(self):
        operation = _Flaky(2, RuntimeError("429"))
        sleep = _SleepRecorder()

        await retry_async(operation, always, max_attempts=5, backoff=lambda attempt: 0.5, sleep=sleep)

        assert sleep.delays == [0.5, 0.5]


class TestRunStrategies:
    @pytest.mark.asyncio
    async def test_returns_first_success(self):
        calls = []

        async def first():
            calls.append("first")
            raise RuntimeError("first broke")

        async def second():
            calls.append("second")
            return 2

        async def third():
            calls.append("third")
            return 3

        result = await run_strategies([
            Strategy("first", first),
            Strategy("second", second),
            Strategy("third", third),
        ])

        assert result.name == "second"
        assert result.value == 2
        assert calls == ["first", "second"]
        assert [name for name, _ in result.failures] == ["first"]

    @pytest.mark.asyncio
    async def test_timeout_counts_as_failure(self):
        async def slow():
            await asyncio.sleep(5)
            return "slow"

        async def fast():
            return "fast"

        result = await run_strategies([
            Strategy("slow", slow, timeout=0.01),
            Strategy("fast", fast),
        ])

        assert result.value == "fast"
        name, error = result.failures[0]
        assert name == "slow"
        assert "timed out" in str(error)

    @pytest.mark.asyncio
    async def test_all_failures_reported(self):
        async def broken():
            raise RuntimeError("nope")

        with pytest.raises(AllStrategiesFailed) as exc_info:
            await run_strategies([Strategy("a", broken), Strategy("b", broken)])

        assert [name for name, _ in exc_info.value.failures] == ["a", "b"]
        assert str(exc_info.value.last_error) == "nope"

    @pytest.mark.asyncio
    async def test_on_failure_callback_sync_and_async(self):
        seen = []

        async def broken():
            raise RuntimeError("down")

        async def works():
            return "up"

        async def on_failure(name, error):
            seen.append((name, str(error)))

        await run_strategies([Strategy("a", broken), Strategy("b", works)], on_failure=on_failure)
        await run_strategies(
            [Strategy("c", broken), Strategy("d", works)],
            on_failure=lambda name, error: seen.append((name, str(error))),
        )

        assert seen == [("a", "down"), ("c", "down")]
