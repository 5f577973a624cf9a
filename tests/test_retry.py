from __future__ import annotations

import asyncio
from typing import List

import pytest

from agentic_runtime.events import EventStream, RecordingSink
from agentic_runtime.provider_errors import ErrorType, ProviderError
from agentic_runtime.retry import RetryPolicy, call_with_retry


class FakeSleep:
    def __init__(self) -> None:
        self.calls: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.calls.append(delay)


def _flaky(failures: List[BaseException], result: str = "ok"):
    attempts = {"count": 0}

    async def call() -> str:
        attempts["count"] += 1
        if failures:
            raise failures.pop(0)
        return result

    return call, attempts


@pytest.mark.asyncio
async def test_retries_with_doubling_backoff() -> None:
    sink = RecordingSink()
    sleep = FakeSleep()
    call, attempts = _flaky(
        [
            ProviderError("upstream hiccup", retryable=True),
            ProviderError("upstream hiccup", retryable=True),
        ]
    )

    result = await call_with_retry(call, EventStream(sink), sleep=sleep)

    assert result == "ok"
    assert attempts["count"] == 3
    retries = sink.of_type("request_retry")
    assert [event.data["delay_ms"] for event in retries] == [1000, 2000]
    assert [event.data["attempt"] for event in retries] == [1, 2]
    assert sleep.calls == [1.0, 2.0]
    assert sink.of_type("provider_error") == []


@pytest.mark.asyncio
async def test_unclassified_exceptions_are_retried() -> None:
    sink = RecordingSink()
    call, attempts = _flaky([ConnectionResetError("reset by peer")])
    assert await call_with_retry(call, EventStream(sink), sleep=FakeSleep()) == "ok"
    assert attempts["count"] == 2
    assert sink.of_type("request_retry")[0].data["error"] == "reset by peer"


@pytest.mark.asyncio
async def test_non_retryable_error_is_raised_once() -> None:
    sink = RecordingSink()
    error = ProviderError("bad key", type=ErrorType.AUTH, provider="openrouter", code="401")
    call, attempts = _flaky([error])

    with pytest.raises(ProviderError) as excinfo:
        await call_with_retry(call, EventStream(sink), sleep=FakeSleep())

    assert excinfo.value is error
    assert attempts["count"] == 1
    assert sink.types() == ["provider_error"]
    assert sink.events[0].data["type"] == "auth"


@pytest.mark.asyncio
async def test_gives_up_after_max_attempts() -> None:
    sink = RecordingSink()
    sleep = FakeSleep()
    call, attempts = _flaky([ProviderError(f"fail {i}", retryable=True) for i in range(10)])

    with pytest.raises(ProviderError, match="fail 2"):
        await call_with_retry(call, EventStream(sink), RetryPolicy(max_attempts=3), sleep=sleep)

    assert attempts["count"] == 3
    assert len(sink.of_type("request_retry")) == 2


@pytest.mark.asyncio
async def test_backoff_is_capped_and_honours_retry_after() -> None:
    sleep = FakeSleep()
    failures: List[BaseException] = [ProviderError("slow down", retryable=True, retry_after=12.0)]
    failures += [ProviderError("again", retryable=True) for _ in range(3)]
    call, _ = _flaky(failures)

    await call_with_retry(call, EventStream(), RetryPolicy(max_attempts=5, max_delay=16.0), sleep=sleep)

    assert sleep.calls == [12.0, 16.0, 16.0, 16.0]


@pytest.mark.asyncio
async def test_cancellation_is_not_retried() -> None:
    sink = RecordingSink()
    call, attempts = _flaky([asyncio.CancelledError()])
    with pytest.raises(asyncio.CancelledError):
        await call_with_retry(call, EventStream(sink), sleep=FakeSleep())
    assert attempts["count"] == 1
    assert sink.events == []


@pytest.mark.asyncio
async def test_cancellation_during_backoff_sleep() -> None:
    started = asyncio.Event()

    async def blocking_sleep(delay: float) -> None:
        started.set()
        await asyncio.sleep(3600)

    call, attempts = _flaky([ProviderError("x", retryable=True)])
    task = asyncio.ensure_future(call_with_retry(call, EventStream(), sleep=blocking_sleep))
    await started.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert attempts["count"] == 1
