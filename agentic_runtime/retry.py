"""Bounded exponential backoff around a single provider call."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from .events import EventStream, EventType
from .provider_errors import ProviderError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 5
    initial_delay: float = 1.0
    max_delay: float = 16.0

    def next_delay(self, delay: float) -> float:
        return min(delay * 2, self.max_delay)


@dataclass
class RetryState:
    attempt: int = 0
    delay: float = 1.0
    last_error: Optional[BaseException] = None


Sleeper = Callable[[float], Awaitable[None]]


async def call_with_retry(
    call: Callable[[], Awaitable[T]],
    events: EventStream,
    policy: Optional[RetryPolicy] = None,
    *,
    sleep: Sleeper = asyncio.sleep,
) -> T:
    """Run ``call`` until it succeeds, fails terminally, or attempts run out.

    Cancellation propagates immediately and is never retried. Non-retryable
    ``ProviderError``s emit ``provider_error`` and are re-raised; any other
    exception is treated as transient. The backoff sleep is itself a
    cancellation point.
    """
    policy = policy or RetryPolicy()
    state = RetryState(delay=policy.initial_delay)
    max_attempts = max(1, policy.max_attempts)

    while state.attempt < max_attempts:
        state.attempt += 1
        try:
            return await call()
        except asyncio.CancelledError:
            raise
        except ProviderError as exc:
            state.last_error = exc
            if not exc.retryable:
                logger.warning("provider error (not retryable): %s", exc)
                await events.emit(EventType.PROVIDER_ERROR, exc.to_payload())
                raise
            if exc.retry_after is not None and exc.retry_after > state.delay:
                state.delay = exc.retry_after
        except Exception as exc:
            state.last_error = exc

        if state.attempt >= max_attempts:
            break

        delay_ms = int(state.delay * 1000)
        logger.info(
            "provider request failed (attempt %d/%d), retrying in %dms: %s",
            state.attempt,
            max_attempts,
            delay_ms,
            state.last_error,
        )
        await events.emit(
            EventType.REQUEST_RETRY,
            {
                "attempt": state.attempt,
                "next_attempt": state.attempt + 1,
                "max_attempts": max_attempts,
                "delay_ms": delay_ms,
                "error": str(state.last_error),
            },
        )
        await sleep(state.delay)
        state.delay = policy.next_delay(state.delay)

    assert state.last_error is not None
    raise state.last_error
