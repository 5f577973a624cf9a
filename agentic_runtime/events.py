"""Ordered turn-progress events and their server-sent-events framing."""

from __future__ import annotations

import asyncio
import enum
import inspect
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

logger = logging.getLogger(__name__)


class EventType(str, enum.Enum):
    """Event types emitted while a turn progresses."""

    STATUS = "status"
    TOOL_CALL_STARTED = "tool_call_started"
    TOOL_CALL_COMPLETED = "tool_call_completed"
    ASSISTANT_MESSAGE = "assistant_message"
    CONTEXT_UPDATE = "context_update"
    COMPACTION_START = "compaction_start"
    COMPACTION_COMPLETE = "compaction_complete"
    REQUEST_RETRY = "request_retry"
    PROVIDER_ERROR = "provider_error"
    PLAN_UPDATE = "plan_update"
    ERROR = "error"
    COMPLETE = "complete"


def _coerce_type(value: Union[EventType, str]) -> str:
    if isinstance(value, EventType):
        return value.value
    return str(value)


@dataclass
class StreamEvent:
    type: Union[EventType, str]
    data: Dict[str, Any] = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)

    def __post_init__(self) -> None:
        if isinstance(self.type, str):
            try:
                self.type = EventType(self.type)
            except ValueError:
                self.type = str(self.type)

    @property
    def name(self) -> str:
        return _coerce_type(self.type)

    def asdict(self) -> Dict[str, Any]:
        return {"type": self.name, "data": self.data}


EventSink = Callable[[StreamEvent], Union[None, Awaitable[None]]]


def encode_sse(event: StreamEvent) -> bytes:
    payload = json.dumps(event.asdict(), separators=(",", ":"), default=str)
    return f"data: {payload}\n\n".encode("utf-8")


class EventStream:
    """Delivers events to a sink in the order they are emitted.

    Delivery is best-effort: a sink failure is logged and the turn carries on.
    """

    def __init__(self, sink: Optional[EventSink] = None) -> None:
        self._sink = sink

    @property
    def enabled(self) -> bool:
        return self._sink is not None

    async def emit(self, event_type: Union[EventType, str], data: Optional[Dict[str, Any]] = None) -> None:
        if self._sink is None:
            return
        event = StreamEvent(event_type, dict(data or {}))
        try:
            result = self._sink(event)
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.warning("event sink failed delivering %s", event.name, exc_info=True)


class QueueSink:
    """Adapts an ``asyncio.Queue`` into an event sink for streaming transports."""

    def __init__(self, queue: Optional["asyncio.Queue[Optional[StreamEvent]]"] = None) -> None:
        self.queue: "asyncio.Queue[Optional[StreamEvent]]" = queue or asyncio.Queue()

    async def __call__(self, event: StreamEvent) -> None:
        await self.queue.put(event)

    async def close(self) -> None:
        await self.queue.put(None)

    async def drain(self):
        while True:
            event = await self.queue.get()
            if event is None:
                return
            yield event


class RecordingSink:
    """Collects events in memory."""

    def __init__(self) -> None:
        self.events: List[StreamEvent] = []

    def __call__(self, event: StreamEvent) -> None:
        self.events.append(event)

    def types(self) -> List[str]:
        return [event.name for event in self.events]

    def of_type(self, event_type: Union[EventType, str]) -> List[StreamEvent]:
        wanted = _coerce_type(event_type)
        return [event for event in self.events if event.name == wanted]
