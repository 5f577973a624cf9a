"""Context profiles: hooks that shape the visible conversation around each provider call."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from .conversation import Conversation
from .errors import ConfigError
from .events import EventStream, EventType
from .messages import ROLE_SYSTEM, ROLE_TOOL, Message, conversation_char_count

logger = logging.getLogger(__name__)


@dataclass
class Prepared:
    messages: List[Message] = field(default_factory=list)
    mutated: bool = False


class ContextProfile:
    """Base profile; passes the conversation through untouched."""

    name = "default"

    def __init__(self) -> None:
        self._events = EventStream()

    def set_event_sink(self, events: Optional[EventStream]) -> None:
        self._events = events or EventStream()

    async def prepare(self, conversation: Conversation) -> Prepared:
        return Prepared(messages=conversation.messages())

    async def after_response(self, conversation: Conversation) -> bool:
        return False


class NoopProfile(ContextProfile):
    name = "default"


class TrimmingProfile(ContextProfile):
    """Drops the oldest messages once the conversation outgrows a character budget.

    The leading system message always survives, and the kept tail never starts
    with a tool result whose assistant tool call was dropped.
    """

    name = "trim"

    def __init__(self, max_chars: int = 200_000, keep_last: int = 40) -> None:
        super().__init__()
        if keep_last < 1:
            raise ConfigError("keep_last must be at least 1")
        self.max_chars = max_chars
        self.keep_last = keep_last

    def _trimmed(self, messages: List[Message]) -> Optional[List[Message]]:
        if conversation_char_count(messages) <= self.max_chars:
            return None
        head: List[Message] = []
        body = messages
        if messages and messages[0].role == ROLE_SYSTEM:
            head, body = messages[:1], messages[1:]
        if len(body) <= self.keep_last:
            return None
        cut = len(body) - self.keep_last
        start = cut
        while start < len(body) and body[start].role == ROLE_TOOL:
            start += 1
        if start == len(body):
            # Tail is all tool results: keep the assistant call that owns them.
            start = cut
            while start > 0 and body[start].role == ROLE_TOOL:
                start -= 1
        return head + body[start:]

    async def _compact(self, conversation: Conversation) -> bool:
        messages = conversation.messages()
        trimmed = self._trimmed(messages)
        if trimmed is None:
            return False
        before = conversation_char_count(messages)
        await self._events.emit(
            EventType.COMPACTION_START,
            {"profile": self.name, "messages": len(messages), "context_chars": before},
        )
        conversation.replace_messages(trimmed)
        after = conversation_char_count(trimmed)
        logger.info("trimmed conversation %s from %d to %d messages", conversation.key, len(messages), len(trimmed))
        await self._events.emit(
            EventType.COMPACTION_COMPLETE,
            {
                "profile": self.name,
                "removed": len(messages) - len(trimmed),
                "messages": len(trimmed),
                "context_chars": after,
            },
        )
        return True

    async def prepare(self, conversation: Conversation) -> Prepared:
        mutated = await self._compact(conversation)
        return Prepared(messages=conversation.messages(), mutated=mutated)

    async def after_response(self, conversation: Conversation) -> bool:
        return await self._compact(conversation)


PROFILES = {
    "default": NoopProfile,
    "noop": NoopProfile,
    "trim": TrimmingProfile,
}


def create_profile(name: Optional[str]) -> ContextProfile:
    key = (name or "default").strip().lower()
    factory = PROFILES.get(key)
    if factory is None:
        raise ConfigError(f"unknown context profile {name!r}", details={"known": sorted(PROFILES)})
    return factory()
