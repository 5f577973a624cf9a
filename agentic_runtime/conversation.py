"""Append-only conversations persisted as one JSON document per session."""

from __future__ import annotations

import json
import logging
import re
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from .messages import ROLE_SYSTEM, Message

logger = logging.getLogger(__name__)

DEFAULT_KEY = "default"
_KEY_UNSAFE = re.compile(r"[^A-Za-z0-9_-]+")


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def sanitize_key(key: str) -> str:
    cleaned = _KEY_UNSAFE.sub("_", (key or "").strip()).strip("_")
    return cleaned or DEFAULT_KEY


class Conversation:
    """Ordered message list owned by one session.

    Messages are only ever appended, except when a context profile replaces
    the visible list wholesale.
    """

    def __init__(
        self,
        key: str,
        messages: Optional[Sequence[Message]] = None,
        *,
        storage_path: Optional[Path] = None,
        created_at: Optional[str] = None,
        updated_at: Optional[str] = None,
    ) -> None:
        self.key = key
        self.storage_path = storage_path
        self.created_at = created_at or _utc_now()
        self.updated_at = updated_at or self.created_at
        self._messages: List[Message] = list(messages or [])
        self._lock = threading.Lock()

    def append(self, message: Message) -> None:
        with self._lock:
            self._messages.append(message)
            self.updated_at = _utc_now()

    def replace_messages(self, messages: Sequence[Message]) -> None:
        with self._lock:
            self._messages = list(messages)
            self.updated_at = _utc_now()

    def messages(self) -> List[Message]:
        with self._lock:
            return list(self._messages)

    def __len__(self) -> int:
        with self._lock:
            return len(self._messages)

    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            messages = [message.to_dict() for message in self._messages]
        return {
            "key": self.key,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "messages": messages,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any], storage_path: Optional[Path] = None) -> "Conversation":
        return Conversation(
            key=str(data.get("key") or DEFAULT_KEY),
            messages=[Message.from_dict(item) for item in data.get("messages") or [] if isinstance(item, dict)],
            storage_path=storage_path,
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
        )


class ConversationStore:
    """Loads and saves conversations under ``<data_root>/sessions``."""

    def __init__(self, data_root: str, system_prompt: str = "") -> None:
        self.root = Path(data_root).expanduser() / "sessions"
        self.system_prompt = system_prompt
        self._current: Optional[Conversation] = None
        self._lock = threading.Lock()

    def path_for(self, key: str) -> Path:
        return self.root / f"{sanitize_key(key)}.json"

    def ensure(self, key: str = DEFAULT_KEY) -> Conversation:
        """Load the conversation for ``key`` or start a new one, and make it current."""
        safe_key = sanitize_key(key)
        path = self.path_for(safe_key)
        conversation: Optional[Conversation] = None
        if path.exists():
            try:
                conversation = Conversation.from_dict(json.loads(path.read_text(encoding="utf-8")), path)
            except ValueError:
                logger.warning("session file %s is corrupt; starting a fresh conversation", path)
        if conversation is None:
            seed = [Message(role=ROLE_SYSTEM, content=self.system_prompt)] if self.system_prompt else []
            conversation = Conversation(safe_key, seed, storage_path=path)
            self.save(conversation)
        with self._lock:
            self._current = conversation
        return conversation

    def current(self) -> Conversation:
        with self._lock:
            conversation = self._current
        if conversation is None:
            return self.ensure(DEFAULT_KEY)
        return conversation

    def save(self, conversation: Conversation) -> None:
        path = conversation.storage_path or self.path_for(conversation.key)
        conversation.storage_path = path
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".tmp")
        tmp.write_text(json.dumps(conversation.to_dict(), indent=2), encoding="utf-8")
        tmp.replace(path)

    def list_keys(self) -> List[str]:
        if not self.root.exists():
            return []
        return sorted(path.stem for path in self.root.glob("*.json"))
