"""Chat message primitives shared by the turn loop, tools and provider client."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence


ROLE_SYSTEM = "system"
ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"
ROLE_TOOL = "tool"


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str
    arguments: str = "{}"
    type: str = "function"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "function": {"name": self.name, "arguments": self.arguments},
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "ToolCall":
        function = data.get("function") or {}
        arguments = function.get("arguments", "{}")
        if not isinstance(arguments, str):
            arguments = json.dumps(arguments)
        return ToolCall(
            id=str(data.get("id", "")),
            name=str(function.get("name", "")),
            arguments=arguments,
            type=str(data.get("type") or "function"),
        )


@dataclass(frozen=True)
class ToolDefinition:
    """Machine-readable description of a tool offered to the provider."""

    name: str
    description: str
    parameters: Dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


@dataclass
class Message:
    role: str
    content: str = ""
    name: Optional[str] = None
    tool_call_id: Optional[str] = None
    tool_calls: List[ToolCall] = field(default_factory=list)
    thinking: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"role": self.role}
        if self.content:
            payload["content"] = self.content
        if self.name:
            payload["name"] = self.name
        if self.tool_call_id:
            payload["tool_call_id"] = self.tool_call_id
        if self.tool_calls:
            payload["tool_calls"] = [call.to_dict() for call in self.tool_calls]
        if self.thinking:
            payload["thinking"] = self.thinking
        return payload

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Message":
        return Message(
            role=str(data.get("role", "")),
            content=data.get("content") or "",
            name=data.get("name") or None,
            tool_call_id=data.get("tool_call_id") or None,
            tool_calls=[ToolCall.from_dict(item) for item in data.get("tool_calls") or []],
            thinking=data.get("thinking") or None,
        )


def serialize_messages(messages: Sequence[Message]) -> List[Dict[str, Any]]:
    return [message.to_dict() for message in messages]


def conversation_char_count(messages: Sequence[Message]) -> int:
    """Size of the JSON form of ``messages``, used as the context-size gauge."""
    return len(json.dumps(serialize_messages(messages), separators=(",", ":")))
