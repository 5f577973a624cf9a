"""Tool capability interface, registry and argument helpers."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from ..errors import ToolError
from ..messages import ToolCall, ToolDefinition
from ..path_guard import PathGuard

logger = logging.getLogger(__name__)


MAX_TOOL_RESULT_CHARS = 50_000


@dataclass
class ToolContext:
    """Per-call parameters handed to every tool invocation."""

    guard: PathGuard
    session_path: Optional[str] = None


@dataclass
class ToolOutcome:
    content: str
    error: bool = False
    truncated: bool = False


class Tool:
    """Interface for tools: describe yourself, then run against decoded arguments."""

    name: str = ""
    description: str = ""
    max_result_chars: int = MAX_TOOL_RESULT_CHARS

    def parameters(self) -> Dict[str, Any]:
        return {"type": "object", "properties": {}}

    def definition(self) -> ToolDefinition:
        return ToolDefinition(name=self.name, description=self.description, parameters=self.parameters())

    async def call(self, args: Dict[str, Any], ctx: ToolContext) -> str:  # pragma: no cover - interface
        raise NotImplementedError

    def truncation_hint(self, original_len: int, args: Dict[str, Any]) -> str:
        return (
            f"\n\n[TRUNCATED: Tool result too large ({original_len} chars). "
            f"Showing first {self.max_result_chars} chars. "
            "Use more specific filters, smaller ranges, or pagination.]"
        )


class ToolRegistry:
    """Name-keyed collection of tools."""

    def __init__(self, tools: Iterable[Tool] = ()) -> None:
        self._tools: Dict[str, Tool] = {}
        for tool in tools:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        if not tool.name:
            raise ValueError("tool must declare a name")
        self._tools[tool.name] = tool

    def lookup(self, name: str) -> Optional[Tool]:
        return self._tools.get(name)

    def names(self) -> List[str]:
        return list(self._tools)

    def definitions(self) -> List[ToolDefinition]:
        return [tool.definition() for tool in self._tools.values()]

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    async def dispatch(self, call: ToolCall, ctx: ToolContext) -> ToolOutcome:
        """Run one tool call; every failure becomes error text, never an exception.

        Cancellation still propagates so the owning turn can stop promptly.
        """
        tool = self._tools.get(call.name)
        if tool is None:
            return ToolOutcome(f"tool {call.name} not registered", error=True)

        try:
            args = decode_arguments(call.arguments)
        except ValueError as exc:
            return ToolOutcome(f"invalid args for {call.name}: {exc}", error=True)

        try:
            result = await tool.call(args, ctx)
        except Exception as exc:
            logger.warning("tool %s failed: %s", call.name, exc)
            return ToolOutcome(f"tool error: {exc}", error=True)

        original_len = len(result)
        if original_len > tool.max_result_chars:
            logger.info("tool %s result truncated from %d chars", call.name, original_len)
            result = result[: tool.max_result_chars] + tool.truncation_hint(original_len, args)
            return ToolOutcome(result, truncated=True)
        return ToolOutcome(result)


# ---------------------------------------------------------------------------
# Argument helpers
# ---------------------------------------------------------------------------


def decode_arguments(raw: str) -> Dict[str, Any]:
    if raw is None or not raw.strip():
        return {}
    decoded = json.loads(raw)
    if not isinstance(decoded, dict):
        raise ValueError("arguments must be a JSON object")
    return decoded


def string_arg(args: Dict[str, Any], key: str, default: str = "") -> str:
    value = args.get(key)
    if value is None:
        return default
    return value if isinstance(value, str) else str(value)


def require_string(args: Dict[str, Any], key: str) -> str:
    value = string_arg(args, key)
    if not value.strip():
        raise ToolError(f"{key} is required")
    return value


def bool_arg(args: Dict[str, Any], key: str, default: bool = False) -> bool:
    value = args.get(key)
    if isinstance(value, bool):
        return value
    return default


def int_arg(args: Dict[str, Any], key: str, default: int) -> int:
    value = args.get(key)
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return int(value)
    return default


def to_json(payload: Any) -> str:
    return json.dumps(payload, ensure_ascii=False)
