"""Provider client interface plus an OpenAI-compatible implementation."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence

import openai
from openai import AsyncOpenAI

from .messages import ROLE_ASSISTANT, Message, ToolCall, ToolDefinition
from .provider_errors import ErrorType, ProviderError, classify_http_error

logger = logging.getLogger(__name__)


@dataclass
class ChatRequest:
    model: str
    messages: List[Message]
    tools: List[ToolDefinition] = field(default_factory=list)
    temperature: Optional[float] = None
    thinking: Optional[Dict[str, Any]] = None


@dataclass
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }

    @staticmethod
    def from_dict(data: Optional[Dict[str, Any]]) -> "Usage":
        data = data or {}

        def _int(key: str) -> int:
            try:
                return int(data.get(key) or 0)
            except (TypeError, ValueError):
                return 0

        return Usage(
            prompt_tokens=_int("prompt_tokens"),
            completion_tokens=_int("completion_tokens"),
            total_tokens=_int("total_tokens"),
        )


@dataclass
class ChatChoice:
    message: Message
    finish_reason: Optional[str] = None


@dataclass
class ChatResponse:
    choices: List[ChatChoice] = field(default_factory=list)
    usage: Usage = field(default_factory=Usage)
    model: Optional[str] = None
    raw: Any = None


class ProviderClient:
    """Interface every provider client implements."""

    name: str = "provider"

    async def chat(self, request: ChatRequest) -> ChatResponse:  # pragma: no cover - interface
        raise NotImplementedError

    async def describe_image(self, model: str, data_uri: str, prompt: str) -> str:
        raise NotImplementedError(f"{self.name} does not support image analysis")


# ---------------------------------------------------------------------------
# Response parsing helpers
# ---------------------------------------------------------------------------


def _get_attr(obj: Any, name: str, default: Any = None) -> Any:
    if isinstance(obj, dict):
        return obj.get(name, default)
    if hasattr(obj, name):
        value = getattr(obj, name)
        return default if value is None else value
    extra = getattr(obj, "model_extra", None)
    if isinstance(extra, dict):
        return extra.get(name, default)
    return default


def _content_to_text(content: Any) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    parts: List[str] = []
    if isinstance(content, Iterable):
        for block in content:
            if _get_attr(block, "type") in {"text", "output_text"}:
                text = _get_attr(block, "text", "")
                if text:
                    parts.append(str(text))
    return "".join(parts)


def _extract_tool_calls(message: Any) -> List[ToolCall]:
    results: List[ToolCall] = []
    for raw in _get_attr(message, "tool_calls") or []:
        fn = _get_attr(raw, "function", {}) or {}
        arguments = _get_attr(fn, "arguments", "{}")
        if not isinstance(arguments, str):
            arguments = json.dumps(arguments)
        results.append(
            ToolCall(
                id=str(_get_attr(raw, "id", "")),
                name=str(_get_attr(fn, "name", "")),
                arguments=arguments or "{}",
                type=str(_get_attr(raw, "type", "function")),
            )
        )
    return results


def _extract_thinking(message: Any) -> Optional[str]:
    for key in ("reasoning_content", "reasoning", "thinking"):
        value = _get_attr(message, key)
        if isinstance(value, str) and value:
            return value
    return None


def _extract_usage(response: Any) -> Usage:
    usage_obj = _get_attr(response, "usage")
    if usage_obj is None:
        return Usage()
    if isinstance(usage_obj, dict):
        return Usage.from_dict(usage_obj)
    dump = getattr(usage_obj, "model_dump", None)
    if callable(dump):
        return Usage.from_dict(dump())
    return Usage.from_dict(
        {
            "prompt_tokens": getattr(usage_obj, "prompt_tokens", 0),
            "completion_tokens": getattr(usage_obj, "completion_tokens", 0),
            "total_tokens": getattr(usage_obj, "total_tokens", 0),
        }
    )


def normalize_response(response: Any) -> ChatResponse:
    """Convert an SDK response (or its dict form) into a ``ChatResponse``."""
    choices: List[ChatChoice] = []
    for choice in _get_attr(response, "choices") or []:
        error_obj = _get_attr(choice, "error")
        if error_obj:
            raise ProviderError(str(_get_attr(error_obj, "message") or error_obj), retryable=True)
        message = _get_attr(choice, "message", {}) or {}
        choices.append(
            ChatChoice(
                message=Message(
                    role=str(_get_attr(message, "role", ROLE_ASSISTANT)),
                    content=_content_to_text(_get_attr(message, "content")),
                    tool_calls=_extract_tool_calls(message),
                    thinking=_extract_thinking(message),
                ),
                finish_reason=_get_attr(choice, "finish_reason"),
            )
        )
    return ChatResponse(
        choices=choices,
        usage=_extract_usage(response),
        model=_get_attr(response, "model"),
        raw=response,
    )


# ---------------------------------------------------------------------------
# OpenAI-compatible chat completions
# ---------------------------------------------------------------------------


def _wire_message(message: Message) -> Dict[str, Any]:
    payload = message.to_dict()
    payload.pop("thinking", None)
    if message.role == ROLE_ASSISTANT and message.tool_calls and "content" not in payload:
        payload["content"] = None
    return payload


class OpenAIChatProvider(ProviderClient):
    """Chat Completions client for OpenAI-compatible endpoints (OpenRouter by default)."""

    def __init__(
        self,
        api_key: str,
        *,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        name: str = "openrouter",
        client: Any = None,
    ) -> None:
        self.name = name
        if client is None:
            kwargs: Dict[str, Any] = {"api_key": api_key}
            if base_url:
                kwargs["base_url"] = base_url
            if timeout:
                kwargs["timeout"] = timeout
            client = AsyncOpenAI(**kwargs)
        self.client = client

    def _wrap_status_error(self, exc: "openai.APIStatusError") -> ProviderError:
        response = getattr(exc, "response", None)
        headers = dict(response.headers) if response is not None else {}
        body: Any = getattr(exc, "body", None)
        if response is not None:
            try:
                body = response.text
            except Exception:  # pragma: no cover - streaming bodies that were never read
                body = body if body is not None else str(exc)
        if isinstance(body, dict) and "error" not in body:
            body = {"error": body}
        return classify_http_error(self.name, exc.status_code, body, headers)

    async def _create(self, **kwargs: Any) -> Any:
        try:
            return await self.client.chat.completions.create(**kwargs)
        except openai.APIStatusError as exc:
            error = self._wrap_status_error(exc)
            logger.debug("provider %s returned HTTP %s", self.name, exc.status_code)
            raise error from exc
        except openai.APIConnectionError as exc:
            raise ProviderError(
                str(exc) or "connection failed",
                type=ErrorType.PROVIDER_DOWN,
                provider=self.name,
                retryable=True,
            ) from exc

    async def chat(self, request: ChatRequest) -> ChatResponse:
        kwargs: Dict[str, Any] = {
            "model": request.model,
            "messages": [_wire_message(message) for message in request.messages],
        }
        if request.tools:
            kwargs["tools"] = [tool.to_dict() for tool in request.tools]
        if request.temperature is not None:
            kwargs["temperature"] = request.temperature
        if request.thinking:
            kwargs["extra_body"] = {"thinking": dict(request.thinking)}
        response = await self._create(**kwargs)
        return normalize_response(response)

    async def describe_image(self, model: str, data_uri: str, prompt: str) -> str:
        response = await self._create(
            model=model,
            messages=[
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": prompt},
                        {"type": "image_url", "image_url": {"url": data_uri}},
                    ],
                }
            ],
        )
        normalized = normalize_response(response)
        if not normalized.choices:
            raise ProviderError("no choices returned", provider=self.name)
        return normalized.choices[0].message.content


# ---------------------------------------------------------------------------
# Scripted provider
# ---------------------------------------------------------------------------


class ScriptedProvider(ProviderClient):
    """Replays canned responses in order; exceptions in the script are raised.

    Every request is recorded so callers can inspect what was sent.
    """

    name = "scripted"

    def __init__(self, script: Sequence[Any] = (), *, image_answer: str = "") -> None:
        self._script: List[Any] = list(script)
        self.requests: List[ChatRequest] = []
        self.image_answer = image_answer

    def push(self, item: Any) -> None:
        self._script.append(item)

    @staticmethod
    def reply(content: str = "", *, tool_calls: Sequence[ToolCall] = (), thinking: Optional[str] = None,
              total_tokens: int = 0) -> ChatResponse:
        return ChatResponse(
            choices=[
                ChatChoice(
                    message=Message(
                        role=ROLE_ASSISTANT,
                        content=content,
                        tool_calls=list(tool_calls),
                        thinking=thinking,
                    ),
                    finish_reason="tool_calls" if tool_calls else "stop",
                )
            ],
            usage=Usage(total_tokens=total_tokens),
            model="scripted",
        )

    async def chat(self, request: ChatRequest) -> ChatResponse:
        self.requests.append(request)
        if not self._script:
            raise ProviderError("script exhausted", provider=self.name)
        item = self._script.pop(0)
        if isinstance(item, BaseException):
            raise item
        if callable(item):
            item = item(request)
            if hasattr(item, "__await__"):
                item = await item
        if isinstance(item, str):
            return self.reply(item)
        return item

    async def describe_image(self, model: str, data_uri: str, prompt: str) -> str:
        return self.image_answer
