from __future__ import annotations

import json
from types import SimpleNamespace
from typing import Any, Dict, List

import httpx
import openai
import pytest

from agentic_runtime.messages import Message, ToolCall, ToolDefinition
from agentic_runtime.provider import ChatRequest, OpenAIChatProvider, normalize_response
from agentic_runtime.provider_errors import ErrorType, ProviderError

REQUEST = httpx.Request("POST", "https://openrouter.test/api/v1/chat/completions")


class FakeCompletions:
    def __init__(self, responses: List[Any]) -> None:
        self.responses = list(responses)
        self.calls: List[Dict[str, Any]] = []

    async def create(self, **kwargs: Any) -> Any:
        self.calls.append(kwargs)
        item = self.responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item


def _provider(*responses: Any):
    completions = FakeCompletions(list(responses))
    client = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    return OpenAIChatProvider("sk-test", client=client), completions


def _completion(message: Dict[str, Any], usage: Dict[str, int] | None = None) -> Dict[str, Any]:
    return {
        "model": "openai/gpt-4o-mini",
        "choices": [{"message": message, "finish_reason": "stop"}],
        "usage": usage or {"prompt_tokens": 10, "completion_tokens": 2, "total_tokens": 12},
    }


def test_normalize_response_reads_tool_calls_and_reasoning() -> None:
    response = normalize_response(
        _completion(
            {
                "role": "assistant",
                "content": None,
                "reasoning": "look at the files first",
                "tool_calls": [
                    {"id": "call_1", "type": "function", "function": {"name": "glob", "arguments": {"pattern": "*.py"}}}
                ],
            }
        )
    )
    message = response.choices[0].message
    assert message.content == ""
    assert message.thinking == "look at the files first"
    assert message.tool_calls[0] == ToolCall(id="call_1", name="glob", arguments='{"pattern": "*.py"}')
    assert response.usage.total_tokens == 12


def test_normalize_response_joins_content_blocks() -> None:
    response = normalize_response(
        _completion({"role": "assistant", "content": [{"type": "text", "text": "a"}, {"type": "image"}, {"type": "text", "text": "b"}]})
    )
    assert response.choices[0].message.content == "ab"


def test_normalize_response_choice_error_is_retryable() -> None:
    with pytest.raises(ProviderError) as excinfo:
        normalize_response({"choices": [{"error": {"message": "upstream timeout"}}]})
    assert excinfo.value.retryable is True


@pytest.mark.asyncio
async def test_chat_sends_tools_temperature_and_thinking() -> None:
    provider, completions = _provider(_completion({"role": "assistant", "content": "hi"}))
    request = ChatRequest(
        model="openai/gpt-4o-mini",
        messages=[
            Message(role="system", content="sys"),
            Message(role="assistant", tool_calls=[ToolCall(id="c", name="shell")], thinking="private"),
            Message(role="tool", content="ok", tool_call_id="c", name="shell"),
        ],
        tools=[ToolDefinition(name="shell", description="run")],
        temperature=0.2,
        thinking={"type": "enabled"},
    )

    response = await provider.chat(request)

    assert response.choices[0].message.content == "hi"
    sent = completions.calls[0]
    assert sent["temperature"] == 0.2
    assert sent["extra_body"] == {"thinking": {"type": "enabled"}}
    assert sent["tools"][0]["function"]["name"] == "shell"
    assistant = sent["messages"][1]
    assert "thinking" not in assistant
    assert assistant["content"] is None
    assert sent["messages"][2]["tool_call_id"] == "c"


@pytest.mark.asyncio
async def test_status_errors_are_classified() -> None:
    body = {"error": {"code": 402, "message": "Insufficient credits"}}
    error = openai.APIStatusError(
        "Payment required",
        response=httpx.Response(402, json=body, request=REQUEST),
        body=body,
    )
    provider, _ = _provider(error)

    with pytest.raises(ProviderError) as excinfo:
        await provider.chat(ChatRequest(model="m", messages=[Message(role="user", content="hi")]))

    assert excinfo.value.type is ErrorType.INSUFFICIENT_CREDIT
    assert excinfo.value.provider == "openrouter"
    assert excinfo.value.message == "Insufficient credits"
    assert excinfo.value.retryable is False


@pytest.mark.asyncio
async def test_connection_errors_are_retryable() -> None:
    provider, _ = _provider(openai.APIConnectionError(request=REQUEST))
    with pytest.raises(ProviderError) as excinfo:
        await provider.chat(ChatRequest(model="m", messages=[Message(role="user", content="hi")]))
    assert excinfo.value.type is ErrorType.PROVIDER_DOWN
    assert excinfo.value.retryable is True


@pytest.mark.asyncio
async def test_describe_image_sends_image_part() -> None:
    provider, completions = _provider(_completion({"role": "assistant", "content": "a cat"}))
    answer = await provider.describe_image("vision", "data:image/png;base64,AAAA", "what is this?")
    assert answer == "a cat"
    parts = completions.calls[0]["messages"][0]["content"]
    assert parts[1] == {"type": "image_url", "image_url": {"url": "data:image/png;base64,AAAA"}}
    assert json.dumps(parts)
