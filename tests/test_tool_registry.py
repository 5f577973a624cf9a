from __future__ import annotations

import json
from typing import Any, Dict

import pytest

from agentic_runtime.errors import ToolError
from agentic_runtime.messages import ToolCall
from agentic_runtime.path_guard import PathGuard
from agentic_runtime.provider import ScriptedProvider
from agentic_runtime.tools import MAX_TOOL_RESULT_CHARS, ToolOptions, build_toolbox
from agentic_runtime.tools.base import Tool, ToolContext, ToolRegistry
from agentic_runtime.tools.vision import VisionTool


class EchoTool(Tool):
    name = "echo"
    description = "Echo the text argument."

    async def call(self, args: Dict[str, Any], ctx: ToolContext) -> str:
        if args.get("fail"):
            raise ToolError("asked to fail")
        return str(args.get("text", "")) * int(args.get("repeat", 1))


def _ctx(tmp_path) -> ToolContext:
    return ToolContext(guard=PathGuard(str(tmp_path)))


@pytest.mark.asyncio
async def test_dispatch_unknown_tool(tmp_path) -> None:
    outcome = await ToolRegistry([EchoTool()]).dispatch(ToolCall(id="1", name="missing"), _ctx(tmp_path))
    assert outcome.error is True
    assert outcome.content == "tool missing not registered"


@pytest.mark.asyncio
async def test_dispatch_invalid_arguments(tmp_path) -> None:
    registry = ToolRegistry([EchoTool()])
    outcome = await registry.dispatch(ToolCall(id="1", name="echo", arguments="{not json"), _ctx(tmp_path))
    assert outcome.error is True
    assert outcome.content.startswith("invalid args for echo:")

    outcome = await registry.dispatch(ToolCall(id="2", name="echo", arguments="[1, 2]"), _ctx(tmp_path))
    assert "must be a JSON object" in outcome.content


@pytest.mark.asyncio
async def test_dispatch_tool_failure_becomes_text(tmp_path) -> None:
    outcome = await ToolRegistry([EchoTool()]).dispatch(
        ToolCall(id="1", name="echo", arguments='{"fail": true}'), _ctx(tmp_path)
    )
    assert outcome.error is True
    assert outcome.content == "tool error: asked to fail"


@pytest.mark.asyncio
async def test_dispatch_empty_arguments_and_success(tmp_path) -> None:
    registry = ToolRegistry([EchoTool()])
    assert (await registry.dispatch(ToolCall(id="1", name="echo", arguments=""), _ctx(tmp_path))).content == ""
    outcome = await registry.dispatch(ToolCall(id="2", name="echo", arguments='{"text": "hi"}'), _ctx(tmp_path))
    assert outcome.content == "hi"
    assert outcome.error is False
    assert outcome.truncated is False


@pytest.mark.asyncio
async def test_oversized_result_is_truncated_with_hint(tmp_path) -> None:
    args = json.dumps({"text": "x", "repeat": MAX_TOOL_RESULT_CHARS + 10})
    outcome = await ToolRegistry([EchoTool()]).dispatch(ToolCall(id="1", name="echo", arguments=args), _ctx(tmp_path))
    assert outcome.truncated is True
    assert outcome.content.startswith("x" * MAX_TOOL_RESULT_CHARS + "\n\n[TRUNCATED")
    assert f"({MAX_TOOL_RESULT_CHARS + 10} chars)" in outcome.content


def test_build_toolbox_registers_default_tools(tmp_path) -> None:
    toolbox = build_toolbox(ToolOptions(workspace_root=str(tmp_path), plan_path=str(tmp_path / "data" / "plan.json")))
    expected = {
        "current_datetime",
        "current_working_directory",
        "list_directory",
        "read_file",
        "shell",
        "update_plan",
        "web_fetch_json",
        "write_file",
        "edit_file",
        "apply_patch",
        "glob",
        "grep",
        "analyze_image",
        "background_process",
    }
    assert expected <= set(toolbox.registry.names())
    assert toolbox.plan.path == str(tmp_path / "data" / "plan.json")
    names = [definition.name for definition in toolbox.registry.definitions()]
    assert names == toolbox.registry.names()


@pytest.mark.asyncio
async def test_working_directory_tool(tmp_path) -> None:
    registry = build_toolbox(ToolOptions(workspace_root=str(tmp_path))).registry
    outcome = await registry.dispatch(ToolCall(id="1", name="current_working_directory"), _ctx(tmp_path))
    assert outcome.content == str(tmp_path)


@pytest.mark.asyncio
async def test_vision_tool_uses_provider(tmp_path) -> None:
    (tmp_path / "shot.png").write_bytes(b"\x89PNG fake")
    tool = VisionTool(ScriptedProvider(image_answer="a red square"), "vision-model")
    result = json.loads(await tool.call({"image_path": "shot.png", "prompt": "what is it?"}, _ctx(tmp_path)))
    assert result["analysis"] == "a red square"
    assert result["image_path"] == "shot.png"
    assert result["provider"] == "scripted"


@pytest.mark.asyncio
async def test_vision_tool_requires_model(tmp_path) -> None:
    with pytest.raises(ToolError, match="vision_model"):
        await VisionTool(None, None).call({"image_path": "a.png", "prompt": "x"}, _ctx(tmp_path))
