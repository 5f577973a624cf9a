from __future__ import annotations

import json

import pytest

from agentic_runtime.errors import ToolError
from agentic_runtime.path_guard import PathGuard
from agentic_runtime.tools.base import ToolContext
from agentic_runtime.tools.plan import PlanTool


def _steps():
    return [
        {"status": "completed", "step": "Read the code"},
        {"status": "in_progress", "step": "Write the fix"},
    ]


@pytest.mark.asyncio
async def test_update_get_and_history(tmp_path) -> None:
    tool = PlanTool(str(tmp_path / "plan.json"))
    ctx = ToolContext(guard=PathGuard(str(tmp_path)))

    updated = json.loads(await tool.call({"steps": _steps()}, ctx))
    assert updated["steps"][1] == {"status": "in_progress", "step": "Write the fix"}
    assert updated["updated_at"]

    fetched = json.loads(await tool.call({"action": "get"}, ctx))
    assert fetched == updated

    await tool.call({"action": "update", "steps": [{"status": "completed", "step": "Done"}]}, ctx)
    history = json.loads(await tool.call({"action": "history", "limit": 1}, ctx))
    assert len(history["entries"]) == 1
    assert history["entries"][0]["steps"][0]["step"] == "Done"
    assert (tmp_path / "plan.json.history.json").exists()


@pytest.mark.asyncio
async def test_session_scoped_plan_path(tmp_path) -> None:
    tool = PlanTool(str(tmp_path / "plan.json"))
    session = tmp_path / "sessions" / "abc.json"
    ctx = ToolContext(guard=PathGuard(str(tmp_path)), session_path=str(session))

    await tool.call({"steps": _steps()}, ctx)

    assert (tmp_path / "sessions" / "abc-plan.json").exists()
    assert not (tmp_path / "plan.json").exists()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "args, message",
    [
        ({"action": "update"}, "steps are required"),
        ({"steps": [{"status": "someday", "step": "x"}]}, "invalid status"),
        ({"steps": [{"status": "pending", "step": " "}]}, "missing description"),
        ({"action": "explode"}, "unknown action"),
    ],
)
async def test_invalid_requests(tmp_path, args, message) -> None:
    tool = PlanTool(str(tmp_path / "plan.json"))
    with pytest.raises(ToolError, match=message):
        await tool.call(args, ToolContext(guard=PathGuard(str(tmp_path))))


def test_load_missing_plan_is_empty(tmp_path) -> None:
    snapshot = PlanTool(str(tmp_path / "plan.json")).load()
    assert snapshot.steps == []
    assert snapshot.updated_at is None
