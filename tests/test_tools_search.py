from __future__ import annotations

import json
import os
import time

import pytest

from agentic_runtime.errors import PathEscapeError, ToolError
from agentic_runtime.messages import ToolCall
from agentic_runtime.path_guard import PathGuard
from agentic_runtime.tools.base import ToolContext, ToolRegistry
from agentic_runtime.tools.search import GlobTool, GrepTool, is_binary_file


def _ctx(tmp_path) -> ToolContext:
    return ToolContext(guard=PathGuard(str(tmp_path)))


@pytest.mark.asyncio
async def test_glob_sorted_by_mtime(tmp_path) -> None:
    (tmp_path / "pkg").mkdir()
    old = tmp_path / "pkg" / "old.py"
    new = tmp_path / "new.py"
    old.write_text("a", encoding="utf-8")
    new.write_text("b", encoding="utf-8")
    past = time.time() - 100
    os.utime(old, (past, past))
    (tmp_path / "notes.txt").write_text("c", encoding="utf-8")

    result = json.loads(await GlobTool().call({"pattern": "**/*.py"}, _ctx(tmp_path)))

    assert result["files"] == ["new.py", os.path.join("pkg", "old.py")]
    assert result["count"] == 2


@pytest.mark.asyncio
async def test_glob_path_is_guarded(tmp_path) -> None:
    with pytest.raises(PathEscapeError):
        await GlobTool().call({"pattern": "*", "path": ".."}, _ctx(tmp_path / "inner"))


@pytest.mark.asyncio
async def test_grep_modes(tmp_path) -> None:
    (tmp_path / "a.py").write_text("import os\nvalue = 1\nprint(value)\n", encoding="utf-8")
    (tmp_path / "b.txt").write_text("value here too\n", encoding="utf-8")
    (tmp_path / "blob.bin").write_bytes(b"value\x00\x01")

    files = json.loads(await GrepTool().call({"pattern": "value"}, _ctx(tmp_path)))
    assert files == {"count": 2, "files": ["a.py", "b.txt"]}

    counts = json.loads(await GrepTool().call({"pattern": "value", "output_mode": "count", "glob": "*.py"}, _ctx(tmp_path)))
    assert counts == {"count": 1, "results": [{"path": "a.py", "count": 2}]}

    content = json.loads(
        await GrepTool().call(
            {"pattern": "^value", "output_mode": "content", "context_before": 1, "path": "a.py"},
            _ctx(tmp_path),
        )
    )
    block = content["results"][0]["matches"][0]
    assert block == [
        {"line": 1, "type": "context", "content": "import os"},
        {"line": 2, "type": "match", "content": "value = 1"},
    ]


@pytest.mark.asyncio
async def test_grep_offset_and_max_results(tmp_path) -> None:
    (tmp_path / "many.txt").write_text("".join(f"hit {i}\n" for i in range(10)), encoding="utf-8")
    result = json.loads(
        await GrepTool().call(
            {"pattern": "hit", "output_mode": "content", "offset": 3, "max_results": 2},
            _ctx(tmp_path),
        )
    )
    lines = [match[0]["content"] for match in result["results"][0]["matches"]]
    assert lines == ["hit 3", "hit 4"]


@pytest.mark.asyncio
async def test_grep_invalid_regex(tmp_path) -> None:
    with pytest.raises(ToolError, match="invalid regex"):
        await GrepTool().call({"pattern": "("}, _ctx(tmp_path))


@pytest.mark.asyncio
async def test_grep_truncation_names_next_offset(tmp_path) -> None:
    (tmp_path / "wide.txt").write_text("".join("match " + "x" * 500 + "\n" for _ in range(80)), encoding="utf-8")
    registry = ToolRegistry([GrepTool()])
    call = ToolCall(id="c1", name="grep", arguments=json.dumps({"pattern": "match", "output_mode": "content"}))

    outcome = await registry.dispatch(call, _ctx(tmp_path))

    assert outcome.truncated
    assert outcome.content.startswith('{"count"')
    assert "use offset=100 to continue" in outcome.content
    assert len(outcome.content) < 21_000


def test_is_binary_file(tmp_path) -> None:
    text = tmp_path / "t.txt"
    text.write_text("plain", encoding="utf-8")
    image = tmp_path / "i.png"
    image.write_bytes(b"png")
    assert not is_binary_file(str(text))
    assert is_binary_file(str(image))
