"""File inspection and mutation tools confined to the workspace root."""

from __future__ import annotations

import os
from typing import Any, Dict, List, Tuple

from ..errors import ToolError
from .base import Tool, ToolContext, bool_arg, int_arg, require_string, string_arg, to_json

DEFAULT_MAX_ENTRIES = 200
DEFAULT_MAX_BYTES = 4096


def _entry_type(is_dir: bool) -> str:
    return "directory" if is_dir else "file"


class ListDirectoryTool(Tool):
    name = "list_directory"
    description = (
        "List files within a directory, optionally recursively. "
        "All paths are constrained inside the workspace root."
    )

    def parameters(self) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "Directory path to list (default workspace root)."},
                "recursive": {"type": "boolean", "description": "Whether to walk subdirectories."},
                "include_hidden": {"type": "boolean", "description": "Include entries whose names start with '.'."},
                "max_entries": {
                    "type": "integer",
                    "description": f"Maximum number of entries to return (default {DEFAULT_MAX_ENTRIES}).",
                },
            },
        }

    async def call(self, args: Dict[str, Any], ctx: ToolContext) -> str:
        guard = ctx.guard
        root = guard.resolve(string_arg(args, "path"))
        if not os.path.isdir(root):
            if not os.path.exists(root):
                raise ToolError(f"{guard.rel(root)} does not exist")
            raise ToolError(f"{guard.rel(root)} is not a directory")
        include_hidden = bool_arg(args, "include_hidden")
        recursive = bool_arg(args, "recursive")
        max_entries = int_arg(args, "max_entries", DEFAULT_MAX_ENTRIES)
        if max_entries <= 0:
            max_entries = DEFAULT_MAX_ENTRIES

        entries: List[Dict[str, str]] = []
        truncated = False

        if recursive:
            for dirpath, dirnames, filenames in os.walk(root):
                dirnames.sort()
                if not include_hidden:
                    dirnames[:] = [name for name in dirnames if not name.startswith(".")]
                names = [(name, True) for name in dirnames] + [(name, False) for name in sorted(filenames)]
                for name, is_dir in names:
                    if not include_hidden and name.startswith("."):
                        continue
                    if len(entries) >= max_entries:
                        truncated = True
                        break
                    entries.append({"path": guard.rel(os.path.join(dirpath, name)), "type": _entry_type(is_dir)})
                if truncated:
                    break
        else:
            with os.scandir(root) as it:
                for item in sorted(it, key=lambda entry: entry.name):
                    if not include_hidden and item.name.startswith("."):
                        continue
                    if len(entries) >= max_entries:
                        truncated = True
                        break
                    entries.append({"path": guard.rel(item.path), "type": _entry_type(item.is_dir())})

        return to_json({"path": root, "entries": entries, "truncated": truncated})


class ReadFileTool(Tool):
    name = "read_file"
    description = (
        "Read a UTF-8 text file and return its contents (optionally truncated). "
        "The path must stay within the workspace root."
    )

    def parameters(self) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "Path to the file to read, relative to the workspace root."},
                "max_bytes": {
                    "type": "integer",
                    "description": f"Maximum number of bytes to return (default {DEFAULT_MAX_BYTES}).",
                },
            },
            "required": ["path"],
        }

    async def call(self, args: Dict[str, Any], ctx: ToolContext) -> str:
        path = require_string(args, "path")
        abs_path = ctx.guard.resolve(path)
        max_bytes = int_arg(args, "max_bytes", DEFAULT_MAX_BYTES)
        if max_bytes <= 0:
            max_bytes = DEFAULT_MAX_BYTES
        try:
            with open(abs_path, "rb") as handle:
                data = handle.read(max_bytes + 1)
        except FileNotFoundError as exc:
            raise ToolError(f"{path} does not exist") from exc
        except IsADirectoryError as exc:
            raise ToolError(f"{path} is a directory") from exc
        truncated = len(data) > max_bytes
        if truncated:
            data = data[:max_bytes]
        return to_json(
            {
                "path": ctx.guard.rel(abs_path),
                "bytes": len(data),
                "truncated": truncated,
                "content": data.decode("utf-8", errors="replace"),
            }
        )


# ---------------------------------------------------------------------------
# Mutation
# ---------------------------------------------------------------------------


def _read_lines(path: str) -> Tuple[List[str], bool]:
    try:
        with open(path, "r", encoding="utf-8", newline="") as handle:
            text = handle.read()
    except FileNotFoundError:
        return [], False
    trailing = text.endswith("\n")
    stripped = text.rstrip("\n")
    if not stripped:
        return [], bool(text)
    return stripped.split("\n"), trailing


def _write_lines(path: str, lines: List[str], trailing: bool) -> None:
    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)
    body = "\n".join(lines)
    if trailing:
        body += "\n"
    with open(path, "w", encoding="utf-8", newline="") as handle:
        handle.write(body)


def _split_content(content: str) -> List[str]:
    return content.replace("\r\n", "\n").replace("\r", "\n").split("\n")


class WriteFileTool(Tool):
    name = "write_file"
    description = (
        "Write text to a file. Supports overwriting, appending, inserting at a specific line, "
        "or replacing a line range."
    )

    def parameters(self) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "Path to the file relative to the workspace root."},
                "mode": {"type": "string", "description": "append (default), overwrite, insert, or replace."},
                "line": {
                    "type": "integer",
                    "description": "For insert mode: the 1-based line number to insert before (defaults to end).",
                },
                "start_line": {"type": "integer", "description": "For replace mode: starting line number (1-based)."},
                "end_line": {"type": "integer", "description": "For replace mode: ending line number (inclusive)."},
                "content": {"type": "string", "description": "Text to write. Use \\n for new lines."},
            },
            "required": ["path", "content"],
        }

    async def call(self, args: Dict[str, Any], ctx: ToolContext) -> str:
        path = require_string(args, "path")
        abs_path = ctx.guard.resolve(path)
        if "content" not in args:
            raise ToolError("content is required")
        content = string_arg(args, "content")
        mode = string_arg(args, "mode").strip().lower() or "append"
        rel = ctx.guard.rel(abs_path)

        if mode == "overwrite":
            parent = os.path.dirname(abs_path)
            if parent:
                os.makedirs(parent, exist_ok=True)
            with open(abs_path, "w", encoding="utf-8", newline="") as handle:
                handle.write(content)
            return to_json({"path": rel, "mode": mode, "bytes": len(content.encode("utf-8"))})

        if mode == "append":
            parent = os.path.dirname(abs_path)
            if parent:
                os.makedirs(parent, exist_ok=True)
            with open(abs_path, "a", encoding="utf-8", newline="") as handle:
                handle.write(content)
            return to_json({"path": rel, "mode": mode, "bytes": len(content.encode("utf-8"))})

        if mode == "insert":
            line = int_arg(args, "line", -1)
            if line == 0:
                raise ToolError("line numbers are 1-based")
            lines, trailing = _read_lines(abs_path)
            insert_at = len(lines)
            if 0 < line - 1 < len(lines):
                insert_at = line - 1
            if line == 1:
                insert_at = 0
            new_lines = _split_content(content)
            updated = lines[:insert_at] + new_lines + lines[insert_at:]
            _write_lines(abs_path, updated, trailing)
            return to_json({"path": rel, "mode": mode, "line": insert_at + 1, "lines_added": len(new_lines)})

        if mode == "replace":
            start = int_arg(args, "start_line", 0)
            end = int_arg(args, "end_line", 0)
            if start <= 0 or end <= 0:
                raise ToolError("start_line and end_line must be positive for replace")
            if end < start:
                start, end = end, start
            lines, trailing = _read_lines(abs_path)
            start = min(start, len(lines) + 1)
            end = min(end, len(lines))
            start_idx = start - 1
            end_idx = max(end, start_idx)
            new_lines = _split_content(content)
            updated = lines[:start_idx] + new_lines + lines[end_idx:]
            _write_lines(abs_path, updated, trailing)
            return to_json(
                {
                    "path": rel,
                    "mode": mode,
                    "start_line": start,
                    "end_line": end,
                    "lines_written": len(new_lines),
                }
            )

        raise ToolError(f"unsupported mode {mode}")


class EditFileTool(Tool):
    name = "edit_file"
    description = (
        "Replace an exact string in a file. old_string must match exactly once unless replace_all is true."
    )

    def parameters(self) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "Path to the file relative to the workspace root."},
                "old_string": {"type": "string", "description": "Exact text to replace, including whitespace."},
                "new_string": {"type": "string", "description": "Replacement text."},
                "replace_all": {"type": "boolean", "description": "Replace every occurrence (default false)."},
            },
            "required": ["path", "old_string", "new_string"],
        }

    async def call(self, args: Dict[str, Any], ctx: ToolContext) -> str:
        path = require_string(args, "path")
        if "old_string" not in args:
            raise ToolError("old_string is required")
        if "new_string" not in args:
            raise ToolError("new_string is required")
        old = string_arg(args, "old_string")
        new = string_arg(args, "new_string")
        if not old:
            raise ToolError("old_string must not be empty")
        if old == new:
            raise ToolError("old_string and new_string must be different")
        replace_all = bool_arg(args, "replace_all")

        abs_path = ctx.guard.resolve(path)
        try:
            with open(abs_path, "r", encoding="utf-8", newline="") as handle:
                content = handle.read()
        except OSError as exc:
            raise ToolError(f"read file: {exc.strerror or exc}") from exc

        count = content.count(old)
        if count == 0:
            preview = old if len(old) <= 80 else old[:80] + "..."
            raise ToolError(f"old_string not found. Double-check whitespace/indentation. Preview: {preview!r}")
        if count > 1 and not replace_all:
            raise ToolError(
                f"old_string appears {count} times in the file. Use replace_all=true to replace all "
                "occurrences, or provide a larger unique string"
            )

        updated = content.replace(old, new) if replace_all else content.replace(old, new, 1)
        with open(abs_path, "w", encoding="utf-8", newline="") as handle:
            handle.write(updated)
        replaced = count if replace_all else 1
        return f"Successfully replaced {replaced} occurrence(s) in {path}"
