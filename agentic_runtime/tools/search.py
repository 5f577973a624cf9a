"""Filename and content search tools."""

from __future__ import annotations

import asyncio
import fnmatch
import glob as globlib
import os
import re
from typing import Any, Dict, List, Optional, Pattern, Tuple

from ..errors import ToolError
from ..path_guard import PathGuard
from .base import Tool, ToolContext, bool_arg, int_arg, require_string, string_arg, to_json

DEFAULT_MAX_RESULTS = 100
GREP_RESULT_CHARS = 20_000

BINARY_EXTENSIONS = frozenset(
    {
        ".exe", ".dll", ".so", ".dylib", ".bin", ".dat", ".db", ".sqlite",
        ".jpg", ".jpeg", ".png", ".gif", ".webp", ".ico", ".pdf", ".zip",
        ".tar", ".gz", ".bz2", ".xz", ".7z", ".mp3", ".mp4", ".avi", ".mov",
        ".pyc", ".class", ".o", ".a", ".woff", ".woff2", ".ttf",
    }
)


def is_binary_file(path: str) -> bool:
    if os.path.splitext(path)[1].lower() in BINARY_EXTENSIONS:
        return True
    try:
        with open(path, "rb") as handle:
            return b"\x00" in handle.read(1024)
    except OSError:
        return True


class GlobTool(Tool):
    name = "glob"
    description = (
        "Find files by glob pattern (supports ** for recursive matching). "
        "Results are sorted by modification time, newest first."
    )

    def parameters(self) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "pattern": {"type": "string", "description": "Glob pattern such as '**/*.py' or 'src/*.ts'."},
                "path": {"type": "string", "description": "Directory to search from (default workspace root)."},
                "max_results": {
                    "type": "integer",
                    "description": f"Maximum number of files to return (default {DEFAULT_MAX_RESULTS}).",
                },
            },
            "required": ["pattern"],
        }

    async def call(self, args: Dict[str, Any], ctx: ToolContext) -> str:
        pattern = require_string(args, "pattern")
        root = ctx.guard.resolve(string_arg(args, "path"))
        max_results = int_arg(args, "max_results", DEFAULT_MAX_RESULTS)
        if max_results <= 0:
            max_results = DEFAULT_MAX_RESULTS
        files = await asyncio.to_thread(_glob_files, ctx.guard, root, pattern)
        paths = [path for path, _ in files[:max_results]]
        return to_json({"pattern": pattern, "count": len(paths), "files": paths})


def _glob_files(guard: PathGuard, root: str, pattern: str) -> List[Tuple[str, float]]:
    found: List[Tuple[str, float]] = []
    for match in globlib.glob(os.path.join(root, pattern), recursive=True):
        candidate = os.path.normpath(match)
        if not guard.contains(candidate) or not os.path.isfile(candidate):
            continue
        try:
            mtime = os.path.getmtime(candidate)
        except OSError:
            continue
        found.append((guard.rel(candidate), mtime))
    found.sort(key=lambda item: item[1], reverse=True)
    return found


class GrepTool(Tool):
    name = "grep"
    description = (
        "Search file contents using regex patterns. Returns matching lines or file paths. "
        "In content mode each match is a list of line objects with 'line', 'type' (match/context) "
        "and 'content' fields. Supports context lines, case-insensitive search and glob filtering."
    )
    max_result_chars = GREP_RESULT_CHARS

    def parameters(self) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "pattern": {"type": "string", "description": "Regular expression pattern to search for."},
                "path": {"type": "string", "description": "File or directory to search (default: workspace root)."},
                "glob": {"type": "string", "description": "Glob pattern to filter file names (e.g. '*.py')."},
                "case_insensitive": {"type": "boolean", "description": "Case-insensitive search (default false)."},
                "output_mode": {
                    "type": "string",
                    "enum": ["content", "files", "count"],
                    "description": "'content' (matching lines), 'files' (paths only, default), 'count' (counts).",
                },
                "context_before": {"type": "integer", "description": "Lines to show before each match."},
                "context_after": {"type": "integer", "description": "Lines to show after each match."},
                "max_results": {
                    "type": "integer",
                    "description": f"Maximum number of matches to return (default {DEFAULT_MAX_RESULTS}).",
                },
                "offset": {"type": "integer", "description": "Skip the first N matches (pagination). Default 0."},
            },
            "required": ["pattern"],
        }

    def truncation_hint(self, original_len: int, args: Dict[str, Any]) -> str:
        offset = max(int_arg(args, "offset", 0), 0)
        max_results = int_arg(args, "max_results", DEFAULT_MAX_RESULTS)
        if max_results <= 0:
            max_results = DEFAULT_MAX_RESULTS
        return (
            f"\n\n[TRUNCATED: Grep result too large ({original_len} chars). "
            f"Showing first {self.max_result_chars} chars. "
            f"To see more results, use offset={offset + max_results} to continue from where this left off.]"
        )

    async def call(self, args: Dict[str, Any], ctx: ToolContext) -> str:
        raw_pattern = require_string(args, "pattern")
        flags = re.IGNORECASE if bool_arg(args, "case_insensitive") else 0
        try:
            pattern = re.compile(raw_pattern, flags)
        except re.error as exc:
            raise ToolError(f"invalid regex pattern: {exc}") from exc

        root = ctx.guard.resolve(string_arg(args, "path"))
        if not os.path.exists(root):
            raise ToolError(f"{ctx.guard.rel(root)} does not exist")
        mode = string_arg(args, "output_mode").strip().lower() or "files"
        if mode not in ("content", "files", "count"):
            raise ToolError(f"unsupported output_mode {mode}")
        search = _GrepSearch(
            guard=ctx.guard,
            pattern=pattern,
            glob=string_arg(args, "glob") or None,
            mode=mode,
            before=max(int_arg(args, "context_before", 0), 0),
            after=max(int_arg(args, "context_after", 0), 0),
            max_results=int_arg(args, "max_results", DEFAULT_MAX_RESULTS) or DEFAULT_MAX_RESULTS,
            offset=max(int_arg(args, "offset", 0), 0),
        )
        result = await asyncio.to_thread(search.run, root)
        return to_json(result)


class _GrepSearch:
    def __init__(
        self,
        *,
        guard: PathGuard,
        pattern: Pattern[str],
        glob: Optional[str],
        mode: str,
        before: int,
        after: int,
        max_results: int,
        offset: int,
    ) -> None:
        self.guard = guard
        self.pattern = pattern
        self.glob = glob
        self.mode = mode
        self.before = before
        self.after = after
        self.max_results = max_results
        self.offset = offset
        self._skipped = 0
        self._total = 0

    def run(self, root: str) -> Dict[str, Any]:
        results: List[Dict[str, Any]] = []
        for path in self._iter_files(root):
            if self._total >= self.max_results:
                break
            entry = self._search_file(path)
            if entry is not None:
                results.append(entry)

        if self.mode == "files":
            files = [entry["path"] for entry in results]
            return {"count": len(files), "files": files}
        return {"count": len(results), "results": results}

    def _iter_files(self, root: str):
        if os.path.isfile(root):
            yield root
            return
        for dirpath, dirnames, filenames in os.walk(root):
            dirnames[:] = sorted(name for name in dirnames if name not in (".git", "node_modules", "__pycache__"))
            for name in sorted(filenames):
                if self.glob and not fnmatch.fnmatch(name, self.glob):
                    continue
                path = os.path.join(dirpath, name)
                if is_binary_file(path):
                    continue
                yield path

    def _search_file(self, path: str) -> Optional[Dict[str, Any]]:
        try:
            with open(path, "r", encoding="utf-8", errors="replace") as handle:
                lines = handle.read().splitlines()
        except OSError:
            return None

        matches: List[List[Dict[str, Any]]] = []
        count = 0
        for idx, line in enumerate(lines):
            if not self.pattern.search(line):
                continue
            if self._skipped < self.offset:
                self._skipped += 1
                continue
            if self._total >= self.max_results:
                break
            count += 1
            self._total += 1
            if self.mode == "content":
                matches.append(self._with_context(lines, idx))

        if count == 0:
            return None
        entry: Dict[str, Any] = {"path": self.guard.rel(path), "count": count}
        if self.mode == "content":
            entry["matches"] = matches
        return entry

    def _with_context(self, lines: List[str], idx: int) -> List[Dict[str, Any]]:
        start = max(idx - self.before, 0)
        end = min(idx + self.after + 1, len(lines))
        block = []
        for j in range(start, end):
            block.append({"line": j + 1, "type": "match" if j == idx else "context", "content": lines[j]})
        return block
