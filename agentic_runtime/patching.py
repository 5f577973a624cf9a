"""Multi-file unified-diff patch parsing and application."""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from .errors import PatchError
from .path_guard import PathGuard

logger = logging.getLogger(__name__)


BEGIN_MARKER = "*** Begin Patch"
END_MARKER = "*** End Patch"
UPDATE_HEADER = "*** Update File:"
ADD_HEADER = "*** Add File:"
DELETE_HEADER = "*** Delete File:"
NO_NEWLINE_MARKER = "\\ No newline at end of file"

OP_UPDATE = "update"
OP_ADD = "add"
OP_DELETE = "delete"

_HEADERS = ((UPDATE_HEADER, OP_UPDATE), (ADD_HEADER, OP_ADD), (DELETE_HEADER, OP_DELETE))
_RANGE_RE = re.compile(r"^[-+]?(\d+)(?:,(\d+))?$")


@dataclass
class DiffLine:
    op: str  # " ", "+", "-"
    text: str


@dataclass
class DiffHunk:
    orig_start: int
    orig_count: int
    new_start: int
    new_count: int
    lines: List[DiffLine] = field(default_factory=list)
    # None: no marker; True: new side ends without newline; False: only old side did.
    new_missing_newline: Optional[bool] = None


@dataclass
class PatchSection:
    op: str = ""
    path: str = ""
    body: List[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def _patch_lines(text: str) -> List[str]:
    """Split on ``\\n`` only, dropping one trailing ``\\r`` per line."""
    lines = text.split("\n")
    if lines and lines[-1] == "":
        lines.pop()
    return [line[:-1] if line.endswith("\r") else line for line in lines]


def parse_sections(text: str) -> List[PatchSection]:
    """Split a patch submission into sections with a single forward scan."""
    sections: List[PatchSection] = []
    current: Optional[PatchSection] = None
    just_closed = False

    for line_no, line in enumerate(_patch_lines(text), start=1):
        if line.startswith(BEGIN_MARKER):
            if current is not None:
                raise PatchError(f"nested patch block at line {line_no}")
            current = PatchSection()
            just_closed = False
            continue

        if line.startswith(END_MARKER):
            if current is None:
                # A repeated terminator right after a closed block is tolerated.
                if just_closed:
                    continue
                raise PatchError(f"unexpected {END_MARKER} at line {line_no}")
            if not current.op or not current.path:
                raise PatchError(f"patch block missing header before line {line_no}")
            sections.append(current)
            current = None
            just_closed = True
            continue

        header = _match_header(line)
        if header is not None:
            op, path = header
            if current is None:
                raise PatchError(f"{op} header outside patch at line {line_no}")
            if current.op:
                raise PatchError(f"multiple headers in patch block at line {line_no}")
            current.op = op
            current.path = path
            continue

        if current is None:
            if not line.strip():
                continue
            raise PatchError(f"unexpected line outside patch at line {line_no}")
        current.body.append(line)

    if current is not None:
        raise PatchError("unterminated patch block")
    if not sections:
        raise PatchError("no patch blocks found")
    return sections


def _match_header(line: str) -> Optional[Tuple[str, str]]:
    for prefix, op in _HEADERS:
        if line.startswith(prefix):
            return op, line[len(prefix):].strip()
    return None


def validate_path(guard: PathGuard, path: str) -> str:
    trimmed = path.strip()
    if not trimmed:
        raise PatchError("patch path is empty")
    if os.path.isabs(trimmed):
        raise PatchError(f"patch path {trimmed!r} must be relative")
    if ".." in trimmed.replace("\\", "/").split("/"):
        raise PatchError(f"patch path {trimmed!r} escapes workspace")
    return guard.resolve(trimmed)


def parse_hunk_header(line: str) -> Tuple[int, int, int, int]:
    stripped = line.strip()
    if not stripped.startswith("@@"):
        raise PatchError(f"invalid hunk header: {line}")
    ranges = stripped[2:].split("@@", 1)[0].split()
    if len(ranges) < 2:
        raise PatchError(f"invalid hunk header: {line}")
    orig_start, orig_count = _parse_range(ranges[0], line)
    new_start, new_count = _parse_range(ranges[1], line)
    return orig_start, orig_count, new_start, new_count


def _parse_range(text: str, line: str) -> Tuple[int, int]:
    match = _RANGE_RE.match(text)
    if match is None:
        raise PatchError(f"invalid hunk header: {line}")
    start = int(match.group(1))
    count = int(match.group(2)) if match.group(2) is not None else 1
    return start, count


def parse_hunks(body: Sequence[str]) -> List[DiffHunk]:
    hunks: List[DiffHunk] = []
    current: Optional[DiffHunk] = None
    for line in body:
        if line.startswith("@@"):
            current = DiffHunk(*parse_hunk_header(line))
            hunks.append(current)
            continue
        if line == NO_NEWLINE_MARKER:
            if current is not None and current.lines:
                current.new_missing_newline = current.lines[-1].op != "-"
            continue
        if current is None:
            if not line.strip():
                continue
            raise PatchError(f"unexpected content outside hunk: {line}")
        if line == "":
            # Bare empty line: empty context line.
            current.lines.append(DiffLine(" ", ""))
            continue
        op = line[0]
        if op not in (" ", "+", "-"):
            raise PatchError(f"invalid hunk line: {line}")
        current.lines.append(DiffLine(op, line[1:]))
    if not hunks:
        raise PatchError("no hunks found")
    return hunks


def contains_hunk_header(body: Sequence[str]) -> bool:
    return any(line.startswith("@@") for line in body)


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------


def apply_hunks(original: Sequence[str], hunks: Sequence[DiffHunk]) -> List[str]:
    """Walk ``original`` with a cursor, applying each hunk in order."""
    result: List[str] = []
    cursor = 0
    for hunk in hunks:
        start = max(hunk.orig_start - 1, 0)
        if start > len(original):
            raise PatchError(f"hunk starts beyond EOF (line {hunk.orig_start})")
        if start < cursor:
            raise PatchError(f"overlapping hunk at original line {hunk.orig_start}")
        result.extend(original[cursor:start])
        cursor = start

        for diff_line in hunk.lines:
            if diff_line.op == "+":
                result.append(diff_line.text)
                continue
            if cursor >= len(original):
                if diff_line.op == " ":
                    raise PatchError("context line exceeds original length")
                raise PatchError("deletion exceeds original length")
            current = original[cursor]
            if current != diff_line.text:
                kind = "context" if diff_line.op == " " else "delete"
                raise PatchError(f"{kind} mismatch: expected {diff_line.text!r}, got {current!r}")
            if diff_line.op == " ":
                result.append(current)
            cursor += 1

    result.extend(original[cursor:])
    return result


def split_lines(content: str) -> Tuple[List[str], bool]:
    if content == "":
        return [], False
    had_newline = content.endswith("\n")
    trimmed = content[:-1] if had_newline else content
    if trimmed == "":
        return [], had_newline
    return trimmed.split("\n"), had_newline


def join_lines(lines: Sequence[str], trailing_newline: bool) -> str:
    if not lines:
        return "\n" if trailing_newline else ""
    out = "\n".join(lines)
    return out + "\n" if trailing_newline else out


def _trailing_newline(hunks: Sequence[DiffHunk], default: bool) -> bool:
    for hunk in reversed(hunks):
        if hunk.new_missing_newline is not None:
            return not hunk.new_missing_newline
    return default


def _strip_add_prefix(body: Sequence[str]) -> List[str]:
    return [line[1:] if line.startswith("+") else line for line in body]


class _StagedTree:
    """In-memory view of the files touched by a patch, committed only on success."""

    def __init__(self, guard: PathGuard) -> None:
        self.guard = guard
        self._pending: Dict[str, Optional[str]] = {}
        self._order: List[str] = []

    def exists(self, abs_path: str) -> bool:
        if abs_path in self._pending:
            return self._pending[abs_path] is not None
        return os.path.isfile(abs_path)

    def read(self, abs_path: str, display: str) -> str:
        if abs_path in self._pending:
            staged = self._pending[abs_path]
            if staged is None:
                raise PatchError(f"read {display}: file was deleted earlier in this patch")
            return staged
        try:
            with open(abs_path, "r", encoding="utf-8", newline="") as handle:
                return handle.read()
        except OSError as exc:
            raise PatchError(f"read {display}: {exc.strerror or exc}") from exc

    def check_writable(self, abs_path: str, display: str) -> None:
        """Reject targets that commit could not create as regular files."""
        if abs_path not in self._pending and os.path.isdir(abs_path):
            raise PatchError(f"path {display} is a directory")
        parent = os.path.dirname(abs_path)
        while parent != self.guard.root and self.guard.contains(parent):
            staged = parent in self._pending
            if (staged and self._pending[parent] is not None) or (not staged and os.path.isfile(parent)):
                raise PatchError(f"parent of {display} is a file")
            parent = os.path.dirname(parent)

    def write(self, abs_path: str, content: Optional[str]) -> None:
        if abs_path not in self._pending:
            self._order.append(abs_path)
        self._pending[abs_path] = content

    def commit(self) -> None:
        for abs_path in self._order:
            content = self._pending[abs_path]
            if content is None:
                if os.path.exists(abs_path):
                    os.remove(abs_path)
                continue
            parent = os.path.dirname(abs_path)
            if parent:
                os.makedirs(parent, exist_ok=True)
            with open(abs_path, "w", encoding="utf-8", newline="") as handle:
                handle.write(content)


def _stage_section(tree: _StagedTree, section: PatchSection) -> None:
    abs_path = tree.guard.resolve(section.path.strip())
    display = section.path

    if section.op == OP_UPDATE:
        original = tree.read(abs_path, display)
        try:
            hunks = parse_hunks(section.body)
        except PatchError as exc:
            raise PatchError(f"parse patch for {display}: {exc}") from exc
        orig_lines, had_newline = split_lines(original)
        try:
            new_lines = apply_hunks(orig_lines, hunks)
        except PatchError as exc:
            raise PatchError(f"apply patch for {display}: {exc}") from exc
        default_newline = had_newline or not original
        tree.write(abs_path, join_lines(new_lines, _trailing_newline(hunks, default_newline)))
        return

    if section.op == OP_ADD:
        if tree.exists(abs_path):
            raise PatchError(f"file {display} already exists")
        tree.check_writable(abs_path, display)
        if contains_hunk_header(section.body):
            try:
                hunks = parse_hunks(section.body)
                new_lines = apply_hunks([], hunks)
            except PatchError as exc:
                raise PatchError(f"patch for {display}: {exc}") from exc
            tree.write(abs_path, join_lines(new_lines, _trailing_newline(hunks, True)))
            return
        content = "\n".join(_strip_add_prefix(section.body))
        tree.write(abs_path, content + "\n" if content else "")
        return

    if section.op == OP_DELETE:
        if not tree.exists(abs_path):
            raise PatchError(f"file {display} does not exist")
        tree.write(abs_path, None)
        return

    raise PatchError(f"unknown patch op {section.op!r}")


def apply_patch(guard: PathGuard, text: str) -> str:
    """Parse ``text`` and apply every section, all or nothing.

    Sections are evaluated in document order against a staged view of the
    workspace, so later sections observe earlier ones; the disk is only
    written once every section has applied cleanly.
    """
    sections = parse_sections(text)
    for section in sections:
        validate_path(guard, section.path)

    tree = _StagedTree(guard)
    for section in sections:
        _stage_section(tree, section)
    tree.commit()
    logger.debug("applied %d patch section(s) under %s", len(sections), guard.root)
    return f"Applied {len(sections)} patch block(s)."
