"""Workspace path confinement for every filesystem-touching tool."""

from __future__ import annotations

import os

from .errors import PathEscapeError


class PathGuard:
    """Resolves tool-supplied paths and rejects anything outside ``root``.

    Resolution is purely lexical (``os.path.normpath``); no filesystem I/O is
    performed, so a rejected path is never touched.
    """

    def __init__(self, root: str) -> None:
        if not root:
            root = "."
        self.root = os.path.normpath(os.path.abspath(os.path.expanduser(root)))

    def resolve(self, path: str = "") -> str:
        if not path:
            return self.root
        if os.path.isabs(path):
            candidate = os.path.normpath(path)
        else:
            candidate = os.path.normpath(os.path.join(self.root, path))
        if not self.contains(candidate):
            raise PathEscapeError(f"path {path} escapes workspace root", details={"path": path, "root": self.root})
        return candidate

    def contains(self, abs_path: str) -> bool:
        if abs_path == self.root:
            return True
        prefix = self.root if self.root.endswith(os.sep) else self.root + os.sep
        return abs_path.startswith(prefix)

    def rel(self, abs_path: str) -> str:
        try:
            rel = os.path.relpath(abs_path, self.root)
        except ValueError:
            return abs_path
        return "." if rel == os.curdir else rel

    def __repr__(self) -> str:
        return f"PathGuard(root={self.root!r})"
