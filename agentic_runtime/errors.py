from __future__ import annotations

from typing import Any, Dict, Optional


class RuntimeFailure(RuntimeError):
    """Base class for errors raised by the runtime."""

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.details: Dict[str, Any] = details or {}


class PathEscapeError(RuntimeFailure):
    """Raised when a path resolves outside the workspace root."""


class PatchError(RuntimeFailure):
    """Raised when a patch cannot be parsed or applied."""


class ToolError(RuntimeFailure):
    """Raised by tool bodies for bad arguments or failed operations."""


class ProcessError(RuntimeFailure):
    """Raised by the background process supervisor."""


class TurnInProgressError(RuntimeFailure):
    """Raised when a turn is started while another one is still running."""


class ConfigError(RuntimeFailure):
    """Raised for invalid runtime configuration."""
