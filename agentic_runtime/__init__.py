"""
Agentic Runtime

A single-process coding-agent runtime: a turn loop that alternates provider
calls with sandboxed tool execution and reports progress as ordered events.
"""

from typing import TYPE_CHECKING

__all__ = [
    "Agent",
    "RuntimeConfig",
    "load_config",
    "PathGuard",
    "ToolRegistry",
    "default_registry",
]


if TYPE_CHECKING:  # pragma: no cover - typing-only imports
    from .config import RuntimeConfig, load_config  # noqa: F401
    from .orchestrator import Agent  # noqa: F401
    from .path_guard import PathGuard  # noqa: F401
    from .tools import ToolRegistry, default_registry  # noqa: F401


def __getattr__(name: str):
    """Lazy-import the public API."""
    if name == "Agent":
        from .orchestrator import Agent

        return Agent
    if name in {"RuntimeConfig", "load_config"}:
        from .config import RuntimeConfig, load_config

        return {"RuntimeConfig": RuntimeConfig, "load_config": load_config}[name]
    if name == "PathGuard":
        from .path_guard import PathGuard

        return PathGuard
    if name in {"ToolRegistry", "default_registry"}:
        from .tools import ToolRegistry, default_registry

        return {"ToolRegistry": ToolRegistry, "default_registry": default_registry}[name]
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
