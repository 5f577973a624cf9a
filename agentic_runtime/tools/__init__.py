"""Tool substrate: registry, capability interface and the default tool set."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

import httpx

from ..path_guard import PathGuard
from ..processes import ProcessSupervisor
from .base import (
    MAX_TOOL_RESULT_CHARS,
    Tool,
    ToolContext,
    ToolOutcome,
    ToolRegistry,
)
from .files import EditFileTool, ListDirectoryTool, ReadFileTool, WriteFileTool
from .patch import ApplyPatchTool
from .plan import PlanSnapshot, PlanStep, PlanTool
from .search import GlobTool, GrepTool
from .shell import BackgroundProcessTool, ShellTool
from .system import DateTimeTool, WorkingDirectoryTool
from .vision import VisionTool
from .web import WebFetchJSONTool

if TYPE_CHECKING:  # pragma: no cover - typing-only imports
    from ..provider import ProviderClient

__all__ = [
    "MAX_TOOL_RESULT_CHARS",
    "MUTATING_TOOLS",
    "PlanSnapshot",
    "PlanStep",
    "Tool",
    "ToolContext",
    "ToolOptions",
    "ToolOutcome",
    "ToolRegistry",
    "Toolbox",
    "build_toolbox",
    "default_registry",
]

MUTATING_TOOLS = frozenset({"write_file", "edit_file", "apply_patch"})


@dataclass
class ToolOptions:
    workspace_root: str
    plan_path: Optional[str] = None
    process_dir: Optional[str] = None
    bin_dir: Optional[str] = None
    shell_timeout: float = 60.0
    provider: Optional["ProviderClient"] = None
    vision_model: Optional[str] = None
    web_transport: Optional[httpx.AsyncBaseTransport] = None


@dataclass
class Toolbox:
    guard: PathGuard
    registry: ToolRegistry
    supervisor: ProcessSupervisor
    plan: PlanTool


def _resolve_under(guard: PathGuard, value: Optional[str], default_name: str) -> str:
    if not value:
        return os.path.join(guard.root, default_name)
    if os.path.isabs(value):
        return os.path.normpath(value)
    return guard.resolve(value)


def build_toolbox(options: ToolOptions) -> Toolbox:
    guard = PathGuard(options.workspace_root)
    bin_dir = _resolve_under(guard, options.bin_dir, "bin")
    plan_path = _resolve_under(guard, options.plan_path, "plan.json")
    process_dir = _resolve_under(guard, options.process_dir, "processes")

    supervisor = ProcessSupervisor(guard, process_dir, bin_dir=bin_dir)
    plan = PlanTool(plan_path)
    registry = ToolRegistry(
        [
            DateTimeTool(),
            WorkingDirectoryTool(),
            ListDirectoryTool(),
            ReadFileTool(),
            ShellTool(supervisor, timeout=options.shell_timeout, bin_dir=bin_dir),
            plan,
            WebFetchJSONTool(timeout_s=options.shell_timeout, transport=options.web_transport),
            WriteFileTool(),
            EditFileTool(),
            ApplyPatchTool(),
            GlobTool(),
            GrepTool(),
            VisionTool(options.provider, options.vision_model),
            BackgroundProcessTool(supervisor),
        ]
    )
    return Toolbox(guard=guard, registry=registry, supervisor=supervisor, plan=plan)


def default_registry(options: ToolOptions) -> ToolRegistry:
    return build_toolbox(options).registry
