from __future__ import annotations

from datetime import datetime
from typing import Any, Dict

from .base import Tool, ToolContext, string_arg


class DateTimeTool(Tool):
    name = "current_datetime"
    description = "Return the user's current local date and time. Optional strftime format override."

    def parameters(self) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "format": {"type": "string", "description": "Optional strftime format (default ISO 8601)."},
            },
        }

    async def call(self, args: Dict[str, Any], ctx: ToolContext) -> str:
        now = datetime.now().astimezone()
        fmt = string_arg(args, "format")
        if fmt:
            return now.strftime(fmt)
        return now.isoformat(timespec="seconds")


class WorkingDirectoryTool(Tool):
    name = "current_working_directory"
    description = "Return the absolute workspace root configured for the agent."

    async def call(self, args: Dict[str, Any], ctx: ToolContext) -> str:
        return ctx.guard.root
