from __future__ import annotations

from typing import Any, Dict

from ..patching import apply_patch
from .base import Tool, ToolContext, require_string


class ApplyPatchTool(Tool):
    name = "apply_patch"
    description = (
        "Apply one or more unified-diff patch blocks. Each block is wrapped in '*** Begin Patch' / "
        "'*** End Patch' and starts with '*** Update File: <path>', '*** Add File: <path>' or "
        "'*** Delete File: <path>'. Update bodies use standard '@@ -a,b +c,d @@' hunks. "
        "Either every block applies or none does."
    )

    def parameters(self) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "patch": {"type": "string", "description": "Patch text containing one or more patch blocks."},
            },
            "required": ["patch"],
        }

    async def call(self, args: Dict[str, Any], ctx: ToolContext) -> str:
        return apply_patch(ctx.guard, require_string(args, "patch"))
