from __future__ import annotations

import base64
import os
from typing import TYPE_CHECKING, Any, Dict, Optional

from ..errors import ToolError
from .base import Tool, ToolContext, require_string, to_json

if TYPE_CHECKING:  # pragma: no cover - typing-only imports
    from ..provider import ProviderClient

MAX_IMAGE_BYTES = 5 * 1024 * 1024

MIME_TYPES = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".webp": "image/webp",
}


def image_data_uri(path: str) -> str:
    mime = MIME_TYPES.get(os.path.splitext(path)[1].lower(), "image/jpeg")
    with open(path, "rb") as handle:
        encoded = base64.b64encode(handle.read()).decode("ascii")
    return f"data:{mime};base64,{encoded}"


class VisionTool(Tool):
    name = "analyze_image"
    description = (
        "Analyze an image file using vision AI to answer questions about its contents, "
        "extract information, or describe what it shows."
    )

    def __init__(self, provider: Optional["ProviderClient"], model: Optional[str]) -> None:
        self.provider = provider
        self.model = model

    def parameters(self) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "image_path": {"type": "string", "description": "Path to the image file (relative to workspace root)."},
                "prompt": {"type": "string", "description": "Question or instruction about the image."},
            },
            "required": ["image_path", "prompt"],
        }

    async def call(self, args: Dict[str, Any], ctx: ToolContext) -> str:
        image_path = require_string(args, "image_path")
        prompt = require_string(args, "prompt")
        if self.provider is None or not self.model:
            raise ToolError("vision analysis requires a configured provider and vision_model")

        abs_path = ctx.guard.resolve(image_path)
        try:
            size = os.path.getsize(abs_path)
        except OSError as exc:
            raise ToolError(f"failed to access image: {exc.strerror or exc}") from exc
        if size > MAX_IMAGE_BYTES:
            raise ToolError(f"image size ({size} bytes) exceeds 5MB limit")

        analysis = await self.provider.describe_image(self.model, image_data_uri(abs_path), prompt)
        return to_json(
            {
                "image_path": ctx.guard.rel(abs_path),
                "prompt": prompt,
                "provider": self.provider.name,
                "model": self.model,
                "analysis": analysis,
            }
        )
