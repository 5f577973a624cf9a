from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

import httpx
from bs4 import BeautifulSoup

from ..errors import ToolError
from .base import Tool, ToolContext, bool_arg, int_arg, require_string, to_json

MAX_RESPONSE_BYTES = 2 * 1024 * 1024
MIN_PARAGRAPH_CHARS = 40
USER_AGENT = "AgenticRuntime/1.0"

_WS_RE = re.compile(r"\s+")


def normalize_whitespace(text: str) -> str:
    return _WS_RE.sub(" ", text).strip()


class WebFetchJSONTool(Tool):
    name = "web_fetch_json"
    description = "Fetch a web page and return cleaned JSON (title, description, headings, paragraphs)."

    def __init__(self, *, timeout_s: float = 30.0, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.timeout_s = timeout_s if timeout_s > 0 else 30.0
        self.transport = transport

    def parameters(self) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "url": {"type": "string", "description": "Absolute URL to fetch (http or https)."},
                "max_paragraphs": {
                    "type": "integer",
                    "description": "Maximum number of paragraph snippets to include (default 5).",
                },
                "include_headings": {
                    "type": "boolean",
                    "description": "Whether to include h1-h3 headings (default true).",
                },
            },
            "required": ["url"],
        }

    async def call(self, args: Dict[str, Any], ctx: ToolContext) -> str:
        url = require_string(args, "url").strip()
        if urlparse(url).scheme not in ("http", "https"):
            raise ToolError("url must be an absolute http(s) URL")
        max_paragraphs = int_arg(args, "max_paragraphs", 5)
        if max_paragraphs <= 0:
            max_paragraphs = 5
        include_headings = bool_arg(args, "include_headings", True)

        body = bytearray()
        truncated = False
        async with httpx.AsyncClient(
            timeout=self.timeout_s,
            follow_redirects=True,
            transport=self.transport,
            headers={"User-Agent": USER_AGENT},
        ) as client:
            try:
                async with client.stream("GET", url) as response:
                    async for chunk in response.aiter_bytes():
                        remaining = MAX_RESPONSE_BYTES - len(body)
                        if len(chunk) >= remaining:
                            body.extend(chunk[:remaining])
                            truncated = True
                            break
                        body.extend(chunk)
                    status = response.status_code
                    final_url = str(response.url)
            except httpx.HTTPError as exc:
                raise ToolError(f"fetch {url}: {exc}") from exc

        soup = BeautifulSoup(bytes(body), "html.parser")
        title = normalize_whitespace(soup.title.get_text()) if soup.title else ""
        meta = soup.find("meta", attrs={"name": "description"})
        description = normalize_whitespace(meta.get("content", "")) if meta else ""

        headings: List[str] = []
        if include_headings:
            for node in soup.find_all(["h1", "h2", "h3"]):
                text = normalize_whitespace(node.get_text(" "))
                if text:
                    headings.append(text)

        paragraphs: List[str] = []
        for node in soup.find_all("p"):
            if len(paragraphs) >= max_paragraphs:
                break
            text = normalize_whitespace(node.get_text(" "))
            if len(text) < MIN_PARAGRAPH_CHARS:
                continue
            paragraphs.append(text)

        return to_json(
            {
                "url": final_url,
                "status": status,
                "fetched_at": datetime.now(timezone.utc).isoformat(timespec="seconds"),
                "bytes_downloaded": len(body),
                "truncated": truncated,
                "title": title,
                "description": description,
                "headings": headings,
                "paragraphs": paragraphs,
            }
        )
