"""HTTP/SSE bridge exposing an ``Agent`` over FastAPI."""

from .app import create_app

__all__ = ["create_app"]
