"""Pydantic models used by the HTTP bridge."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, validator


class StreamRequest(BaseModel):
    """Incoming payload for POST /api/stream."""

    content: str = Field(..., description="User supplied input text.")
    workspace: Optional[str] = Field(default=None, description="Optional explicit workspace root.")

    @validator("content")
    def _strip_content(cls, value: str) -> str:
        return (value or "").strip()


class PlanModeRequest(BaseModel):
    enabled: bool
    workspace: Optional[str] = None


class PlanModeResponse(BaseModel):
    plan_mode: bool
    workspace: str


class CancelResponse(BaseModel):
    canceled: bool


class ErrorResponse(BaseModel):
    message: str
    detail: Dict[str, Any] | None = None


class ProcessList(BaseModel):
    workspace: str
    jobs: List[Dict[str, Any]]
