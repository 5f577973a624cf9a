from __future__ import annotations

import json
import os
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from ..errors import ToolError
from .base import Tool, ToolContext, int_arg, string_arg, to_json

PLAN_STATUSES: Tuple[str, ...] = ("pending", "in_progress", "completed")
HISTORY_SUFFIX = ".history.json"


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class PlanStep:
    status: str
    step: str

    def to_dict(self) -> Dict[str, Any]:
        return {"status": self.status, "step": self.step}


@dataclass
class PlanSnapshot:
    updated_at: Optional[str] = None
    steps: List[PlanStep] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"updated_at": self.updated_at, "steps": [step.to_dict() for step in self.steps]}

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "PlanSnapshot":
        steps = [
            PlanStep(status=str(item.get("status", "pending")), step=str(item.get("step", "")))
            for item in data.get("steps") or []
            if isinstance(item, dict)
        ]
        return PlanSnapshot(updated_at=data.get("updated_at"), steps=steps)

    def copy(self) -> "PlanSnapshot":
        return PlanSnapshot(updated_at=self.updated_at, steps=[PlanStep(s.status, s.step) for s in self.steps])


def parse_steps(raw: Any) -> List[PlanStep]:
    if not isinstance(raw, list):
        raise ToolError("steps must be an array")
    steps: List[PlanStep] = []
    for idx, item in enumerate(raw):
        if not isinstance(item, dict):
            raise ToolError(f"step {idx} is not an object")
        if "status" not in item:
            raise ToolError(f"step {idx} missing status")
        status = str(item["status"]).strip().lower()
        if status not in PLAN_STATUSES:
            raise ToolError(f"step {idx} has invalid status {status}")
        desc = str(item.get("step") or "").strip()
        if not desc:
            raise ToolError(f"step {idx} missing description")
        steps.append(PlanStep(status=status, step=desc))
    return steps


def plan_action(args: Dict[str, Any]) -> str:
    return string_arg(args, "action").strip().lower() or "update"


class PlanTool(Tool):
    """Persists the active execution plan plus an append-only history next to it.

    When the call carries a session path the plan is scoped to that session
    (``<session>-plan.json``) instead of the workspace-wide default file.
    """

    name = "update_plan"
    description = (
        "Update or fetch the active execution plan persisted on disk. "
        "Use action=history to view the last updates."
    )

    def __init__(self, path: str) -> None:
        self.path = path
        self._lock = threading.Lock()

    def parameters(self) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "action": {"type": "string", "description": "Either 'update' (default), 'get', or 'history'."},
                "steps": {
                    "type": "array",
                    "description": "List of plan steps when action is update.",
                    "items": {
                        "type": "object",
                        "properties": {
                            "status": {"type": "string", "description": "pending | in_progress | completed"},
                            "step": {"type": "string", "description": "Description of the task step."},
                        },
                        "required": ["status", "step"],
                    },
                },
                "limit": {
                    "type": "integer",
                    "description": "For history action: maximum number of recent entries to return (default 10).",
                },
            },
        }

    def paths_for(self, session_path: Optional[str]) -> Tuple[str, str]:
        if session_path:
            base = os.path.splitext(session_path)[0]
            plan_path = base + "-plan.json"
        else:
            plan_path = self.path
        return plan_path, plan_path + HISTORY_SUFFIX

    async def call(self, args: Dict[str, Any], ctx: ToolContext) -> str:
        plan_path, history_path = self.paths_for(ctx.session_path)
        action = plan_action(args)

        if action == "update":
            if "steps" not in args:
                raise ToolError("steps are required for update action")
            snapshot = PlanSnapshot(updated_at=_utc_now(), steps=parse_steps(args["steps"]))
            with self._lock:
                _write_json(plan_path, snapshot.to_dict())
                history = _read_json_list(history_path)
                history.append(snapshot.to_dict())
                _write_json(history_path, history)
            return to_json(snapshot.to_dict())

        if action == "get":
            with self._lock:
                snapshot = self.load(plan_path)
            return to_json(snapshot.to_dict())

        if action == "history":
            limit = max(int_arg(args, "limit", 10), 0)
            with self._lock:
                entries = _read_json_list(history_path)
            if limit and len(entries) > limit:
                entries = entries[-limit:]
            return to_json({"entries": entries})

        raise ToolError(f"unknown action {action}")

    def load(self, plan_path: Optional[str] = None) -> PlanSnapshot:
        path = plan_path or self.path
        try:
            with open(path, "r", encoding="utf-8") as handle:
                return PlanSnapshot.from_dict(json.load(handle))
        except FileNotFoundError:
            return PlanSnapshot()
        except ValueError as exc:
            raise ToolError(f"plan file {path} is corrupt: {exc}") from exc


def _write_json(path: str, payload: Any) -> None:
    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)
    with open(path, "w", encoding="utf-8") as handle:
        json.dump(payload, handle, indent=2)


def _read_json_list(path: str) -> List[Any]:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            raw = handle.read()
    except FileNotFoundError:
        return []
    if not raw.strip():
        return []
    try:
        data = json.loads(raw)
    except ValueError as exc:
        raise ToolError(f"plan history {path} is corrupt: {exc}") from exc
    return data if isinstance(data, list) else []
