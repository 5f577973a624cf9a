"""Synchronous shell execution and the background job tool."""

from __future__ import annotations

import asyncio
import logging
import os
import threading
import time
from typing import Any, Dict, List, Optional

from ..errors import ProcessError, ToolError
from ..processes import ProcessSupervisor, check_interactive, inject_path, parse_command
from .base import Tool, ToolContext, bool_arg, int_arg, require_string, string_arg, to_json

logger = logging.getLogger(__name__)

DEFAULT_SHELL_TIMEOUT = 60.0
MAX_SHELL_TIMEOUT = 300.0
REPEAT_WARNING_THRESHOLD = 3
REPEAT_ERROR_THRESHOLD = 5


def _command_arg(args: Dict[str, Any]) -> List[str]:
    if "command" not in args:
        raise ToolError("command is required")
    raw = args["command"]
    if isinstance(raw, str):
        if not raw.strip():
            raise ToolError("command must not be empty")
        try:
            argv = parse_command(raw)
        except ProcessError as exc:
            raise ToolError(f"failed to parse command string: {exc}") from exc
    elif isinstance(raw, list):
        if not all(isinstance(item, str) for item in raw):
            raise ToolError("command array must contain only strings")
        argv = list(raw)
    else:
        raise ToolError("command must be an array of strings or a command string")
    if not argv:
        raise ToolError("command must not be empty")
    return argv


class ShellTool(Tool):
    name = "shell"
    description = (
        "Execute commands within the workspace root. All file operations must stay inside the workspace "
        "tree. For long-running processes that don't exit (servers, watchers), use background=true."
    )

    def __init__(
        self,
        supervisor: Optional[ProcessSupervisor] = None,
        *,
        timeout: float = DEFAULT_SHELL_TIMEOUT,
        bin_dir: Optional[str] = None,
    ) -> None:
        self.supervisor = supervisor
        self.timeout = timeout if timeout > 0 else DEFAULT_SHELL_TIMEOUT
        self.bin_dir = bin_dir
        self._history: Dict[str, int] = {}
        self._history_lock = threading.Lock()

    def parameters(self) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "command": {
                    "description": (
                        "Command to execute. Either an array of strings ['ls', '-la'] "
                        "or a shell-style command string 'ls -la'."
                    ),
                    "oneOf": [{"type": "array", "items": {"type": "string"}}, {"type": "string"}],
                },
                "workdir": {"type": "string", "description": "Working directory relative to the workspace root."},
                "timeout_seconds": {
                    "type": "number",
                    "description": f"Override the default timeout. Maximum {int(MAX_SHELL_TIMEOUT)} seconds.",
                },
                "background": {
                    "type": "boolean",
                    "description": (
                        "Run command in background. Returns job_id immediately. Use the background_process "
                        "tool to check logs/status or kill the job."
                    ),
                },
            },
            "required": ["command"],
        }

    def _record(self, key: str) -> int:
        with self._history_lock:
            self._history[key] = self._history.get(key, 0) + 1
            return self._history[key]

    async def call(self, args: Dict[str, Any], ctx: ToolContext) -> str:
        argv = _command_arg(args)
        try:
            check_interactive(argv)
        except ProcessError as exc:
            logger.warning("shell: blocked interactive command %s", argv[0])
            raise ToolError(str(exc)) from exc
        workdir = string_arg(args, "workdir")
        cwd = ctx.guard.resolve(workdir)

        if bool_arg(args, "background"):
            if self.supervisor is None:
                raise ToolError("background mode not available")
            job = await self.supervisor.start(argv, workdir)
            return to_json({"job_id": job.id, "status": job.status, "pid": job.pid, "started_at": job.started_at})

        count = self._record(cwd + "|" + "\x00".join(argv))
        warning = None
        if count > REPEAT_ERROR_THRESHOLD:
            raise ToolError(f"refusing to run the same shell command again (repeated {count} times); change approach")
        if count > REPEAT_WARNING_THRESHOLD:
            warning = f"This command has been repeated {count} times. Consider a different approach."

        timeout = self.timeout
        override = args.get("timeout_seconds")
        if isinstance(override, (int, float)) and not isinstance(override, bool) and override > 0:
            timeout = float(override)
        if timeout > MAX_SHELL_TIMEOUT:
            raise ToolError(
                f"timeout_seconds cannot exceed {int(MAX_SHELL_TIMEOUT)} (5 minutes). "
                "For longer-running commands, use background=true"
            )

        result = await self._run(argv, cwd, timeout)
        if warning:
            logger.warning("shell: %s", warning)
            result["warning"] = warning
        return to_json(result)

    async def _run(self, argv: List[str], cwd: str, timeout: float) -> Dict[str, Any]:
        logger.debug("shell: executing %s in %s", argv, cwd)
        started = time.monotonic()
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=cwd,
                env=inject_path(os.environ, self.bin_dir),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            return {
                "workdir": cwd,
                "stdout": "",
                "stderr": "",
                "exit_code": -1,
                "duration_ms": int((time.monotonic() - started) * 1000),
                "error": str(exc),
            }

        timed_out = False
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout)
        except asyncio.TimeoutError:
            process.kill()
            stdout, stderr = await process.communicate()
            timed_out = True
        except asyncio.CancelledError:
            if process.returncode is None:
                process.kill()
                await process.wait()
            raise

        exit_code = process.returncode if process.returncode is not None else -1
        result: Dict[str, Any] = {
            "workdir": cwd,
            "stdout": stdout.decode("utf-8", errors="replace"),
            "stderr": stderr.decode("utf-8", errors="replace"),
            "exit_code": exit_code,
            "duration_ms": int((time.monotonic() - started) * 1000),
        }
        if timed_out:
            logger.warning("shell: command timed out after %ss: %s", int(timeout), argv)
            result["error"] = f"Command timed out after {int(timeout)} seconds and was killed. Output may be incomplete."
            result["timed_out"] = True
        elif exit_code != 0:
            result["error"] = f"exit status {exit_code}"
        logger.debug("shell: completed in %dms with exit code %d", result["duration_ms"], exit_code)
        return result


class BackgroundProcessTool(Tool):
    name = "background_process"
    description = "Manage long-running shell commands. Actions: start, list, logs, kill."

    def __init__(self, supervisor: ProcessSupervisor) -> None:
        self.supervisor = supervisor

    def parameters(self) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "action": {"type": "string", "description": "start | list | logs | kill"},
                "command": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": "Command + args (start action only).",
                },
                "workdir": {"type": "string", "description": "Optional working directory relative to workspace root."},
                "job_id": {"type": "string", "description": "Target job id for logs/kill."},
                "stream": {"type": "string", "description": "stdout (default) or stderr for logs action."},
                "tail_lines": {"type": "integer", "description": "Logs: number of lines from the end (default 50)."},
                "grep": {"type": "string", "description": "Logs: optional substring filter."},
            },
            "required": ["action"],
        }

    async def call(self, args: Dict[str, Any], ctx: ToolContext) -> str:
        action = require_string(args, "action").strip().lower()
        if action == "start":
            argv = _command_arg(args)
            job = await self.supervisor.start(argv, string_arg(args, "workdir"))
            return to_json({"job_id": job.id, "status": job.status, "pid": job.pid, "started_at": job.started_at})
        if action == "list":
            return to_json([job.view() for job in self.supervisor.list_jobs()])
        if action == "logs":
            job_id = require_string(args, "job_id").strip()
            return to_json(
                self.supervisor.logs(
                    job_id,
                    stream=string_arg(args, "stream", "stdout"),
                    tail_lines=int_arg(args, "tail_lines", 50),
                    grep=string_arg(args, "grep") or None,
                )
            )
        if action == "kill":
            job_id = require_string(args, "job_id").strip()
            return to_json(self.supervisor.kill(job_id))
        raise ToolError(f"unknown action {action}")
