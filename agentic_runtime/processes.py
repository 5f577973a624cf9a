"""Background process supervision: spawn, track, tail and kill long-running jobs."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import random
import shlex
import threading
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import IO, Any, Dict, List, Mapping, Optional, Sequence, Union

from .errors import ProcessError
from .path_guard import PathGuard

logger = logging.getLogger(__name__)


STATUS_RUNNING = "running"
STATUS_FAILED_START = "failed_start"
STATUS_EXITED = "exited"
STATUS_FAILED = "failed"
STATUS_KILLED = "killed"

BLOCKED_COMMANDS = ("sudo", "su", "passwd")
META_FILENAME = "meta.json"


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def inject_path(env: Mapping[str, str], bin_dir: Optional[str]) -> Dict[str, str]:
    """Return a copy of ``env`` whose PATH is prefixed with ``bin_dir``."""
    merged = dict(env)
    if not bin_dir:
        return merged
    current = merged.get("PATH", "")
    merged["PATH"] = f"{bin_dir}{os.pathsep}{current}" if current else bin_dir
    return merged


def parse_command(command: Union[str, Sequence[str], None]) -> List[str]:
    if command is None:
        return []
    if isinstance(command, str):
        try:
            return shlex.split(command)
        except ValueError as exc:
            raise ProcessError(f"invalid command: {exc}") from exc
    return [str(part) for part in command]


def check_interactive(argv: Sequence[str]) -> None:
    name = os.path.basename(argv[0])
    if name in BLOCKED_COMMANDS:
        raise ProcessError(
            f"command '{name}' requires interactive input and is not allowed. "
            "Use alternative approaches that don't require user interaction"
        )


@dataclass
class ProcessJob:
    id: str
    command: List[str]
    workdir: str
    stdout: str
    stderr: str
    status: str = STATUS_RUNNING
    started_at: str = field(default_factory=_utc_now)
    ended_at: Optional[str] = None
    exit_code: int = 0
    error: Optional[str] = None
    pid: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        for key in ("ended_at", "error", "pid"):
            if payload.get(key) is None:
                payload.pop(key)
        return payload

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "ProcessJob":
        return ProcessJob(
            id=str(data.get("id", "")),
            command=list(data.get("command") or []),
            workdir=str(data.get("workdir", "")),
            stdout=str(data.get("stdout", "")),
            stderr=str(data.get("stderr", "")),
            status=str(data.get("status", STATUS_RUNNING)),
            started_at=str(data.get("started_at") or ""),
            ended_at=data.get("ended_at"),
            exit_code=int(data.get("exit_code") or 0),
            error=data.get("error"),
            pid=data.get("pid"),
        )

    def view(self) -> Dict[str, Any]:
        payload = {
            "job_id": self.id,
            "command": self.command,
            "workdir": self.workdir,
            "status": self.status,
            "started_at": self.started_at,
            "exit_code": self.exit_code,
        }
        if self.ended_at:
            payload["ended_at"] = self.ended_at
        if self.pid:
            payload["pid"] = self.pid
        if self.error:
            payload["error"] = self.error
        return payload


@dataclass
class _LiveJob:
    job: ProcessJob
    process: asyncio.subprocess.Process
    stdout_file: IO[bytes]
    stderr_file: IO[bytes]
    reaper: Optional["asyncio.Task[ProcessJob]"] = None
    killed: bool = False


class ProcessSupervisor:
    """Spawns background jobs under ``root`` and records their lifecycle in ``meta.json``.

    Each job gets its own reaper task, created on the running loop rather than
    as a child of the caller, so cancelling the turn that started a job never
    stops the job itself.
    """

    def __init__(self, guard: PathGuard, root: Optional[str] = None, bin_dir: Optional[str] = None) -> None:
        self.guard = guard
        if not root:
            root = os.path.join(guard.root, "processes")
        elif not os.path.isabs(root):
            root = guard.resolve(root)
        self.root = root
        self.bin_dir = bin_dir
        self._lock = threading.Lock()
        self._running: Dict[str, _LiveJob] = {}
        self._rng = random.Random()
        os.makedirs(self.root, exist_ok=True)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _new_job_id(self) -> str:
        with self._lock:
            suffix = self._rng.randrange(0xFFFF)
        return f"job-{time.time_ns()}-{suffix:04x}"

    def _meta_path(self, job_id: str) -> str:
        return os.path.join(self.root, job_id, META_FILENAME)

    def _save_meta(self, job: ProcessJob) -> None:
        path = self._meta_path(job.id)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "w", encoding="utf-8") as handle:
            json.dump(job.to_dict(), handle, indent=2)

    def load_job(self, job_id: str) -> ProcessJob:
        if not job_id or os.sep in job_id or job_id in (".", ".."):
            raise ProcessError(f"invalid job id {job_id!r}")
        path = self._meta_path(job_id)
        try:
            with open(path, "r", encoding="utf-8") as handle:
                return ProcessJob.from_dict(json.load(handle))
        except FileNotFoundError as exc:
            raise ProcessError(f"job {job_id} not found") from exc
        except (OSError, ValueError) as exc:
            raise ProcessError(f"job {job_id} metadata unreadable: {exc}") from exc

    async def start(self, command: Union[str, Sequence[str]], workdir: str = "") -> ProcessJob:
        argv = parse_command(command)
        if not argv:
            raise ProcessError("command must not be empty")
        check_interactive(argv)
        cwd = self.guard.resolve(workdir)

        job_id = self._new_job_id()
        job_dir = os.path.join(self.root, job_id)
        os.makedirs(job_dir, exist_ok=True)
        job = ProcessJob(
            id=job_id,
            command=argv,
            workdir=cwd,
            stdout=os.path.join(job_dir, "stdout.log"),
            stderr=os.path.join(job_dir, "stderr.log"),
        )
        stdout_file = open(job.stdout, "wb")
        stderr_file = open(job.stderr, "wb")
        self._save_meta(job)

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=cwd,
                env=inject_path(os.environ, self.bin_dir),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=stdout_file,
                stderr=stderr_file,
            )
        except OSError as exc:
            stdout_file.close()
            stderr_file.close()
            job.status = STATUS_FAILED_START
            job.error = str(exc)
            job.ended_at = _utc_now()
            self._save_meta(job)
            logger.warning("background job %s failed to start: %s", job_id, exc)
            raise ProcessError(f"start command: {exc}", details={"job_id": job_id}) from exc

        job.pid = process.pid
        self._save_meta(job)
        live = _LiveJob(job=job, process=process, stdout_file=stdout_file, stderr_file=stderr_file)
        with self._lock:
            self._running[job_id] = live
        live.reaper = asyncio.get_running_loop().create_task(self._reap(live))
        logger.info("background job %s started pid=%s: %s", job_id, process.pid, shlex.join(argv))
        return job

    async def _reap(self, live: _LiveJob) -> ProcessJob:
        job = live.job
        try:
            returncode = await live.process.wait()
        finally:
            live.stdout_file.close()
            live.stderr_file.close()
        job.ended_at = _utc_now()
        job.exit_code = returncode
        if live.killed:
            job.status = STATUS_KILLED
        elif returncode == 0:
            job.status = STATUS_EXITED
        else:
            job.status = STATUS_FAILED
            if returncode < 0:
                job.error = f"terminated by signal {-returncode}"
            else:
                job.error = f"exit status {returncode}"
        try:
            self._save_meta(job)
        except OSError:
            logger.exception("failed to record exit of background job %s", job.id)
        with self._lock:
            self._running.pop(job.id, None)
        logger.info("background job %s finished status=%s exit_code=%s", job.id, job.status, returncode)
        return job

    # ------------------------------------------------------------------
    # Queries and control
    # ------------------------------------------------------------------

    def list_jobs(self) -> List[ProcessJob]:
        try:
            entries = sorted(os.listdir(self.root))
        except FileNotFoundError:
            return []
        jobs: List[ProcessJob] = []
        for entry in entries:
            if not os.path.isdir(os.path.join(self.root, entry)):
                continue
            try:
                jobs.append(self.load_job(entry))
            except ProcessError:
                continue
        jobs.sort(key=lambda job: job.started_at, reverse=True)
        return jobs

    def logs(
        self,
        job_id: str,
        stream: str = "stdout",
        tail_lines: int = 50,
        grep: Optional[str] = None,
    ) -> Dict[str, Any]:
        job = self.load_job(job_id)
        stream = (stream or "stdout").strip().lower()
        path = job.stderr if stream == "stderr" else job.stdout
        try:
            with open(path, "r", encoding="utf-8", errors="replace") as handle:
                lines = handle.read().splitlines()
        except OSError as exc:
            raise ProcessError(f"read {stream} for {job_id}: {exc}") from exc
        if tail_lines and 0 < tail_lines < len(lines):
            lines = lines[-tail_lines:]
        if grep:
            lines = [line for line in lines if grep in line]
        return {"job_id": job_id, "stream": stream, "lines": lines}

    def kill(self, job_id: str) -> Dict[str, Any]:
        with self._lock:
            live = self._running.get(job_id)
            if live is not None and live.process.returncode is None:
                live.killed = True
            else:
                live = None
        if live is None:
            raise ProcessError(f"job {job_id} is not running")
        try:
            live.process.kill()
        except ProcessLookupError as exc:
            raise ProcessError(f"job {job_id} is not running") from exc
        logger.info("background job %s kill requested", job_id)
        return {"job_id": job_id, "status": STATUS_KILLED}

    def is_running(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._running

    async def wait(self, job_id: str, timeout: Optional[float] = None) -> ProcessJob:
        with self._lock:
            live = self._running.get(job_id)
        if live is None or live.reaper is None:
            return self.load_job(job_id)
        return await asyncio.wait_for(asyncio.shield(live.reaper), timeout)

    async def shutdown(self) -> None:
        with self._lock:
            live_jobs = list(self._running.values())
        for live in live_jobs:
            if live.process.returncode is None:
                live.killed = True
                try:
                    live.process.kill()
                except ProcessLookupError:
                    pass
        for live in live_jobs:
            if live.reaper is not None:
                await asyncio.shield(live.reaper)
