"""Install-then-serve supervision of one app process per workspace."""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Coroutine, Literal, Sequence

from .activity import ActivitySignal, SUPERVISOR_SIGNAL
from .liveness import is_pid_alive
from .logs import LogCapture
from .profiles import RunnerProfile
from .utils import sanitize_environment

StartStatus = Literal["started", "installing", "already-running", "already-installing"]
ProcessRole = Literal["install", "server"]

SpawnFn = Callable[[Sequence[str], str, dict[str, str]], Awaitable[asyncio.subprocess.Process]]

STOP_GRACE_SECONDS = 5.0

logger = logging.getLogger(__name__)


async def spawn_piped(argv: Sequence[str], cwd: str, env: dict[str, str]) -> asyncio.subprocess.Process:
    """Start ``argv`` in ``cwd`` with stdout/stderr piped back to us."""

    return await asyncio.create_subprocess_exec(
        *argv,
        cwd=cwd,
        env=env,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )


@dataclass(slots=True)
class ProcessRecord:
    workspace_path: str
    role: ProcessRole
    process: asyncio.subprocess.Process

    @property
    def pid(self) -> int:
        return self.process.pid


@dataclass(slots=True)
class StartResult:
    status: StartStatus
    pid: int

    def to_dict(self) -> dict[str, Any]:
        return {"status": self.status, "pid": self.pid}


@dataclass(slots=True)
class ProcessLogs:
    lines: list[str]
    partial: dict[str, str]
    running: bool
    installing: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "lines": self.lines,
            "partial": self.partial,
            "running": self.running,
            "installing": self.installing,
        }


@dataclass
class _Slots:
    installs: dict[str, ProcessRecord] = field(default_factory=dict)
    servers: dict[str, ProcessRecord] = field(default_factory=dict)


class ProcessSupervisor:
    """Tracks an ``install`` and a ``server`` slot per workspace path.

    A server is never spawned while an install for the same workspace is in
    flight; a successful install hands over to ``start`` with the install
    step skipped, a failed one never does. Every read reconciles tracked pids
    against the OS first so crashed processes show up as not running.
    """

    def __init__(
        self,
        profile: RunnerProfile,
        *,
        logs: LogCapture | None = None,
        activity: ActivitySignal | None = None,
        is_alive: Callable[[int], bool] = is_pid_alive,
        needs_install: Callable[[str], bool] | None = None,
        spawn: SpawnFn | None = None,
    ) -> None:
        self._profile = profile
        self._logs = logs or LogCapture()
        self._activity = activity or ActivitySignal(SUPERVISOR_SIGNAL)
        self._is_alive = is_alive
        self._needs_install = needs_install or self._default_needs_install
        self._spawn = spawn or spawn_piped
        self._slots = _Slots()
        self._tasks: set[asyncio.Task[Any]] = set()
        self._lock = asyncio.Lock()
        self._closing = False

    @property
    def profile(self) -> RunnerProfile:
        return self._profile

    @property
    def label(self) -> str:
        return self._profile.label

    @property
    def logs(self) -> LogCapture:
        return self._logs

    def _default_needs_install(self, workspace_path: str) -> bool:
        try:
            manifest = os.path.join(workspace_path, self._profile.manifest)
            if not os.path.exists(manifest):
                return False
            return not os.path.exists(os.path.join(workspace_path, self._profile.dependency_dir))
        except OSError:
            return False

    def _environment(self) -> dict[str, str]:
        return sanitize_environment(self._profile.environment)

    def _track(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Supervisor task failed", exc_info=exc)

    def _is_lost(self, record: ProcessRecord) -> bool:
        # an observed exit belongs to the record's watcher, which may still chain a server
        return record.process.returncode is None and not self._is_alive(record.pid)

    def _reconcile(self, workspace_path: str) -> None:
        installs, servers = self._slots.installs, self._slots.servers

        install = installs.get(workspace_path)
        if install is not None and self._is_lost(install):
            del installs[workspace_path]
            self._logs.system(workspace_path, f"{self.label} install process no longer running")
            if workspace_path not in servers:
                self._activity.mark_inactive(workspace_path)

        server = servers.get(workspace_path)
        if server is not None and self._is_lost(server):
            del servers[workspace_path]
            self._logs.system(workspace_path, f"{self.label} process no longer running")
            if workspace_path not in installs:
                self._activity.mark_inactive(workspace_path)

    def _attach_output(self, record: ProcessRecord) -> None:
        process = record.process
        self._track(self._logs.consume(record.workspace_path, process.stdout, "stdout"))
        self._track(self._logs.consume(record.workspace_path, process.stderr, "stderr"))

    async def start(self, workspace_path: str, *, skip_install: bool = False) -> StartResult:
        """Start the server for ``workspace_path``, installing dependencies first if needed.

        Spawn failures propagate as ``OSError``; everything that happens after
        a successful spawn is reported through the log buffer and the
        ``running``/``installing`` flags of :meth:`get_logs`.
        """

        async with self._lock:
            self._reconcile(workspace_path)

            server = self._slots.servers.get(workspace_path)
            if server is not None:
                return StartResult("already-running", server.pid)

            install = self._slots.installs.get(workspace_path)
            if install is not None:
                return StartResult("already-installing", install.pid)

            if not skip_install and self._needs_install(workspace_path):
                return await self._spawn_install(workspace_path)

            return await self._spawn_server(workspace_path)

    async def _spawn_install(self, workspace_path: str) -> StartResult:
        command = self._profile.install_command
        process = await self._spawn(command, workspace_path, self._environment())
        record = ProcessRecord(workspace_path, "install", process)

        self._slots.installs[workspace_path] = record
        self._activity.mark_active(workspace_path)
        self._logs.system(workspace_path, f"running {' '.join(command)}")
        self._attach_output(record)
        self._track(self._watch_install(record))
        logger.info(
            "Started install",
            extra={"workspace": workspace_path, "pid": record.pid, "label": self.label},
        )
        return StartResult("installing", record.pid)

    async def _spawn_server(self, workspace_path: str) -> StartResult:
        process = await self._spawn(self._profile.start_command, workspace_path, self._environment())
        record = ProcessRecord(workspace_path, "server", process)

        self._slots.servers[workspace_path] = record
        self._activity.mark_active(workspace_path)
        self._logs.system(workspace_path, f"started {self.label}")
        self._attach_output(record)
        self._track(self._watch_server(record))
        logger.info(
            "Started server",
            extra={"workspace": workspace_path, "pid": record.pid, "label": self.label},
        )
        return StartResult("started", record.pid)

    async def _watch_install(self, record: ProcessRecord) -> None:
        workspace_path = record.workspace_path
        code = await record.process.wait()

        if self._slots.installs.get(workspace_path) is not record:
            return
        del self._slots.installs[workspace_path]

        if code != 0:
            self._logs.system(workspace_path, f"{self.label} install failed (exit {code})")
            logger.warning(
                "Install failed",
                extra={"workspace": workspace_path, "exit_code": code, "label": self.label},
            )
            if workspace_path not in self._slots.servers:
                self._activity.mark_inactive(workspace_path)
            return

        self._logs.system(workspace_path, f"{self.label} install complete")
        if self._closing:
            self._activity.mark_inactive(workspace_path)
            return
        try:
            await self.start(workspace_path, skip_install=True)
        except OSError as exc:
            self._logs.system(workspace_path, f"failed to start {self.label}: {exc}")
            logger.warning(
                "Server spawn after install failed",
                extra={"workspace": workspace_path, "error": str(exc)},
            )
            if workspace_path not in self._slots.servers:
                self._activity.mark_inactive(workspace_path)

    async def _watch_server(self, record: ProcessRecord) -> None:
        workspace_path = record.workspace_path
        code = await record.process.wait()

        if self._slots.servers.get(workspace_path) is not record:
            return
        del self._slots.servers[workspace_path]
        if workspace_path not in self._slots.installs:
            self._activity.mark_inactive(workspace_path)
        self._logs.system(workspace_path, f"{self.label} exited (exit {code})")

    def get_logs(self, workspace_path: str) -> ProcessLogs:
        self._reconcile(workspace_path)
        lines, partial = self._logs.snapshot(workspace_path)
        return ProcessLogs(
            lines=lines,
            partial=partial,
            running=workspace_path in self._slots.servers,
            installing=workspace_path in self._slots.installs,
        )

    def is_server_running(self, workspace_path: str) -> bool:
        self._reconcile(workspace_path)
        return workspace_path in self._slots.servers

    def is_install_running(self, workspace_path: str) -> bool:
        self._reconcile(workspace_path)
        return workspace_path in self._slots.installs

    def tracked_workspaces(self) -> list[str]:
        return sorted(set(self._slots.installs) | set(self._slots.servers))

    async def stop(self, workspace_path: str) -> bool:
        """Terminate whatever is tracked for ``workspace_path``.

        Slot bookkeeping happens in the exit watchers, exactly as for a
        process that exits on its own.
        """

        records = [
            record
            for record in (
                self._slots.installs.get(workspace_path),
                self._slots.servers.get(workspace_path),
            )
            if record is not None
        ]
        for record in records:
            await _terminate(record.process)
        return bool(records)

    async def aclose(self) -> None:
        self._closing = True
        for workspace_path in self.tracked_workspaces():
            await self.stop(workspace_path)
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


async def _terminate(process: asyncio.subprocess.Process) -> None:
    if process.returncode is not None:
        return
    try:
        process.terminate()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(process.wait(), timeout=STOP_GRACE_SECONDS)
    except asyncio.TimeoutError:
        try:
            process.kill()
        except ProcessLookupError:
            return
        await process.wait()


__all__ = [
    "ProcessLogs",
    "ProcessRecord",
    "ProcessSupervisor",
    "StartResult",
    "spawn_piped",
]
