"""One interactive shell per workspace, fanned out to any number of sockets."""

from __future__ import annotations

import asyncio
import codecs
import fcntl
import json
import logging
import os
import struct
import termios
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Literal, Protocol, Sequence

from .activity import ActivitySignal, TERMINAL_SIGNAL
from .utils import normalize_workspace_path, sanitize_environment

DEFAULT_COLS = 120
DEFAULT_ROWS = 40
READ_CHUNK_SIZE = 4096

logger = logging.getLogger(__name__)

OutputHandler = Callable[[str], None]
ExitHandler = Callable[[int | None], None]


class TerminalSocket(Protocol):
    """The subset of a Starlette ``WebSocket`` the manager talks to."""

    async def send_text(self, data: str) -> None:
        ...

    async def close(self) -> None:
        ...


class PtyHandle(Protocol):
    pid: int

    def write(self, data: str) -> None:
        ...

    def resize(self, cols: int, rows: int) -> None:
        ...

    def kill(self) -> None:
        ...


class SpawnPty(Protocol):
    def __call__(
        self,
        argv: Sequence[str],
        *,
        cwd: str,
        env: dict[str, str],
        cols: int,
        rows: int,
        on_output: OutputHandler,
        on_exit: ExitHandler,
    ) -> Awaitable[PtyHandle]:
        ...


def _set_window_size(fd: int, cols: int, rows: int) -> None:
    safe_cols = max(1, int(cols))
    safe_rows = max(1, int(rows))
    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", safe_rows, safe_cols, 0, 0))


class PtyProcess:
    """A child process attached to a pseudo-terminal, read via the event loop."""

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        master_fd: int,
        on_output: OutputHandler,
        on_exit: ExitHandler,
    ) -> None:
        self._process = process
        self._master_fd = master_fd
        self._on_output = on_output
        self._on_exit = on_exit
        self._decoder = codecs.getincrementaldecoder("utf-8")("replace")
        self._reading = False
        self._closed = False
        self._waiter: asyncio.Task[None] | None = None

    @property
    def pid(self) -> int:
        return self._process.pid

    @classmethod
    async def spawn(
        cls,
        argv: Sequence[str],
        *,
        cwd: str,
        env: dict[str, str],
        cols: int = DEFAULT_COLS,
        rows: int = DEFAULT_ROWS,
        on_output: OutputHandler,
        on_exit: ExitHandler,
    ) -> "PtyProcess":
        master_fd, slave_fd = os.openpty()
        try:
            _set_window_size(slave_fd, cols, rows)
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=cwd,
                env=env,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                start_new_session=True,
            )
        except BaseException:
            os.close(master_fd)
            os.close(slave_fd)
            raise

        os.close(slave_fd)
        os.set_blocking(master_fd, False)
        pty = cls(process, master_fd, on_output, on_exit)
        pty._start()
        return pty

    def _start(self) -> None:
        loop = asyncio.get_running_loop()
        loop.add_reader(self._master_fd, self._read_available)
        self._reading = True
        self._waiter = loop.create_task(self._wait_for_exit())

    def _stop_reading(self) -> None:
        if self._reading:
            asyncio.get_running_loop().remove_reader(self._master_fd)
            self._reading = False

    def _read_available(self) -> bool:
        """Read one chunk; False once nothing more is readable right now."""

        try:
            chunk = os.read(self._master_fd, READ_CHUNK_SIZE)
        except BlockingIOError:
            return False
        except OSError:
            # EIO once the slave side has no more writers.
            chunk = b""
        if not chunk:
            self._stop_reading()
            return False
        text = self._decoder.decode(chunk)
        if text:
            self._on_output(text)
        return True

    async def _wait_for_exit(self) -> None:
        code = await self._process.wait()
        while self._reading and self._read_available():
            pass
        self._stop_reading()
        tail = self._decoder.decode(b"", final=True)
        if tail:
            self._on_output(tail)
        self._close_fd()
        self._on_exit(code)

    def _close_fd(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            os.close(self._master_fd)
        except OSError:
            pass

    def write(self, data: str) -> None:
        if self._closed:
            return
        payload = data.encode("utf-8")
        try:
            while payload:
                written = os.write(self._master_fd, payload)
                payload = payload[written:]
        except BlockingIOError:
            logger.debug("Terminal input dropped; pty buffer full", extra={"pid": self.pid})
        except OSError as exc:
            logger.debug("Terminal write failed", extra={"pid": self.pid, "error": str(exc)})

    def resize(self, cols: int, rows: int) -> None:
        if self._closed:
            return
        try:
            _set_window_size(self._master_fd, cols, rows)
        except OSError as exc:
            logger.debug("Terminal resize failed", extra={"pid": self.pid, "error": str(exc)})

    def kill(self) -> None:
        try:
            self._process.kill()
        except ProcessLookupError:
            pass


@dataclass(eq=False)
class TerminalSession:
    id: str
    workspace_path: str
    pty: PtyHandle
    started_at: str
    sockets: set[Any] = field(default_factory=set)
    outbox: asyncio.Queue[tuple[str, frozenset[Any]] | None] = field(default_factory=asyncio.Queue)

    def info(self) -> dict[str, Any]:
        return {"session_id": self.id, "pid": self.pty.pid, "started_at": self.started_at}


@dataclass(slots=True)
class TerminalStart:
    session_id: str
    pid: int
    started_at: str
    status: Literal["started", "already-running"]

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "pid": self.pid,
            "started_at": self.started_at,
            "status": self.status,
        }


class TerminalManager:
    """Owns every terminal session, indexed by session id and by workspace path."""

    def __init__(
        self,
        *,
        activity: ActivitySignal | None = None,
        spawn_pty: SpawnPty | None = None,
        shell: str = "/bin/sh",
        cols: int = DEFAULT_COLS,
        rows: int = DEFAULT_ROWS,
    ) -> None:
        self._activity = activity or ActivitySignal(TERMINAL_SIGNAL)
        self._spawn_pty = spawn_pty or PtyProcess.spawn
        self._shell = shell
        self._cols = cols
        self._rows = rows
        self._sessions_by_id: dict[str, TerminalSession] = {}
        self._session_id_by_workspace: dict[str, str] = {}
        self._pumps: set[asyncio.Task[None]] = set()
        self._lock = asyncio.Lock()

    async def start_or_reuse(self, workspace_path: str) -> TerminalStart:
        normalized = normalize_workspace_path(workspace_path)
        async with self._lock:
            existing = self._session_for_workspace(normalized)
            if existing is not None:
                return TerminalStart(
                    existing.id, existing.pty.pid, existing.started_at, "already-running"
                )

            session = await self._create_session(normalized)
            return TerminalStart(session.id, session.pty.pid, session.started_at, "started")

    async def _create_session(self, workspace_path: str) -> TerminalSession:
        session_id = uuid.uuid4().hex
        pty = await self._spawn_pty(
            [self._shell, "-i"],
            cwd=workspace_path,
            env=sanitize_environment({"TERM": "xterm-256color", "NODE_ENV": "development"}),
            cols=self._cols,
            rows=self._rows,
            on_output=lambda data: self._on_output(session_id, data),
            on_exit=lambda code: self._on_exit(session_id, code),
        )
        session = TerminalSession(
            id=session_id,
            workspace_path=workspace_path,
            pty=pty,
            started_at=datetime.now(timezone.utc).isoformat(),
        )
        self._sessions_by_id[session_id] = session
        self._session_id_by_workspace[workspace_path] = session_id
        self._activity.mark_active(workspace_path)

        pump = asyncio.get_running_loop().create_task(self._pump(session))
        self._pumps.add(pump)
        pump.add_done_callback(self._pumps.discard)

        logger.info(
            "Started terminal session",
            extra={"session_id": session_id, "workspace": workspace_path, "pid": pty.pid},
        )
        return session

    def _session_for_workspace(self, workspace_path: str) -> TerminalSession | None:
        session_id = self._session_id_by_workspace.get(workspace_path)
        if session_id is None:
            return None
        session = self._sessions_by_id.get(session_id)
        if session is None:
            self._session_id_by_workspace.pop(workspace_path, None)
        return session

    def _on_output(self, session_id: str, data: str) -> None:
        session = self._sessions_by_id.get(session_id)
        if session is None:
            return
        session.outbox.put_nowait(
            (json.dumps({"type": "output", "data": data}), frozenset(session.sockets))
        )

    def _on_exit(self, session_id: str, code: int | None) -> None:
        session = self._sessions_by_id.pop(session_id, None)
        if session is None:
            return
        if self._session_id_by_workspace.get(session.workspace_path) == session_id:
            del self._session_id_by_workspace[session.workspace_path]
        self._activity.mark_inactive(session.workspace_path)
        session.outbox.put_nowait((json.dumps({"type": "exit"}), frozenset(session.sockets)))
        session.outbox.put_nowait(None)
        logger.info(
            "Terminal session exited",
            extra={"session_id": session_id, "workspace": session.workspace_path, "exit_code": code},
        )

    async def _pump(self, session: TerminalSession) -> None:
        """Deliver queued messages in order, then close every socket on exit."""

        while True:
            item = await session.outbox.get()
            if item is None:
                break
            message, recipients = item
            await self._broadcast(session, message, recipients)

        sockets = list(session.sockets)
        session.sockets.clear()
        for socket in sockets:
            try:
                await socket.close()
            except Exception as exc:
                logger.debug("Closing terminal socket failed", extra={"error": str(exc)})

    async def _broadcast(
        self, session: TerminalSession, message: str, recipients: frozenset[Any]
    ) -> None:
        # only sockets attached when the message was queued, and still attached now
        for socket in [socket for socket in session.sockets if socket in recipients]:
            try:
                await socket.send_text(message)
            except Exception as exc:
                logger.debug(
                    "Dropping terminal socket after send failure",
                    extra={"session_id": session.id, "error": str(exc)},
                )
                session.sockets.discard(socket)

    async def attach_socket(self, session_id: str, socket: TerminalSocket) -> TerminalSession | None:
        """Attach ``socket`` and greet it with ``ready``; unknown ids return None."""

        session = self._sessions_by_id.get(session_id)
        if session is None:
            return None
        await socket.send_text(json.dumps({"type": "ready"}))
        if self._sessions_by_id.get(session_id) is not session:
            return None
        session.sockets.add(socket)
        return session

    def detach_socket(self, session_id: str, socket: TerminalSocket) -> bool:
        session = self._sessions_by_id.get(session_id)
        if session is None:
            return False
        session.sockets.discard(socket)
        return True

    def handle_socket_message(self, session_id: str, raw_message: str | bytes) -> bool:
        """Apply an ``input`` or ``resize`` message; anything else is ignored."""

        session = self._sessions_by_id.get(session_id)
        if session is None:
            return False

        text = raw_message.decode("utf-8", errors="replace") if isinstance(raw_message, bytes) else raw_message
        try:
            payload = json.loads(text)
        except (TypeError, ValueError):
            return False
        if not isinstance(payload, dict):
            return False

        message_type = payload.get("type")
        if message_type == "input" and isinstance(payload.get("data"), str):
            session.pty.write(payload["data"])
            return True
        if message_type == "resize":
            cols, rows = payload.get("cols"), payload.get("rows")
            if _is_int(cols) and _is_int(rows):
                session.pty.resize(cols, rows)
                return True
        return False

    def get_session(self, session_id: str) -> TerminalSession | None:
        return self._sessions_by_id.get(session_id)

    def get_session_by_workspace_path(self, workspace_path: str) -> dict[str, Any] | None:
        session = self._session_for_workspace(normalize_workspace_path(workspace_path))
        return session.info() if session is not None else None

    def sessions(self) -> list[dict[str, Any]]:
        return [
            {**session.info(), "workspace_path": session.workspace_path, "sockets": len(session.sockets)}
            for session in self._sessions_by_id.values()
        ]

    async def aclose(self) -> None:
        for session in list(self._sessions_by_id.values()):
            session.pty.kill()
        if self._pumps:
            await asyncio.gather(*list(self._pumps), return_exceptions=True)


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


__all__ = [
    "PtyHandle",
    "PtyProcess",
    "TerminalManager",
    "TerminalSession",
    "TerminalSocket",
    "TerminalStart",
]
