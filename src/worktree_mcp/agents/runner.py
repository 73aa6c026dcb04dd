"""Async runner for the Codex CLI."""

from __future__ import annotations

import asyncio
import json
import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncIterator, Iterable, Sequence

from ..utils import sanitize_environment

logger = logging.getLogger(__name__)


class CodexRunnerError(RuntimeError):
    """Base class for Codex runner errors."""


class CodexNotFoundError(CodexRunnerError):
    """Raised when the Codex CLI executable cannot be located."""


class CodexRunFailedError(CodexRunnerError):
    """Raised when a streamed Codex run exits with a non-zero status."""

    def __init__(self, returncode: int, stderr: str) -> None:
        detail = stderr.strip().splitlines()[-1] if stderr.strip() else "no output"
        super().__init__(f"codex exited with status {returncode}: {detail}")
        self.returncode = returncode
        self.stderr = stderr


@dataclass(slots=True)
class CodexExecutionResult:
    """Holds the outcome of a Codex CLI invocation."""

    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


@dataclass(slots=True)
class AgentEvent:
    """One event of an agent run; ``start``, ``done`` and ``error`` bracket the rest."""

    type: str
    payload: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, **self.payload}


def parse_event_line(line: str) -> AgentEvent | None:
    text = line.strip()
    if not text:
        return None
    try:
        document = json.loads(text)
    except ValueError:
        return AgentEvent("message", {"text": text})
    if not isinstance(document, dict):
        return AgentEvent("message", {"text": text})
    event_type = document.get("type")
    message = document.get("msg")
    if not event_type and isinstance(message, dict):
        event_type = message.get("type")
    payload = {key: value for key, value in document.items() if key != "type"}
    return AgentEvent(str(event_type or "message"), payload)


class CodexRunner:
    """Execute Codex CLI commands asynchronously."""

    def __init__(self, executable: Path | None = None) -> None:
        self._executable_path = self._resolve_executable(executable)
        self._detached: set[asyncio.Task[Any]] = set()

    @staticmethod
    def _resolve_executable(explicit: Path | None) -> Path:
        if explicit is not None:
            candidate = Path(explicit)
            if candidate.exists() and candidate.is_file():
                return candidate
            raise CodexNotFoundError(f"Codex executable not found at {candidate}")

        binary = shutil.which("codex")
        if binary is None:
            raise CodexNotFoundError("Codex CLI executable not found on PATH")
        return Path(binary)

    @property
    def executable(self) -> Path:
        return self._executable_path

    async def version(self) -> CodexExecutionResult:
        return await self._invoke("--version")

    async def _invoke(self, *args: str) -> CodexExecutionResult:
        cmd = [str(self._executable_path), *args]
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=sanitize_environment(),
        )
        stdout_bytes, stderr_bytes = await process.communicate()
        stdout = stdout_bytes.decode("utf-8", errors="replace")
        stderr = stderr_bytes.decode("utf-8", errors="replace")
        return CodexExecutionResult(args=tuple(cmd), returncode=process.returncode, stdout=stdout, stderr=stderr)

    async def stream(
        self,
        prompt: str,
        working_directory: str,
        *,
        flags: Sequence[str] | None = None,
    ) -> AsyncIterator[AgentEvent]:
        """Run ``codex exec --json`` in ``working_directory`` and yield its events.

        Closing the iterator early stops reading but leaves the process to
        finish on its own; its remaining output is drained in the background.
        """

        cmd = [str(self._executable_path), *(flags or []), "exec", "--json", prompt]
        process = await asyncio.create_subprocess_exec(
            *cmd,
            cwd=working_directory,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=sanitize_environment(),
        )
        stderr_task = asyncio.get_running_loop().create_task(process.stderr.read())
        finished = False
        try:
            while True:
                raw = await process.stdout.readline()
                if not raw:
                    break
                event = parse_event_line(raw.decode("utf-8", errors="replace"))
                if event is not None:
                    yield event

            returncode = await process.wait()
            stderr = (await stderr_task).decode("utf-8", errors="replace")
            finished = True
            if returncode != 0:
                raise CodexRunFailedError(returncode, stderr)
        finally:
            if not finished:
                self._detach(process, stderr_task)

    def _detach(self, process: asyncio.subprocess.Process, stderr_task: asyncio.Task[bytes]) -> None:
        async def drain() -> None:
            while await process.stdout.read(4096):
                pass
            await stderr_task
            await process.wait()

        task = asyncio.get_running_loop().create_task(drain())
        self._detached.add(task)
        task.add_done_callback(self._detached.discard)
        logger.debug("Detached from codex run", extra={"pid": process.pid})


class FakeCodexRunner(CodexRunner):
    """Test double that replays canned events for every run."""

    def __init__(  # type: ignore[override]
        self,
        events: Iterable[AgentEvent] | None = None,
        *,
        error: CodexRunnerError | None = None,
        delay: float = 0.0,
    ) -> None:
        self._events = list(events or [])
        self._error = error
        self._delay = delay
        self._invocations: list[tuple[str, str]] = []
        self._executable_path = Path("/tmp/fake-codex")
        self._detached = set()

    async def stream(  # type: ignore[override]
        self,
        prompt: str,
        working_directory: str,
        *,
        flags: Sequence[str] | None = None,
    ) -> AsyncIterator[AgentEvent]:
        self._invocations.append((prompt, working_directory))
        for event in self._events:
            if self._delay:
                await asyncio.sleep(self._delay)
            yield event
        if self._error is not None:
            raise self._error

    @property
    def invocations(self) -> list[tuple[str, str]]:
        return self._invocations


__all__ = [
    "AgentEvent",
    "CodexExecutionResult",
    "CodexNotFoundError",
    "CodexRunFailedError",
    "CodexRunner",
    "CodexRunnerError",
    "FakeCodexRunner",
    "parse_event_line",
]
