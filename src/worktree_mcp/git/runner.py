"""Async runner for the git CLI."""

from __future__ import annotations

import asyncio
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable

from ..utils import sanitize_environment


class GitRunnerError(RuntimeError):
    """Base class for git runner errors."""


class GitNotFoundError(GitRunnerError):
    """Raised when the git executable cannot be located."""


class GitCommandError(GitRunnerError):
    """Raised when a checked git command exits with a non-zero status."""

    def __init__(self, result: "GitResult") -> None:
        detail = result.stderr.strip() or result.stdout.strip()
        super().__init__(f"git {' '.join(result.args[1:])} failed ({result.returncode}): {detail}")
        self.result = result


class GitTimeoutError(GitRunnerError):
    """Raised when a git command does not finish within its timeout."""

    def __init__(self, args: tuple[str, ...], timeout: float) -> None:
        super().__init__(f"git {' '.join(args[1:])} timed out after {timeout:g}s")
        self.command = args
        self.timeout = timeout


@dataclass(slots=True)
class GitResult:
    """Holds the outcome of a git invocation."""

    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class GitRunner:
    """Execute git commands asynchronously with optional timeouts."""

    def __init__(self, executable: Path | None = None) -> None:
        self._executable_path = self._resolve_executable(executable)

    @staticmethod
    def _resolve_executable(explicit: Path | None) -> Path:
        if explicit is not None:
            candidate = Path(explicit)
            if candidate.exists() and candidate.is_file():
                return candidate
            raise GitNotFoundError(f"git executable not found at {candidate}")

        binary = shutil.which("git")
        if binary is None:
            raise GitNotFoundError("git executable not found on PATH")
        return Path(binary)

    @property
    def executable(self) -> Path:
        return self._executable_path

    async def run(
        self,
        *args: str,
        cwd: str | Path | None = None,
        timeout: float | None = None,
        check: bool = False,
    ) -> GitResult:
        result = await self._invoke(args, cwd=cwd, timeout=timeout)
        if check and not result.ok:
            raise GitCommandError(result)
        return result

    async def _invoke(
        self,
        args: tuple[str, ...],
        *,
        cwd: str | Path | None,
        timeout: float | None,
    ) -> GitResult:
        cmd = (str(self._executable_path), *args)
        process = await asyncio.create_subprocess_exec(
            *cmd,
            cwd=str(cwd) if cwd is not None else None,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=sanitize_environment({"GIT_TERMINAL_PROMPT": "0"}),
        )
        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()
            raise GitTimeoutError(cmd, timeout or 0.0) from None

        stdout = stdout_bytes.decode("utf-8", errors="replace")
        stderr = stderr_bytes.decode("utf-8", errors="replace")
        return GitResult(args=cmd, returncode=process.returncode, stdout=stdout, stderr=stderr)


Responder = Callable[[tuple[str, ...], str | None], GitResult | BaseException | None]


class FakeGitRunner(GitRunner):
    """Test double that answers git invocations from a responder or a queue."""

    def __init__(  # type: ignore[override]
        self,
        responses: Iterable[GitResult] | None = None,
        *,
        responder: Responder | None = None,
    ) -> None:
        self._responses = list(responses or [])
        self._responder = responder
        self._invocations: list[tuple[tuple[str, ...], str | None]] = []
        self._executable_path = Path("/tmp/fake-git")

    async def _invoke(  # type: ignore[override]
        self,
        args: tuple[str, ...],
        *,
        cwd: str | Path | None,
        timeout: float | None,
    ) -> GitResult:
        directory = str(cwd) if cwd is not None else None
        self._invocations.append((tuple(args), directory))

        if self._responder is not None:
            outcome = self._responder(tuple(args), directory)
            if isinstance(outcome, BaseException):
                raise outcome
            if outcome is not None:
                return outcome

        if self._responses:
            return self._responses.pop(0)
        return GitResult(args=("git", *args), returncode=0, stdout="", stderr="")

    @property
    def invocations(self) -> list[tuple[tuple[str, ...], str | None]]:
        return self._invocations


def git_ok(stdout: str = "", *args: str) -> GitResult:
    return GitResult(args=("git", *args), returncode=0, stdout=stdout, stderr="")


def git_failed(stderr: str = "", returncode: int = 1, *args: str) -> GitResult:
    return GitResult(args=("git", *args), returncode=returncode, stdout="", stderr=stderr)


__all__ = [
    "FakeGitRunner",
    "GitCommandError",
    "GitNotFoundError",
    "GitResult",
    "GitRunner",
    "GitRunnerError",
    "GitTimeoutError",
    "git_failed",
    "git_ok",
]
