"""Keeps the agent activity signal in step with agent runs."""

from __future__ import annotations

import logging
from collections import Counter
from typing import AsyncIterator

from ..activity import ActivitySignal
from ..utils import normalize_workspace_path
from .runner import AgentEvent, CodexRunner, CodexRunnerError

logger = logging.getLogger(__name__)


class AgentRunTracker:
    """Wraps agent runs so a workspace counts as busy for as long as one is streaming.

    Concurrent runs on the same workspace are reference counted; the
    workspace goes idle when the last one ends, however it ends.
    """

    def __init__(self, signal: ActivitySignal, runner: CodexRunner) -> None:
        self._signal = signal
        self._runner = runner
        self._runs: Counter[str] = Counter()

    def active_runs(self, workspace_path: str) -> int:
        return self._runs[normalize_workspace_path(workspace_path)]

    def _begin(self, workspace_path: str) -> None:
        self._runs[workspace_path] += 1
        self._signal.mark_active(workspace_path)

    def _end(self, workspace_path: str) -> None:
        self._runs[workspace_path] -= 1
        if self._runs[workspace_path] <= 0:
            del self._runs[workspace_path]
            self._signal.mark_inactive(workspace_path)

    async def stream(self, workspace_path: str, instruction: str) -> AsyncIterator[AgentEvent]:
        path = normalize_workspace_path(workspace_path)
        self._begin(path)
        logger.info("Agent run started", extra={"workspace": path})
        try:
            yield AgentEvent("start", {"workspace_path": path})
            async for event in self._runner.stream(instruction, path):
                yield event
        except (CodexRunnerError, OSError) as exc:
            logger.warning("Agent run failed", extra={"workspace": path, "error": str(exc)})
            yield AgentEvent("error", {"message": str(exc)})
        else:
            yield AgentEvent("done", {})
        finally:
            self._end(path)
            logger.info("Agent run finished", extra={"workspace": path})


__all__ = ["AgentRunTracker"]
