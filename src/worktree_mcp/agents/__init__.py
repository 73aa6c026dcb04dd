"""Codex CLI orchestration utilities."""

from .runner import (
    AgentEvent,
    CodexExecutionResult,
    CodexNotFoundError,
    CodexRunFailedError,
    CodexRunner,
    CodexRunnerError,
    FakeCodexRunner,
    parse_event_line,
)
from .tracker import AgentRunTracker

__all__ = [
    "AgentEvent",
    "AgentRunTracker",
    "CodexExecutionResult",
    "CodexNotFoundError",
    "CodexRunFailedError",
    "CodexRunner",
    "CodexRunnerError",
    "FakeCodexRunner",
    "parse_event_line",
]
