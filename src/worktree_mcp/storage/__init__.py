"""Storage abstractions for Worktree MCP."""

from .chroma import ChromaEvent, ChromaUnavailableError, WorkspaceLedger
from .models import TaskCompletion, TaskLink, WorktreeRecord

__all__ = [
    "ChromaEvent",
    "ChromaUnavailableError",
    "TaskCompletion",
    "TaskLink",
    "WorkspaceLedger",
    "WorktreeRecord",
]
