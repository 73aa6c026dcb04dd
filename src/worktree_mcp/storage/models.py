"""Data models for persistent tracking."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass(slots=True)
class WorktreeRecord:
    path: str
    branch: str | None
    base_dir: str | None
    status: str
    created_at: datetime
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "branch": self.branch,
            "base_dir": self.base_dir,
            "status": self.status,
            "created_at": self.created_at.isoformat(),
            "metadata": dict(self.metadata),
        }


@dataclass(slots=True)
class TaskLink:
    task_id: str
    workspace_path: str
    done: bool
    linked_at: datetime
    done_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "workspace_path": self.workspace_path,
            "done": self.done,
            "linked_at": self.linked_at.isoformat(),
            "done_at": self.done_at.isoformat() if self.done_at else None,
        }


@dataclass(slots=True)
class TaskCompletion:
    total_matched: int
    total_marked_done: int


__all__ = ["TaskCompletion", "TaskLink", "WorktreeRecord"]
