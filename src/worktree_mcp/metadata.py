"""Side file recording why a worktree was created."""

from __future__ import annotations

import logging
import os
from datetime import datetime, timezone

from pydantic import BaseModel, Field, ValidationError

from .git.worktrees import extract_worktree_repo_root

METADATA_FILE = ".worktree-meta.json"

logger = logging.getLogger(__name__)


class WorktreeMetadata(BaseModel):
    prompt_summary: str
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


def metadata_path(worktree_path: str) -> str:
    return os.path.join(worktree_path, METADATA_FILE)


def _exclude_from_status(worktree_path: str) -> None:
    # Keeps the side file out of `git status` so it never blocks cleanup.
    root = extract_worktree_repo_root(worktree_path)
    if root is None:
        return
    exclude = os.path.join(root.repo_root, ".git", "info", "exclude")
    try:
        existing = ""
        if os.path.exists(exclude):
            with open(exclude, encoding="utf-8") as handle:
                existing = handle.read()
        if METADATA_FILE in existing.splitlines():
            return
        os.makedirs(os.path.dirname(exclude), exist_ok=True)
        with open(exclude, "a", encoding="utf-8") as handle:
            if existing and not existing.endswith("\n"):
                handle.write("\n")
            handle.write(f"{METADATA_FILE}\n")
    except OSError as exc:
        logger.warning("Failed to update git exclude file", extra={"path": exclude, "error": str(exc)})


def write_worktree_metadata(worktree_path: str, prompt_summary: str) -> bool:
    """Best-effort write; returns False (and logs) instead of raising."""

    path = metadata_path(worktree_path)
    payload = WorktreeMetadata(prompt_summary=prompt_summary)
    try:
        with open(path, "w", encoding="utf-8") as handle:
            handle.write(payload.model_dump_json(indent=2))
    except OSError as exc:
        logger.warning("Failed to write worktree metadata", extra={"path": path, "error": str(exc)})
        return False

    _exclude_from_status(worktree_path)
    logger.info("Wrote worktree metadata", extra={"worktree": worktree_path, "path": path})
    return True


def read_worktree_metadata(worktree_path: str) -> WorktreeMetadata | None:
    path = metadata_path(worktree_path)
    if not os.path.exists(path):
        return None
    try:
        with open(path, encoding="utf-8") as handle:
            return WorktreeMetadata.model_validate_json(handle.read())
    except (OSError, ValidationError) as exc:
        logger.warning("Failed to read worktree metadata", extra={"path": path, "error": str(exc)})
        return None


def read_worktree_prompt_summary(worktree_path: str) -> str | None:
    metadata = read_worktree_metadata(worktree_path)
    if metadata is None:
        return None
    summary = metadata.prompt_summary.strip()
    return summary or None


__all__ = [
    "METADATA_FILE",
    "WorktreeMetadata",
    "read_worktree_metadata",
    "read_worktree_prompt_summary",
    "write_worktree_metadata",
]
