"""The long-lived production clone kept per repository."""

from __future__ import annotations

import os
from typing import Any, Callable

from ..activity import read_port_file
from .runner import GitRunner, GitRunnerError
from .worktrees import clean_repository_url, clone_repository, detect_repo_changes, repo_name_from_url

HEAD_SUMMARY_TIMEOUT_SECONDS = 1.5


def production_clone_path(repo_url: str, production_dir: str) -> str:
    return os.path.join(os.path.abspath(production_dir), repo_name_from_url(repo_url))


async def ensure_production_clone(git: GitRunner, repo_url: str, production_dir: str) -> str:
    """Clone ``repo_url`` under ``production_dir`` unless it is already there."""

    clone_path = production_clone_path(repo_url, production_dir)
    if not os.path.exists(clone_path):
        await clone_repository(git, clean_repository_url(repo_url), clone_path)
    return clone_path


async def read_head_summary(git: GitRunner, path: str) -> tuple[str | None, str | None]:
    try:
        result = await git.run(
            "log", "-1", "--pretty=format:%H%n%s", cwd=path, timeout=HEAD_SUMMARY_TIMEOUT_SECONDS
        )
    except GitRunnerError:
        return None, None
    if not result.ok:
        return None, None

    hash_line, _, subject = result.stdout.partition("\n")
    return hash_line.strip() or None, subject.strip() or None


async def production_clone_info(
    git: GitRunner,
    repo_url: str,
    production_dir: str,
    *,
    is_active: Callable[[str], bool] | None = None,
) -> dict[str, Any]:
    clone_path = production_clone_path(repo_url, production_dir)
    in_use = bool(is_active(clone_path)) if is_active is not None else False
    if not os.path.exists(clone_path):
        return {
            "path": clone_path,
            "exists": False,
            "port": None,
            "commit_hash": None,
            "commit_description": None,
            "has_changes": None,
            "in_use": in_use,
        }

    commit_hash, description = await read_head_summary(git, clone_path)
    return {
        "path": clone_path,
        "exists": True,
        "port": read_port_file(clone_path),
        "commit_hash": commit_hash,
        "commit_description": description,
        "has_changes": await detect_repo_changes(git, clone_path),
        "in_use": in_use,
    }


__all__ = [
    "ensure_production_clone",
    "production_clone_info",
    "production_clone_path",
    "read_head_summary",
]
