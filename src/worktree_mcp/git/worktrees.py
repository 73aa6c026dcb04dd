"""Base clones, worktree provisioning and branch state queries."""

from __future__ import annotations

import logging
import os
import re
import uuid
from dataclasses import dataclass
from typing import Any

from .runner import GitRunner, GitRunnerError

FETCH_TIMEOUT_SECONDS = 30.0
WORKTREE_TIMEOUT_SECONDS = 30.0
STATUS_TIMEOUT_SECONDS = 2.5
REV_PARSE_TIMEOUT_SECONDS = 1.5
REV_LIST_TIMEOUT_SECONDS = 5.0
REF_TIMEOUT_SECONDS = 5.0

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9\-_]")
_ORIGIN_HEAD = re.compile(r"^refs/remotes/origin/(.+)$")

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PreparedWorktree:
    worktree_path: str
    branch_name: str
    base_dir: str
    repo_name: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "worktree_path": self.worktree_path,
            "branch_name": self.branch_name,
            "base_dir": self.base_dir,
            "repo_name": self.repo_name,
        }


@dataclass(slots=True)
class WorktreeRepoRoot:
    repo_root: str
    worktree_git_dir: str


@dataclass(slots=True)
class BranchStatus:
    """``ahead_count`` is None when it could not be determined."""

    branch: str
    upstream: str | None
    ahead_count: int | None


def sanitize_repo_name(name: str) -> str:
    return _UNSAFE_NAME_CHARS.sub("-", name)


def clean_repository_url(repo_url: str) -> str:
    return repo_url.strip().removeprefix("git+")


def repo_name_from_url(repo_url: str) -> str:
    """Filesystem-safe repository name, e.g. ``git@github.com:a/b.git`` -> ``b``."""

    cleaned = clean_repository_url(repo_url).rstrip("/")
    tail = cleaned.rsplit("/", 1)[-1]
    tail = tail.rsplit(":", 1)[-1]
    tail = tail.removesuffix(".git")
    name = sanitize_repo_name(tail)
    if not name:
        raise ValueError(f"Cannot derive a repository name from {repo_url!r}")
    return name


def is_worktree_dir(path: str) -> bool:
    """A worktree's ``.git`` entry is a pointer file, a clone's is a directory."""

    return os.path.isfile(os.path.join(path, ".git"))


def is_git_repository(path: str) -> bool:
    return os.path.exists(os.path.join(path, ".git"))


def extract_worktree_repo_root(worktree_path: str) -> WorktreeRepoRoot | None:
    """Follow the ``gitdir:`` pointer back to the base repository root."""

    pointer = os.path.join(worktree_path, ".git")
    try:
        with open(pointer, "r", encoding="utf-8") as handle:
            content = handle.read()
    except OSError:
        return None

    gitdir = None
    for line in content.splitlines():
        if line.startswith("gitdir:"):
            gitdir = line[len("gitdir:"):].strip()
            break
    if not gitdir:
        return None

    if not os.path.isabs(gitdir):
        gitdir = os.path.join(worktree_path, gitdir)
    gitdir = os.path.normpath(gitdir)

    # <repo>/.git/worktrees/<name> -> <repo>/.git
    common_git_dir = os.path.dirname(os.path.dirname(gitdir))
    if not os.path.isdir(common_git_dir):
        return None
    return WorktreeRepoRoot(repo_root=os.path.dirname(common_git_dir), worktree_git_dir=gitdir)


async def clone_repository(git: GitRunner, repo_url: str, target_dir: str) -> None:
    os.makedirs(os.path.dirname(target_dir) or ".", exist_ok=True)
    logger.info("Cloning repository", extra={"url": repo_url, "target": target_dir})
    await git.run("clone", repo_url, target_dir, check=True)


async def resolve_default_branch(git: GitRunner, base_dir: str) -> str:
    try:
        result = await git.run(
            "symbolic-ref", "refs/remotes/origin/HEAD", cwd=base_dir, timeout=REF_TIMEOUT_SECONDS
        )
    except GitRunnerError:
        result = None
    if result is not None and result.ok:
        match = _ORIGIN_HEAD.match(result.stdout.strip())
        if match:
            return match.group(1)

    for candidate in ("main", "master"):
        try:
            probe = await git.run(
                "show-ref",
                "--verify",
                "--quiet",
                f"refs/remotes/origin/{candidate}",
                cwd=base_dir,
                timeout=REF_TIMEOUT_SECONDS,
            )
        except GitRunnerError:
            continue
        if probe.ok:
            return candidate

    return "main"


async def update_base_repo(git: GitRunner, base_dir: str) -> str:
    await git.run("fetch", "--all", "--prune", cwd=base_dir, timeout=FETCH_TIMEOUT_SECONDS, check=True)
    return await resolve_default_branch(git, base_dir)


async def prepare_worktree(git: GitRunner, repo_url: str, clones_root: str) -> PreparedWorktree:
    """Ensure the base clone exists and add a fresh worktree on a new branch.

    The new branch and the worktree directory share the name
    ``<repo>-<uuid>`` and start from ``origin/<default branch>``. Clone and
    fetch failures propagate as :class:`GitRunnerError`.
    """

    clean_url = clean_repository_url(repo_url)
    repo_name = repo_name_from_url(clean_url)
    clones_root = os.path.abspath(clones_root)
    base_dir = os.path.join(clones_root, repo_name)

    os.makedirs(clones_root, exist_ok=True)
    if not os.path.exists(base_dir):
        await clone_repository(git, clean_url, base_dir)

    default_branch = await update_base_repo(git, base_dir)
    worktree_name = f"{repo_name}-{uuid.uuid4()}"
    worktree_path = os.path.join(clones_root, worktree_name)

    await git.run(
        "worktree",
        "add",
        "-b",
        worktree_name,
        worktree_path,
        f"origin/{default_branch}",
        cwd=base_dir,
        timeout=WORKTREE_TIMEOUT_SECONDS,
        check=True,
    )
    logger.info(
        "Prepared worktree",
        extra={"worktree": worktree_path, "branch": worktree_name, "base": default_branch},
    )
    return PreparedWorktree(
        worktree_path=worktree_path,
        branch_name=worktree_name,
        base_dir=base_dir,
        repo_name=repo_name,
    )


async def remove_worktree(
    git: GitRunner, worktree_path: str, repo_root: str, branch: str | None = None
) -> None:
    """Unregister the worktree, then delete its branch if one is given.

    Branch deletion is best-effort; the directory itself is left for the
    caller to delete.
    """

    await git.run(
        "worktree",
        "remove",
        "--force",
        worktree_path,
        cwd=repo_root,
        timeout=WORKTREE_TIMEOUT_SECONDS,
        check=True,
    )
    if not branch:
        return

    try:
        result = await git.run("branch", "-D", branch, cwd=repo_root, timeout=REF_TIMEOUT_SECONDS)
    except GitRunnerError as exc:
        logger.debug("Branch delete failed", extra={"branch": branch, "error": str(exc)})
        return
    if not result.ok:
        logger.debug("Branch delete failed", extra={"branch": branch, "stderr": result.stderr.strip()})


async def detect_repo_changes(git: GitRunner, path: str) -> bool | None:
    """True when ``git status --porcelain`` reports anything, None if it cannot run."""

    try:
        result = await git.run("status", "--porcelain", cwd=path, timeout=STATUS_TIMEOUT_SECONDS)
    except GitRunnerError as exc:
        logger.debug("git status failed", extra={"path": path, "error": str(exc)})
        return None
    if not result.ok:
        return None
    return bool(result.stdout.strip())


async def get_branch_status(git: GitRunner, path: str) -> BranchStatus | None:
    try:
        inside = await git.run(
            "rev-parse", "--is-inside-work-tree", cwd=path, timeout=REV_PARSE_TIMEOUT_SECONDS
        )
        if not inside.ok:
            return None
        head = await git.run(
            "rev-parse", "--abbrev-ref", "HEAD", cwd=path, timeout=REV_PARSE_TIMEOUT_SECONDS
        )
    except GitRunnerError:
        return None
    branch = head.stdout.strip()
    if not head.ok or not branch:
        return None

    try:
        upstream_result = await git.run(
            "rev-parse",
            "--abbrev-ref",
            "--symbolic-full-name",
            "@{u}",
            cwd=path,
            timeout=REV_PARSE_TIMEOUT_SECONDS,
        )
    except GitRunnerError:
        return BranchStatus(branch=branch, upstream=None, ahead_count=None)
    upstream = upstream_result.stdout.strip() if upstream_result.ok else ""
    if not upstream:
        return BranchStatus(branch=branch, upstream=None, ahead_count=None)

    try:
        counts = await git.run(
            "rev-list",
            "--left-right",
            "--count",
            "@{u}...HEAD",
            cwd=path,
            timeout=REV_LIST_TIMEOUT_SECONDS,
        )
    except GitRunnerError:
        return BranchStatus(branch=branch, upstream=upstream, ahead_count=None)

    ahead_count = None
    parts = counts.stdout.split()
    if counts.ok and len(parts) == 2:
        try:
            ahead_count = int(parts[1])
        except ValueError:
            ahead_count = None
    return BranchStatus(branch=branch, upstream=upstream, ahead_count=ahead_count)


async def has_unpushed_commits(git: GitRunner, path: str) -> bool | None:
    """None when the branch has no upstream or the count is unknown."""

    status = await get_branch_status(git, path)
    if status is None or status.ahead_count is None:
        return None
    return status.ahead_count > 0


__all__ = [
    "BranchStatus",
    "PreparedWorktree",
    "WorktreeRepoRoot",
    "clean_repository_url",
    "clone_repository",
    "detect_repo_changes",
    "extract_worktree_repo_root",
    "get_branch_status",
    "has_unpushed_commits",
    "is_git_repository",
    "is_worktree_dir",
    "prepare_worktree",
    "remove_worktree",
    "repo_name_from_url",
    "resolve_default_branch",
    "sanitize_repo_name",
]
