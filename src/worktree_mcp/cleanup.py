"""Recurring removal of idle, clean, fully pushed worktrees whose PR is resolved."""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol

from .activity import WorkspaceActivity
from .git.github import GithubClient
from .git.runner import GitRunner, GitRunnerError
from .git.worktrees import (
    detect_repo_changes,
    extract_worktree_repo_root,
    has_unpushed_commits,
    is_worktree_dir,
    remove_worktree,
)
from .metadata import read_worktree_metadata

JOB_NAME = "worktree-pr-cleanup"
DEFAULT_INTERVAL_SECONDS = 30.0
DEFAULT_MIN_AGE_SECONDS = 300.0
REMOVABLE_PR_STATES = frozenset({"closed", "merged", "none"})

logger = logging.getLogger(__name__)


class TaskTracker(Protocol):
    def mark_tasks_done_by_workspace(self, workspace_path: str) -> Any:
        ...


class WorktreeLedger(Protocol):
    def record_worktree(self, path: str, **fields: Any) -> Any:
        ...


@dataclass(slots=True)
class CleanupReport:
    removed: list[str] = field(default_factory=list)
    skipped: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"removed": list(self.removed), "skipped": dict(self.skipped)}


def worktree_age_seconds(path: str, now: float) -> float | None:
    """Age from the metadata side file, else from the directory's inode times."""

    metadata = read_worktree_metadata(path)
    if metadata is not None:
        return now - metadata.created_at.timestamp()
    try:
        stats = os.stat(path)
    except OSError as exc:
        logger.warning("[%s] Failed reading worktree age for %s: %s", JOB_NAME, path, exc)
        return None
    created = getattr(stats, "st_birthtime", None) or stats.st_ctime
    return now - created


class PullRequestCleanup:
    """Walks the clones directory and reclaims worktrees that pass every check.

    Checks run in order and stop at the first failure: age, idle, clean,
    fully pushed, resolvable repository root, pull request resolved. Any
    ambiguous answer skips the worktree.
    """

    def __init__(
        self,
        clones_dir: str,
        *,
        activity: WorkspaceActivity,
        git: GitRunner,
        github: GithubClient,
        task_tracker: TaskTracker | None = None,
        ledger: WorktreeLedger | None = None,
        min_age_seconds: float = DEFAULT_MIN_AGE_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._clones_dir = os.path.abspath(clones_dir)
        self._activity = activity
        self._git = git
        self._github = github
        self._task_tracker = task_tracker
        self._ledger = ledger
        self._min_age_seconds = min_age_seconds
        self._clock = clock
        self._running = False
        self._scheduler: asyncio.Task[None] | None = None
        self._ticks: set[asyncio.Task[Any]] = set()

    @property
    def clones_dir(self) -> str:
        return self._clones_dir

    @property
    def running(self) -> bool:
        return self._running

    def _candidates(self) -> list[str] | None:
        try:
            entries = sorted(os.scandir(self._clones_dir), key=lambda entry: entry.name)
        except OSError as exc:
            logger.warning("[%s] Unable to read clones directory %s: %s", JOB_NAME, self._clones_dir, exc)
            return None

        paths = []
        for entry in entries:
            if not entry.is_dir(follow_symlinks=False):
                continue
            if is_worktree_dir(entry.path):
                paths.append(entry.path)
        return paths

    async def _skip_reason(self, path: str) -> tuple[str | None, str | None]:
        """Return ``(reason, None)`` to skip, or ``(None, repo_root)`` to remove."""

        name = os.path.basename(path)

        if self._min_age_seconds > 0:
            age = worktree_age_seconds(path, self._clock())
            if age is None:
                return "age-unknown", None
            if age < self._min_age_seconds:
                return "too-new", None

        if self._activity.is_active(path):
            return "active", None

        has_changes = await detect_repo_changes(self._git, path)
        if has_changes is None:
            logger.warning("[%s] Skipping %s; unable to read working tree status", JOB_NAME, name)
            return "status-unknown", None
        if has_changes:
            return "dirty", None

        unpushed = await has_unpushed_commits(self._git, path)
        if unpushed is None:
            logger.warning(
                "[%s] Skipping removal for %s; unable to determine unpushed commit status",
                JOB_NAME,
                name,
            )
            return "unpushed-unknown", None
        if unpushed:
            logger.info("[%s] Skipping removal for %s; branch has unpushed commits", JOB_NAME, name)
            return "unpushed", None

        root = extract_worktree_repo_root(path)
        if root is None:
            logger.warning("[%s] Could not resolve repo root for %s", JOB_NAME, path)
            return "no-repo-root", None

        pr_status = await self._github.get_pull_request_status(path)
        if pr_status is None:
            return "no-branch", None
        if pr_status.state not in REMOVABLE_PR_STATES:
            return f"pr-{pr_status.state}", None

        logger.info("[%s] Removing %s; clean + idle (pr=%s)", JOB_NAME, name, pr_status.state)
        return None, root.repo_root

    async def _remove(self, path: str, repo_root: str) -> bool:
        name = os.path.basename(path)
        try:
            await remove_worktree(self._git, path, repo_root, branch=name)
        except (GitRunnerError, OSError) as exc:
            logger.warning("[%s] Failed to remove worktree %s: %s", JOB_NAME, name, exc)
            return False

        if self._task_tracker is not None:
            try:
                completion = self._task_tracker.mark_tasks_done_by_workspace(path)
            except Exception as exc:
                logger.warning("[%s] Failed to mark linked tasks done for %s: %s", JOB_NAME, name, exc)
            else:
                marked = getattr(completion, "total_marked_done", 0)
                if marked:
                    logger.info(
                        "[%s] Marked linked tasks done",
                        JOB_NAME,
                        extra={
                            "worktree": path,
                            "total_matched": getattr(completion, "total_matched", marked),
                            "total_marked_done": marked,
                        },
                    )

        try:
            if os.path.exists(path):
                shutil.rmtree(path)
        except OSError as exc:
            logger.warning(
                "[%s] Worktree detached but could not delete directory %s: %s", JOB_NAME, path, exc
            )

        if self._ledger is not None:
            try:
                self._ledger.record_worktree(path, branch=name, base_dir=repo_root, status="removed")
            except Exception as exc:
                logger.warning("[%s] Failed to record removal of %s: %s", JOB_NAME, name, exc)
        return True

    async def run_once(self) -> CleanupReport:
        report = CleanupReport()
        candidates = self._candidates()
        if candidates is None:
            return report

        for path in candidates:
            reason, repo_root = await self._skip_reason(path)
            if reason is not None or repo_root is None:
                report.skipped[path] = reason or "no-repo-root"
                continue
            if await self._remove(path, repo_root):
                report.removed.append(path)
            else:
                report.skipped[path] = "remove-failed"
        return report

    async def tick(self) -> CleanupReport | None:
        """Run one pass unless another is already in flight."""

        if self._running:
            return None
        self._running = True
        try:
            return await self.run_once()
        except Exception:
            logger.warning("[%s] Job failed", JOB_NAME, exc_info=True)
            return None
        finally:
            self._running = False

    def _spawn_tick(self) -> None:
        task = asyncio.get_running_loop().create_task(self.tick())
        self._ticks.add(task)
        task.add_done_callback(self._ticks.discard)

    async def _schedule(self, interval_seconds: float) -> None:
        while True:
            self._spawn_tick()
            await asyncio.sleep(interval_seconds)

    def start(self, interval_seconds: float = DEFAULT_INTERVAL_SECONDS) -> Callable[[], None]:
        """Tick now and then every ``interval_seconds``; returns a stop callable."""

        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        if self._scheduler is None or self._scheduler.done():
            self._scheduler = asyncio.get_running_loop().create_task(self._schedule(interval_seconds))
        return self.stop

    def stop(self) -> None:
        if self._scheduler is not None:
            self._scheduler.cancel()
            self._scheduler = None

    async def aclose(self) -> None:
        scheduler = self._scheduler
        self.stop()
        if scheduler is not None:
            await asyncio.gather(scheduler, return_exceptions=True)
        if self._ticks:
            await asyncio.gather(*list(self._ticks), return_exceptions=True)


def start_pull_request_cleanup(
    clones_dir: str,
    interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
    **dependencies: Any,
) -> Callable[[], None]:
    """Start a cleanup job over ``clones_dir``; call the result to stop it."""

    job = PullRequestCleanup(clones_dir, **dependencies)
    return job.start(interval_seconds)


__all__ = [
    "CleanupReport",
    "JOB_NAME",
    "PullRequestCleanup",
    "TaskTracker",
    "start_pull_request_cleanup",
    "worktree_age_seconds",
]
