"""Caller-facing operations with path validation and HTTP-style error results."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, Iterable

from .activity import WorkspaceActivity, read_port_file
from .agents import AgentRunTracker
from .git import (
    GitRunner,
    GitRunnerError,
    ensure_production_clone,
    is_git_repository,
    is_worktree_dir,
    prepare_worktree,
    production_clone_info,
    production_clone_path,
)
from .metadata import read_worktree_prompt_summary, write_worktree_metadata
from .storage import WorkspaceLedger
from .supervisor import ProcessSupervisor
from .terminal import TerminalManager

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ServiceError:
    error: str
    status: int

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.error, "status": self.status}


ServiceResult = dict[str, Any] | ServiceError


def is_within_root(candidate: str, root: str) -> bool:
    resolved_candidate = os.path.abspath(candidate)
    resolved_root = os.path.abspath(root)
    return resolved_candidate == resolved_root or resolved_candidate.startswith(resolved_root + os.sep)


def is_within_any_root(candidate: str, roots: Iterable[str]) -> bool:
    return any(is_within_root(candidate, root) for root in roots)


class WorkspaceService:
    """Validates caller input, then delegates to the owning component.

    Every method returns either a plain result mapping or a
    :class:`ServiceError` carrying an HTTP status hint; nothing raised by the
    components below escapes.
    """

    def __init__(
        self,
        clones_dir: str,
        production_dir: str,
        *,
        git: GitRunner,
        dev: ProcessSupervisor,
        production: ProcessSupervisor,
        terminals: TerminalManager,
        activity: WorkspaceActivity,
        ledger: WorkspaceLedger | None = None,
        agents: AgentRunTracker | None = None,
    ) -> None:
        self.clones_dir = os.path.abspath(clones_dir)
        self.production_dir = os.path.abspath(production_dir)
        self._git = git
        self._dev = dev
        self._production = production
        self._terminals = terminals
        self._activity = activity
        self._ledger = ledger
        self._agents = agents

    def _resolve(
        self, raw_path: str | None, roots: Iterable[str], *, label: str = "Worktree"
    ) -> str | ServiceError:
        text = (raw_path or "").strip()
        if not text:
            return ServiceError(f"{label} path is required.", 400)
        path = os.path.abspath(text)
        if not is_within_any_root(path, roots):
            return ServiceError(f"{label} path is outside configured folders.", 403)
        if not os.path.exists(path):
            return ServiceError(f"{label} path does not exist.", 404)
        return path

    def _resolve_worktree(self, raw_path: str | None) -> str | ServiceError:
        path = self._resolve(raw_path, [self.clones_dir])
        if isinstance(path, ServiceError):
            return path
        if not is_worktree_dir(path):
            return ServiceError("Path is not a git worktree.", 400)
        return path

    def _record(self, path: str, **fields: Any) -> None:
        if self._ledger is None:
            return
        try:
            self._ledger.record_worktree(path, **fields)
        except Exception as exc:
            logger.warning("Ledger write failed", extra={"path": path, "error": str(exc)})

    async def prepare_worktree(self, repo_url: str | None, prompt_summary: str | None = None) -> ServiceResult:
        url = (repo_url or "").strip()
        if not url:
            return ServiceError("Repository URL is required.", 400)
        try:
            prepared = await prepare_worktree(self._git, url, self.clones_dir)
        except (GitRunnerError, OSError, ValueError) as exc:
            logger.warning("Failed to prepare worktree", extra={"url": url, "error": str(exc)})
            return ServiceError(str(exc) or "Failed to prepare worktree.", 500)

        if prompt_summary and prompt_summary.strip():
            write_worktree_metadata(prepared.worktree_path, prompt_summary.strip())
        self._record(
            prepared.worktree_path,
            branch=prepared.branch_name,
            base_dir=prepared.base_dir,
            status="active",
            metadata={"repo_url": url},
        )
        return prepared.to_dict()

    def dev_logs(self, raw_path: str | None) -> ServiceResult:
        path = self._resolve_worktree(raw_path)
        if isinstance(path, ServiceError):
            return path
        logs = self._dev.get_logs(path)
        return {"path": path, "exists": True, **logs.to_dict()}

    async def _start(self, supervisor: ProcessSupervisor, path: str, busy_message: str) -> ServiceResult:
        if not (supervisor.is_server_running(path) or supervisor.is_install_running(path)):
            if self._activity.is_active(path):
                return ServiceError(busy_message, 409)
        try:
            result = await supervisor.start(path)
        except OSError as exc:
            logger.warning(
                "Failed to start %s", supervisor.label, extra={"path": path, "error": str(exc)}
            )
            return ServiceError(str(exc) or f"Failed to start {supervisor.label}.", 500)
        return {**result.to_dict(), "path": path}

    async def start_dev_server(self, raw_path: str | None) -> ServiceResult:
        path = self._resolve_worktree(raw_path)
        if isinstance(path, ServiceError):
            return path
        return await self._start(self._dev, path, "Worktree is already active.")

    async def start_production(self, repo_url: str | None) -> ServiceResult:
        url = (repo_url or "").strip()
        if not url:
            return ServiceError("Repository URL is required.", 400)
        try:
            clone_path = await ensure_production_clone(self._git, url, self.production_dir)
        except (GitRunnerError, OSError, ValueError) as exc:
            return ServiceError(str(exc) or "Failed to prepare production clone.", 500)

        if not is_within_root(clone_path, self.production_dir):
            return ServiceError("Production clone path is outside configured folder.", 403)
        if not os.path.exists(clone_path):
            return ServiceError("Production clone path does not exist.", 404)
        return await self._start(self._production, clone_path, "Production clone is already active.")

    def production_logs(self, repo_url: str | None) -> ServiceResult:
        url = (repo_url or "").strip()
        if not url:
            return ServiceError("Repository URL is required.", 400)
        try:
            clone_path = production_clone_path(url, self.production_dir)
        except ValueError as exc:
            return ServiceError(str(exc), 400)
        if not is_within_root(clone_path, self.production_dir):
            return ServiceError("Production clone path is outside configured folder.", 403)
        logs = self._production.get_logs(clone_path)
        return {"path": clone_path, "exists": os.path.exists(clone_path), **logs.to_dict()}

    async def production_info(self, repo_url: str | None) -> ServiceResult:
        """Report the production clone's head commit, local changes and port."""

        url = (repo_url or "").strip()
        if not url:
            return ServiceError("Repository URL is required.", 400)
        try:
            return await production_clone_info(
                self._git, url, self.production_dir, is_active=self._activity.is_active
            )
        except ValueError as exc:
            return ServiceError(str(exc), 400)

    async def start_terminal(self, raw_path: str | None) -> ServiceResult:
        path = self._resolve(raw_path, [self.clones_dir, self.production_dir])
        if isinstance(path, ServiceError):
            return path
        if not is_git_repository(path):
            return ServiceError("Path is not a git clone.", 400)
        try:
            started = await self._terminals.start_or_reuse(path)
        except OSError as exc:
            logger.warning("Failed to start terminal", extra={"path": path, "error": str(exc)})
            return ServiceError(str(exc) or "Failed to start dev terminal.", 500)
        return {**started.to_dict(), "path": path}

    def terminal_status(self, raw_path: str | None) -> ServiceResult:
        path = self._resolve(raw_path, [self.clones_dir, self.production_dir])
        if isinstance(path, ServiceError):
            return path
        return {"path": path, "session": self._terminals.get_session_by_workspace_path(path)}

    def workspace_status(self, raw_path: str | None) -> ServiceResult:
        path = self._resolve(raw_path, [self.clones_dir, self.production_dir], label="Workspace")
        if isinstance(path, ServiceError):
            return path
        return {
            "path": path,
            "is_worktree": is_worktree_dir(path),
            "active": self._activity.is_active(path),
            "sources": self._activity.active_sources(path),
            "port": read_port_file(path),
            "prompt_summary": read_worktree_prompt_summary(path),
        }

    async def run_agent(self, raw_path: str | None, instruction: str | None) -> ServiceResult:
        """Run an agent to completion inside a worktree and summarise its events."""

        text = (instruction or "").strip()
        if not text:
            return ServiceError("Instruction is required.", 400)
        if self._agents is None:
            return ServiceError("Agent runner is unavailable.", 500)
        path = self._resolve_worktree(raw_path)
        if isinstance(path, ServiceError):
            return path

        event_count = 0
        outcome: dict[str, Any] = {"status": "done"}
        async for event in self._agents.stream(path, text):
            if event.type == "error":
                outcome = {"status": "error", "message": event.payload.get("message")}
            elif event.type not in ("start", "done"):
                event_count += 1
        return {"path": path, "events": event_count, **outcome}

    def link_task(self, task_id: str | None, raw_path: str | None) -> ServiceResult:
        identifier = (task_id or "").strip()
        if not identifier:
            return ServiceError("Task id is required.", 400)
        if self._ledger is None:
            return ServiceError("Task tracking is not configured.", 500)
        path = self._resolve_worktree(raw_path)
        if isinstance(path, ServiceError):
            return path
        try:
            link = self._ledger.link_task(identifier, path)
        except Exception as exc:
            logger.warning("Failed to link task", extra={"task_id": identifier, "error": str(exc)})
            return ServiceError(str(exc) or "Failed to link task.", 500)
        return link.to_dict()


__all__ = ["ServiceError", "ServiceResult", "WorkspaceService", "is_within_any_root", "is_within_root"]
