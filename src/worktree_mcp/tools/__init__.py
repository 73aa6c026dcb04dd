"""Tool registration for Worktree MCP."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from fastmcp import Context, FastMCP

from ..cleanup import PullRequestCleanup
from ..config import WorkspaceSettings
from ..ports import PortExhaustedError, find_first_free_port
from ..service import ServiceError, ServiceResult, WorkspaceService

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ToolHandles:
    prepare_worktree: Any
    start_dev_server: Any
    dev_server_logs: Any
    start_production_server: Any
    production_server_logs: Any
    production_info: Any
    start_terminal: Any
    terminal_status: Any
    workspace_status: Any
    find_free_port: Any
    run_cleanup: Any
    run_agent: Any
    link_task: Any


def _emit_log(
    context: Context | None,
    level: str,
    message: str,
    *,
    extra: dict[str, Any] | None = None,
) -> None:
    """Best-effort logging that prefers the MCP context logger when available."""

    payload = extra or {}

    if context is not None:
        ctx_logger = getattr(context, "logger", None)
        if ctx_logger is not None:
            log_method = getattr(ctx_logger, level, None)
            if callable(log_method):
                log_method(message, extra=payload)
                return

    fallback = getattr(logger, level, logger.info)
    fallback(message, extra=payload)


def _respond(context: Context | None, operation: str, result: ServiceResult) -> dict[str, Any]:
    if isinstance(result, ServiceError):
        _emit_log(
            context,
            "warning",
            f"{operation} rejected",
            extra={"error": result.error, "status": result.status},
        )
        return result.to_dict()
    return result


def register_tools(
    server: FastMCP,
    *,
    service: WorkspaceService,
    cleanup: PullRequestCleanup,
    settings: WorkspaceSettings,
) -> ToolHandles:
    """Register the workspace tools on the server."""

    async def _prepare_worktree(
        repo_url: str,
        prompt_summary: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Clone (once) and add a fresh worktree on a new branch from the default branch."""

        result = await service.prepare_worktree(repo_url, prompt_summary)
        if not isinstance(result, ServiceError):
            _emit_log(
                context,
                "info",
                "Worktree prepared",
                extra={"path": result["worktree_path"], "branch": result["branch_name"]},
            )
        return _respond(context, "prepare_worktree", result)

    async def _start_dev_server(path: str, context: Context | None = None) -> dict[str, Any]:
        """Install dependencies if needed, then start the dev server for a worktree."""

        return _respond(context, "start_dev_server", await service.start_dev_server(path))

    def _dev_server_logs(path: str, context: Context | None = None) -> dict[str, Any]:
        return _respond(context, "dev_server_logs", service.dev_logs(path))

    async def _start_production_server(repo_url: str, context: Context | None = None) -> dict[str, Any]:
        """Ensure the production clone exists and start its production server."""

        return _respond(context, "start_production_server", await service.start_production(repo_url))

    def _production_server_logs(repo_url: str, context: Context | None = None) -> dict[str, Any]:
        return _respond(context, "production_server_logs", service.production_logs(repo_url))

    async def _production_info(repo_url: str, context: Context | None = None) -> dict[str, Any]:
        return _respond(context, "production_info", await service.production_info(repo_url))

    async def _start_terminal(path: str, context: Context | None = None) -> dict[str, Any]:
        """Start an interactive shell for a workspace, or return the one already running."""

        return _respond(context, "start_terminal", await service.start_terminal(path))

    def _terminal_status(path: str, context: Context | None = None) -> dict[str, Any]:
        return _respond(context, "terminal_status", service.terminal_status(path))

    def _workspace_status(path: str, context: Context | None = None) -> dict[str, Any]:
        """Report whether anything is keeping a workspace busy and which port it advertises."""

        return _respond(context, "workspace_status", service.workspace_status(path))

    def _find_free_port(lower_bound: int | None = None, context: Context | None = None) -> dict[str, Any]:
        start = lower_bound if lower_bound is not None else settings.port_lower_bound
        try:
            port = find_first_free_port(start)
        except ValueError as exc:
            return _respond(context, "find_free_port", ServiceError(str(exc), 400))
        except PortExhaustedError as exc:
            return _respond(context, "find_free_port", ServiceError(str(exc), 409))
        return {"port": port, "lower_bound": start}

    async def _run_cleanup(context: Context | None = None) -> dict[str, Any]:
        """Run one cleanup pass now; skipped if a pass is already in flight."""

        report = await cleanup.tick()
        if report is None:
            return {"status": "skipped", "reason": "cleanup already running"}
        _emit_log(
            context,
            "info",
            "Cleanup pass finished",
            extra={"removed": len(report.removed), "skipped": len(report.skipped)},
        )
        return {"status": "completed", **report.to_dict()}

    async def _run_agent(path: str, instruction: str, context: Context | None = None) -> dict[str, Any]:
        """Run a Codex agent in a worktree; the worktree stays busy until the run ends."""

        return _respond(context, "run_agent", await service.run_agent(path, instruction))

    def _link_task(task_id: str, path: str, context: Context | None = None) -> dict[str, Any]:
        """Link a task to a worktree so it is marked done when the worktree is reclaimed."""

        return _respond(context, "link_task", service.link_task(task_id, path))

    tool_prepare = server.tool(
        name="prepare_worktree",
        description="Create an isolated git worktree for a repository on a new unique branch.",
    )(_prepare_worktree)

    tool_start_dev = server.tool(
        name="start_dev_server",
        description="Start (or report) the dev server for a worktree, installing dependencies first when needed.",
    )(_start_dev_server)

    tool_dev_logs = server.tool(
        name="dev_server_logs",
        description="Return captured dev server output and running/installing flags for a worktree.",
    )(_dev_server_logs)

    tool_start_production = server.tool(
        name="start_production_server",
        description="Clone the repository's production copy if needed and start its production server.",
    )(_start_production_server)

    tool_production_logs = server.tool(
        name="production_server_logs",
        description="Return captured production server output for a repository.",
    )(_production_server_logs)

    tool_production_info = server.tool(
        name="production_info",
        description="Report the head commit, local changes, advertised port and busy state of a production clone.",
    )(_production_info)

    tool_start_terminal = server.tool(
        name="start_terminal",
        description="Start or reuse the interactive terminal session of a workspace.",
    )(_start_terminal)

    tool_terminal_status = server.tool(
        name="terminal_status",
        description="Return the terminal session attached to a workspace, if any.",
    )(_terminal_status)

    tool_workspace_status = server.tool(
        name="workspace_status",
        description="Report activity sources, advertised port and prompt summary of a workspace.",
    )(_workspace_status)

    tool_find_port = server.tool(
        name="find_free_port",
        description="Find the smallest port at or above a lower bound that is free on IPv4 and IPv6.",
    )(_find_free_port)

    tool_run_cleanup = server.tool(
        name="run_cleanup",
        description="Run one pass of the idle worktree cleanup job immediately.",
    )(_run_cleanup)

    tool_run_agent = server.tool(
        name="run_agent",
        description="Run a Codex agent with an instruction inside a worktree and report how it ended.",
    )(_run_agent)

    tool_link_task = server.tool(
        name="link_task",
        description="Link a task id to a worktree; the task is marked done when the worktree is reclaimed.",
    )(_link_task)

    return ToolHandles(
        prepare_worktree=tool_prepare,
        start_dev_server=tool_start_dev,
        dev_server_logs=tool_dev_logs,
        start_production_server=tool_start_production,
        production_server_logs=tool_production_logs,
        production_info=tool_production_info,
        start_terminal=tool_start_terminal,
        terminal_status=tool_terminal_status,
        workspace_status=tool_workspace_status,
        find_free_port=tool_find_port,
        run_cleanup=tool_run_cleanup,
        run_agent=tool_run_agent,
        link_task=tool_link_task,
    )


__all__ = ["ToolHandles", "register_tools"]
