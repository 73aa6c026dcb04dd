"""FastMCP server bootstrap for Worktree MCP."""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from fastmcp import Context, FastMCP

from . import __version__
from .activity import AGENT_SIGNAL, SUPERVISOR_SIGNAL, TERMINAL_SIGNAL, WorkspaceActivity
from .agents import AgentRunTracker, CodexNotFoundError, CodexRunner
from .cleanup import PullRequestCleanup
from .config import WorkspaceSettings, get_settings
from .git import GithubClient, GitRunner
from .logs import LogCapture
from .profiles import BUILTIN_PROFILES, ProfileLoadError, ProfileLoader
from .service import WorkspaceService
from .storage import ChromaUnavailableError, WorkspaceLedger
from .supervisor import ProcessSupervisor
from .terminal import TerminalManager
from .tools import register_tools

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    """Configure root logging for the Worktree MCP server."""

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


def _run_sync(coro):
    """Execute an async coroutine on a dedicated event loop."""

    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


@dataclass(slots=True)
class Components:
    """Everything the tools and the lifespan share; one instance per server."""

    settings: WorkspaceSettings
    activity: WorkspaceActivity
    git: GitRunner
    github: GithubClient
    dev: ProcessSupervisor
    production: ProcessSupervisor
    terminals: TerminalManager
    cleanup: PullRequestCleanup
    service: WorkspaceService
    ledger: WorkspaceLedger | None
    agents: AgentRunTracker | None


def build_components(
    settings: WorkspaceSettings,
    *,
    git: GitRunner | None = None,
    codex_runner: CodexRunner | None = None,
    ledger: WorkspaceLedger | None = None,
) -> tuple[Components, dict[str, Any]]:
    """Wire every component together; returns them plus availability metadata."""

    metadata: dict[str, Any] = {}

    try:
        profiles = ProfileLoader(settings.runner_profile_paths).load_all()
        metadata["profiles"] = {"ids": sorted(profiles), "error": None}
    except ProfileLoadError as exc:
        logger.warning("Falling back to built-in runner profiles", extra={"error": str(exc)})
        profiles = dict(BUILTIN_PROFILES)
        metadata["profiles"] = {"ids": sorted(profiles), "error": str(exc)}

    git = git or GitRunner()
    activity = WorkspaceActivity.with_default_signals()
    supervisor_signal = activity.signal(SUPERVISOR_SIGNAL)

    dev = ProcessSupervisor(profiles["dev"], logs=LogCapture(), activity=supervisor_signal)
    production = ProcessSupervisor(
        profiles["production"], logs=LogCapture(), activity=supervisor_signal
    )
    terminals = TerminalManager(
        activity=activity.signal(TERMINAL_SIGNAL), shell=settings.terminal_shell
    )

    codex_metadata: dict[str, Any] = {"available": False, "version": None, "error": None}
    if codex_runner is None:
        try:
            codex_runner = CodexRunner(Path(settings.codex_path) if settings.codex_path else None)
        except CodexNotFoundError as exc:
            codex_metadata["error"] = str(exc)
    if codex_runner is not None:
        codex_metadata["available"] = True
        try:
            version_result = _run_sync(codex_runner.version())
            if version_result.ok:
                codex_metadata["version"] = version_result.stdout.strip()
        except Exception as exc:  # pragma: no cover - best effort
            codex_metadata["error"] = str(exc)
    metadata["codex"] = codex_metadata
    agents = (
        AgentRunTracker(activity.signal(AGENT_SIGNAL), codex_runner)
        if codex_runner is not None
        else None
    )

    chroma_metadata: dict[str, Any] = {
        "available": False,
        "path": str(settings.chroma_persist_path),
        "error": None,
    }
    if ledger is None:
        try:
            ledger = WorkspaceLedger(settings.chroma_persist_path)
            ledger.ping()
        except ChromaUnavailableError as exc:
            chroma_metadata["error"] = str(exc)
            ledger = None
    chroma_metadata["available"] = ledger is not None
    metadata["chroma"] = chroma_metadata

    github = GithubClient(git, settings.github_token)
    cleanup = PullRequestCleanup(
        str(settings.clones_dir),
        activity=activity,
        git=git,
        github=github,
        task_tracker=ledger,
        ledger=ledger,
        min_age_seconds=settings.cleanup_min_age_seconds,
    )
    service = WorkspaceService(
        str(settings.clones_dir),
        str(settings.production_dir),
        git=git,
        dev=dev,
        production=production,
        terminals=terminals,
        activity=activity,
        ledger=ledger,
        agents=agents,
    )
    components = Components(
        settings=settings,
        activity=activity,
        git=git,
        github=github,
        dev=dev,
        production=production,
        terminals=terminals,
        cleanup=cleanup,
        service=service,
        ledger=ledger,
        agents=agents,
    )
    return components, metadata


def status_payload(components: Components, metadata: dict[str, Any]) -> dict[str, Any]:
    settings = components.settings

    worktree_summary: list[dict[str, Any]] = []
    storage_error = None
    if components.ledger is not None:
        try:
            worktree_summary = [
                {"path": record.path, "branch": record.branch, "status": record.status}
                for record in components.ledger.list_worktrees()[-5:]
            ]
        except Exception as exc:  # status must still render
            storage_error = str(exc)

    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "server_version": __version__,
        "log_level": settings.log_level,
        "clones_dir": str(settings.clones_dir),
        "production_dir": str(settings.production_dir),
        "git": {"executable": str(components.git.executable)},
        "github": {"token_configured": bool(settings.github_token)},
        "profiles": metadata.get("profiles"),
        "codex": {"path": settings.codex_path, **metadata.get("codex", {})},
        "storage": {
            "chroma": metadata.get("chroma"),
            "worktrees_preview": worktree_summary,
            "error": storage_error,
        },
        "supervisors": {
            "dev": components.dev.tracked_workspaces(),
            "production": components.production.tracked_workspaces(),
        },
        "terminals": components.terminals.sessions(),
        "activity": {
            provider.name: provider.active_paths()
            for provider in components.activity.providers
            if hasattr(provider, "active_paths")
        },
        "cleanup": {
            "interval_seconds": settings.cleanup_interval_seconds,
            "min_age_seconds": settings.cleanup_min_age_seconds,
            "running": components.cleanup.running,
        },
    }


def create_server(
    settings: Optional[WorkspaceSettings] = None,
    *,
    git: GitRunner | None = None,
    codex_runner: CodexRunner | None = None,
    ledger: WorkspaceLedger | None = None,
    start_cleanup: bool = True,
) -> FastMCP:
    """Instantiate the FastMCP server with its tools, status resource and cleanup job."""

    settings = settings or get_settings()
    components, metadata = build_components(
        settings, git=git, codex_runner=codex_runner, ledger=ledger
    )

    @asynccontextmanager
    async def lifespan(_server: FastMCP):
        if start_cleanup:
            components.cleanup.start(settings.cleanup_interval_seconds)
            logger.info(
                "Started worktree cleanup job",
                extra={"interval_seconds": settings.cleanup_interval_seconds},
            )
        try:
            yield {}
        finally:
            await components.cleanup.aclose()
            await components.terminals.aclose()
            await components.dev.aclose()
            await components.production.aclose()

    server = FastMCP(
        name="Worktree MCP",
        version=__version__,
        instructions=(
            "Worktree MCP provisions isolated git worktrees, supervises their dev "
            "and production servers and terminals, and reclaims idle worktrees once "
            "their pull request is resolved."
        ),
        lifespan=lifespan,
    )

    handles = register_tools(
        server,
        service=components.service,
        cleanup=components.cleanup,
        settings=settings,
    )

    @server.resource(
        "resource://worktree/status",
        name="worktree_status",
        title="Worktree MCP Status",
        description="Provides the current runtime status for the Worktree MCP server.",
        mime_type="application/json",
        tags={"status", "health"},
    )
    def status_resource(context: Context) -> str:
        """Return a JSON string summarizing basic runtime state."""

        payload = status_payload(components, metadata)
        payload["request_id"] = getattr(context, "request_id", None)
        return json.dumps(payload)

    setattr(server, "components", components)
    setattr(server, "component_metadata", metadata)
    setattr(server, "tool_handles", handles)
    return server


def main() -> None:
    """Entry point for running the Worktree MCP server via CLI."""

    settings = get_settings()
    configure_logging(settings.log_level)

    server = create_server(settings)
    metadata = getattr(server, "component_metadata", {})
    logger.info(
        "Launching Worktree MCP server",
        extra={
            "version": __version__,
            "log_level": settings.log_level,
            "codex_available": metadata.get("codex", {}).get("available"),
            "chroma_available": metadata.get("chroma", {}).get("available"),
        },
    )
    server.run()


if __name__ == "__main__":
    main()
