from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from pathlib import Path

import pytest

from worktree_mcp.activity import PORT_FILE, WorkspaceActivity
from worktree_mcp.agents import AgentEvent, AgentRunTracker, CodexRunFailedError, FakeCodexRunner
from worktree_mcp.git import FakeGitRunner, git_failed, git_ok
from worktree_mcp.metadata import METADATA_FILE
from worktree_mcp.profiles import DEV_PROFILE, PRODUCTION_PROFILE
from worktree_mcp.service import ServiceError, WorkspaceService, is_within_root
from worktree_mcp.storage import TaskLink
from worktree_mcp.supervisor import ProcessSupervisor
from worktree_mcp.terminal import TerminalManager


class FakeProcess:
    def __init__(self, pid: int) -> None:
        self.pid = pid
        self.returncode: int | None = None
        self.stdout = asyncio.StreamReader()
        self.stdout.feed_eof()
        self.stderr = asyncio.StreamReader()
        self.stderr.feed_eof()
        self._exit = asyncio.get_running_loop().create_future()

    async def wait(self) -> int:
        return await self._exit

    def terminate(self) -> None:
        self.returncode = -15
        if not self._exit.done():
            self._exit.set_result(-15)

    kill = terminate


class FakeSpawner:
    def __init__(self, error: OSError | None = None) -> None:
        self.error = error
        self.calls: list[tuple[list[str], str]] = []

    async def __call__(self, argv, cwd, env):
        if self.error is not None:
            raise self.error
        self.calls.append((list(argv), cwd))
        return FakeProcess(2000 + len(self.calls))


class FakePty:
    def __init__(self, pid: int, on_exit) -> None:
        self.pid = pid
        self._on_exit = on_exit

    def write(self, data: str) -> None:
        pass

    def resize(self, cols: int, rows: int) -> None:
        pass

    def kill(self) -> None:
        self._on_exit(-9)


async def spawn_fake_pty(argv, *, cwd, env, cols, rows, on_output, on_exit):
    return FakePty(5000, on_exit)


class StubLedger:
    def __init__(self) -> None:
        self.worktrees: list[tuple[str, dict]] = []
        self.links: list[tuple[str, str]] = []

    def record_worktree(self, path: str, **fields) -> None:
        self.worktrees.append((path, fields))

    def link_task(self, task_id: str, workspace_path: str) -> TaskLink:
        self.links.append((task_id, workspace_path))
        return TaskLink(
            task_id=task_id,
            workspace_path=workspace_path,
            done=False,
            linked_at=datetime(2025, 1, 1, tzinfo=timezone.utc),
        )


def git_responder(args, cwd):
    if args[0] == "clone":
        (Path(args[-1]) / ".git").mkdir(parents=True)
    elif args[:2] == ("worktree", "add"):
        target = Path(args[4])
        gitdir = Path(cwd) / ".git" / "worktrees" / target.name
        gitdir.mkdir(parents=True)
        target.mkdir(parents=True)
        (target / ".git").write_text(f"gitdir: {gitdir}\n", encoding="utf-8")
    elif args[0] == "symbolic-ref":
        return git_ok("refs/remotes/origin/main\n")
    return git_ok()


class Harness:
    def __init__(self, tmp_path: Path, *, spawner=None, git=None, ledger=None, agents_runner=None) -> None:
        self.clones = tmp_path / "clones"
        self.production_dir = tmp_path / "production"
        self.clones.mkdir(parents=True)
        self.production_dir.mkdir(parents=True)
        self.activity = WorkspaceActivity.with_default_signals()
        self.spawner = spawner or FakeSpawner()
        signal = self.activity.signal("supervisor")
        self.dev = ProcessSupervisor(DEV_PROFILE, activity=signal, spawn=self.spawner, is_alive=lambda pid: True)
        self.production = ProcessSupervisor(
            PRODUCTION_PROFILE, activity=signal, spawn=self.spawner, is_alive=lambda pid: True
        )
        self.terminals = TerminalManager(activity=self.activity.signal("terminal"), spawn_pty=spawn_fake_pty)
        agents = (
            AgentRunTracker(self.activity.signal("agent"), agents_runner) if agents_runner is not None else None
        )
        self.git = git or FakeGitRunner(responder=git_responder)
        self.service = WorkspaceService(
            str(self.clones),
            str(self.production_dir),
            git=self.git,
            dev=self.dev,
            production=self.production,
            terminals=self.terminals,
            activity=self.activity,
            ledger=ledger,
            agents=agents,
        )

    def worktree(self, name: str = "widget-1") -> Path:
        base = self.clones / "widget"
        gitdir = base / ".git" / "worktrees" / name
        gitdir.mkdir(parents=True, exist_ok=True)
        path = self.clones / name
        path.mkdir()
        (path / ".git").write_text(f"gitdir: {gitdir}\n", encoding="utf-8")
        return path

    async def aclose(self) -> None:
        await self.terminals.aclose()
        await self.dev.aclose()
        await self.production.aclose()


def test_prepare_worktree_records_metadata_and_ledger(tmp_path: Path) -> None:
    ledger = StubLedger()
    harness = Harness(tmp_path, ledger=ledger)

    result = asyncio.run(
        harness.service.prepare_worktree("https://github.com/acme/widget.git", "  Fix the header  ")
    )

    assert not isinstance(result, ServiceError)
    path = Path(result["worktree_path"])
    assert path.parent == harness.clones
    assert result["branch_name"] == path.name
    assert result["base_dir"] == str(harness.clones / "widget")
    assert result["repo_name"] == "widget"
    assert (path / METADATA_FILE).is_file()
    assert harness.service.workspace_status(str(path))["prompt_summary"] == "Fix the header"
    assert ledger.worktrees == [
        (
            str(path),
            {
                "branch": path.name,
                "base_dir": str(harness.clones / "widget"),
                "status": "active",
                "metadata": {"repo_url": "https://github.com/acme/widget.git"},
            },
        )
    ]


def test_prepare_worktree_errors(tmp_path: Path) -> None:
    def failing_clone(args, cwd):
        if args[0] == "clone":
            return git_failed("Repository not found", 128)
        return git_ok()

    harness = Harness(tmp_path, git=FakeGitRunner(responder=failing_clone))

    blank = asyncio.run(harness.service.prepare_worktree("   "))
    failed = asyncio.run(harness.service.prepare_worktree("https://github.com/acme/missing.git"))

    assert blank == ServiceError("Repository URL is required.", 400)
    assert isinstance(failed, ServiceError) and failed.status == 500
    assert "Repository not found" in failed.error


def test_worktree_path_validation(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    base = harness.clones / "widget"
    (base / ".git").mkdir(parents=True)
    outside = tmp_path / "elsewhere"
    outside.mkdir()

    service = harness.service
    assert service.dev_logs("") == ServiceError("Worktree path is required.", 400)
    assert service.dev_logs(str(outside)) == ServiceError("Worktree path is outside configured folders.", 403)
    assert service.dev_logs(str(harness.clones / ".." / "elsewhere")).status == 403
    assert service.dev_logs(str(harness.clones / "gone")) == ServiceError("Worktree path does not exist.", 404)
    assert service.dev_logs(str(base)) == ServiceError("Path is not a git worktree.", 400)


def test_start_dev_server_then_report_running(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    worktree = str(harness.worktree())

    async def scenario():
        first = await harness.service.start_dev_server(worktree)
        second = await harness.service.start_dev_server(worktree)
        logs = harness.service.dev_logs(worktree)
        status = harness.service.workspace_status(worktree)
        await harness.aclose()
        return first, second, logs, status

    first, second, logs, status = asyncio.run(scenario())

    assert first["status"] == "started"
    assert first["path"] == worktree
    assert second["status"] == "already-running"
    assert logs["running"] is True
    assert logs["exists"] is True
    assert "[system] started dev server" in logs["lines"]
    assert status["sources"] == ["supervisor"]
    assert harness.spawner.calls == [(["bun", "run", "dev"], worktree)]


def test_busy_worktree_rejects_new_dev_server(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    worktree = harness.worktree()
    (worktree / PORT_FILE).write_text("3000", encoding="utf-8")

    result = asyncio.run(harness.service.start_dev_server(str(worktree)))

    assert result == ServiceError("Worktree is already active.", 409)
    assert harness.spawner.calls == []


def test_spawn_failure_maps_to_server_error(tmp_path: Path) -> None:
    harness = Harness(tmp_path, spawner=FakeSpawner(FileNotFoundError("bun: not found")))
    worktree = str(harness.worktree())

    result = asyncio.run(harness.service.start_dev_server(worktree))

    assert isinstance(result, ServiceError)
    assert result.status == 500
    assert "bun" in result.error


def test_start_production_clones_once_and_starts(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    url = "https://github.com/acme/widget.git"

    async def scenario():
        before = harness.service.production_logs(url)
        started = await harness.service.start_production(url)
        again = await harness.service.start_production(url)
        logs = harness.service.production_logs(url)
        await harness.aclose()
        return before, started, again, logs

    before, started, again, logs = asyncio.run(scenario())

    clone_path = str(harness.production_dir / "widget")
    assert before["exists"] is False
    assert before["lines"] == []
    assert started["status"] == "started"
    assert started["path"] == clone_path
    assert again["status"] == "already-running"
    assert logs["running"] is True
    clones = [args for args, _ in harness.git.invocations if args[0] == "clone"]
    assert clones == [("clone", url, clone_path)]


def test_production_requires_url(tmp_path: Path) -> None:
    harness = Harness(tmp_path)

    assert asyncio.run(harness.service.start_production("")).status == 400
    assert harness.service.production_logs(None).status == 400


def test_terminal_for_base_clone_and_worktree(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    worktree = str(harness.worktree())
    base = str(harness.clones / "widget")
    plain = harness.clones / "notes"
    plain.mkdir()

    async def scenario():
        started = await harness.service.start_terminal(worktree)
        reused = await harness.service.start_terminal(worktree)
        base_session = await harness.service.start_terminal(base)
        not_git = await harness.service.start_terminal(str(plain))
        status = harness.service.terminal_status(worktree)
        await harness.aclose()
        after = harness.service.terminal_status(worktree)
        return started, reused, base_session, not_git, status, after

    started, reused, base_session, not_git, status, after = asyncio.run(scenario())

    assert started["status"] == "started"
    assert reused["status"] == "already-running"
    assert reused["session_id"] == started["session_id"]
    assert base_session["status"] == "started"
    assert not_git == ServiceError("Path is not a git clone.", 400)
    assert status["session"]["session_id"] == started["session_id"]
    assert after["session"] is None


def test_workspace_status_reports_port_and_sources(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    worktree = harness.worktree()
    (worktree / PORT_FILE).write_text("4321", encoding="utf-8")
    harness.activity.signal("agent").mark_active(str(worktree))

    status = harness.service.workspace_status(str(worktree))

    assert status == {
        "path": str(worktree),
        "is_worktree": True,
        "active": True,
        "sources": ["agent", "port-file"],
        "port": 4321,
        "prompt_summary": None,
    }
    assert harness.service.workspace_status("").error == "Workspace path is required."


def test_run_agent_summarises_events(tmp_path: Path) -> None:
    runner = FakeCodexRunner([AgentEvent("item.started"), AgentEvent("item.completed")])
    harness = Harness(tmp_path, agents_runner=runner)
    worktree = str(harness.worktree())

    result = asyncio.run(harness.service.run_agent(worktree, "add tests"))

    assert result == {"path": worktree, "events": 2, "status": "done"}
    assert runner.invocations == [("add tests", worktree)]
    assert not harness.activity.is_active(worktree)


def test_run_agent_reports_failure(tmp_path: Path) -> None:
    runner = FakeCodexRunner(error=CodexRunFailedError(1, "quota exceeded"))
    harness = Harness(tmp_path, agents_runner=runner)
    worktree = str(harness.worktree())

    result = asyncio.run(harness.service.run_agent(worktree, "add tests"))

    assert result["status"] == "error"
    assert "quota exceeded" in result["message"]


def test_run_agent_validation(tmp_path: Path) -> None:
    without_runner = Harness(tmp_path / "a")
    with_runner = Harness(tmp_path / "b", agents_runner=FakeCodexRunner())

    assert asyncio.run(without_runner.service.run_agent("/x", "go")).status == 500
    assert asyncio.run(with_runner.service.run_agent("/x", "  ")).status == 400
    assert asyncio.run(with_runner.service.run_agent("/x", "go")).status == 403


def test_link_task(tmp_path: Path) -> None:
    ledger = StubLedger()
    harness = Harness(tmp_path, ledger=ledger)
    worktree = str(harness.worktree())

    linked = harness.service.link_task(" TASK-9 ", worktree)

    assert linked["task_id"] == "TASK-9"
    assert linked["done"] is False
    assert ledger.links == [("TASK-9", worktree)]
    assert harness.service.link_task("", worktree).status == 400


def test_link_task_without_ledger(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    worktree = str(harness.worktree())

    assert harness.service.link_task("TASK-9", worktree) == ServiceError(
        "Task tracking is not configured.", 500
    )


@pytest.mark.parametrize(
    ("candidate", "expected"),
    [("/srv/clones", True), ("/srv/clones/a", True), ("/srv/clones-other", False), ("/srv", False)],
)
def test_is_within_root(candidate: str, expected: bool) -> None:
    assert is_within_root(candidate, "/srv/clones") is expected


def test_production_info_for_missing_and_present_clone(tmp_path: Path) -> None:
    def responder(args, cwd):
        if args[0] == "log":
            return git_ok("abc123\nRelease 1.2")
        if args[:2] == ("status", "--porcelain"):
            return git_ok(" M app.js\n")
        return git_responder(args, cwd)

    harness = Harness(tmp_path, git=FakeGitRunner(responder=responder))
    url = "https://github.com/acme/widget.git"

    missing = asyncio.run(harness.service.production_info(url))
    clone = harness.production_dir / "widget"
    (clone / ".git").mkdir(parents=True)
    (clone / PORT_FILE).write_text("8080", encoding="utf-8")
    present = asyncio.run(harness.service.production_info(url))

    assert missing == {
        "path": str(clone),
        "exists": False,
        "port": None,
        "commit_hash": None,
        "commit_description": None,
        "has_changes": None,
        "in_use": False,
    }
    assert present == {
        "path": str(clone),
        "exists": True,
        "port": 8080,
        "commit_hash": "abc123",
        "commit_description": "Release 1.2",
        "has_changes": True,
        "in_use": True,
    }
    assert asyncio.run(harness.service.production_info(" ")).status == 400
