from __future__ import annotations

import asyncio
from contextlib import aclosing
from pathlib import Path

import pytest

from worktree_mcp.activity import ActivitySignal
from worktree_mcp.agents import (
    AgentEvent,
    AgentRunTracker,
    CodexExecutionResult,
    CodexNotFoundError,
    CodexRunFailedError,
    CodexRunner,
    FakeCodexRunner,
    parse_event_line,
)
from worktree_mcp.utils import sanitize_environment


def write_script(path: Path, body: str) -> Path:
    path.write_text("#!/bin/sh\n" + body, encoding="utf-8")
    path.chmod(0o755)
    return path


async def collect(iterator) -> list[AgentEvent]:
    return [event async for event in iterator]


def test_codex_runner_executes_script(tmp_path: Path) -> None:
    script = write_script(tmp_path / "codex", "echo 'Codex CLI 0.0.1'\n")

    runner = CodexRunner(script)
    result = asyncio.run(runner.version())

    assert isinstance(result, CodexExecutionResult)
    assert result.ok
    assert "Codex CLI 0.0.1" in result.stdout


def test_codex_not_found(tmp_path: Path) -> None:
    with pytest.raises(CodexNotFoundError):
        CodexRunner(tmp_path / "missing")


def test_stream_yields_json_events_in_workspace(tmp_path: Path) -> None:
    workspace = tmp_path / "workspace"
    workspace.mkdir()
    script = write_script(
        tmp_path / "codex",
        'echo "{\\"type\\": \\"item.started\\", \\"id\\": 1}"\n'
        "echo\n"
        "echo plain progress\n"
        'echo "{\\"msg\\": {\\"type\\": \\"agent_message\\"}}"\n'
        'echo "args: $*" >&2\n'
        "pwd\n",
    )

    runner = CodexRunner(script)
    events = asyncio.run(collect(runner.stream("fix the bug", str(workspace), flags=["--model", "gpt"])))

    assert [event.type for event in events] == ["item.started", "message", "agent_message", "message"]
    assert events[0].payload == {"id": 1}
    assert events[1].payload == {"text": "plain progress"}
    assert events[3].payload == {"text": str(workspace)}


def test_stream_passes_flags_before_exec(tmp_path: Path) -> None:
    script = write_script(tmp_path / "codex", 'echo "$@"\n')

    runner = CodexRunner(script)
    events = asyncio.run(collect(runner.stream("status", str(tmp_path), flags=["--model", "gpt"])))

    assert events[0].payload["text"] == "--model gpt exec --json status"


def test_stream_raises_on_non_zero_exit(tmp_path: Path) -> None:
    script = write_script(tmp_path / "codex", "echo started\necho 'auth expired' >&2\nexit 2\n")

    async def scenario():
        seen = []
        with pytest.raises(CodexRunFailedError) as excinfo:
            async for event in CodexRunner(script).stream("go", str(tmp_path)):
                seen.append(event)
        return seen, excinfo.value

    seen, error = asyncio.run(scenario())

    assert [event.payload.get("text") for event in seen] == ["started"]
    assert error.returncode == 2
    assert "auth expired" in str(error)


@pytest.mark.parametrize(
    ("line", "expected_type"),
    [
        ('{"type": "turn.completed"}', "turn.completed"),
        ('{"msg": {"type": "exec_command_begin"}}', "exec_command_begin"),
        ('{"id": 3}', "message"),
        ("[1, 2]", "message"),
        ("not json", "message"),
    ],
)
def test_parse_event_line(line: str, expected_type: str) -> None:
    event = parse_event_line(line)
    assert event is not None and event.type == expected_type


def test_parse_event_line_skips_blank_lines() -> None:
    assert parse_event_line("   \n") is None


def test_tracker_brackets_events_and_tracks_activity(tmp_path: Path) -> None:
    signal = ActivitySignal("agent")
    fake = FakeCodexRunner([AgentEvent("item.started", {"id": 1}), AgentEvent("item.completed", {"id": 1})])
    tracker = AgentRunTracker(signal, fake)
    workspace = str(tmp_path)
    observed: list[bool] = []

    async def scenario():
        events = []
        async for event in tracker.stream(workspace, "do it"):
            observed.append(signal.is_active(workspace))
            events.append(event)
        return events

    events = asyncio.run(scenario())

    assert [event.type for event in events] == ["start", "item.started", "item.completed", "done"]
    assert events[0].payload == {"workspace_path": workspace}
    assert all(observed)
    assert not signal.is_active(workspace)
    assert fake.invocations == [("do it", workspace)]


def test_tracker_turns_runner_failure_into_error_event(tmp_path: Path) -> None:
    signal = ActivitySignal("agent")
    fake = FakeCodexRunner(
        [AgentEvent("item.started")], error=CodexRunFailedError(1, "rate limited\n")
    )
    tracker = AgentRunTracker(signal, fake)

    events = asyncio.run(collect(tracker.stream(str(tmp_path), "do it")))

    assert [event.type for event in events] == ["start", "item.started", "error"]
    assert "rate limited" in events[-1].payload["message"]
    assert not signal.is_active(str(tmp_path))


def test_tracker_releases_workspace_when_consumer_stops_early(tmp_path: Path) -> None:
    signal = ActivitySignal("agent")
    fake = FakeCodexRunner([AgentEvent("a"), AgentEvent("b"), AgentEvent("c")])
    tracker = AgentRunTracker(signal, fake)
    workspace = str(tmp_path)

    async def scenario():
        async with aclosing(tracker.stream(workspace, "do it")) as events:
            async for event in events:
                if event.type == "a":
                    break
        return tracker.active_runs(workspace)

    assert asyncio.run(scenario()) == 0
    assert not signal.is_active(workspace)


def test_concurrent_runs_keep_workspace_busy_until_last_ends(tmp_path: Path) -> None:
    signal = ActivitySignal("agent")
    workspace = str(tmp_path)
    tracker = AgentRunTracker(signal, FakeCodexRunner([AgentEvent("step")], delay=0.01))

    async def scenario():
        first = tracker.stream(workspace, "one")
        second = tracker.stream(workspace, "two")
        await first.__anext__()
        await second.__anext__()
        both = tracker.active_runs(workspace)
        await collect(first)
        after_first = signal.is_active(workspace)
        await collect(second)
        return both, after_first

    both, after_first = asyncio.run(scenario())

    assert both == 2
    assert after_first
    assert not signal.is_active(workspace)


def test_sanitize_environment_strips_virtualenv(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PYTHONPATH", "value")
    env = sanitize_environment({"EXTRA": "1"})
    assert "PYTHONPATH" not in env
    assert env["EXTRA"] == "1"
