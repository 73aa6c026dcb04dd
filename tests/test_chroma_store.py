from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from worktree_mcp.storage import ChromaUnavailableError, TaskLink, WorkspaceLedger, WorktreeRecord


@dataclass
class _Record:
    document: str
    metadata: dict[str, Any]
    id: str


class StubCollection:
    def __init__(self) -> None:
        self.records: list[_Record] = []

    def add(self, *, documents, metadatas, ids) -> None:  # type: ignore[override]
        for document, metadata, record_id in zip(documents, metadatas, ids):
            for value in metadata.values():
                assert isinstance(value, (str, int, float, bool)), value
            self.records.append(_Record(document=document, metadata=dict(metadata), id=record_id))

    def get(self, *, ids=None, where=None, limit=None):  # type: ignore[override]
        filtered = self.records
        if where:
            for key, value in where.items():
                filtered = [record for record in filtered if record.metadata.get(key) == value]
        if limit is not None:
            filtered = filtered[:limit]
        return {
            "ids": [record.id for record in filtered],
            "documents": [record.document for record in filtered],
            "metadatas": [record.metadata for record in filtered],
        }


class StubClient:
    def __init__(self) -> None:
        self.collections = defaultdict(StubCollection)

    def get_or_create_collection(self, name: str) -> StubCollection:
        return self.collections[name]


class TickingClock:
    def __init__(self) -> None:
        self.now = datetime.fromisoformat("2025-01-01T00:00:00+00:00")

    def __call__(self) -> datetime:
        self.now += timedelta(seconds=1)
        return self.now


def make_ledger(tmp_path: Path, clock=None) -> WorkspaceLedger:
    return WorkspaceLedger(
        tmp_path,
        client_factory=lambda: StubClient(),
        clock=clock or (lambda: datetime.fromisoformat("2025-01-01T00:00:00+00:00")),
    )


def test_record_and_fetch_events(tmp_path: Path) -> None:
    ledger = make_ledger(tmp_path)

    event = ledger.record_event(
        subject="worktree::/clones/a",
        event_type="note",
        body={"message": "created"},
        metadata={"level": "INFO", "optional": None},
    )

    assert event.subject == "worktree::/clones/a"
    assert event.metadata["sequence"] == 1
    assert "optional" not in event.metadata

    events = ledger.fetch_events("worktree::/clones/a")
    assert len(events) == 1
    assert events[0].metadata["level"] == "INFO"
    assert events[0].document == '{"message": "created"}'


def test_sequence_increments(tmp_path: Path) -> None:
    ledger = make_ledger(tmp_path)

    ledger.record_event(subject="s", event_type="a", body="A")
    ledger.record_event(subject="s", event_type="b", body="B")

    sequences = [event.metadata["sequence"] for event in ledger.fetch_events("s")]
    assert sequences == [1, 2]


def test_search_filters(tmp_path: Path) -> None:
    ledger = make_ledger(tmp_path)

    ledger.record_event(subject="s", event_type="note", body="Investigate auth", metadata={"tags": ["auth"]})
    ledger.record_event(subject="s", event_type="note", body="Fix logging", metadata={})

    results = ledger.search_events("auth")
    assert len(results) == 1
    assert results[0].metadata["tags"] == '["auth"]'


def test_list_worktrees_keeps_latest_record_per_path(tmp_path: Path) -> None:
    ledger = make_ledger(tmp_path, clock=TickingClock())

    record = ledger.record_worktree(
        "/clones/widget-1", branch="widget-1", base_dir="/clones/widget", metadata={"repo_url": "u"}
    )
    ledger.record_worktree("/clones/widget-2", branch="widget-2", base_dir="/clones/widget")
    ledger.record_worktree("/clones/widget-1", branch="widget-1", base_dir="/clones/widget", status="removed")

    assert isinstance(record, WorktreeRecord)
    worktrees = {item.path: item for item in ledger.list_worktrees()}
    assert worktrees["/clones/widget-1"].status == "removed"
    assert worktrees["/clones/widget-2"].status == "active"
    assert [item.path for item in ledger.list_worktrees(status="active")] == ["/clones/widget-2"]
    assert record.to_dict()["metadata"] == {"repo_url": "u"}


def test_task_links_are_marked_done_once(tmp_path: Path) -> None:
    ledger = make_ledger(tmp_path, clock=TickingClock())

    link = ledger.link_task("TASK-1", "/clones/widget-1")
    ledger.link_task("TASK-2", "/clones/widget-1")
    ledger.link_task("TASK-3", "/clones/widget-2")

    assert isinstance(link, TaskLink)
    assert not link.done

    first = ledger.mark_tasks_done_by_workspace("/clones/widget-1")
    second = ledger.mark_tasks_done_by_workspace("/clones/widget-1")

    assert (first.total_matched, first.total_marked_done) == (2, 2)
    assert (second.total_matched, second.total_marked_done) == (2, 0)

    links = {item.task_id: item for item in ledger.list_task_links()}
    assert links["TASK-1"].done and links["TASK-1"].done_at is not None
    assert links["TASK-2"].done
    assert not links["TASK-3"].done
    assert [item.task_id for item in ledger.list_task_links("/clones/widget-2")] == ["TASK-3"]


def test_mark_done_without_links_is_a_no_op(tmp_path: Path) -> None:
    ledger = make_ledger(tmp_path)

    completion = ledger.mark_tasks_done_by_workspace("/clones/nothing")

    assert (completion.total_matched, completion.total_marked_done) == (0, 0)


def test_client_factory_failure_surfaces(tmp_path: Path) -> None:
    def broken_factory():
        raise ChromaUnavailableError("chromadb package is not installed")

    ledger = WorkspaceLedger(tmp_path, client_factory=broken_factory)

    with pytest.raises(ChromaUnavailableError):
        ledger.ping()
