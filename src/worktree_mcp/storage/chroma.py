"""Chroma-based persistence layer for the worktree lifecycle and task links."""

from __future__ import annotations

import json
import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Protocol

from .models import TaskCompletion, TaskLink, WorktreeRecord

WORKTREE_EVENT = "worktree_update"
TASK_LINKED_EVENT = "task_linked"
TASK_DONE_EVENT = "task_done"

logger = logging.getLogger(__name__)


class ChromaUnavailableError(RuntimeError):
    """Raised when the Chroma client cannot be constructed."""


class CollectionProtocol(Protocol):
    """Protocol for the minimal Chroma collection API used by the ledger."""

    def add(
        self,
        *,
        documents: Iterable[str],
        metadatas: Iterable[dict[str, Any]],
        ids: Iterable[str],
    ) -> None:
        ...

    def get(
        self,
        *,
        ids: Iterable[str] | None = None,
        where: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> dict[str, list[Any]]:
        ...


class ClientProtocol(Protocol):
    """Protocol for the minimal Chroma client API used by the ledger."""

    def get_or_create_collection(self, name: str) -> CollectionProtocol:
        ...


@dataclass(slots=True)
class ChromaEvent:
    """Represents a stored event in Chroma."""

    id: str
    subject: str
    event_type: str
    document: str
    metadata: dict[str, Any]
    timestamp: datetime


def _scalar_metadata(values: dict[str, Any]) -> dict[str, Any]:
    # Chroma metadata only accepts str/int/float/bool values.
    cleaned: dict[str, Any] = {}
    for key, value in values.items():
        if value is None:
            continue
        if isinstance(value, (str, int, float, bool)):
            cleaned[key] = value
        else:
            cleaned[key] = json.dumps(value)
    return cleaned


class WorkspaceLedger:
    """Append-only record of worktree lifecycle events and task links."""

    def __init__(
        self,
        path: Path,
        *,
        collection_name: str = "worktree_ledger",
        client_factory: Callable[[], ClientProtocol] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._path = Path(path)
        self._collection_name = collection_name
        self._client_factory = client_factory or self._default_client_factory
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._client: ClientProtocol | None = None
        self._collection: CollectionProtocol | None = None
        self._counters: dict[str, int] = defaultdict(int)

    def _default_client_factory(self) -> ClientProtocol:
        try:
            import chromadb
        except ImportError as exc:  # pragma: no cover - depends on environment
            raise ChromaUnavailableError("chromadb package is not installed") from exc

        self._path.mkdir(parents=True, exist_ok=True)
        return chromadb.PersistentClient(path=str(self._path))

    def _ensure_collection(self) -> CollectionProtocol:
        if self._collection is None:
            client = self._client or self._client_factory()
            self._client = client
            self._collection = client.get_or_create_collection(self._collection_name)
        return self._collection

    def _convert_result(self, result: dict[str, list[Any]]) -> list[ChromaEvent]:
        events: list[ChromaEvent] = []
        ids = result.get("ids") or []
        documents = result.get("documents") or []
        metadatas = result.get("metadatas") or []
        for event_id, document, metadata in zip(ids, documents, metadatas):
            metadata = metadata or {}
            timestamp_raw = metadata.get("timestamp")
            timestamp = (
                datetime.fromisoformat(timestamp_raw)
                if isinstance(timestamp_raw, str)
                else self._clock()
            )
            events.append(
                ChromaEvent(
                    id=event_id,
                    subject=metadata.get("subject", ""),
                    event_type=metadata.get("event_type", ""),
                    document=document,
                    metadata=metadata,
                    timestamp=timestamp,
                )
            )
        events.sort(key=lambda event: (event.timestamp, event.metadata.get("sequence", 0)))
        return events

    def ping(self) -> bool:
        """Verify that the underlying collection can be obtained."""

        self._ensure_collection()
        return True

    def record_event(
        self,
        *,
        subject: str,
        event_type: str,
        body: Any,
        metadata: dict[str, Any] | None = None,
    ) -> ChromaEvent:
        collection = self._ensure_collection()
        counter = self._counters[subject] = self._counters[subject] + 1
        event_id = f"{subject}:{uuid.uuid4().hex}"
        timestamp = self._clock()

        document = body if isinstance(body, str) else json.dumps(body)
        record_metadata = {
            "subject": subject,
            "event_type": event_type,
            "timestamp": timestamp.isoformat(),
            "sequence": counter,
        }
        if metadata:
            record_metadata.update(metadata)
        record_metadata = _scalar_metadata(record_metadata)

        collection.add(
            documents=[document],
            metadatas=[record_metadata],
            ids=[event_id],
        )

        return ChromaEvent(
            id=event_id,
            subject=subject,
            event_type=event_type,
            document=document,
            metadata=record_metadata,
            timestamp=timestamp,
        )

    def fetch_events(self, subject: str, *, limit: int | None = None) -> list[ChromaEvent]:
        collection = self._ensure_collection()
        result = collection.get(where={"subject": subject}, limit=limit)
        return self._convert_result(result)

    def search_events(
        self,
        query: str | None = None,
        *,
        filters: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> list[ChromaEvent]:
        collection = self._ensure_collection()
        result = collection.get(where=filters)
        events = self._convert_result(result)
        if query:
            needle = query.lower()
            events = [
                event
                for event in events
                if needle in event.document.lower()
                or any(needle in str(value).lower() for value in event.metadata.values())
            ]
        return events[:limit] if limit else events

    def record_worktree(
        self,
        path: str,
        *,
        branch: str | None = None,
        base_dir: str | None = None,
        status: str = "active",
        metadata: dict[str, Any] | None = None,
    ) -> WorktreeRecord:
        payload = {
            "path": path,
            "branch": branch,
            "base_dir": base_dir,
            "status": status,
            "metadata": metadata or {},
        }
        event = self.record_event(
            subject=f"worktree::{path}",
            event_type=WORKTREE_EVENT,
            body=payload,
            metadata={"path": path, "status": status},
        )
        return WorktreeRecord(
            path=path,
            branch=branch,
            base_dir=base_dir,
            status=status,
            created_at=event.timestamp,
            metadata=metadata or {},
        )

    def list_worktrees(self, status: str | None = None) -> list[WorktreeRecord]:
        """Latest record per worktree path, optionally filtered by status."""

        latest: dict[str, WorktreeRecord] = {}
        for event in self.search_events(filters={"event_type": WORKTREE_EVENT}):
            doc = json.loads(event.document)
            latest[doc["path"]] = WorktreeRecord(
                path=doc["path"],
                branch=doc.get("branch"),
                base_dir=doc.get("base_dir"),
                status=doc.get("status", "unknown"),
                created_at=event.timestamp,
                metadata=doc.get("metadata") or {},
            )
        records = list(latest.values())
        if status is not None:
            records = [record for record in records if record.status == status]
        return records

    def link_task(self, task_id: str, workspace_path: str) -> TaskLink:
        event = self.record_event(
            subject=f"task::{task_id}",
            event_type=TASK_LINKED_EVENT,
            body={"task_id": task_id, "workspace_path": workspace_path},
            metadata={"task_id": task_id, "workspace_path": workspace_path},
        )
        return TaskLink(task_id=task_id, workspace_path=workspace_path, done=False, linked_at=event.timestamp)

    def list_task_links(self, workspace_path: str | None = None) -> list[TaskLink]:
        filters = {"workspace_path": workspace_path} if workspace_path else None
        links: dict[tuple[str, str], TaskLink] = {}
        for event in self.search_events(filters=filters):
            task_id = event.metadata.get("task_id")
            path = event.metadata.get("workspace_path")
            if not task_id or not path:
                continue
            key = (task_id, path)
            if event.event_type == TASK_LINKED_EVENT:
                links[key] = TaskLink(task_id=task_id, workspace_path=path, done=False, linked_at=event.timestamp)
            elif event.event_type == TASK_DONE_EVENT and key in links:
                links[key].done = True
                links[key].done_at = event.timestamp
        return list(links.values())

    def mark_tasks_done_by_workspace(self, workspace_path: str) -> TaskCompletion:
        """Mark every open task linked to ``workspace_path`` as done."""

        matched = self.list_task_links(workspace_path)
        marked = 0
        for link in matched:
            if link.done:
                continue
            self.record_event(
                subject=f"task::{link.task_id}",
                event_type=TASK_DONE_EVENT,
                body={"task_id": link.task_id, "workspace_path": workspace_path},
                metadata={"task_id": link.task_id, "workspace_path": workspace_path},
            )
            marked += 1
        if marked:
            logger.info(
                "Marked linked tasks done",
                extra={"workspace": workspace_path, "total_matched": len(matched), "total_marked_done": marked},
            )
        return TaskCompletion(total_matched=len(matched), total_marked_done=marked)


__all__ = ["ChromaEvent", "ChromaUnavailableError", "WorkspaceLedger"]
