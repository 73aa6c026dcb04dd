"""Worktree MCP diagnostics CLI."""

from __future__ import annotations

import argparse
import json
import os
from pathlib import Path

from worktree_mcp.activity import read_port_file
from worktree_mcp.config import WorkspaceSettings
from worktree_mcp.git import extract_worktree_repo_root, is_git_repository, is_worktree_dir
from worktree_mcp.metadata import read_worktree_prompt_summary
from worktree_mcp.storage import ChromaUnavailableError, WorkspaceLedger


def load_store(settings: WorkspaceSettings) -> WorkspaceLedger:
    try:
        store = WorkspaceLedger(settings.chroma_persist_path)
        store.ping()
        return store
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)


def cmd_worktrees(args: argparse.Namespace) -> None:
    settings = WorkspaceSettings()
    store = load_store(settings)
    try:
        records = store.list_worktrees(status=args.status)
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)
    print(json.dumps([record.to_dict() for record in records], indent=2))


def cmd_tasks(args: argparse.Namespace) -> None:
    settings = WorkspaceSettings()
    store = load_store(settings)
    try:
        links = store.list_task_links(args.workspace)
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)
    if args.json:
        print(json.dumps([link.to_dict() for link in links], indent=2))
    else:
        for link in links:
            state = "done" if link.done else "open"
            print(f"{link.task_id} [{state}] -> {link.workspace_path}")


def describe_clone(path: Path) -> dict[str, object]:
    text = str(path)
    if is_worktree_dir(text):
        kind = "worktree"
    elif is_git_repository(text):
        kind = "base-clone"
    else:
        kind = "other"

    root = extract_worktree_repo_root(text) if kind == "worktree" else None
    return {
        "path": text,
        "kind": kind,
        "repo_root": root.repo_root if root else None,
        "port": read_port_file(text),
        "prompt_summary": read_worktree_prompt_summary(text) if kind == "worktree" else None,
    }


def cmd_clones(args: argparse.Namespace) -> None:
    settings = WorkspaceSettings()
    clones_dir = Path(args.clones_dir) if args.clones_dir else settings.clones_dir
    try:
        entries = sorted(entry for entry in clones_dir.iterdir() if entry.is_dir())
    except OSError as exc:
        print(f"Unable to read clones directory {clones_dir}: {exc}")
        raise SystemExit(1)

    payload = [describe_clone(entry) for entry in entries]
    if args.kind:
        payload = [item for item in payload if item["kind"] == args.kind]
    print(json.dumps(payload, indent=2))


def cmd_metrics(args: argparse.Namespace) -> None:
    settings = WorkspaceSettings()
    store = load_store(settings)
    try:
        worktrees = store.list_worktrees()
        links = store.list_task_links()
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)

    status_counts: dict[str, int] = {}
    for record in worktrees:
        status_counts[record.status] = status_counts.get(record.status, 0) + 1

    on_disk = 0
    clones_dir = settings.clones_dir
    if os.path.isdir(clones_dir):
        on_disk = sum(1 for entry in os.scandir(clones_dir) if is_worktree_dir(entry.path))

    metrics = {
        "worktrees_total": len(worktrees),
        "worktree_status_counts": status_counts,
        "worktrees_on_disk": on_disk,
        "task_links_total": len(links),
        "task_links_done": sum(1 for link in links if link.done),
    }
    print(json.dumps(metrics, indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Worktree MCP diagnostics")
    sub = parser.add_subparsers(dest="cmd")

    p_worktrees = sub.add_parser("worktrees", help="List ledger worktree records")
    p_worktrees.add_argument("--status", help="Only show records in this status (active, removed)")
    p_worktrees.set_defaults(func=cmd_worktrees)

    p_tasks = sub.add_parser("tasks", help="List task links")
    p_tasks.add_argument("--workspace", help="Only show links for this workspace path")
    p_tasks.add_argument("--json", action="store_true", help="Output JSON")
    p_tasks.set_defaults(func=cmd_tasks)

    p_clones = sub.add_parser("clones", help="Inspect the clones directory on disk")
    p_clones.add_argument("--clones-dir", help="Override WORKTREE_CLONES_DIR")
    p_clones.add_argument("--kind", choices=["worktree", "base-clone", "other"])
    p_clones.set_defaults(func=cmd_clones)

    p_metrics = sub.add_parser("metrics", help="Show worktree and task link counts")
    p_metrics.set_defaults(func=cmd_metrics)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return
    args.func(args)


if __name__ == "__main__":
    main()
