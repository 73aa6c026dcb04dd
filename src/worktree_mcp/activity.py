"""Independent "workspace is busy" signals and their combined predicate."""

from __future__ import annotations

import logging
import os
from typing import Iterable, Protocol

PORT_FILE = ".devport"

AGENT_SIGNAL = "agent"
TERMINAL_SIGNAL = "terminal"
SUPERVISOR_SIGNAL = "supervisor"

logger = logging.getLogger(__name__)


class ActivityProvider(Protocol):
    """Anything that can say whether it currently holds a workspace."""

    name: str

    def is_active(self, workspace_path: str) -> bool:
        ...


class ActivitySignal:
    """A named set of workspace paths owned by a single subsystem."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._paths: set[str] = set()

    def mark_active(self, workspace_path: str) -> None:
        if not workspace_path:
            return
        self._paths.add(workspace_path)

    def mark_inactive(self, workspace_path: str) -> None:
        if not workspace_path:
            return
        self._paths.discard(workspace_path)

    def is_active(self, workspace_path: str) -> bool:
        if not workspace_path:
            return False
        return workspace_path in self._paths

    def active_paths(self) -> list[str]:
        return sorted(self._paths)

    def __repr__(self) -> str:  # pragma: no cover - debugging aid
        return f"ActivitySignal(name={self.name!r}, active={len(self._paths)})"


def port_file_path(workspace_path: str) -> str:
    return os.path.join(workspace_path, PORT_FILE)


def port_file_exists(workspace_path: str) -> bool:
    if not workspace_path:
        return False
    return os.path.isfile(port_file_path(workspace_path))


def read_port_file(workspace_path: str) -> int | None:
    """Return the port a workspace advertises as listening, if any."""

    path = port_file_path(workspace_path)
    try:
        with open(path, encoding="utf-8") as handle:
            text = handle.read().strip()
    except FileNotFoundError:
        return None
    except OSError as exc:
        logger.warning("Failed reading %s at %s: %s", PORT_FILE, path, exc)
        return None

    try:
        port = int(text)
    except ValueError:
        logger.warning("Invalid %s contents at %s: %r", PORT_FILE, path, text)
        return None
    if not 1 <= port <= 65535:
        logger.warning("Out-of-range %s contents at %s: %d", PORT_FILE, path, port)
        return None
    return port


class WorkspaceActivity:
    """OR-composition of every registered activity provider plus the port file."""

    def __init__(self, providers: Iterable[ActivityProvider] | None = None) -> None:
        self._providers: list[ActivityProvider] = []
        for provider in providers or ():
            self.register(provider)

    @classmethod
    def with_default_signals(cls) -> "WorkspaceActivity":
        return cls(
            [
                ActivitySignal(AGENT_SIGNAL),
                ActivitySignal(TERMINAL_SIGNAL),
                ActivitySignal(SUPERVISOR_SIGNAL),
            ]
        )

    def register(self, provider: ActivityProvider) -> None:
        if any(existing.name == provider.name for existing in self._providers):
            raise ValueError(f"Activity provider '{provider.name}' already registered")
        self._providers.append(provider)

    def signal(self, name: str) -> ActivitySignal:
        for provider in self._providers:
            if provider.name == name and isinstance(provider, ActivitySignal):
                return provider
        raise KeyError(f"No activity signal named '{name}'")

    @property
    def providers(self) -> list[ActivityProvider]:
        return list(self._providers)

    def is_active(self, workspace_path: str) -> bool:
        if not workspace_path:
            return False
        if port_file_exists(workspace_path):
            return True
        return any(provider.is_active(workspace_path) for provider in self._providers)

    def active_sources(self, workspace_path: str) -> list[str]:
        """Names of whatever is currently keeping ``workspace_path`` busy."""

        sources = [p.name for p in self._providers if p.is_active(workspace_path)]
        if port_file_exists(workspace_path):
            sources.append("port-file")
        return sources


__all__ = [
    "AGENT_SIGNAL",
    "ActivityProvider",
    "ActivitySignal",
    "PORT_FILE",
    "SUPERVISOR_SIGNAL",
    "TERMINAL_SIGNAL",
    "WorkspaceActivity",
    "port_file_exists",
    "port_file_path",
    "read_port_file",
]
