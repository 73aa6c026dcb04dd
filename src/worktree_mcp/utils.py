"""Environment helpers shared by every subprocess this package spawns."""

from __future__ import annotations

import os
from typing import Mapping

_SANITIZED_VARS = {
    "PYTHONHOME",
    "PYTHONPATH",
    "VIRTUAL_ENV",
    "PIP_RESPECT_VIRTUALENV",
}


def sanitize_environment(additional: Mapping[str, str] | None = None) -> dict[str, str]:
    """Return a sanitized environment suitable for subprocess execution."""

    env = dict(os.environ)
    for key in _SANITIZED_VARS:
        env.pop(key, None)
    if additional:
        env.update(additional)
    return env


def normalize_workspace_path(raw_path: str | os.PathLike[str]) -> str:
    """Absolute, normalised form used as the key of every workspace registry."""

    return os.path.abspath(os.fspath(raw_path))


__all__ = ["normalize_workspace_path", "sanitize_environment"]
