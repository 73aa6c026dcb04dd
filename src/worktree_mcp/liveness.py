"""Process liveness probing."""

from __future__ import annotations

import os


def is_pid_alive(pid: int | None) -> bool:
    """Probe ``pid`` with signal 0 without affecting the process."""

    if pid is None or pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but belongs to another user.
        return True
    except OSError:
        return False
    return True


__all__ = ["is_pid_alive"]
