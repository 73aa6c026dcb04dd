"""Free TCP port discovery by bind-and-release probing."""

from __future__ import annotations

import errno
import socket

MAX_PORT = 65535


class PortExhaustedError(RuntimeError):
    """Raised when no free port exists in the requested range."""


def _can_bind(family: socket.AddressFamily, host: str, port: int) -> bool:
    try:
        sock = socket.socket(family, socket.SOCK_STREAM)
    except OSError as exc:
        # Host without IPv6 support cannot hold the port on "::" either.
        return family == socket.AF_INET6 and exc.errno in {errno.EAFNOSUPPORT, errno.EPROTONOSUPPORT}

    with sock:
        try:
            sock.bind((host, port))
        except OSError as exc:
            if family == socket.AF_INET6 and exc.errno in {errno.EAFNOSUPPORT, errno.EADDRNOTAVAIL}:
                return True
            return False
    return True


def is_port_free(port: int) -> bool:
    """Return True when ``port`` can be bound on both wildcard addresses."""

    if not _can_bind(socket.AF_INET, "0.0.0.0", port):
        return False
    if not socket.has_ipv6:
        return True
    return _can_bind(socket.AF_INET6, "::", port)


def find_first_free_port(lower_bound: int, max_port: int = MAX_PORT) -> int:
    """Return the smallest free port in ``[lower_bound, max_port]``."""

    start = int(lower_bound)
    if start < 1 or start > MAX_PORT:
        raise ValueError(f"Invalid port lower bound: {lower_bound}")

    upper = min(int(max_port), MAX_PORT)
    for port in range(start, upper + 1):
        if is_port_free(port):
            return port

    raise PortExhaustedError(f"No free port found from {start} to {upper}")


__all__ = ["PortExhaustedError", "find_first_free_port", "is_port_free", "MAX_PORT"]
