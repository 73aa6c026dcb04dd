from __future__ import annotations

import socket

import pytest

from worktree_mcp import ports
from worktree_mcp.ports import PortExhaustedError, find_first_free_port, is_port_free


def _bound_socket() -> socket.socket:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("0.0.0.0", 0))
    sock.listen(1)
    return sock


def test_bound_port_is_not_free() -> None:
    with _bound_socket() as sock:
        port = sock.getsockname()[1]
        assert not is_port_free(port)


def test_find_first_free_port_skips_bound_port() -> None:
    with _bound_socket() as sock:
        busy = sock.getsockname()[1]
        port = find_first_free_port(busy)
        assert port > busy
        assert is_port_free(port)


def test_find_first_free_port_returns_lower_bound_when_free(monkeypatch: pytest.MonkeyPatch) -> None:
    probed: list[int] = []

    def fake_free(port: int) -> bool:
        probed.append(port)
        return port >= 4002

    monkeypatch.setattr(ports, "is_port_free", fake_free)

    assert find_first_free_port(4000) == 4002
    assert probed == [4000, 4001, 4002]


@pytest.mark.parametrize("bound", [0, -5, 70000])
def test_find_first_free_port_rejects_invalid_bound(bound: int) -> None:
    with pytest.raises(ValueError):
        find_first_free_port(bound)


def test_find_first_free_port_reports_exhaustion(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(ports, "is_port_free", lambda port: False)

    with pytest.raises(PortExhaustedError):
        find_first_free_port(65530)
