"""Tests for local port allocation."""

from __future__ import annotations

import socket

import pytest

from psqltunnel.tunnel import PortAllocator, PortUnavailable


def test_allocate_returns_bindable_port() -> None:
    allocator = PortAllocator()

    port = allocator.allocate()

    assert 0 < port < 65536
    assert port in allocator.leased
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", port))


def test_release_drops_lease_and_ignores_unknown_ports() -> None:
    allocator = PortAllocator()
    port = allocator.allocate()

    allocator.release(port)
    allocator.release(port)
    allocator.release(None)

    assert allocator.leased == frozenset()


def test_allocate_skips_ports_already_leased(monkeypatch: pytest.MonkeyPatch) -> None:
    allocator = PortAllocator()
    handed_out = iter([40001, 40001, 40002])
    monkeypatch.setattr(allocator, "_probe_free_port", lambda: next(handed_out))

    first = allocator.allocate()
    second = allocator.allocate()

    assert (first, second) == (40001, 40002)


def test_allocate_gives_up_after_bounded_attempts(monkeypatch: pytest.MonkeyPatch) -> None:
    allocator = PortAllocator(max_attempts=2)
    monkeypatch.setattr(allocator, "_probe_free_port", lambda: 40001)
    allocator.allocate()

    with pytest.raises(PortUnavailable) as excinfo:
        allocator.allocate()

    assert excinfo.value.retryable is True
