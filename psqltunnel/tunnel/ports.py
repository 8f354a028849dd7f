"""Local ephemeral port allocation."""

from __future__ import annotations

import logging
import socket

from .errors import PortUnavailable

LOG = logging.getLogger(__name__)

LOCALHOST = "127.0.0.1"


class PortAllocator:
    """Hands out OS-assigned local ports and tracks the ones leased to tunnels.

    The socket used to discover a free port is closed before the forwarding
    process binds it, so another process may grab the port in between. That
    race is reported by the supervisor as :class:`PortUnavailable`.
    """

    def __init__(self, host: str = LOCALHOST, *, max_attempts: int = 5) -> None:
        self._host = host
        self._max_attempts = max_attempts
        self._leased: set[int] = set()

    @property
    def leased(self) -> frozenset[int]:
        return frozenset(self._leased)

    def allocate(self) -> int:
        """Return a free local port and record it as leased."""

        for _ in range(self._max_attempts):
            port = self._probe_free_port()
            if port in self._leased:
                continue
            self._leased.add(port)
            LOG.debug("Allocated local port", extra={"port": port})
            return port
        raise PortUnavailable(f"Could not find an unused local port on {self._host}.")

    def release(self, port: int | None) -> None:
        """Forget a lease; unknown ports are ignored."""

        if port is None:
            return
        self._leased.discard(port)

    def _probe_free_port(self) -> int:
        try:
            with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
                sock.bind((self._host, 0))
                return int(sock.getsockname()[1])
        except OSError as exc:
            raise PortUnavailable(f"Could not bind a local socket on {self._host}: {exc}") from exc


__all__ = ["LOCALHOST", "PortAllocator"]
