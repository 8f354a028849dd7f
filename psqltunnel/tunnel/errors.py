"""Typed errors raised by the tunnel subsystem."""

from __future__ import annotations

from typing import Sequence


class TunnelError(RuntimeError):
    """Base class for every tunnel failure surfaced to callers."""

    retryable = False

    def __init__(self, message: str, *, diagnostics: Sequence[str] = ()) -> None:
        super().__init__(message)
        self.diagnostics: tuple[str, ...] = tuple(diagnostics)

    def __str__(self) -> str:
        message = super().__str__()
        if not self.diagnostics:
            return message
        tail = "\n".join(self.diagnostics[-10:])
        return f"{message}\n{tail}"


class DiscoveryError(TunnelError):
    """Raised when bastion or database discovery fails."""


class NotFound(DiscoveryError):
    """No inventory resource matched the request."""


class Ambiguous(DiscoveryError):
    """More than one inventory resource matched the request."""

    def __init__(self, message: str, *, candidates: Sequence[str] = ()) -> None:
        super().__init__(message)
        self.candidates: tuple[str, ...] = tuple(candidates)


class AuthFailure(DiscoveryError):
    """The inventory API rejected our credentials."""


class DiscoveryTimeout(DiscoveryError):
    """An inventory call did not answer within the discovery timeout."""


class InventoryUnavailable(DiscoveryError):
    """The inventory API failed for a reason other than authentication."""


class EstablishError(TunnelError):
    """Raised while spawning or health-checking the forwarding process."""


class PortUnavailable(EstablishError):
    """The forwarding process could not bind the allocated local port."""

    retryable = True


class ProcessSpawnFailed(EstablishError):
    """The forwarding binary could not be located or started."""


class HealthCheckTimeout(EstablishError):
    """The local port never became connectable before the deadline."""


class TunnelRuntimeError(TunnelError):
    """Raised when an established tunnel stops working."""


class ProcessExited(TunnelRuntimeError):
    """The forwarding process terminated on its own."""

    def __init__(
        self,
        message: str,
        *,
        returncode: int | None = None,
        diagnostics: Sequence[str] = (),
    ) -> None:
        super().__init__(message, diagnostics=diagnostics)
        self.returncode = returncode


class NetworkUnreachable(TunnelRuntimeError):
    """The local end of the tunnel stopped accepting connections."""


class EnvironmentNotAllowed(TunnelError):
    """The environment is not part of the configured allow-list."""


class InvalidTunnelState(TunnelError):
    """The requested operation is not valid in the manager's current state."""


class ConnectCancelled(TunnelError):
    """The caller cancelled connect before the tunnel became ready."""


__all__ = [
    "Ambiguous",
    "AuthFailure",
    "ConnectCancelled",
    "DiscoveryError",
    "DiscoveryTimeout",
    "EnvironmentNotAllowed",
    "EstablishError",
    "HealthCheckTimeout",
    "InvalidTunnelState",
    "InventoryUnavailable",
    "NetworkUnreachable",
    "NotFound",
    "PortUnavailable",
    "ProcessExited",
    "ProcessSpawnFailed",
    "TunnelError",
    "TunnelRuntimeError",
]
