"""Value objects shared across the tunnel subsystem."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Mapping

if TYPE_CHECKING:
    from .errors import TunnelError
    from .strategy import TunnelStrategy
    from .supervisor import ProcessHandle

DEFAULT_POSTGRES_PORT = 5432


class TunnelState(str, Enum):
    """Lifecycle states of a :class:`TunnelManager`."""

    IDLE = "idle"
    DISCOVERING = "discovering"
    ESTABLISHING = "establishing"
    READY = "ready"
    CLOSING = "closing"
    CLOSED = "closed"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class BastionHost:
    """Gateway instance discovered in the cloud inventory."""

    instance_id: str
    network_address: str | None
    lifecycle_state: str
    name: str = ""
    public_address: bool = False

    @property
    def is_publicly_reachable(self) -> bool:
        return bool(self.network_address) and self.public_address


@dataclass(frozen=True, slots=True)
class DatabaseEndpoint:
    """Database address the tunnel forwards to."""

    host: str
    port: int = DEFAULT_POSTGRES_PORT
    identifier: str = ""


@dataclass(frozen=True, slots=True)
class TunnelOptions:
    """Per-connect knobs supplied by the database-connection layer."""

    force_session_bridge: bool = False
    bastion_user: str = "ec2-user"
    key_path: str | None = None


@dataclass(frozen=True, slots=True)
class TunnelCommand:
    """Exact process invocation produced by a strategy."""

    argv: tuple[str, ...]
    env: Mapping[str, str] = field(default_factory=dict)

    @property
    def program(self) -> str:
        return self.argv[0]


@dataclass(frozen=True, slots=True)
class TunnelSession:
    """Live port-forward owned by a single manager."""

    local_port: int
    remote_address: str
    remote_port: int
    process: "ProcessHandle"
    strategy: "TunnelStrategy"
    started_at: datetime
    state: TunnelState = TunnelState.ESTABLISHING
    bastion: BastionHost | None = None


@dataclass(frozen=True, slots=True)
class TunnelStatus:
    """Snapshot delivered to listeners on every state transition."""

    state: TunnelState
    session: TunnelSession | None = None
    error: "TunnelError | None" = None


__all__ = [
    "BastionHost",
    "DEFAULT_POSTGRES_PORT",
    "DatabaseEndpoint",
    "TunnelCommand",
    "TunnelOptions",
    "TunnelSession",
    "TunnelState",
    "TunnelStatus",
]
