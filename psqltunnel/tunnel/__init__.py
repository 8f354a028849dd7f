"""Secure tunnel subsystem: bastion discovery, port forwarding and supervision."""

from __future__ import annotations

from .errors import (
    Ambiguous,
    AuthFailure,
    ConnectCancelled,
    DiscoveryError,
    DiscoveryTimeout,
    EnvironmentNotAllowed,
    EstablishError,
    HealthCheckTimeout,
    InvalidTunnelState,
    InventoryUnavailable,
    NetworkUnreachable,
    NotFound,
    PortUnavailable,
    ProcessExited,
    ProcessSpawnFailed,
    TunnelError,
    TunnelRuntimeError,
)
from .locator import ResourceLocator
from .manager import TunnelListener, TunnelManager
from .models import (
    BastionHost,
    DatabaseEndpoint,
    TunnelCommand,
    TunnelOptions,
    TunnelSession,
    TunnelState,
    TunnelStatus,
)
from .ports import PortAllocator
from .strategy import (
    DirectSsh,
    SessionManagerBridge,
    TunnelStrategy,
    build_command,
    find_aws_cli,
    select_strategy,
    ssh_agent_available,
)
from .supervisor import ProcessHandle, ProcessSupervisor

__all__ = [
    "Ambiguous",
    "AuthFailure",
    "BastionHost",
    "ConnectCancelled",
    "DatabaseEndpoint",
    "DirectSsh",
    "DiscoveryError",
    "DiscoveryTimeout",
    "EnvironmentNotAllowed",
    "EstablishError",
    "HealthCheckTimeout",
    "InvalidTunnelState",
    "InventoryUnavailable",
    "NetworkUnreachable",
    "NotFound",
    "PortAllocator",
    "PortUnavailable",
    "ProcessExited",
    "ProcessHandle",
    "ProcessSpawnFailed",
    "ProcessSupervisor",
    "ResourceLocator",
    "SessionManagerBridge",
    "TunnelCommand",
    "TunnelError",
    "TunnelListener",
    "TunnelManager",
    "TunnelOptions",
    "TunnelRuntimeError",
    "TunnelSession",
    "TunnelState",
    "TunnelStatus",
    "TunnelStrategy",
    "build_command",
    "find_aws_cli",
    "select_strategy",
    "ssh_agent_available",
]
