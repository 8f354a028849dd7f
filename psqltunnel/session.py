"""Connection/session manager wiring tunnels and database connections."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Callable

from .config import AppConfig, ConnectionProfileConfig, TunnelSettings
from .connections import (
    AsyncpgConnectionBackend,
    ConnectionBackend,
    ConnectionBackendError,
    ConnectionEvent,
)
from .models import ConnectionProfile
from .tunnel import (
    PortAllocator,
    ProcessSupervisor,
    ResourceLocator,
    TunnelError,
    TunnelManager,
    TunnelRuntimeError,
    TunnelState,
    TunnelStatus,
)

LOG = logging.getLogger(__name__)

SessionListener = Callable[["SessionState"], None]
TunnelFactory = Callable[[TunnelSettings], TunnelManager]


@dataclass(frozen=True, slots=True)
class SessionState:
    """Current session snapshot (active connection + tunnel)."""

    profile: ConnectionProfile
    connected: bool
    refreshed_at: datetime
    status: str = "Connected"
    schemas: tuple[str, ...] = ()
    server_version: str | None = None
    latency_ms: int | None = None
    local_port: int | None = None
    tunnel_state: TunnelState | None = None
    last_error: str | None = None

    @property
    def tunneled(self) -> bool:
        return self.tunnel_state is not None


def tunnel_manager_from_settings(settings: TunnelSettings) -> TunnelManager:
    """Build a tunnel manager configured from ``[tunnel]`` settings."""

    return TunnelManager(
        locator=ResourceLocator(
            aws_profile=settings.aws_profile,
            region=settings.aws_region,
            timeout=settings.discovery_timeout,
        ),
        supervisor=ProcessSupervisor(
            poll_interval=settings.poll_interval,
            terminate_grace=settings.terminate_grace,
        ),
        ports=PortAllocator(),
        aws_profile=settings.aws_profile,
        region=settings.aws_region,
        aws_cli=settings.aws_cli_path,
        allowed_environments=settings.allowed_environments,
        allow_private_address=settings.allow_private_address,
        bridge_via_ssh=settings.session_bridge_via_ssh,
        host_key_policy=settings.strict_host_key_checking,
        ready_timeout=settings.ready_timeout,
        liveness_interval=settings.liveness_interval,
        liveness_failures=settings.liveness_failures,
    )


class SessionManager:
    """Session orchestrator: owns at most one tunnel and one active profile.

    A tunnel reporting ``ERROR`` marks the session unusable; the manager never
    reconnects on its own and never reuses the stale local port.
    """

    def __init__(
        self,
        *,
        config: AppConfig,
        backend: ConnectionBackend | None = None,
        tunnel_factory: TunnelFactory | None = None,
    ) -> None:
        self._config = config
        self._profiles = tuple(self._from_config(entry) for entry in config.profiles)
        self._listeners: set[SessionListener] = set()
        self._state: SessionState | None = None
        self._backend = backend or AsyncpgConnectionBackend()
        self._tunnel_factory = tunnel_factory or tunnel_manager_from_settings
        self._tunnel: TunnelManager | None = None
        self._tunnel_unsubscribe: Callable[[], None] | None = None

    @property
    def profiles(self) -> tuple[ConnectionProfile, ...]:
        """Profiles available in the current config."""

        return self._profiles

    @property
    def state(self) -> SessionState | None:
        """Current session state."""

        return self._state

    @property
    def active_profile_name(self) -> str | None:
        """Name of the currently active profile, if any."""

        if self._state:
            return self._state.profile.name
        return None

    @property
    def tunnel(self) -> TunnelManager | None:
        """Tunnel owned by the active session, if the profile needs one."""

        return self._tunnel

    async def connect_active(self) -> SessionState | None:
        """Connect the configured active profile (or the first one)."""

        name = self._config.active_profile or (self._profiles[0].name if self._profiles else None)
        if not name:
            return None
        return await self.connect(name)

    async def connect(self, name: str) -> SessionState:
        """Activate the requested profile, opening a tunnel first when needed."""

        profile = self._profile_by_name(name)
        await self.disconnect()
        target = profile
        local_port: int | None = None
        tunnel: TunnelManager | None = None
        if profile.uses_tunnel:
            tunnel = self._attach_tunnel()
            self._update_state(profile, connected=False, status="Opening tunnel", tunnel_state=tunnel.state)
            try:
                local_port = await tunnel.connect(
                    profile.environment or "",
                    profile.tunnel_target,
                    self._config.tunnel.tunnel_options(),
                )
            except TunnelError as exc:
                self._record_failure(profile, exc, tunnel_state=tunnel.state)
                raise
            target = profile.through_tunnel(local_port)
        try:
            event = await self._backend.connect(target)
        except ConnectionBackendError as exc:
            if tunnel is not None and self._tunnel is tunnel:
                await self._close_tunnel()
            self._record_failure(profile, exc)
            raise
        if tunnel is not None and (self._tunnel is not tunnel or tunnel.state is not TunnelState.READY):
            # The tunnel died or was closed while the database handshake was in flight.
            tunnel_state = tunnel.state
            error = tunnel.last_error or TunnelRuntimeError(
                f"Tunnel for '{profile.name}' closed before the database connection completed."
            )
            if self._tunnel is tunnel:
                await self._close_tunnel()
            self._record_failure(profile, error, tunnel_state=tunnel_state)
            raise error
        self._apply_event(profile, event, local_port=local_port)
        return self._state  # type: ignore[return-value]

    async def disconnect(self) -> None:
        """Close the active session and its tunnel; safe to call repeatedly."""

        had_tunnel = self._tunnel is not None
        await self._close_tunnel()
        if self._state and (self._state.connected or had_tunnel):
            self._state = replace(
                self._state,
                connected=False,
                status="Disconnected",
                local_port=None,
                tunnel_state=TunnelState.CLOSED if had_tunnel else None,
                refreshed_at=datetime.now(tz=timezone.utc),
            )
            self._notify()

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        """Subscribe to session updates; returns an unsubscribe handle."""

        self._listeners.add(listener)
        if self._state:
            listener(self._state)

        def _unsubscribe() -> None:
            self._listeners.discard(listener)

        return _unsubscribe

    def _profile_by_name(self, name: str) -> ConnectionProfile:
        for profile in self._profiles:
            if profile.name == name:
                return profile
        raise ValueError(f"Profile '{name}' not found.")

    def _attach_tunnel(self) -> TunnelManager:
        tunnel = self._tunnel_factory(self._config.tunnel)
        self._tunnel = tunnel
        self._tunnel_unsubscribe = tunnel.subscribe(self._handle_tunnel_status)
        return tunnel

    async def _close_tunnel(self) -> None:
        tunnel, self._tunnel = self._tunnel, None
        if tunnel is None:
            return
        if self._tunnel_unsubscribe:
            self._tunnel_unsubscribe()
            self._tunnel_unsubscribe = None
        await tunnel.disconnect()

    def _handle_tunnel_status(self, status: TunnelStatus) -> None:
        if not self._state:
            return
        if status.state is TunnelState.ERROR and self._state.connected:
            LOG.warning(
                "Tunnel lost; session unusable until reconnect",
                extra={"profile": self._state.profile.name, "error_type": type(status.error).__name__},
            )
            self._state = replace(
                self._state,
                connected=False,
                status="Tunnel lost",
                local_port=None,
                tunnel_state=status.state,
                last_error=str(status.error) if status.error else None,
                refreshed_at=datetime.now(tz=timezone.utc),
            )
            self._notify()
            return
        if self._state.tunnel_state is not status.state:
            self._state = replace(self._state, tunnel_state=status.state)
            self._notify()

    def _apply_event(self, profile: ConnectionProfile, event: ConnectionEvent, *, local_port: int | None) -> None:
        self._update_state(
            profile,
            connected=True,
            status=event.status,
            schemas=event.schemas,
            server_version=event.server_version,
            latency_ms=event.latency_ms,
            local_port=local_port,
            refreshed_at=event.connected_at,
            tunnel_state=self._tunnel.state if self._tunnel else None,
        )

    def _record_failure(
        self,
        profile: ConnectionProfile,
        error: Exception,
        *,
        tunnel_state: TunnelState | None = None,
    ) -> None:
        LOG.warning(
            "Connection failed",
            extra={"profile": profile.name, "error_type": type(error).__name__},
        )
        self._update_state(
            profile,
            connected=False,
            status="Failed",
            tunnel_state=tunnel_state,
            last_error=str(error),
        )

    def _update_state(
        self,
        profile: ConnectionProfile,
        *,
        connected: bool,
        status: str,
        schemas: tuple[str, ...] = (),
        server_version: str | None = None,
        latency_ms: int | None = None,
        local_port: int | None = None,
        refreshed_at: datetime | None = None,
        tunnel_state: TunnelState | None = None,
        last_error: str | None = None,
    ) -> None:
        self._state = SessionState(
            profile=profile,
            connected=connected,
            refreshed_at=refreshed_at or datetime.now(tz=timezone.utc),
            status=status,
            schemas=schemas,
            server_version=server_version,
            latency_ms=latency_ms,
            local_port=local_port,
            tunnel_state=tunnel_state,
            last_error=last_error,
        )
        self._notify()

    def _from_config(self, profile: ConnectionProfileConfig) -> ConnectionProfile:
        return ConnectionProfile(
            name=profile.name,
            dsn=profile.dsn,
            host=profile.host,
            port=profile.port,
            database=profile.database,
            user=profile.user,
            environment=profile.environment,
            db_identifier=profile.db_identifier,
        )

    def _notify(self) -> None:
        if not self._state:
            return
        for listener in tuple(self._listeners):
            listener(self._state)


__all__ = [
    "SessionManager",
    "SessionState",
    "tunnel_manager_from_settings",
]
