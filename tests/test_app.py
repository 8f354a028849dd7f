"""App-level tests for session and tunnel wiring."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

import pytest

from psqltunnel.app import PsqltunnelApp
from psqltunnel.config import AppConfig, ConnectionProfileConfig
from psqltunnel.connections import ConnectionEvent
from psqltunnel.models import ConnectionProfile
from psqltunnel.providers import ProfileSwitchProvider, SessionDisconnectProvider
from psqltunnel.session import SessionManager, SessionState
from psqltunnel.tunnel import NetworkUnreachable, NotFound, TunnelState, TunnelStatus
from psqltunnel.widgets import describe_session


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


class _FakeBackend:
    async def connect(self, profile: ConnectionProfile) -> ConnectionEvent:
        return ConnectionEvent(
            server_version="16.2",
            schemas=("public",),
            status="Connected",
            latency_ms=3,
            connected_at=datetime.now(tz=timezone.utc),
        )


class _FakeTunnel:
    def __init__(self, *, error: Exception | None = None) -> None:
        self.error = error
        self.state = TunnelState.IDLE
        self.last_error: Exception | None = None
        self._listeners: set[Callable[[TunnelStatus], None]] = set()

    def subscribe(self, listener: Callable[[TunnelStatus], None]) -> Callable[[], None]:
        self._listeners.add(listener)
        return lambda: self._listeners.discard(listener)

    async def connect(self, environment: str, db_identifier: str, options: object = None) -> int:
        if self.error:
            self.state = TunnelState.ERROR
            raise self.error
        self.state = TunnelState.READY
        return 6000

    async def disconnect(self) -> None:
        self.state = TunnelState.CLOSED

    def fail(self, error: Exception) -> None:
        self.last_error = error
        self.state = TunnelState.ERROR
        for listener in tuple(self._listeners):
            listener(TunnelStatus(state=TunnelState.ERROR, error=error))  # type: ignore[arg-type]


def _config() -> AppConfig:
    return AppConfig(
        profiles=[
            ConnectionProfileConfig(name="Local", host="localhost", port=5432),
            ConnectionProfileConfig(name="Replica", host="replica.internal", port=5432),
            ConnectionProfileConfig(name="staging/orders", database="orders", environment="staging"),
        ],
        active_profile="Local",
    )


def _app(config: AppConfig, tunnel: _FakeTunnel | None = None) -> PsqltunnelApp:
    manager = SessionManager(
        config=config,
        backend=_FakeBackend(),
        tunnel_factory=lambda settings: tunnel or _FakeTunnel(),  # type: ignore[arg-type,return-value]
    )
    return PsqltunnelApp(config, session_manager=manager)


class _DummyScreen:
    """Minimal stub so providers can reference an app without a running screen stack."""

    def __init__(self, app: PsqltunnelApp) -> None:
        self.app = app
        self.focused = None


@pytest.mark.anyio
async def test_app_loads_config_when_none_given(monkeypatch: pytest.MonkeyPatch) -> None:
    config = _config()
    monkeypatch.setattr("psqltunnel.app._load_app_config", lambda: config)

    app = PsqltunnelApp()

    assert app.app_config is config
    assert [profile.name for profile in app.session_manager.profiles] == ["Local", "Replica", "staging/orders"]
    summary = app._profile_summary()
    assert "staging/orders: orders via staging bastion" in summary
    assert "Local: localhost:5432" in summary


@pytest.mark.anyio
async def test_connect_active_profile_queues_success_notification() -> None:
    app = _app(_config())

    assert await app.connect_active_profile() is True

    state = app.session_manager.state
    assert state is not None and state.connected
    message, severity = app._pending_notifications[-1]
    assert severity == "information"
    assert message == "Local: connected to database."


@pytest.mark.anyio
async def test_tunnel_failure_becomes_error_notification() -> None:
    app = _app(_config(), tunnel=_FakeTunnel(error=NotFound("No bastion instance found for 'staging'.")))

    assert await app.switch_profile("staging/orders") is None

    message, severity = app._pending_notifications[-1]
    assert severity == "error"
    assert "No bastion instance found" in message
    assert app.app_config.active_profile == "Local"


@pytest.mark.anyio
async def test_lost_tunnel_notifies_user(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("psqltunnel.config.CONFIG_FILE", tmp_path / "config.toml")
    tunnel = _FakeTunnel()
    app = _app(_config(), tunnel=tunnel)
    await app.switch_profile("staging/orders")
    assert app._pending_notifications[-1][0] == "staging/orders: connected to localhost:6000."

    tunnel.fail(NetworkUnreachable("Local port 6000 stopped accepting connections."))

    message, severity = app._pending_notifications[-1]
    assert severity == "error"
    assert "tunnel lost" in message
    assert "stopped accepting connections" in message


@pytest.mark.anyio
async def test_profile_switch_provider_updates_active_profile(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    config_path = tmp_path / "config.toml"
    monkeypatch.setattr("psqltunnel.config.CONFIG_FILE", config_path)
    app = _app(_config())

    provider = ProfileSwitchProvider(_DummyScreen(app))  # type: ignore[arg-type]
    hits = [hit async for hit in provider.discover()]
    assert "Connect to staging/orders via staging bastion" in [str(hit.display) for hit in hits]
    target = next(hit for hit in hits if "Replica" in str(hit.display or ""))
    await target.command()

    assert app.session_manager.active_profile_name == "Replica"
    assert app.app_config.active_profile == "Replica"
    assert 'active_profile = "Replica"' in config_path.read_text()


@pytest.mark.anyio
async def test_disconnect_provider_closes_session() -> None:
    app = _app(_config())
    provider = SessionDisconnectProvider(_DummyScreen(app))  # type: ignore[arg-type]
    assert [hit async for hit in provider.discover()] == []

    await app.connect_active_profile()
    hits = [hit async for hit in provider.discover()]
    assert [str(hit.display) for hit in hits] == ["Disconnect Local"]
    await hits[0].command()

    state = app.session_manager.state
    assert state is not None
    assert state.connected is False
    assert state.status == "Disconnected"


def test_describe_session_includes_tunnel_details() -> None:
    state = SessionState(
        profile=ConnectionProfile(name="staging/orders", environment="staging"),
        connected=True,
        refreshed_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
        server_version="16.2",
        schemas=("public", "reporting"),
        latency_ms=12,
        local_port=6000,
        tunnel_state=TunnelState.READY,
    )

    text = describe_session(state)

    assert "Profile: staging/orders" in text
    assert "Status: Connected (12 ms)" in text
    assert "Tunnel: ready on localhost:6000" in text
    assert "Schemas: 2" in text
    assert "Error" not in text


def test_describe_session_shows_first_error_line() -> None:
    state = SessionState(
        profile=ConnectionProfile(name="Local"),
        connected=False,
        refreshed_at=datetime.now(tz=timezone.utc),
        status="Failed",
        last_error="connection refused\nmore detail",
    )

    text = describe_session(state)

    assert "Status: Failed (n/a)" in text
    assert "Error: connection refused" in text
    assert "more detail" not in text
    assert "Tunnel" not in text
