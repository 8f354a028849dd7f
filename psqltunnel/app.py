"""Textual application entry point for psqltunnel."""

from __future__ import annotations

import logging
from typing import Callable, Sequence

from textual.app import App, ComposeResult
from textual.containers import Container
from textual.widgets import Footer, Header, Static

from .cli import apply_overrides, configure_logging, parse_args
from .config import AppConfig, load_config, save_config
from .connections import ConnectionBackendError
from .models import ConnectionProfile
from .providers import ProfileSwitchProvider, SessionDisconnectProvider
from .session import SessionManager, SessionState
from .tunnel import TunnelError, TunnelState
from .widgets import StatusBar

LOG = logging.getLogger(__name__)


def _load_app_config() -> AppConfig:
    """Load configuration with a small wrapper for future overrides."""

    return load_config()


class PsqltunnelApp(App[None]):
    """Textual shell around the session manager and its tunnel."""

    COMMANDS = App.COMMANDS | {ProfileSwitchProvider, SessionDisconnectProvider}
    CSS = """
    Screen {
        layout: vertical;
    }
    #main-column {
        layout: vertical;
        padding: 1 2;
        height: 1fr;
    }
    """

    BINDINGS = [
        ("ctrl+c", "quit", "Quit"),
        ("ctrl+o", "connect", "Connect"),
        ("ctrl+d", "disconnect", "Disconnect"),
        ("ctrl+p", "command_palette", "Command Palette"),
    ]

    def __init__(
        self,
        config: AppConfig | None = None,
        *,
        session_manager: SessionManager | None = None,
        auto_connect: bool = False,
    ) -> None:
        super().__init__()
        self._config = config or _load_app_config()
        self._session_manager = session_manager or SessionManager(config=self._config)
        self._auto_connect = auto_connect
        self._last_session_state: SessionState | None = None
        self._pending_notifications: list[tuple[str, str]] = []
        self._session_unsubscribe: Callable[[], None] | None = self._session_manager.subscribe(
            self._handle_session_state
        )

    def compose(self) -> ComposeResult:
        """Compose the root layout."""

        yield Header(show_clock=True)
        yield Container(Static(self._profile_summary(), id="summary"), id="main-column")
        yield StatusBar(self._session_manager)
        yield Footer()

    async def on_mount(self) -> None:
        self._flush_pending_notifications()
        if self._auto_connect:
            self.action_connect()

    def action_connect(self) -> None:
        self.run_worker(self.connect_active_profile(), exclusive=True, group="session")

    def action_disconnect(self) -> None:
        self.run_worker(self.disconnect_session(), group="session-close")

    @property
    def session_manager(self) -> SessionManager:
        """Expose the session manager for tests."""

        return self._session_manager

    @property
    def app_config(self) -> AppConfig:
        return self._config

    async def connect_active_profile(self) -> bool:
        """Connect the configured profile; errors become notifications."""

        name = self._config.active_profile or (
            self._session_manager.profiles[0].name if self._session_manager.profiles else None
        )
        if name is None:
            self._safe_notify("No connection profiles configured.", severity="warning")
            return False
        return await self._connect(name)

    async def switch_profile(self, name: str) -> None:
        """Activate the requested connection profile and persist the choice."""

        if not await self._connect(name):
            return
        self._config = self._config.with_active_profile(name)
        save_config(self._config)

    async def disconnect_session(self) -> None:
        await self._session_manager.disconnect()

    async def _connect(self, name: str) -> bool:
        try:
            state = await self._session_manager.connect(name)
        except (TunnelError, ConnectionBackendError, ValueError) as exc:
            self._safe_notify(str(exc).splitlines()[0], severity="error")
            return False
        target = f"localhost:{state.local_port}" if state.local_port else "database"
        self._safe_notify(f"{state.profile.name}: connected to {target}.", severity="information")
        return True

    async def _shutdown(self) -> None:
        if self._session_unsubscribe:
            self._session_unsubscribe()
            self._session_unsubscribe = None
        await self._session_manager.disconnect()
        await super()._shutdown()

    def _profile_summary(self) -> str:
        lines: list[str] = ["Connection profiles:"]
        lines.extend(_describe_profiles(self._session_manager.profiles))
        lines.append("")
        lines.append("Ctrl+O connects the active profile, Ctrl+D disconnects.")
        return "\n".join(lines)

    def _handle_session_state(self, state: SessionState) -> None:
        self._maybe_notify_state_change(state)
        self._last_session_state = state

    def _maybe_notify_state_change(self, state: SessionState) -> None:
        previous = self._last_session_state
        lost = state.tunnel_state is TunnelState.ERROR and not state.connected
        was_connected = previous is not None and previous.connected
        if lost and was_connected:
            reason = ""
            if state.last_error:
                reason = f" ({state.last_error.splitlines()[0][:120]})"
            self._safe_notify(
                f"{state.profile.name}: tunnel lost{reason}. Reconnect to continue.",
                severity="error",
            )

    def _safe_notify(self, message: str, *, severity: str = "information") -> None:
        if self.is_running:
            try:
                self.notify(message, severity=severity)
            except Exception:
                LOG.exception("Failed to display notification", extra={"notification": message})
        else:
            self._pending_notifications.append((message, severity))

    def _flush_pending_notifications(self) -> None:
        if not self._pending_notifications:
            return
        pending = list(self._pending_notifications)
        self._pending_notifications.clear()
        for message, severity in pending:
            try:
                self.notify(message, severity=severity)
            except Exception:
                LOG.exception("Failed to display queued notification", extra={"notification": message})


def _describe_profiles(profiles: Sequence[ConnectionProfile]) -> list[str]:
    lines: list[str] = []
    for profile in profiles:
        if profile.uses_tunnel:
            lines.append(f"  {profile.name}: {profile.tunnel_target} via {profile.environment} bastion")
        else:
            lines.append(f"  {profile.name}: {profile.host or 'localhost'}:{profile.port or 5432}")
    return lines


def main(argv: Sequence[str] | None = None) -> None:
    """Parse flags and invoke the Textual application."""

    args = parse_args(argv)
    configure_logging(args.log_level)
    config = apply_overrides(_load_app_config(), args)
    PsqltunnelApp(config, auto_connect=args.connect or args.tunnel).run()


if __name__ == "__main__":
    main()
