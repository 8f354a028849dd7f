"""Status bar widget that mirrors session and tunnel information."""

from __future__ import annotations

from typing import Callable

from textual.widgets import Static

from psqltunnel.session import SessionManager, SessionState


def describe_session(state: SessionState) -> str:
    """One-line summary of the session rendered by :class:`StatusBar`."""

    status = state.status or ("Connected" if state.connected else "Idle")
    latency = f"{state.latency_ms} ms" if state.latency_ms is not None else "n/a"
    refreshed = state.refreshed_at.astimezone().strftime("%H:%M:%S")
    parts = [
        f"Profile: {state.profile.name}",
        f"Status: {status} ({latency})",
    ]
    if state.tunnel_state is not None:
        tunnel = state.tunnel_state.value
        if state.local_port is not None:
            tunnel = f"{tunnel} on localhost:{state.local_port}"
        parts.append(f"Tunnel: {tunnel}")
    if state.server_version:
        parts.append(f"Server: {state.server_version}")
    if state.schemas:
        parts.append(f"Schemas: {len(state.schemas)}")
    parts.append(f"Updated: {refreshed}")
    if state.last_error:
        reason = state.last_error.splitlines()[0][:80]
        parts.append(f"Error: {reason}")
    return " | ".join(parts)


class StatusBar(Static):
    """Compact status strip rendered above Textual's footer."""

    DEFAULT_CSS = """
    StatusBar {
        height: 1;
        padding: 0 1;
        background: $surface-darken-3;
        color: $text;
    }
    """

    def __init__(self, session_manager: SessionManager) -> None:
        super().__init__("Not connected", id="status-bar")
        self._session_manager = session_manager
        self._unsubscribe: Callable[[], None] | None = None

    async def on_mount(self) -> None:
        self._unsubscribe = self._session_manager.subscribe(self._handle_session_update)

    def on_unmount(self) -> None:
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None

    def _handle_session_update(self, state: SessionState) -> None:
        self.update(describe_session(state))


__all__ = ["StatusBar", "describe_session"]
