"""Command palette providers for core app features."""

from __future__ import annotations

from textual.command import DiscoveryHit, Hit, Hits, Provider
from textual.types import IgnoreReturnCallbackType

from .models import ConnectionProfile
from .session import SessionManager


class _SessionProvider(Provider):
    """Shared access to the app's session manager."""

    @property
    def _session_manager(self) -> SessionManager | None:
        manager = getattr(self.app, "session_manager", None)
        if isinstance(manager, SessionManager):
            return manager
        return None


class ProfileSwitchProvider(_SessionProvider):
    """Expose connection profiles to the command palette."""

    async def search(self, query: str) -> Hits:
        manager = self._session_manager
        if manager is None:
            return
        matcher = self.matcher(query)
        for profile in manager.profiles:
            score = max(matcher.match(profile.name), matcher.match(profile.environment or ""))
            if score > 0:
                yield Hit(
                    score=score,
                    match_display=f"Connect to {matcher.highlight(profile.name)}{_route(profile)}",
                    command=self._connect(profile.name),
                    help=_help(profile),
                )

    async def discover(self) -> Hits:
        manager = self._session_manager
        if manager is None:
            return
        for profile in manager.profiles:
            yield DiscoveryHit(
                display=f"Connect to {profile.name}{_route(profile)}",
                command=self._connect(profile.name),
                help=_help(profile),
            )

    def _connect(self, name: str) -> IgnoreReturnCallbackType:
        async def _run() -> None:
            switcher = getattr(self.app, "switch_profile", None)
            if switcher is not None:
                await switcher(name)

        return _run


class SessionDisconnectProvider(_SessionProvider):
    """Offer to close the active session once one exists."""

    async def search(self, query: str) -> Hits:
        label = self._label()
        if label is None:
            return
        matcher = self.matcher(query)
        score = matcher.match(label)
        if score > 0:
            yield Hit(score=score, match_display=matcher.highlight(label), command=self._disconnect)

    async def discover(self) -> Hits:
        label = self._label()
        if label is not None:
            yield DiscoveryHit(display=label, command=self._disconnect)

    def _label(self) -> str | None:
        manager = self._session_manager
        if manager is None or manager.state is None:
            return None
        if manager.tunnel is not None:
            return f"Disconnect {manager.state.profile.name} and close tunnel"
        return f"Disconnect {manager.state.profile.name}"

    async def _disconnect(self) -> None:
        manager = self._session_manager
        if manager is not None:
            await manager.disconnect()


def _route(profile: ConnectionProfile) -> str:
    if profile.uses_tunnel:
        return f" via {profile.environment} bastion"
    return ""


def _help(profile: ConnectionProfile) -> str:
    if profile.uses_tunnel:
        return f"Open a tunnel to '{profile.tunnel_target}' and connect."
    return "Connect directly to this profile."


__all__ = ["ProfileSwitchProvider", "SessionDisconnectProvider"]
