"""Shared dataclasses used across connection/session modules."""

from __future__ import annotations

from dataclasses import dataclass, replace


@dataclass(frozen=True, slots=True)
class ConnectionProfile:
    """Runtime representation of a connection profile."""

    name: str
    dsn: str | None = None
    host: str | None = None
    port: int | None = None
    database: str | None = None
    user: str | None = None
    environment: str | None = None
    db_identifier: str | None = None

    @property
    def uses_tunnel(self) -> bool:
        """Profiles naming an environment are reached through a bastion tunnel."""

        return bool(self.environment)

    @property
    def tunnel_target(self) -> str:
        """Database identifier looked up in the inventory."""

        return self.db_identifier or self.database or self.name

    def through_tunnel(self, local_port: int) -> ConnectionProfile:
        """Copy of the profile pointing at the local end of a tunnel."""

        return replace(self, dsn=None, host="localhost", port=local_port)


__all__ = ["ConnectionProfile"]
