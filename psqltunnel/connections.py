"""Connection backends powering the session manager."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Protocol, runtime_checkable

import asyncpg

from .models import ConnectionProfile

LOG = logging.getLogger(__name__)


class ConnectionBackendError(RuntimeError):
    """Raised when a backend cannot connect to a profile."""


@runtime_checkable
class ConnectionBackend(Protocol):
    """Protocol implemented by connection backends."""

    async def connect(self, profile: ConnectionProfile) -> "ConnectionEvent":
        """Connect to the profile and describe the server."""


@dataclass(frozen=True, slots=True)
class ConnectionEvent:
    """Outcome of a successful connection attempt."""

    server_version: str
    schemas: tuple[str, ...]
    status: str
    latency_ms: int
    connected_at: datetime


class AsyncpgConnectionBackend:
    """Connection backend that talks to PostgreSQL via asyncpg."""

    _SCHEMA_QUERY = """
        SELECT schema_name
        FROM information_schema.schemata
        WHERE schema_name NOT IN ('pg_catalog', 'information_schema')
        ORDER BY schema_name
    """

    def __init__(self, *, connect_timeout: float = 5.0) -> None:
        self._connect_timeout = connect_timeout

    async def connect(self, profile: ConnectionProfile) -> ConnectionEvent:
        started = time.perf_counter()
        conn = await self._connect_profile(profile)
        try:
            version = await conn.fetchval("SHOW server_version")
            rows = await conn.fetch(self._SCHEMA_QUERY)
        except Exception as exc:
            raise ConnectionBackendError(f"Failed to inspect '{profile.name}': {exc}") from exc
        finally:
            try:
                await conn.close()
            except Exception:  # pragma: no cover - best effort
                LOG.debug("Failed to close inspection connection", exc_info=True, extra={"profile": profile.name})
        latency_ms = int((time.perf_counter() - started) * 1000)
        schemas = tuple(sorted(str(row["schema_name"]) for row in rows)) or ("public",)
        return ConnectionEvent(
            server_version=str(version),
            schemas=schemas,
            status="Connected",
            latency_ms=latency_ms,
            connected_at=datetime.now(tz=timezone.utc),
        )

    async def _connect_profile(self, profile: ConnectionProfile):
        try:
            return await asyncpg.connect(**connect_kwargs(profile, timeout=self._connect_timeout))
        except Exception as exc:
            raise ConnectionBackendError(f"Failed to connect to profile '{profile.name}': {exc}") from exc


def connect_kwargs(profile: ConnectionProfile, *, timeout: float) -> dict[str, object]:
    """Keyword arguments for ``asyncpg.connect`` derived from a profile."""

    kwargs: dict[str, object] = {}
    if profile.dsn:
        kwargs["dsn"] = profile.dsn
    else:
        kwargs["host"] = profile.host or "localhost"
        if profile.port is not None:
            kwargs["port"] = profile.port
        if profile.user:
            kwargs["user"] = profile.user
        if profile.database:
            kwargs["database"] = profile.database
    kwargs.setdefault("timeout", timeout)
    return kwargs


__all__ = [
    "AsyncpgConnectionBackend",
    "ConnectionBackend",
    "ConnectionBackendError",
    "ConnectionEvent",
    "connect_kwargs",
]
