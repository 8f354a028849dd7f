"""Tunnel orchestration behind an explicit state machine."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Sequence, TypeVar
from urllib.parse import quote

from .errors import (
    ConnectCancelled,
    EnvironmentNotAllowed,
    HealthCheckTimeout,
    InvalidTunnelState,
    NetworkUnreachable,
    ProcessExited,
    TunnelError,
)
from .locator import ResourceLocator
from .models import (
    BastionHost,
    DatabaseEndpoint,
    TunnelOptions,
    TunnelSession,
    TunnelState,
    TunnelStatus,
)
from .ports import PortAllocator
from .strategy import (
    DirectSsh,
    TunnelStrategy,
    build_command,
    select_strategy,
    session_bridge,
    ssh_agent_available,
)
from .supervisor import ProcessHandle, ProcessSupervisor

LOG = logging.getLogger(__name__)

TunnelListener = Callable[[TunnelStatus], None]

T = TypeVar("T")

_CONNECTABLE = frozenset({TunnelState.IDLE, TunnelState.CLOSED, TunnelState.ERROR})
_CONNECTING = frozenset({TunnelState.DISCOVERING, TunnelState.ESTABLISHING})


class TunnelManager:
    """Owns one port-forward from a local ephemeral port to a remote database.

    ``connect`` walks ``IDLE -> DISCOVERING -> ESTABLISHING -> READY``; any
    failure lands in ``ERROR`` with the spawned process already terminated.
    ``disconnect`` walks ``READY -> CLOSING -> CLOSED`` and is idempotent.
    While ``READY`` a single watch task notices the process exiting or the
    local port going dead and moves the manager to ``ERROR``.

    The manager can be used as an async context manager, which guarantees
    ``disconnect`` on every exit path.
    """

    def __init__(
        self,
        *,
        locator: ResourceLocator | None = None,
        supervisor: ProcessSupervisor | None = None,
        ports: PortAllocator | None = None,
        aws_profile: str | None = None,
        region: str | None = None,
        aws_cli: str | None = None,
        allowed_environments: Sequence[str] | None = None,
        allow_private_address: bool = False,
        bridge_via_ssh: bool = False,
        host_key_policy: str = "no",
        ready_timeout: float = 15.0,
        liveness_interval: float | None = 30.0,
        liveness_failures: int = 3,
        agent_probe: Callable[[], bool] = ssh_agent_available,
    ) -> None:
        self._locator = locator or ResourceLocator(aws_profile=aws_profile, region=region)
        self._supervisor = supervisor or ProcessSupervisor()
        self._ports = ports or PortAllocator()
        self._aws_profile = aws_profile
        self._region = region
        self._aws_cli = aws_cli
        self._allowed_environments = tuple(allowed_environments or ())
        self._allow_private_address = allow_private_address
        self._bridge_via_ssh = bridge_via_ssh
        self._host_key_policy = host_key_policy
        self._ready_timeout = ready_timeout
        self._liveness_interval = liveness_interval or None
        self._liveness_failures = max(1, liveness_failures)
        self._agent_probe = agent_probe
        self._state = TunnelState.IDLE
        self._session: TunnelSession | None = None
        self._last_error: TunnelError | None = None
        self._listeners: set[TunnelListener] = set()
        self._cancel_event = asyncio.Event()
        self._watch_task: asyncio.Task[None] | None = None
        self._pending: tuple[ProcessHandle, int] | None = None
        self._attempted: list[str] = []

    async def __aenter__(self) -> TunnelManager:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        if self._state in _CONNECTING:
            self.cancel()
            return
        await self.disconnect()

    @property
    def state(self) -> TunnelState:
        return self._state

    @property
    def session(self) -> TunnelSession | None:
        return self._session

    @property
    def local_port(self) -> int | None:
        """Port the caller may use; only set while ``READY``."""

        if self._state is TunnelState.READY and self._session:
            return self._session.local_port
        return None

    @property
    def last_error(self) -> TunnelError | None:
        return self._last_error

    @property
    def attempted_strategies(self) -> tuple[str, ...]:
        """Labels of the strategies tried by the most recent connect."""

        return tuple(self._attempted)

    def subscribe(self, listener: TunnelListener) -> Callable[[], None]:
        """Subscribe to state transitions; returns an unsubscribe handle."""

        self._listeners.add(listener)

        def _unsubscribe() -> None:
            self._listeners.discard(listener)

        return _unsubscribe

    async def connect(
        self,
        environment: str,
        db_identifier: str,
        options: TunnelOptions | None = None,
    ) -> int:
        """Discover, spawn and health-check a tunnel; return its local port."""

        if self._state not in _CONNECTABLE:
            raise InvalidTunnelState(f"Cannot connect while the tunnel is {self._state.value}.")
        options = options or TunnelOptions()
        self._reset()
        try:
            self._check_environment(environment)
            self._transition(TunnelState.DISCOVERING)
            bastion = await self._step(self._locator.find_bastion(environment))
            endpoint = await self._step(self._locator.find_database_endpoint(db_identifier))
            self._transition(TunnelState.ESTABLISHING)
            strategy = select_strategy(
                options,
                bastion,
                agent_available=self._agent_probe(),
                aws_cli=self._aws_cli,
                aws_profile=self._aws_profile,
                region=self._region,
                allow_private_address=self._allow_private_address,
                bridge_via_ssh=self._bridge_via_ssh,
                host_key_policy=self._host_key_policy,
            )
            try:
                session = await self._establish(strategy, bastion, endpoint, options)
            except HealthCheckTimeout as exc:
                if not isinstance(strategy, DirectSsh):
                    raise
                LOG.warning(
                    "Direct SSH tunnel timed out; falling back to session manager",
                    extra={"bastion": bastion.instance_id, "error": str(exc).splitlines()[0]},
                )
                fallback = session_bridge(
                    options,
                    aws_cli=self._aws_cli,
                    aws_profile=self._aws_profile,
                    region=self._region,
                    via_ssh=self._bridge_via_ssh,
                    host_key_policy=self._host_key_policy,
                )
                session = await self._establish(fallback, bastion, endpoint, options)
        except ConnectCancelled:
            await self._abort_pending()
            self._transition(TunnelState.CLOSED)
            raise
        except TunnelError as exc:
            await self._abort_pending()
            self._fail(exc)
            raise
        except BaseException:
            # Outer task cancellation or an unexpected bug; never leak the process.
            await asyncio.shield(self._abort_pending())
            self._transition(TunnelState.CLOSED)
            raise
        self._session = replace(session, state=TunnelState.READY)
        self._transition(TunnelState.READY)
        self._start_watch()
        return self._session.local_port

    def cancel(self) -> None:
        """Abort a connect that has not reached ``READY`` yet."""

        if self._state is TunnelState.READY:
            raise InvalidTunnelState("Tunnel is ready; use disconnect() instead of cancel().")
        if self._state in _CONNECTING:
            LOG.info("Cancelling tunnel connect", extra={"state": self._state.value})
            self._cancel_event.set()

    async def disconnect(self) -> None:
        """Tear the tunnel down; safe to call in any state."""

        if self._state in _CONNECTING:
            self.cancel()
            return
        if self._state in (TunnelState.IDLE, TunnelState.CLOSED, TunnelState.CLOSING):
            return
        if self._state is TunnelState.READY:
            self._transition(TunnelState.CLOSING)
        await self._stop_watch()
        await self._teardown()
        self._transition(TunnelState.CLOSED)
        self._session = None

    def connection_url(
        self,
        user: str,
        database: str,
        password: str | None = None,
        *,
        sslmode: str | None = "require",
    ) -> str:
        """PostgreSQL URL pointing at the local end of a ready tunnel.

        RDS certificates are issued for the database host, not ``localhost``, so
        the default ``sslmode`` encrypts without verifying the host name. Pass
        ``sslmode=None`` to leave the mode to the client.
        """

        port = self.local_port
        if port is None:
            raise InvalidTunnelState("Tunnel not established.")
        credentials = quote(user, safe="")
        if password:
            credentials = f"{credentials}:{quote(password, safe='')}"
        url = f"postgresql://{credentials}@localhost:{port}/{quote(database, safe='')}"
        if sslmode:
            url = f"{url}?sslmode={quote(sslmode, safe='')}"
        return url

    async def _establish(
        self,
        strategy: TunnelStrategy,
        bastion: BastionHost,
        endpoint: DatabaseEndpoint,
        options: TunnelOptions,
    ) -> TunnelSession:
        self._attempted.append(strategy.label)
        self._checkpoint()
        local_port = self._ports.allocate()
        try:
            command = build_command(strategy, local_port, bastion, endpoint, options.bastion_user)
            LOG.info(
                "Starting tunnel",
                extra={
                    "strategy": strategy.label,
                    "port": local_port,
                    "remote": f"{endpoint.host}:{endpoint.port}",
                    "bastion": bastion.instance_id,
                },
            )
            handle = await self._supervisor.spawn(command)
        except BaseException:
            self._ports.release(local_port)
            raise
        self._pending = (handle, local_port)
        self._checkpoint()
        try:
            await self._step(self._supervisor.await_ready(handle, local_port, self._ready_timeout))
        except HealthCheckTimeout:
            await self._abort_pending()
            raise
        self._pending = None
        return TunnelSession(
            local_port=local_port,
            remote_address=endpoint.host,
            remote_port=endpoint.port,
            process=handle,
            strategy=strategy,
            started_at=datetime.now(tz=timezone.utc),
            state=TunnelState.ESTABLISHING,
            bastion=bastion,
        )

    async def _step(self, awaitable: Awaitable[T]) -> T:
        """Run one suspending step, racing it against ``cancel()``."""

        self._checkpoint()
        step = asyncio.ensure_future(awaitable)
        cancelled = asyncio.ensure_future(self._cancel_event.wait())
        try:
            await asyncio.wait({step, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancelled.cancel()
            if not step.done():
                step.cancel()
                await asyncio.gather(step, return_exceptions=True)
        if step.cancelled():
            self._checkpoint()
        return step.result()

    def _checkpoint(self) -> None:
        if self._cancel_event.is_set():
            raise ConnectCancelled("Tunnel connect cancelled.")

    def _check_environment(self, environment: str) -> None:
        if not environment:
            raise EnvironmentNotAllowed("An environment name is required to locate the bastion host.")
        if self._allowed_environments and environment not in self._allowed_environments:
            allowed = ", ".join(self._allowed_environments)
            raise EnvironmentNotAllowed(f"Environment '{environment}' is not allowed (expected one of: {allowed}).")

    def _reset(self) -> None:
        self._cancel_event = asyncio.Event()
        self._session = None
        self._last_error = None
        self._attempted = []

    async def _abort_pending(self) -> None:
        pending, self._pending = self._pending, None
        if pending is None:
            return
        handle, port = pending
        try:
            await self._supervisor.terminate(handle)
        finally:
            self._ports.release(port)

    async def _teardown(self) -> None:
        session = self._session
        if session is None:
            return
        try:
            await self._supervisor.terminate(session.process)
        finally:
            self._ports.release(session.local_port)

    def _fail(self, error: TunnelError) -> None:
        self._last_error = error
        LOG.warning("Tunnel failed", extra={"error_type": type(error).__name__, "state": self._state.value})
        self._transition(TunnelState.ERROR, error)

    def _transition(self, state: TunnelState, error: TunnelError | None = None) -> None:
        previous = self._state
        self._state = state
        if self._session is not None and self._session.state is not state:
            self._session = replace(self._session, state=state)
        LOG.debug("Tunnel state change", extra={"from_state": previous.value, "to_state": state.value})
        status = TunnelStatus(state=state, session=self._session, error=error)
        for listener in tuple(self._listeners):
            try:
                listener(status)
            except Exception:
                LOG.exception("Tunnel listener failed", extra={"state": state.value})

    def _start_watch(self) -> None:
        session = self._session
        if session is None:
            return
        self._watch_task = asyncio.create_task(self._watch(session))

    async def _stop_watch(self) -> None:
        task, self._watch_task = self._watch_task, None
        if task is None or task is asyncio.current_task():
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    async def _watch(self, session: TunnelSession) -> None:
        error = await self._wait_for_failure(session)
        if error is None or self._state is not TunnelState.READY:
            return
        self._watch_task = None
        self._fail(error)
        await self._teardown()

    async def _wait_for_failure(self, session: TunnelSession) -> TunnelError | None:
        handle = session.process
        failures = 0
        while self._state is TunnelState.READY:
            exited = asyncio.ensure_future(handle.wait())
            try:
                done, _ = await asyncio.wait({exited}, timeout=self._liveness_interval)
            finally:
                if not exited.done():
                    exited.cancel()
            if done:
                return ProcessExited(
                    f"Forwarding process exited with status {handle.returncode}.",
                    returncode=handle.returncode,
                    diagnostics=handle.diagnostics(),
                )
            if await self._supervisor.probe(session.local_port):
                failures = 0
                continue
            failures += 1
            LOG.warning("Tunnel probe failed", extra={"port": session.local_port, "failures": failures})
            if failures >= self._liveness_failures:
                return NetworkUnreachable(
                    f"Local port {session.local_port} stopped accepting connections.",
                    diagnostics=handle.diagnostics(),
                )
        return None


__all__ = ["TunnelListener", "TunnelManager"]
