"""Spawning, health-checking and terminating the forwarding process."""

from __future__ import annotations

import asyncio
import logging
import os
import re
from collections import deque
from contextlib import suppress
from dataclasses import dataclass, field

from .errors import HealthCheckTimeout, PortUnavailable, ProcessExited, ProcessSpawnFailed
from .models import TunnelCommand
from .ports import LOCALHOST

LOG = logging.getLogger(__name__)

_BIND_FAILURE = re.compile(
    r"address already in use|cannot listen to port|could not request local forwarding|bind.*failed",
    re.IGNORECASE,
)


@dataclass(slots=True)
class ProcessHandle:
    """Running forwarding process plus its captured output."""

    process: asyncio.subprocess.Process
    command: TunnelCommand
    output: deque[str] = field(default_factory=lambda: deque(maxlen=50))
    readers: list[asyncio.Task[None]] = field(default_factory=list)

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def returncode(self) -> int | None:
        return self.process.returncode

    @property
    def alive(self) -> bool:
        return self.process.returncode is None

    def diagnostics(self) -> tuple[str, ...]:
        """Most recent stdout/stderr lines, oldest first."""

        return tuple(self.output)

    async def wait(self) -> int:
        return await self.process.wait()


class ProcessSupervisor:
    """Uniform process lifecycle for every tunnel strategy."""

    def __init__(
        self,
        *,
        host: str = LOCALHOST,
        poll_interval: float = 0.5,
        probe_timeout: float = 1.0,
        terminate_grace: float = 5.0,
    ) -> None:
        self._host = host
        self._poll_interval = poll_interval
        self._probe_timeout = probe_timeout
        self._terminate_grace = terminate_grace

    @property
    def poll_interval(self) -> float:
        return self._poll_interval

    async def spawn(self, command: TunnelCommand) -> ProcessHandle:
        """Start ``command`` with its output captured for diagnostics."""

        env = {**os.environ, **command.env} if command.env else None
        try:
            process = await asyncio.create_subprocess_exec(
                *command.argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
        except OSError as exc:
            raise ProcessSpawnFailed(f"Failed to start '{command.program}': {exc}") from exc
        handle = ProcessHandle(process=process, command=command)
        for stream in (process.stdout, process.stderr):
            if stream is not None:
                handle.readers.append(asyncio.create_task(_drain(stream, handle.output)))
        LOG.info("Spawned forwarding process", extra={"pid": process.pid, "program": command.program})
        return handle

    async def await_ready(self, handle: ProcessHandle, local_port: int, deadline: float) -> None:
        """Poll ``local_port`` until it accepts a connection or ``deadline`` seconds pass."""

        loop = asyncio.get_running_loop()
        expires_at = loop.time() + deadline
        attempts = 0
        while True:
            if not handle.alive:
                raise await self._exit_error(handle, local_port)
            remaining = expires_at - loop.time()
            if remaining <= 0:
                break
            attempts += 1
            if await self.probe(local_port, timeout=min(self._probe_timeout, remaining)):
                if handle.alive:
                    LOG.info("Tunnel ready", extra={"port": local_port, "attempts": attempts})
                    return
                continue
            remaining = expires_at - loop.time()
            if remaining <= 0:
                break
            await asyncio.sleep(min(self._poll_interval, remaining))
        if not handle.alive:
            raise await self._exit_error(handle, local_port)
        raise HealthCheckTimeout(
            f"Local port {local_port} did not accept connections within {deadline:.1f}s.",
            diagnostics=handle.diagnostics(),
        )

    async def probe(self, local_port: int, *, timeout: float | None = None) -> bool:
        """Attempt one TCP connection to the local end of the tunnel."""

        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(self._host, local_port),
                timeout=timeout or self._probe_timeout,
            )
        except (OSError, asyncio.TimeoutError):
            return False
        writer.close()
        with suppress(OSError):
            await writer.wait_closed()
        return True

    async def terminate(self, handle: ProcessHandle) -> None:
        """Stop the process: SIGTERM, bounded grace period, then SIGKILL. Idempotent."""

        process = handle.process
        if process.returncode is None:
            with suppress(ProcessLookupError):
                process.terminate()
            try:
                await asyncio.wait_for(process.wait(), timeout=self._terminate_grace)
            except asyncio.TimeoutError:
                LOG.warning("Forwarding process ignored SIGTERM; killing", extra={"pid": process.pid})
                with suppress(ProcessLookupError):
                    process.kill()
                await process.wait()
            LOG.info("Forwarding process stopped", extra={"pid": process.pid, "returncode": process.returncode})
        await self._stop_readers(handle)

    async def _exit_error(self, handle: ProcessHandle, local_port: int) -> PortUnavailable | ProcessExited:
        # Let the readers flush whatever the process wrote before exiting.
        await self._stop_readers(handle, flush=True)
        diagnostics = handle.diagnostics()
        if any(_BIND_FAILURE.search(line) for line in diagnostics):
            return PortUnavailable(
                f"Forwarding process could not bind local port {local_port}.",
                diagnostics=diagnostics,
            )
        return ProcessExited(
            f"Forwarding process exited with status {handle.returncode} before the tunnel was ready.",
            returncode=handle.returncode,
            diagnostics=diagnostics,
        )

    async def _stop_readers(self, handle: ProcessHandle, *, flush: bool = False) -> None:
        readers = list(handle.readers)
        handle.readers.clear()
        if not readers:
            return
        if flush:
            await asyncio.wait(readers, timeout=self._probe_timeout)
        for reader in readers:
            reader.cancel()
        await asyncio.gather(*readers, return_exceptions=True)


async def _drain(stream: asyncio.StreamReader, sink: deque[str]) -> None:
    while True:
        line = await stream.readline()
        if not line:
            return
        text = line.decode(errors="replace").rstrip()
        if text:
            sink.append(text)


__all__ = ["ProcessHandle", "ProcessSupervisor"]
