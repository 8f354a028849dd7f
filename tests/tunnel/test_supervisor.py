"""Tests for the forwarding-process supervisor using real child processes."""

from __future__ import annotations

import asyncio
import signal
import socket
import sys
import textwrap
import time

import pytest

from psqltunnel.tunnel import (
    HealthCheckTimeout,
    PortAllocator,
    PortUnavailable,
    ProcessExited,
    ProcessSpawnFailed,
    ProcessSupervisor,
    TunnelCommand,
)

LISTENER = textwrap.dedent(
    """
    import socket, sys, time
    time.sleep(float(sys.argv[2]))
    server = socket.socket()
    server.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    server.bind(("127.0.0.1", int(sys.argv[1])))
    server.listen()
    print("listening", flush=True)
    while True:
        conn, _ = server.accept()
        conn.close()
    """
)

SLEEPER = "import time; time.sleep(30)"

STUBBORN = textwrap.dedent(
    """
    import signal, time
    signal.signal(signal.SIGTERM, signal.SIG_IGN)
    print("ready", flush=True)
    time.sleep(30)
    """
)


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


def _python(script: str, *args: str) -> TunnelCommand:
    return TunnelCommand(argv=(sys.executable, "-c", script, *args))


def _free_port() -> int:
    return PortAllocator().allocate()


async def _wait_for_output(handle, text: str, timeout: float = 5.0) -> None:  # type: ignore[no-untyped-def]
    loop = asyncio.get_running_loop()
    expires = loop.time() + timeout
    while not any(text in line for line in handle.diagnostics()):
        if loop.time() > expires:
            raise AssertionError(f"process never printed {text!r}: {handle.diagnostics()}")
        await asyncio.sleep(0.05)


@pytest.mark.anyio
async def test_await_ready_returns_once_port_accepts_connections() -> None:
    supervisor = ProcessSupervisor(poll_interval=0.05)
    port = _free_port()
    handle = await supervisor.spawn(_python(LISTENER, str(port), "0.3"))
    try:
        await supervisor.await_ready(handle, port, deadline=10.0)

        assert handle.alive
        assert await supervisor.probe(port) is True
    finally:
        await supervisor.terminate(handle)

    assert handle.returncode is not None
    assert await supervisor.probe(port, timeout=0.2) is False


@pytest.mark.anyio
async def test_await_ready_times_out_within_deadline_and_poll_interval() -> None:
    supervisor = ProcessSupervisor(poll_interval=0.1, probe_timeout=0.1)
    port = _free_port()
    handle = await supervisor.spawn(_python(SLEEPER))
    deadline = 0.6
    started = time.monotonic()
    try:
        with pytest.raises(HealthCheckTimeout):
            await supervisor.await_ready(handle, port, deadline=deadline)
        elapsed = time.monotonic() - started

        assert elapsed >= deadline - 0.05
        assert elapsed <= deadline + supervisor.poll_interval + 0.5
        assert handle.alive
    finally:
        await supervisor.terminate(handle)


@pytest.mark.anyio
async def test_await_ready_reports_early_exit_with_diagnostics() -> None:
    supervisor = ProcessSupervisor(poll_interval=0.05)
    script = "import sys; sys.stderr.write('Permission denied (publickey).\\n'); sys.exit(3)"
    handle = await supervisor.spawn(_python(script))

    with pytest.raises(ProcessExited) as excinfo:
        await supervisor.await_ready(handle, _free_port(), deadline=10.0)

    assert excinfo.value.returncode == 3
    assert any("Permission denied" in line for line in excinfo.value.diagnostics)
    assert "Permission denied" in str(excinfo.value)


@pytest.mark.anyio
async def test_await_ready_recognises_bind_failures() -> None:
    supervisor = ProcessSupervisor(poll_interval=0.05)
    script = "import sys; sys.stderr.write('bind [127.0.0.1]:6000: Address already in use\\n'); sys.exit(255)"
    handle = await supervisor.spawn(_python(script))

    with pytest.raises(PortUnavailable) as excinfo:
        await supervisor.await_ready(handle, 6000, deadline=10.0)

    assert excinfo.value.retryable is True


@pytest.mark.anyio
async def test_spawn_failure_is_typed() -> None:
    supervisor = ProcessSupervisor()

    with pytest.raises(ProcessSpawnFailed):
        await supervisor.spawn(TunnelCommand(argv=("/nonexistent/psqltunnel-forwarder",)))


@pytest.mark.anyio
async def test_spawn_passes_environment_overlay() -> None:
    supervisor = ProcessSupervisor()
    script = "import os; print(os.environ['AWS_PROFILE'], flush=True)"
    handle = await supervisor.spawn(TunnelCommand(argv=(sys.executable, "-c", script), env={"AWS_PROFILE": "staging"}))

    await handle.wait()
    await _wait_for_output(handle, "staging")
    await supervisor.terminate(handle)


@pytest.mark.anyio
async def test_terminate_escalates_to_kill() -> None:
    supervisor = ProcessSupervisor(terminate_grace=0.3)
    handle = await supervisor.spawn(_python(STUBBORN))
    await _wait_for_output(handle, "ready")

    await supervisor.terminate(handle)

    assert handle.returncode == -signal.SIGKILL
    assert handle.readers == []


@pytest.mark.anyio
async def test_terminate_is_idempotent_and_frees_the_port() -> None:
    supervisor = ProcessSupervisor(poll_interval=0.05)
    port = _free_port()
    handle = await supervisor.spawn(_python(LISTENER, str(port), "0"))
    await supervisor.await_ready(handle, port, deadline=10.0)

    await supervisor.terminate(handle)
    await supervisor.terminate(handle)

    assert handle.returncode == -signal.SIGTERM
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind(("127.0.0.1", port))
