"""Forwarding strategies and the pure command builders behind them.

Host keys: the bastion is discovered per session, so its identity cannot be
pinned ahead of time. Every SSH invocation therefore passes
``-o StrictHostKeyChecking=<policy>`` together with
``-o UserKnownHostsFile=/dev/null`` so that no interactive host-key prompt can
block the tunnel and no throwaway key pollutes ``~/.ssh/known_hosts``. The
policy defaults to ``"no"`` and is configurable through
``TunnelSettings.strict_host_key_checking``.
"""

from __future__ import annotations

import json
import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Union

from .errors import ProcessSpawnFailed
from .models import BastionHost, DatabaseEndpoint, TunnelCommand, TunnelOptions

SSH_BINARY = "ssh"
PORT_FORWARD_DOCUMENT = "AWS-StartPortForwardingSessionToRemoteHost"
SSH_SESSION_DOCUMENT = "AWS-StartSSHSession"

_SSH_COMMON_OPTIONS = (
    "ServerAliveInterval=60",
    "ServerAliveCountMax=3",
    "ExitOnForwardFailure=yes",
    "ConnectTimeout=30",
)

_AWS_CLI_LOCATIONS = (
    "/usr/local/bin/aws",
    "/usr/bin/aws",
    "/opt/homebrew/bin/aws",
    "/home/linuxbrew/.linuxbrew/bin/aws",
    "/nix/var/nix/profiles/default/bin/aws",
    "/run/current-system/sw/bin/aws",
    "~/.nix-profile/bin/aws",
    "~/.local/bin/aws",
    "~/bin/aws",
)


@dataclass(frozen=True, slots=True)
class DirectSsh:
    """Plain ``ssh -L`` through the bastion's network address.

    ``key_path`` of ``None`` means authentication goes through the SSH agent.
    """

    key_path: str | None = None
    host_key_policy: str = "no"

    label = "direct-ssh"


@dataclass(frozen=True, slots=True)
class SessionManagerBridge:
    """Tunnel through AWS Systems Manager instead of a direct network path.

    By default the AWS CLI forwards the port itself. With ``via_ssh`` the
    forward is done by ``ssh`` using an SSM ``ProxyCommand``, which needs a
    key or agent on the bastion but keeps SSH semantics end to end.
    """

    aws_cli: str = "aws"
    aws_profile: str | None = None
    region: str | None = None
    via_ssh: bool = False
    key_path: str | None = None
    host_key_policy: str = "no"

    label = "session-manager"


TunnelStrategy = Union[DirectSsh, SessionManagerBridge]


def build_command(
    strategy: TunnelStrategy,
    local_port: int,
    bastion: BastionHost,
    endpoint: DatabaseEndpoint,
    user: str,
) -> TunnelCommand:
    """Return the exact invocation for ``strategy``; has no side effects."""

    if isinstance(strategy, DirectSsh):
        return _direct_ssh_command(strategy, local_port, bastion, endpoint, user)
    if isinstance(strategy, SessionManagerBridge):
        if strategy.via_ssh:
            return _ssm_ssh_command(strategy, local_port, bastion, endpoint, user)
        return _ssm_port_forward_command(strategy, local_port, bastion, endpoint)
    raise TypeError(f"Unsupported tunnel strategy: {strategy!r}")


def select_strategy(
    options: TunnelOptions,
    bastion: BastionHost,
    *,
    agent_available: bool,
    aws_cli: str | None = None,
    aws_profile: str | None = None,
    region: str | None = None,
    allow_private_address: bool = False,
    bridge_via_ssh: bool = False,
    host_key_policy: str = "no",
) -> TunnelStrategy:
    """Pick the forwarding mechanism for one connect attempt."""

    if not options.force_session_bridge:
        has_credentials = bool(options.key_path) or agent_available
        reachable = bastion.is_publicly_reachable or (allow_private_address and bool(bastion.network_address))
        if has_credentials and reachable:
            return DirectSsh(key_path=options.key_path, host_key_policy=host_key_policy)
    return session_bridge(
        options,
        aws_cli=aws_cli,
        aws_profile=aws_profile,
        region=region,
        via_ssh=bridge_via_ssh,
        host_key_policy=host_key_policy,
    )


def session_bridge(
    options: TunnelOptions,
    *,
    aws_cli: str | None = None,
    aws_profile: str | None = None,
    region: str | None = None,
    via_ssh: bool = False,
    host_key_policy: str = "no",
) -> SessionManagerBridge:
    """Build the session-manager variant, resolving the AWS CLI if needed."""

    return SessionManagerBridge(
        aws_cli=find_aws_cli(aws_cli),
        aws_profile=aws_profile,
        region=region,
        via_ssh=via_ssh,
        key_path=options.key_path,
        host_key_policy=host_key_policy,
    )


def ssh_agent_available(environ: Mapping[str, str] | None = None) -> bool:
    """True when ``SSH_AUTH_SOCK`` points at an existing socket."""

    env = os.environ if environ is None else environ
    sock = env.get("SSH_AUTH_SOCK")
    return bool(sock) and Path(sock).exists()


def find_aws_cli(override: str | None = None, environ: Mapping[str, str] | None = None) -> str:
    """Locate the AWS CLI used for session bridging."""

    env = os.environ if environ is None else environ
    for candidate in (override, env.get("AWS_CLI_PATH")):
        if candidate and Path(candidate).expanduser().exists():
            return str(Path(candidate).expanduser())
    found = shutil.which("aws")
    if found:
        return found
    for location in _AWS_CLI_LOCATIONS:
        path = Path(location).expanduser()
        if path.exists():
            return str(path)
    raise ProcessSpawnFailed(
        "AWS CLI not found. Install it, add it to PATH, or set AWS_CLI_PATH to the full path of the aws command."
    )


def resolve_key_path(key_path: str) -> str:
    """Expand ``~`` and make relative key paths absolute."""

    path = Path(key_path).expanduser()
    if not path.is_absolute():
        path = Path.cwd() / path
    return str(path)


def _forward_spec(local_port: int, endpoint: DatabaseEndpoint) -> str:
    return f"{local_port}:{endpoint.host}:{endpoint.port}"


def _host_key_args(policy: str) -> list[str]:
    return ["-o", f"StrictHostKeyChecking={policy}", "-o", "UserKnownHostsFile=/dev/null"]


def _common_ssh_args() -> list[str]:
    args: list[str] = []
    for option in _SSH_COMMON_OPTIONS:
        args.extend(["-o", option])
    return args


def _identity_args(key_path: str | None) -> list[str]:
    if key_path:
        return [
            "-i",
            resolve_key_path(key_path),
            "-o",
            "IdentitiesOnly=yes",
            "-o",
            "PreferredAuthentications=publickey",
        ]
    return ["-o", "PreferredAuthentications=publickey"]


def _aws_env(aws_profile: str | None, region: str | None) -> dict[str, str]:
    env: dict[str, str] = {}
    if aws_profile:
        env["AWS_PROFILE"] = aws_profile
    if region:
        env["AWS_REGION"] = region
        env["AWS_DEFAULT_REGION"] = region
    return env


def _direct_ssh_command(
    strategy: DirectSsh,
    local_port: int,
    bastion: BastionHost,
    endpoint: DatabaseEndpoint,
    user: str,
) -> TunnelCommand:
    if not bastion.network_address:
        raise ProcessSpawnFailed(f"Bastion {bastion.instance_id} has no network address for direct SSH.")
    argv = [
        SSH_BINARY,
        "-N",
        "-L",
        _forward_spec(local_port, endpoint),
        f"{user}@{bastion.network_address}",
        *_host_key_args(strategy.host_key_policy),
        *_common_ssh_args(),
        *_identity_args(strategy.key_path),
    ]
    return TunnelCommand(argv=tuple(argv))


def _ssm_ssh_command(
    strategy: SessionManagerBridge,
    local_port: int,
    bastion: BastionHost,
    endpoint: DatabaseEndpoint,
    user: str,
) -> TunnelCommand:
    proxy = (
        f"ProxyCommand={strategy.aws_cli} ssm start-session --target {bastion.instance_id} "
        f"--document-name {SSH_SESSION_DOCUMENT} --parameters portNumber=%p"
    )
    argv = [
        SSH_BINARY,
        "-N",
        "-L",
        _forward_spec(local_port, endpoint),
        f"{user}@{bastion.instance_id}",
        "-o",
        proxy,
        *_host_key_args(strategy.host_key_policy),
        *_common_ssh_args(),
        *_identity_args(strategy.key_path),
    ]
    return TunnelCommand(argv=tuple(argv), env=_aws_env(strategy.aws_profile, strategy.region))


def _ssm_port_forward_command(
    strategy: SessionManagerBridge,
    local_port: int,
    bastion: BastionHost,
    endpoint: DatabaseEndpoint,
) -> TunnelCommand:
    parameters = {
        "host": [endpoint.host],
        "portNumber": [str(endpoint.port)],
        "localPortNumber": [str(local_port)],
    }
    argv = [
        strategy.aws_cli,
        "ssm",
        "start-session",
        "--target",
        bastion.instance_id,
        "--document-name",
        PORT_FORWARD_DOCUMENT,
        "--parameters",
        json.dumps(parameters),
    ]
    return TunnelCommand(argv=tuple(argv), env=_aws_env(strategy.aws_profile, strategy.region))


__all__ = [
    "DirectSsh",
    "PORT_FORWARD_DOCUMENT",
    "SSH_SESSION_DOCUMENT",
    "SessionManagerBridge",
    "TunnelStrategy",
    "build_command",
    "find_aws_cli",
    "resolve_key_path",
    "select_strategy",
    "session_bridge",
    "ssh_agent_available",
]
