"""Tests for strategy selection and command construction."""

from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest

from psqltunnel.tunnel import (
    BastionHost,
    DatabaseEndpoint,
    DirectSsh,
    ProcessSpawnFailed,
    SessionManagerBridge,
    TunnelOptions,
    build_command,
    find_aws_cli,
    select_strategy,
    ssh_agent_available,
)
from psqltunnel.tunnel import strategy as strategy_module

AWS_CLI = sys.executable

PUBLIC_BASTION = BastionHost(
    instance_id="i-0abc",
    network_address="54.1.2.3",
    lifecycle_state="running",
    name="staging-bastion",
    public_address=True,
)
PRIVATE_BASTION = BastionHost(
    instance_id="i-0def",
    network_address="10.0.0.5",
    lifecycle_state="running",
    name="staging-bastion",
)
ENDPOINT = DatabaseEndpoint(host="orders.abc.rds.amazonaws.com", port=5432, identifier="orders")


def _option_values(argv: tuple[str, ...]) -> list[str]:
    return [argv[index + 1] for index, arg in enumerate(argv) if arg == "-o"]


def test_direct_ssh_command_forwards_port_through_bastion() -> None:
    command = build_command(DirectSsh(), 54321, PUBLIC_BASTION, ENDPOINT, "ec2-user")

    assert command.program == "ssh"
    assert command.argv[:5] == ("ssh", "-N", "-L", "54321:orders.abc.rds.amazonaws.com:5432", "ec2-user@54.1.2.3")
    options = _option_values(command.argv)
    assert "StrictHostKeyChecking=no" in options
    assert "UserKnownHostsFile=/dev/null" in options
    assert "ExitOnForwardFailure=yes" in options
    assert "-i" not in command.argv
    assert dict(command.env) == {}


def test_direct_ssh_command_uses_key_and_host_key_policy() -> None:
    strategy = DirectSsh(key_path="/keys/bastion.pem", host_key_policy="accept-new")

    command = build_command(strategy, 6000, PUBLIC_BASTION, ENDPOINT, "ubuntu")

    key_index = command.argv.index("-i")
    assert command.argv[key_index + 1] == "/keys/bastion.pem"
    options = _option_values(command.argv)
    assert "StrictHostKeyChecking=accept-new" in options
    assert "IdentitiesOnly=yes" in options
    assert "ubuntu@54.1.2.3" in command.argv


def test_relative_key_paths_become_absolute(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)

    command = build_command(DirectSsh(key_path="id_bastion"), 6000, PUBLIC_BASTION, ENDPOINT, "ec2-user")

    key_index = command.argv.index("-i")
    assert command.argv[key_index + 1] == str(tmp_path / "id_bastion")


def test_direct_ssh_requires_network_address() -> None:
    bastion = BastionHost(instance_id="i-0", network_address=None, lifecycle_state="running")

    with pytest.raises(ProcessSpawnFailed):
        build_command(DirectSsh(), 6000, bastion, ENDPOINT, "ec2-user")


def test_session_bridge_port_forward_command() -> None:
    strategy = SessionManagerBridge(aws_cli="/usr/bin/aws", aws_profile="staging", region="eu-west-1")

    command = build_command(strategy, 6000, PRIVATE_BASTION, ENDPOINT, "ec2-user")

    assert command.argv[:7] == (
        "/usr/bin/aws",
        "ssm",
        "start-session",
        "--target",
        "i-0def",
        "--document-name",
        "AWS-StartPortForwardingSessionToRemoteHost",
    )
    parameters = json.loads(command.argv[command.argv.index("--parameters") + 1])
    assert parameters == {
        "host": ["orders.abc.rds.amazonaws.com"],
        "portNumber": ["5432"],
        "localPortNumber": ["6000"],
    }
    assert command.env == {"AWS_PROFILE": "staging", "AWS_REGION": "eu-west-1", "AWS_DEFAULT_REGION": "eu-west-1"}


def test_session_bridge_via_ssh_uses_proxy_command() -> None:
    strategy = SessionManagerBridge(aws_cli="/usr/bin/aws", via_ssh=True, key_path="/keys/bastion.pem")

    command = build_command(strategy, 6000, PRIVATE_BASTION, ENDPOINT, "ec2-user")

    assert command.program == "ssh"
    assert "ec2-user@i-0def" in command.argv
    assert "6000:orders.abc.rds.amazonaws.com:5432" in command.argv
    proxy = next(option for option in _option_values(command.argv) if option.startswith("ProxyCommand="))
    assert "/usr/bin/aws ssm start-session --target i-0def" in proxy
    assert "AWS-StartSSHSession" in proxy
    assert "portNumber=%p" in proxy
    assert "StrictHostKeyChecking=no" in _option_values(command.argv)


def test_build_command_is_pure() -> None:
    strategy = SessionManagerBridge(aws_cli=AWS_CLI)

    first = build_command(strategy, 6000, PRIVATE_BASTION, ENDPOINT, "ec2-user")
    second = build_command(strategy, 6000, PRIVATE_BASTION, ENDPOINT, "ec2-user")

    assert first == second


def test_select_strategy_prefers_direct_ssh_with_credentials() -> None:
    with_agent = select_strategy(TunnelOptions(), PUBLIC_BASTION, agent_available=True, aws_cli=AWS_CLI)
    with_key = select_strategy(
        TunnelOptions(key_path="/keys/bastion.pem"),
        PUBLIC_BASTION,
        agent_available=False,
        aws_cli=AWS_CLI,
        host_key_policy="yes",
    )

    assert with_agent == DirectSsh()
    assert with_key == DirectSsh(key_path="/keys/bastion.pem", host_key_policy="yes")


def test_select_strategy_falls_back_to_session_bridge() -> None:
    no_credentials = select_strategy(TunnelOptions(), PUBLIC_BASTION, agent_available=False, aws_cli=AWS_CLI)
    private = select_strategy(TunnelOptions(), PRIVATE_BASTION, agent_available=True, aws_cli=AWS_CLI, region="eu-west-1")
    forced = select_strategy(
        TunnelOptions(force_session_bridge=True),
        PUBLIC_BASTION,
        agent_available=True,
        aws_cli=AWS_CLI,
        bridge_via_ssh=True,
    )

    assert isinstance(no_credentials, SessionManagerBridge)
    assert isinstance(private, SessionManagerBridge)
    assert private.region == "eu-west-1"
    assert isinstance(forced, SessionManagerBridge)
    assert forced.via_ssh is True


def test_private_address_allowed_when_configured() -> None:
    strategy = select_strategy(
        TunnelOptions(),
        PRIVATE_BASTION,
        agent_available=True,
        aws_cli=AWS_CLI,
        allow_private_address=True,
    )

    assert isinstance(strategy, DirectSsh)


def test_ssh_agent_available(tmp_path: Path) -> None:
    sock = tmp_path / "agent.sock"
    sock.touch()

    assert ssh_agent_available({"SSH_AUTH_SOCK": str(sock)}) is True
    assert ssh_agent_available({"SSH_AUTH_SOCK": str(tmp_path / "missing")}) is False
    assert ssh_agent_available({}) is False


def test_find_aws_cli_honours_override_and_env(tmp_path: Path) -> None:
    cli = tmp_path / "aws"
    cli.touch()

    assert find_aws_cli(str(cli), environ={}) == str(cli)
    assert find_aws_cli(environ={"AWS_CLI_PATH": str(cli)}) == str(cli)


def test_find_aws_cli_reports_missing_binary(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setattr(strategy_module.shutil, "which", lambda name: None)
    monkeypatch.setattr(strategy_module, "_AWS_CLI_LOCATIONS", ())

    with pytest.raises(ProcessSpawnFailed, match="AWS_CLI_PATH"):
        find_aws_cli(environ={"AWS_CLI_PATH": str(tmp_path / "nope")})


def test_configured_aws_cli_path_expands_home(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    cli = tmp_path / "bin" / "aws"
    cli.parent.mkdir()
    cli.touch()
    monkeypatch.setenv("HOME", str(tmp_path))

    bridge = strategy_module.session_bridge(TunnelOptions(), aws_cli="~/bin/aws")
    fallback = select_strategy(TunnelOptions(), PRIVATE_BASTION, agent_available=False, aws_cli="~/bin/aws")

    assert bridge.aws_cli == str(cli)
    assert isinstance(fallback, SessionManagerBridge)
    assert fallback.aws_cli == str(cli)
    assert build_command(bridge, 6000, PRIVATE_BASTION, ENDPOINT, "ec2-user").program == str(cli)
