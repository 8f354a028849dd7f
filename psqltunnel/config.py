"""App configuration loading helpers."""

from __future__ import annotations

import tomllib
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, ValidationError

from .tunnel import TunnelOptions

CONFIG_FILE = Path.home() / ".config" / "psqltunnel" / "config.toml"

HostKeyPolicy = Literal["no", "accept-new", "yes"]


class TunnelSettings(BaseModel):
    """Bastion tunnel settings stored under ``[tunnel]`` in config.toml."""

    aws_profile: str | None = None
    aws_region: str | None = None
    bastion_user: str = "ec2-user"
    ssh_key: str | None = None
    force_session_bridge: bool = False
    session_bridge_via_ssh: bool = False
    aws_cli_path: str | None = None
    allowed_environments: list[str] = Field(default_factory=list)
    allow_private_address: bool = False
    strict_host_key_checking: HostKeyPolicy = "no"
    discovery_timeout: float = Field(default=20.0, gt=0)
    ready_timeout: float = Field(default=15.0, gt=0)
    poll_interval: float = Field(default=0.5, gt=0)
    terminate_grace: float = Field(default=5.0, gt=0)
    # 0 turns off port probes; process exit is still reported.
    liveness_interval: float = Field(default=30.0, ge=0)
    liveness_failures: int = Field(default=3, ge=1)

    def tunnel_options(self) -> TunnelOptions:
        """Per-connect options derived from these settings."""

        return TunnelOptions(
            force_session_bridge=self.force_session_bridge,
            bastion_user=self.bastion_user,
            key_path=self.ssh_key,
        )


class ConnectionProfileConfig(BaseModel):
    """Connection profile configuration stored in config.toml."""

    name: str
    dsn: str | None = None
    host: str | None = None
    port: int | None = None
    database: str | None = None
    user: str | None = None
    environment: str | None = None
    db_identifier: str | None = None


class AppConfig(BaseModel):
    """Shape of the application configuration file."""

    profiles: list[ConnectionProfileConfig] = Field(default_factory=lambda: list(_default_profiles()))
    active_profile: str | None = None
    tunnel: TunnelSettings = Field(default_factory=TunnelSettings)

    def with_active_profile(self, name: str) -> AppConfig:
        """Return a copy with the active profile updated."""

        return self.model_copy(update={"active_profile": name})

    def with_tunnel(self, **updates: object) -> AppConfig:
        """Return a copy with tunnel settings changes applied."""

        tunnel = self.tunnel.model_copy(update=updates)
        return self.model_copy(update={"tunnel": tunnel})

    def with_profile(self, profile: ConnectionProfileConfig) -> AppConfig:
        """Return a copy with ``profile`` added or replacing one of the same name."""

        profiles = [entry for entry in self.profiles if entry.name != profile.name]
        profiles.append(profile)
        return self.model_copy(update={"profiles": profiles})


def load_config() -> AppConfig:
    """Load configuration from disk; fall back to defaults if missing."""

    try:
        data = _read_config_file()
    except FileNotFoundError:
        return AppConfig()
    except (tomllib.TOMLDecodeError, OSError, ValidationError):
        return AppConfig()

    profiles_data = data.get("profiles")
    profiles: list[ConnectionProfileConfig] | None = None
    if isinstance(profiles_data, list):
        profiles = [
            ConnectionProfileConfig(**profile)
            for profile in profiles_data  # type: ignore[list-item]
            if isinstance(profile, dict)
        ]

    return AppConfig(
        profiles=profiles if profiles is not None else list(_default_profiles()),
        active_profile=data.get("active_profile"),
        tunnel=data.get("tunnel", TunnelSettings()),
    )


def save_config(config: AppConfig) -> None:
    """Persist configuration to disk."""

    CONFIG_FILE.parent.mkdir(parents=True, exist_ok=True)
    lines: list[str] = []
    if config.active_profile:
        lines.append(f'active_profile = "{config.active_profile}"')
    tunnel_lines = _tunnel_lines(config.tunnel)
    if tunnel_lines:
        lines.append("")
        lines.append("[tunnel]")
        lines.extend(tunnel_lines)
    if config.profiles:
        lines.append("")
        for profile in config.profiles:
            lines.append("[[profiles]]")
            lines.append(f'name = "{profile.name}"')
            for key in ("dsn", "host", "database", "user", "environment", "db_identifier"):
                value = getattr(profile, key)
                if value:
                    lines.append(f'{key} = "{value}"')
            if profile.port is not None:
                lines.append(f"port = {profile.port}")
            lines.append("")
    CONFIG_FILE.write_text("\n".join(lines) + "\n")


def _tunnel_lines(settings: TunnelSettings) -> list[str]:
    """Render only the tunnel settings that differ from the defaults."""

    defaults = TunnelSettings()
    lines: list[str] = []
    for key in TunnelSettings.model_fields:
        value = getattr(settings, key)
        if value == getattr(defaults, key) or value is None:
            continue
        if isinstance(value, bool):
            lines.append(f"{key} = {str(value).lower()}")
        elif isinstance(value, (int, float)):
            lines.append(f"{key} = {value}")
        elif isinstance(value, list):
            items = ", ".join(f'"{item}"' for item in value)
            lines.append(f"{key} = [{items}]")
        else:
            lines.append(f'{key} = "{value}"')
    return lines


def _read_config_file() -> dict[str, object]:
    with CONFIG_FILE.open("rb") as handle:
        raw = tomllib.load(handle)
    data: dict[str, object] = {}
    if isinstance(raw, dict):
        active_profile = raw.get("active_profile")
        if isinstance(active_profile, str):
            data["active_profile"] = active_profile
        profiles = raw.get("profiles")
        if isinstance(profiles, list):
            parsed_profiles: list[dict[str, object]] = []
            for profile in profiles:
                if not isinstance(profile, dict):
                    continue
                parsed: dict[str, object] = {}
                for key in ("name", "dsn", "host", "database", "user", "environment", "db_identifier"):
                    value = profile.get(key)
                    if isinstance(value, str):
                        parsed[key] = value
                port = profile.get("port")
                if isinstance(port, int):
                    parsed["port"] = port
                if parsed.get("name"):
                    parsed_profiles.append(parsed)
            if parsed_profiles:
                data["profiles"] = parsed_profiles
        tunnel = raw.get("tunnel")
        if isinstance(tunnel, dict):
            known = {key: value for key, value in tunnel.items() if key in TunnelSettings.model_fields}
            data["tunnel"] = TunnelSettings(**known)
    return data


def _default_profiles() -> tuple[ConnectionProfileConfig, ...]:
    """Default profiles shown on first run before config is customized."""

    return (
        ConnectionProfileConfig(
            name="Local",
            host="localhost",
            port=5432,
            database="postgres",
            user="postgres",
        ),
    )
