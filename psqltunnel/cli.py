"""Command-line parsing for ``python -m psqltunnel``."""

from __future__ import annotations

import argparse
import logging
import os
from typing import Mapping, Sequence

from .config import AppConfig, ConnectionProfileConfig

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="psqltunnel",
        description="Terminal PostgreSQL client with AWS bastion tunnelling.",
    )
    parser.add_argument("--profile", help="Connection profile to activate (defaults to the configured one).")
    parser.add_argument("--connect", action="store_true", help="Connect the active profile on startup.")
    parser.add_argument("--log-level", default="WARNING", help="Logging level (default: WARNING).")

    tunnel = parser.add_argument_group("SSH tunnel")
    tunnel.add_argument("--tunnel", action="store_true", help="Enable SSH tunneling through an AWS bastion host.")
    tunnel.add_argument("-e", "--env", dest="environment", metavar="ENVIRONMENT", help="AWS environment (dev, staging, production, ...).")
    tunnel.add_argument("-d", "--database", metavar="NAME", help="Database name; also used to find the RDS instance.")
    tunnel.add_argument("--db-identifier", metavar="ID", help="RDS instance identifier when it differs from the database name.")
    tunnel.add_argument("-u", "--user", metavar="USER", help="Database user for the tunneled connection.")
    tunnel.add_argument("--aws-profile", metavar="PROFILE", help="AWS profile used for discovery and session manager.")
    tunnel.add_argument("--region", metavar="REGION", help="AWS region used for discovery.")
    tunnel.add_argument("--bastion-user", metavar="USER", help="SSH user for the bastion host (default: ec2-user).")
    tunnel.add_argument("--ssh-key", metavar="PATH", help="SSH private key; the SSH agent is used when omitted.")
    tunnel.add_argument(
        "--use-session-manager",
        action="store_true",
        help="Force AWS Session Manager instead of direct SSH.",
    )
    return parser


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    return build_parser().parse_args(argv)


def configure_logging(level: str) -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.WARNING), format=LOG_FORMAT)


def apply_overrides(
    config: AppConfig,
    args: argparse.Namespace,
    environ: Mapping[str, str] | None = None,
) -> AppConfig:
    """Merge command-line flags onto the loaded configuration."""

    env = os.environ if environ is None else environ
    updates: dict[str, object] = {}
    if args.aws_profile:
        updates["aws_profile"] = args.aws_profile
    if args.region:
        updates["aws_region"] = args.region
    if args.bastion_user:
        updates["bastion_user"] = args.bastion_user
    if args.ssh_key:
        updates["ssh_key"] = args.ssh_key
    if args.use_session_manager or env.get("USE_SESSION_MANAGER"):
        updates["force_session_bridge"] = True
    if updates:
        config = config.with_tunnel(**updates)
    if args.tunnel:
        if not args.environment:
            raise SystemExit("--env is required when using --tunnel")
        database = args.database or "postgres"
        profile = ConnectionProfileConfig(
            name=f"{args.environment}/{args.db_identifier or database}",
            database=database,
            user=args.user,
            environment=args.environment,
            db_identifier=args.db_identifier or database,
        )
        config = config.with_profile(profile).with_active_profile(profile.name)
    elif args.profile:
        config = config.with_active_profile(args.profile)
    return config


__all__ = ["apply_overrides", "build_parser", "configure_logging", "parse_args"]
