"""Bastion and database discovery through the AWS inventory APIs."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Iterable, Mapping, TypeVar

import boto3
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    NoCredentialsError,
    PartialCredentialsError,
    ProfileNotFound,
)

from .errors import (
    Ambiguous,
    AuthFailure,
    DiscoveryError,
    DiscoveryTimeout,
    InventoryUnavailable,
    NotFound,
)
from .models import DEFAULT_POSTGRES_PORT, BastionHost, DatabaseEndpoint

LOG = logging.getLogger(__name__)

BASTION_MARKER = "bastion"

_AUTH_ERROR_CODES = frozenset(
    {
        "AccessDenied",
        "AccessDeniedException",
        "AuthFailure",
        "ExpiredToken",
        "ExpiredTokenException",
        "InvalidClientTokenId",
        "RequestExpired",
        "SignatureDoesNotMatch",
        "UnauthorizedOperation",
        "UnrecognizedClientException",
    }
)

T = TypeVar("T")


class ResourceLocator:
    """Resolves exactly one bastion host and one database endpoint.

    Every lookup is a fresh inventory round-trip; nothing is cached because
    instances can be restarted or relocated between connects.
    """

    def __init__(
        self,
        *,
        aws_profile: str | None = None,
        region: str | None = None,
        timeout: float = 20.0,
        session_factory: Callable[[], Any] | None = None,
    ) -> None:
        self._aws_profile = aws_profile
        self._region = region
        self._timeout = timeout
        self._session_factory = session_factory or self._default_session

    async def find_bastion(self, environment: str) -> BastionHost:
        """Return the single instance whose Name tag mentions the environment and "bastion"."""

        candidates = await self._call(self._list_bastions, environment)
        if not candidates:
            raise NotFound(
                f"No bastion instance found with a name containing '{environment}' and '{BASTION_MARKER}'."
            )
        if len(candidates) > 1:
            described = [f"{host.instance_id} ({host.name}, {host.lifecycle_state})" for host in candidates]
            raise Ambiguous(
                f"{len(candidates)} bastion instances match '{environment}': {', '.join(described)}.",
                candidates=[host.instance_id for host in candidates],
            )
        bastion = candidates[0]
        LOG.info(
            "Found bastion instance",
            extra={"instance_id": bastion.instance_id, "bastion_name": bastion.name, "state": bastion.lifecycle_state},
        )
        return bastion

    async def find_database_endpoint(self, identifier: str) -> DatabaseEndpoint:
        """Return the RDS instance matching ``identifier``.

        An exact (case-insensitive) identifier match wins over partial ones;
        otherwise every identifier containing ``identifier`` is a candidate.
        """

        instances = await self._call(self._list_databases)
        needle = identifier.lower()
        exact = [db for db in instances if str(db.get("DBInstanceIdentifier", "")).lower() == needle]
        matches = exact or [db for db in instances if needle in str(db.get("DBInstanceIdentifier", "")).lower()]
        if not matches:
            raise NotFound(f"No database instance found with an identifier containing '{identifier}'.")
        if len(matches) > 1:
            names = [str(db.get("DBInstanceIdentifier")) for db in matches]
            raise Ambiguous(
                f"{len(matches)} database instances match '{identifier}': {', '.join(names)}.",
                candidates=names,
            )
        return _endpoint_from(matches[0])

    def _list_bastions(self, environment: str) -> list[BastionHost]:
        ec2 = self._client("ec2")
        env_lower = environment.lower()
        hosts: list[BastionHost] = []
        for page in ec2.get_paginator("describe_instances").paginate():
            for reservation in page.get("Reservations", []):
                for instance in reservation.get("Instances", []):
                    name = _name_tag(instance.get("Tags"))
                    lowered = name.lower()
                    if env_lower in lowered and BASTION_MARKER in lowered:
                        hosts.append(_bastion_from(instance, name))
        return hosts

    def _list_databases(self) -> list[Mapping[str, Any]]:
        rds = self._client("rds")
        instances: list[Mapping[str, Any]] = []
        for page in rds.get_paginator("describe_db_instances").paginate():
            instances.extend(page.get("DBInstances", []))
        LOG.debug("Listed database instances", extra={"count": len(instances)})
        return instances

    def _client(self, service: str) -> Any:
        return self._session_factory().client(service)

    def _default_session(self) -> boto3.Session:
        return boto3.Session(profile_name=self._aws_profile, region_name=self._region)

    async def _call(self, func: Callable[..., T], *args: Any) -> T:
        try:
            return await asyncio.wait_for(asyncio.to_thread(func, *args), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            raise DiscoveryTimeout(f"Inventory lookup timed out after {self._timeout:.0f}s.") from exc
        except DiscoveryError:
            raise
        except (NoCredentialsError, PartialCredentialsError, ProfileNotFound) as exc:
            raise AuthFailure(f"AWS credentials unavailable: {exc}") from exc
        except ClientError as exc:
            code = str(exc.response.get("Error", {}).get("Code", ""))
            if code in _AUTH_ERROR_CODES:
                raise AuthFailure(f"AWS rejected the inventory request ({code}): {exc}") from exc
            raise InventoryUnavailable(f"AWS inventory request failed ({code or 'unknown'}): {exc}") from exc
        except BotoCoreError as exc:
            raise InventoryUnavailable(f"AWS inventory request failed: {exc}") from exc


def _name_tag(tags: Iterable[Mapping[str, str]] | None) -> str:
    for tag in tags or ():
        if tag.get("Key") == "Name":
            return str(tag.get("Value") or "")
    return ""


def _bastion_from(instance: Mapping[str, Any], name: str) -> BastionHost:
    public_ip = instance.get("PublicIpAddress")
    state = instance.get("State") or {}
    return BastionHost(
        instance_id=str(instance.get("InstanceId", "")),
        network_address=public_ip or instance.get("PrivateIpAddress"),
        lifecycle_state=str(state.get("Name", "unknown")),
        name=name,
        public_address=bool(public_ip),
    )


def _endpoint_from(instance: Mapping[str, Any]) -> DatabaseEndpoint:
    identifier = str(instance.get("DBInstanceIdentifier", ""))
    endpoint = instance.get("Endpoint") or {}
    address = endpoint.get("Address")
    if not address:
        raise NotFound(f"Database instance '{identifier}' has no endpoint address yet.")
    return DatabaseEndpoint(
        host=str(address),
        port=int(endpoint.get("Port") or DEFAULT_POSTGRES_PORT),
        identifier=identifier,
    )


__all__ = ["BASTION_MARKER", "ResourceLocator"]
