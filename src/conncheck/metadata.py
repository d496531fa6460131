"""Metadata snapshots — hosts and containers as reported by the service directory.

The directory is refreshed externally; monitors only ever read the most
recent snapshot handed to them. A snapshot document looks like::

    {
        "self": {"uuid": "...", "primary_ip": "10.42.0.2", "state": "running", ...},
        "containers": [{"uuid": "...", "host_uuid": "...", ...}, ...],
        "hosts": [{"uuid": "...", "agent_ip": "192.168.1.10", "state": "active"}]
    }
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from aiohttp import ClientError, ClientSession, ClientTimeout

METADATA_TIMEOUT = ClientTimeout(total=5)

HOST_ACTIVE = "active"
CONTAINER_RUNNING = "running"


class MetadataError(Exception):
    """Raised when a directory document cannot be parsed."""


@dataclass
class Host:
    """A host descriptor."""

    uuid: str
    agent_ip: str = ""
    state: str = ""
    agent_state: str = ""
    name: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Host:
        return cls(
            uuid=data["uuid"],
            agent_ip=data.get("agent_ip") or "",
            state=data.get("state") or "",
            agent_state=data.get("agent_state") or "",
            name=data.get("name") or "",
        )


@dataclass
class Container:
    """A container descriptor."""

    uuid: str
    primary_ip: str = ""
    state: str = ""
    host_uuid: str = ""
    name: str = ""
    service_name: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Container:
        return cls(
            uuid=data["uuid"],
            primary_ip=data.get("primary_ip") or "",
            state=data.get("state") or "",
            host_uuid=data.get("host_uuid") or "",
            name=data.get("name") or "",
            service_name=data.get("service_name") or "",
        )


@dataclass
class MetadataSnapshot:
    """One consistent view of the directory."""

    self_container: Container | None = None
    containers: list[Container] = field(default_factory=list)
    hosts: dict[str, Host] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MetadataSnapshot:
        """Build a snapshot from a decoded directory document.

        Raises:
            MetadataError: If the document is not shaped like a snapshot.
        """
        if not isinstance(data, dict):
            raise MetadataError(f"expected an object, got {type(data).__name__}")
        try:
            self_raw = data.get("self")
            self_container = Container.from_dict(self_raw) if self_raw else None
            containers = [Container.from_dict(c) for c in data.get("containers", [])]
            hosts = [Host.from_dict(h) for h in data.get("hosts", [])]
        except (KeyError, TypeError, AttributeError) as e:
            raise MetadataError(f"malformed metadata document: {e!r}") from e
        return cls(
            self_container=self_container,
            containers=containers,
            hosts={h.uuid: h for h in hosts},
        )

    def get_host(self, uuid: str) -> Host | None:
        return self.hosts.get(uuid)

    def peers(self) -> list[Container]:
        """Service containers other than our own companion container."""
        own = self.self_container.uuid if self.self_container else None
        return [c for c in self.containers if c.uuid != own]


def load_snapshot(path: str | Path) -> MetadataSnapshot:
    """Read a snapshot document from disk."""
    try:
        with open(path, encoding="utf-8") as f:
            raw = json.load(f)
    except ValueError as e:
        raise MetadataError(f"invalid document in {path}: {e}") from e
    return MetadataSnapshot.from_dict(raw)


async def fetch_snapshot(session: ClientSession, url: str) -> MetadataSnapshot:
    """Fetch a snapshot document from an HTTP directory endpoint."""
    try:
        async with session.get(url, timeout=METADATA_TIMEOUT) as resp:
            if resp.status != 200:
                raise MetadataError(f"{url} returned HTTP {resp.status}")
            raw = await resp.json(content_type=None)
    except (ClientError, asyncio.TimeoutError, ValueError) as e:
        raise MetadataError(f"could not fetch metadata from {url}: {e!r}") from e
    return MetadataSnapshot.from_dict(raw)
