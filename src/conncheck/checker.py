"""Checker — owns one PeerMonitor per peer container of the service.

A checker:
1. Serves the local ping endpoint that peers probe
2. Periodically re-reads the service directory
3. Starts a monitor for each newly seen peer, hands fresh host/container
   snapshots to existing ones, and retires monitors whose container vanished
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from aiohttp import ClientSession

from conncheck.config import CheckerConfig
from conncheck.metadata import MetadataError, MetadataSnapshot, fetch_snapshot, load_snapshot
from conncheck.network.peer import PeerMonitor
from conncheck.network.probe import Probe
from conncheck.network.transport import PingServer

logger = logging.getLogger(__name__)


class Checker:
    """Keeps the set of peer monitors in line with the directory."""

    def __init__(self, config: CheckerConfig, probe: Probe | None = None) -> None:
        self.config = config
        self._probe = probe
        self.server = PingServer(
            host=config.host,
            port=config.port,
            status_provider=self.peer_status,
        )
        self._peers: dict[str, PeerMonitor] = {}
        self._retired: list[PeerMonitor] = []
        self._refresh_task: asyncio.Task | None = None
        self._running = False

    @property
    def peers(self) -> dict[str, PeerMonitor]:
        return dict(self._peers)

    def sync(self, snapshot: MetadataSnapshot) -> None:
        """Reconcile monitors with a directory snapshot."""
        cc_container = snapshot.self_container
        seen: set[str] = set()

        for container in snapshot.peers():
            seen.add(container.uuid)
            host = snapshot.get_host(container.host_uuid)
            monitor = self._peers.get(container.uuid)
            if monitor is None:
                monitor = PeerMonitor(
                    peer_id=container.uuid,
                    host=host,
                    container=container,
                    cc_container=cc_container,
                    check_interval_ms=self.config.check_interval_ms,
                    connection_timeout_ms=self.config.connection_timeout_ms,
                    probe=self._probe,
                )
                self._peers[container.uuid] = monitor
                logger.info("Peer added: %s (%s)", container.uuid, container.primary_ip)
                if self._running:
                    monitor.start()
            else:
                monitor.host = host
                monitor.container = container
                monitor.cc_container = cc_container

        for peer_id in [p for p in self._peers if p not in seen]:
            monitor = self._peers.pop(peer_id)
            monitor.shutdown()
            self._retired.append(monitor)
            logger.info("Peer removed: %s", peer_id)

        self._retired = [m for m in self._retired if m.running]

    async def refresh(self) -> None:
        """Fetch the directory once and sync against it.

        Raises:
            MetadataError: If the document can't be read or parsed.
        """
        source = self.config.metadata
        if not source:
            return
        if self.config.metadata_is_url:
            async with ClientSession() as session:
                snapshot = await fetch_snapshot(session, source)
        else:
            try:
                snapshot = load_snapshot(source)
            except OSError as e:
                raise MetadataError(f"could not read {source}: {e}") from e
        self.sync(snapshot)

    async def start(self) -> None:
        """Start the ping server, the monitors and the refresh loop."""
        await self.server.start()
        self._running = True
        for monitor in self._peers.values():
            if not monitor.running:
                monitor.start()
        self._refresh_task = asyncio.create_task(self._refresh_loop())
        logger.info(
            "Checker started: port=%d check_interval=%dms timeout=%dms peers=%d",
            self.config.port,
            self.config.check_interval_ms,
            self.config.connection_timeout_ms,
            len(self._peers),
        )

    async def stop(self) -> None:
        """Shut every monitor down and wait (bounded) for them to exit."""
        self._running = False
        if self._refresh_task:
            self._refresh_task.cancel()
            try:
                await self._refresh_task
            except asyncio.CancelledError:
                pass
            except Exception:
                logger.exception("Metadata refresh loop had failed")
            finally:
                self._refresh_task = None

        monitors = list(self._peers.values()) + self._retired
        try:
            for monitor in monitors:
                monitor.shutdown()
            # One probe timeout plus one full sleep covers a loop mid-cycle.
            bound = (self.config.connection_timeout_ms + self.config.check_interval_ms) / 1000 + 1
            for monitor in monitors:
                if not await monitor.wait_closed(timeout=bound):
                    logger.warning("Peer(%s): check loop did not exit, cancelling", monitor.peer_id)
                    monitor.cancel()
            self._retired.clear()
        finally:
            await self.server.stop()
        logger.info("Checker stopped")

    async def _refresh_loop(self) -> None:
        while self._running:
            try:
                await self.refresh()
            except MetadataError as e:
                logger.warning("Metadata refresh failed, keeping previous view: %s", e)
            except Exception:
                logger.exception("Metadata refresh failed unexpectedly")
            await asyncio.sleep(self.config.metadata_refresh_interval)

    def peer_status(self) -> list[dict[str, Any]]:
        """Per-peer reachability for the /peers endpoint."""
        return [
            {
                "id": m.peer_id,
                "host_ip": m.host_ip,
                "container_ip": m.container_ip,
                "confidence": m.confidence,
                "reachable": m.reachable,
            }
            for m in self._peers.values()
        ]
