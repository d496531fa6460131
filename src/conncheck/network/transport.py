"""Ping responder — the HTTP endpoint peers probe.

Each companion container runs one of these. Peers GET ``/ping`` and expect
``pong``; ``/health`` and ``/peers`` expose local status for operators.
"""

from __future__ import annotations

import logging
from typing import Any, Callable

from aiohttp import web

from conncheck.network.probe import PING_PATH, PING_RESPONSE

logger = logging.getLogger(__name__)


class PingServer:
    """aiohttp server answering reachability probes from peers."""

    def __init__(
        self,
        host: str = "0.0.0.0",
        port: int = 80,
        status_provider: Callable[[], list[dict[str, Any]]] | None = None,
    ) -> None:
        self.host = host
        self.port = port
        self._status_provider = status_provider
        self._app = web.Application()
        self._runner: web.AppRunner | None = None

        self._app.router.add_get(PING_PATH, self._handle_ping)
        self._app.router.add_get("/health", self._handle_health)
        self._app.router.add_get("/peers", self._handle_peers)

    async def start(self) -> None:
        """Start serving."""
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        try:
            await site.start()
        except OSError:
            await self._runner.cleanup()
            self._runner = None
            raise
        logger.info("Ping server listening on %s:%d", self.host, self.port)

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
        logger.info("Ping server stopped")

    async def _handle_ping(self, request: web.Request) -> web.Response:
        return web.Response(text=PING_RESPONSE)

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({"status": "healthy", "port": self.port})

    async def _handle_peers(self, request: web.Request) -> web.Response:
        peers = self._status_provider() if self._status_provider else []
        return web.json_response({"peers": peers})
