"""Reachability probe — one best-effort HTTP ping against a peer."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from aiohttp import ClientError, ClientSession, ClientTimeout

logger = logging.getLogger(__name__)

PING_PATH = "/ping"
PING_RESPONSE = "pong"

ProbeResult = tuple[bool, "Exception | None"]
Probe = Callable[[str, str, int], Awaitable[ProbeResult]]


def ping_url(address: str) -> str:
    """URL of the ping endpoint served at ``address``."""
    return f"http://{address}{PING_PATH}"


async def is_reachable(
    url: str,
    expected_body: str,
    timeout_ms: int,
    session: ClientSession | None = None,
) -> ProbeResult:
    """GET ``url`` and compare the response body.

    Args:
        url: Full URL to request.
        expected_body: Body the endpoint must answer with.
        timeout_ms: Total time allowed for the request.
        session: Optional shared client session; a short-lived one is
            created when omitted.

    Returns:
        ``(reachable, error)``. Never raises for transport problems; the
        error is handed back so the caller can log it.
    """
    timeout = ClientTimeout(total=timeout_ms / 1000)
    try:
        if session is None:
            async with ClientSession(timeout=timeout) as own:
                return await _check(own, url, expected_body, timeout)
        return await _check(session, url, expected_body, timeout)
    except (ClientError, asyncio.TimeoutError, UnicodeDecodeError) as e:
        return False, e


async def _check(
    session: ClientSession,
    url: str,
    expected_body: str,
    timeout: ClientTimeout,
) -> ProbeResult:
    async with session.get(url, timeout=timeout) as resp:
        if resp.status != 200:
            return False, None
        body = await resp.text()
        if body.strip() != expected_body:
            logger.debug("Unexpected response from %s: %r", url, body[:64])
            return False, None
        return True, None
