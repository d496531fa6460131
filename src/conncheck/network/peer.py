"""Peer monitoring — debounced reachability of one remote companion container.

Each peer runs its own asyncio task. Every cycle the monitor checks that
both ends are in a state worth judging, probes the peer's ping endpoint,
and folds the result into a small confidence counter:

    failure          failure          failure
  3 ──────────▶ 2 ──────────▶ 1 ──────────▶ 0   (became unreachable)
  3 ◀────────── 2 ◀────────── 1 ◀────────── 0   (became reachable)
    success          success          success

Only crossing the 0/1 boundary changes the externally visible signal, so a
single flaky result after a run of consistent ones does not flip it.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time

from conncheck.metadata import CONTAINER_RUNNING, HOST_ACTIVE, Container, Host
from conncheck.network.probe import PING_RESPONSE, Probe, is_reachable, ping_url

logger = logging.getLogger(__name__)

MAX_CONFIDENCE = 3
MAX_JITTER_MS = 1000
DEFAULT_CHECK_INTERVAL_MS = 5000
DEFAULT_CONNECTION_TIMEOUT_MS = 1000


class PeerMonitor:
    """Tracks whether a single peer is reachable.

    The host, container and companion references are owned by whoever
    created the monitor and may be replaced at any time; the monitor only
    reads them. ``confidence``, ``last_checked`` and the jitter source are
    guarded by one asyncio lock, which is held for the whole check cycle
    including the probe. ``consider()``, ``update_success()`` and
    ``update_failure()`` therefore wait for an in-flight probe to finish.
    """

    def __init__(
        self,
        peer_id: str,
        host: Host | None = None,
        container: Container | None = None,
        cc_container: Container | None = None,
        check_interval_ms: int = DEFAULT_CHECK_INTERVAL_MS,
        connection_timeout_ms: int = DEFAULT_CONNECTION_TIMEOUT_MS,
        probe: Probe | None = None,
    ) -> None:
        self.peer_id = peer_id
        self.host = host
        self.container = container
        self.cc_container = cc_container
        self.check_interval_ms = check_interval_ms
        self.connection_timeout_ms = connection_timeout_ms
        self._probe = probe or is_reachable

        self._lock = asyncio.Lock()
        self._stop = asyncio.Event()
        self._task: asyncio.Task | None = None
        self._random = random.Random()
        self._confidence = 0
        self._last_checked: float | None = None

    @property
    def confidence(self) -> int:
        return self._confidence

    @property
    def reachable(self) -> bool:
        return self._confidence > 0

    @property
    def last_checked(self) -> float | None:
        """Monotonic time of the last completed check, if any."""
        return self._last_checked

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def host_ip(self) -> str:
        return self.host.agent_ip if self.host else ""

    @property
    def container_ip(self) -> str:
        return self.container.primary_ip if self.container else ""

    # ── Lifecycle ────────────────────────────────────────────────

    def start(self) -> None:
        """Seed the jitter source and launch the check loop.

        Must be called from a running event loop. Returns immediately.

        Raises:
            RuntimeError: If the loop is already running.
        """
        if self.running:
            raise RuntimeError(f"Peer({self.peer_id}) monitor already started")
        self._setup_random()
        self._stop.clear()
        self._task = asyncio.create_task(self.run(), name=f"peer-{self.peer_id}")

    def shutdown(self) -> None:
        """Ask the check loop to exit. Safe to call repeatedly.

        The loop notices at the top of its next cycle; a probe or sleep that
        is already under way is allowed to finish.
        """
        self._stop.set()

    async def wait_closed(self, timeout: float | None = None) -> bool:
        """Wait for the check loop to exit.

        Returns:
            True if the loop has exited, False if ``timeout`` expired first.
        """
        if self._task is None:
            return True
        done, _ = await asyncio.wait({self._task}, timeout=timeout)
        return bool(done)

    def cancel(self) -> None:
        """Abort the check loop immediately, in-flight probe included."""
        self._stop.set()
        if self._task is not None:
            self._task.cancel()

    def _setup_random(self) -> None:
        seed = time.time_ns()
        if self.host is not None:
            digits = (self.host.agent_ip or "").replace(".", "")
            try:
                seed = int(digits)
            except ValueError:
                logger.error("Peer(%s) couldn't convert to int: %r", self.peer_id, digits)
        self._random.seed(seed)

    # ── Scheduling ───────────────────────────────────────────────

    async def run(self) -> None:
        """Check loop: one cycle, one jittered sleep, until shut down."""
        while True:
            if self._stop.is_set():
                logger.info("Peer: %s deleted, stopping check", self.peer_id)
                return

            try:
                await self.do_work()
            except Exception:
                logger.exception("Peer(%s): check cycle failed", self.peer_id)

            sleep_for = await self._next_sleep()
            logger.debug("Peer(%s): sleeping for %.3fs", self.peer_id, sleep_for)
            await asyncio.sleep(sleep_for)

    async def _next_sleep(self) -> float:
        async with self._lock:
            return self.sleep_duration()

    def sleep_duration(self) -> float:
        """Seconds until the next cycle: the interval minus up to 999ms of jitter.

        Intervals shorter than the jitter can come out negative; those are
        clamped to zero, meaning run the next cycle right away.
        """
        ms = self.check_interval_ms - self._random.randrange(MAX_JITTER_MS)
        return max(ms, 0) / 1000

    def is_it_time_to_check(self) -> bool:
        if self._last_checked is None:
            return True
        since = time.monotonic() - self._last_checked
        logger.debug(
            "Peer(%s): time since last check %.3fs (check interval %dms)",
            self.peer_id, since, self.check_interval_ms,
        )
        return since * 1000 >= self.check_interval_ms

    async def do_work(self) -> None:
        """Run one check cycle under the lock."""
        async with self._lock:
            if not self._consider():
                logger.debug("Peer(%s): not considered", self.peer_id)
                return

            if not self.is_it_time_to_check():
                logger.debug("Peer(%s): skipping check", self.peer_id)
                return

            url = ping_url(self.container.primary_ip)
            ok, err = await self._probe(url, PING_RESPONSE, self.connection_timeout_ms)
            if ok:
                self._update_success()
            else:
                self._update_failure()
            if err is not None:
                logger.debug("Peer(%s): checking reachability got err=%r", self.peer_id, err)

    # ── Hysteresis ───────────────────────────────────────────────

    def _mark_checked(self) -> None:
        now = time.monotonic()
        if self._last_checked is None or now > self._last_checked:
            self._last_checked = now

    def _update_success(self) -> None:
        if self._confidence < MAX_CONFIDENCE:
            self._confidence += 1
            if self._confidence == 1:
                logger.info(
                    "Peer(%s, %s, %s): became reachable",
                    self.peer_id, self.host_ip, self.container_ip,
                )
        self._mark_checked()

    def _update_failure(self) -> None:
        if self._confidence > 0:
            self._confidence -= 1
            if self._confidence == 0:
                logger.error(
                    "Peer(%s, %s, %s): became unreachable",
                    self.peer_id, self.host_ip, self.container_ip,
                )
        self._mark_checked()

    async def update_success(self) -> None:
        """Record a successful check from outside the loop."""
        async with self._lock:
            self._update_success()

    async def update_failure(self) -> None:
        """Record a failed check from outside the loop."""
        async with self._lock:
            self._update_failure()

    # ── Eligibility ──────────────────────────────────────────────

    def _consider(self) -> bool:
        host, container, cc = self.host, self.container, self.cc_container
        if host is None or container is None or cc is None:
            logger.debug(
                "Peer(%s): not in considerable state host=%s container=%s cc_container=%s",
                self.peer_id, host, container, cc,
            )
            return False

        if host.state != HOST_ACTIVE or host.agent_state not in ("", HOST_ACTIVE):
            logger.debug(
                "Peer(%s, %s, %s): host is not in considerable state (state=%s agent_state=%s)",
                self.peer_id, host.agent_ip, container.primary_ip, host.state, host.agent_state,
            )
            return False

        if cc.state != CONTAINER_RUNNING:
            logger.debug(
                "Peer(%s, %s, %s): cc_container is not running (state=%s)",
                self.peer_id, host.agent_ip, container.primary_ip, cc.state,
            )
            return False

        if container.state != CONTAINER_RUNNING:
            logger.debug(
                "Peer(%s, %s, %s): container is not running (state=%s)",
                self.peer_id, host.agent_ip, container.primary_ip, container.state,
            )
            return False

        return True

    async def consider(self) -> bool:
        """Should this peer be checked right now?"""
        async with self._lock:
            return self._consider()
