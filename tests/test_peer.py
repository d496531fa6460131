"""Tests for conncheck.network.peer.PeerMonitor."""

from __future__ import annotations

import asyncio
import logging
import time

import pytest

from conncheck.metadata import Container, Host
from conncheck.network.peer import MAX_CONFIDENCE, PeerMonitor


# ── Helpers ──────────────────────────────────────────────────────

def make_host(**kwargs) -> Host:
    defaults = {"uuid": "h1", "agent_ip": "192.168.1.10", "state": "active"}
    defaults.update(kwargs)
    return Host(**defaults)


def make_container(uuid: str = "c1", **kwargs) -> Container:
    defaults = {"uuid": uuid, "primary_ip": "10.42.0.5", "state": "running", "host_uuid": "h1"}
    defaults.update(kwargs)
    return Container(**defaults)


class FakeProbe:
    """Scripted probe that records every call."""

    def __init__(self, results: list[bool] | None = None, default: bool = True) -> None:
        self.results = list(results or [])
        self.default = default
        self.calls: list[tuple[str, str, int]] = []

    async def __call__(self, url: str, expected_body: str, timeout_ms: int):
        self.calls.append((url, expected_body, timeout_ms))
        ok = self.results.pop(0) if self.results else self.default
        return ok, None if ok else ConnectionError("refused")


def make_monitor(probe=None, **kwargs) -> PeerMonitor:
    defaults = {
        "peer_id": "peer-1",
        "host": make_host(),
        "container": make_container(),
        "cc_container": make_container("cc-local", primary_ip="10.42.0.2"),
        "check_interval_ms": 2000,
        "connection_timeout_ms": 500,
        "probe": probe or FakeProbe(),
    }
    defaults.update(kwargs)
    return PeerMonitor(**defaults)


def edge_events(caplog, text: str) -> int:
    return sum(1 for r in caplog.records if text in r.getMessage())


@pytest.fixture
def monitor():
    return make_monitor()


# ── Hysteresis ───────────────────────────────────────────────────

class TestHysteresis:
    @pytest.mark.asyncio
    async def test_starts_unreachable(self, monitor):
        assert monitor.confidence == 0
        assert monitor.reachable is False
        assert monitor.last_checked is None

    @pytest.mark.asyncio
    async def test_success_increments(self, monitor):
        await monitor.update_success()
        assert monitor.confidence == 1
        assert monitor.reachable is True

    @pytest.mark.asyncio
    async def test_success_saturates(self, monitor):
        for _ in range(10):
            await monitor.update_success()
        assert monitor.confidence == MAX_CONFIDENCE

    @pytest.mark.asyncio
    async def test_failure_saturates_at_zero(self, monitor):
        for _ in range(5):
            await monitor.update_failure()
        assert monitor.confidence == 0

    @pytest.mark.asyncio
    async def test_bounds_hold_for_mixed_sequence(self, monitor):
        pattern = [True, True, False, True, True, True, True, False, False, False, False, True]
        for ok in pattern * 3:
            if ok:
                await monitor.update_success()
            else:
                await monitor.update_failure()
            assert 0 <= monitor.confidence <= MAX_CONFIDENCE

    @pytest.mark.asyncio
    async def test_single_failure_does_not_flip(self, monitor):
        for _ in range(3):
            await monitor.update_success()
        await monitor.update_failure()
        assert monitor.confidence == 2
        assert monitor.reachable is True

    @pytest.mark.asyncio
    async def test_updates_stamp_last_checked(self, monitor):
        await monitor.update_failure()
        first = monitor.last_checked
        assert first is not None
        await monitor.update_success()
        assert monitor.last_checked >= first

    @pytest.mark.asyncio
    async def test_reachable_event_fires_once(self, monitor, caplog):
        caplog.set_level(logging.INFO, logger="conncheck.network.peer")
        for _ in range(3):
            await monitor.update_success()
        assert edge_events(caplog, "became reachable") == 1

    @pytest.mark.asyncio
    async def test_unreachable_event_fires_once(self, monitor, caplog):
        caplog.set_level(logging.INFO, logger="conncheck.network.peer")
        await monitor.update_success()
        await monitor.update_success()
        for _ in range(4):
            await monitor.update_failure()
        assert edge_events(caplog, "became unreachable") == 1

    @pytest.mark.asyncio
    async def test_no_unreachable_event_from_zero(self, monitor, caplog):
        caplog.set_level(logging.INFO, logger="conncheck.network.peer")
        for _ in range(3):
            await monitor.update_failure()
        assert edge_events(caplog, "became unreachable") == 0

    @pytest.mark.asyncio
    async def test_three_failures_from_full_confidence(self, caplog):
        caplog.set_level(logging.INFO, logger="conncheck.network.peer")
        probe = FakeProbe(default=False)
        m = make_monitor(probe=probe, check_interval_ms=2000)
        m._confidence = 3

        seen = []
        for i in range(3):
            m._last_checked = None  # let each cycle through the throttle
            await m.do_work()
            seen.append(m.confidence)
            expected_events = 1 if i == 2 else 0
            assert edge_events(caplog, "became unreachable") == expected_events

        assert seen == [2, 1, 0]
        assert len(probe.calls) == 3


# ── Eligibility ──────────────────────────────────────────────────

class TestConsider:
    @pytest.mark.asyncio
    async def test_all_conditions_hold(self, monitor):
        assert await monitor.consider() is True

    @pytest.mark.asyncio
    @pytest.mark.parametrize("missing", ["host", "container", "cc_container"])
    async def test_missing_reference(self, missing):
        m = make_monitor(**{missing: None})
        assert await m.consider() is False

    @pytest.mark.asyncio
    async def test_host_not_active(self):
        m = make_monitor(host=make_host(state="reconnecting"))
        assert await m.consider() is False

    @pytest.mark.asyncio
    @pytest.mark.parametrize("agent_state", ["", "active"])
    async def test_agent_state_accepted(self, agent_state):
        m = make_monitor(host=make_host(agent_state=agent_state))
        assert await m.consider() is True

    @pytest.mark.asyncio
    async def test_agent_state_rejected(self):
        m = make_monitor(host=make_host(agent_state="disconnected"))
        assert await m.consider() is False

    @pytest.mark.asyncio
    async def test_companion_not_running(self):
        m = make_monitor(cc_container=make_container("cc", state="starting"))
        assert await m.consider() is False

    @pytest.mark.asyncio
    async def test_peer_not_running(self):
        m = make_monitor(container=make_container(state="stopped"))
        assert await m.consider() is False

    @pytest.mark.asyncio
    async def test_consider_does_not_mutate(self, monitor):
        await monitor.consider()
        assert monitor.confidence == 0
        assert monitor.last_checked is None


# ── Check cycle ──────────────────────────────────────────────────

class TestDoWork:
    @pytest.mark.asyncio
    async def test_probes_ping_endpoint(self):
        probe = FakeProbe()
        m = make_monitor(probe=probe, connection_timeout_ms=750)
        await m.do_work()
        assert probe.calls == [("http://10.42.0.5/ping", "pong", 750)]
        assert m.confidence == 1

    @pytest.mark.asyncio
    async def test_failed_probe_decrements(self):
        m = make_monitor(probe=FakeProbe(default=False))
        m._confidence = 2
        await m.do_work()
        assert m.confidence == 1
        assert m.last_checked is not None

    @pytest.mark.asyncio
    async def test_boolean_result_wins_over_error(self):
        async def probe(url, expected, timeout_ms):
            return True, TimeoutError("slow close")

        m = make_monitor(probe=probe)
        await m.do_work()
        assert m.confidence == 1

    @pytest.mark.asyncio
    async def test_throttle_blocks_early_cycle(self):
        probe = FakeProbe()
        m = make_monitor(probe=probe, check_interval_ms=2000)
        stamp = time.monotonic()
        m._last_checked = stamp
        await m.do_work()
        assert probe.calls == []
        assert m.confidence == 0
        assert m.last_checked == stamp

    @pytest.mark.asyncio
    async def test_throttle_allows_after_interval(self):
        probe = FakeProbe()
        m = make_monitor(probe=probe, check_interval_ms=2000)
        m._last_checked = time.monotonic() - 2.5
        await m.do_work()
        assert len(probe.calls) == 1

    @pytest.mark.asyncio
    async def test_is_it_time_to_check(self, monitor):
        assert monitor.is_it_time_to_check() is True
        monitor._last_checked = time.monotonic()
        assert monitor.is_it_time_to_check() is False

    @pytest.mark.asyncio
    async def test_ineligible_peer_skips_probe(self):
        probe = FakeProbe()
        m = make_monitor(probe=probe)
        await m.do_work()
        assert m.confidence == 1
        checked = m.last_checked

        m.container = make_container(state="stopped")
        m._last_checked = None
        await m.do_work()
        assert len(probe.calls) == 1
        assert m.confidence == 1
        assert m.last_checked is None

        m._last_checked = checked
        await m.do_work()
        assert m.last_checked == checked

    @pytest.mark.asyncio
    async def test_lock_held_across_probe(self):
        entered = asyncio.Event()
        release = asyncio.Event()

        async def slow_probe(url, expected, timeout_ms):
            entered.set()
            await release.wait()
            return True, None

        m = make_monitor(probe=slow_probe)
        cycle = asyncio.create_task(m.do_work())
        await entered.wait()

        update = asyncio.create_task(m.update_success())
        await asyncio.sleep(0.05)
        assert not update.done()
        assert m.confidence == 0

        release.set()
        await asyncio.gather(cycle, update)
        assert m.confidence == 2


# ── Jitter ───────────────────────────────────────────────────────

class TestJitter:
    def test_sleep_within_jitter_window(self, monitor):
        monitor._setup_random()
        for _ in range(200):
            s = monitor.sleep_duration()
            assert 1.001 <= s <= 2.0

    def test_short_interval_clamped(self):
        m = make_monitor(check_interval_ms=300)
        m._setup_random()
        for _ in range(200):
            assert m.sleep_duration() >= 0.0

    def test_same_host_same_sequence(self):
        a = make_monitor()
        b = make_monitor(peer_id="peer-2")
        a._setup_random()
        b._setup_random()
        assert [a.sleep_duration() for _ in range(5)] == [b.sleep_duration() for _ in range(5)]

    def test_unparseable_address_falls_back(self, caplog):
        caplog.set_level(logging.ERROR, logger="conncheck.network.peer")
        m = make_monitor(host=make_host(agent_ip="fe80::1"))
        m._setup_random()
        assert "couldn't convert to int" in caplog.text
        assert 1.001 <= m.sleep_duration() <= 2.0

    def test_no_host_uses_clock_seed(self):
        m = make_monitor(host=None)
        m._setup_random()
        assert 1.001 <= m.sleep_duration() <= 2.0


# ── Lifecycle ────────────────────────────────────────────────────

class TestLifecycle:
    @pytest.mark.asyncio
    async def test_shutdown_right_after_start(self):
        probe = FakeProbe()
        m = make_monitor(probe=probe)
        m.start()
        m.shutdown()
        assert await m.wait_closed(timeout=3.0) is True
        assert len(probe.calls) <= 1
        assert not m.running

    @pytest.mark.asyncio
    async def test_shutdown_is_idempotent(self):
        m = make_monitor()
        m.start()
        m.shutdown()
        m.shutdown()
        assert await m.wait_closed(timeout=3.0) is True
        m.shutdown()

    @pytest.mark.asyncio
    async def test_shutdown_before_start(self, monitor):
        monitor.shutdown()
        assert await monitor.wait_closed(timeout=0.1) is True

    @pytest.mark.asyncio
    async def test_double_start_rejected(self):
        m = make_monitor()
        m.start()
        try:
            with pytest.raises(RuntimeError):
                m.start()
        finally:
            m.cancel()
            await m.wait_closed(timeout=1.0)

    @pytest.mark.asyncio
    async def test_loop_keeps_probing(self):
        probe = FakeProbe()
        m = make_monitor(probe=probe, check_interval_ms=20)
        m.start()
        await asyncio.sleep(0.3)
        m.shutdown()
        assert await m.wait_closed(timeout=2.0) is True
        assert len(probe.calls) >= 2
        assert m.confidence == min(len(probe.calls), MAX_CONFIDENCE)

    @pytest.mark.asyncio
    async def test_loop_survives_probe_exception(self):
        calls = 0

        async def flaky(url, expected, timeout_ms):
            nonlocal calls
            calls += 1
            if calls == 1:
                raise RuntimeError("boom")
            return True, None

        m = make_monitor(probe=flaky, check_interval_ms=20)
        m.start()
        await asyncio.sleep(0.3)
        m.shutdown()
        assert await m.wait_closed(timeout=2.0) is True
        assert calls >= 2
        assert m.confidence >= 1

    @pytest.mark.asyncio
    async def test_ineligible_peer_never_probed(self):
        probe = FakeProbe()
        m = make_monitor(probe=probe, cc_container=None, check_interval_ms=20)
        m.start()
        await asyncio.sleep(0.1)
        m.shutdown()
        await m.wait_closed(timeout=2.0)
        assert probe.calls == []
        assert m.last_checked is None

    @pytest.mark.asyncio
    async def test_null_host_address_falls_back_to_clock_seed(self, caplog):
        caplog.set_level(logging.ERROR, logger="conncheck.network.peer")
        host = Host.from_dict({"uuid": "h1", "agent_ip": None, "state": "active"})
        m = make_monitor(host=host)
        m.start()
        try:
            assert m.running
            assert "couldn't convert to int" in caplog.text
            assert 1.001 <= m.sleep_duration() <= 2.0
        finally:
            m.shutdown()
            assert await m.wait_closed(timeout=3.0) is True
