import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from feedsync.connection import ConnectionStatusMonitor, classify_round_trip
from feedsync.models import ConnectionQuality, ConnectionStatus


@pytest.mark.parametrize("seconds, quality", [
    (0.05, ConnectionQuality.EXCELLENT),
    (0.2, ConnectionQuality.GOOD),
    (0.7, ConnectionQuality.FAIR),
    (1.0, ConnectionQuality.POOR),
    (3.0, ConnectionQuality.POOR),
])
def test_classify_round_trip(seconds, quality):
    assert classify_round_trip(seconds) is quality


class TestStateMachine:

    def test_starts_connecting_and_connects_on_first_event(self):
        monitor = ConnectionStatusMonitor("team-1")
        assert monitor.status is ConnectionStatus.CONNECTING
        monitor.event_delivered()
        assert monitor.status is ConnectionStatus.CONNECTED

    def test_full_reconnect_cycle(self):
        monitor = ConnectionStatusMonitor("team-1")
        listener = MagicMock()
        monitor.add_listener(listener)

        monitor.event_delivered()
        monitor.subscription_lost("socket closed")
        monitor.reconnect_started()
        monitor.resubscribed()

        transitions = [(old.value, new.value) for (old, new), _ in listener.call_args_list]
        assert transitions == [
            ("connecting", "connected"),
            ("connected", "disconnected"),
            ("disconnected", "reconnecting"),
            ("reconnecting", "connected"),
        ]
        assert monitor.last_disconnect is not None

    def test_reconnect_only_starts_from_disconnected(self):
        monitor = ConnectionStatusMonitor("team-1")
        monitor.event_delivered()
        monitor.reconnect_started()
        assert monitor.status is ConnectionStatus.CONNECTED

    def test_failed_reconnect_returns_to_disconnected(self):
        monitor = ConnectionStatusMonitor("team-1")
        monitor.subscription_lost()
        monitor.reconnect_started()
        monitor.reconnect_failed()
        assert monitor.status is ConnectionStatus.DISCONNECTED

    def test_events_while_disconnected_do_not_reconnect(self):
        monitor = ConnectionStatusMonitor("team-1")
        monitor.subscription_lost()
        monitor.event_delivered()
        assert monitor.status is ConnectionStatus.DISCONNECTED

    @pytest.mark.parametrize("setup", [
        [],
        ["event_delivered"],
        ["subscription_lost", "reconnect_started"],
    ])
    def test_teardown_always_ends_disconnected(self, setup):
        monitor = ConnectionStatusMonitor("team-1")
        for step in setup:
            getattr(monitor, step)()
        monitor.teardown()
        assert monitor.status is ConnectionStatus.DISCONNECTED


@pytest.mark.asyncio
async def test_liveness_measures_quality():
    monitor = ConnectionStatusMonitor("team-1", probe=AsyncMock())
    assert monitor.quality is ConnectionQuality.UNKNOWN
    assert await monitor.check_liveness() is ConnectionQuality.EXCELLENT
    assert monitor.last_round_trip is not None


@pytest.mark.asyncio
async def test_failed_liveness_disconnects():
    monitor = ConnectionStatusMonitor("team-1", probe=AsyncMock(side_effect=ConnectionError("down")))
    monitor.event_delivered()
    assert await monitor.check_liveness() is ConnectionQuality.OFFLINE
    assert monitor.status is ConnectionStatus.DISCONNECTED


@pytest.mark.asyncio
async def test_slow_probe_times_out():
    async def hang():
        await asyncio.sleep(1)

    monitor = ConnectionStatusMonitor("team-1", probe=hang, probe_timeout=0.01)
    monitor.event_delivered()
    assert await monitor.check_liveness() is ConnectionQuality.OFFLINE
    assert not monitor.is_connected


@pytest.mark.asyncio
async def test_no_probe_keeps_quality():
    monitor = ConnectionStatusMonitor("team-1")
    assert await monitor.check_liveness() is ConnectionQuality.UNKNOWN
