"""
Connection Status Monitor

Tracks the live subscription as a four-state machine and measures round
trips to the transport:

    connecting --first event--> connected
    connected --lost / liveness failure--> disconnected
    disconnected --retry starts--> reconnecting --resubscribed--> connected
    reconnecting --retry failed--> disconnected

Teardown always lands in disconnected.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, List, Optional

from feedsync.models import ConnectionQuality, ConnectionStatus

logger = logging.getLogger(__name__)

StatusListener = Callable[[ConnectionStatus, ConnectionStatus], None]
Probe = Callable[[], Awaitable[None]]

# Round-trip thresholds in seconds
EXCELLENT_RTT = 0.2
GOOD_RTT = 0.5
FAIR_RTT = 1.0


def classify_round_trip(seconds: float) -> ConnectionQuality:
    if seconds < EXCELLENT_RTT:
        return ConnectionQuality.EXCELLENT
    if seconds < GOOD_RTT:
        return ConnectionQuality.GOOD
    if seconds < FAIR_RTT:
        return ConnectionQuality.FAIR
    return ConnectionQuality.POOR


class ConnectionStatusMonitor:

    def __init__(self, context_id: str, probe: Optional[Probe] = None, probe_timeout: float = 5.0):
        self.context_id = context_id
        self._probe = probe
        self.probe_timeout = probe_timeout
        self._status = ConnectionStatus.CONNECTING
        self._quality = ConnectionQuality.UNKNOWN
        self.last_round_trip: Optional[float] = None
        self.last_disconnect: Optional[float] = None
        self._listeners: List[StatusListener] = []

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    @property
    def quality(self) -> ConnectionQuality:
        return self._quality

    @property
    def is_connected(self) -> bool:
        return self._status is ConnectionStatus.CONNECTED

    def add_listener(self, listener: StatusListener) -> None:
        self._listeners.append(listener)

    # --- Transitions ---

    def reset(self) -> None:
        """Start of a subscription attempt for a fresh session."""
        self._transition(ConnectionStatus.CONNECTING)

    def event_delivered(self) -> None:
        """A live event arrived; the subscription is demonstrably working."""
        if self._status in (ConnectionStatus.CONNECTING, ConnectionStatus.RECONNECTING):
            self._transition(ConnectionStatus.CONNECTED)

    def subscription_lost(self, reason: str = "") -> None:
        if self._status is ConnectionStatus.DISCONNECTED:
            return
        logger.warning(f"[{self.context_id}] Live subscription lost{': ' + reason if reason else ''}")
        self.last_disconnect = time.time()
        self._transition(ConnectionStatus.DISCONNECTED)

    def reconnect_started(self) -> None:
        if self._status is not ConnectionStatus.DISCONNECTED:
            logger.debug(f"[{self.context_id}] Ignoring reconnect start while {self._status.value}")
            return
        self._transition(ConnectionStatus.RECONNECTING)

    def resubscribed(self) -> None:
        """A retried subscribe call succeeded."""
        if self._status is ConnectionStatus.RECONNECTING:
            self._transition(ConnectionStatus.CONNECTED)

    def reconnect_failed(self) -> None:
        if self._status is ConnectionStatus.RECONNECTING:
            self._transition(ConnectionStatus.DISCONNECTED)

    def teardown(self) -> None:
        self._transition(ConnectionStatus.DISCONNECTED)

    def _transition(self, new_status: ConnectionStatus) -> None:
        old_status = self._status
        if old_status is new_status:
            return
        self._status = new_status
        logger.info(f"[{self.context_id}] Connection status: {old_status.value} -> {new_status.value}")
        for listener in list(self._listeners):
            try:
                listener(old_status, new_status)
            except Exception as e:
                logger.error(f"[{self.context_id}] Status listener failed: {e}", exc_info=True)

    # --- Liveness ---

    async def check_liveness(self) -> ConnectionQuality:
        """
        Time one probe round trip and update quality.

        A failed or timed-out probe reports OFFLINE and drops a connected
        session to disconnected.
        """
        if self._probe is None:
            return self._quality
        start = time.monotonic()
        try:
            await asyncio.wait_for(self._probe(), timeout=self.probe_timeout)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._quality = ConnectionQuality.OFFLINE
            self.last_round_trip = None
            logger.warning(f"[{self.context_id}] Liveness check failed: {e}")
            if self._status is ConnectionStatus.CONNECTED:
                self.subscription_lost("liveness check failed")
            return self._quality

        self.last_round_trip = time.monotonic() - start
        self._quality = classify_round_trip(self.last_round_trip)
        logger.debug(f"[{self.context_id}] Round trip {self.last_round_trip * 1000:.0f}ms ({self._quality.value})")
        return self._quality
