"""
Typing Presence Tracker

Ephemeral set of participants currently composing a message. Each entry
carries an expiry timer on the shared scheduler; a new signal for the same
participant replaces the timer rather than stacking another one.
"""

import asyncio
import logging
from typing import Callable, Dict, FrozenSet, List, Optional, Set

from feedsync.backoff import BackoffScheduler, CancelToken
from feedsync.models import EventType, FeedEvent
from feedsync.transport.base import MessageTransport

logger = logging.getLogger(__name__)

DEFAULT_TYPING_TIMEOUT = 3.0

TypingListener = Callable[[FrozenSet[str]], None]


class TypingPresenceTracker:
    """
    Tracks local and remote typing state for one chat context.

    Only the local participant's signals are forwarded to the transport;
    remote participants arrive through apply_remote_event(). The local id is
    never part of currently_typing().
    """

    def __init__(self,
                 context_id: str,
                 local_participant_id: str,
                 scheduler: BackoffScheduler,
                 transport: Optional[MessageTransport] = None,
                 timeout: float = DEFAULT_TYPING_TIMEOUT):
        self.context_id = context_id
        self.local_participant_id = local_participant_id
        self.scheduler = scheduler
        self.transport = transport
        self.timeout = timeout
        self._typing: Set[str] = set()
        self._expiry: Dict[str, CancelToken] = {}
        self._notify_tasks: Set[asyncio.Task] = set()
        self._listeners: List[TypingListener] = []

    def currently_typing(self) -> FrozenSet[str]:
        return frozenset(p for p in self._typing if p != self.local_participant_id)

    def is_typing(self, participant_id: str) -> bool:
        return participant_id in self._typing

    def add_listener(self, listener: TypingListener) -> None:
        self._listeners.append(listener)

    def signal_typing(self, participant_id: str) -> None:
        """Mark participant_id as typing and (re)start its expiry timer."""
        self._start(participant_id)
        if participant_id == self.local_participant_id:
            self._notify(self._send_start, participant_id)

    def signal_stopped(self, participant_id: str) -> None:
        was_typing = self._stop(participant_id)
        if was_typing and participant_id == self.local_participant_id:
            self._notify(self._send_stop, participant_id)

    def apply_remote_event(self, event: FeedEvent) -> bool:
        """Apply an inbound typing event. Returns False for other event types."""
        participant_id = event.participant_id
        if not participant_id or participant_id == self.local_participant_id:
            return False
        if event.event_type is EventType.TYPING_START:
            self._start(participant_id)
            return True
        if event.event_type is EventType.TYPING_STOP:
            self._stop(participant_id)
            return True
        return False

    def close(self) -> None:
        for token in self._expiry.values():
            token.cancel()
        self._expiry.clear()
        self._typing.clear()
        for task in list(self._notify_tasks):
            task.cancel()
        self._notify_tasks.clear()
        self._listeners.clear()

    # --- Internals ---

    def _start(self, participant_id: str) -> None:
        previous = self._expiry.pop(participant_id, None)
        if previous is not None:
            previous.cancel()
        self._expiry[participant_id] = self.scheduler.schedule_after(
            lambda: self.signal_stopped(participant_id),
            self.timeout,
            label=f"typing_{participant_id}",
        )
        if participant_id not in self._typing:
            self._typing.add(participant_id)
            self._changed()

    def _stop(self, participant_id: str) -> bool:
        token = self._expiry.pop(participant_id, None)
        if token is not None:
            token.cancel()
        if participant_id not in self._typing:
            return False
        self._typing.discard(participant_id)
        self._changed()
        return True

    def _changed(self) -> None:
        snapshot = self.currently_typing()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as e:
                logger.error(f"[{self.context_id}] Typing listener failed: {e}", exc_info=True)

    async def _send_start(self, participant_id: str) -> None:
        await self.transport.send_typing_signal(self.context_id, participant_id)

    async def _send_stop(self, participant_id: str) -> None:
        await self.transport.stop_typing_signal(self.context_id, participant_id)

    def _notify(self, sender, participant_id: str) -> None:
        if self.transport is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug(f"[{self.context_id}] No running loop, skipping typing notification")
            return
        task = loop.create_task(self._notify_safely(sender, participant_id))
        self._notify_tasks.add(task)
        task.add_done_callback(self._notify_tasks.discard)

    async def _notify_safely(self, sender, participant_id: str) -> None:
        # Typing signals are best-effort
        try:
            await sender(participant_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"[{self.context_id}] Typing signal for '{participant_id}' failed: {e}")
