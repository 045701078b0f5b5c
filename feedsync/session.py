"""
Chat Session

Composes the feed for one context: store, send pipeline, retry queue,
history loader, connection monitor and typing tracker, plus the task that
consumes the live subscription. Every remote event goes through
apply_remote_event(); nothing else mutates the store from the network side.
"""

import asyncio
import logging
from datetime import datetime
from typing import Callable, Dict, FrozenSet, List, Optional

from feedsync.backoff import BackoffScheduler, CancelToken
from feedsync.config import FeedSettings
from feedsync.connection import ConnectionStatusMonitor
from feedsync.errors import FeedSyncError, SubscriptionError, ValidationError, classify_error
from feedsync.history import HistoryLoader
from feedsync.models import (
    ConnectionQuality,
    ConnectionStatus,
    EventType,
    FeedEvent,
    Message,
    RetryQueueItem,
    utc_now,
)
from feedsync.observability import get_tracer
from feedsync.pipeline import OptimisticSendPipeline
from feedsync.retry_queue import RetryQueue
from feedsync.store import MessageStore
from feedsync.transport.base import MessageTransport, Subscription
from feedsync.typing_presence import TypingPresenceTracker

logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)

SessionListener = Callable[['ChatSession'], None]

TYPING_EVENTS = (EventType.TYPING_START, EventType.TYPING_STOP)


class ChatSession:
    """
    Live, optimistic message feed for one chat context.

    Usage:
        async with ChatSession("team-1", "user-42", transport) as session:
            await session.send_message("hello")
            for message in session.messages:
                ...

    Actions never raise for remote failures; they surface through `error`
    and the records' delivery state.
    """

    def __init__(self,
                 context_id: str,
                 author_id: str,
                 transport: MessageTransport,
                 settings: Optional[FeedSettings] = None):
        self.context_id = context_id
        self.author_id = author_id
        self.transport = transport
        self.settings = settings or FeedSettings()
        s = self.settings

        self.scheduler = BackoffScheduler(s.retry_base_delay, s.retry_max_delay, name=f"feed_{context_id}")
        # Delay math only; reconnects sleep inside the subscription task
        self._reconnect_backoff = BackoffScheduler(
            s.reconnect_base_delay,
            max(s.retry_max_delay, s.reconnect_base_delay),
            name=f"reconnect_{context_id}",
        )

        self.store = MessageStore(context_id)
        self.retry_queue = RetryQueue(self.store, self.scheduler, self._resend)
        self.pipeline = OptimisticSendPipeline(
            context_id,
            author_id,
            transport,
            self.store,
            self.retry_queue,
            max_attempts=s.max_send_attempts,
            max_content_length=s.max_content_length,
            on_confirmed=self._on_send_confirmed,
            on_terminal_failure=self._on_terminal_failure,
        )
        self.history = HistoryLoader(context_id, transport, self.store,
                                     page_size=s.page_size, max_page_size=s.max_page_size)
        self.monitor = ConnectionStatusMonitor(context_id, probe=transport.ping,
                                               probe_timeout=s.request_timeout)
        self.typing = TypingPresenceTracker(context_id, author_id, self.scheduler,
                                            transport=transport, timeout=s.typing_timeout)

        self._error: Optional[str] = None
        self._connection_error: Optional[str] = None
        self.last_sync_time: Optional[datetime] = None
        # canonical id -> watchdog waiting for the live echo of an own send
        self._expected_echoes: Dict[str, CancelToken] = {}
        self._subscription: Optional[Subscription] = None
        self._subscription_task: Optional[asyncio.Task] = None
        self._liveness_task: Optional[asyncio.Task] = None
        self._reconnect_attempts = 0
        self._initial_load_done = False
        self._opened = False
        self._closed = False
        self._listeners: List[SessionListener] = []

        self.store.add_listener(lambda _store: self._changed())
        self.monitor.add_listener(lambda _old, _new: self._changed())
        self.typing.add_listener(lambda _typing: self._changed())

    # --- State ---

    @property
    def messages(self) -> List[Message]:
        return self.store.messages

    @property
    def loading(self) -> bool:
        return self.history.loading or (not self._initial_load_done and not self._closed)

    @property
    def error(self) -> Optional[str]:
        return self._error or self._connection_error

    @property
    def sending(self) -> bool:
        return self.pipeline.in_flight > 0

    @property
    def has_more(self) -> bool:
        return self.history.has_more

    @property
    def loading_more(self) -> bool:
        return self.history.loading_more

    @property
    def typing_users(self) -> FrozenSet[str]:
        return self.typing.currently_typing()

    @property
    def connection_status(self) -> ConnectionStatus:
        return self.monitor.status

    @property
    def connection_quality(self) -> ConnectionQuality:
        return self.monitor.quality

    @property
    def retry_queue_items(self) -> List[RetryQueueItem]:
        return self.retry_queue.items

    @property
    def can_send(self) -> bool:
        return not self._closed and self.monitor.status is not ConnectionStatus.DISCONNECTED

    @property
    def closed(self) -> bool:
        return self._closed

    def add_listener(self, listener: SessionListener) -> None:
        """Call listener(session) after any change to messages, presence or connection status."""
        self._listeners.append(listener)

    def remove_listener(self, listener: SessionListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    # --- Lifecycle ---

    async def open(self) -> None:
        """Load the newest page, then start the live subscription."""
        if self._opened:
            return
        if self._closed:
            raise RuntimeError(f"Session for '{self.context_id}' is closed")
        self._opened = True
        logger.info(f"[{self.context_id}] Opening feed for '{self.author_id}'")
        self.monitor.reset()

        await self._load_initial()
        if self._closed:
            return

        self._subscription_task = asyncio.create_task(self._run_subscription())
        if self.settings.liveness_interval > 0:
            self._liveness_task = asyncio.create_task(self._liveness_loop())

    async def close(self) -> None:
        """Tear down the session. Idempotent; late network callbacks become no-ops."""
        if self._closed:
            return
        self._closed = True
        logger.info(f"[{self.context_id}] Closing feed")

        tasks = [t for t in (self._subscription_task, self._liveness_task) if t and not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._subscription_task = None
        self._liveness_task = None
        if self._subscription is not None:
            await self._subscription.close()
            self._subscription = None

        # Also cancels retries and resyncs already awaiting the transport
        self.scheduler.close()
        await self.scheduler.wait_closed()
        self.typing.close()
        self.retry_queue.clear()
        self._expected_echoes.clear()
        self.monitor.teardown()
        self.store.close()
        self._listeners.clear()

    async def __aenter__(self) -> 'ChatSession':
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # --- Actions ---

    async def send_message(self, content: str) -> Optional[str]:
        """
        Send content optimistically.

        Empty or whitespace-only content is ignored. Content over the length
        limit sets `error` and creates no record.

        Returns:
            Temporary id of the optimistic record, or None if nothing was sent
        """
        if self._closed:
            logger.warning(f"[{self.context_id}] send_message after close ignored")
            return None
        try:
            text = self.pipeline.validate_content(content)
        except ValidationError as e:
            self._set_error(str(e))
            return None
        if text is None:
            return None

        self.typing.signal_stopped(self.author_id)
        self._set_error(None)
        return await self.pipeline.send(text)

    async def load_more_messages(self) -> int:
        """Load the next older page. Returns the number of messages added."""
        if self._closed:
            return 0
        try:
            return await self.history.load_more()
        except Exception as e:
            error = classify_error(e)
            logger.warning(f"[{self.context_id}] Loading older messages failed: {error}")
            self._set_error(f"Failed to load more messages: {error}")
            return 0

    async def retry_failed_message(self, message_id: str) -> bool:
        """Manually retry a failed record with a fresh attempt budget."""
        if self._closed:
            return False
        self._set_error(None)
        return await self.pipeline.retry_failed(message_id) is not None

    def dismiss_failed_message(self, message_id: str) -> bool:
        if self._closed:
            return False
        return self.pipeline.dismiss(message_id)

    def clear_retry_queue(self) -> int:
        """Cancel every automatic retry. Failed records stay for manual retry."""
        count = self.retry_queue.clear()
        if count:
            logger.info(f"[{self.context_id}] Cleared {count} queued retries")
        return count

    def signal_typing(self) -> None:
        if not self._closed:
            self.typing.signal_typing(self.author_id)

    def signal_stopped(self) -> None:
        if not self._closed:
            self.typing.signal_stopped(self.author_id)

    async def refresh(self) -> None:
        """Reload the newest page, keeping optimistic and failed records."""
        if self._closed:
            return
        try:
            await self.history.load_initial()
        except Exception as e:
            error = classify_error(e)
            logger.warning(f"[{self.context_id}] Refresh failed: {error}")
            self._set_error(f"Failed to load messages: {error}")
            return
        self._set_error(None)

    async def reconnect(self) -> None:
        """
        Restart the live subscription with a fresh reconnect budget.

        Does nothing while the subscription task is still running; it
        reconnects on its own.
        """
        if self._closed or not self._opened:
            return
        self._reconnect_attempts = 0
        if self._subscription_task is not None and not self._subscription_task.done():
            return
        self.monitor.subscription_lost("manual reconnect")
        self.monitor.reconnect_started()
        self._subscription_task = asyncio.create_task(self._run_subscription())

    # --- Remote ingestion ---

    def apply_remote_event(self, event: FeedEvent) -> bool:
        """
        Single entry point for live events.

        Returns:
            True if the event changed the store or presence state
        """
        if self._closed:
            return False
        with tracer.start_as_current_span("session.apply_remote_event", attributes={
            "feed.context_id": self.context_id,
            "event.type": event.event_type.value,
        }):
            self.last_sync_time = utc_now()
            self._connection_error = None
            self.monitor.event_delivered()

            if event.event_type in TYPING_EVENTS:
                return self.typing.apply_remote_event(event)

            if event.event_type is EventType.CREATE and event.payload is not None:
                token = self._expected_echoes.pop(event.payload.id, None)
                if token is not None:
                    token.cancel()
            return self.store.apply_remote_event(event)

    async def _run_subscription(self) -> None:
        while not self._closed:
            try:
                self._subscription = await self.transport.subscribe(self.context_id)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if not await self._handle_subscription_loss(e):
                    return
                continue

            if self.monitor.status is ConnectionStatus.RECONNECTING:
                logger.info(f"[{self.context_id}] Resubscribed after {self._reconnect_attempts} attempt(s)")
                self.monitor.resubscribed()
                self._connection_error = None
                self._reconnect_attempts = 0
                # Pick up creates pushed while no stream was open
                await self._resync("reconnect")

            lost: Optional[Exception] = None
            subscription = self._subscription
            try:
                async for event in subscription:
                    self.apply_remote_event(event)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                lost = e
            finally:
                self._subscription = None
                await subscription.close()

            if self._closed:
                return
            if not await self._handle_subscription_loss(lost or SubscriptionError("Live stream ended")):
                return

    async def _handle_subscription_loss(self, error: Exception) -> bool:
        """Back off before the next subscribe attempt. False once the budget is spent."""
        if self._closed:
            return False
        if self.monitor.status is ConnectionStatus.RECONNECTING:
            logger.warning(f"[{self.context_id}] Reconnect attempt {self._reconnect_attempts} failed: {error}")
            self.monitor.reconnect_failed()
        else:
            self.monitor.subscription_lost(str(error))
        self._connection_error = f"Real-time connection lost: {error}"
        self._changed()

        if self._reconnect_attempts >= self.settings.max_reconnect_attempts:
            logger.error(f"[{self.context_id}] Giving up on the live subscription after "
                         f"{self._reconnect_attempts} reconnect attempts")
            return False

        delay = self._reconnect_backoff.delay_for(self._reconnect_attempts)
        self._reconnect_attempts += 1
        logger.info(f"[{self.context_id}] Reconnecting in {delay:.2f}s "
                    f"(attempt {self._reconnect_attempts}/{self.settings.max_reconnect_attempts})")
        await asyncio.sleep(delay)
        if self._closed:
            return False
        self.monitor.reconnect_started()
        return True

    async def _liveness_loop(self) -> None:
        interval = self.settings.liveness_interval
        while not self._closed:
            await asyncio.sleep(interval)
            if self.monitor.status not in (ConnectionStatus.CONNECTING, ConnectionStatus.CONNECTED):
                continue
            await self.monitor.check_liveness()
            if self.monitor.status is ConnectionStatus.DISCONNECTED and self._subscription is not None:
                # Ending the stream hands control to the reconnect path
                await self._subscription.close()

    async def _load_initial(self) -> None:
        try:
            await self.history.load_initial()
        except Exception as e:
            error = classify_error(e)
            logger.error(f"[{self.context_id}] Initial history load failed: {error}")
            self._set_error(f"Failed to load messages: {error}")
        finally:
            self._initial_load_done = True
            self._changed()

    # --- Pipeline callbacks ---

    async def _resend(self, content: str, attempt: int) -> Optional[str]:
        return await self.pipeline.send(content, attempt)

    def _on_send_confirmed(self, temp_id: str, canonical: Optional[Message]) -> None:
        if self._closed:
            return
        if canonical is None:
            # Accepted without a usable record: no id to match the echo against
            self.scheduler.schedule_after(
                lambda: self._resync(f"unreadable ack for '{temp_id}'"),
                self.settings.echo_timeout,
                label=f"resync_{temp_id}",
            )
            return
        if canonical.id in self.store:
            return
        self._expected_echoes[canonical.id] = self.scheduler.schedule_after(
            lambda: self._echo_missing(canonical.id),
            self.settings.echo_timeout,
            label=f"echo_{canonical.id}",
        )

    async def _echo_missing(self, message_id: str) -> None:
        self._expected_echoes.pop(message_id, None)
        if self._closed or message_id in self.store:
            return
        logger.warning(f"[{self.context_id}] No live event for sent message '{message_id}' "
                       f"within {self.settings.echo_timeout}s, resyncing")
        await self._resync(f"missing echo for '{message_id}'")

    async def _resync(self, reason: str) -> None:
        """Merge the newest page into the feed, keeping older pages."""
        if self._closed:
            return
        try:
            added = await self.history.merge_latest()
        except Exception as e:
            error = classify_error(e)
            logger.warning(f"[{self.context_id}] Resync after {reason} failed: {error}")
            self._set_error(f"Failed to load messages: {error}")
            return
        logger.debug(f"[{self.context_id}] Resync after {reason} added {added} messages")

    def _on_terminal_failure(self, temp_id: str, error: FeedSyncError) -> None:
        if not self._closed:
            self._set_error(f"Failed to send message: {error}")

    # --- Internals ---

    def _set_error(self, error: Optional[str]) -> None:
        if error == self._error:
            return
        self._error = error
        self._changed()

    def _changed(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception as e:
                logger.error(f"[{self.context_id}] Session listener failed: {e}", exc_info=True)
