"""
Transport interface consumed by the feed core.

The live subscription is exposed as an async stream of FeedEvents rather
than a callback registration, so the session has a single ingestion point
regardless of how the underlying transport delivers pushes.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Optional, Union

from feedsync.errors import FeedSyncError
from feedsync.models import FeedEvent, HistoryPage, Message

logger = logging.getLogger(__name__)

# Wakes a consumer blocked on an empty queue when the stream is closed
_END_OF_STREAM = object()


class Subscription:
    """
    Live stream for one context, consumed with `async for`.

    Iteration ends after close(); a transport failure is raised from the
    iteration as a FeedSyncError (normally SubscriptionError). Events are
    yielded in delivery order.
    """

    def __init__(self,
                 context_id: str,
                 on_close: Optional[Callable[['Subscription'], Awaitable[None]]] = None):
        self.context_id = context_id
        self._queue: asyncio.Queue = asyncio.Queue()
        self._on_close = on_close
        self.closed = False

    def push(self, event: FeedEvent) -> None:
        if not self.closed:
            self._queue.put_nowait(event)

    def fail(self, error: FeedSyncError) -> None:
        """Terminate the stream with an error for the consumer."""
        if not self.closed:
            self._queue.put_nowait(error)

    def __aiter__(self) -> 'Subscription':
        return self

    async def __anext__(self) -> FeedEvent:
        if self.closed:
            raise StopAsyncIteration
        item: Union[FeedEvent, FeedSyncError, object] = await self._queue.get()
        if item is _END_OF_STREAM or self.closed:
            raise StopAsyncIteration
        if isinstance(item, FeedSyncError):
            raise item
        return item

    async def close(self) -> None:
        """Unsubscribe. Idempotent."""
        if self.closed:
            return
        self.closed = True
        self._queue.put_nowait(_END_OF_STREAM)
        if self._on_close is not None:
            try:
                await self._on_close(self)
            except Exception as e:
                logger.warning(f"[{self.context_id}] Error while unsubscribing: {e}")


class MessageTransport(ABC):
    """
    Remote operations for one chat backend.

    Implementations raise the feedsync.errors taxonomy (NetworkError,
    RequestTimeoutError, PermissionDeniedError, ValidationError); subscribe()
    raises SubscriptionError when the live stream can't be opened.
    """

    @abstractmethod
    async def fetch_messages(self, context_id: str, page_size: int, offset: int) -> HistoryPage:
        """
        Fetch one page of history.

        Args:
            context_id: Chat context (team/conversation) identifier
            page_size: Maximum number of messages to return
            offset: Number of newest messages to skip

        Returns:
            The page, oldest message first, with the total message count
        """

    @abstractmethod
    async def send_message(self, context_id: str, author_id: str, content: str) -> Optional[Message]:
        """
        Create a message and return its canonical record.

        Returns None when the server accepted the message but its record
        could not be read; the live event or a resync supplies it.
        """

    @abstractmethod
    async def subscribe(self, context_id: str) -> Subscription:
        """Open the live stream for a context. Closing the subscription unsubscribes."""

    @abstractmethod
    async def send_typing_signal(self, context_id: str, participant_id: str) -> None:
        """Best-effort notification that participant_id started typing."""

    @abstractmethod
    async def stop_typing_signal(self, context_id: str, participant_id: str) -> None:
        """Best-effort notification that participant_id stopped typing."""

    async def ping(self) -> None:
        """
        Liveness probe used for round-trip measurement.

        The default does nothing, which always reports the transport as
        reachable; transports with a real connection should override it.
        """
