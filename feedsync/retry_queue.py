"""
Retry Queue

Keeps one entry per failed send and fires it through the backoff scheduler.
Firing removes the failed placeholder from the store and hands the original
content and the carried attempt count back to the send pipeline.
"""

import logging
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from feedsync.backoff import BackoffScheduler, CancelToken
from feedsync.models import RetryQueueItem
from feedsync.store import MessageStore

logger = logging.getLogger(__name__)

# (content, attempt) -> resend coroutine
Resender = Callable[[str, int], Awaitable[Optional[str]]]


class RetryQueue:
    """
    Pending automatic retries keyed by the failed message's id.

    dequeue() and the fire path are idempotent, so a scheduled retry racing
    with a manual one resolves to a single resend.
    """

    def __init__(self, store: MessageStore, scheduler: BackoffScheduler, resend: Resender):
        self.store = store
        self.scheduler = scheduler
        self._resend = resend
        self._entries: Dict[str, Tuple[RetryQueueItem, Optional[CancelToken]]] = {}

    @property
    def context_id(self) -> str:
        return self.store.context_id

    @property
    def items(self) -> List[RetryQueueItem]:
        return [item for item, _ in self._entries.values()]

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._entries

    def get(self, message_id: str) -> Optional[RetryQueueItem]:
        entry = self._entries.get(message_id)
        return entry[0] if entry else None

    def has_pending_timer(self, message_id: str) -> bool:
        entry = self._entries.get(message_id)
        return bool(entry and entry[1] and entry[1].pending)

    def enqueue(self, item: RetryQueueItem) -> Optional[CancelToken]:
        """
        Queue a failed send and schedule its automatic retry.

        item.attempt is the attempt the retry will run as; the delay is the
        backoff for the attempt that just failed (item.attempt - 1).
        """
        if item.attempt < 1:
            raise ValueError(f"Retry items start at attempt 1, got {item.attempt}")
        if self.scheduler.closed:
            logger.debug(f"[{self.context_id}] Scheduler closed, not queueing retry for '{item.message_id}'")
            return None
        # One entry per message id
        self.dequeue(item.message_id)

        token = self.scheduler.schedule(
            lambda: self._fire(item.message_id),
            attempt=item.attempt - 1,
            label=f"retry_{item.message_id}",
        )
        self._entries[item.message_id] = (item, token)
        logger.info(f"[{self.context_id}] Retry {item.attempt} for '{item.message_id}' scheduled in {token.delay:.2f}s")
        return token

    def dequeue(self, message_id: str) -> Optional[RetryQueueItem]:
        """Drop an entry and cancel its timer. Absent ids are a no-op."""
        entry = self._entries.pop(message_id, None)
        if entry is None:
            return None
        item, token = entry
        if token is not None:
            token.cancel()
        logger.debug(f"[{self.context_id}] Dequeued retry for '{message_id}'")
        return item

    async def retry_now(self, message_id: str) -> bool:
        """Fire a queued retry immediately, skipping the rest of its delay."""
        if message_id not in self._entries:
            return False
        _, token = self._entries[message_id]
        if token is not None:
            token.cancel()
        await self._fire(message_id)
        return True

    def clear(self) -> int:
        count = 0
        for message_id in list(self._entries.keys()):
            if self.dequeue(message_id) is not None:
                count += 1
        return count

    async def _fire(self, message_id: str) -> None:
        entry = self._entries.pop(message_id, None)
        if entry is None:
            logger.debug(f"[{self.context_id}] Retry for '{message_id}' already handled")
            return
        item, _ = entry
        if self.store.closed:
            return
        self.store.remove_by_id(message_id)
        logger.info(f"[{self.context_id}] Retrying '{message_id}' as attempt {item.attempt}")
        await self._resend(item.content, item.attempt)
