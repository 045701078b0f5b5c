"""
Message Store & Reconciler

Holds the ordered feed for one chat session and merges the three input
streams into it: optimistic local sends, history pages and live events.
Records are deduplicated by id and the list is re-sorted by created_at after
every mutation, so arrival order never leaks into feed order.
"""

import logging
from typing import Callable, Dict, Iterable, List, Optional

from feedsync.models import DeliveryState, EventType, FeedEvent, Message

logger = logging.getLogger(__name__)

StoreListener = Callable[['MessageStore'], None]


class MessageStore:
    """
    Ordered, duplicate-free message feed.

    Mutations after close() are ignored, which keeps late network callbacks
    from touching a torn-down session.
    """

    def __init__(self, context_id: str):
        self.context_id = context_id
        self._messages: List[Message] = []
        # id -> Message, the dedup index
        self._by_id: Dict[str, Message] = {}
        self._listeners: List[StoreListener] = []
        self._closed = False

    # --- Queries ---

    @property
    def messages(self) -> List[Message]:
        return list(self._messages)

    def get(self, message_id: str) -> Optional[Message]:
        return self._by_id.get(message_id)

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._by_id

    def __len__(self) -> int:
        return len(self._messages)

    def count_confirmed(self) -> int:
        return sum(1 for m in self._messages if m.delivery_state is DeliveryState.CONFIRMED)

    @property
    def closed(self) -> bool:
        return self._closed

    # --- Mutations ---

    def insert_optimistic(self, message: Message) -> bool:
        """
        Append a locally-originated placeholder.

        The record is forced into the optimistic state. Its created_at is a
        local clock reading that may be skewed, so the feed is re-sorted
        instead of trusting the append position.
        """
        if self._reject_if_closed("insert_optimistic"):
            return False
        if message.id in self._by_id:
            logger.warning(f"[{self.context_id}] Optimistic message '{message.id}' already in store, ignoring")
            return False
        if message.delivery_state is not DeliveryState.OPTIMISTIC:
            message = message.with_state(DeliveryState.OPTIMISTIC, error=None,
                                         retry_attempt=message.retry_attempt or 0)
        self._add(message)
        self._commit()
        logger.debug(f"[{self.context_id}] Optimistic message '{message.id}' inserted. Total: {len(self._messages)}")
        return True

    def apply_remote_event(self, event: FeedEvent) -> bool:
        """
        Merge one live-stream event into the feed.

        Creates for an id that is already present are dropped (duplicate
        delivery or replay). Updates and deletes for an unknown id are
        dropped too, which tolerates out-of-order delivery.

        Returns:
            True if the feed changed
        """
        if self._reject_if_closed("apply_remote_event"):
            return False
        payload = event.payload
        if payload is None:
            logger.debug(f"[{self.context_id}] Ignoring {event.event_type.value} event without message payload")
            return False

        if event.event_type is EventType.CREATE:
            if payload.id in self._by_id:
                logger.debug(f"[{self.context_id}] Duplicate create for '{payload.id}', ignoring")
                return False
            self._add(self._as_confirmed(payload))
        elif event.event_type is EventType.UPDATE:
            if payload.id not in self._by_id:
                logger.debug(f"[{self.context_id}] Update for unknown message '{payload.id}', ignoring")
                return False
            self._replace(self._as_confirmed(payload))
        elif event.event_type is EventType.DELETE:
            if payload.id not in self._by_id:
                logger.debug(f"[{self.context_id}] Delete for unknown message '{payload.id}', ignoring")
                return False
            self._discard(payload.id)
        else:
            logger.debug(f"[{self.context_id}] Store does not handle {event.event_type.value} events")
            return False

        self._commit()
        return True

    def prepend_history(self, page: Iterable[Message]) -> int:
        """
        Merge an older page of history into the feed.

        Messages already present (for instance delivered live while the page
        was in flight) are skipped.

        Returns:
            Number of messages actually added
        """
        if self._reject_if_closed("prepend_history"):
            return 0
        added = 0
        for message in page:
            if message.id in self._by_id:
                continue
            self._add(self._as_confirmed(message))
            added += 1
        if added:
            self._commit()
        logger.debug(f"[{self.context_id}] Merged {added} history messages. Total: {len(self._messages)}")
        return added

    def replace_confirmed(self, page: Iterable[Message]) -> None:
        """
        Swap every confirmed record for a freshly loaded page.

        Optimistic and failed records are local state the server does not
        know about yet, so they survive a refresh.
        """
        if self._reject_if_closed("replace_confirmed"):
            return
        local = [m for m in self._messages if m.delivery_state is not DeliveryState.CONFIRMED]
        self._messages = []
        self._by_id = {}
        for message in local:
            self._add(message)
        for message in page:
            if message.id not in self._by_id:
                self._add(self._as_confirmed(message))
        self._commit()
        logger.info(f"[{self.context_id}] Feed replaced: {len(self._messages)} messages ({len(local)} local)")

    def remove_by_id(self, message_id: str) -> Optional[Message]:
        """Remove a record. Removing an absent id is a no-op returning None."""
        if self._reject_if_closed("remove_by_id"):
            return None
        removed = self._discard(message_id)
        if removed is not None:
            self._commit()
        return removed

    def mark_failed(self, message_id: str, error: str) -> bool:
        """Flag a local record as failed, keeping its content visible."""
        if self._reject_if_closed("mark_failed"):
            return False
        current = self._by_id.get(message_id)
        if current is None:
            logger.debug(f"[{self.context_id}] Cannot mark unknown message '{message_id}' as failed")
            return False
        if current.delivery_state is DeliveryState.CONFIRMED:
            logger.warning(f"[{self.context_id}] Refusing to mark confirmed message '{message_id}' as failed")
            return False
        self._replace(current.with_state(DeliveryState.FAILED, error=error,
                                         retry_attempt=current.retry_attempt or 0))
        self._commit()
        return True

    def clear(self) -> None:
        if self._reject_if_closed("clear"):
            return
        self._messages = []
        self._by_id = {}
        self._commit()

    def close(self) -> None:
        self._closed = True
        self._listeners.clear()

    # --- Listeners ---

    def add_listener(self, listener: StoreListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: StoreListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    # --- Internals ---

    def _reject_if_closed(self, operation: str) -> bool:
        if self._closed:
            logger.debug(f"[{self.context_id}] Store closed, ignoring {operation}")
        return self._closed

    @staticmethod
    def _as_confirmed(message: Message) -> Message:
        if message.delivery_state is DeliveryState.CONFIRMED and message.retry_attempt is None:
            return message
        return message.with_state(DeliveryState.CONFIRMED, retry_attempt=None, error=None)

    def _add(self, message: Message) -> None:
        self._messages.append(message)
        self._by_id[message.id] = message

    def _replace(self, message: Message) -> None:
        old = self._by_id[message.id]
        index = self._messages.index(old)
        self._messages[index] = message
        self._by_id[message.id] = message

    def _discard(self, message_id: str) -> Optional[Message]:
        old = self._by_id.pop(message_id, None)
        if old is not None:
            self._messages.remove(old)
        return old

    def _commit(self) -> None:
        # list.sort is stable: equal timestamps keep arrival order
        self._messages.sort(key=lambda m: m.created_at)
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception as e:
                logger.error(f"[{self.context_id}] Store listener failed: {e}", exc_info=True)
