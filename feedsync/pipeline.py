"""
Optimistic Send Pipeline

Orchestrates one send: insert an optimistic placeholder, call the remote
send, then either drop the placeholder (the canonical record arrives via the
live stream) or mark it failed and hand it to the retry queue.

Failures never propagate to the caller; they surface as store state.
"""

import asyncio
import logging
from typing import Callable, Optional

from feedsync.errors import FeedSyncError, ValidationError, classify_error
from feedsync.models import Message, RetryQueueItem
from feedsync.observability import get_tracer
from feedsync.retry_queue import RetryQueue
from feedsync.store import MessageStore
from feedsync.transport.base import MessageTransport

logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_MAX_CONTENT_LENGTH = 2000

# (temp_id, canonical message) after a successful send; the message is None
# when the server accepted the send but its record could not be read
ConfirmedCallback = Callable[[str, Optional[Message]], None]
# (temp_id, error) once a send will not be retried automatically
TerminalFailureCallback = Callable[[str, FeedSyncError], None]


class OptimisticSendPipeline:

    def __init__(self,
                 context_id: str,
                 author_id: str,
                 transport: MessageTransport,
                 store: MessageStore,
                 retry_queue: RetryQueue,
                 max_attempts: int = DEFAULT_MAX_ATTEMPTS,
                 max_content_length: int = DEFAULT_MAX_CONTENT_LENGTH,
                 on_confirmed: Optional[ConfirmedCallback] = None,
                 on_terminal_failure: Optional[TerminalFailureCallback] = None):
        self.context_id = context_id
        self.author_id = author_id
        self.transport = transport
        self.store = store
        self.retry_queue = retry_queue
        self.max_attempts = max_attempts
        self.max_content_length = max_content_length
        self._on_confirmed = on_confirmed
        self._on_terminal_failure = on_terminal_failure
        self._in_flight = 0

    @property
    def in_flight(self) -> int:
        """Number of remote send calls currently awaiting a response."""
        return self._in_flight

    def validate_content(self, content: Optional[str]) -> Optional[str]:
        """
        Normalise user input before it becomes a message.

        Returns:
            The trimmed content, or None if there is nothing to send

        Raises:
            ValidationError: If the content exceeds max_content_length
        """
        if content is None:
            return None
        trimmed = content.strip()
        if not trimmed:
            return None
        if len(trimmed) > self.max_content_length:
            raise ValidationError(
                f"Message is too long ({len(trimmed)} characters, maximum {self.max_content_length})"
            )
        return trimmed

    async def send(self, content: str, attempt: int = 0) -> Optional[str]:
        """
        Run one send attempt for already-validated content.

        Args:
            content: Message text
            attempt: Zero-based attempt counter carried across automatic retries

        Returns:
            The temporary id of the optimistic record, or None if the store
            refused it (closed session)
        """
        placeholder = Message.optimistic(content, self.author_id, attempt=attempt)
        if not self.store.insert_optimistic(placeholder):
            return None

        with tracer.start_as_current_span("pipeline.send", attributes={
            "feed.context_id": self.context_id,
            "send.attempt": attempt,
        }) as span:
            self._in_flight += 1
            try:
                canonical = await self.transport.send_message(self.context_id, self.author_id, content)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                error = classify_error(e)
                span.set_attribute("send.error", error.__class__.__name__)
                self._handle_failure(placeholder, attempt, error)
                return placeholder.id
            finally:
                self._in_flight -= 1

            # Removal by temp id, never by content match: the live echo may
            # already have landed and identical texts are legal
            self.store.remove_by_id(placeholder.id)
            if canonical is None:
                logger.warning(f"[{self.context_id}] Message '{placeholder.id}' accepted without a readable record "
                               f"(attempt {attempt}), waiting for the live event")
            else:
                span.set_attribute("send.canonical_id", canonical.id)
                logger.info(f"[{self.context_id}] Message '{placeholder.id}' sent as '{canonical.id}' (attempt {attempt})")

        if self._on_confirmed:
            self._on_confirmed(placeholder.id, canonical)
        return placeholder.id

    def _handle_failure(self, placeholder: Message, attempt: int, error: FeedSyncError) -> None:
        self.store.mark_failed(placeholder.id, str(error))

        if not error.retryable:
            logger.warning(f"[{self.context_id}] Send of '{placeholder.id}' rejected: "
                           f"{error.__class__.__name__}: {error}. Not retrying.")
            self._terminal(placeholder.id, error)
        elif attempt < self.max_attempts:
            logger.warning(f"[{self.context_id}] Send of '{placeholder.id}' failed on attempt {attempt}: {error}")
            self.retry_queue.enqueue(RetryQueueItem(
                message_id=placeholder.id,
                content=placeholder.content,
                attempt=attempt + 1,
            ))
        else:
            logger.error(f"[{self.context_id}] Send of '{placeholder.id}' failed after {attempt} retries: {error}")
            self._terminal(placeholder.id, error)

    def _terminal(self, message_id: str, error: FeedSyncError) -> None:
        if self._on_terminal_failure:
            self._on_terminal_failure(message_id, error)

    async def retry_failed(self, message_id: str) -> Optional[str]:
        """
        User-initiated retry of a failed record.

        Resets the attempt counter to 0, so the full backoff budget is
        available again.

        Returns:
            The new temporary id, or None if message_id is not a failed record
        """
        message = self.store.get(message_id)
        if message is None or not message.is_failed:
            logger.debug(f"[{self.context_id}] No failed message '{message_id}' to retry")
            return None
        self.retry_queue.dequeue(message_id)
        self.store.remove_by_id(message_id)
        logger.info(f"[{self.context_id}] Manual retry of '{message_id}'")
        return await self.send(message.content, attempt=0)

    def dismiss(self, message_id: str) -> bool:
        """Drop a failed record and any queued retry for it."""
        message = self.store.get(message_id)
        if message is None or not message.is_failed:
            return False
        self.retry_queue.dequeue(message_id)
        self.store.remove_by_id(message_id)
        logger.info(f"[{self.context_id}] Dismissed failed message '{message_id}'")
        return True
