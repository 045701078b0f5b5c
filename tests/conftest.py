"""
Shared fixtures: an in-memory transport and message factories.
"""

import asyncio
import itertools
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest

from feedsync.backoff import BackoffScheduler
from feedsync.config import FeedSettings
from feedsync.models import EventType, FeedEvent, HistoryPage, Message
from feedsync.store import MessageStore
from feedsync.transport.base import MessageTransport, Subscription

BASE_TIME = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


def make_message(message_id: str, content: str = "", seconds: float = 0, author_id: str = "bob") -> Message:
    return Message(
        id=message_id,
        content=content or f"message {message_id}",
        created_at=BASE_TIME + timedelta(seconds=seconds),
        author_id=author_id,
    )


def create_event(message: Message) -> FeedEvent:
    return FeedEvent(EventType.CREATE, payload=message)


async def settle(rounds: int = 5) -> None:
    """Let already-scheduled callbacks and tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


async def wait_for(predicate, timeout: float = 2.0, interval: float = 0.005) -> None:
    """Poll until predicate() is true or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            pytest.fail("Condition not met before timeout")
        await asyncio.sleep(interval)


class FakeTransport(MessageTransport):
    """
    In-memory backend.

    Queue exceptions in send_errors / subscribe_errors to make the next calls
    fail; set auto_echo to False to suppress the live create that normally
    follows a successful send, and unreadable_ack to store the message but
    return no record.
    """

    def __init__(self, history: Optional[List[Message]] = None):
        self.history: List[Message] = sorted(history or [], key=lambda m: m.created_at)
        self.send_errors: List[Exception] = []
        self.always_fail_with: Optional[Exception] = None
        self.subscribe_errors: List[Exception] = []
        self.fetch_error: Optional[Exception] = None
        self.ping_error: Optional[Exception] = None
        self.auto_echo = True
        self.unreadable_ack = False
        self.send_gate: Optional[asyncio.Event] = None

        self.fetch_calls: List[tuple] = []
        self.send_calls: List[str] = []
        self.subscribe_calls = 0
        self.typing_calls: List[tuple] = []
        self.subscriptions: List[Subscription] = []
        self._ids = itertools.count(1)

    async def fetch_messages(self, context_id: str, page_size: int, offset: int) -> HistoryPage:
        self.fetch_calls.append((context_id, page_size, offset))
        if self.fetch_error is not None:
            raise self.fetch_error
        total = len(self.history)
        end = max(total - offset, 0)
        start = max(end - page_size, 0)
        return HistoryPage(messages=list(self.history[start:end]), total=total)

    async def send_message(self, context_id: str, author_id: str, content: str) -> Optional[Message]:
        self.send_calls.append(content)
        if self.send_gate is not None:
            await self.send_gate.wait()
        if self.always_fail_with is not None:
            raise self.always_fail_with
        if self.send_errors:
            raise self.send_errors.pop(0)
        message = Message(
            id=f"srv-{next(self._ids)}",
            content=content,
            created_at=datetime.now(timezone.utc),
            author_id=author_id,
        )
        self.history.append(message)
        if self.auto_echo:
            self.push(create_event(message))
        return None if self.unreadable_ack else message

    async def subscribe(self, context_id: str) -> Subscription:
        self.subscribe_calls += 1
        if self.subscribe_errors:
            raise self.subscribe_errors.pop(0)
        subscription = Subscription(context_id, on_close=self._unsubscribe)
        self.subscriptions.append(subscription)
        return subscription

    async def _unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self.subscriptions:
            self.subscriptions.remove(subscription)

    async def send_typing_signal(self, context_id: str, participant_id: str) -> None:
        self.typing_calls.append(("start", participant_id))

    async def stop_typing_signal(self, context_id: str, participant_id: str) -> None:
        self.typing_calls.append(("stop", participant_id))

    async def ping(self) -> None:
        if self.ping_error is not None:
            raise self.ping_error

    # --- Test controls ---

    def push(self, event: FeedEvent) -> None:
        for subscription in list(self.subscriptions):
            subscription.push(event)

    def drop(self, error: Exception) -> None:
        for subscription in list(self.subscriptions):
            subscription.fail(error)


@pytest.fixture
def fake_transport():
    return FakeTransport()


@pytest.fixture
def store():
    return MessageStore("team-1")


@pytest.fixture
def scheduler():
    return BackoffScheduler(base_delay=0.01, max_delay=0.1, name="test")


@pytest.fixture
def fast_settings():
    return FeedSettings(
        retry_base_delay=0.01,
        retry_max_delay=0.1,
        echo_timeout=0.05,
        typing_timeout=0.05,
        reconnect_base_delay=0.01,
        max_reconnect_attempts=2,
        liveness_interval=0,
        request_timeout=0.5,
        tracing_enabled=False,
    )
