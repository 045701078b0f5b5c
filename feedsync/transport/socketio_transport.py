"""
Socket.IO transport

Talks to a chat backend over python-socketio's AsyncClient. Requests use
acknowledged calls (`client.call`); pushes arrive as `message_event` and
`typing_event` and are fanned out to the per-context Subscriptions.

Server contract:
- `fetch_messages` {context_id, page_size, offset} -> {messages: [...], total}
- `send_message` {context_id, author_id, content} -> {message: {...}}
- `subscribe_messages` / `unsubscribe_messages` {context_id} -> {ok: true}
- `typing_start` / `typing_stop` {context_id, participant_id} (no ack)
- `ping` {timestamp} -> {ok: true}
- pushes: `message_event` {context_id, event_type, payload},
  `typing_event` {context_id, participant_id, is_typing}
- any ack may instead carry {error: {code, message}}
"""

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional

import socketio  # Using python-socketio

from feedsync.errors import (
    FeedSyncError,
    NetworkError,
    RequestTimeoutError,
    SubscriptionError,
    error_from_code,
)
from feedsync.models import EventType, FeedEvent, HistoryPage, Message
from feedsync.transport.base import MessageTransport, Subscription

logger = logging.getLogger(__name__)

SOCKET_RECONNECTION_ATTEMPTS = 3
SOCKET_RECONNECTION_DELAY = 5
CONNECT_WAIT_TIMEOUT = 10


class SocketIOTransport(MessageTransport):
    """MessageTransport backed by a single socket.io connection."""

    def __init__(self,
                 url: str,
                 auth_token: Optional[str] = None,
                 request_timeout: float = 10.0,
                 client: Optional[socketio.AsyncClient] = None):
        self.url = url
        self.auth_token = auth_token
        self.request_timeout = request_timeout
        self.connected = False
        self._client = client or socketio.AsyncClient(
            logger=False,
            reconnection=True,
            reconnection_attempts=SOCKET_RECONNECTION_ATTEMPTS,
            reconnection_delay=SOCKET_RECONNECTION_DELAY,
        )
        # context_id -> active subscriptions
        self._subscribers: Dict[str, List[Subscription]] = {}
        self._register_event_handlers()

    # --- Connection management ---

    async def connect(self) -> None:
        """
        Raises:
            NetworkError: If the server can't be reached
        """
        if self.connected:
            logger.info(f"Already connected to {self.url}. Skipping.")
            return
        auth = {"token": self.auth_token} if self.auth_token else None
        try:
            await self._client.connect(self.url, auth=auth, namespaces=["/"], wait_timeout=CONNECT_WAIT_TIMEOUT)
        except socketio.exceptions.ConnectionError as e:
            raise NetworkError(f"Failed to connect to {self.url}: {e}") from e
        self.connected = True
        logger.info(f"Connected to chat server at {self.url}")

    async def disconnect(self) -> None:
        if not self.connected:
            return
        try:
            await self._client.disconnect()
        finally:
            self._mark_lost("transport disconnected")
        logger.info(f"Disconnected from chat server at {self.url}")

    def _register_event_handlers(self) -> None:
        client = self._client

        @client.event
        async def connect(*args):
            self.connected = True
            logger.info(f"Socket connected to {self.url}")

        @client.event
        async def disconnect(*args):
            logger.warning(f"Socket disconnected from {self.url}")
            self._mark_lost("connection lost")

        @client.event
        async def connect_error(data):
            logger.error(f"Connection error with {self.url}: {data}")
            self._mark_lost(f"connection error: {data}")

        @client.on("message_event")
        async def on_message_event(raw_payload: Dict[str, Any]):
            self._dispatch_push(raw_payload, self._parse_message_event)

        @client.on("typing_event")
        async def on_typing_event(raw_payload: Dict[str, Any]):
            self._dispatch_push(raw_payload, self._parse_typing_event)

    def _mark_lost(self, reason: str) -> None:
        self.connected = False
        for subscriptions in self._subscribers.values():
            for subscription in subscriptions:
                subscription.fail(SubscriptionError(f"Live stream lost: {reason}"))

    # --- Push handling ---

    def _dispatch_push(self, raw_payload: Any, parser) -> None:
        if not isinstance(raw_payload, dict):
            logger.warning(f"Received non-dict push: {raw_payload!r}")
            return
        context_id = raw_payload.get("context_id")
        subscriptions = self._subscribers.get(context_id)
        if not subscriptions:
            logger.debug(f"Push for unsubscribed context '{context_id}', ignoring")
            return
        try:
            event = parser(raw_payload)
        except (ValueError, TypeError) as e:
            logger.warning(f"Dropping malformed push for context '{context_id}': {e}")
            return
        for subscription in list(subscriptions):
            subscription.push(event)

    @staticmethod
    def _parse_message_event(raw_payload: Dict[str, Any]) -> FeedEvent:
        return FeedEvent.from_dict(raw_payload)

    @staticmethod
    def _parse_typing_event(raw_payload: Dict[str, Any]) -> FeedEvent:
        event_type = EventType.TYPING_START if raw_payload.get("is_typing", True) else EventType.TYPING_STOP
        return FeedEvent.from_dict({
            "event_type": event_type.value,
            "participant_id": raw_payload.get("participant_id"),
        })

    # --- Requests ---

    async def _call(self, event: str, data: Dict[str, Any]) -> Any:
        if not self.connected:
            raise NetworkError(f"Cannot send '{event}': not connected to {self.url}")
        try:
            response = await self._client.call(event, data, timeout=self.request_timeout)
        except socketio.exceptions.TimeoutError as e:
            raise RequestTimeoutError(f"'{event}' timed out after {self.request_timeout}s") from e
        except socketio.exceptions.SocketIOError as e:
            raise NetworkError(f"'{event}' failed: {e}") from e

        if isinstance(response, dict) and response.get("error"):
            error = response["error"]
            if isinstance(error, dict):
                raise error_from_code(int(error.get("code", 500)), error.get("message", f"'{event}' failed"))
            raise NetworkError(str(error))
        return response

    async def fetch_messages(self, context_id: str, page_size: int, offset: int) -> HistoryPage:
        response = await self._call("fetch_messages", {
            "context_id": context_id,
            "page_size": page_size,
            "offset": offset,
        })
        if not isinstance(response, dict):
            raise NetworkError(f"Unexpected fetch_messages response: {response!r}")
        messages = []
        for raw in response.get("messages", []):
            try:
                messages.append(Message.from_dict(raw))
            except (ValueError, TypeError) as e:
                logger.warning(f"Skipping malformed history message in '{context_id}': {e}")
        messages.sort(key=lambda m: m.created_at)
        return HistoryPage(messages=messages, total=int(response.get("total", len(messages))))

    async def send_message(self, context_id: str, author_id: str, content: str) -> Optional[Message]:
        response = await self._call("send_message", {
            "context_id": context_id,
            "author_id": author_id,
            "content": content,
        })
        # A non-error ack means the server stored the message; resending
        # because the ack is unreadable would duplicate it
        if not isinstance(response, dict) or not isinstance(response.get("message"), dict):
            logger.warning(f"Unexpected send_message ack in '{context_id}': {response!r}")
            return None
        try:
            return Message.from_dict(response["message"])
        except (ValueError, TypeError) as e:
            logger.warning(f"Unreadable message in send_message ack for '{context_id}': {e}")
            return None

    async def subscribe(self, context_id: str) -> Subscription:
        """
        Raises:
            SubscriptionError: If not connected or the server refuses the subscription
        """
        if not self.connected:
            raise SubscriptionError(f"Cannot subscribe to '{context_id}': not connected")
        subscription = Subscription(context_id, on_close=self._unsubscribe)
        # Register before the call so pushes racing the ack aren't lost
        self._subscribers.setdefault(context_id, []).append(subscription)
        try:
            await self._call("subscribe_messages", {"context_id": context_id})
        except FeedSyncError as e:
            self._detach(subscription)
            raise SubscriptionError(f"Subscription to '{context_id}' refused: {e}") from e
        except asyncio.CancelledError:
            self._detach(subscription)
            raise
        logger.info(f"Subscribed to live events for '{context_id}'")
        return subscription

    def _detach(self, subscription: Subscription) -> bool:
        """Remove a subscription; True when it was the last one for its context."""
        subscriptions = self._subscribers.get(subscription.context_id, [])
        if subscription in subscriptions:
            subscriptions.remove(subscription)
        if subscriptions:
            return False
        self._subscribers.pop(subscription.context_id, None)
        return True

    async def _unsubscribe(self, subscription: Subscription) -> None:
        if not self._detach(subscription) or not self.connected:
            return
        try:
            await self._client.emit("unsubscribe_messages", {"context_id": subscription.context_id})
        except socketio.exceptions.SocketIOError as e:
            logger.debug(f"Unsubscribe from '{subscription.context_id}' failed: {e}")

    async def send_typing_signal(self, context_id: str, participant_id: str) -> None:
        await self._emit("typing_start", {"context_id": context_id, "participant_id": participant_id})

    async def stop_typing_signal(self, context_id: str, participant_id: str) -> None:
        await self._emit("typing_stop", {"context_id": context_id, "participant_id": participant_id})

    async def _emit(self, event: str, data: Dict[str, Any]) -> None:
        if not self.connected:
            raise NetworkError(f"Cannot send '{event}': not connected to {self.url}")
        try:
            await self._client.emit(event, data)
        except socketio.exceptions.SocketIOError as e:
            raise NetworkError(f"'{event}' failed: {e}") from e

    async def ping(self) -> None:
        await self._call("ping", {"timestamp": time.time()})
