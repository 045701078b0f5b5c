"""
Feed Data Model

Records that flow through the reconciliation core: messages, live-stream
events, history pages, retry queue items and connection enums.
"""

import json
import logging
import time
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Any, List, Optional

logger = logging.getLogger(__name__)

# Prefix that keeps locally generated ids out of the server's id namespace
TEMP_ID_PREFIX = "temp-"


class DeliveryState(Enum):
    """Where a message is in its send lifecycle."""
    OPTIMISTIC = "optimistic"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class MessageKind(Enum):
    USER = "user"
    SYSTEM = "system"


# System message subtypes known to the feed. Anything else arriving with a
# non-user type is still accepted as a system message.
SYSTEM_MESSAGE_TYPES = frozenset([
    "system",
    "task_created",
    "task_status_changed",
    "task_completed",
    "vault_secret_added",
    "vault_secret_updated",
    "vault_secret_deleted",
    "file_uploaded",
    "file_annotated",
    "poll_created",
    "poll_voted",
    "poll_ended",
    "poll_converted_to_task",
    "celebration",
    "bot_message",
    "bot_tip",
    "bot_easter_egg",
    "bot_contextual",
    "bot_help",
    "bot_reminder_scheduled",
])


class EventType(Enum):
    """Event types delivered by the live stream."""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    TYPING_START = "typing_start"
    TYPING_STOP = "typing_stop"


class ConnectionStatus(Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    RECONNECTING = "reconnecting"


class ConnectionQuality(Enum):
    """Qualitative round-trip measurement of the transport."""
    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"
    OFFLINE = "offline"
    UNKNOWN = "unknown"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def generate_temp_id() -> str:
    """Return a fresh id in the optimistic namespace."""
    return f"{TEMP_ID_PREFIX}{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"


def is_temp_id(message_id: str) -> bool:
    return message_id.startswith(TEMP_ID_PREFIX)


def parse_timestamp(value: Any) -> datetime:
    """
    Coerce a wire timestamp into an aware UTC datetime.

    Accepts datetimes, ISO 8601 strings (with a trailing 'Z' or an offset)
    and epoch numbers in seconds or milliseconds.

    Raises:
        ValueError: If the value cannot be interpreted as a timestamp
    """
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        # Anything past year ~33658 in seconds is really milliseconds
        seconds = value / 1000 if value > 1e12 else value
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    if isinstance(value, str) and value:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    raise ValueError(f"Unsupported timestamp value: {value!r}")


def _parse_system_data(raw: Any, message_id: str) -> Optional[Dict[str, Any]]:
    if raw is None or isinstance(raw, dict):
        return raw
    if isinstance(raw, str):
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"Failed to parse system_data for message '{message_id}'")
            return None
        if isinstance(parsed, dict):
            return parsed
    logger.warning(f"Ignoring non-object system_data for message '{message_id}': {raw!r}")
    return None


@dataclass
class Message:
    """
    One record of the feed.

    Optimistic records carry a temporary id (see TEMP_ID_PREFIX) and a local
    clock reading in created_at until the canonical record replaces them.
    retry_attempt is only meaningful while delivery_state is not CONFIRMED.
    """
    id: str
    content: str
    created_at: datetime
    kind: MessageKind = MessageKind.USER
    author_id: Optional[str] = None
    delivery_state: DeliveryState = DeliveryState.CONFIRMED
    retry_attempt: Optional[int] = None
    system_type: Optional[str] = None
    system_data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    @property
    def is_optimistic(self) -> bool:
        return self.delivery_state is DeliveryState.OPTIMISTIC

    @property
    def is_failed(self) -> bool:
        return self.delivery_state is DeliveryState.FAILED

    @classmethod
    def optimistic(cls, content: str, author_id: Optional[str], attempt: int = 0) -> 'Message':
        """Build a locally-originated placeholder for a message being sent."""
        return cls(
            id=generate_temp_id(),
            content=content,
            created_at=utc_now(),
            kind=MessageKind.USER,
            author_id=author_id,
            delivery_state=DeliveryState.OPTIMISTIC,
            retry_attempt=attempt,
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Message':
        """
        Build a canonical message from a wire payload.

        Recognised keys: id, content, type (user or a system subtype), kind,
        author_id, created_at, system_data.

        Raises:
            ValueError: If the payload has no id or no usable created_at
        """
        message_id = data.get("id")
        if not message_id:
            raise ValueError(f"Message payload missing 'id': {data}")

        raw_type = data.get("type") or data.get("kind") or MessageKind.USER.value
        system_type = None
        if raw_type == MessageKind.USER.value:
            kind = MessageKind.USER
        else:
            kind = MessageKind.SYSTEM
            system_type = data.get("system_type") or raw_type
            if system_type not in SYSTEM_MESSAGE_TYPES:
                logger.warning(f"Unknown message type '{system_type}' for message '{message_id}', treating as system")

        author_id = data.get("author_id")
        if kind is MessageKind.SYSTEM and author_id == "system":
            author_id = None

        return cls(
            id=str(message_id),
            content=data.get("content") or "",
            created_at=parse_timestamp(data.get("created_at")),
            kind=kind,
            author_id=author_id,
            delivery_state=DeliveryState.CONFIRMED,
            system_type=system_type,
            system_data=_parse_system_data(data.get("system_data"), str(message_id)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "content": self.content,
            "type": self.system_type if self.kind is MessageKind.SYSTEM else MessageKind.USER.value,
            "author_id": self.author_id,
            "created_at": self.created_at.isoformat(),
            "delivery_state": self.delivery_state.value,
            "retry_attempt": self.retry_attempt,
            "system_data": self.system_data,
            "error": self.error,
        }

    def with_state(self, state: DeliveryState, **changes: Any) -> 'Message':
        return replace(self, delivery_state=state, **changes)


@dataclass
class FeedEvent:
    """
    One item of the live stream.

    Message events (create/update/delete) carry a payload; typing events
    carry the participant id instead.
    """
    event_type: EventType
    payload: Optional[Message] = None
    participant_id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'FeedEvent':
        """
        Raises:
            ValueError: On an unknown event type or a malformed payload
        """
        event_type = EventType(data.get("event_type"))
        if event_type in (EventType.TYPING_START, EventType.TYPING_STOP):
            participant_id = data.get("participant_id")
            if not participant_id:
                raise ValueError(f"Typing event missing 'participant_id': {data}")
            return cls(event_type=event_type, participant_id=participant_id)
        payload = data.get("payload")
        if not isinstance(payload, dict):
            raise ValueError(f"Message event missing 'payload': {data}")
        return cls(event_type=event_type, payload=Message.from_dict(payload))


@dataclass
class HistoryPage:
    """One page of the message log, oldest first."""
    messages: List[Message]
    total: int


@dataclass
class RetryQueueItem:
    message_id: str
    content: str
    attempt: int
    enqueued_at: float = field(default_factory=time.time)
