"""
feedsync
Real-time, optimistic chat feed synchronization over a pluggable transport.
"""

from feedsync.config import FeedSettings, load_settings
from feedsync.errors import (
    FeedSyncError,
    NetworkError,
    PermissionDeniedError,
    RequestTimeoutError,
    SubscriptionError,
    ValidationError,
)
from feedsync.models import (
    ConnectionQuality,
    ConnectionStatus,
    DeliveryState,
    EventType,
    FeedEvent,
    HistoryPage,
    Message,
    MessageKind,
    RetryQueueItem,
)
from feedsync.session import ChatSession
from feedsync.transport import MessageTransport, SocketIOTransport, Subscription

__version__ = "0.1.0"
