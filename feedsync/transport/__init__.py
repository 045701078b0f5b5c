"""
Transports
Remote operations the feed core depends on.
"""

from feedsync.transport.base import MessageTransport, Subscription
from feedsync.transport.socketio_transport import SocketIOTransport
