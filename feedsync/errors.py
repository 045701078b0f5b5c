"""
Error taxonomy for the feed core.

Transient errors (network, timeout) are retried by the retry queue; terminal
errors (permission, validation) surface immediately. SubscriptionError is
reserved for the live stream and drives the connection status monitor.
"""

import asyncio
from typing import Optional


class FeedSyncError(Exception):
    """Base class for every error raised by feedsync."""
    retryable = False

    def __init__(self, message: str, code: Optional[int] = None):
        super().__init__(message)
        self.code = code


class NetworkError(FeedSyncError):
    retryable = True


class RequestTimeoutError(FeedSyncError):
    retryable = True


class PermissionDeniedError(FeedSyncError):
    pass


class ValidationError(FeedSyncError):
    pass


class SubscriptionError(FeedSyncError):
    """The live subscription could not be established or was lost."""
    retryable = True


def classify_error(exc: BaseException) -> FeedSyncError:
    """
    Map an arbitrary exception raised by a collaborator onto the taxonomy.

    Unrecognised exceptions are treated as transient network failures so a
    message is never dropped without a retry.
    """
    if isinstance(exc, FeedSyncError):
        return exc
    message = str(exc) or exc.__class__.__name__
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return RequestTimeoutError(message)
    if isinstance(exc, PermissionError):
        return PermissionDeniedError(message)
    if isinstance(exc, (ConnectionError, OSError)):
        return NetworkError(message)
    if isinstance(exc, ValueError):
        return ValidationError(message)
    return NetworkError(message)


def error_from_code(code: int, message: str) -> FeedSyncError:
    """Map a server status code carried in an error payload onto the taxonomy."""
    if code in (400, 413, 422):
        return ValidationError(message, code=code)
    if code in (401, 403):
        return PermissionDeniedError(message, code=code)
    if code in (408, 504):
        return RequestTimeoutError(message, code=code)
    return NetworkError(message, code=code)
