from __future__ import annotations


class FeedSyncError(RuntimeError):
    """Base class for errors raised by the sync engine."""


class FeedFetchError(FeedSyncError):
    pass


class FeedParseError(FeedSyncError):
    pass


class RecurrenceError(FeedSyncError, ValueError):
    pass


class EventNormalizationError(FeedSyncError, ValueError):
    pass


class SyncDeadlineExceeded(FeedSyncError):
    pass


class NotificationError(FeedSyncError):
    pass


class SyncAborted(FeedSyncError):
    """Raised once a request-triggered sync failed outside the per-calendar loop
    and the critical alert has been raised."""
