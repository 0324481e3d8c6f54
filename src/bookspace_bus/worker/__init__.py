"""Worker handlers consuming bookspace events."""

from bookspace_bus.worker.handlers import (
    LoggingNotifier,
    Notification,
    NotificationHandlers,
    Notifier,
    SearchIndex,
    SearchIndexingHandlers,
    ThumbnailHandlers,
    ThumbnailService,
    build_notification_dispatcher,
    build_search_indexing_dispatcher,
    thumbnail_key_for,
)

__all__ = [
    "LoggingNotifier",
    "Notification",
    "NotificationHandlers",
    "Notifier",
    "SearchIndex",
    "SearchIndexingHandlers",
    "ThumbnailHandlers",
    "ThumbnailService",
    "build_notification_dispatcher",
    "build_search_indexing_dispatcher",
    "thumbnail_key_for",
]
