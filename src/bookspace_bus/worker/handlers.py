"""
Worker-side handlers for the bookspace events.

External systems (mail delivery, the search cluster, object storage and the
image resizer) are reached through small protocols so the handlers can run
against any implementation. Every handler is idempotent by natural key:

- notifications are keyed by the entity they announce
- search documents are upserted and deleted by document id
- thumbnails are written to a key derived from the source key

Example:
    >>> dispatcher = build_notification_dispatcher(LoggingNotifier())
    >>> await bus.subscribe("notifications", dispatcher.dispatch)
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from bookspace_bus.dispatcher import EventDispatcher
from bookspace_bus.events.base import EventType
from bookspace_bus.events.types import (
    CommentAdded,
    DocumentCreated,
    DocumentDeleted,
    DocumentUpdated,
    FileUploaded,
    UserRegistered,
)

logger = logging.getLogger(__name__)

THUMBNAIL_WIDTH = 300
THUMBNAIL_HEIGHT = 300


# =============================================================================
# Notifications
# =============================================================================


@dataclass(frozen=True)
class Notification:
    """
    A message for a user.

    Attributes:
        key: Natural idempotency key (e.g. "document_created:d1").
        kind: Notification kind ("document_created", "comment_added", "welcome_email").
        recipient: User id, e-mail address or "document:<id>" for the
            followers of a document.
        message: Human-readable text.
        metadata: Extra fields for the delivery channel.
    """

    key: str
    kind: str
    recipient: str
    message: str
    metadata: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class Notifier(Protocol):
    """Delivers notifications. ``send`` must tolerate the same key twice."""

    async def send(self, notification: Notification) -> None: ...


class LoggingNotifier:
    """Notifier that logs each notification once per key."""

    def __init__(self) -> None:
        self.sent: dict[str, Notification] = {}

    async def send(self, notification: Notification) -> None:
        if notification.key in self.sent:
            logger.debug(
                f"Notification {notification.key} already sent",
                extra={"notification_key": notification.key},
            )
            return
        self.sent[notification.key] = notification
        logger.info(
            f"Notification: {notification.message}",
            extra={
                "notification_key": notification.key,
                "kind": notification.kind,
                "recipient": notification.recipient,
            },
        )


class NotificationHandlers:
    """Document, comment and welcome-e-mail notifications."""

    def __init__(self, notifier: Notifier) -> None:
        self._notifier = notifier

    async def on_document_created(self, event: DocumentCreated) -> None:
        data = event.data
        await self._notifier.send(
            Notification(
                key=f"document_created:{data.document_id}",
                kind="document_created",
                recipient=data.created_by,
                message=f'Your document "{data.title}" has been created',
                metadata={"documentId": data.document_id},
            )
        )

    async def on_comment_added(self, event: CommentAdded) -> None:
        data = event.data
        await self._notifier.send(
            Notification(
                key=f"comment_added:{data.comment_id}",
                kind="comment_added",
                recipient=f"document:{data.document_id}",
                message=f"{data.user_id} commented on document {data.document_id}",
                metadata={
                    "commentId": data.comment_id,
                    "documentId": data.document_id,
                    "parentId": data.parent_id,
                },
            )
        )

    async def on_user_registered(self, event: UserRegistered) -> None:
        data = event.data
        await self._notifier.send(
            Notification(
                key=f"welcome_email:{data.user_id}",
                kind="welcome_email",
                recipient=data.email,
                message=f"Welcome to BookSpace, {data.name}!",
                metadata={"userId": data.user_id},
            )
        )

    def register(self, dispatcher: EventDispatcher) -> None:
        dispatcher.register(EventType.DOCUMENT_CREATED, self.on_document_created)
        dispatcher.register(EventType.COMMENT_ADDED, self.on_comment_added)
        dispatcher.register(EventType.USER_REGISTERED, self.on_user_registered)


# =============================================================================
# Search indexing
# =============================================================================


@runtime_checkable
class SearchIndex(Protocol):
    """Full-text index of documents."""

    async def upsert(self, document_id: str, fields: dict[str, Any]) -> None:
        """Create the document or merge ``fields`` into it."""
        ...

    async def delete(self, document_id: str) -> None:
        """Remove the document; a missing document is not an error."""
        ...


class SearchIndexingHandlers:
    """Keeps the search index in step with document events."""

    def __init__(self, index: SearchIndex) -> None:
        self._index = index

    async def on_document_created(self, event: DocumentCreated) -> None:
        data = event.data
        await self._index.upsert(
            data.document_id,
            {
                "documentId": data.document_id,
                "title": data.title,
                "tags": list(data.tags),
                "createdBy": data.created_by,
            },
        )
        logger.info(
            f"Indexed document {data.document_id}",
            extra={"document_id": data.document_id},
        )

    async def on_document_updated(self, event: DocumentUpdated) -> None:
        data = event.data
        await self._index.upsert(
            data.document_id,
            {
                "documentId": data.document_id,
                "title": data.title,
                "updatedBy": data.updated_by,
                "version": data.version,
            },
        )
        logger.info(
            f"Reindexed document {data.document_id} (version {data.version})",
            extra={"document_id": data.document_id, "version": data.version},
        )

    async def on_document_deleted(self, event: DocumentDeleted) -> None:
        await self._index.delete(event.data.document_id)
        logger.info(
            f"Removed document {event.data.document_id} from the index",
            extra={"document_id": event.data.document_id},
        )

    def register(self, dispatcher: EventDispatcher) -> None:
        dispatcher.register(EventType.DOCUMENT_CREATED, self.on_document_created)
        dispatcher.register(EventType.DOCUMENT_UPDATED, self.on_document_updated)
        dispatcher.register(EventType.DOCUMENT_DELETED, self.on_document_deleted)


# =============================================================================
# Thumbnails
# =============================================================================


@runtime_checkable
class ThumbnailService(Protocol):
    """Reads an image from object storage and writes a resized JPEG copy."""

    async def create_thumbnail(
        self,
        source_key: str,
        thumbnail_key: str,
        width: int,
        height: int,
    ) -> None: ...


def thumbnail_key_for(s3_key: str) -> str:
    """
    Key of the thumbnail for an uploaded image.

    Example:
        >>> thumbnail_key_for("uploads/u1/photo.png")
        'uploads/u1/thumbnails/photo.jpg'
    """
    head, sep, name = s3_key.rpartition("/")
    key = f"{head}/thumbnails/{name}" if sep else name
    return re.sub(r"\.\w+$", ".jpg", key)


class ThumbnailHandlers:
    """Generates thumbnails for uploaded images; other uploads are skipped."""

    def __init__(self, service: ThumbnailService) -> None:
        self._service = service

    async def on_file_uploaded(self, event: FileUploaded) -> None:
        data = event.data
        if not data.is_image:
            logger.info(
                f"Skipping non-image file {data.file_id}",
                extra={"file_id": data.file_id, "mime_type": data.mime_type},
            )
            return

        thumbnail_key = thumbnail_key_for(data.s3_key)
        await self._service.create_thumbnail(
            data.s3_key,
            thumbnail_key,
            THUMBNAIL_WIDTH,
            THUMBNAIL_HEIGHT,
        )
        logger.info(
            f"Generated thumbnail for {data.file_id}",
            extra={"file_id": data.file_id, "thumbnail_key": thumbnail_key},
        )

    def register(self, dispatcher: EventDispatcher) -> None:
        dispatcher.register(EventType.FILE_UPLOADED, self.on_file_uploaded)


# =============================================================================
# Dispatchers
# =============================================================================


def build_notification_dispatcher(
    notifier: Notifier,
    thumbnails: ThumbnailService | None = None,
    dispatcher: EventDispatcher | None = None,
) -> EventDispatcher:
    """
    Dispatcher for the ``notifications`` consumer: document and comment
    notifications, welcome e-mails and, when a service is given, thumbnails.
    """
    dispatcher = dispatcher or EventDispatcher()
    NotificationHandlers(notifier).register(dispatcher)
    if thumbnails is not None:
        ThumbnailHandlers(thumbnails).register(dispatcher)
    return dispatcher


def build_search_indexing_dispatcher(
    index: SearchIndex,
    dispatcher: EventDispatcher | None = None,
) -> EventDispatcher:
    """Dispatcher for the ``search-indexing`` consumer."""
    dispatcher = dispatcher or EventDispatcher()
    SearchIndexingHandlers(index).register(dispatcher)
    return dispatcher


__all__ = [
    "LoggingNotifier",
    "Notification",
    "NotificationHandlers",
    "Notifier",
    "SearchIndex",
    "SearchIndexingHandlers",
    "THUMBNAIL_HEIGHT",
    "THUMBNAIL_WIDTH",
    "ThumbnailHandlers",
    "ThumbnailService",
    "build_notification_dispatcher",
    "build_search_indexing_dispatcher",
    "thumbnail_key_for",
]
