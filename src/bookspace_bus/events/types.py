"""
Built-in events exchanged between the bookspace services.

Each event pins ``type`` to one tag and ``data`` to its payload model. All of
them are registered in ``default_registry`` at import time.
"""

from __future__ import annotations

from typing import Literal

from pydantic import Field

from bookspace_bus.events.base import Event, EventPayload, EventType
from bookspace_bus.events.registry import register_event

# =============================================================================
# Document events
# =============================================================================


class DocumentCreatedData(EventPayload):
    document_id: str
    title: str
    created_by: str
    tags: list[str] = Field(default_factory=list)


class DocumentUpdatedData(EventPayload):
    document_id: str
    title: str
    updated_by: str
    version: int


class DocumentDeletedData(EventPayload):
    document_id: str
    deleted_by: str


@register_event
class DocumentCreated(Event):
    """A document was created by the document service."""

    type: Literal["document.created"] = EventType.DOCUMENT_CREATED.value
    data: DocumentCreatedData


@register_event
class DocumentUpdated(Event):
    """A document's title or content changed; ``version`` is the new version."""

    type: Literal["document.updated"] = EventType.DOCUMENT_UPDATED.value
    data: DocumentUpdatedData


@register_event
class DocumentDeleted(Event):
    type: Literal["document.deleted"] = EventType.DOCUMENT_DELETED.value
    data: DocumentDeletedData


# =============================================================================
# Comment events
# =============================================================================


class CommentAddedData(EventPayload):
    comment_id: str
    document_id: str
    user_id: str
    text: str
    parent_id: str | None = None


class CommentDeletedData(EventPayload):
    comment_id: str
    document_id: str
    deleted_by: str


@register_event
class CommentAdded(Event):
    """A comment (or a reply, when ``parent_id`` is set) was added to a document."""

    type: Literal["comment.added"] = EventType.COMMENT_ADDED.value
    data: CommentAddedData


@register_event
class CommentDeleted(Event):
    type: Literal["comment.deleted"] = EventType.COMMENT_DELETED.value
    data: CommentDeletedData


# =============================================================================
# User events
# =============================================================================


class UserRegisteredData(EventPayload):
    user_id: str
    email: str
    name: str


class UserUpdatedData(EventPayload):
    user_id: str
    email: str | None = None
    name: str | None = None


class UserDeletedData(EventPayload):
    user_id: str


@register_event
class UserRegistered(Event):
    """A new account was created; triggers the welcome e-mail."""

    type: Literal["user.registered"] = EventType.USER_REGISTERED.value
    data: UserRegisteredData


@register_event
class UserUpdated(Event):
    type: Literal["user.updated"] = EventType.USER_UPDATED.value
    data: UserUpdatedData


@register_event
class UserDeleted(Event):
    type: Literal["user.deleted"] = EventType.USER_DELETED.value
    data: UserDeletedData


# =============================================================================
# Upload events
# =============================================================================


class FileUploadedData(EventPayload):
    file_id: str
    file_name: str
    file_size: int = Field(ge=0)
    mime_type: str
    s3_key: str
    uploaded_by: str
    is_image: bool


@register_event
class FileUploaded(Event):
    """A file was stored in object storage by the upload service."""

    type: Literal["file.uploaded"] = EventType.FILE_UPLOADED.value
    data: FileUploadedData


__all__ = [
    "DocumentCreatedData",
    "DocumentUpdatedData",
    "DocumentDeletedData",
    "DocumentCreated",
    "DocumentUpdated",
    "DocumentDeleted",
    "CommentAddedData",
    "CommentDeletedData",
    "CommentAdded",
    "CommentDeleted",
    "UserRegisteredData",
    "UserUpdatedData",
    "UserDeletedData",
    "UserRegistered",
    "UserUpdated",
    "UserDeleted",
    "FileUploadedData",
    "FileUploaded",
]
