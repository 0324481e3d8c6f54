"""
Event model for the bus.

Importing this package registers the built-in events in ``default_registry``.
"""

from bookspace_bus.events.base import Event, EventPayload, EventType, UnknownEvent
from bookspace_bus.events.registry import (
    DuplicateEventTypeError,
    EventRegistry,
    EventTypeNotFoundError,
    default_registry,
    register_event,
)
from bookspace_bus.events.types import (
    CommentAdded,
    CommentAddedData,
    CommentDeleted,
    CommentDeletedData,
    DocumentCreated,
    DocumentCreatedData,
    DocumentDeleted,
    DocumentDeletedData,
    DocumentUpdated,
    DocumentUpdatedData,
    FileUploaded,
    FileUploadedData,
    UserDeleted,
    UserDeletedData,
    UserRegistered,
    UserRegisteredData,
    UserUpdated,
    UserUpdatedData,
)

__all__ = [
    "Event",
    "EventPayload",
    "EventType",
    "UnknownEvent",
    "EventRegistry",
    "EventTypeNotFoundError",
    "DuplicateEventTypeError",
    "default_registry",
    "register_event",
    "CommentAdded",
    "CommentAddedData",
    "CommentDeleted",
    "CommentDeletedData",
    "DocumentCreated",
    "DocumentCreatedData",
    "DocumentDeleted",
    "DocumentDeletedData",
    "DocumentUpdated",
    "DocumentUpdatedData",
    "FileUploaded",
    "FileUploadedData",
    "UserDeleted",
    "UserDeletedData",
    "UserRegistered",
    "UserRegisteredData",
    "UserUpdated",
    "UserUpdatedData",
]
