"""
Base classes for bus events.

An event is a JSON envelope::

    {"type": "<tag>", "timestamp": "<ISO-8601>", "correlationId": "...", "data": {...}}

The ``data`` shape is determined by ``type``. Each concrete event class pins
``type`` to a single literal tag and ``data`` to a payload model, so the set of
events forms a tagged union. Wire names are camelCase, Python attributes are
snake_case.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class EventType(str, Enum):
    """Tags of the built-in events, in ``noun.verb`` form."""

    DOCUMENT_CREATED = "document.created"
    DOCUMENT_UPDATED = "document.updated"
    DOCUMENT_DELETED = "document.deleted"

    COMMENT_ADDED = "comment.added"
    COMMENT_DELETED = "comment.deleted"

    USER_REGISTERED = "user.registered"
    USER_UPDATED = "user.updated"
    USER_DELETED = "user.deleted"

    FILE_UPLOADED = "file.uploaded"


class EventPayload(BaseModel):
    """
    Base class for per-type event payloads.

    Payloads are closed: unknown fields are rejected so that a payload sent
    under the wrong tag fails validation instead of being silently accepted.
    """

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        alias_generator=to_camel,
        populate_by_name=True,
    )


class Event(BaseModel):
    """
    Base class for all events published on the bus.

    Subclasses narrow ``type`` to a literal tag and ``data`` to a payload
    model. The bus passes ``correlation_id`` through unchanged.

    Attributes:
        type: The event tag.
        timestamp: Creation time (UTC), set when the producer builds the event.
        correlation_id: Optional opaque id for cross-service tracing.
        data: Type-specific payload.

    Example:
        >>> event = DocumentCreated(
        ...     data=DocumentCreatedData(
        ...         document_id="d1", title="API Guide", created_by="u1", tags=[]
        ...     )
        ... )
        >>> event.tag
        'document.created'
    """

    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )

    type: str
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="When the event was created (UTC)",
    )
    correlation_id: str | None = Field(
        default=None,
        description="Opaque id for cross-service tracing",
    )
    data: Any

    @property
    def tag(self) -> str:
        """The event tag as a plain string."""
        if isinstance(self.type, Enum):
            return str(self.type.value)
        return str(self.type)

    def to_json(self) -> str:
        """Serialize to the wire envelope (camelCase, ``None`` fields omitted)."""
        return self.model_dump_json(by_alias=True, exclude_none=True)

    def __str__(self) -> str:
        return f"{self.__class__.__name__}({self.tag}, correlation_id={self.correlation_id})"


class UnknownEvent(Event):
    """
    Envelope whose tag is not registered.

    The registry decodes unrecognized tags into this class instead of failing,
    because an unknown type is not a transient failure. ``data`` is kept as
    whatever JSON value was sent. The dispatcher logs and drops it.
    """

    model_config = ConfigDict(extra="ignore")

    data: Any = None


__all__ = [
    "EventType",
    "EventPayload",
    "Event",
    "UnknownEvent",
]
