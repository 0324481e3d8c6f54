"""
Event type registry for encoding and decoding bus messages.

The registry maps wire tags (``"document.created"``) to event classes and is
the single place where a raw message body becomes a typed event:

- a body that is not a JSON object with a string ``type`` raises ``DecodeError``
- a registered tag whose ``data`` does not validate raises ``DecodeError``
- an unregistered tag decodes to ``UnknownEvent``, whatever its other fields hold

Usage:
    # Built-in events register themselves in the default registry
    event = default_registry.decode(message_body)

    # Extending the set of events
    @register_event
    class DocumentShared(Event):
        type: Literal["document.shared"] = "document.shared"
        data: DocumentSharedData

    # Isolated registry (tests)
    registry = EventRegistry()
    registry.register(DocumentCreated)
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable, Iterator
from enum import Enum
from typing import Any, TypeVar, overload

from pydantic import ValidationError

from bookspace_bus.events.base import Event, UnknownEvent
from bookspace_bus.exceptions import DecodeError

logger = logging.getLogger(__name__)

TEvent = TypeVar("TEvent", bound=Event)


class EventTypeNotFoundError(KeyError):
    """
    Raised when an event tag is not found in the registry.

    Provides helpful error messages including a list of available tags.
    """

    def __init__(self, event_type: str, available_types: list[str]) -> None:
        self.event_type = event_type
        self.available_types = available_types
        available = ", ".join(sorted(available_types)) if available_types else "none"
        super().__init__(
            f"Unknown event type: '{event_type}'. "
            f"Available types: {available}. "
            f"Did you forget to register this event type?"
        )


class DuplicateEventTypeError(ValueError):
    """
    Raised when attempting to register a different class with an existing tag.
    """

    def __init__(
        self,
        event_type: str,
        existing_class: type[Event],
        new_class: type[Event],
    ) -> None:
        self.event_type = event_type
        self.existing_class = existing_class
        self.new_class = new_class
        super().__init__(
            f"Event type '{event_type}' is already registered to {existing_class.__name__}. "
            f"Cannot register {new_class.__name__} with the same type name."
        )


def resolve_event_type(event_class: type[Event]) -> str:
    """
    Get the wire tag declared by an event class.

    The tag is the default of the class's ``type`` field.

    Raises:
        ValueError: If the class does not declare a default tag
    """
    field_info = event_class.model_fields.get("type")
    default = field_info.default if field_info is not None else None
    if isinstance(default, Enum):
        return str(default.value)
    if isinstance(default, str) and default:
        return default
    raise ValueError(
        f"{event_class.__name__} must declare a default for its 'type' field "
        f"to be registered."
    )


class EventRegistry:
    """
    Registry mapping event tags to event classes.

    Can be used through the module-level ``default_registry`` or
    instantiated for isolated testing.

    Thread-Safety:
        All operations are thread-safe and use internal locking.

    Example:
        >>> registry = EventRegistry()
        >>> registry.register(DocumentCreated)
        >>> registry.get("document.created")
        <class 'DocumentCreated'>
    """

    def __init__(self) -> None:
        """Initialize an empty event registry."""
        self._registry: dict[str, type[Event]] = {}
        self._lock = threading.RLock()

    def register(
        self,
        event_class: type[TEvent],
        event_type: str | None = None,
    ) -> type[TEvent]:
        """
        Register an event class.

        Args:
            event_class: The event class to register
            event_type: Optional tag override. Defaults to the class's
                        ``type`` field default.

        Returns:
            The registered event class (enables use as decorator)

        Raises:
            DuplicateEventTypeError: If the tag is already registered to a different class
        """
        resolved_type = event_type or resolve_event_type(event_class)

        with self._lock:
            existing = self._registry.get(resolved_type)
            if existing is not None:
                if existing is not event_class:
                    raise DuplicateEventTypeError(resolved_type, existing, event_class)
                return event_class

            self._registry[resolved_type] = event_class
            logger.debug(
                "Registered event type '%s' -> %s",
                resolved_type,
                event_class.__name__,
                extra={
                    "event_type": resolved_type,
                    "event_class": event_class.__name__,
                },
            )
            return event_class

    def get(self, event_type: str) -> type[Event]:
        """
        Get event class by tag.

        Raises:
            EventTypeNotFoundError: If the tag is not registered
        """
        with self._lock:
            if event_type not in self._registry:
                raise EventTypeNotFoundError(event_type, list(self._registry.keys()))
            return self._registry[event_type]

    def get_or_none(self, event_type: str) -> type[Event] | None:
        """Get event class by tag, returning None if not found."""
        with self._lock:
            return self._registry.get(event_type)

    def contains(self, event_type: str) -> bool:
        """Check if a tag is registered."""
        with self._lock:
            return event_type in self._registry

    def list_types(self) -> list[str]:
        """List all registered tags, sorted."""
        with self._lock:
            return sorted(self._registry.keys())

    def unregister(self, event_type: str) -> bool:
        """
        Unregister a tag.

        Returns:
            True if the tag was registered and removed, False if not found
        """
        with self._lock:
            if event_type in self._registry:
                del self._registry[event_type]
                return True
            return False

    # =========================================================================
    # Wire encoding
    # =========================================================================

    def encode(self, event: Event) -> bytes:
        """Serialize an event to its UTF-8 JSON envelope."""
        return event.to_json().encode("utf-8")

    def decode(self, body: bytes) -> Event:
        """
        Decode a message body into a typed event.

        Args:
            body: Raw message body

        Returns:
            An instance of the class registered for the body's tag, or an
            ``UnknownEvent`` when the tag is not registered.

        Raises:
            DecodeError: If the body is not a JSON object with a string
                ``type``, or its payload does not match the tag
        """
        try:
            envelope = json.loads(body)
        except (UnicodeDecodeError, ValueError) as e:
            raise DecodeError(None, f"invalid JSON: {e}") from e

        if not isinstance(envelope, dict):
            raise DecodeError(None, f"expected a JSON object, got {type(envelope).__name__}")

        event_type = envelope.get("type")
        if not isinstance(event_type, str) or not event_type:
            raise DecodeError(None, "envelope has no 'type' tag")

        event_class = self.get_or_none(event_type)
        if event_class is None:
            return self._decode_unknown(event_type, envelope)

        try:
            return event_class.model_validate(envelope)
        except ValidationError as e:
            raise DecodeError(event_type, str(e)) from e

    @staticmethod
    def _decode_unknown(event_type: str, envelope: dict[str, Any]) -> UnknownEvent:
        try:
            return UnknownEvent.model_validate(envelope)
        except ValidationError as e:
            logger.debug(
                f"Envelope of unregistered type {event_type} has invalid fields: {e}",
                extra={"event_type": event_type},
            )
            return UnknownEvent(type=event_type, data=envelope.get("data"))

    def __len__(self) -> int:
        with self._lock:
            return len(self._registry)

    def __bool__(self) -> bool:
        """Registry is always truthy, even when empty."""
        return True

    def __contains__(self, event_type: str) -> bool:
        return self.contains(event_type)

    def __iter__(self) -> Iterator[str]:
        with self._lock:
            return iter(list(self._registry.keys()))


# Module-level default registry instance
default_registry = EventRegistry()


@overload
def register_event(event_class: type[TEvent]) -> type[TEvent]: ...


@overload
def register_event(
    event_class: None = None,
    *,
    event_type: str | None = None,
    registry: EventRegistry | None = None,
) -> Callable[[type[TEvent]], type[TEvent]]: ...


def register_event(
    event_class: type[TEvent] | None = None,
    *,
    event_type: str | None = None,
    registry: EventRegistry | None = None,
) -> type[TEvent] | Callable[[type[TEvent]], type[TEvent]]:
    """
    Decorator to register an event class.

    Can be used with or without parentheses:

        @register_event
        class DocumentShared(Event):
            ...

        @register_event(registry=custom_registry)
        class DocumentShared(Event):
            ...

    Args:
        event_class: The event class (when used without parentheses)
        event_type: Optional tag override
        registry: Optional registry to use (defaults to ``default_registry``)
    """
    target_registry = registry or default_registry

    def decorator(cls: type[TEvent]) -> type[TEvent]:
        return target_registry.register(cls, event_type)

    if event_class is not None:
        return decorator(event_class)
    return decorator


__all__ = [
    "EventRegistry",
    "EventTypeNotFoundError",
    "DuplicateEventTypeError",
    "default_registry",
    "register_event",
    "resolve_event_type",
]
