"""
Event dispatcher: routes a decoded event to the one handler registered for
its tag.

Handlers may be async or sync callables, or objects with a ``handle()``
method; ``HandlerAdapter`` normalizes all of them to a coroutine.

Example:
    >>> dispatcher = EventDispatcher()
    >>> @dispatcher.handles(EventType.DOCUMENT_CREATED)
    ... async def on_document_created(event: DocumentCreated) -> None:
    ...     await notify(event.data.created_by)
    >>> await bus.subscribe("notifications", dispatcher.dispatch)
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, TypeVar

from opentelemetry.trace import Status, StatusCode

from bookspace_bus.events.base import Event, UnknownEvent
from bookspace_bus.events.registry import EventRegistry, default_registry, resolve_event_type
from bookspace_bus.exceptions import DecodeError, DuplicateHandlerError, HandlerError
from bookspace_bus.observability.attributes import (
    ATTR_EVENT_TYPE,
    ATTR_HANDLER_NAME,
    ATTR_HANDLER_SUCCESS,
)
from bookspace_bus.observability.tracer import Tracer, create_tracer

logger = logging.getLogger(__name__)

AsyncHandlerFunc = Callable[[Event], Awaitable[None]]
THandler = TypeVar("THandler")


def get_handler_name(handler: Any) -> str:
    """
    Get a descriptive name for a handler for logging and debugging.

    Functions and bound methods use their qualified name, other objects
    their class name.
    """
    qualname = getattr(handler, "__qualname__", None)
    if qualname is not None:
        return str(qualname)
    return str(handler.__class__.__name__)


class HandlerAdapter:
    """
    Adapter that normalizes a handler to an async ``handle(event)``.

    Accepts:
    - objects with an async or sync ``handle()`` method
    - async or sync callables

    Attributes:
        original: The original unwrapped handler
        name: Descriptive name for logging
    """

    def __init__(self, handler: Any) -> None:
        """
        Raises:
            TypeError: If handler doesn't have handle() method and isn't callable
        """
        self._original = handler
        self._async_handler = self._normalize(handler)
        target = handler.handle if hasattr(handler, "handle") else handler
        self._name = get_handler_name(target)

    def _normalize(self, handler: Any) -> AsyncHandlerFunc:
        if hasattr(handler, "handle"):
            method = handler.handle
        elif callable(handler):
            method = handler
        else:
            raise TypeError(
                f"Handler must have a handle() method or be callable, got {type(handler)}"
            )

        if inspect.iscoroutinefunction(method):
            return method  # type: ignore[no-any-return]

        async def async_wrapper(event: Event) -> None:
            result = method(event)
            # A sync callable may still return an awaitable
            if inspect.isawaitable(result):
                await result

        return async_wrapper

    @property
    def original(self) -> Any:
        return self._original

    @property
    def name(self) -> str:
        return self._name

    async def handle(self, event: Event) -> None:
        await self._async_handler(event)

    def __repr__(self) -> str:
        return f"HandlerAdapter({self._name})"


@dataclass
class DispatcherStats:
    """Counters for the dispatcher."""

    dispatched: int = 0
    handler_failures: int = 0
    unknown_dropped: int = 0
    unhandled_dropped: int = 0


def _tag_of(event_type: str | Enum | type[Event]) -> str:
    if isinstance(event_type, type):
        return resolve_event_type(event_type)
    if isinstance(event_type, Enum):
        return str(event_type.value)
    return event_type


class EventDispatcher:
    """
    Maps each event tag to exactly one handler.

    - an unregistered tag (``UnknownEvent``) is logged and dropped
    - a registered tag without a handler is dropped at DEBUG level
    - an event whose class does not match its tag raises ``DecodeError``
    - a handler exception is re-raised as ``HandlerError``

    Dropped events count as handled, so the consumer acknowledges them.

    Handlers must be idempotent: the same event may be dispatched more than
    once when the broker redelivers it.

    Args:
        registry: Registry used to check event classes against their tag
        tracer: Optional tracer for ``bookspace_bus.handle`` spans
        enable_tracing: Used when no tracer is given
    """

    def __init__(
        self,
        registry: EventRegistry | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._registry = registry or default_registry
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._handlers: dict[str, HandlerAdapter] = {}
        self._stats = DispatcherStats()

    @property
    def stats(self) -> DispatcherStats:
        return self._stats

    def register(self, event_type: str | Enum | type[Event], handler: Any) -> None:
        """
        Register the handler for a tag.

        Args:
            event_type: Tag, ``EventType`` member, or event class
            handler: Async/sync callable or object with ``handle()``

        Raises:
            DuplicateHandlerError: If the tag already has a handler
        """
        tag = _tag_of(event_type)
        adapter = HandlerAdapter(handler)
        existing = self._handlers.get(tag)
        if existing is not None:
            raise DuplicateHandlerError(tag, existing.name, adapter.name)
        self._handlers[tag] = adapter
        logger.debug(
            f"Registered handler {adapter.name} for {tag}",
            extra={"event_type": tag, "handler": adapter.name},
        )

    def handles(self, event_type: str | Enum | type[Event]) -> Callable[[THandler], THandler]:
        """Decorator form of ``register``."""

        def decorator(handler: THandler) -> THandler:
            self.register(event_type, handler)
            return handler

        return decorator

    def unregister(self, event_type: str | Enum | type[Event]) -> bool:
        return self._handlers.pop(_tag_of(event_type), None) is not None

    def has_handler(self, event_type: str | Enum | type[Event]) -> bool:
        return _tag_of(event_type) in self._handlers

    def handled_types(self) -> list[str]:
        return sorted(self._handlers)

    async def dispatch(self, event: Event) -> None:
        """
        Route ``event`` to its handler.

        Raises:
            DecodeError: If the event's class does not match its tag
            HandlerError: If the handler raises
        """
        tag = event.tag

        if isinstance(event, UnknownEvent):
            self._stats.unknown_dropped += 1
            logger.warning(
                f"Unknown event type: {tag}, dropping",
                extra={"event_type": tag, "correlation_id": event.correlation_id},
            )
            return

        expected = self._registry.get_or_none(tag)
        if expected is not None and not isinstance(event, expected):
            raise DecodeError(
                tag,
                f"{type(event).__name__} does not match the class registered for the tag "
                f"({expected.__name__})",
            )

        adapter = self._handlers.get(tag)
        if adapter is None:
            self._stats.unhandled_dropped += 1
            logger.debug(
                f"No handler for {tag}, dropping",
                extra={"event_type": tag, "correlation_id": event.correlation_id},
            )
            return

        with self._tracer.span(
            "bookspace_bus.handle",
            {ATTR_EVENT_TYPE: tag, ATTR_HANDLER_NAME: adapter.name},
        ) as span:
            try:
                await adapter.handle(event)
            except Exception as e:
                self._stats.handler_failures += 1
                if span is not None:
                    span.set_attribute(ATTR_HANDLER_SUCCESS, False)
                    span.set_status(Status(StatusCode.ERROR, str(e)))
                raise HandlerError(adapter.name, tag, str(e)) from e

            if span is not None:
                span.set_attribute(ATTR_HANDLER_SUCCESS, True)

        self._stats.dispatched += 1
        logger.debug(
            f"Handler {adapter.name} processed {tag}",
            extra={
                "event_type": tag,
                "handler": adapter.name,
                "correlation_id": event.correlation_id,
            },
        )

    async def __call__(self, event: Event) -> None:
        await self.dispatch(event)


__all__ = [
    "DispatcherStats",
    "EventDispatcher",
    "HandlerAdapter",
    "get_handler_name",
]
