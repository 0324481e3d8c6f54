"""Exceptions for the bookspace_bus package."""


class EventBusError(Exception):
    """Base exception for the event bus."""

    pass


class BrokerConnectionError(EventBusError):
    """Raised when the transport connection to the broker cannot be established."""

    def __init__(self, url: str, message: str) -> None:
        self.url = url
        super().__init__(f"Cannot connect to broker at {url}: {message}")


class DeclarationError(EventBusError):
    """
    Raised when an exchange or queue cannot be declared.

    Usually means an entity already exists on the broker with different
    parameters (durability, type or arguments). This is a startup-time
    failure and is never retried.
    """

    def __init__(self, entity: str, name: str, message: str) -> None:
        self.entity = entity
        self.name = name
        super().__init__(f"Failed to declare {entity} '{name}': {message}")


class NotConnectedError(EventBusError):
    """Raised when publish or subscribe is attempted before a channel exists."""

    def __init__(self, operation: str) -> None:
        self.operation = operation
        super().__init__(f"Cannot {operation}: not connected to the broker")


class PublishError(EventBusError):
    """Raised when the broker write for an event fails."""

    def __init__(self, event_type: str, message: str) -> None:
        self.event_type = event_type
        super().__init__(f"Failed to publish {event_type}: {message}")


class SubscribeError(EventBusError):
    """Raised when a consumer queue cannot be set up or consumed."""

    def __init__(self, queue_name: str, message: str) -> None:
        self.queue_name = queue_name
        super().__init__(f"Failed to subscribe to '{queue_name}': {message}")


class HandlerError(EventBusError):
    """Raised (and contained by the consumer loop) when a handler fails."""

    def __init__(self, handler_name: str, event_type: str, message: str) -> None:
        self.handler_name = handler_name
        self.event_type = event_type
        super().__init__(f"Handler {handler_name} failed on {event_type}: {message}")


class HandlerTimeoutError(HandlerError):
    """Raised when a handler does not settle within the configured timeout."""

    def __init__(self, handler_name: str, event_type: str, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(handler_name, event_type, f"timed out after {timeout}s")


class DecodeError(EventBusError):
    """
    Raised when a message body cannot be decoded into an event.

    Covers invalid JSON, an envelope without a ``type`` tag, and a payload
    whose shape does not match its tag. The consumer loop treats it exactly
    like a handler failure.
    """

    def __init__(self, event_type: str | None, message: str) -> None:
        self.event_type = event_type
        label = event_type or "<untyped>"
        super().__init__(f"Cannot decode {label} message: {message}")


class DuplicateHandlerError(ValueError):
    """Raised when a second handler is registered for the same event tag."""

    def __init__(self, event_type: str, existing: str, new: str) -> None:
        self.event_type = event_type
        self.existing = existing
        self.new = new
        super().__init__(
            f"Event type '{event_type}' is already handled by {existing}. "
            f"Cannot register {new} for the same type."
        )


__all__ = [
    "EventBusError",
    "BrokerConnectionError",
    "DeclarationError",
    "NotConnectedError",
    "PublishError",
    "SubscribeError",
    "HandlerError",
    "HandlerTimeoutError",
    "DecodeError",
    "DuplicateHandlerError",
]
