"""
bookspace_bus - asynchronous event bus for the bookspace services.

This library provides:
- Typed events with a tag-based registry and JSON wire envelope
- A fanout exchange with a dead-letter exchange and queue
- A publisher and a consumer loop with bounded exponential-backoff retries
- An event dispatcher routing each event type to one handler
- Dead-letter queue inspection, replay and purge
- aio-pika and in-memory transports
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("bookspace-bus")
except PackageNotFoundError:
    # Package not installed (running from source without install)
    __version__ = "0.0.0.dev0"

from bookspace_bus.bus import EventBus
from bookspace_bus.config import BusSettings, EventBusConfig
from bookspace_bus.connection import Connection
from bookspace_bus.consumer import Consumer, ConsumerStats, EventHandler
from bookspace_bus.dispatcher import EventDispatcher, HandlerAdapter
from bookspace_bus.dlq import DeadLetter, DeadLetterQueue
from bookspace_bus.events import (
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
    Event,
    EventPayload,
    EventRegistry,
    EventType,
    FileUploaded,
    FileUploadedData,
    UnknownEvent,
    UserDeleted,
    UserDeletedData,
    UserRegistered,
    UserRegisteredData,
    UserUpdated,
    UserUpdatedData,
    default_registry,
    register_event,
)
from bookspace_bus.exceptions import (
    BrokerConnectionError,
    DeclarationError,
    DecodeError,
    DuplicateHandlerError,
    EventBusError,
    HandlerError,
    HandlerTimeoutError,
    NotConnectedError,
    PublishError,
    SubscribeError,
)
from bookspace_bus.publisher import Publisher, PublisherStats
from bookspace_bus.retry import RetryPolicy
from bookspace_bus.topology import TopologyManager, declare_topology
from bookspace_bus.transport import (
    Channel,
    Delivery,
    ExchangeKind,
    InMemoryBroker,
    InMemoryTransport,
    OutgoingMessage,
    RabbitMQTransport,
    Transport,
)

__all__ = [
    "__version__",
    # Bus
    "EventBus",
    "EventBusConfig",
    "BusSettings",
    "Connection",
    "TopologyManager",
    "declare_topology",
    "Publisher",
    "PublisherStats",
    "Consumer",
    "ConsumerStats",
    "EventHandler",
    "RetryPolicy",
    "EventDispatcher",
    "HandlerAdapter",
    "DeadLetter",
    "DeadLetterQueue",
    # Transport
    "Channel",
    "Delivery",
    "ExchangeKind",
    "InMemoryBroker",
    "InMemoryTransport",
    "OutgoingMessage",
    "RabbitMQTransport",
    "Transport",
    # Events
    "Event",
    "EventPayload",
    "EventType",
    "UnknownEvent",
    "EventRegistry",
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
    # Exceptions
    "EventBusError",
    "BrokerConnectionError",
    "DeclarationError",
    "DecodeError",
    "DuplicateHandlerError",
    "HandlerError",
    "HandlerTimeoutError",
    "NotConnectedError",
    "PublishError",
    "SubscribeError",
]
