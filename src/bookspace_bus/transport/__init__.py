"""
Broker transports.

- ``RabbitMQTransport``: aio-pika, for a real broker
- ``InMemoryTransport``: in-process broker for tests and local development
"""

from bookspace_bus.transport.interface import (
    DEFAULT_EXCHANGE,
    Channel,
    CloseListener,
    Delivery,
    DeliveryCallback,
    ExchangeKind,
    OutgoingMessage,
    Transport,
    sanitize_url,
)
from bookspace_bus.transport.memory import InMemoryBroker, InMemoryTransport
from bookspace_bus.transport.rabbitmq import RabbitMQTransport

__all__ = [
    "Channel",
    "CloseListener",
    "DEFAULT_EXCHANGE",
    "Delivery",
    "DeliveryCallback",
    "ExchangeKind",
    "InMemoryBroker",
    "InMemoryTransport",
    "OutgoingMessage",
    "RabbitMQTransport",
    "Transport",
    "sanitize_url",
]
