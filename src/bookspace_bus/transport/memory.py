"""
In-process broker implementing the AMQP semantics the bus relies on.

Supported:
- fanout and direct exchanges, plus the default exchange ("") that routes to
  the queue named by the routing key
- durable/argument checks on redeclaration (mismatch raises
  ``PreconditionFailedError``)
- per-consumer prefetch, redelivery of unacknowledged messages when a
  channel closes
- dead-lettering on ``reject(requeue=False)`` through the queue's
  ``x-dead-letter-exchange`` argument, with RabbitMQ-style ``x-death`` and
  ``x-first-death-*`` headers

Every operation runs without suspending, so channel operations never
interleave.

Example:
    >>> broker = InMemoryBroker()
    >>> bus = EventBus(config, transport=InMemoryTransport(broker))
    >>> await bus.connect()
    >>> broker.depth("bookspace.events.dlq")
    0
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

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

logger = logging.getLogger(__name__)


class InMemoryBrokerError(Exception):
    """Base class for errors raised by the in-memory broker."""


class PreconditionFailedError(InMemoryBrokerError):
    """An entity was redeclared with different parameters, or a tag is unknown."""


class NotFoundError(InMemoryBrokerError):
    """An exchange or queue does not exist."""


class ChannelClosedError(InMemoryBrokerError):
    """An operation was attempted on a closed channel."""


@dataclass
class StoredMessage:
    """A message sitting in a queue."""

    body: bytes
    headers: dict[str, Any]
    exchange: str
    routing_key: str
    content_type: str | None = None
    message_id: str | None = None
    timestamp: datetime | None = None
    persistent: bool = True
    redelivered: bool = False

    @classmethod
    def from_outgoing(
        cls, message: OutgoingMessage, exchange: str, routing_key: str
    ) -> StoredMessage:
        return cls(
            body=message.body,
            headers=dict(message.headers),
            exchange=exchange,
            routing_key=routing_key,
            content_type=message.content_type,
            message_id=message.message_id,
            timestamp=message.timestamp,
            persistent=message.persistent,
        )


@dataclass
class _Exchange:
    name: str
    kind: ExchangeKind
    durable: bool


@dataclass
class _Queue:
    name: str
    durable: bool
    arguments: dict[str, Any]
    messages: deque[StoredMessage] = field(default_factory=deque)


@dataclass
class _Consumer:
    tag: str
    queue: str
    channel: InMemoryChannel
    callback: DeliveryCallback
    prefetch: int
    unacked: int = 0

    @property
    def has_capacity(self) -> bool:
        return self.prefetch == 0 or self.unacked < self.prefetch


@dataclass
class _Unacked:
    queue: str
    message: StoredMessage
    consumer: _Consumer | None


@dataclass(frozen=True)
class Settlement:
    """Record of an ack or reject, kept by the broker for assertions."""

    action: str
    queue: str
    delivery_tag: int
    message: StoredMessage


class InMemoryBroker:
    """
    Shared broker state. Several transports (processes, in a test) may
    connect to the same broker.

    Attributes:
        available: When False, ``connect`` is refused.
        settlements: Every ack / reject / requeue, in order.
    """

    def __init__(self) -> None:
        self.available = True
        self.settlements: list[Settlement] = []
        self._exchanges: dict[str, _Exchange] = {}
        self._queues: dict[str, _Queue] = {}
        self._bindings: dict[str, list[tuple[str, str]]] = {}
        self._consumers: dict[str, _Consumer] = {}
        self._transports: list[InMemoryTransport] = []
        self._consumer_tags = itertools.count(1)

    # =========================================================================
    # Inspection
    # =========================================================================

    def has_exchange(self, name: str) -> bool:
        return name in self._exchanges

    def has_queue(self, name: str) -> bool:
        return name in self._queues

    def exchange_kind(self, name: str) -> ExchangeKind:
        return self._require_exchange(name).kind

    def queue_arguments(self, name: str) -> dict[str, Any]:
        return dict(self._require_queue(name).arguments)

    def bindings(self, exchange: str) -> list[str]:
        """Names of the queues bound to an exchange."""
        return [queue for queue, _ in self._bindings.get(exchange, [])]

    def depth(self, queue: str) -> int:
        """Ready (not yet delivered) messages in a queue."""
        return len(self._require_queue(queue).messages)

    def messages(self, queue: str) -> list[StoredMessage]:
        """Snapshot of the ready messages in a queue."""
        return list(self._require_queue(queue).messages)

    def consumer_count(self, queue: str) -> int:
        return sum(1 for consumer in self._consumers.values() if consumer.queue == queue)

    def settled(self, action: str, queue: str | None = None) -> list[Settlement]:
        return [
            s
            for s in self.settlements
            if s.action == action and (queue is None or s.queue == queue)
        ]

    def close_connections(self, exc: BaseException | None = None) -> None:
        """Simulate the broker dropping every client connection."""
        for transport in list(self._transports):
            transport.drop(exc)

    # =========================================================================
    # Topology
    # =========================================================================

    def declare_exchange(self, name: str, kind: ExchangeKind, durable: bool) -> None:
        existing = self._exchanges.get(name)
        if existing is not None:
            if existing.kind != kind or existing.durable != durable:
                raise PreconditionFailedError(
                    f"inequivalent arg for exchange '{name}': "
                    f"declared {existing.kind.value} durable={existing.durable}, "
                    f"requested {kind.value} durable={durable}"
                )
            return
        self._exchanges[name] = _Exchange(name, kind, durable)

    def declare_queue(self, name: str, durable: bool, arguments: dict[str, Any]) -> None:
        existing = self._queues.get(name)
        if existing is not None:
            if existing.durable != durable or existing.arguments != arguments:
                raise PreconditionFailedError(
                    f"inequivalent arg for queue '{name}': "
                    f"declared durable={existing.durable} arguments={existing.arguments}, "
                    f"requested durable={durable} arguments={arguments}"
                )
            return
        self._queues[name] = _Queue(name, durable, dict(arguments))

    def bind(self, queue: str, exchange: str, routing_key: str) -> None:
        self._require_queue(queue)
        self._require_exchange(exchange)
        bindings = self._bindings.setdefault(exchange, [])
        if (queue, routing_key) not in bindings:
            bindings.append((queue, routing_key))

    def delete_queue(self, name: str) -> None:
        """Delete a queue with its messages, bindings and consumers."""
        self._require_queue(name)
        del self._queues[name]
        for exchange, bindings in self._bindings.items():
            self._bindings[exchange] = [b for b in bindings if b[0] != name]
        for tag in [t for t, c in self._consumers.items() if c.queue == name]:
            del self._consumers[tag]

    # =========================================================================
    # Routing
    # =========================================================================

    def publish(self, exchange: str, routing_key: str, message: StoredMessage) -> int:
        """Route a message; returns the number of queues it reached."""
        targets = self._route(exchange, routing_key)
        for queue in targets:
            copy = StoredMessage(
                body=message.body,
                headers=dict(message.headers),
                exchange=message.exchange,
                routing_key=message.routing_key,
                content_type=message.content_type,
                message_id=message.message_id,
                timestamp=message.timestamp,
                persistent=message.persistent,
            )
            self._queues[queue].messages.append(copy)
        for queue in targets:
            self._dispatch(queue)
        return len(targets)

    def _route(self, exchange: str, routing_key: str) -> list[str]:
        if exchange == DEFAULT_EXCHANGE:
            return [routing_key] if routing_key in self._queues else []

        target = self._require_exchange(exchange)
        routed: list[str] = []
        for queue, key in self._bindings.get(exchange, []):
            if target.kind == ExchangeKind.DIRECT and key != routing_key:
                continue
            if queue not in routed:
                routed.append(queue)
        return routed

    def requeue(self, queue: str, message: StoredMessage) -> None:
        message.redelivered = True
        self._require_queue(queue).messages.appendleft(message)

    def dead_letter(self, queue: str, message: StoredMessage, reason: str = "rejected") -> None:
        arguments = self._require_queue(queue).arguments
        dlx = arguments.get("x-dead-letter-exchange")
        if dlx is None:
            logger.debug("Dropping rejected message, queue has no DLX", extra={"queue": queue})
            return

        headers = dict(message.headers)
        deaths: list[dict[str, Any]] = [dict(d) for d in headers.get("x-death") or []]
        for index, death in enumerate(deaths):
            if death.get("queue") == queue and death.get("reason") == reason:
                death["count"] = int(death.get("count", 0)) + 1
                death["time"] = datetime.now(UTC)
                deaths.insert(0, deaths.pop(index))
                break
        else:
            deaths.insert(
                0,
                {
                    "count": 1,
                    "reason": reason,
                    "queue": queue,
                    "exchange": message.exchange,
                    "routing-keys": [message.routing_key],
                    "time": datetime.now(UTC),
                },
            )
        headers["x-death"] = deaths
        headers.setdefault("x-first-death-queue", queue)
        headers.setdefault("x-first-death-reason", reason)
        headers.setdefault("x-first-death-exchange", message.exchange)

        routing_key = arguments.get("x-dead-letter-routing-key", message.routing_key)
        dead = StoredMessage(
            body=message.body,
            headers=headers,
            exchange=dlx,
            routing_key=routing_key,
            content_type=message.content_type,
            message_id=message.message_id,
            timestamp=message.timestamp,
            persistent=message.persistent,
        )
        self.publish(dlx, routing_key, dead)

    # =========================================================================
    # Consumers
    # =========================================================================

    def add_consumer(
        self,
        queue: str,
        channel: InMemoryChannel,
        callback: DeliveryCallback,
        prefetch: int,
    ) -> str:
        self._require_queue(queue)
        tag = f"ctag-{next(self._consumer_tags)}"
        self._consumers[tag] = _Consumer(tag, queue, channel, callback, prefetch)
        self._dispatch(queue)
        return tag

    def remove_consumer(self, tag: str) -> None:
        self._consumers.pop(tag, None)

    def remove_channel(self, channel: InMemoryChannel) -> None:
        for tag in [t for t, c in self._consumers.items() if c.channel is channel]:
            del self._consumers[tag]

    def take(self, queue: str) -> StoredMessage | None:
        messages = self._require_queue(queue).messages
        return messages.popleft() if messages else None

    def purge(self, queue: str) -> int:
        messages = self._require_queue(queue).messages
        count = len(messages)
        messages.clear()
        return count

    def wake(self, queue: str) -> None:
        self._dispatch(queue)

    def _dispatch(self, queue: str) -> None:
        messages = self._queues[queue].messages
        while messages:
            ready = [
                c for c in self._consumers.values() if c.queue == queue and c.has_capacity
            ]
            if not ready:
                return
            consumer = min(ready, key=lambda c: c.unacked)
            message = messages.popleft()
            consumer.unacked += 1
            consumer.channel.deliver(consumer, queue, message)

    # =========================================================================
    # Helpers
    # =========================================================================

    def register(self, transport: InMemoryTransport) -> None:
        self._transports.append(transport)

    def unregister(self, transport: InMemoryTransport) -> None:
        if transport in self._transports:
            self._transports.remove(transport)

    def _require_exchange(self, name: str) -> _Exchange:
        exchange = self._exchanges.get(name)
        if exchange is None:
            raise NotFoundError(f"no exchange '{name}'")
        return exchange

    def _require_queue(self, name: str) -> _Queue:
        queue = self._queues.get(name)
        if queue is None:
            raise NotFoundError(f"no queue '{name}'")
        return queue


class InMemoryChannel(Channel):
    """Channel on an ``InMemoryBroker``."""

    def __init__(self, broker: InMemoryBroker, on_close: CloseListener | None = None) -> None:
        self._broker = broker
        self._on_close = on_close
        self._open = True
        self._prefetch = 0
        self._delivery_tags = itertools.count(1)
        self._unacked: dict[int, _Unacked] = {}
        self._consumer_tags: set[str] = set()
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def is_open(self) -> bool:
        return self._open

    @property
    def unacked_count(self) -> int:
        return len(self._unacked)

    async def declare_exchange(self, name: str, kind: ExchangeKind, durable: bool = True) -> None:
        self._ensure_open()
        self._broker.declare_exchange(name, kind, durable)

    async def declare_queue(
        self,
        name: str,
        durable: bool = True,
        arguments: dict[str, Any] | None = None,
    ) -> None:
        self._ensure_open()
        self._broker.declare_queue(name, durable, arguments or {})

    async def bind_queue(self, queue: str, exchange: str, routing_key: str = "") -> None:
        self._ensure_open()
        self._broker.bind(queue, exchange, routing_key)

    async def set_prefetch(self, count: int) -> None:
        self._ensure_open()
        self._prefetch = count

    async def publish(
        self,
        exchange: str,
        message: OutgoingMessage,
        routing_key: str = "",
    ) -> None:
        self._ensure_open()
        stored = StoredMessage.from_outgoing(message, exchange, routing_key)
        self._broker.publish(exchange, routing_key, stored)

    async def consume(self, queue: str, callback: DeliveryCallback) -> str:
        self._ensure_open()
        tag = self._broker.add_consumer(queue, self, callback, self._prefetch)
        self._consumer_tags.add(tag)
        return tag

    async def cancel(self, consumer_tag: str) -> None:
        self._consumer_tags.discard(consumer_tag)
        self._broker.remove_consumer(consumer_tag)

    async def ack(self, delivery: Delivery) -> None:
        entry = self._settle(delivery, "ack")
        self._release(entry)

    async def reject(self, delivery: Delivery, requeue: bool = False) -> None:
        entry = self._settle(delivery, "requeue" if requeue else "reject")
        if requeue:
            self._broker.requeue(entry.queue, entry.message)
        else:
            self._broker.dead_letter(entry.queue, entry.message)
        self._release(entry)

    async def get(self, queue: str) -> Delivery | None:
        self._ensure_open()
        message = self._broker.take(queue)
        if message is None:
            return None
        return self._track(None, queue, message)

    async def purge(self, queue: str) -> int:
        self._ensure_open()
        return self._broker.purge(queue)

    async def queue_depth(self, queue: str) -> int:
        self._ensure_open()
        return self._broker.depth(queue)

    async def queue_exists(self, queue: str) -> bool:
        self._ensure_open()
        return self._broker.has_queue(queue)

    async def close(self) -> None:
        self.shutdown(None)

    def shutdown(self, exc: BaseException | None) -> None:
        """Close the channel, returning unacknowledged messages to their queues."""
        if not self._open:
            return
        self._open = False
        self._broker.remove_channel(self)
        self._consumer_tags.clear()

        queues: list[str] = []
        for entry in reversed(list(self._unacked.values())):
            self._broker.requeue(entry.queue, entry.message)
            if entry.queue not in queues:
                queues.append(entry.queue)
        self._unacked.clear()

        if self._on_close is not None:
            self._on_close("channel", exc)

        for queue in queues:
            self._broker.wake(queue)

    def deliver(self, consumer: _Consumer, queue: str, message: StoredMessage) -> None:
        delivery = self._track(consumer, queue, message)
        task = asyncio.get_running_loop().create_task(consumer.callback(delivery))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _track(self, consumer: _Consumer | None, queue: str, message: StoredMessage) -> Delivery:
        tag = next(self._delivery_tags)
        self._unacked[tag] = _Unacked(queue, message, consumer)
        return Delivery(
            delivery_tag=tag,
            body=message.body,
            queue=queue,
            headers=dict(message.headers),
            content_type=message.content_type,
            message_id=message.message_id,
            timestamp=message.timestamp,
            redelivered=message.redelivered,
            exchange=message.exchange,
            routing_key=message.routing_key,
            raw=self,
        )

    def _settle(self, delivery: Delivery, action: str) -> _Unacked:
        self._ensure_open()
        entry = self._unacked.pop(delivery.delivery_tag, None)
        if entry is None:
            raise PreconditionFailedError(f"unknown delivery tag {delivery.delivery_tag}")
        self._broker.settlements.append(
            Settlement(action, entry.queue, delivery.delivery_tag, entry.message)
        )
        return entry

    def _release(self, entry: _Unacked) -> None:
        if entry.consumer is not None:
            entry.consumer.unacked -= 1
        self._broker.wake(entry.queue)

    def _ensure_open(self) -> None:
        if not self._open:
            raise ChannelClosedError("channel is closed")


class InMemoryTransport(Transport):
    """``Transport`` connecting to an ``InMemoryBroker``."""

    def __init__(self, broker: InMemoryBroker | None = None) -> None:
        self.broker = broker or InMemoryBroker()
        self._channel: InMemoryChannel | None = None
        self._on_close: CloseListener | None = None

    @property
    def channel(self) -> InMemoryChannel | None:
        return self._channel

    async def connect(self, url: str, on_close: CloseListener | None = None) -> Channel:
        if not self.broker.available:
            raise ConnectionRefusedError(f"broker at {sanitize_url(url)} refused the connection")
        self._on_close = on_close
        self._channel = InMemoryChannel(self.broker, on_close)
        self.broker.register(self)
        return self._channel

    async def close(self) -> None:
        self.drop(None)

    def drop(self, exc: BaseException | None) -> None:
        """Close the channel and then the connection, notifying the listener."""
        if self._channel is None:
            return
        self._channel.shutdown(exc)
        self._channel = None
        self.broker.unregister(self)
        if self._on_close is not None:
            self._on_close("connection", exc)


__all__ = [
    "ChannelClosedError",
    "InMemoryBroker",
    "InMemoryBrokerError",
    "InMemoryChannel",
    "InMemoryTransport",
    "NotFoundError",
    "PreconditionFailedError",
    "Settlement",
    "StoredMessage",
]
