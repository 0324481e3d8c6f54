"""
aio-pika backed transport for RabbitMQ.

Uses a plain (non-robust) connection: reconnection is the process
supervisor's job. Connection and channel closures are surfaced through the
``on_close`` listener given to ``connect``.

Example:
    >>> transport = RabbitMQTransport.from_config(config)
    >>> channel = await transport.connect(config.rabbitmq_url)
    >>> await channel.declare_exchange("bookspace.events", ExchangeKind.FANOUT)
"""

from __future__ import annotations

import asyncio
import logging
import ssl
from typing import TYPE_CHECKING, Any

import aio_pika
from aio_pika import DeliveryMode, ExchangeType, Message
from aio_pika.abc import (
    AbstractChannel,
    AbstractConnection,
    AbstractExchange,
    AbstractIncomingMessage,
    AbstractQueue,
)
from aio_pika.exceptions import ChannelNotFoundEntity

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

if TYPE_CHECKING:
    from bookspace_bus.config import EventBusConfig

logger = logging.getLogger(__name__)

_EXCHANGE_TYPES = {
    ExchangeKind.FANOUT: ExchangeType.FANOUT,
    ExchangeKind.DIRECT: ExchangeType.DIRECT,
}


def create_ssl_context(config: EventBusConfig) -> ssl.SSLContext | None:
    """
    Create an SSL context from the bus configuration.

    Priority order:
    1. ``ssl_context`` if explicitly provided
    2. A context built from ``ca_file`` / ``cert_file`` / ``key_file``
    3. A default context if the URL uses amqps://
    4. None for plaintext connections

    Raises:
        ssl.SSLError: If certificate files cannot be loaded
        FileNotFoundError: If certificate files don't exist
    """
    needs_tls = (
        config.rabbitmq_url.startswith("amqps://")
        or config.ssl_context is not None
        or config.ca_file is not None
        or config.cert_file is not None
    )
    if not needs_tls:
        return None

    if config.ssl_context is not None:
        logger.debug("Using pre-configured SSL context")
        return config.ssl_context

    ctx = ssl.create_default_context(purpose=ssl.Purpose.SERVER_AUTH)

    if config.ca_file:
        logger.debug("Loading CA certificate", extra={"ca_file": config.ca_file})
        ctx.load_verify_locations(cafile=config.ca_file)

    if config.cert_file and config.key_file:
        logger.debug(
            "Loading client certificate for mutual TLS",
            extra={"cert_file": config.cert_file, "key_file": config.key_file},
        )
        ctx.load_cert_chain(certfile=config.cert_file, keyfile=config.key_file)
    elif config.cert_file or config.key_file:
        logger.warning(
            "Both cert_file and key_file must be provided for mutual TLS. "
            "Client certificate authentication will not be used.",
            extra={"cert_file": config.cert_file, "key_file": config.key_file},
        )

    if not config.verify_ssl:
        ctx.check_hostname = False
        ctx.verify_mode = ssl.CERT_NONE
        logger.warning(
            "SSL certificate verification disabled - NOT RECOMMENDED for production",
            extra={"verify_ssl": False},
        )

    return ctx


def to_delivery(message: AbstractIncomingMessage, queue: str) -> Delivery:
    """Convert an aio-pika message to a transport-neutral ``Delivery``."""
    return Delivery(
        delivery_tag=message.delivery_tag or 0,
        body=message.body,
        queue=queue,
        headers=dict(message.headers or {}),
        content_type=message.content_type,
        message_id=message.message_id,
        timestamp=message.timestamp,
        redelivered=bool(message.redelivered),
        exchange=message.exchange or "",
        routing_key=message.routing_key or "",
        raw=message,
    )


class RabbitMQChannel(Channel):
    """``Channel`` over an aio-pika channel; operations are serialized with a lock."""

    def __init__(
        self,
        channel: AbstractChannel,
        connection: AbstractConnection | None = None,
    ) -> None:
        self._channel = channel
        self._connection = connection
        self._lock = asyncio.Lock()
        self._exchanges: dict[str, AbstractExchange] = {}
        self._queues: dict[str, AbstractQueue] = {}
        self._consumers: dict[str, AbstractQueue] = {}

    @property
    def is_open(self) -> bool:
        return not self._channel.is_closed

    async def declare_exchange(self, name: str, kind: ExchangeKind, durable: bool = True) -> None:
        async with self._lock:
            self._exchanges[name] = await self._channel.declare_exchange(
                name,
                _EXCHANGE_TYPES[kind],
                durable=durable,
            )

    async def declare_queue(
        self,
        name: str,
        durable: bool = True,
        arguments: dict[str, Any] | None = None,
    ) -> None:
        async with self._lock:
            self._queues[name] = await self._channel.declare_queue(
                name,
                durable=durable,
                arguments=arguments,
            )

    async def bind_queue(self, queue: str, exchange: str, routing_key: str = "") -> None:
        async with self._lock:
            amqp_queue = await self._get_queue(queue)
            await amqp_queue.bind(exchange, routing_key=routing_key)

    async def set_prefetch(self, count: int) -> None:
        async with self._lock:
            await self._channel.set_qos(prefetch_count=count)

    async def publish(
        self,
        exchange: str,
        message: OutgoingMessage,
        routing_key: str = "",
    ) -> None:
        amqp_message = Message(
            body=message.body,
            headers=message.headers,
            content_type=message.content_type,
            delivery_mode=(
                DeliveryMode.PERSISTENT if message.persistent else DeliveryMode.NOT_PERSISTENT
            ),
            timestamp=message.timestamp,
            message_id=message.message_id,
        )
        async with self._lock:
            amqp_exchange = await self._get_exchange(exchange)
            await amqp_exchange.publish(amqp_message, routing_key=routing_key)

    async def consume(self, queue: str, callback: DeliveryCallback) -> str:
        async def on_message(message: AbstractIncomingMessage) -> None:
            await callback(to_delivery(message, queue))

        async with self._lock:
            amqp_queue = await self._get_queue(queue)
            consumer_tag = await amqp_queue.consume(on_message, no_ack=False)
            self._consumers[consumer_tag] = amqp_queue
            return consumer_tag

    async def cancel(self, consumer_tag: str) -> None:
        async with self._lock:
            amqp_queue = self._consumers.pop(consumer_tag, None)
            if amqp_queue is not None and not self._channel.is_closed:
                await amqp_queue.cancel(consumer_tag)

    async def ack(self, delivery: Delivery) -> None:
        async with self._lock:
            await delivery.raw.ack()

    async def reject(self, delivery: Delivery, requeue: bool = False) -> None:
        async with self._lock:
            await delivery.raw.reject(requeue=requeue)

    async def get(self, queue: str) -> Delivery | None:
        async with self._lock:
            amqp_queue = await self._get_queue(queue)
            message = await amqp_queue.get(no_ack=False, fail=False)
        if message is None:
            return None
        return to_delivery(message, queue)

    async def purge(self, queue: str) -> int:
        async with self._lock:
            amqp_queue = await self._get_queue(queue)
            result = await amqp_queue.purge()
        return int(result.message_count or 0)

    async def queue_depth(self, queue: str) -> int:
        async with self._lock:
            amqp_queue = await self._channel.declare_queue(queue, passive=True)
        return int(amqp_queue.declaration_result.message_count or 0)

    async def queue_exists(self, queue: str) -> bool:
        # A passive declare of a missing queue closes the channel it runs on,
        # so it goes through a throwaway channel
        if self._connection is None:
            raise RuntimeError("queue_exists requires the channel's connection")
        check_channel = await self._connection.channel()
        try:
            await check_channel.declare_queue(queue, passive=True)
        except ChannelNotFoundEntity:
            return False
        finally:
            if not check_channel.is_closed:
                await check_channel.close()
        return True

    async def close(self) -> None:
        if not self._channel.is_closed:
            await self._channel.close()
        self._consumers.clear()

    async def _get_exchange(self, name: str) -> AbstractExchange:
        if name == DEFAULT_EXCHANGE:
            return self._channel.default_exchange
        exchange = self._exchanges.get(name)
        if exchange is None:
            exchange = await self._channel.get_exchange(name, ensure=True)
            self._exchanges[name] = exchange
        return exchange

    async def _get_queue(self, name: str) -> AbstractQueue:
        queue = self._queues.get(name)
        if queue is None:
            queue = await self._channel.get_queue(name, ensure=True)
            self._queues[name] = queue
        return queue


class RabbitMQTransport(Transport):
    """
    Transport over a single aio-pika connection and channel.

    Args:
        heartbeat: AMQP heartbeat interval in seconds
        ssl_context: TLS context, or None for plaintext
        publisher_confirms: Wait for broker confirms on publish
    """

    def __init__(
        self,
        heartbeat: int = 60,
        ssl_context: ssl.SSLContext | None = None,
        publisher_confirms: bool = False,
    ) -> None:
        self._heartbeat = heartbeat
        self._ssl_context = ssl_context
        self._publisher_confirms = publisher_confirms
        self._connection: AbstractConnection | None = None
        self._channel: RabbitMQChannel | None = None
        self._on_close: CloseListener | None = None
        self._closing = False

    @classmethod
    def from_config(cls, config: EventBusConfig) -> RabbitMQTransport:
        """Build a transport from the heartbeat, confirm and TLS settings of ``config``."""
        return cls(
            heartbeat=config.heartbeat,
            ssl_context=create_ssl_context(config),
            publisher_confirms=config.publisher_confirms,
        )

    @property
    def tls_enabled(self) -> bool:
        return self._ssl_context is not None

    async def connect(self, url: str, on_close: CloseListener | None = None) -> Channel:
        self._on_close = on_close
        self._closing = False

        connect_kwargs: dict[str, Any] = {"heartbeat": self._heartbeat}
        if self._ssl_context is not None:
            connect_kwargs["ssl_context"] = self._ssl_context

        try:
            self._connection = await aio_pika.connect(url, **connect_kwargs)
            # aio-pika's type hints are inconsistent with actual usage
            self._connection.close_callbacks.add(self._on_connection_close)  # type: ignore[arg-type]

            amqp_channel = await self._connection.channel(
                publisher_confirms=self._publisher_confirms,
            )
            amqp_channel.close_callbacks.add(self._on_channel_close)  # type: ignore[arg-type]
        except BaseException:
            await self.close()
            raise

        self._channel = RabbitMQChannel(amqp_channel, self._connection)

        logger.debug(
            "Opened AMQP connection and channel",
            extra={
                "rabbitmq_url": sanitize_url(url),
                "tls_enabled": self.tls_enabled,
                "publisher_confirms": self._publisher_confirms,
            },
        )
        return self._channel

    async def close(self) -> None:
        self._closing = True
        if self._channel is not None:
            await self._channel.close()
            self._channel = None
        if self._connection is not None and not self._connection.is_closed:
            await self._connection.close()
        self._connection = None

    def _on_connection_close(self, sender: Any, exception: BaseException | None = None) -> None:
        self._notify("connection", exception)

    def _on_channel_close(self, sender: Any, exception: BaseException | None = None) -> None:
        self._notify("channel", exception)

    def _notify(self, scope: str, exception: BaseException | None) -> None:
        if self._on_close is None:
            return
        # Closes we requested ourselves are reported without an exception
        self._on_close(scope, None if self._closing else exception)


__all__ = [
    "RabbitMQChannel",
    "RabbitMQTransport",
    "create_ssl_context",
    "to_delivery",
]
