"""
Consumer loop: one queue, one handler, bounded retry, dead-lettering.

Every delivery goes through the same state machine::

    delivered ──decode + handle ok──────────────────────────────▶ ack
        │
        └─decode error / handler error / timeout
              │
              ├─ retry_count < max_retries ─ sleep(backoff) ─ republish(x-retry-count + 1) ─▶ ack
              │                                   └─ republish failed ───────────────────▶ reject
              └─ retry_count >= max_retries ─────────────────────────────────────────────▶ reject

``reject`` never requeues: the queue's ``x-dead-letter-exchange`` argument
routes the message to the DLX and from there to the DLQ. Each delivery is
settled exactly once. A delivery cut off by ``stop()`` is not settled at
all, so the broker redelivers it when the channel closes.

Retries are republished through the default exchange to the originating
queue only; other queues bound to the fanout exchange never see them.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from opentelemetry.propagate import extract
from opentelemetry.trace import Status, StatusCode

from bookspace_bus.config import EventBusConfig
from bookspace_bus.connection import Connection
from bookspace_bus.dispatcher import HandlerAdapter
from bookspace_bus.events.base import Event, UnknownEvent
from bookspace_bus.events.registry import EventRegistry, default_registry
from bookspace_bus.exceptions import (
    DeclarationError,
    DecodeError,
    HandlerTimeoutError,
    SubscribeError,
)
from bookspace_bus.observability.attributes import (
    ATTR_EVENT_TYPE,
    ATTR_MESSAGING_DESTINATION,
    ATTR_MESSAGING_MESSAGE_ID,
    ATTR_MESSAGING_SYSTEM,
    ATTR_RETRY_COUNT,
)
from bookspace_bus.observability.tracer import SpanKindEnum, Tracer, create_tracer
from bookspace_bus.retry import (
    LAST_RETRY_AT_HEADER,
    RETRY_COUNT_HEADER,
    RetryPolicy,
    read_retry_count,
)
from bookspace_bus.topology import TopologyManager
from bookspace_bus.transport.interface import DEFAULT_EXCHANGE, Channel, Delivery, OutgoingMessage

logger = logging.getLogger(__name__)

EventHandler = Callable[[Event], Awaitable[None]]


@dataclass
class ConsumerStats:
    """
    Counters for one consumer.

    Attributes:
        messages_consumed: Deliveries received.
        messages_succeeded: Deliveries acknowledged after the handler succeeded.
        messages_failed: Deliveries whose decode or handler failed (each attempt).
        messages_retried: Retries republished.
        messages_dead_lettered: Deliveries rejected to the DLX.
        decode_errors: Bodies that could not be decoded.
        unknown_events: Deliveries with an unregistered tag (acknowledged).
        settle_errors: Failed ack/reject calls.
    """

    messages_consumed: int = 0
    messages_succeeded: int = 0
    messages_failed: int = 0
    messages_retried: int = 0
    messages_dead_lettered: int = 0
    decode_errors: int = 0
    unknown_events: int = 0
    settle_errors: int = 0
    started_at: datetime | None = None
    last_consume_at: datetime | None = None
    last_error_at: datetime | None = None


class Consumer:
    """
    Consumes one queue and drives each delivery through the retry state machine.

    Args:
        connection: Connection providing the channel
        config: Bus configuration (prefetch, retry policy, timeout)
        queue_name: Full queue name (e.g. "bookspace.notifications")
        handler: ``handler(event)``, async or sync; any exception is a failure
        registry: Registry used to decode bodies
        tracer: Optional tracer
        retry_policy: Defaults to the policy described by ``config``
    """

    def __init__(
        self,
        connection: Connection,
        config: EventBusConfig,
        queue_name: str,
        handler: EventHandler | Any,
        registry: EventRegistry | None = None,
        tracer: Tracer | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._connection = connection
        self._config = config
        self._queue_name = queue_name
        self._handler = HandlerAdapter(handler)
        self._registry = registry or default_registry
        self._tracer = tracer or create_tracer(__name__, config.enable_tracing)
        self._retry_policy = retry_policy or RetryPolicy.from_config(config)
        self._topology = TopologyManager(config)
        self._channel: Channel | None = None
        self._consumer_tag: str | None = None
        self._in_flight: set[asyncio.Task[None]] = set()
        self._stopping = False
        self._stats = ConsumerStats()

    @property
    def queue_name(self) -> str:
        return self._queue_name

    @property
    def handler_name(self) -> str:
        return self._handler.name

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry_policy

    @property
    def is_consuming(self) -> bool:
        return self._consumer_tag is not None and not self._stopping

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    @property
    def stats(self) -> ConsumerStats:
        return self._stats

    async def start(self) -> None:
        """
        Declare and bind the queue, set the prefetch, and start consuming.

        Raises:
            NotConnectedError: If there is no open channel
            DeclarationError: If the queue exists with different parameters
            SubscribeError: If the consumer cannot be started
        """
        channel = self._connection.require_channel("subscribe")
        try:
            await self._topology.declare_consumer_queue(channel, self._queue_name)
            await channel.set_prefetch(self._config.prefetch_count)
            self._channel = channel
            self._stopping = False
            self._consumer_tag = await channel.consume(self._queue_name, self._on_delivery)
        except DeclarationError:
            raise
        except Exception as e:
            logger.error(
                f"Failed to subscribe to {self._queue_name}: {e}",
                exc_info=True,
                extra={
                    "queue": self._queue_name,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )
            raise SubscribeError(self._queue_name, str(e)) from e

        self._stats.started_at = datetime.now(UTC)
        logger.info(
            f"Consuming {self._queue_name}",
            extra={
                "queue": self._queue_name,
                "handler": self._handler.name,
                "prefetch_count": self._config.prefetch_count,
                "max_retries": self._retry_policy.max_retries,
            },
        )

    async def stop(self, timeout: float | None = None) -> bool:
        """
        Stop receiving deliveries and wait for in-flight ones to settle.

        Deliveries still in flight after ``timeout`` are cancelled without
        being settled.

        Returns:
            True if every in-flight delivery settled in time
        """
        self._stopping = True
        if self._consumer_tag is not None and self._channel is not None:
            try:
                await self._channel.cancel(self._consumer_tag)
            except Exception as e:
                logger.warning(
                    f"Failed to cancel consumer on {self._queue_name}: {e}",
                    extra={"queue": self._queue_name, "error": str(e)},
                )
        self._consumer_tag = None

        if not self._in_flight:
            return True

        pending_count = len(self._in_flight)
        logger.info(
            f"Waiting for {pending_count} in-flight deliveries on {self._queue_name}",
            extra={"queue": self._queue_name, "in_flight": pending_count, "timeout": timeout},
        )
        _, pending = await asyncio.wait(set(self._in_flight), timeout=timeout)
        if not pending:
            return True

        logger.warning(
            f"Cancelling {len(pending)} unfinished deliveries on {self._queue_name}; "
            f"the broker will redeliver them",
            extra={"queue": self._queue_name, "cancelled": len(pending)},
        )
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        return False

    async def _on_delivery(self, delivery: Delivery) -> None:
        if self._stopping:
            # Left unacknowledged, redelivered once the channel closes
            return
        task = asyncio.get_running_loop().create_task(self._process(delivery))
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)

    async def _process(self, delivery: Delivery) -> None:
        retry_count = read_retry_count(delivery.headers)
        event_type = str(delivery.headers.get("event_type", "unknown"))
        self._stats.messages_consumed += 1
        self._stats.last_consume_at = datetime.now(UTC)

        logger.debug(
            f"Processing {event_type} (attempt {retry_count + 1})",
            extra={
                "queue": self._queue_name,
                "event_type": event_type,
                "message_id": delivery.message_id,
                "retry_count": retry_count,
            },
        )

        span = self._tracer.start_span(
            "bookspace_bus.consume",
            kind=SpanKindEnum.CONSUMER,
            attributes={
                ATTR_MESSAGING_SYSTEM: "rabbitmq",
                ATTR_MESSAGING_DESTINATION: self._queue_name,
                ATTR_MESSAGING_MESSAGE_ID: delivery.message_id or "",
                ATTR_EVENT_TYPE: event_type,
                ATTR_RETRY_COUNT: retry_count,
            },
            context=extract(_text_headers(delivery.headers)) if self._tracer.enabled else None,
        )

        try:
            try:
                event = self._registry.decode(delivery.body)
                if isinstance(event, UnknownEvent):
                    self._stats.unknown_events += 1
                await self._invoke(event)
            except Exception as e:
                self._stats.messages_failed += 1
                self._stats.last_error_at = datetime.now(UTC)
                if isinstance(e, DecodeError):
                    self._stats.decode_errors += 1
                if span is not None:
                    span.set_status(Status(StatusCode.ERROR, str(e)))
                    span.record_exception(e)
                logger.error(
                    f"Failed to process {event_type}: {e}",
                    exc_info=True,
                    extra={
                        "queue": self._queue_name,
                        "event_type": event_type,
                        "message_id": delivery.message_id,
                        "retry_count": retry_count,
                        "error": str(e),
                        "error_type": type(e).__name__,
                    },
                )
                await self._handle_failure(delivery, retry_count, event_type)
                return

            await self._ack(delivery)
            self._stats.messages_succeeded += 1
            if span is not None:
                span.set_status(Status(StatusCode.OK))
            logger.debug(
                f"Processed {event_type}",
                extra={
                    "queue": self._queue_name,
                    "event_type": event_type,
                    "message_id": delivery.message_id,
                    "retry_count": retry_count,
                },
            )
        finally:
            if span is not None:
                span.end()

    async def _invoke(self, event: Event) -> None:
        timeout = self._config.handler_timeout
        if timeout is None:
            await self._handler.handle(event)
            return
        try:
            await asyncio.wait_for(self._handler.handle(event), timeout=timeout)
        except TimeoutError as e:
            raise HandlerTimeoutError(self._handler.name, event.tag, timeout) from e

    async def _handle_failure(self, delivery: Delivery, retry_count: int, event_type: str) -> None:
        if not self._retry_policy.should_retry(retry_count):
            await self._reject(delivery)
            self._stats.messages_dead_lettered += 1
            logger.warning(
                f"Dead-lettering {event_type} after {retry_count} retries",
                extra={
                    "queue": self._queue_name,
                    "event_type": event_type,
                    "message_id": delivery.message_id,
                    "retry_count": retry_count,
                    "dlx": self._config.dead_letter_exchange_name,
                },
            )
            return

        delay = self._retry_policy.delay_for(retry_count)
        next_retry = retry_count + 1
        logger.info(
            f"Scheduling retry {next_retry}/{self._retry_policy.max_retries} "
            f"for {event_type} after {delay:.2f}s delay",
            extra={
                "queue": self._queue_name,
                "event_type": event_type,
                "message_id": delivery.message_id,
                "retry_count": retry_count,
                "next_retry": next_retry,
                "delay_seconds": delay,
            },
        )

        try:
            if delay > 0:
                await asyncio.sleep(delay)
            await self._republish(delivery, next_retry)
        except Exception as e:
            logger.error(
                f"Failed to republish {event_type} for retry, dead-lettering: {e}",
                exc_info=True,
                extra={
                    "queue": self._queue_name,
                    "event_type": event_type,
                    "message_id": delivery.message_id,
                    "retry_count": retry_count,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )
            await self._reject(delivery)
            self._stats.messages_dead_lettered += 1
            return

        await self._ack(delivery)
        self._stats.messages_retried += 1

    async def _republish(self, delivery: Delivery, retry_count: int) -> None:
        channel = self._connection.require_channel("republish for retry")
        headers = dict(delivery.headers)
        headers[RETRY_COUNT_HEADER] = retry_count
        headers[LAST_RETRY_AT_HEADER] = datetime.now(UTC).isoformat()

        message = OutgoingMessage(
            body=delivery.body,
            headers=headers,
            content_type=delivery.content_type or "application/json",
            persistent=True,
            timestamp=delivery.timestamp,
            message_id=delivery.message_id,
        )
        await channel.publish(DEFAULT_EXCHANGE, message, routing_key=self._queue_name)

    async def _ack(self, delivery: Delivery) -> None:
        try:
            await self._settle_channel().ack(delivery)
        except Exception as e:
            self._log_settle_error("ack", delivery, e)

    async def _reject(self, delivery: Delivery) -> None:
        try:
            await self._settle_channel().reject(delivery, requeue=False)
        except Exception as e:
            self._log_settle_error("reject", delivery, e)

    def _settle_channel(self) -> Channel:
        # Deliveries can only be settled on the channel they arrived on
        if self._channel is None:
            return self._connection.require_channel("settle a delivery")
        return self._channel

    def _log_settle_error(self, action: str, delivery: Delivery, error: Exception) -> None:
        self._stats.settle_errors += 1
        logger.error(
            f"Failed to {action} delivery {delivery.delivery_tag} on {self._queue_name}: {error}",
            exc_info=True,
            extra={
                "queue": self._queue_name,
                "delivery_tag": delivery.delivery_tag,
                "message_id": delivery.message_id,
                "error": str(error),
                "error_type": type(error).__name__,
            },
        )


def _text_headers(headers: dict[str, Any]) -> dict[str, str]:
    return {key: value for key, value in headers.items() if isinstance(value, str)}


__all__ = ["Consumer", "ConsumerStats", "EventHandler"]
