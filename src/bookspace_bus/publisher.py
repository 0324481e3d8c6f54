"""
Publisher: serializes events and writes them to the primary exchange.

Publishing is fire-and-forget unless ``publisher_confirms`` is enabled on
the transport, in which case ``publish`` returns after the broker confirms.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from opentelemetry.propagate import inject
from opentelemetry.trace import Status, StatusCode, set_span_in_context

from bookspace_bus.config import EventBusConfig
from bookspace_bus.connection import Connection
from bookspace_bus.events.base import Event
from bookspace_bus.events.registry import EventRegistry, default_registry
from bookspace_bus.exceptions import NotConnectedError, PublishError
from bookspace_bus.observability.attributes import (
    ATTR_CORRELATION_ID,
    ATTR_EVENT_TYPE,
    ATTR_MESSAGING_DESTINATION,
    ATTR_MESSAGING_MESSAGE_ID,
    ATTR_MESSAGING_SYSTEM,
)
from bookspace_bus.observability.tracer import SpanKindEnum, Tracer, create_tracer
from bookspace_bus.transport.interface import OutgoingMessage

logger = logging.getLogger(__name__)


@dataclass
class PublisherStats:
    """Counters for the publisher."""

    events_published: int = 0
    publish_failures: int = 0
    last_publish_at: datetime | None = None
    last_error_at: datetime | None = None


class Publisher:
    """
    Publishes events to ``<namespace>.events`` with an empty routing key.

    Every message is persistent, JSON, timestamped, and carries the
    ``event_type`` header (and ``correlation_id`` when set) alongside the
    trace context.

    Args:
        connection: Connection providing the channel
        config: Bus configuration
        registry: Registry used to encode events
        tracer: Optional tracer; defaults to one built from ``config``
    """

    def __init__(
        self,
        connection: Connection,
        config: EventBusConfig,
        registry: EventRegistry | None = None,
        tracer: Tracer | None = None,
    ) -> None:
        self._connection = connection
        self._config = config
        self._registry = registry or default_registry
        self._tracer = tracer or create_tracer(__name__, config.enable_tracing)
        self._stats = PublisherStats()

    @property
    def stats(self) -> PublisherStats:
        return self._stats

    def build_message(self, event: Event) -> OutgoingMessage:
        """Build the outgoing message for an event (without trace context)."""
        headers: dict[str, Any] = {"event_type": event.tag}
        if event.correlation_id is not None:
            headers["correlation_id"] = event.correlation_id

        return OutgoingMessage(
            body=self._registry.encode(event),
            headers=headers,
            content_type="application/json",
            persistent=True,
            timestamp=datetime.now(UTC),
            message_id=str(uuid.uuid4()),
        )

    async def publish(self, event: Event) -> None:
        """
        Publish an event to the primary exchange.

        Raises:
            NotConnectedError: If there is no open channel
            PublishError: If the broker write fails
        """
        channel = self._connection.require_channel("publish")
        message = self.build_message(event)
        exchange = self._config.exchange_name

        span = self._tracer.start_span(
            "bookspace_bus.publish",
            kind=SpanKindEnum.PRODUCER,
            attributes={
                ATTR_MESSAGING_SYSTEM: "rabbitmq",
                ATTR_MESSAGING_DESTINATION: exchange,
                ATTR_MESSAGING_MESSAGE_ID: message.message_id or "",
                ATTR_EVENT_TYPE: event.tag,
                ATTR_CORRELATION_ID: event.correlation_id or "",
            },
        )
        if span is not None:
            inject(message.headers, context=set_span_in_context(span))

        try:
            await channel.publish(exchange, message, routing_key="")
        except NotConnectedError:
            raise
        except Exception as e:
            self._stats.publish_failures += 1
            self._stats.last_error_at = datetime.now(UTC)
            if span is not None:
                span.set_status(Status(StatusCode.ERROR, str(e)))
                span.record_exception(e)
            logger.error(
                f"Failed to publish {event.tag}: {e}",
                exc_info=True,
                extra={
                    "event_type": event.tag,
                    "message_id": message.message_id,
                    "exchange": exchange,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )
            raise PublishError(event.tag, str(e)) from e
        finally:
            if span is not None:
                span.end()

        self._stats.events_published += 1
        self._stats.last_publish_at = datetime.now(UTC)
        logger.debug(
            f"Published {event.tag}",
            extra={
                "event_type": event.tag,
                "message_id": message.message_id,
                "correlation_id": event.correlation_id,
                "exchange": exchange,
            },
        )


__all__ = ["Publisher", "PublisherStats"]
