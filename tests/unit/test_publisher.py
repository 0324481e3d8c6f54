"""Unit tests for the Publisher."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio

from bookspace_bus.config import EventBusConfig
from bookspace_bus.connection import Connection
from bookspace_bus.exceptions import NotConnectedError, PublishError
from bookspace_bus.observability.attributes import ATTR_EVENT_TYPE, ATTR_MESSAGING_DESTINATION
from bookspace_bus.observability.tracer import MockTracer
from bookspace_bus.publisher import Publisher
from bookspace_bus.topology import declare_topology
from bookspace_bus.transport.memory import InMemoryBroker, InMemoryTransport
from tests.fixtures import document_created


@pytest_asyncio.fixture
async def bound_connection(
    connection: Connection, broker: InMemoryBroker, config: EventBusConfig
) -> Connection:
    """Connection with the topology declared and one queue bound to the exchange."""
    await declare_topology(connection.channel, config)
    broker.declare_queue("observer", durable=True, arguments={})
    broker.bind("observer", config.exchange_name, "")
    return connection


class TestBuildMessage:
    """Tests for message construction."""

    def test_message_properties(self, config: EventBusConfig) -> None:
        publisher = Publisher(Connection(config, InMemoryTransport()), config)
        event = document_created(correlation_id="req-1")

        message = publisher.build_message(event)

        assert json.loads(message.body)["type"] == "document.created"
        assert message.headers == {"event_type": "document.created", "correlation_id": "req-1"}
        assert message.content_type == "application/json"
        assert message.persistent is True
        assert message.timestamp is not None
        assert message.message_id

    def test_no_correlation_header_without_id(self, config: EventBusConfig) -> None:
        publisher = Publisher(Connection(config, InMemoryTransport()), config)

        message = publisher.build_message(document_created())

        assert "correlation_id" not in message.headers

    def test_message_ids_are_unique(self, config: EventBusConfig) -> None:
        publisher = Publisher(Connection(config, InMemoryTransport()), config)
        event = document_created()

        first = publisher.build_message(event)
        second = publisher.build_message(event)

        assert first.message_id != second.message_id


class TestPublish:
    """Tests for publishing through a channel."""

    @pytest.mark.asyncio
    async def test_publish_without_connection_raises(self, config: EventBusConfig) -> None:
        """Test publishing before connect raises NotConnectedError."""
        publisher = Publisher(Connection(config, InMemoryTransport()), config)

        with pytest.raises(NotConnectedError, match="publish"):
            await publisher.publish(document_created())

    @pytest.mark.asyncio
    async def test_publish_routes_to_bound_queues(
        self, bound_connection: Connection, broker: InMemoryBroker, config: EventBusConfig
    ) -> None:
        publisher = Publisher(bound_connection, config)

        await publisher.publish(document_created(correlation_id="req-1"))

        [stored] = broker.messages("observer")
        assert stored.exchange == "bookspace.events"
        assert stored.routing_key == ""
        assert stored.headers["event_type"] == "document.created"
        assert stored.persistent is True
        assert publisher.stats.events_published == 1
        assert publisher.stats.last_publish_at is not None

    @pytest.mark.asyncio
    async def test_publish_without_bound_queue_succeeds(
        self, connection: Connection, config: EventBusConfig
    ) -> None:
        """Test an event with no bound queue is discarded by the broker, not an error."""
        await declare_topology(connection.channel, config)
        publisher = Publisher(connection, config)

        await publisher.publish(document_created())

        assert publisher.stats.events_published == 1

    @pytest.mark.asyncio
    async def test_broker_failure_raises_publish_error(
        self, bound_connection: Connection, config: EventBusConfig
    ) -> None:
        publisher = Publisher(bound_connection, config)

        with patch.object(
            bound_connection.channel,
            "publish",
            AsyncMock(side_effect=RuntimeError("channel error")),
        ):
            with pytest.raises(PublishError) as exc_info:
                await publisher.publish(document_created())

        assert exc_info.value.event_type == "document.created"
        assert "channel error" in str(exc_info.value)
        assert publisher.stats.publish_failures == 1
        assert publisher.stats.events_published == 0

    @pytest.mark.asyncio
    async def test_publish_span(
        self, bound_connection: Connection, config: EventBusConfig
    ) -> None:
        """Test publishing records a producer span named for the operation."""
        tracer = MockTracer()
        publisher = Publisher(bound_connection, config, tracer=tracer)

        await publisher.publish(document_created())

        assert tracer.span_names == ["bookspace_bus.publish"]
        _, attributes = tracer.spans[0]
        assert attributes is not None
        assert attributes[ATTR_EVENT_TYPE] == "document.created"
        assert attributes[ATTR_MESSAGING_DESTINATION] == "bookspace.events"
