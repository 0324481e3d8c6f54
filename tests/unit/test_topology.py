"""Unit tests for TopologyManager against the in-memory broker."""

from __future__ import annotations

import pytest

from bookspace_bus.config import EventBusConfig
from bookspace_bus.connection import Connection
from bookspace_bus.exceptions import DeclarationError
from bookspace_bus.topology import TopologyManager, declare_topology
from bookspace_bus.transport.interface import ExchangeKind
from bookspace_bus.transport.memory import InMemoryBroker


class TestDeclare:
    """Tests for the exchange, DLX and DLQ declaration."""

    @pytest.mark.asyncio
    async def test_declares_exchange_dlx_and_dlq(
        self, connection: Connection, broker: InMemoryBroker, config: EventBusConfig
    ) -> None:
        await declare_topology(connection.channel, config)

        assert broker.exchange_kind("bookspace.events") == ExchangeKind.FANOUT
        assert broker.exchange_kind("bookspace.events.dlx") == ExchangeKind.FANOUT
        assert broker.has_queue("bookspace.events.dlq")
        assert broker.bindings("bookspace.events.dlx") == ["bookspace.events.dlq"]
        # Nothing is bound to the primary exchange until a consumer subscribes
        assert broker.bindings("bookspace.events") == []

    @pytest.mark.asyncio
    async def test_declare_is_idempotent(
        self, connection: Connection, broker: InMemoryBroker, config: EventBusConfig
    ) -> None:
        topology = TopologyManager(config)

        await topology.declare(connection.channel)
        await topology.declare(connection.channel)

        assert broker.bindings("bookspace.events.dlx") == ["bookspace.events.dlq"]

    @pytest.mark.asyncio
    async def test_dlq_disabled(self, connection: Connection, broker: InMemoryBroker) -> None:
        """Test the DLQ is not declared when disabled; the DLX still is."""
        config = EventBusConfig(enable_dead_letter_queue=False, enable_tracing=False)

        await TopologyManager(config).declare(connection.channel)

        assert broker.has_exchange("bookspace.events.dlx")
        assert not broker.has_queue("bookspace.events.dlq")

    @pytest.mark.asyncio
    async def test_mismatched_exchange_raises_declaration_error(
        self, connection: Connection, broker: InMemoryBroker, config: EventBusConfig
    ) -> None:
        """Test an existing exchange of another type fails the declaration."""
        broker.declare_exchange("bookspace.events", ExchangeKind.DIRECT, durable=True)

        with pytest.raises(DeclarationError) as exc_info:
            await TopologyManager(config).declare(connection.channel)

        assert exc_info.value.entity == "exchange"
        assert exc_info.value.name == "bookspace.events"

    @pytest.mark.asyncio
    async def test_mismatched_durability_raises_declaration_error(
        self, connection: Connection, broker: InMemoryBroker
    ) -> None:
        broker.declare_exchange("bookspace.events", ExchangeKind.FANOUT, durable=True)
        config = EventBusConfig(durable=False, enable_tracing=False)

        with pytest.raises(DeclarationError):
            await TopologyManager(config).declare(connection.channel)


class TestConsumerQueue:
    """Tests for consumer queue declaration."""

    @pytest.mark.asyncio
    async def test_consumer_queue_has_dlx_and_binding(
        self, connection: Connection, broker: InMemoryBroker, config: EventBusConfig
    ) -> None:
        topology = TopologyManager(config)
        await topology.declare(connection.channel)

        await topology.declare_consumer_queue(connection.channel, "bookspace.notifications")

        assert broker.queue_arguments("bookspace.notifications") == {
            "x-dead-letter-exchange": "bookspace.events.dlx"
        }
        assert broker.bindings("bookspace.events") == ["bookspace.notifications"]

    @pytest.mark.asyncio
    async def test_queue_with_other_arguments_raises(
        self, connection: Connection, broker: InMemoryBroker, config: EventBusConfig
    ) -> None:
        """Test a pre-existing queue without the DLX argument is a declaration error."""
        topology = TopologyManager(config)
        await topology.declare(connection.channel)
        broker.declare_queue("bookspace.notifications", durable=True, arguments={})

        with pytest.raises(DeclarationError) as exc_info:
            await topology.declare_consumer_queue(connection.channel, "bookspace.notifications")

        assert exc_info.value.entity == "queue"

    @pytest.mark.asyncio
    async def test_binding_to_missing_exchange_raises(
        self, connection: Connection, config: EventBusConfig
    ) -> None:
        """Test binding before the exchange exists is a declaration error."""
        with pytest.raises(DeclarationError) as exc_info:
            await TopologyManager(config).declare_consumer_queue(
                connection.channel, "bookspace.notifications"
            )

        assert exc_info.value.entity == "binding"
