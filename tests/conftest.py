"""
Shared pytest fixtures for the bookspace_bus tests.

- ``config``: fast retry settings, tracing off
- ``broker`` / ``transport``: in-memory broker shared by the test
- ``bus``: a connected ``EventBus`` on the in-memory transport, shut down
  after the test
- ``bus_factory``: connected buses with config overrides, one transport each
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from typing import Any

import pytest
import pytest_asyncio

from bookspace_bus.bus import EventBus
from bookspace_bus.config import EventBusConfig
from bookspace_bus.connection import Connection
from bookspace_bus.transport.memory import InMemoryBroker, InMemoryTransport
from tests.fixtures import BusFactory


@pytest.fixture
def config() -> EventBusConfig:
    """Bus configuration with millisecond backoff and no tracing."""
    return EventBusConfig(
        retry_base_delay=0.01,
        enable_tracing=False,
        shutdown_timeout=2.0,
    )


@pytest.fixture
def broker() -> InMemoryBroker:
    return InMemoryBroker()


@pytest.fixture
def transport(broker: InMemoryBroker) -> InMemoryTransport:
    return InMemoryTransport(broker)


@pytest_asyncio.fixture
async def connection(
    config: EventBusConfig, transport: InMemoryTransport
) -> AsyncGenerator[Connection, None]:
    """An open connection on the in-memory transport."""
    conn = Connection(config, transport)
    await conn.connect()
    yield conn
    await conn.close()


@pytest_asyncio.fixture
async def bus(
    config: EventBusConfig, transport: InMemoryTransport
) -> AsyncGenerator[EventBus, None]:
    """A connected bus with its topology declared."""
    event_bus = EventBus(config, transport=transport)
    await event_bus.connect()
    yield event_bus
    await event_bus.shutdown(timeout=1.0)


@pytest_asyncio.fixture
async def bus_factory(broker: InMemoryBroker) -> AsyncGenerator[BusFactory, None]:
    """
    Build connected buses on the shared broker, each with its own transport.

    Keyword arguments override the fast test defaults of ``EventBusConfig``.
    """
    buses: list[EventBus] = []

    async def factory(**overrides: Any) -> EventBus:
        settings: dict[str, Any] = {
            "retry_base_delay": 0.01,
            "enable_tracing": False,
            "shutdown_timeout": 2.0,
        }
        settings.update(overrides)
        event_bus = EventBus(EventBusConfig(**settings), transport=InMemoryTransport(broker))
        await event_bus.connect()
        buses.append(event_bus)
        return event_bus

    yield factory
    for event_bus in buses:
        await event_bus.shutdown(timeout=0.5)
