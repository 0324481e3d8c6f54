"""Unit tests for the bookspace-bus command line."""

from __future__ import annotations

import asyncio
import json
from typing import Any

import pytest
from click.testing import CliRunner

from bookspace_bus.bus import EventBus
from bookspace_bus.cli import cli, run_worker
from bookspace_bus.config import BusSettings, EventBusConfig
from bookspace_bus.transport.interface import ExchangeKind
from bookspace_bus.transport.memory import InMemoryBroker, InMemoryTransport
from tests.fixtures import document_created, publish_raw, wait_until

EXCHANGE = "bookspace.events"
DLX = "bookspace.events.dlx"
DLQ = "bookspace.events.dlq"
QUEUE = "bookspace.notifications"


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def obj(broker: InMemoryBroker) -> dict[str, Any]:
    """Click context object pointing every command at the in-memory broker."""
    settings = BusSettings(namespace="bookspace", retry_base_delay=0.01, enable_tracing=False)
    return {"settings": settings, "transport": InMemoryTransport(broker)}


def seed_dead_letters(broker: InMemoryBroker, count: int) -> None:
    """Put ``count`` messages that died in the notifications queue into the DLQ."""
    broker.declare_exchange(DLX, ExchangeKind.FANOUT, durable=True)
    broker.declare_queue(DLQ, durable=True, arguments={})
    broker.bind(DLQ, DLX, "")
    broker.declare_queue(QUEUE, durable=True, arguments={"x-dead-letter-exchange": DLX})
    for index in range(count):
        body = document_created(document_id=f"d{index}").to_json()
        publish_raw(
            broker,
            "",
            body.encode("utf-8"),
            headers={
                "event_type": "document.created",
                "x-retry-count": 3,
                "x-death": [{"count": 1, "queue": QUEUE, "reason": "rejected"}],
                "x-first-death-queue": QUEUE,
                "x-first-death-reason": "rejected",
            },
            routing_key=DLQ,
        )


def bind_observer(broker: InMemoryBroker) -> None:
    broker.declare_exchange(EXCHANGE, ExchangeKind.FANOUT, durable=True)
    broker.declare_queue("observer", durable=True, arguments={})
    broker.bind("observer", EXCHANGE, "")


class TestPublishCommand:
    """Tests for `bookspace-bus publish`."""

    def test_publish(self, runner: CliRunner, obj: dict[str, Any], broker: InMemoryBroker) -> None:
        bind_observer(broker)
        data = {"documentId": "d1", "title": "API Guide", "createdBy": "u1"}

        result = runner.invoke(
            cli,
            [
                "publish",
                "document.created",
                "--data",
                json.dumps(data),
                "--correlation-id",
                "req-1",
            ],
            obj=obj,
        )

        assert result.exit_code == 0, result.output
        assert "Published document.created" in result.stdout
        [message] = broker.messages("observer")
        assert message.headers["event_type"] == "document.created"
        assert message.headers["correlation_id"] == "req-1"
        envelope = json.loads(message.body)
        assert envelope["data"]["documentId"] == "d1"
        assert envelope["correlationId"] == "req-1"

    def test_invalid_json(self, runner: CliRunner, obj: dict[str, Any]) -> None:
        result = runner.invoke(cli, ["publish", "document.created", "--data", "{nope"], obj=obj)

        assert result.exit_code == 2
        assert "not valid JSON" in result.output

    def test_unknown_event_type(self, runner: CliRunner, obj: dict[str, Any]) -> None:
        result = runner.invoke(cli, ["publish", "document.archived", "--data", "{}"], obj=obj)

        assert result.exit_code == 2
        assert "unknown event type 'document.archived'" in result.output

    def test_payload_mismatch(self, runner: CliRunner, obj: dict[str, Any]) -> None:
        result = runner.invoke(
            cli, ["publish", "document.created", "--data", '{"documentId": "d1"}'], obj=obj
        )

        assert result.exit_code == 2

    def test_broker_unavailable(
        self, runner: CliRunner, obj: dict[str, Any], broker: InMemoryBroker
    ) -> None:
        broker.available = False
        data = {"documentId": "d1", "title": "API Guide", "createdBy": "u1"}

        result = runner.invoke(
            cli, ["publish", "document.created", "--data", json.dumps(data)], obj=obj
        )

        assert result.exit_code == 1
        assert "Cannot connect to broker" in result.output
        assert "guest:guest" not in result.output


class TestDeadLetterCommands:
    """Tests for `bookspace-bus dlq ...`."""

    def test_count(self, runner: CliRunner, obj: dict[str, Any], broker: InMemoryBroker) -> None:
        seed_dead_letters(broker, 2)

        result = runner.invoke(cli, ["dlq", "count"], obj=obj)

        assert result.exit_code == 0, result.output
        assert result.stdout.strip() == "2"

    def test_peek(self, runner: CliRunner, obj: dict[str, Any], broker: InMemoryBroker) -> None:
        seed_dead_letters(broker, 3)

        result = runner.invoke(cli, ["dlq", "peek", "--limit", "2"], obj=obj)

        assert result.exit_code == 0, result.output
        entries = [json.loads(line) for line in result.stdout.splitlines() if line.strip()]
        assert len(entries) == 2
        assert entries[0]["event_type"] == "document.created"
        assert entries[0]["first_death_queue"] == QUEUE
        assert entries[0]["retry_count"] == 3
        assert broker.depth(DLQ) == 3

    def test_replay(self, runner: CliRunner, obj: dict[str, Any], broker: InMemoryBroker) -> None:
        seed_dead_letters(broker, 2)

        result = runner.invoke(cli, ["dlq", "replay"], obj=obj)

        assert result.exit_code == 0, result.output
        assert "Replayed 2 messages" in result.stdout
        assert broker.depth(DLQ) == 0
        assert broker.depth(QUEUE) == 2

    def test_replay_limit(
        self, runner: CliRunner, obj: dict[str, Any], broker: InMemoryBroker
    ) -> None:
        seed_dead_letters(broker, 3)

        result = runner.invoke(cli, ["dlq", "replay", "--limit", "1"], obj=obj)

        assert "Replayed 1 messages" in result.stdout
        assert broker.depth(DLQ) == 2

    def test_purge_with_confirmation_flag(
        self, runner: CliRunner, obj: dict[str, Any], broker: InMemoryBroker
    ) -> None:
        seed_dead_letters(broker, 2)

        result = runner.invoke(cli, ["dlq", "purge", "--yes"], obj=obj)

        assert result.exit_code == 0, result.output
        assert "Purged 2 messages" in result.stdout
        assert broker.depth(DLQ) == 0

    def test_purge_declined(
        self, runner: CliRunner, obj: dict[str, Any], broker: InMemoryBroker
    ) -> None:
        seed_dead_letters(broker, 2)

        result = runner.invoke(cli, ["dlq", "purge"], obj=obj, input="n\n")

        assert result.exit_code == 1
        assert broker.depth(DLQ) == 2


class TestRunWorker:
    """Tests for the worker loop behind `bookspace-bus worker`."""

    @pytest.mark.asyncio
    async def test_consumes_until_stopped(
        self, config: EventBusConfig, broker: InMemoryBroker, bus: EventBus
    ) -> None:
        worker_bus = EventBus(config, transport=InMemoryTransport(broker))
        stop = asyncio.Event()
        task = asyncio.create_task(run_worker(worker_bus, "notifications", stop))
        await wait_until(lambda: QUEUE in broker.bindings(EXCHANGE))

        await bus.publish(document_created())
        await wait_until(lambda: len(broker.settled("ack", QUEUE)) == 1)
        stop.set()

        assert await task is True
        assert not worker_bus.is_connected

    @pytest.mark.asyncio
    async def test_stop_before_start(self, config: EventBusConfig, broker: InMemoryBroker) -> None:
        worker_bus = EventBus(config, transport=InMemoryTransport(broker))
        stop = asyncio.Event()
        stop.set()

        assert await run_worker(worker_bus, "notifications", stop) is True
        assert broker.bindings(EXCHANGE) == [QUEUE]
