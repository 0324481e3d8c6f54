"""
Command line for the bookspace event bus.

    bookspace-bus worker [--consumer notifications]
    bookspace-bus publish document.created --data '{"documentId": "d1", ...}'
    bookspace-bus dlq count | peek [--limit N] | replay [--limit N] | purge --yes

Settings come from the environment (``RABBITMQ_URL``, ``LOG_LEVEL``,
``BOOKSPACE_BUS_*``); see ``BusSettings``.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import signal
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import click

from bookspace_bus.bus import EventBus
from bookspace_bus.config import BusSettings
from bookspace_bus.events.base import UnknownEvent
from bookspace_bus.events.registry import default_registry
from bookspace_bus.exceptions import DecodeError, EventBusError
from bookspace_bus.transport.interface import Transport
from bookspace_bus.worker.handlers import LoggingNotifier, build_notification_dispatcher

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _make_bus(ctx: click.Context) -> EventBus:
    settings: BusSettings = ctx.obj["settings"]
    transport: Transport | None = ctx.obj.get("transport")
    return EventBus(settings.to_config(), transport=transport)


def _run(coro_factory: Callable[[], Awaitable[T]]) -> T:
    async def runner() -> T:
        return await coro_factory()

    try:
        return asyncio.run(runner())
    except EventBusError as e:
        raise click.ClickException(str(e)) from e


async def run_worker(bus: EventBus, consumer: str, stop: asyncio.Event) -> bool:
    """Connect, consume until ``stop`` is set, then shut down gracefully."""
    dispatcher = build_notification_dispatcher(LoggingNotifier())
    await bus.connect()
    try:
        await bus.subscribe(consumer, dispatcher.dispatch)
        logger.info(
            "Worker started - listening for events",
            extra={"consumer": consumer, "handled_types": dispatcher.handled_types()},
        )
        await stop.wait()
    finally:
        drained = await bus.shutdown()
    return drained


@click.group()
@click.option("--log-level", default=None, help="Overrides LOG_LEVEL.")
@click.pass_context
def cli(ctx: click.Context, log_level: str | None) -> None:
    """Bookspace event bus."""
    ctx.ensure_object(dict)
    settings = ctx.obj.get("settings") or BusSettings()
    ctx.obj["settings"] = settings
    logging.basicConfig(
        level=(log_level or settings.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command()
@click.option("--consumer", default="notifications", show_default=True, help="Consumer identity.")
@click.pass_context
def worker(ctx: click.Context, consumer: str) -> None:
    """Consume events until SIGINT or SIGTERM."""
    bus = _make_bus(ctx)

    async def main() -> bool:
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError):
                loop.add_signal_handler(sig, stop.set)
        return await run_worker(bus, consumer, stop)

    drained = _run(main)
    if not drained:
        click.echo("Some deliveries were cut off and will be redelivered.", err=True)


@cli.command()
@click.argument("event_type")
@click.option("--data", "data_json", required=True, help="Event payload as JSON.")
@click.option("--correlation-id", default=None, help="Correlation id to attach.")
@click.pass_context
def publish(
    ctx: click.Context, event_type: str, data_json: str, correlation_id: str | None
) -> None:
    """Publish one event of EVENT_TYPE."""
    try:
        data = json.loads(data_json)
    except ValueError as e:
        raise click.BadParameter(f"not valid JSON: {e}", param_hint="--data") from e

    envelope: dict[str, Any] = {"type": event_type, "data": data}
    if correlation_id:
        envelope["correlationId"] = correlation_id

    try:
        event = default_registry.decode(json.dumps(envelope).encode("utf-8"))
    except DecodeError as e:
        raise click.BadParameter(str(e), param_hint="--data") from e
    if isinstance(event, UnknownEvent):
        known = ", ".join(default_registry.list_types())
        raise click.BadParameter(
            f"unknown event type '{event_type}' (known: {known})",
            param_hint="EVENT_TYPE",
        )

    bus = _make_bus(ctx)

    async def main() -> None:
        async with bus:
            await bus.publish(event)

    _run(main)
    click.echo(f"Published {event.tag}")


@cli.group()
def dlq() -> None:
    """Inspect and manage the dead-letter queue."""


@dlq.command("count")
@click.pass_context
def dlq_count(ctx: click.Context) -> None:
    """Print the number of dead-lettered messages."""
    bus = _make_bus(ctx)

    async def main() -> int:
        async with bus:
            return await bus.dead_letters.count()

    click.echo(str(_run(main)))


@dlq.command("peek")
@click.option("--limit", default=10, show_default=True, help="Maximum messages to show.")
@click.pass_context
def dlq_peek(ctx: click.Context, limit: int) -> None:
    """Show dead-lettered messages without removing them (one JSON object per line)."""
    bus = _make_bus(ctx)

    async def main() -> list[dict[str, Any]]:
        async with bus:
            return [letter.to_dict() for letter in await bus.dead_letters.peek(limit)]

    for entry in _run(main):
        click.echo(json.dumps(entry, default=str))


@dlq.command("replay")
@click.option("--limit", default=None, type=int, help="Maximum messages to replay.")
@click.pass_context
def dlq_replay(ctx: click.Context, limit: int | None) -> None:
    """Send dead-lettered messages back to the queue they died in."""
    bus = _make_bus(ctx)

    async def main() -> int:
        async with bus:
            return await bus.dead_letters.replay(limit)

    click.echo(f"Replayed {_run(main)} messages")


@dlq.command("purge")
@click.confirmation_option(prompt="Drop every message in the dead-letter queue?")
@click.pass_context
def dlq_purge(ctx: click.Context) -> None:
    """Drop every dead-lettered message."""
    bus = _make_bus(ctx)

    async def main() -> int:
        async with bus:
            return await bus.dead_letters.purge()

    click.echo(f"Purged {_run(main)} messages")


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
