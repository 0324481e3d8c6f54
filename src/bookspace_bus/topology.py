"""
Exchange and queue topology.

    <namespace>.events       fanout, durable     primary exchange
    <namespace>.events.dlx   fanout, durable     dead-letter exchange
    <namespace>.events.dlq   durable queue       bound to the DLX
    <namespace>.<consumer>   durable queue       bound to the primary exchange,
                                                 x-dead-letter-exchange = DLX

All declarations are idempotent. A mismatch with an existing entity is a
``DeclarationError`` and is not retried.
"""

from __future__ import annotations

import logging
from typing import Any

from bookspace_bus.config import EventBusConfig
from bookspace_bus.exceptions import DeclarationError
from bookspace_bus.transport.interface import Channel, ExchangeKind

logger = logging.getLogger(__name__)


class TopologyManager:
    """
    Declares the bus's exchanges and queues on a channel.

    Example:
        >>> topology = TopologyManager(EventBusConfig())
        >>> await topology.declare(channel)
        >>> await topology.declare_consumer_queue(channel, "bookspace.notifications")
    """

    def __init__(self, config: EventBusConfig) -> None:
        self._config = config

    def consumer_queue_arguments(self) -> dict[str, Any]:
        """Arguments every consumer queue is declared with."""
        return {"x-dead-letter-exchange": self._config.dead_letter_exchange_name}

    async def declare(self, channel: Channel) -> None:
        """
        Declare the primary exchange, the DLX and (if enabled) the DLQ.

        Raises:
            DeclarationError: If any entity exists with different parameters
        """
        await self._declare_exchange(channel, self._config.exchange_name)
        await self._declare_exchange(channel, self._config.dead_letter_exchange_name)

        if self._config.enable_dead_letter_queue:
            await self._declare_queue(channel, self._config.dead_letter_queue_name, {})
            await self._bind(
                channel,
                self._config.dead_letter_queue_name,
                self._config.dead_letter_exchange_name,
            )

        logger.info(
            "Declared event bus topology",
            extra={
                "exchange": self._config.exchange_name,
                "dlx": self._config.dead_letter_exchange_name,
                "dlq": (
                    self._config.dead_letter_queue_name
                    if self._config.enable_dead_letter_queue
                    else None
                ),
            },
        )

    async def declare_consumer_queue(self, channel: Channel, queue_name: str) -> None:
        """
        Declare a consumer queue with the DLX argument and bind it to the
        primary exchange.

        Raises:
            DeclarationError: If the queue exists with different parameters
        """
        await self._declare_queue(channel, queue_name, self.consumer_queue_arguments())
        await self._bind(channel, queue_name, self._config.exchange_name)

        logger.debug(
            f"Declared consumer queue {queue_name}",
            extra={"queue": queue_name, "exchange": self._config.exchange_name},
        )

    async def _declare_exchange(self, channel: Channel, name: str) -> None:
        try:
            await channel.declare_exchange(name, ExchangeKind.FANOUT, durable=self._config.durable)
        except Exception as e:
            logger.error(
                f"Failed to declare exchange {name}: {e}",
                extra={"exchange": name, "error": str(e), "error_type": type(e).__name__},
            )
            raise DeclarationError("exchange", name, str(e)) from e

    async def _declare_queue(self, channel: Channel, name: str, arguments: dict[str, Any]) -> None:
        try:
            await channel.declare_queue(name, durable=self._config.durable, arguments=arguments)
        except Exception as e:
            logger.error(
                f"Failed to declare queue {name}: {e}",
                extra={"queue": name, "error": str(e), "error_type": type(e).__name__},
            )
            raise DeclarationError("queue", name, str(e)) from e

    async def _bind(self, channel: Channel, queue: str, exchange: str) -> None:
        try:
            await channel.bind_queue(queue, exchange, routing_key="")
        except Exception as e:
            raise DeclarationError("binding", f"{queue} -> {exchange}", str(e)) from e


async def declare_topology(channel: Channel, config: EventBusConfig) -> None:
    """Declare the exchange, DLX and DLQ for ``config`` on ``channel``."""
    await TopologyManager(config).declare(channel)


__all__ = ["TopologyManager", "declare_topology"]
