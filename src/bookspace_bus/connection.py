"""
Broker connection owning the bus's single channel.

``Connection`` does not reconnect on its own. Listeners registered with
``add_close_listener`` are told when the connection or the channel goes away
and may call ``connect()`` again.
"""

from __future__ import annotations

import logging

from bookspace_bus.config import EventBusConfig
from bookspace_bus.exceptions import BrokerConnectionError, NotConnectedError
from bookspace_bus.transport.interface import Channel, CloseListener, Transport, sanitize_url
from bookspace_bus.transport.rabbitmq import RabbitMQTransport

logger = logging.getLogger(__name__)


class Connection:
    """
    Owns the transport connection and its one channel.

    Args:
        config: Bus configuration (URL, heartbeat, TLS)
        transport: Transport to use. Defaults to ``RabbitMQTransport``
                   built from ``config``.

    Example:
        >>> connection = Connection(config)
        >>> connection.add_close_listener(lambda scope, exc: print(scope, exc))
        >>> channel = await connection.connect()
    """

    def __init__(self, config: EventBusConfig, transport: Transport | None = None) -> None:
        self._config = config
        self._transport = transport or RabbitMQTransport.from_config(config)
        self._channel: Channel | None = None
        self._listeners: list[CloseListener] = []

    @property
    def transport(self) -> Transport:
        return self._transport

    @property
    def is_connected(self) -> bool:
        return self._channel is not None and self._channel.is_open

    @property
    def channel(self) -> Channel:
        """The open channel. Raises ``NotConnectedError`` if there is none."""
        return self.require_channel("use the channel")

    def require_channel(self, operation: str) -> Channel:
        """Return the open channel, or raise ``NotConnectedError`` naming ``operation``."""
        if self._channel is None or not self._channel.is_open:
            raise NotConnectedError(operation)
        return self._channel

    def add_close_listener(self, listener: CloseListener) -> None:
        """Register ``listener(scope, exc)``; scope is "connection" or "channel"."""
        self._listeners.append(listener)

    def remove_close_listener(self, listener: CloseListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def connect(self) -> Channel:
        """
        Open the connection and its channel.

        Calling again while connected returns the existing channel.

        Raises:
            BrokerConnectionError: If the broker cannot be reached
        """
        if self.is_connected:
            assert self._channel is not None
            return self._channel

        url = sanitize_url(self._config.rabbitmq_url)
        try:
            self._channel = await self._transport.connect(
                self._config.rabbitmq_url,
                on_close=self._on_close,
            )
        except Exception as e:
            logger.error(
                f"Failed to connect to broker: {e}",
                exc_info=True,
                extra={
                    "rabbitmq_url": url,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )
            raise BrokerConnectionError(url, str(e)) from e

        logger.info("Connected to broker", extra={"rabbitmq_url": url})
        return self._channel

    async def close(self) -> None:
        """Close the channel and the connection."""
        if self._channel is None:
            return
        self._channel = None
        await self._transport.close()
        logger.info(
            "Disconnected from broker",
            extra={"rabbitmq_url": sanitize_url(self._config.rabbitmq_url)},
        )

    def _on_close(self, scope: str, exc: BaseException | None) -> None:
        if exc is not None:
            logger.warning(
                f"Broker {scope} closed unexpectedly: {exc}",
                extra={
                    "scope": scope,
                    "error": str(exc),
                    "error_type": type(exc).__name__,
                },
            )
        else:
            logger.debug(f"Broker {scope} closed", extra={"scope": scope})

        for listener in list(self._listeners):
            try:
                listener(scope, exc)
            except Exception as e:
                logger.error(
                    f"Close listener failed: {e}",
                    exc_info=True,
                    extra={"scope": scope, "error": str(e)},
                )


__all__ = ["Connection"]
