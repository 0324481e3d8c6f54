"""
Dead-letter queue tooling.

Nothing consumes ``<namespace>.events.dlq`` automatically. Operators inspect
it with ``peek``, watch its depth with ``count``, send messages back to
the queue they died in with ``replay``, or drop them with ``purge``.

The broker records where a message died in the ``x-death`` and
``x-first-death-*`` headers; the helpers below read them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from bookspace_bus.config import EventBusConfig
from bookspace_bus.connection import Connection
from bookspace_bus.retry import LAST_RETRY_AT_HEADER, RETRY_COUNT_HEADER, read_retry_count
from bookspace_bus.transport.interface import DEFAULT_EXCHANGE, Delivery, OutgoingMessage

logger = logging.getLogger(__name__)

REPLAYED_AT_HEADER = "x-replayed-at"

_DEATH_HEADERS = (
    "x-death",
    "x-first-death-queue",
    "x-first-death-reason",
    "x-first-death-exchange",
    "x-last-death-queue",
    "x-last-death-reason",
    "x-last-death-exchange",
    RETRY_COUNT_HEADER,
    LAST_RETRY_AT_HEADER,
)


def get_death_count(headers: dict[str, Any]) -> int:
    """Total dead-letter count across the ``x-death`` records, 0 if never dead-lettered."""
    x_death = headers.get("x-death")
    if not x_death or not isinstance(x_death, list):
        return 0

    total = 0
    for record in x_death:
        if isinstance(record, dict):
            count = record.get("count", 0)
            if isinstance(count, int):
                total += count
    return total


def get_first_death_queue(headers: dict[str, Any]) -> str | None:
    """Queue the message first died in."""
    value = headers.get("x-first-death-queue")
    if value is not None:
        return str(value)

    x_death = headers.get("x-death")
    if isinstance(x_death, list) and x_death and isinstance(x_death[-1], dict):
        queue = x_death[-1].get("queue")
        return str(queue) if queue is not None else None
    return None


def get_first_death_reason(headers: dict[str, Any]) -> str | None:
    """Why the message first died ('rejected', 'expired', 'maxlen')."""
    value = headers.get("x-first-death-reason")
    return str(value) if value is not None else None


@dataclass(frozen=True)
class DeadLetter:
    """
    A message read from the dead-letter queue.

    Attributes:
        message_id: Broker message id.
        body: Raw message body.
        headers: All message headers.
        event_type: The ``event_type`` header, if present.
        retry_count: Retries attempted before the message was dead-lettered.
        death_count: Times the broker dead-lettered the message.
        first_death_queue: Queue the message first died in.
        first_death_reason: Why it died.
    """

    message_id: str | None
    body: bytes
    headers: dict[str, Any]
    event_type: str | None = None
    retry_count: int = 0
    death_count: int = 0
    first_death_queue: str | None = None
    first_death_reason: str | None = None

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    @classmethod
    def from_delivery(cls, delivery: Delivery) -> DeadLetter:
        headers = dict(delivery.headers)
        event_type = headers.get("event_type")
        return cls(
            message_id=delivery.message_id,
            body=delivery.body,
            headers=headers,
            event_type=str(event_type) if event_type else None,
            retry_count=read_retry_count(headers),
            death_count=get_death_count(headers),
            first_death_queue=get_first_death_queue(headers),
            first_death_reason=get_first_death_reason(headers),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "message_id": self.message_id,
            "event_type": self.event_type,
            "retry_count": self.retry_count,
            "death_count": self.death_count,
            "first_death_queue": self.first_death_queue,
            "first_death_reason": self.first_death_reason,
            "body": self.text,
        }


class DeadLetterQueue:
    """
    Operations on ``<namespace>.events.dlq``.

    ``peek`` and ``replay`` read with basic.get; they are not atomic with
    respect to another client reading the DLQ at the same time.

    Example:
        >>> dlq = DeadLetterQueue(connection, config)
        >>> await dlq.count()
        2
        >>> [letter.event_type for letter in await dlq.peek()]
        ['document.created', 'file.uploaded']
        >>> await dlq.replay()
        2
    """

    def __init__(self, connection: Connection, config: EventBusConfig) -> None:
        self._connection = connection
        self._config = config

    @property
    def queue_name(self) -> str:
        return self._config.dead_letter_queue_name

    async def count(self) -> int:
        """Number of messages waiting in the DLQ."""
        channel = self._connection.require_channel("inspect the dead-letter queue")
        return await channel.queue_depth(self.queue_name)

    async def peek(self, limit: int = 100) -> list[DeadLetter]:
        """Read up to ``limit`` messages without removing them."""
        channel = self._connection.require_channel("inspect the dead-letter queue")
        deliveries: list[Delivery] = []
        try:
            while len(deliveries) < limit:
                delivery = await channel.get(self.queue_name)
                if delivery is None:
                    break
                deliveries.append(delivery)
        finally:
            # Return in reverse so the queue keeps its order
            for delivery in reversed(deliveries):
                await channel.reject(delivery, requeue=True)

        logger.info(
            f"Retrieved {len(deliveries)} messages from DLQ",
            extra={"dlq_queue": self.queue_name, "message_count": len(deliveries), "limit": limit},
        )
        return [DeadLetter.from_delivery(d) for d in deliveries]

    async def replay(self, limit: int | None = None) -> int:
        """
        Send dead-lettered messages back to the queue they first died in.

        Death and retry headers are stripped, so the message gets a fresh
        set of retries. Messages without death information, or whose queue
        no longer exists, are left in the DLQ.

        Returns:
            Number of messages replayed
        """
        channel = self._connection.require_channel("replay the dead-letter queue")
        replayed = 0
        skipped: list[Delivery] = []
        known_queues: dict[str, bool] = {}
        try:
            while limit is None or replayed < limit:
                delivery = await channel.get(self.queue_name)
                if delivery is None:
                    break

                target = get_first_death_queue(delivery.headers)
                if target is None:
                    logger.warning(
                        "DLQ message has no death information, leaving it in place",
                        extra={"dlq_queue": self.queue_name, "message_id": delivery.message_id},
                    )
                    skipped.append(delivery)
                    continue

                if target not in known_queues:
                    known_queues[target] = await channel.queue_exists(target)
                if not known_queues[target]:
                    # The default exchange drops messages for missing queues
                    logger.warning(
                        f"DLQ message targets missing queue {target}, leaving it in place",
                        extra={
                            "dlq_queue": self.queue_name,
                            "queue": target,
                            "message_id": delivery.message_id,
                        },
                    )
                    skipped.append(delivery)
                    continue

                await channel.publish(
                    DEFAULT_EXCHANGE,
                    self._replay_message(delivery),
                    routing_key=target,
                )
                await channel.ack(delivery)
                replayed += 1

                logger.info(
                    f"Replayed DLQ message to {target}",
                    extra={
                        "dlq_queue": self.queue_name,
                        "queue": target,
                        "message_id": delivery.message_id,
                        "event_type": delivery.headers.get("event_type"),
                    },
                )
        finally:
            for delivery in reversed(skipped):
                await channel.reject(delivery, requeue=True)

        return replayed

    async def purge(self) -> int:
        """Drop every message in the DLQ; returns how many were removed."""
        channel = self._connection.require_channel("purge the dead-letter queue")
        removed = await channel.purge(self.queue_name)
        logger.warning(
            f"Purged {removed} messages from DLQ",
            extra={"dlq_queue": self.queue_name, "message_count": removed},
        )
        return removed

    @staticmethod
    def _replay_message(delivery: Delivery) -> OutgoingMessage:
        headers = {k: v for k, v in delivery.headers.items() if k not in _DEATH_HEADERS}
        headers[REPLAYED_AT_HEADER] = datetime.now(UTC).isoformat()
        return OutgoingMessage(
            body=delivery.body,
            headers=headers,
            content_type=delivery.content_type or "application/json",
            persistent=True,
            timestamp=delivery.timestamp,
            message_id=delivery.message_id,
        )


__all__ = [
    "DeadLetter",
    "DeadLetterQueue",
    "REPLAYED_AT_HEADER",
    "get_death_count",
    "get_first_death_queue",
    "get_first_death_reason",
]
