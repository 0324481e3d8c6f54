"""
Standard span attributes for bus components.

Messaging attributes follow OpenTelemetry semantic conventions, the rest use
the ``bookspace_bus.`` prefix.
"""

# =============================================================================
# Event Attributes
# =============================================================================

ATTR_EVENT_TYPE = "bookspace_bus.event.type"
"""Wire tag of the event (e.g., 'document.created')."""

ATTR_CORRELATION_ID = "bookspace_bus.event.correlation_id"
"""Correlation id carried by the event, when present."""

ATTR_RETRY_COUNT = "bookspace_bus.retry_count"
"""Value of the x-retry-count header on the delivery (integer)."""

# =============================================================================
# Handler Attributes
# =============================================================================

ATTR_HANDLER_NAME = "bookspace_bus.handler.name"
"""Name of the handler the dispatcher routed to."""

ATTR_HANDLER_SUCCESS = "bookspace_bus.handler.success"
"""Whether the handler settled without raising (boolean)."""

# =============================================================================
# Messaging Attributes (OTEL semantic)
# =============================================================================

ATTR_MESSAGING_SYSTEM = "messaging.system"
"""Messaging backend (always 'rabbitmq')."""

ATTR_MESSAGING_DESTINATION = "messaging.destination"
"""Exchange (publish) or queue (consume) name."""

ATTR_MESSAGING_MESSAGE_ID = "messaging.message_id"
"""Broker message id."""

__all__ = [
    "ATTR_EVENT_TYPE",
    "ATTR_CORRELATION_ID",
    "ATTR_RETRY_COUNT",
    "ATTR_HANDLER_NAME",
    "ATTR_HANDLER_SUCCESS",
    "ATTR_MESSAGING_SYSTEM",
    "ATTR_MESSAGING_DESTINATION",
    "ATTR_MESSAGING_MESSAGE_ID",
]
