"""
Observability utilities for the event bus.

Tracing goes through an injected ``Tracer`` (see ``create_tracer``); span
attribute names live in ``bookspace_bus.observability.attributes``.
"""

from bookspace_bus.observability.tracer import (
    MockTracer,
    NullTracer,
    OpenTelemetryTracer,
    SpanKindEnum,
    Tracer,
    create_tracer,
)

__all__ = [
    "MockTracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "SpanKindEnum",
    "Tracer",
    "create_tracer",
]
