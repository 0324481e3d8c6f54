"""
Tracer protocol and implementations for composition-based tracing.

Components receive a tracer as a dependency instead of talking to
OpenTelemetry directly, which keeps them easy to test:

    >>> class Publisher:
    ...     def __init__(self, tracer: Tracer | None = None):
    ...         self._tracer = tracer or NullTracer()

Spans that must outlive a ``with`` block (publish with context injection,
consume linked to the producer) are created with ``start_span`` and ended by
the caller.
"""

from __future__ import annotations

import contextlib
from collections.abc import Generator
from contextlib import AbstractContextManager
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from opentelemetry import trace
from opentelemetry.trace import Span, SpanKind


class SpanKindEnum(Enum):
    """Role a span plays in a trace; mapped onto OpenTelemetry's SpanKind."""

    INTERNAL = "internal"
    PRODUCER = "producer"
    CONSUMER = "consumer"


_KIND_MAPPING = {
    SpanKindEnum.INTERNAL: SpanKind.INTERNAL,
    SpanKindEnum.PRODUCER: SpanKind.PRODUCER,
    SpanKindEnum.CONSUMER: SpanKind.CONSUMER,
}


@runtime_checkable
class Tracer(Protocol):
    """Protocol for tracers injected into bus components."""

    @property
    def enabled(self) -> bool:
        """True if the tracer creates real spans."""
        ...

    def span(
        self,
        name: str,
        attributes: dict[str, Any] | None = None,
    ) -> AbstractContextManager[Span | None]:
        """Create a span context manager, yielding the span or None."""
        ...

    def start_span(
        self,
        name: str,
        kind: SpanKindEnum = SpanKindEnum.INTERNAL,
        attributes: dict[str, Any] | None = None,
        context: Any | None = None,
    ) -> Span | None:
        """
        Start a span that the caller MUST end with ``span.end()``.

        Args:
            name: Span name (e.g. "bookspace_bus.publish")
            kind: The span kind
            attributes: Span attributes
            context: Optional extracted context to link a consumer span to
                     its producer
        """
        ...


class NullTracer:
    """
    No-op tracer used when tracing is disabled.

    Example:
        >>> tracer = NullTracer()
        >>> with tracer.span("operation"):  # Does nothing
        ...     do_work()
    """

    @property
    def enabled(self) -> bool:
        return False

    @contextlib.contextmanager
    def span(
        self,
        name: str,
        attributes: dict[str, Any] | None = None,
    ) -> Generator[None, None, None]:
        yield None

    def start_span(
        self,
        name: str,
        kind: SpanKindEnum = SpanKindEnum.INTERNAL,
        attributes: dict[str, Any] | None = None,
        context: Any | None = None,
    ) -> None:
        return None


class OpenTelemetryTracer:
    """Wraps an OpenTelemetry tracer to conform to the ``Tracer`` protocol."""

    def __init__(self, tracer_name: str) -> None:
        self._tracer = trace.get_tracer(tracer_name)

    @property
    def enabled(self) -> bool:
        return True

    def span(
        self,
        name: str,
        attributes: dict[str, Any] | None = None,
    ) -> AbstractContextManager[Span | None]:
        return self._tracer.start_as_current_span(name, attributes=attributes or {})

    def start_span(
        self,
        name: str,
        kind: SpanKindEnum = SpanKindEnum.INTERNAL,
        attributes: dict[str, Any] | None = None,
        context: Any | None = None,
    ) -> Span:
        return self._tracer.start_span(
            name,
            kind=_KIND_MAPPING.get(kind, SpanKind.INTERNAL),
            attributes=attributes or {},
            context=context,
        )


class MockTracer:
    """
    Tracer that records span names and attributes, for tests.

    Example:
        >>> tracer = MockTracer()
        >>> with tracer.span("operation", {"key": "value"}):
        ...     pass
        >>> tracer.span_names
        ['operation']
    """

    def __init__(self) -> None:
        self.spans: list[tuple[str, dict[str, Any] | None]] = []

    @property
    def enabled(self) -> bool:
        return True

    @property
    def span_names(self) -> list[str]:
        return [name for name, _ in self.spans]

    @contextlib.contextmanager
    def span(
        self,
        name: str,
        attributes: dict[str, Any] | None = None,
    ) -> Generator[None, None, None]:
        self.spans.append((name, attributes))
        yield None

    def start_span(
        self,
        name: str,
        kind: SpanKindEnum = SpanKindEnum.INTERNAL,
        attributes: dict[str, Any] | None = None,
        context: Any | None = None,
    ) -> None:
        self.spans.append((name, attributes))
        return None


def create_tracer(name: str, enable_tracing: bool = True) -> Tracer:
    """
    Create an ``OpenTelemetryTracer`` when tracing is enabled, else a ``NullTracer``.

    Example:
        >>> def __init__(self, tracer: Tracer | None = None, enable_tracing: bool = True):
        ...     self._tracer = tracer or create_tracer(__name__, enable_tracing)
    """
    if enable_tracing:
        return OpenTelemetryTracer(name)
    return NullTracer()


__all__ = [
    "Tracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "MockTracer",
    "SpanKindEnum",
    "create_tracer",
]
