"""
Pluggable tracing for the publish and consume paths.

The publisher and the consumer open exactly one span per message: a
PRODUCER span around the confirmed publish and a CONSUMER span around the
handler run. Both go through the small ``Tracer`` protocol below so the
delivery code never checks whether OpenTelemetry is configured.

Three implementations ship with the package:

- ``OpenTelemetryTracer`` delegates to ``opentelemetry.trace``.
- ``NullTracer`` is what ``enable_tracing=False`` produces.
- ``MockTracer`` records what would have been traced, for tests.

Spans returned by ``start_span`` are owned by the caller, which sets the
delivery outcome on them and calls ``end()`` once the message is settled.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Protocol, runtime_checkable

from opentelemetry import trace
from opentelemetry.trace import Span
from opentelemetry.trace import SpanKind as OtelSpanKind

# Attributes recorded with a span, as passed by the caller.
SpanRecord = tuple[str, dict[str, Any] | None]


class SpanKindEnum(Enum):
    """Role of a span in a message flow."""

    INTERNAL = "internal"
    PRODUCER = "producer"
    CONSUMER = "consumer"

    def to_otel(self) -> OtelSpanKind:
        return OtelSpanKind[self.name]


@runtime_checkable
class Tracer(Protocol):
    """What the publisher and consumer need from a tracer."""

    @property
    def enabled(self) -> bool:
        """
        Whether spans are recorded at all.

        Callers skip building span attributes when this is False.
        """
        ...

    def start_span(
        self,
        name: str,
        kind: SpanKindEnum = SpanKindEnum.INTERNAL,
        attributes: dict[str, Any] | None = None,
        context: Any | None = None,
    ) -> Span | None:
        """
        Open a span for one message.

        Args:
            name: Span name, ``eventrelay.publish`` or ``eventrelay.consume``
            kind: PRODUCER when publishing, CONSUMER when handling
            attributes: Messaging attributes describing the message
            context: Parent context extracted from the message headers

        Returns:
            An open span the caller must end, or None when nothing is
            being recorded.
        """
        ...


class NullTracer:
    """Tracer used when tracing is switched off in the config."""

    @property
    def enabled(self) -> bool:
        return False

    def start_span(
        self,
        name: str,
        kind: SpanKindEnum = SpanKindEnum.INTERNAL,
        attributes: dict[str, Any] | None = None,
        context: Any | None = None,
    ) -> None:
        return None


class OpenTelemetryTracer:
    """
    Tracer backed by the globally configured OpenTelemetry provider.

    Only ``opentelemetry-api`` is required. Without an SDK installed and a
    provider registered the API hands out non-recording spans, so an
    application opts in to exporting by configuring OpenTelemetry itself.

    Args:
        tracer_name: Instrumentation scope name, usually the module name
    """

    def __init__(self, tracer_name: str) -> None:
        self._otel = trace.get_tracer(tracer_name)

    @property
    def enabled(self) -> bool:
        return True

    def start_span(
        self,
        name: str,
        kind: SpanKindEnum = SpanKindEnum.INTERNAL,
        attributes: dict[str, Any] | None = None,
        context: Any | None = None,
    ) -> Span:
        return self._otel.start_span(
            name,
            kind=kind.to_otel(),
            attributes=attributes or {},
            context=context,
        )


class MockTracer:
    """
    Tracer that keeps every started span in ``spans`` for assertions.

    It reports itself as enabled so the relay builds the same attributes it
    would send to OpenTelemetry, but ``start_span`` returns None, which
    keeps header injection and ``span.end()`` out of the picture.

    Example:
        >>> tracer = MockTracer()
        >>> tracer.start_span("eventrelay.publish", attributes={"k": "v"})
        >>> tracer.span_names
        ['eventrelay.publish']
    """

    def __init__(self) -> None:
        self.spans: list[SpanRecord] = []
        self.kinds: list[SpanKindEnum] = []

    @property
    def enabled(self) -> bool:
        return True

    @property
    def span_names(self) -> list[str]:
        return [name for name, _ in self.spans]

    def clear(self) -> None:
        self.spans.clear()
        self.kinds.clear()

    def start_span(
        self,
        name: str,
        kind: SpanKindEnum = SpanKindEnum.INTERNAL,
        attributes: dict[str, Any] | None = None,
        context: Any | None = None,
    ) -> None:
        self.spans.append((name, attributes))
        self.kinds.append(kind)
        return None


def create_tracer(name: str, enable_tracing: bool = True) -> Tracer:
    """Return an OpenTelemetry tracer, or a NullTracer when tracing is off."""
    return OpenTelemetryTracer(name) if enable_tracing else NullTracer()


__all__ = [
    "MockTracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "SpanKindEnum",
    "SpanRecord",
    "Tracer",
    "create_tracer",
]
