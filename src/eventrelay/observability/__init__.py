"""
Tracing hooks for eventrelay.

``create_tracer`` picks the implementation from ``enable_tracing``; the
``ATTR_*`` constants name the span attributes set on publish and consume
spans.
"""

from eventrelay.observability.attributes import (
    ATTR_CORRELATION_ID,
    ATTR_DELIVERY_OUTCOME,
    ATTR_ERROR_TYPE,
    ATTR_EVENT_ID,
    ATTR_EVENT_TYPE,
    ATTR_HANDLER_NAME,
    ATTR_MESSAGING_DESTINATION,
    ATTR_MESSAGING_ROUTING_KEY,
    ATTR_MESSAGING_SYSTEM,
    ATTR_PUBLISH_ATTEMPT,
    ATTR_RETRY_COUNT,
    ATTR_TENANT_ID,
)
from eventrelay.observability.tracer import (
    MockTracer,
    NullTracer,
    OpenTelemetryTracer,
    SpanKindEnum,
    SpanRecord,
    Tracer,
    create_tracer,
)

__all__ = [
    "ATTR_CORRELATION_ID",
    "ATTR_DELIVERY_OUTCOME",
    "ATTR_ERROR_TYPE",
    "ATTR_EVENT_ID",
    "ATTR_EVENT_TYPE",
    "ATTR_HANDLER_NAME",
    "ATTR_MESSAGING_DESTINATION",
    "ATTR_MESSAGING_ROUTING_KEY",
    "ATTR_MESSAGING_SYSTEM",
    "ATTR_PUBLISH_ATTEMPT",
    "ATTR_RETRY_COUNT",
    "ATTR_TENANT_ID",
    "MockTracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "SpanKindEnum",
    "SpanRecord",
    "Tracer",
    "create_tracer",
]
