"""
Standard span attributes for eventrelay.

Follows OpenTelemetry messaging semantic conventions where they exist and
uses the ``eventrelay.`` prefix for everything else.
"""

# =============================================================================
# Event Attributes
# =============================================================================

ATTR_EVENT_ID = "eventrelay.event.id"
"""Envelope event identifier (string)."""

ATTR_EVENT_TYPE = "eventrelay.event.type"
"""Dot-namespaced event type (e.g., 'user.created')."""

ATTR_CORRELATION_ID = "eventrelay.correlation.id"
"""Correlation identifier linking related events (string)."""

ATTR_TENANT_ID = "eventrelay.tenant.id"
"""Tenant identifier for multi-tenant systems (string)."""

# =============================================================================
# Delivery Attributes
# =============================================================================

ATTR_RETRY_COUNT = "eventrelay.retry.count"
"""Delivery attempt counter read from x-retry-count (integer)."""

ATTR_PUBLISH_ATTEMPT = "eventrelay.publish.attempt"
"""1-based publish attempt number (integer)."""

ATTR_DELIVERY_OUTCOME = "eventrelay.delivery.outcome"
"""Final delivery state: acked, retry_scheduled or dead_lettered."""

ATTR_HANDLER_NAME = "eventrelay.handler.name"
"""Name of the handler invoked for the event (string)."""

# =============================================================================
# Messaging Attributes (OTEL semantic)
# =============================================================================

ATTR_MESSAGING_SYSTEM = "messaging.system"
"""Messaging system identifier (always 'rabbitmq')."""

ATTR_MESSAGING_DESTINATION = "messaging.destination"
"""Exchange or queue name."""

ATTR_MESSAGING_ROUTING_KEY = "messaging.rabbitmq.routing_key"
"""Routing key used for the message."""

# =============================================================================
# Error Attributes
# =============================================================================

ATTR_ERROR_TYPE = "eventrelay.error.type"
"""Exception class name (string)."""


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
]
