"""
Event envelope and transport header names.

The envelope is the JSON document every service exchanges. Its field names
and the transport header names below are a compatibility surface shared with
services written in other languages, so they are fixed:

    {
      "eventId": "...",
      "eventType": "user.created",
      "timestamp": "2024-05-01T12:00:00.000Z",
      "correlationId": "...",
      "tenantId": "...",
      "userId": "...",
      "data": {...},
      "metadata": {"service": "user-service", "version": "1.0", ...}
    }

Delivery attempt state never lives in the envelope. It travels in the
``x-retry-count`` and ``x-original-queue`` headers so that a retried message
carries byte-identical content.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_serializer, model_validator
from pydantic.alias_generators import to_camel

from eventrelay.exceptions import DecodeError

# Transport headers
HEADER_RETRY_COUNT = "x-retry-count"
HEADER_ORIGINAL_QUEUE = "x-original-queue"
HEADER_EVENT_TYPE = "x-event-type"
HEADER_CORRELATION_ID = "x-correlation-id"
HEADER_TENANT_ID = "x-tenant-id"

# Queue arguments
ARG_DEAD_LETTER_EXCHANGE = "x-dead-letter-exchange"
ARG_DEAD_LETTER_ROUTING_KEY = "x-dead-letter-routing-key"
ARG_MESSAGE_TTL = "x-message-ttl"
ARG_MAX_LENGTH = "x-max-length"

CONTENT_TYPE_JSON = "application/json"
DEFAULT_SCHEMA_VERSION = "1.0"

_BODY_PREVIEW_LENGTH = 200


def _utc_now() -> datetime:
    # Millisecond precision, matching the wire format
    now = datetime.now(UTC)
    return now.replace(microsecond=now.microsecond // 1000 * 1000)


def generate_event_id() -> str:
    """Generate a globally unique event identifier."""
    return str(uuid4())


class EnvelopeMetadata(BaseModel):
    """
    Producer identity attached to every envelope.

    Free-form extras supplied by the publisher are kept alongside the
    well-known fields.
    """

    model_config = ConfigDict(frozen=True, extra="allow")

    service: str = "unknown"
    version: str = DEFAULT_SCHEMA_VERSION


class EventEnvelope(BaseModel):
    """
    Standardized wrapper for an event crossing the broker.

    Envelopes are immutable once built. Python attribute names are
    snake_case; the JSON form uses camelCase aliases.

    Attributes:
        event_id: Globally unique identifier generated at publish time
        event_type: Dot-namespaced event type (e.g. "user.created")
        timestamp: When the envelope was built (UTC)
        correlation_id: ID linking related events; defaults to event_id
        tenant_id: Optional tenant identifier
        user_id: Optional acting user identifier
        data: Opaque event payload
        metadata: Producer identity and free-form extras

    Example:
        >>> envelope = EventEnvelope.build("user.created", {"userId": "u1"}, service="users")
        >>> envelope.correlation_id == envelope.event_id
        True
        >>> EventEnvelope.decode(envelope.encode()) == envelope
        True
    """

    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        alias_generator=to_camel,
    )

    event_id: str = Field(min_length=1)
    event_type: str = Field(min_length=1)
    timestamp: datetime = Field(default_factory=_utc_now)
    correlation_id: str = ""
    tenant_id: str | None = None
    user_id: str | None = None
    data: Any = None
    metadata: EnvelopeMetadata = Field(default_factory=EnvelopeMetadata)

    @model_validator(mode="before")
    @classmethod
    def _default_correlation_id(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        if data.get("correlationId") or data.get("correlation_id"):
            return data
        event_id = data.get("eventId") or data.get("event_id")
        if event_id:
            data = {**data, "correlationId": event_id}
        return data

    @field_serializer("timestamp")
    def _serialize_timestamp(self, value: datetime) -> str:
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")

    @classmethod
    def build(
        cls,
        event_type: str,
        data: Any,
        *,
        service: str,
        correlation_id: str | None = None,
        tenant_id: str | None = None,
        user_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> EventEnvelope:
        """
        Build a fresh envelope for an outbound event.

        Caller metadata is merged over the service identity, so a caller may
        override ``service`` or ``version`` explicitly.

        Args:
            event_type: Dot-namespaced event type
            data: Event payload
            service: Name of the publishing service
            correlation_id: Optional correlation ID (defaults to the event ID)
            tenant_id: Optional tenant ID
            user_id: Optional user ID
            metadata: Optional free-form metadata

        Returns:
            A new immutable envelope with a generated event ID
        """
        merged: dict[str, Any] = {"service": service, "version": DEFAULT_SCHEMA_VERSION}
        merged.update({k: v for k, v in (metadata or {}).items() if v is not None})

        event_id = generate_event_id()
        return cls(
            event_id=event_id,
            event_type=event_type,
            correlation_id=correlation_id or event_id,
            tenant_id=tenant_id,
            user_id=user_id,
            data=data,
            metadata=EnvelopeMetadata(**merged),
        )

    def encode(self) -> bytes:
        """Serialize to the JSON wire form (camelCase, absent values omitted)."""
        return self.model_dump_json(by_alias=True, exclude_none=True).encode("utf-8")

    @classmethod
    def decode(cls, body: bytes | str) -> EventEnvelope:
        """
        Parse an envelope from its JSON wire form.

        Args:
            body: Raw message body

        Returns:
            The decoded envelope

        Raises:
            DecodeError: If the body is not valid UTF-8 JSON or misses
                required envelope fields
        """
        try:
            return cls.model_validate_json(body)
        except (ValidationError, UnicodeDecodeError, ValueError) as e:
            raise DecodeError(
                f"Malformed event envelope: {e}",
                body_preview=_preview(body),
            ) from e


def read_retry_count(headers: dict[str, Any] | None) -> int:
    """
    Read the delivery attempt counter from transport headers.

    Header values may arrive as int, str or bytes depending on the producer.

    Args:
        headers: Message headers (may be None)

    Returns:
        The retry count, 0 when the header is absent

    Raises:
        DecodeError: If the header is present but not a non-negative integer
    """
    value = (headers or {}).get(HEADER_RETRY_COUNT)
    if value is None:
        return 0
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="replace")
    try:
        count = int(value)
    except (TypeError, ValueError) as e:
        raise DecodeError(f"Invalid {HEADER_RETRY_COUNT} header: {value!r}") from e
    if count < 0:
        raise DecodeError(f"Invalid {HEADER_RETRY_COUNT} header: {value!r}")
    return count


def _preview(body: bytes | str) -> str:
    if isinstance(body, bytes):
        body = body.decode("utf-8", errors="replace")
    return body[:_BODY_PREVIEW_LENGTH]


__all__ = [
    "ARG_DEAD_LETTER_EXCHANGE",
    "ARG_DEAD_LETTER_ROUTING_KEY",
    "ARG_MAX_LENGTH",
    "ARG_MESSAGE_TTL",
    "CONTENT_TYPE_JSON",
    "DEFAULT_SCHEMA_VERSION",
    "EnvelopeMetadata",
    "EventEnvelope",
    "HEADER_CORRELATION_ID",
    "HEADER_EVENT_TYPE",
    "HEADER_ORIGINAL_QUEUE",
    "HEADER_RETRY_COUNT",
    "HEADER_TENANT_ID",
    "generate_event_id",
    "read_retry_count",
]
