"""
Event publisher.

Wraps payloads in an ``EventEnvelope``, resolves the target exchange from the
event type and publishes with bounded linear-backoff retry. ``publish`` never
raises for broker failures: the outcome is reported as a ``PublishResult``.

Example:
    >>> result = await publisher.publish(
    ...     "user.created",
    ...     {"userId": "u1", "email": "a@b.c"},
    ...     tenant_id="t1",
    ... )
    >>> result.success
    True
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from opentelemetry import trace
from opentelemetry.propagate import inject
from opentelemetry.trace import Status, StatusCode

from eventrelay.config import EventRelayConfig
from eventrelay.envelope import (
    CONTENT_TYPE_JSON,
    HEADER_CORRELATION_ID,
    HEADER_EVENT_TYPE,
    HEADER_TENANT_ID,
    EventEnvelope,
)
from eventrelay.exceptions import PublishError
from eventrelay.observability import (
    ATTR_CORRELATION_ID,
    ATTR_ERROR_TYPE,
    ATTR_EVENT_ID,
    ATTR_EVENT_TYPE,
    ATTR_MESSAGING_DESTINATION,
    ATTR_MESSAGING_ROUTING_KEY,
    ATTR_MESSAGING_SYSTEM,
    ATTR_PUBLISH_ATTEMPT,
    ATTR_TENANT_ID,
    SpanKindEnum,
    Tracer,
    create_tracer,
)
from eventrelay.schemas import DEFAULT_EXCHANGE_MAPPING
from eventrelay.supervisor import ConnectionSupervisor


@dataclass(frozen=True)
class PublishResult:
    """
    Outcome of a single publish.

    Attributes:
        success: Whether the broker accepted the message
        event_id: ID of the envelope ("" if no envelope could be built)
        envelope: The envelope that was published
        exchange: Target exchange
        routing_key: Routing key used
        attempts: Publish attempts made
        error: The last error when success is False
    """

    success: bool
    event_id: str
    envelope: EventEnvelope | None = None
    exchange: str = ""
    routing_key: str = ""
    attempts: int = 0
    error: Exception | None = None


@dataclass(frozen=True)
class PublishRequest:
    """One entry of a ``publish_batch`` call."""

    event_type: str
    data: Any
    routing_key: str | None = None
    correlation_id: str | None = None
    tenant_id: str | None = None
    user_id: str | None = None
    metadata: dict[str, Any] | None = None
    headers: dict[str, Any] | None = None
    priority: int = 0


@dataclass(frozen=True)
class BatchPublishOutcome:
    """
    Result of one request in a batch.

    ``result`` is set whenever ``publish`` returned; ``error`` is set only if
    the publish task itself raised.
    """

    request: PublishRequest
    result: PublishResult | None = None
    error: BaseException | None = None

    @property
    def success(self) -> bool:
        return self.result is not None and self.result.success


class EventPublisher:
    """
    Publishes envelopes through the supervisor's live session.

    Args:
        config: Relay configuration
        supervisor: Connection supervisor providing sessions
        tracer: Optional tracer (defaults to one built from
            ``config.enable_tracing``)
        logger: Optional logger
    """

    def __init__(
        self,
        config: EventRelayConfig,
        supervisor: ConnectionSupervisor,
        *,
        tracer: Tracer | None = None,
        logger: logging.Logger | logging.LoggerAdapter[logging.Logger] | None = None,
    ) -> None:
        self._config = config
        self._supervisor = supervisor
        self._tracer = tracer or create_tracer(__name__, config.enable_tracing)
        self._logger = logger or config.logger or logging.getLogger(__name__)
        self._exchange_mapping: dict[str, str] = {
            **DEFAULT_EXCHANGE_MAPPING,
            **config.exchange_mapping,
        }

    # =========================================================================
    # Exchange mapping
    # =========================================================================

    @property
    def exchange_mapping(self) -> dict[str, str]:
        return dict(self._exchange_mapping)

    def set_exchange_mapping(self, mapping: Mapping[str, str]) -> None:
        """Merge event type to exchange overrides into the current mapping."""
        self._exchange_mapping.update(mapping)

    def get_exchange_for_event(self, event_type: str) -> str:
        """Resolve the exchange for an event type (default exchange if unmapped)."""
        return self._exchange_mapping.get(event_type, self._config.default_exchange)

    # =========================================================================
    # Publishing
    # =========================================================================

    async def publish(
        self,
        event_type: str,
        data: Any,
        *,
        routing_key: str | None = None,
        correlation_id: str | None = None,
        tenant_id: str | None = None,
        user_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        headers: dict[str, Any] | None = None,
        priority: int = 0,
    ) -> PublishResult:
        """
        Publish an event.

        The routing key defaults to the event type. The transport headers
        ``x-event-type``, ``x-correlation-id`` and ``x-tenant-id`` are set from
        the envelope; caller headers are merged over them.

        Args:
            event_type: Dot-namespaced event type
            data: Event payload (must be JSON-serializable)
            routing_key: Routing key override
            correlation_id: Correlation ID (defaults to the generated event ID)
            tenant_id: Tenant ID
            user_id: Acting user ID
            metadata: Free-form metadata merged into envelope metadata
            headers: Extra transport headers
            priority: Message priority

        Returns:
            PublishResult describing the outcome. Broker failures are
            reported here rather than raised.
        """
        try:
            envelope = EventEnvelope.build(
                event_type,
                data,
                service=self._config.service_name or "unknown",
                correlation_id=correlation_id,
                tenant_id=tenant_id,
                user_id=user_id,
                metadata=metadata,
            )
            body = envelope.encode()
        except ValueError as e:
            self._logger.error(
                f"Cannot build envelope for {event_type!r}: {e}",
                extra={"event_type": event_type, "error": str(e)},
            )
            return PublishResult(success=False, event_id="", error=e)

        exchange = self.get_exchange_for_event(event_type)
        key = routing_key or event_type

        message_headers: dict[str, Any] = {
            HEADER_EVENT_TYPE: event_type,
            HEADER_CORRELATION_ID: envelope.correlation_id,
            HEADER_TENANT_ID: tenant_id,
        }
        message_headers.update(headers or {})

        span = None
        if self._tracer.enabled:
            span = self._tracer.start_span(
                "eventrelay.publish",
                kind=SpanKindEnum.PRODUCER,
                attributes={
                    ATTR_MESSAGING_SYSTEM: "rabbitmq",
                    ATTR_MESSAGING_DESTINATION: exchange,
                    ATTR_MESSAGING_ROUTING_KEY: key,
                    ATTR_EVENT_TYPE: event_type,
                    ATTR_EVENT_ID: envelope.event_id,
                    ATTR_CORRELATION_ID: envelope.correlation_id,
                    ATTR_TENANT_ID: tenant_id or "",
                },
            )
            if span is not None:
                inject(message_headers, context=trace.set_span_in_context(span))

        log_extra = {
            "event_id": envelope.event_id,
            "event_type": event_type,
            "correlation_id": envelope.correlation_id,
            "exchange": exchange,
            "routing_key": key,
        }

        try:
            attempts = await self.publish_raw(
                exchange,
                key,
                body,
                headers=message_headers,
                priority=priority,
                message_id=envelope.event_id,
            )
        except PublishError as e:
            if span is not None:
                span.set_status(Status(StatusCode.ERROR, str(e)))
                span.record_exception(e)
                span.set_attribute(ATTR_ERROR_TYPE, type(e).__name__)
            self._logger.error(
                f"Failed to publish {event_type}: {e}",
                extra={**log_extra, "attempts": e.attempts, "error": str(e)},
            )
            return PublishResult(
                success=False,
                event_id=envelope.event_id,
                envelope=envelope,
                exchange=exchange,
                routing_key=key,
                attempts=e.attempts,
                error=e,
            )
        else:
            if span is not None:
                span.set_attribute(ATTR_PUBLISH_ATTEMPT, attempts)
                span.set_status(Status(StatusCode.OK))
        finally:
            if span is not None:
                span.end()

        self._logger.info(
            f"Published {event_type}",
            extra={**log_extra, "attempts": attempts},
        )
        return PublishResult(
            success=True,
            event_id=envelope.event_id,
            envelope=envelope,
            exchange=exchange,
            routing_key=key,
            attempts=attempts,
        )

    async def publish_batch(self, requests: Sequence[PublishRequest]) -> list[BatchPublishOutcome]:
        """
        Publish several events concurrently.

        One failing request never prevents the others from being published.

        Args:
            requests: Events to publish

        Returns:
            One outcome per request, in request order
        """
        results = await asyncio.gather(
            *(
                self.publish(
                    request.event_type,
                    request.data,
                    routing_key=request.routing_key,
                    correlation_id=request.correlation_id,
                    tenant_id=request.tenant_id,
                    user_id=request.user_id,
                    metadata=request.metadata,
                    headers=request.headers,
                    priority=request.priority,
                )
                for request in requests
            ),
            return_exceptions=True,
        )

        outcomes: list[BatchPublishOutcome] = []
        for request, result in zip(requests, results, strict=True):
            if isinstance(result, BaseException):
                outcomes.append(BatchPublishOutcome(request=request, error=result))
            else:
                outcomes.append(BatchPublishOutcome(request=request, result=result))

        failed = sum(1 for outcome in outcomes if not outcome.success)
        if failed:
            self._logger.warning(
                f"Batch publish: {failed} of {len(outcomes)} events failed",
                extra={"total": len(outcomes), "failed": failed},
            )
        return outcomes

    async def publish_raw(
        self,
        exchange: str,
        routing_key: str,
        body: bytes,
        *,
        headers: dict[str, Any] | None = None,
        priority: int = 0,
        content_type: str = CONTENT_TYPE_JSON,
        message_id: str | None = None,
    ) -> int:
        """
        Publish a pre-encoded body with retry.

        Attempt N that fails (an error, or the broker refusing the message)
        waits ``publish_retry_delay * N`` before attempt N + 1.
        Headers with a None value are omitted.

        Returns:
            The number of attempts it took

        Raises:
            PublishError: If every attempt failed
        """
        clean_headers = {k: v for k, v in (headers or {}).items() if v is not None}
        max_attempts = self._config.publish_retries
        last_error: Exception | None = None

        for attempt in range(1, max_attempts + 1):
            try:
                session = await self._supervisor.acquire_session()
                accepted = await session.publish(
                    exchange,
                    routing_key,
                    body,
                    headers=clean_headers,
                    persistent=True,
                    priority=priority,
                    content_type=content_type,
                    message_id=message_id,
                )
                if accepted:
                    return attempt
                last_error = PublishError(
                    "Broker refused the message",
                    exchange=exchange,
                    routing_key=routing_key,
                    attempts=attempt,
                )
            except Exception as e:
                last_error = e

            if attempt < max_attempts:
                delay = self._config.publish_retry_delay * attempt
                self._logger.warning(
                    f"Publish attempt {attempt} to {exchange} failed: {last_error}. "
                    f"Retrying in {delay}s",
                    extra={
                        "exchange": exchange,
                        "routing_key": routing_key,
                        "attempt": attempt,
                        "error": str(last_error),
                    },
                )
                await asyncio.sleep(delay)

        raise PublishError(
            f"Failed to publish to {exchange or '(default)'} ({routing_key}) "
            f"after {max_attempts} attempts: {last_error}",
            exchange=exchange,
            routing_key=routing_key,
            attempts=max_attempts,
        ) from last_error


__all__ = [
    "BatchPublishOutcome",
    "EventPublisher",
    "PublishRequest",
    "PublishResult",
]
