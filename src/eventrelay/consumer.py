"""
Event consumer and delivery engine.

Every delivered message moves through the same states:

    RECEIVED -> DISPATCHED -> ACKED | RETRY_SCHEDULED | DEAD_LETTERED

A handler failure is retried by acknowledging the original delivery and
republishing the identical body, after a linear delay, to the exchange and
routing key it arrived on with ``x-retry-count`` incremented. Once a message
has been retried ``consumer_max_retries`` times the next failure rejects it
without requeue, and the broker routes it to the queue's dead-letter queue.

Message-level errors never escape the engine: undecodable messages are
dead-lettered, unknown event types are acknowledged, and ack/nack failures
are logged.
"""

from __future__ import annotations

import asyncio
import contextlib
import functools
import inspect
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from opentelemetry.propagate import extract
from opentelemetry.trace import Status, StatusCode

from eventrelay.broker.session import BrokerSession, InboundMessage
from eventrelay.config import EventRelayConfig
from eventrelay.envelope import (
    CONTENT_TYPE_JSON,
    HEADER_ORIGINAL_QUEUE,
    HEADER_RETRY_COUNT,
    EventEnvelope,
    read_retry_count,
)
from eventrelay.exceptions import (
    ConsumeError,
    DecodeError,
    HandlerError,
    PublishError,
    TopologyError,
)
from eventrelay.observability import (
    ATTR_DELIVERY_OUTCOME,
    ATTR_ERROR_TYPE,
    ATTR_EVENT_ID,
    ATTR_EVENT_TYPE,
    ATTR_HANDLER_NAME,
    ATTR_MESSAGING_DESTINATION,
    ATTR_MESSAGING_ROUTING_KEY,
    ATTR_MESSAGING_SYSTEM,
    ATTR_RETRY_COUNT,
    SpanKindEnum,
    Tracer,
    create_tracer,
)
from eventrelay.publisher import EventPublisher
from eventrelay.supervisor import ConnectionSupervisor
from eventrelay.topology import TopologyRegistrar


class DeliveryOutcome(Enum):
    """
    Final state of a delivery.

    Values:
        ACKED: Handled (or no handler registered) and acknowledged
        RETRY_SCHEDULED: Acknowledged; a copy will be republished later
        DEAD_LETTERED: Rejected without requeue
    """

    ACKED = "acked"
    RETRY_SCHEDULED = "retry_scheduled"
    DEAD_LETTERED = "dead_lettered"


@dataclass(frozen=True)
class DeliveryContext:
    """
    Transport details passed to handlers alongside the envelope.

    Attributes:
        queue_name: Queue the message was consumed from
        routing_key: Routing key the message was published with
        exchange: Exchange the message was published to
        headers: Transport headers
        redelivered: Whether the broker delivered this message before
        retry_count: Number of earlier failed handling attempts
        message: The raw inbound message
    """

    queue_name: str
    routing_key: str
    exchange: str
    headers: dict[str, Any]
    redelivered: bool
    retry_count: int
    message: InboundMessage


Handler = Callable[[EventEnvelope, DeliveryContext], Any]


def get_handler_name(handler: Any) -> str:
    """Descriptive name of a handler for logs and spans."""
    name = getattr(handler, "__qualname__", None) or getattr(handler, "__name__", None)
    return name or type(handler).__name__


class HandlerAdapter:
    """
    Normalizes a handler to an async callable.

    Accepts coroutine functions, plain functions and objects exposing a
    ``handle(envelope, context)`` method, sync or async.
    """

    def __init__(self, handler: Any) -> None:
        self._original = handler
        target = handler.handle if hasattr(handler, "handle") else handler
        if not callable(target):
            raise TypeError(
                f"Handler must have a handle() method or be callable, got {type(handler)}"
            )
        self._target = target
        self._name = get_handler_name(handler)

    @property
    def original(self) -> Any:
        return self._original

    @property
    def name(self) -> str:
        return self._name

    async def handle(self, envelope: EventEnvelope, context: DeliveryContext) -> None:
        result = self._target(envelope, context)
        if inspect.isawaitable(result):
            await result


@dataclass(frozen=True)
class ConsumerRegistration:
    """An active consumer, keyed by queue name."""

    queue_name: str
    consumer_tag: str
    prefetch: int
    auto_ack: bool = False
    requested_tag: str | None = None


@dataclass
class ConsumerStats:
    """
    Delivery statistics.

    Attributes:
        received: Messages delivered to the engine
        acked: Messages handled and acknowledged
        retried: Retries scheduled after handler failures
        dead_lettered: Messages rejected without requeue
        unhandled: Messages acknowledged because no handler was registered
        decode_failures: Messages that could not be decoded
        handler_failures: Handler invocations that raised
        retry_publish_failures: Scheduled retries that could not be republished
        last_error_at: When the last failure occurred
    """

    received: int = 0
    acked: int = 0
    retried: int = 0
    dead_lettered: int = 0
    unhandled: int = 0
    decode_failures: int = 0
    handler_failures: int = 0
    retry_publish_failures: int = 0
    last_error_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "received": self.received,
            "acked": self.acked,
            "retried": self.retried,
            "dead_lettered": self.dead_lettered,
            "unhandled": self.unhandled,
            "decode_failures": self.decode_failures,
            "handler_failures": self.handler_failures,
            "retry_publish_failures": self.retry_publish_failures,
            "last_error_at": self.last_error_at.isoformat() if self.last_error_at else None,
        }


@dataclass(frozen=True)
class _ScheduledRetry:
    exchange: str
    routing_key: str
    body: bytes
    headers: dict[str, Any] = field(default_factory=dict)
    priority: int = 0
    content_type: str = CONTENT_TYPE_JSON
    message_id: str | None = None
    event_id: str = ""
    event_type: str = ""


class EventConsumer:
    """
    Registers handlers, runs consumers and drives each delivery to a final
    state.

    Example:
        >>> consumer = EventConsumer(config, supervisor, publisher, registrar)
        >>> async def on_payment(envelope, context):
        ...     await charge(envelope.data["paymentId"])
        >>> consumer.register_handler("payment.created", on_payment)
        >>> await consumer.consume("billing.payment.events")
    """

    def __init__(
        self,
        config: EventRelayConfig,
        supervisor: ConnectionSupervisor,
        publisher: EventPublisher,
        registrar: TopologyRegistrar | None = None,
        *,
        tracer: Tracer | None = None,
        logger: logging.Logger | logging.LoggerAdapter[logging.Logger] | None = None,
    ) -> None:
        """
        Initialize the consumer.

        Args:
            config: Relay configuration
            supervisor: Connection supervisor providing sessions
            publisher: Publisher used to republish retries
            registrar: Topology registrar, consulted to check that consumed
                queues have dead-letter routing
            tracer: Optional tracer
            logger: Optional logger
        """
        self._config = config
        self._supervisor = supervisor
        self._publisher = publisher
        self._registrar = registrar
        self._tracer = tracer or create_tracer(__name__, config.enable_tracing)
        self._logger = logger or config.logger or logging.getLogger(__name__)

        self._handlers: dict[str, HandlerAdapter] = {}
        self._consumers: dict[str, ConsumerRegistration] = {}
        self._retry_tasks: set[asyncio.Task[None]] = set()
        self._flush_event = asyncio.Event()
        self._stats = ConsumerStats()

        self._supervisor.add_reconnect_listener(self._on_reconnect)

    @property
    def stats(self) -> ConsumerStats:
        return self._stats

    # =========================================================================
    # Handler registry
    # =========================================================================

    def register_handler(self, event_type: str, handler: Handler | Any) -> None:
        """
        Register the handler for an event type, replacing any previous one.

        Args:
            event_type: Dot-namespaced event type
            handler: Callable ``(envelope, context)`` or object with a
                ``handle(envelope, context)`` method, sync or async

        Raises:
            ValueError: If event_type is empty or not a string
            TypeError: If handler is not callable
        """
        if not isinstance(event_type, str) or not event_type:
            raise ValueError(f"event_type must be a non-empty string, got {event_type!r}.")
        adapter = HandlerAdapter(handler)
        replaced = event_type in self._handlers
        self._handlers[event_type] = adapter
        self._logger.debug(
            f"Registered handler {adapter.name} for {event_type}",
            extra={"event_type": event_type, "handler": adapter.name, "replaced": replaced},
        )

    def unregister_handler(self, event_type: str) -> bool:
        """Remove the handler for an event type. Returns True if one existed."""
        return self._handlers.pop(event_type, None) is not None

    def get_handler(self, event_type: str) -> Any | None:
        """Get the handler registered for an event type, as registered."""
        adapter = self._handlers.get(event_type)
        return adapter.original if adapter else None

    @property
    def handled_event_types(self) -> list[str]:
        return list(self._handlers)

    # =========================================================================
    # Consumers
    # =========================================================================

    @property
    def active_consumers(self) -> list[str]:
        """Names of the queues currently being consumed."""
        return list(self._consumers)

    def get_registration(self, queue_name: str) -> ConsumerRegistration | None:
        return self._consumers.get(queue_name)

    async def consume(
        self,
        queue_name: str,
        *,
        prefetch: int | None = None,
        auto_ack: bool = False,
        consumer_tag: str | None = None,
    ) -> str:
        """
        Start consuming a queue.

        Args:
            queue_name: Queue to consume
            prefetch: Concurrency limit (defaults to config.prefetch)
            auto_ack: Let the broker settle messages on delivery. Failed
                messages are still retried, but cannot be dead-lettered.
            consumer_tag: Optional consumer tag

        Returns:
            The consumer tag

        Raises:
            ConsumeError: If the queue is already consumed or the broker
                refuses the consumer
            TopologyError: If strict_dead_letter is set and the queue was not
                declared with dead-letter routing
        """
        if queue_name in self._consumers:
            raise ConsumeError(queue_name, "already consuming this queue")
        limit = prefetch if prefetch is not None else self._config.prefetch
        if limit < 1:
            raise ValueError(f"prefetch must be >= 1, got {limit}.")
        self._check_dead_letter(queue_name)

        session = await self._supervisor.acquire_session()
        tag = await self._start_consumer(session, queue_name, limit, auto_ack, consumer_tag)
        self._consumers[queue_name] = ConsumerRegistration(
            queue_name=queue_name,
            consumer_tag=tag,
            prefetch=limit,
            auto_ack=auto_ack,
            requested_tag=consumer_tag,
        )
        self._logger.info(
            f"Consuming {queue_name}",
            extra={"queue": queue_name, "consumer_tag": tag, "prefetch": limit},
        )
        return tag

    async def cancel_consumer(self, queue_name: str) -> bool:
        """
        Cancel the consumer of a queue and forget it.

        Handlers already running are not interrupted. Cancel failures are
        logged and swallowed.

        Returns:
            True if a consumer was registered for the queue
        """
        registration = self._consumers.pop(queue_name, None)
        if registration is None:
            return False

        session = self._supervisor.current_session
        if session is None:
            return True
        try:
            await session.cancel(registration.consumer_tag)
            self._logger.info(
                f"Cancelled consumer for {queue_name}",
                extra={"queue": queue_name, "consumer_tag": registration.consumer_tag},
            )
        except Exception as e:
            self._logger.warning(
                f"Failed to cancel consumer for {queue_name}: {e}",
                extra={"queue": queue_name, "consumer_tag": registration.consumer_tag},
            )
        return True

    async def cancel_all_consumers(self) -> None:
        for queue_name in list(self._consumers):
            await self.cancel_consumer(queue_name)

    async def _start_consumer(
        self,
        session: BrokerSession,
        queue_name: str,
        prefetch: int,
        auto_ack: bool,
        consumer_tag: str | None,
    ) -> str:
        callback = functools.partial(self.handle_message, session=session, queue_name=queue_name)
        try:
            await session.set_concurrency_limit(prefetch)
            return await session.consume(
                queue_name,
                callback,
                auto_ack=auto_ack,
                consumer_tag=consumer_tag,
            )
        except ConsumeError:
            raise
        except Exception as e:
            raise ConsumeError(queue_name, str(e)) from e

    async def _on_reconnect(self, session: BrokerSession) -> None:
        for queue_name, registration in list(self._consumers.items()):
            try:
                tag = await self._start_consumer(
                    session,
                    queue_name,
                    registration.prefetch,
                    registration.auto_ack,
                    registration.requested_tag,
                )
            except ConsumeError as e:
                self._logger.error(
                    f"Failed to resume consumer for {queue_name}: {e}",
                    exc_info=True,
                    extra={"queue": queue_name},
                )
                continue
            self._consumers[queue_name] = ConsumerRegistration(
                queue_name=queue_name,
                consumer_tag=tag,
                prefetch=registration.prefetch,
                auto_ack=registration.auto_ack,
                requested_tag=registration.requested_tag,
            )
            self._logger.info(
                f"Resumed consumer for {queue_name}",
                extra={"queue": queue_name, "consumer_tag": tag},
            )

    def _check_dead_letter(self, queue_name: str) -> None:
        if self._registrar is None or self._registrar.is_dead_letter_configured(queue_name):
            return
        message = (
            f"Queue {queue_name} was not declared with create_queue(); "
            "dead-lettered messages are dropped unless the queue has "
            "x-dead-letter-exchange set"
        )
        if self._config.strict_dead_letter:
            raise TopologyError(message)
        self._logger.warning(message, extra={"queue": queue_name})

    # =========================================================================
    # Delivery engine
    # =========================================================================

    async def handle_message(
        self,
        message: InboundMessage,
        session: BrokerSession,
        queue_name: str,
    ) -> DeliveryOutcome:
        """
        Drive one delivery to its final state.

        Args:
            message: The delivered message
            session: Session the message was delivered on (delivery tags
                are only valid there)
            queue_name: Queue the message was consumed from

        Returns:
            The final delivery outcome
        """
        self._stats.received += 1

        try:
            envelope = EventEnvelope.decode(message.body)
            retry_count = read_retry_count(message.headers)
        except DecodeError as e:
            self._stats.decode_failures += 1
            self._stats.last_error_at = datetime.now(UTC)
            self._logger.error(
                f"Undecodable message on {queue_name}, dead-lettering: {e}",
                extra={
                    "queue": queue_name,
                    "routing_key": message.routing_key,
                    "message_id": message.message_id,
                    "body_preview": e.body_preview,
                },
            )
            return await self._dead_letter(message, session, queue_name)

        span = None
        if self._tracer.enabled:
            span = self._tracer.start_span(
                "eventrelay.consume",
                kind=SpanKindEnum.CONSUMER,
                attributes={
                    ATTR_MESSAGING_SYSTEM: "rabbitmq",
                    ATTR_MESSAGING_DESTINATION: queue_name,
                    ATTR_MESSAGING_ROUTING_KEY: message.routing_key,
                    ATTR_EVENT_TYPE: envelope.event_type,
                    ATTR_EVENT_ID: envelope.event_id,
                    ATTR_RETRY_COUNT: retry_count,
                },
                context=extract(dict(message.headers)),
            )

        try:
            outcome = await self._dispatch(envelope, message, session, queue_name, retry_count, span)
            if span is not None:
                span.set_attribute(ATTR_DELIVERY_OUTCOME, outcome.value)
            return outcome
        finally:
            if span is not None:
                span.end()

    async def _dispatch(
        self,
        envelope: EventEnvelope,
        message: InboundMessage,
        session: BrokerSession,
        queue_name: str,
        retry_count: int,
        span: Any,
    ) -> DeliveryOutcome:
        log_extra: dict[str, Any] = {
            "queue": queue_name,
            "event_id": envelope.event_id,
            "event_type": envelope.event_type,
            "correlation_id": envelope.correlation_id,
            "retry_count": retry_count,
        }

        adapter = self._handlers.get(envelope.event_type)
        if adapter is None:
            self._stats.unhandled += 1
            self._logger.debug(
                f"No handler for {envelope.event_type}, acknowledging",
                extra=log_extra,
            )
            await self._settle(message, session, ack=True)
            return DeliveryOutcome.ACKED

        if span is not None:
            span.set_attribute(ATTR_HANDLER_NAME, adapter.name)

        context = DeliveryContext(
            queue_name=queue_name,
            routing_key=message.routing_key,
            exchange=message.exchange,
            headers=dict(message.headers),
            redelivered=message.redelivered,
            retry_count=retry_count,
            message=message,
        )

        self._logger.debug(
            f"Processing {envelope.event_type} (attempt {retry_count + 1})",
            extra={**log_extra, "handler": adapter.name},
        )

        try:
            await adapter.handle(envelope, context)
        except Exception as e:
            error = HandlerError(envelope.event_type, envelope.event_id, retry_count, e)
            self._stats.handler_failures += 1
            self._stats.last_error_at = datetime.now(UTC)
            if span is not None:
                span.set_status(Status(StatusCode.ERROR, str(e)))
                span.record_exception(e)
                span.set_attribute(ATTR_ERROR_TYPE, type(e).__name__)
            self._logger.error(
                str(error),
                exc_info=True,
                extra={**log_extra, "handler": adapter.name, "error_type": type(e).__name__},
            )
            return await self._handle_failure(envelope, message, session, queue_name, retry_count)

        await self._settle(message, session, ack=True)
        self._stats.acked += 1
        if span is not None:
            span.set_status(Status(StatusCode.OK))
        self._logger.debug(f"Processed {envelope.event_type}", extra=log_extra)
        return DeliveryOutcome.ACKED

    async def _handle_failure(
        self,
        envelope: EventEnvelope,
        message: InboundMessage,
        session: BrokerSession,
        queue_name: str,
        retry_count: int,
    ) -> DeliveryOutcome:
        max_retries = self._config.consumer_max_retries
        if retry_count >= max_retries:
            self._logger.error(
                f"Event {envelope.event_id} ({envelope.event_type}) failed "
                f"{retry_count + 1} times, dead-lettering",
                extra={
                    "queue": queue_name,
                    "event_id": envelope.event_id,
                    "event_type": envelope.event_type,
                    "retry_count": retry_count,
                    "max_retries": max_retries,
                },
            )
            return await self._dead_letter(message, session, queue_name)

        try:
            headers = dict(message.headers)
            headers[HEADER_RETRY_COUNT] = retry_count + 1
            headers[HEADER_ORIGINAL_QUEUE] = message.routing_key
            retry = _ScheduledRetry(
                exchange=message.exchange,
                routing_key=message.routing_key,
                body=message.body,
                headers=headers,
                priority=message.priority or 0,
                content_type=message.content_type or CONTENT_TYPE_JSON,
                message_id=message.message_id,
                event_id=envelope.event_id,
                event_type=envelope.event_type,
            )
            delay = self.compute_retry_delay(retry_count)
        except Exception as e:
            self._logger.error(
                f"Failed to prepare retry for {envelope.event_id}, dead-lettering: {e}",
                exc_info=True,
                extra={"queue": queue_name, "event_id": envelope.event_id},
            )
            return await self._dead_letter(message, session, queue_name)

        if not await self._settle(message, session, ack=True):
            # The broker redelivers the unacknowledged original
            return DeliveryOutcome.RETRY_SCHEDULED

        task = asyncio.get_running_loop().create_task(self._republish_after(delay, retry))
        self._retry_tasks.add(task)
        task.add_done_callback(self._retry_tasks.discard)
        self._stats.retried += 1

        self._logger.warning(
            f"Scheduled retry {retry_count + 1}/{max_retries} for "
            f"{envelope.event_type} in {delay}s",
            extra={
                "queue": queue_name,
                "event_id": envelope.event_id,
                "event_type": envelope.event_type,
                "retry_count": retry_count + 1,
                "delay": delay,
            },
        )
        return DeliveryOutcome.RETRY_SCHEDULED

    async def _dead_letter(
        self,
        message: InboundMessage,
        session: BrokerSession,
        queue_name: str,
    ) -> DeliveryOutcome:
        if message.auto_ack:
            self._logger.warning(
                f"Message on {queue_name} was auto-acknowledged and cannot be dead-lettered",
                extra={"queue": queue_name, "message_id": message.message_id},
            )
        await self._settle(message, session, ack=False)
        self._stats.dead_lettered += 1
        return DeliveryOutcome.DEAD_LETTERED

    async def _settle(self, message: InboundMessage, session: BrokerSession, *, ack: bool) -> bool:
        if message.auto_ack:
            return True
        try:
            if ack:
                await session.ack(message)
            else:
                await session.nack(message, requeue=False)
        except Exception as e:
            self._logger.error(
                f"Failed to {'ack' if ack else 'nack'} message: {e}",
                extra={
                    "delivery_tag": message.delivery_tag,
                    "message_id": message.message_id,
                    "routing_key": message.routing_key,
                },
            )
            return False
        return True

    def compute_retry_delay(self, retry_count: int) -> float:
        """
        Delay before republishing after the given number of earlier retries.

        Grows linearly: ``consumer_retry_delay * (retry_count + 1)``, capped
        by ``max_consumer_retry_delay`` when set.
        """
        delay = self._config.consumer_retry_delay * (retry_count + 1)
        if self._config.max_consumer_retry_delay is not None:
            delay = min(delay, self._config.max_consumer_retry_delay)
        return delay

    # =========================================================================
    # Scheduled retries
    # =========================================================================

    @property
    def pending_retries(self) -> int:
        """Retries scheduled but not yet republished."""
        return sum(1 for task in self._retry_tasks if not task.done())

    async def wait_for_retries(self) -> None:
        """Wait until every scheduled retry has been republished (or failed)."""
        while self._retry_tasks:
            await asyncio.gather(*list(self._retry_tasks), return_exceptions=True)

    async def flush_retries(self) -> None:
        """Republish every scheduled retry now instead of after its delay."""
        self._flush_event.set()
        try:
            await self.wait_for_retries()
        finally:
            self._flush_event = asyncio.Event()

    async def _republish_after(self, delay: float, retry: _ScheduledRetry) -> None:
        flush_event = self._flush_event
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(flush_event.wait(), timeout=delay)

        try:
            await self._publisher.publish_raw(
                retry.exchange,
                retry.routing_key,
                retry.body,
                headers=retry.headers,
                priority=retry.priority,
                content_type=retry.content_type,
                message_id=retry.message_id,
            )
        except PublishError as e:
            self._stats.retry_publish_failures += 1
            self._stats.last_error_at = datetime.now(UTC)
            self._logger.error(
                f"Failed to republish retry for {retry.event_id}; the event is lost: {e}",
                exc_info=True,
                extra={
                    "event_id": retry.event_id,
                    "event_type": retry.event_type,
                    "exchange": retry.exchange,
                    "routing_key": retry.routing_key,
                },
            )
            return

        self._logger.debug(
            f"Republished {retry.event_type} for retry",
            extra={
                "event_id": retry.event_id,
                "exchange": retry.exchange,
                "routing_key": retry.routing_key,
                "retry_count": retry.headers.get(HEADER_RETRY_COUNT),
            },
        )


__all__ = [
    "ConsumerRegistration",
    "ConsumerStats",
    "DeliveryContext",
    "DeliveryOutcome",
    "EventConsumer",
    "Handler",
    "HandlerAdapter",
    "get_handler_name",
]
