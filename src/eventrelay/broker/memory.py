"""
In-memory broker for tests and local development.

``InMemoryBroker`` implements the subset of AMQP semantics the relay relies
on: topic, direct and fanout routing, idempotent declarations, per-consumer
prefetch, redelivery of unacknowledged messages when a session is lost, and
dead-letter routing through the ``x-dead-letter-exchange`` queue argument.

Sessions are created through ``InMemoryBroker.connect``, which has the
``SessionFactory`` signature and can be passed straight to the relay:

Example:
    >>> broker = InMemoryBroker()
    >>> relay = await init(config, session_factory=broker.connect)
    >>> await relay.publisher.publish("user.created", {"userId": "u1"})
    >>> await broker.join()
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections import deque
from dataclasses import dataclass, field, replace
from typing import Any

from eventrelay.broker.session import CloseCallback, ConsumerCallback, InboundMessage
from eventrelay.envelope import (
    ARG_DEAD_LETTER_EXCHANGE,
    ARG_DEAD_LETTER_ROUTING_KEY,
    ARG_MAX_LENGTH,
    CONTENT_TYPE_JSON,
)
from eventrelay.exceptions import (
    BrokerConnectionError,
    ConsumeError,
    PublishError,
    TopologyError,
)

logger = logging.getLogger(__name__)


def topic_matches(pattern: str, routing_key: str) -> bool:
    """
    Match a routing key against an AMQP topic binding pattern.

    ``*`` matches exactly one word, ``#`` matches zero or more words.

    Example:
        >>> topic_matches("user.*", "user.created")
        True
        >>> topic_matches("application.#", "application.status.updated")
        True
        >>> topic_matches("user.*", "user.profile.updated")
        False
    """
    return _match_words(pattern.split("."), routing_key.split("."))


def _match_words(pattern: list[str], words: list[str]) -> bool:
    if not pattern:
        return not words
    head, rest = pattern[0], pattern[1:]
    if head == "#":
        return any(_match_words(rest, words[i:]) for i in range(len(words) + 1))
    if not words:
        return False
    if head == "*" or head == words[0]:
        return _match_words(rest, words[1:])
    return False


@dataclass
class StoredMessage:
    """A message sitting in a queue or recorded as published."""

    body: bytes
    exchange: str
    routing_key: str
    headers: dict[str, Any] = field(default_factory=dict)
    persistent: bool = True
    priority: int = 0
    content_type: str = CONTENT_TYPE_JSON
    message_id: str | None = None
    redelivered: bool = False


@dataclass
class _Exchange:
    name: str
    kind: str
    durable: bool
    bindings: list[tuple[str, str]] = field(default_factory=list)


@dataclass
class _Consumer:
    tag: str
    session: InMemorySession
    callback: ConsumerCallback
    prefetch: int
    auto_ack: bool
    in_flight: int = 0


@dataclass
class _Queue:
    name: str
    durable: bool
    arguments: dict[str, Any]
    messages: deque[StoredMessage] = field(default_factory=deque)
    consumers: list[_Consumer] = field(default_factory=list)
    next_consumer: int = 0


@dataclass
class _Delivery:
    queue: _Queue
    message: StoredMessage
    consumer: _Consumer


class InMemoryBroker:
    """
    Process-local broker implementing the relay's session capability.

    Failure injection:
        fail_connects: Number of upcoming ``connect`` calls that fail
        fail_publishes: Number of upcoming publishes that raise PublishError
        reject_publishes: Number of upcoming publishes the broker refuses
            (``publish`` returns False)

    Inspection:
        published: Every message accepted by ``publish``, in order
        connect_calls: Number of ``connect`` calls, successful or not
        sessions: Sessions opened so far
    """

    def __init__(self) -> None:
        self.exchanges: dict[str, _Exchange] = {}
        self.queues: dict[str, _Queue] = {}
        self.sessions: list[InMemorySession] = []
        self.published: list[StoredMessage] = []
        self.connect_calls = 0
        self.fail_connects = 0
        self.fail_publishes = 0
        self.reject_publishes = 0
        self._delivery_tags = itertools.count(1)
        self._consumer_tags = itertools.count(1)
        self._tasks: set[asyncio.Task[None]] = set()

    # =========================================================================
    # Connection
    # =========================================================================

    async def connect(self, url: str) -> InMemorySession:
        """Open a session. Has the ``SessionFactory`` signature."""
        self.connect_calls += 1
        await asyncio.sleep(0)
        if self.fail_connects > 0:
            self.fail_connects -= 1
            raise BrokerConnectionError(f"Connection refused: {url}")
        session = InMemorySession(self)
        self.sessions.append(session)
        return session

    def drop_connections(self, exception: BaseException | None = None) -> None:
        """Simulate the broker closing every open session."""
        error = exception or ConnectionResetError("Connection reset by broker")
        for session in list(self.sessions):
            if session.is_open:
                session.lose(error)

    @property
    def open_sessions(self) -> list[InMemorySession]:
        return [session for session in self.sessions if session.is_open]

    # =========================================================================
    # Inspection
    # =========================================================================

    def messages(self, queue_name: str) -> list[StoredMessage]:
        """Ready (undelivered) messages in a queue."""
        queue = self.queues.get(queue_name)
        return list(queue.messages) if queue else []

    def bindings(self, exchange_name: str) -> list[tuple[str, str]]:
        """``(queue, routing_key)`` pairs bound to an exchange."""
        exchange = self.exchanges.get(exchange_name)
        return list(exchange.bindings) if exchange else []

    def consumer_count(self, queue_name: str) -> int:
        queue = self.queues.get(queue_name)
        return len(queue.consumers) if queue else 0

    @property
    def idle(self) -> bool:
        """True when no delivery callback is running."""
        return not any(not task.done() for task in self._tasks)

    async def join(self, timeout: float | None = 5.0) -> None:
        """
        Wait until every delivery callback has completed.

        Callbacks may publish (and therefore deliver) further messages, so
        this keeps waiting until the broker is idle.
        """

        async def _drain() -> None:
            while True:
                pending = [task for task in self._tasks if not task.done()]
                if not pending:
                    return
                await asyncio.gather(*pending, return_exceptions=True)

        await asyncio.wait_for(_drain(), timeout)

    # =========================================================================
    # Broker internals used by InMemorySession
    # =========================================================================

    def _declare_exchange(self, name: str, kind: str, durable: bool) -> None:
        existing = self.exchanges.get(name)
        if existing is None:
            self.exchanges[name] = _Exchange(name=name, kind=kind, durable=durable)
            return
        if existing.kind != kind or existing.durable != durable:
            raise TopologyError(
                f"PRECONDITION_FAILED - inequivalent arg for exchange '{name}': "
                f"declared as {existing.kind}/durable={existing.durable}"
            )

    def _declare_queue(self, name: str, durable: bool, arguments: dict[str, Any]) -> None:
        existing = self.queues.get(name)
        if existing is None:
            self.queues[name] = _Queue(name=name, durable=durable, arguments=dict(arguments))
            return
        if existing.durable != durable or existing.arguments != arguments:
            raise TopologyError(
                f"PRECONDITION_FAILED - inequivalent arg for queue '{name}'"
            )

    def _bind(self, queue_name: str, exchange_name: str, routing_key: str) -> None:
        if queue_name not in self.queues:
            raise TopologyError(f"NOT_FOUND - no queue '{queue_name}'")
        exchange = self.exchanges.get(exchange_name)
        if exchange is None:
            raise TopologyError(f"NOT_FOUND - no exchange '{exchange_name}'")
        binding = (queue_name, routing_key)
        if binding not in exchange.bindings:
            exchange.bindings.append(binding)

    def _publish(self, message: StoredMessage) -> bool:
        if self.fail_publishes > 0:
            self.fail_publishes -= 1
            raise PublishError(
                "Simulated publish failure",
                exchange=message.exchange,
                routing_key=message.routing_key,
            )
        if self.reject_publishes > 0:
            self.reject_publishes -= 1
            return False

        targets = self._route(message.exchange, message.routing_key)
        self.published.append(message)
        for queue_name in targets:
            self._enqueue(self.queues[queue_name], replace(message, headers=dict(message.headers)))
        return True

    def _route(self, exchange_name: str, routing_key: str) -> list[str]:
        if exchange_name == "":
            return [routing_key] if routing_key in self.queues else []

        exchange = self.exchanges.get(exchange_name)
        if exchange is None:
            raise PublishError(
                f"NOT_FOUND - no exchange '{exchange_name}'",
                exchange=exchange_name,
                routing_key=routing_key,
            )

        targets: list[str] = []
        for queue_name, binding_key in exchange.bindings:
            if exchange.kind == "topic":
                matched = topic_matches(binding_key, routing_key)
            elif exchange.kind == "direct":
                matched = binding_key == routing_key
            else:
                matched = True
            if matched and queue_name not in targets:
                targets.append(queue_name)
        return targets

    def _enqueue(self, queue: _Queue, message: StoredMessage, front: bool = False) -> None:
        if front:
            queue.messages.appendleft(message)
        else:
            queue.messages.append(message)

        max_length = queue.arguments.get(ARG_MAX_LENGTH)
        while max_length is not None and len(queue.messages) > max_length:
            self._dead_letter(queue, queue.messages.popleft(), reason="maxlen")

        self._pump(queue)

    def _dead_letter(self, queue: _Queue, message: StoredMessage, reason: str) -> None:
        exchange_name = queue.arguments.get(ARG_DEAD_LETTER_EXCHANGE)
        if exchange_name is None:
            logger.debug(
                f"Dropping message from {queue.name}: no dead-letter exchange",
                extra={"queue": queue.name, "reason": reason},
            )
            return

        routing_key = queue.arguments.get(ARG_DEAD_LETTER_ROUTING_KEY, message.routing_key)
        headers = dict(message.headers)
        headers["x-death"] = [
            {
                "queue": queue.name,
                "reason": reason,
                "exchange": message.exchange,
                "routing-keys": [message.routing_key],
                "count": 1,
            }
        ]
        dead = replace(
            message,
            exchange=exchange_name,
            routing_key=routing_key,
            headers=headers,
            redelivered=False,
        )
        for queue_name in self._route(exchange_name, routing_key):
            self._enqueue(self.queues[queue_name], replace(dead, headers=dict(dead.headers)))

    def _pump(self, queue: _Queue) -> None:
        while queue.messages and queue.consumers:
            consumer = self._next_ready_consumer(queue)
            if consumer is None:
                return
            self._deliver(queue, consumer, queue.messages.popleft())

    def _next_ready_consumer(self, queue: _Queue) -> _Consumer | None:
        count = len(queue.consumers)
        for offset in range(count):
            index = (queue.next_consumer + offset) % count
            consumer = queue.consumers[index]
            if consumer.auto_ack or consumer.prefetch == 0 or consumer.in_flight < consumer.prefetch:
                queue.next_consumer = (index + 1) % count
                return consumer
        return None

    def _deliver(self, queue: _Queue, consumer: _Consumer, message: StoredMessage) -> None:
        delivery_tag = next(self._delivery_tags)
        inbound = InboundMessage(
            body=message.body,
            routing_key=message.routing_key,
            exchange=message.exchange,
            headers=dict(message.headers),
            redelivered=message.redelivered,
            delivery_tag=delivery_tag,
            message_id=message.message_id,
            content_type=message.content_type,
            priority=message.priority,
            consumer_tag=consumer.tag,
            auto_ack=consumer.auto_ack,
            raw=_Delivery(queue=queue, message=message, consumer=consumer),
        )
        if not consumer.auto_ack:
            consumer.in_flight += 1
            consumer.session.unacked[delivery_tag] = inbound.raw

        task = asyncio.get_running_loop().create_task(consumer.callback(inbound))
        self._tasks.add(task)
        task.add_done_callback(self._on_delivery_done)

    def _on_delivery_done(self, task: asyncio.Task[None]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exception = task.exception()
        if exception is not None:
            logger.error(
                f"Consumer callback raised: {exception}",
                exc_info=exception,
            )

    def _settle(self, session: InMemorySession, message: InboundMessage) -> _Delivery:
        if message.auto_ack:
            raise ValueError("Message was consumed with auto_ack and cannot be settled")
        delivery = session.unacked.pop(message.delivery_tag, None)  # type: ignore[arg-type]
        if delivery is None:
            raise ValueError(
                f"PRECONDITION_FAILED - unknown delivery tag {message.delivery_tag}"
            )
        delivery.consumer.in_flight -= 1
        return delivery

    def _requeue_unacked(self, session: InMemorySession) -> None:
        affected: list[_Queue] = []
        # appendleft in reverse delivery order keeps the oldest at the head
        for delivery in reversed(list(session.unacked.values())):
            delivery.queue.messages.appendleft(replace(delivery.message, redelivered=True))
            if delivery.queue not in affected:
                affected.append(delivery.queue)
        session.unacked.clear()
        for queue in self.queues.values():
            queue.consumers = [c for c in queue.consumers if c.session is not session]
            queue.next_consumer = 0
        for queue in affected:
            self._pump(queue)

    def _new_consumer_tag(self) -> str:
        return f"ctag-{next(self._consumer_tags)}"


class InMemorySession:
    """BrokerSession backed by an ``InMemoryBroker``."""

    def __init__(self, broker: InMemoryBroker) -> None:
        self._broker = broker
        self._open = True
        self._prefetch = 0
        self._close_callbacks: list[CloseCallback] = []
        self._consumers: dict[str, tuple[_Queue, _Consumer]] = {}
        self.unacked: dict[int, _Delivery] = {}

    @property
    def is_open(self) -> bool:
        return self._open

    @property
    def prefetch(self) -> int:
        return self._prefetch

    async def declare_exchange(self, name: str, kind: str = "topic", *, durable: bool = True) -> None:
        await self._checkpoint()
        self._broker._declare_exchange(name, kind, durable)

    async def declare_queue(
        self,
        name: str,
        *,
        durable: bool = True,
        arguments: dict[str, Any] | None = None,
    ) -> None:
        await self._checkpoint()
        self._broker._declare_queue(name, durable, arguments or {})

    async def bind_queue(self, queue: str, exchange: str, routing_key: str) -> None:
        await self._checkpoint()
        self._broker._bind(queue, exchange, routing_key)

    async def set_concurrency_limit(self, limit: int) -> None:
        await self._checkpoint()
        self._prefetch = limit

    async def publish(
        self,
        exchange: str,
        routing_key: str,
        body: bytes,
        *,
        headers: dict[str, Any] | None = None,
        persistent: bool = True,
        priority: int = 0,
        content_type: str = CONTENT_TYPE_JSON,
        message_id: str | None = None,
    ) -> bool:
        await self._checkpoint()
        return self._broker._publish(
            StoredMessage(
                body=body,
                exchange=exchange,
                routing_key=routing_key,
                headers=dict(headers or {}),
                persistent=persistent,
                priority=priority,
                content_type=content_type,
                message_id=message_id,
            )
        )

    async def consume(
        self,
        queue: str,
        callback: ConsumerCallback,
        *,
        auto_ack: bool = False,
        consumer_tag: str | None = None,
    ) -> str:
        await self._checkpoint()
        target = self._broker.queues.get(queue)
        if target is None:
            raise ConsumeError(queue, f"NOT_FOUND - no queue '{queue}'")
        tag = consumer_tag or self._broker._new_consumer_tag()
        if tag in self._consumers:
            raise ConsumeError(queue, f"NOT_ALLOWED - reused consumer tag '{tag}'")

        consumer = _Consumer(
            tag=tag,
            session=self,
            callback=callback,
            prefetch=self._prefetch,
            auto_ack=auto_ack,
        )
        target.consumers.append(consumer)
        self._consumers[tag] = (target, consumer)
        self._broker._pump(target)
        return tag

    async def ack(self, message: InboundMessage) -> None:
        await self._checkpoint()
        delivery = self._broker._settle(self, message)
        self._broker._pump(delivery.queue)

    async def nack(self, message: InboundMessage, *, requeue: bool = False) -> None:
        await self._checkpoint()
        delivery = self._broker._settle(self, message)
        if requeue:
            self._broker._enqueue(
                delivery.queue,
                replace(delivery.message, redelivered=True),
                front=True,
            )
        else:
            self._broker._dead_letter(delivery.queue, delivery.message, reason="rejected")
            self._broker._pump(delivery.queue)

    async def cancel(self, consumer_tag: str) -> None:
        await self._checkpoint()
        entry = self._consumers.pop(consumer_tag, None)
        if entry is None:
            return
        queue, consumer = entry
        if consumer in queue.consumers:
            queue.consumers.remove(consumer)
            queue.next_consumer = 0

    async def close(self) -> None:
        if not self._open:
            return
        self._open = False
        self._consumers.clear()
        self._broker._requeue_unacked(self)

    def add_close_callback(self, callback: CloseCallback) -> None:
        self._close_callbacks.append(callback)

    def lose(self, exception: BaseException | None = None) -> None:
        """Drop the session as if the broker closed it."""
        if not self._open:
            return
        self._open = False
        self._consumers.clear()
        self._broker._requeue_unacked(self)
        for callback in list(self._close_callbacks):
            callback(exception)

    async def _checkpoint(self) -> None:
        await asyncio.sleep(0)
        if not self._open:
            raise BrokerConnectionError("Channel is closed")


__all__ = [
    "InMemoryBroker",
    "InMemorySession",
    "StoredMessage",
    "topic_matches",
]
