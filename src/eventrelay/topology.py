"""
Queue topology registration.

Every work queue is declared together with its dead-letter queue. A message
rejected by a consumer (or expired, or pushed out by ``max_length``) is routed
by the broker to the dead-letter exchange under the queue's dead-letter
routing key, which is bound to ``<queue>.dlq``:

    user-service.user.events --(nack, no requeue)--> dlx --(user-service.user.events.dlq)-->
        user-service.user.events.dlq
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from eventrelay.config import EventRelayConfig
from eventrelay.envelope import (
    ARG_DEAD_LETTER_EXCHANGE,
    ARG_DEAD_LETTER_ROUTING_KEY,
    ARG_MAX_LENGTH,
    ARG_MESSAGE_TTL,
)
from eventrelay.exceptions import TopologyError
from eventrelay.schemas import QueuePatterns
from eventrelay.supervisor import ConnectionSupervisor


@dataclass(frozen=True)
class QueueOptions:
    """
    Options for ``TopologyRegistrar.create_queue``.

    Attributes:
        durable: Whether the work queue survives broker restarts
        dead_letter_exchange: Dead-letter exchange (defaults to the
            configured one)
        dead_letter_routing_key: Dead-letter routing key (defaults to
            ``<queue>.dlq``)
        message_ttl: Per-message time-to-live in milliseconds
        max_length: Maximum number of ready messages
        arguments: Additional queue arguments
    """

    durable: bool = True
    dead_letter_exchange: str | None = None
    dead_letter_routing_key: str | None = None
    message_ttl: int | None = None
    max_length: int | None = None
    arguments: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.message_ttl is not None and self.message_ttl < 0:
            raise ValueError(f"message_ttl must be >= 0, got {self.message_ttl}.")
        if self.max_length is not None and self.max_length < 0:
            raise ValueError(f"max_length must be >= 0, got {self.max_length}.")


@dataclass(frozen=True)
class QueueTopology:
    """Dead-letter routing recorded for a queue declared by the registrar."""

    name: str
    dead_letter_exchange: str
    dead_letter_routing_key: str
    dead_letter_queue: str
    arguments: dict[str, Any]


class TopologyRegistrar:
    """
    Declares work queues, their dead-letter queues and bindings.

    Declarations are idempotent: calling ``create_queue`` again with the same
    options is a no-op on the broker. Declaring an existing queue with
    different arguments fails with ``TopologyError``.

    Example:
        >>> registrar = TopologyRegistrar(config, supervisor)
        >>> await registrar.create_queue("billing.payment.events")
        'billing.payment.events'
        >>> await registrar.bind_queue("billing.payment.events", "payment.events", "payment.*")
    """

    def __init__(
        self,
        config: EventRelayConfig,
        supervisor: ConnectionSupervisor,
        *,
        logger: logging.Logger | logging.LoggerAdapter[logging.Logger] | None = None,
    ) -> None:
        self._config = config
        self._supervisor = supervisor
        self._logger = logger or config.logger or logging.getLogger(__name__)
        self._queues: dict[str, QueueTopology] = {}
        self._bindings: dict[str, list[tuple[str, str]]] = {}

    @property
    def queues(self) -> dict[str, QueueTopology]:
        """Queues declared through this registrar."""
        return dict(self._queues)

    def get_bindings(self, queue_name: str) -> list[tuple[str, str]]:
        """``(exchange, routing_key)`` pairs bound through this registrar."""
        return list(self._bindings.get(queue_name, []))

    def is_dead_letter_configured(self, queue_name: str) -> bool:
        """Check whether the queue was declared with dead-letter routing."""
        return queue_name in self._queues

    async def create_queue(self, name: str, options: QueueOptions | None = None) -> str:
        """
        Declare a durable work queue with dead-letter routing.

        Args:
            name: Queue name
            options: Queue options (defaults apply when None)

        Returns:
            The queue name

        Raises:
            ValueError: If the queue name is empty
            TopologyError: If a declaration or the DLQ binding fails
            BrokerConnectionError: If no session could be established
        """
        if not name:
            raise ValueError("Queue name must not be empty.")

        options = options or QueueOptions()
        dead_letter_exchange = options.dead_letter_exchange or self._config.dead_letter_exchange
        dead_letter_queue = QueuePatterns.dlq(name)
        dead_letter_routing_key = options.dead_letter_routing_key or dead_letter_queue

        arguments: dict[str, Any] = {
            ARG_DEAD_LETTER_EXCHANGE: dead_letter_exchange,
            ARG_DEAD_LETTER_ROUTING_KEY: dead_letter_routing_key,
        }
        if options.message_ttl is not None:
            arguments[ARG_MESSAGE_TTL] = options.message_ttl
        if options.max_length is not None:
            arguments[ARG_MAX_LENGTH] = options.max_length
        arguments.update(options.arguments)

        session = await self._supervisor.acquire_session()
        try:
            if dead_letter_exchange != self._config.dead_letter_exchange:
                await session.declare_exchange(dead_letter_exchange, "topic", durable=True)
            await session.declare_queue(name, durable=options.durable, arguments=arguments)
            await session.declare_queue(dead_letter_queue, durable=True)
            await session.bind_queue(dead_letter_queue, dead_letter_exchange, dead_letter_routing_key)
        except Exception as e:
            self._logger.error(
                f"Failed to create queue {name}: {e}",
                exc_info=True,
                extra={"queue": name, "dead_letter_exchange": dead_letter_exchange},
            )
            if isinstance(e, TopologyError):
                raise
            raise TopologyError(f"Failed to create queue {name}: {e}") from e

        self._queues[name] = QueueTopology(
            name=name,
            dead_letter_exchange=dead_letter_exchange,
            dead_letter_routing_key=dead_letter_routing_key,
            dead_letter_queue=dead_letter_queue,
            arguments=arguments,
        )
        self._logger.info(
            f"Declared queue {name} with dead-letter queue {dead_letter_queue}",
            extra={
                "queue": name,
                "dead_letter_exchange": dead_letter_exchange,
                "dead_letter_routing_key": dead_letter_routing_key,
            },
        )
        return name

    async def bind_queue(
        self,
        name: str,
        exchange: str,
        routing_keys: str | Iterable[str],
    ) -> None:
        """
        Bind a queue to an exchange under one or more routing keys.

        Each key is a separate bind operation. Bindings made before a failure
        are kept. An empty list binds nothing.

        Args:
            name: Queue name
            exchange: Exchange name
            routing_keys: A routing key or an iterable of routing keys

        Raises:
            TopologyError: If a bind fails
        """
        keys = [routing_keys] if isinstance(routing_keys, str) else list(routing_keys)
        if not keys:
            return

        session = await self._supervisor.acquire_session()
        for key in keys:
            try:
                await session.bind_queue(name, exchange, key)
            except Exception as e:
                self._logger.error(
                    f"Failed to bind {name} to {exchange} with {key}: {e}",
                    exc_info=True,
                    extra={"queue": name, "exchange": exchange, "routing_key": key},
                )
                if isinstance(e, TopologyError):
                    raise
                raise TopologyError(f"Failed to bind {name} to {exchange} with {key}: {e}") from e

            bindings = self._bindings.setdefault(name, [])
            if (exchange, key) not in bindings:
                bindings.append((exchange, key))
            self._logger.debug(
                f"Bound {name} to {exchange} with {key}",
                extra={"queue": name, "exchange": exchange, "routing_key": key},
            )


__all__ = [
    "QueueOptions",
    "QueueTopology",
    "TopologyRegistrar",
]
