"""
The relay context object.

``EventRelay`` wires one configuration into the supervisor, registrar,
publisher and consumer, and owns their lifecycle. There are no module-level
singletons: a process may run several relays against different brokers.

Example:
    >>> async with EventRelay(EventRelayConfig(service_name="billing")) as relay:
    ...     await relay.create_queue("billing.payment.events")
    ...     await relay.bind_queue("billing.payment.events", "payment.events", "payment.*")
    ...     relay.register_handler("payment.created", on_payment_created)
    ...     await relay.consume("billing.payment.events")
    ...     await stop_requested.wait()
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Mapping, Sequence
from types import TracebackType
from typing import Any

from eventrelay.broker.session import SessionFactory
from eventrelay.config import EventRelayConfig
from eventrelay.consumer import EventConsumer, Handler
from eventrelay.exceptions import ShutdownError
from eventrelay.observability import Tracer, create_tracer
from eventrelay.publisher import BatchPublishOutcome, EventPublisher, PublishRequest, PublishResult
from eventrelay.supervisor import ConnectionSupervisor
from eventrelay.topology import QueueOptions, TopologyRegistrar


class EventRelay:
    """
    Owns the components of one relay.

    Attributes:
        config: The shared configuration
        supervisor: Connection supervisor
        registrar: Queue topology registrar
        publisher: Event publisher
        consumer: Event consumer and delivery engine
    """

    def __init__(
        self,
        config: EventRelayConfig | None = None,
        *,
        session_factory: SessionFactory | None = None,
        tracer: Tracer | None = None,
    ) -> None:
        """
        Build the components. Nothing connects until ``start()``.

        Args:
            config: Relay configuration (defaults read the environment)
            session_factory: Optional session factory, e.g.
                ``InMemoryBroker().connect`` in tests
            tracer: Optional tracer shared by publisher and consumer
        """
        self.config = config or EventRelayConfig()
        self._logger = self.config.logger or logging.getLogger(__name__)
        tracer = tracer or create_tracer("eventrelay", self.config.enable_tracing)

        self.supervisor = ConnectionSupervisor(self.config, session_factory)
        self.registrar = TopologyRegistrar(self.config, self.supervisor)
        self.publisher = EventPublisher(self.config, self.supervisor, tracer=tracer)
        self.consumer = EventConsumer(
            self.config,
            self.supervisor,
            self.publisher,
            self.registrar,
            tracer=tracer,
        )
        self._shut_down = False

    @property
    def is_connected(self) -> bool:
        return self.supervisor.is_connected

    @property
    def is_shut_down(self) -> bool:
        return self._shut_down

    async def start(self) -> EventRelay:
        """
        Connect and declare the exchanges.

        Raises:
            ShutdownError: If the relay was shut down
            BrokerConnectionError: If the broker is unreachable
            TopologyError: If declaring the exchanges failed
        """
        self._ensure_running()
        await self.supervisor.acquire_session()
        self._logger.info(
            f"Event relay started for {self.config.service_name}",
            extra={"service": self.config.service_name, "url": self.config.sanitized_url},
        )
        return self

    async def shutdown(self, timeout: float | None = None) -> None:
        """
        Shut down gracefully.

        Cancels every consumer, republishes scheduled retries immediately
        (bounded by ``timeout``, defaulting to config.shutdown_timeout), then
        closes the session. Calling it again is a no-op.
        """
        if self._shut_down:
            return
        self._shut_down = True
        timeout = self.config.shutdown_timeout if timeout is None else timeout

        await self.consumer.cancel_all_consumers()

        pending = self.consumer.pending_retries
        if pending:
            self._logger.info(
                f"Flushing {pending} scheduled retries",
                extra={"pending_retries": pending},
            )
            try:
                await asyncio.wait_for(self.consumer.flush_retries(), timeout=timeout)
            except asyncio.TimeoutError:
                self._logger.error(
                    f"Timed out after {timeout}s flushing scheduled retries; "
                    f"{self.consumer.pending_retries} abandoned",
                    extra={"timeout": timeout},
                )

        await self.supervisor.close()
        self._logger.info("Event relay shut down", extra={"service": self.config.service_name})

    async def __aenter__(self) -> EventRelay:
        return await self.start()

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.shutdown()

    def get_stats(self) -> dict[str, Any]:
        return {
            "connected": self.is_connected,
            "connection": self.supervisor.stats.to_dict(),
            "consumer": self.consumer.stats.to_dict(),
            "active_consumers": self.consumer.active_consumers,
            "pending_retries": self.consumer.pending_retries,
        }

    # =========================================================================
    # Shortcuts
    # =========================================================================

    async def publish(self, event_type: str, data: Any, **options: Any) -> PublishResult:
        """Shortcut for ``publisher.publish``."""
        self._ensure_running()
        return await self.publisher.publish(event_type, data, **options)

    async def publish_batch(self, requests: Sequence[PublishRequest]) -> list[BatchPublishOutcome]:
        self._ensure_running()
        return await self.publisher.publish_batch(requests)

    def set_exchange_mapping(self, mapping: Mapping[str, str]) -> None:
        self.publisher.set_exchange_mapping(mapping)

    async def create_queue(self, name: str, options: QueueOptions | None = None) -> str:
        self._ensure_running()
        return await self.registrar.create_queue(name, options)

    async def bind_queue(self, name: str, exchange: str, routing_keys: str | Iterable[str]) -> None:
        self._ensure_running()
        await self.registrar.bind_queue(name, exchange, routing_keys)

    def register_handler(self, event_type: str, handler: Handler | Any) -> None:
        self.consumer.register_handler(event_type, handler)

    async def consume(self, queue_name: str, **options: Any) -> str:
        """Shortcut for ``consumer.consume``."""
        self._ensure_running()
        return await self.consumer.consume(queue_name, **options)

    def _ensure_running(self) -> None:
        if self._shut_down:
            raise ShutdownError()


async def init(
    config: EventRelayConfig | None = None,
    *,
    session_factory: SessionFactory | None = None,
    tracer: Tracer | None = None,
) -> EventRelay:
    """
    Build a relay and connect it.

    Args:
        config: Relay configuration
        session_factory: Optional session factory
        tracer: Optional tracer

    Returns:
        A started EventRelay
    """
    relay = EventRelay(config, session_factory=session_factory, tracer=tracer)
    await relay.start()
    return relay


__all__ = [
    "EventRelay",
    "init",
]
