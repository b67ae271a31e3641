"""
Connection supervisor.

Owns the single live broker session for a relay. Every component borrows the
session per operation through ``acquire_session()``; none of them hold a
long-lived reference, so a reconnect is transparent to callers.

Concurrent callers share one connection attempt: the attempt runs as a single
``asyncio.Task`` and everybody awaits it (shielded, so one caller being
cancelled does not abort the attempt for the others).
"""

from __future__ import annotations

import asyncio
import contextlib
import functools
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from eventrelay.broker.session import AioPikaSession, BrokerSession, SessionFactory
from eventrelay.config import EventRelayConfig
from eventrelay.exceptions import BrokerConnectionError, TopologyError

ReconnectListener = Callable[[BrokerSession], Awaitable[None]]


@dataclass
class SupervisorStats:
    """
    Connection statistics.

    Attributes:
        connections: Sessions successfully established
        reconnections: Sessions established after a previous one was lost
        failed_attempts: Connection attempts that failed
        connected_at: When the current session was established
    """

    connections: int = 0
    reconnections: int = 0
    failed_attempts: int = 0
    connected_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "connections": self.connections,
            "reconnections": self.reconnections,
            "failed_attempts": self.failed_attempts,
            "connected_at": self.connected_at.isoformat() if self.connected_at else None,
        }


class ConnectionSupervisor:
    """
    Establishes, watches and re-establishes the broker session.

    A connection attempt opens the session, applies the configured prefetch,
    declares every exchange from ``config.all_exchanges`` and registers a
    close callback. Connection failures are retried every
    ``reconnect_delay`` seconds; once more than ``max_reconnect_attempts``
    consecutive attempts have failed, ``BrokerConnectionError`` is raised to
    every waiting caller. Topology failures are not retried.

    When a live session is lost the supervisor discards it and schedules a
    background reconnect. Failures of that background reconnect are logged,
    never raised; the next ``acquire_session()`` call starts a fresh attempt.

    Example:
        >>> supervisor = ConnectionSupervisor(EventRelayConfig())
        >>> session = await supervisor.acquire_session()
        >>> supervisor.is_connected
        True
        >>> await supervisor.close()
    """

    def __init__(
        self,
        config: EventRelayConfig,
        session_factory: SessionFactory | None = None,
        *,
        logger: logging.Logger | logging.LoggerAdapter[logging.Logger] | None = None,
    ) -> None:
        """
        Initialize the supervisor.

        Args:
            config: Relay configuration
            session_factory: Coroutine function opening a session for a URL.
                Defaults to ``AioPikaSession.connect``.
            logger: Optional logger (defaults to config.logger, then the
                module logger)
        """
        self._config = config
        self._session_factory: SessionFactory = session_factory or functools.partial(
            AioPikaSession.connect, heartbeat=config.heartbeat
        )
        self._logger = logger or config.logger or logging.getLogger(__name__)

        self._session: BrokerSession | None = None
        self._attempt: asyncio.Task[BrokerSession] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._stale_closes: set[asyncio.Task[None]] = set()
        self._failures = 0
        self._has_connected = False
        self._listeners: list[ReconnectListener] = []
        self._stats = SupervisorStats()

    @property
    def is_connected(self) -> bool:
        """Check whether a live session is currently held."""
        return self._session is not None and self._session.is_open

    @property
    def current_session(self) -> BrokerSession | None:
        """The live session, or None. Never connects."""
        return self._session if self.is_connected else None

    @property
    def stats(self) -> SupervisorStats:
        return self._stats

    def add_reconnect_listener(self, listener: ReconnectListener) -> None:
        """
        Register a coroutine function called with every session established
        after a previous one was lost.
        """
        self._listeners.append(listener)

    def remove_reconnect_listener(self, listener: ReconnectListener) -> None:
        with contextlib.suppress(ValueError):
            self._listeners.remove(listener)

    async def acquire_session(self) -> BrokerSession:
        """
        Get the live session, connecting if necessary.

        Returns:
            An open broker session

        Raises:
            BrokerConnectionError: If the connection ceiling was exceeded
            TopologyError: If declaring the exchanges failed
        """
        session = self._session
        if session is not None and session.is_open:
            return session

        if self._attempt is None or self._attempt.done():
            self._attempt = asyncio.create_task(self._connect_with_retry())
            self._attempt.add_done_callback(self._on_attempt_done)

        return await asyncio.shield(self._attempt)

    async def close(self) -> None:
        """
        Close the session and reset state.

        Errors while closing are logged and suppressed. A later
        ``acquire_session()`` starts from scratch.
        """
        reconnect_task, self._reconnect_task = self._reconnect_task, None
        if reconnect_task is not None and not reconnect_task.done():
            reconnect_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await reconnect_task

        attempt, self._attempt = self._attempt, None
        if attempt is not None and not attempt.done():
            attempt.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await attempt

        session, self._session = self._session, None
        self._failures = 0
        if session is not None:
            await self._close_quietly(session)
            self._logger.info("Broker session closed")

        if self._stale_closes:
            await asyncio.gather(*list(self._stale_closes), return_exceptions=True)

    # =========================================================================
    # Connection attempt
    # =========================================================================

    async def _connect_with_retry(self) -> BrokerSession:
        url = self._config.url or ""
        max_attempts = self._config.max_reconnect_attempts

        while True:
            try:
                session = await self._session_factory(url)
            except Exception as e:
                self._failures += 1
                self._stats.failed_attempts += 1
                if self._failures > max_attempts:
                    attempts, self._failures = self._failures, 0
                    self._logger.error(
                        f"Giving up connecting to {self._config.sanitized_url} "
                        f"after {attempts} attempts: {e}",
                        extra={"url": self._config.sanitized_url, "attempts": attempts},
                    )
                    raise BrokerConnectionError(
                        f"Failed to connect to {self._config.sanitized_url} "
                        f"after {attempts} attempts: {e}",
                        attempts=attempts,
                    ) from e

                self._logger.warning(
                    f"Connection attempt {self._failures} failed: {e}. "
                    f"Retrying in {self._config.reconnect_delay}s",
                    extra={
                        "url": self._config.sanitized_url,
                        "attempt": self._failures,
                        "max_reconnect_attempts": max_attempts,
                    },
                )
                await asyncio.sleep(self._config.reconnect_delay)
                continue

            await self._prepare(session)
            self._failures = 0
            return await self._install(session)

    async def _prepare(self, session: BrokerSession) -> None:
        try:
            await session.set_concurrency_limit(self._config.prefetch)
            for spec in self._config.all_exchanges:
                await session.declare_exchange(spec.name, spec.kind, durable=spec.durable)
        except Exception as e:
            await self._close_quietly(session)
            self._logger.error(
                f"Failed to declare exchanges: {e}",
                exc_info=True,
                extra={"url": self._config.sanitized_url},
            )
            if isinstance(e, TopologyError):
                raise
            raise TopologyError(f"Failed to declare exchanges: {e}") from e

    async def _install(self, session: BrokerSession) -> BrokerSession:
        session.add_close_callback(functools.partial(self._on_session_lost, session))
        self._session = session

        reconnected = self._has_connected
        self._has_connected = True
        self._stats.connections += 1
        self._stats.connected_at = datetime.now(UTC)
        if reconnected:
            self._stats.reconnections += 1

        self._logger.info(
            f"Connected to {self._config.sanitized_url}",
            extra={
                "url": self._config.sanitized_url,
                "prefetch": self._config.prefetch,
                "reconnected": reconnected,
            },
        )

        if reconnected:
            for listener in list(self._listeners):
                try:
                    await listener(session)
                except Exception as e:
                    self._logger.error(
                        f"Reconnect listener failed: {e}",
                        exc_info=True,
                    )
        return session

    def _on_attempt_done(self, task: asyncio.Task[BrokerSession]) -> None:
        if self._attempt is task:
            self._attempt = None
        # Failures reach every awaiting caller; mark them retrieved here
        if not task.cancelled():
            task.exception()

    # =========================================================================
    # Liveness
    # =========================================================================

    def _on_session_lost(self, session: BrokerSession, exception: BaseException | None) -> None:
        if self._session is not session:
            return
        self._session = None
        # A channel-level close leaves the connection open
        stale_close = asyncio.get_running_loop().create_task(self._close_quietly(session))
        self._stale_closes.add(stale_close)
        stale_close.add_done_callback(self._stale_closes.discard)

        self._logger.warning(
            f"Broker session lost: {exception}. "
            f"Reconnecting in {self._config.reconnect_delay}s",
            extra={"url": self._config.sanitized_url},
        )
        if self._reconnect_task is None or self._reconnect_task.done():
            self._reconnect_task = asyncio.get_running_loop().create_task(
                self._reconnect_after_delay()
            )

    async def _reconnect_after_delay(self) -> None:
        await asyncio.sleep(self._config.reconnect_delay)
        try:
            await self.acquire_session()
        except Exception as e:
            self._logger.error(
                f"Background reconnect failed: {e}",
                exc_info=True,
                extra={"url": self._config.sanitized_url},
            )

    async def _close_quietly(self, session: BrokerSession) -> None:
        try:
            await session.close()
        except Exception as e:
            self._logger.warning(f"Error closing broker session: {e}")


__all__ = [
    "ConnectionSupervisor",
    "ReconnectListener",
    "SupervisorStats",
]
