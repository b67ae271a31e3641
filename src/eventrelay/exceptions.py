"""Library exceptions for the eventrelay package."""

from __future__ import annotations


class EventRelayError(Exception):
    """Base exception for eventrelay library."""

    pass


class BrokerConnectionError(EventRelayError):
    """Raised when a broker session cannot be established.

    Connection failures are transient: the supervisor retries them with a
    fixed delay until the configured ceiling is exceeded, after which this
    error is raised to every caller waiting on the attempt.

    Attributes:
        attempts: Number of connection attempts made before giving up
    """

    def __init__(self, message: str, attempts: int = 0) -> None:
        self.attempts = attempts
        super().__init__(message)


class TopologyError(EventRelayError):
    """Raised when declaring or binding an exchange or queue fails.

    Topology errors are not retried. They surface to the caller of
    ``init()``, ``create_queue()`` or ``bind_queue()``.
    """

    pass


class PublishError(EventRelayError):
    """Raised when a message could not be handed to the broker.

    Attributes:
        exchange: Target exchange name
        routing_key: Routing key used for the publish
        attempts: Number of attempts made
    """

    def __init__(
        self,
        message: str,
        exchange: str = "",
        routing_key: str = "",
        attempts: int = 0,
    ) -> None:
        self.exchange = exchange
        self.routing_key = routing_key
        self.attempts = attempts
        super().__init__(message)


class ConsumeError(EventRelayError):
    """Raised when a consumer cannot be registered on a queue."""

    def __init__(self, queue_name: str, message: str) -> None:
        self.queue_name = queue_name
        super().__init__(f"Failed to consume from {queue_name}: {message}")


class HandlerError(EventRelayError):
    """
    Raised when a registered handler fails to process an envelope.

    The delivery engine wraps the original exception so that logs and
    dead-letter decisions carry the event identity alongside the cause.

    Attributes:
        event_type: Type of the event being handled
        event_id: ID of the event being handled
        retry_count: Retry count of the delivery that failed
    """

    def __init__(self, event_type: str, event_id: str, retry_count: int, cause: BaseException) -> None:
        self.event_type = event_type
        self.event_id = event_id
        self.retry_count = retry_count
        self.__cause__ = cause
        super().__init__(
            f"Handler for {event_type} failed on event {event_id} "
            f"(retry {retry_count}): {cause}"
        )


class DecodeError(EventRelayError):
    """Raised when a message body or its delivery headers cannot be decoded."""

    def __init__(self, message: str, body_preview: str = "") -> None:
        self.body_preview = body_preview
        super().__init__(message)


class ShutdownError(EventRelayError):
    """Raised when an operation is attempted after the relay was shut down."""

    def __init__(self, message: str = "Event relay has been shut down") -> None:
        super().__init__(message)


__all__ = [
    "BrokerConnectionError",
    "ConsumeError",
    "DecodeError",
    "EventRelayError",
    "HandlerError",
    "PublishError",
    "ShutdownError",
    "TopologyError",
]
