"""Unit tests for the eventrelay exception hierarchy."""

from __future__ import annotations

import pytest

from eventrelay.exceptions import (
    BrokerConnectionError,
    ConsumeError,
    DecodeError,
    EventRelayError,
    HandlerError,
    PublishError,
    ShutdownError,
    TopologyError,
)


@pytest.mark.parametrize(
    "error",
    [
        BrokerConnectionError("down"),
        TopologyError("bad"),
        PublishError("nope"),
        ConsumeError("q", "refused"),
        HandlerError("user.created", "e1", 0, RuntimeError("boom")),
        DecodeError("garbage"),
        ShutdownError(),
    ],
)
def test_all_errors_share_base(error: Exception) -> None:
    assert isinstance(error, EventRelayError)


def test_broker_connection_error_attempts() -> None:
    error = BrokerConnectionError("down", attempts=11)

    assert error.attempts == 11


def test_publish_error_attributes() -> None:
    error = PublishError("failed", exchange="user.events", routing_key="user.created", attempts=3)

    assert error.exchange == "user.events"
    assert error.routing_key == "user.created"
    assert error.attempts == 3


def test_consume_error_message() -> None:
    error = ConsumeError("orders", "NOT_FOUND")

    assert error.queue_name == "orders"
    assert str(error) == "Failed to consume from orders: NOT_FOUND"


def test_handler_error_chains_cause() -> None:
    cause = ValueError("invalid amount")
    error = HandlerError("payment.created", "e1", 2, cause)

    assert error.__cause__ is cause
    assert error.event_type == "payment.created"
    assert error.retry_count == 2
    assert "invalid amount" in str(error)


def test_shutdown_error_default_message() -> None:
    assert str(ShutdownError()) == "Event relay has been shut down"
