"""
Unit tests for InMemoryBroker.

The in-memory broker backs most of the test suite, so its AMQP semantics
(routing, prefetch, redelivery and dead-lettering) are pinned down here.
"""

from __future__ import annotations

import asyncio

import pytest

from eventrelay.broker.memory import InMemoryBroker, topic_matches
from eventrelay.broker.session import BrokerSession, InboundMessage
from eventrelay.envelope import ARG_DEAD_LETTER_EXCHANGE, ARG_DEAD_LETTER_ROUTING_KEY, ARG_MAX_LENGTH
from eventrelay.exceptions import (
    BrokerConnectionError,
    ConsumeError,
    PublishError,
    TopologyError,
)

# =============================================================================
# Topic matching
# =============================================================================


@pytest.mark.parametrize(
    ("pattern", "key", "expected"),
    [
        ("user.created", "user.created", True),
        ("user.*", "user.created", True),
        ("user.*", "user.profile.updated", False),
        ("user.#", "user.profile.updated", True),
        ("user.#", "user", True),
        ("#", "anything.at.all", True),
        ("*.created", "payment.created", True),
        ("*.created", "payment.updated", False),
        ("application.#.updated", "application.status.updated", True),
    ],
)
def test_topic_matches(pattern: str, key: str, expected: bool) -> None:
    assert topic_matches(pattern, key) is expected


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def broker() -> InMemoryBroker:
    return InMemoryBroker()


async def _setup_queue(session: BrokerSession, name: str = "work", **arguments: object) -> None:
    await session.declare_exchange("events", "topic")
    await session.declare_queue(name, arguments=dict(arguments))
    await session.bind_queue(name, "events", "#")


# =============================================================================
# Connection
# =============================================================================


class TestConnect:
    @pytest.mark.asyncio
    async def test_connect_returns_open_session(self, broker: InMemoryBroker) -> None:
        session = await broker.connect("amqp://test")

        assert session.is_open
        assert isinstance(session, BrokerSession)
        assert broker.connect_calls == 1

    @pytest.mark.asyncio
    async def test_fail_connects(self, broker: InMemoryBroker) -> None:
        broker.fail_connects = 1

        with pytest.raises(BrokerConnectionError):
            await broker.connect("amqp://test")
        session = await broker.connect("amqp://test")

        assert session.is_open
        assert broker.connect_calls == 2

    @pytest.mark.asyncio
    async def test_operations_on_closed_session_fail(self, broker: InMemoryBroker) -> None:
        session = await broker.connect("amqp://test")
        await session.close()

        with pytest.raises(BrokerConnectionError):
            await session.declare_exchange("events")

    @pytest.mark.asyncio
    async def test_drop_connections_fires_callbacks(self, broker: InMemoryBroker) -> None:
        session = await broker.connect("amqp://test")
        seen: list[BaseException | None] = []
        session.add_close_callback(seen.append)

        broker.drop_connections()

        assert not session.is_open
        assert len(seen) == 1
        assert isinstance(seen[0], ConnectionResetError)

    @pytest.mark.asyncio
    async def test_graceful_close_does_not_fire_callbacks(self, broker: InMemoryBroker) -> None:
        session = await broker.connect("amqp://test")
        seen: list[BaseException | None] = []
        session.add_close_callback(seen.append)

        await session.close()

        assert seen == []


# =============================================================================
# Topology
# =============================================================================


class TestTopology:
    @pytest.mark.asyncio
    async def test_redeclare_identical_is_noop(self, broker: InMemoryBroker) -> None:
        session = await broker.connect("amqp://test")

        await session.declare_exchange("events", "topic")
        await session.declare_exchange("events", "topic")
        await session.declare_queue("q", arguments={"x-max-length": 5})
        await session.declare_queue("q", arguments={"x-max-length": 5})

        assert list(broker.exchanges) == ["events"]
        assert list(broker.queues) == ["q"]

    @pytest.mark.asyncio
    async def test_redeclare_with_different_parameters_fails(self, broker: InMemoryBroker) -> None:
        session = await broker.connect("amqp://test")
        await session.declare_exchange("events", "topic")
        await session.declare_queue("q")

        with pytest.raises(TopologyError):
            await session.declare_exchange("events", "fanout")
        with pytest.raises(TopologyError):
            await session.declare_queue("q", arguments={"x-message-ttl": 1000})

    @pytest.mark.asyncio
    async def test_bind_requires_existing_entities(self, broker: InMemoryBroker) -> None:
        session = await broker.connect("amqp://test")
        await session.declare_queue("q")

        with pytest.raises(TopologyError):
            await session.bind_queue("q", "missing", "#")
        with pytest.raises(TopologyError):
            await session.bind_queue("missing", "events", "#")


# =============================================================================
# Routing and delivery
# =============================================================================


class TestRouting:
    @pytest.mark.asyncio
    async def test_topic_routing(self, broker: InMemoryBroker) -> None:
        session = await broker.connect("amqp://test")
        await session.declare_exchange("user.events", "topic")
        await session.declare_queue("created")
        await session.declare_queue("all")
        await session.bind_queue("created", "user.events", "user.created")
        await session.bind_queue("all", "user.events", "user.*")

        await session.publish("user.events", "user.created", b"1")
        await session.publish("user.events", "user.deleted", b"2")

        assert [m.body for m in broker.messages("created")] == [b"1"]
        assert [m.body for m in broker.messages("all")] == [b"1", b"2"]

    @pytest.mark.asyncio
    async def test_default_exchange_routes_by_queue_name(self, broker: InMemoryBroker) -> None:
        session = await broker.connect("amqp://test")
        await session.declare_queue("direct-q")

        await session.publish("", "direct-q", b"x")

        assert len(broker.messages("direct-q")) == 1

    @pytest.mark.asyncio
    async def test_publish_to_missing_exchange_fails(self, broker: InMemoryBroker) -> None:
        session = await broker.connect("amqp://test")

        with pytest.raises(PublishError):
            await session.publish("nowhere", "key", b"x")

    @pytest.mark.asyncio
    async def test_rejected_publish_returns_false(self, broker: InMemoryBroker) -> None:
        session = await broker.connect("amqp://test")
        await _setup_queue(session)
        broker.reject_publishes = 1

        assert await session.publish("events", "a", b"x") is False
        assert await session.publish("events", "a", b"y") is True
        assert [m.body for m in broker.published] == [b"y"]

    @pytest.mark.asyncio
    async def test_prefetch_limits_in_flight(self, broker: InMemoryBroker) -> None:
        session = await broker.connect("amqp://test")
        await _setup_queue(session)
        await session.set_concurrency_limit(2)
        received: list[InboundMessage] = []
        release = asyncio.Event()

        async def callback(message: InboundMessage) -> None:
            received.append(message)
            await release.wait()

        for i in range(5):
            await session.publish("events", "k", str(i).encode())
        await session.consume("work", callback)
        await asyncio.sleep(0)

        assert len(received) == 2
        assert len(broker.messages("work")) == 3

        await session.ack(received[0])
        await asyncio.sleep(0)

        assert len(received) == 3
        release.set()
        await broker.join()

    @pytest.mark.asyncio
    async def test_nack_with_requeue_redelivers(self, broker: InMemoryBroker) -> None:
        session = await broker.connect("amqp://test")
        await _setup_queue(session)
        received: list[InboundMessage] = []

        async def callback(message: InboundMessage) -> None:
            received.append(message)
            if len(received) == 1:
                await session.nack(message, requeue=True)
            else:
                await session.ack(message)

        await session.consume("work", callback)
        await session.publish("events", "k", b"x")
        await broker.join()

        assert len(received) == 2
        assert received[1].redelivered is True

    @pytest.mark.asyncio
    async def test_nack_without_requeue_dead_letters(self, broker: InMemoryBroker) -> None:
        session = await broker.connect("amqp://test")
        await session.declare_exchange("dlx", "topic")
        await session.declare_queue("work.dlq")
        await session.bind_queue("work.dlq", "dlx", "work.dlq")
        await _setup_queue(
            session,
            **{ARG_DEAD_LETTER_EXCHANGE: "dlx", ARG_DEAD_LETTER_ROUTING_KEY: "work.dlq"},
        )

        async def callback(message: InboundMessage) -> None:
            await session.nack(message, requeue=False)

        await session.consume("work", callback)
        await session.publish("events", "k", b"poison", headers={"h": 1})
        await broker.join()

        dead = broker.messages("work.dlq")
        assert [m.body for m in dead] == [b"poison"]
        assert dead[0].headers["h"] == 1
        assert dead[0].headers["x-death"][0]["queue"] == "work"

    @pytest.mark.asyncio
    async def test_nack_without_dead_letter_exchange_drops(self, broker: InMemoryBroker) -> None:
        session = await broker.connect("amqp://test")
        await _setup_queue(session)

        async def callback(message: InboundMessage) -> None:
            await session.nack(message, requeue=False)

        await session.consume("work", callback)
        await session.publish("events", "k", b"x")
        await broker.join()

        assert broker.messages("work") == []

    @pytest.mark.asyncio
    async def test_double_ack_fails(self, broker: InMemoryBroker) -> None:
        session = await broker.connect("amqp://test")
        await _setup_queue(session)
        errors: list[Exception] = []

        async def callback(message: InboundMessage) -> None:
            await session.ack(message)
            try:
                await session.ack(message)
            except ValueError as e:
                errors.append(e)

        await session.consume("work", callback)
        await session.publish("events", "k", b"x")
        await broker.join()

        assert len(errors) == 1

    @pytest.mark.asyncio
    async def test_lost_session_requeues_unacked(self, broker: InMemoryBroker) -> None:
        first = await broker.connect("amqp://test")
        await _setup_queue(first)
        hold = asyncio.Event()

        async def slow(message: InboundMessage) -> None:
            await hold.wait()

        await first.consume("work", slow)
        await first.publish("events", "k", b"a")
        await first.publish("events", "k", b"b")
        await asyncio.sleep(0)

        broker.drop_connections()

        ready = broker.messages("work")
        assert [m.body for m in ready] == [b"a", b"b"]
        assert all(m.redelivered for m in ready)
        assert broker.consumer_count("work") == 0
        hold.set()
        await broker.join()

    @pytest.mark.asyncio
    async def test_max_length_dead_letters_head(self, broker: InMemoryBroker) -> None:
        session = await broker.connect("amqp://test")
        await session.declare_exchange("dlx", "topic")
        await session.declare_queue("work.dlq")
        await session.bind_queue("work.dlq", "dlx", "work.dlq")
        await _setup_queue(
            session,
            **{
                ARG_DEAD_LETTER_EXCHANGE: "dlx",
                ARG_DEAD_LETTER_ROUTING_KEY: "work.dlq",
                ARG_MAX_LENGTH: 1,
            },
        )

        await session.publish("events", "k", b"old")
        await session.publish("events", "k", b"new")

        assert [m.body for m in broker.messages("work")] == [b"new"]
        assert [m.body for m in broker.messages("work.dlq")] == [b"old"]

    @pytest.mark.asyncio
    async def test_consume_missing_queue_fails(self, broker: InMemoryBroker) -> None:
        session = await broker.connect("amqp://test")

        async def callback(message: InboundMessage) -> None:
            pass

        with pytest.raises(ConsumeError):
            await session.consume("missing", callback)

    @pytest.mark.asyncio
    async def test_cancel_stops_delivery(self, broker: InMemoryBroker) -> None:
        session = await broker.connect("amqp://test")
        await _setup_queue(session)
        received: list[InboundMessage] = []

        async def callback(message: InboundMessage) -> None:
            received.append(message)
            await session.ack(message)

        tag = await session.consume("work", callback)
        await session.cancel(tag)
        await session.publish("events", "k", b"x")
        await broker.join()

        assert received == []
        assert len(broker.messages("work")) == 1
