"""
Basic Usage Example

This example walks through the reliability guarantees of the relay on the
in-memory broker, so it runs without RabbitMQ:
- Declaring a work queue with its dead-letter queue
- Publishing events wrapped in envelopes
- Retrying a handler that fails transiently
- Dead-lettering a message that keeps failing

Run with: python examples/basic_usage.py
"""

import asyncio
import logging

from eventrelay import (
    DeliveryContext,
    EventEnvelope,
    EventRelay,
    EventRelayConfig,
    EventTypes,
    Exchanges,
    InMemoryBroker,
    QueuePatterns,
)

QUEUE = QueuePatterns.service_specific("billing", "payment")

# =============================================================================
# Step 1: Define handlers
# =============================================================================
# Handlers receive the decoded envelope and the delivery context. Raising
# marks the attempt as failed; the relay takes care of retry and DLQ.

ledger_failures = 2


async def on_payment_created(envelope: EventEnvelope, context: DeliveryContext) -> None:
    global ledger_failures
    payment = envelope.data
    if payment["amount"] < 0:
        raise ValueError(f"Invalid amount {payment['amount']}")
    if ledger_failures > 0:
        ledger_failures -= 1
        raise ConnectionError("Ledger temporarily unavailable")
    print(
        f"   Booked payment {payment['paymentId']} "
        f"({payment['amount']} {payment['currency']}) after {context.retry_count} retries"
    )


def on_payment_completed(envelope: EventEnvelope, context: DeliveryContext) -> None:
    print(f"   Payment {envelope.data['paymentId']} completed")


# =============================================================================
# Step 2: Run the relay
# =============================================================================


async def main() -> None:
    logging.basicConfig(level=logging.WARNING)

    print("=" * 60)
    print("Event Relay - Basic Usage")
    print("=" * 60)

    broker = InMemoryBroker()
    config = EventRelayConfig(
        url="amqp://localhost:5672",
        service_name="billing",
        consumer_max_retries=3,
        consumer_retry_delay=0.1,
        enable_tracing=False,
    )

    async with EventRelay(config, session_factory=broker.connect) as relay:
        print(f"\n1. Declaring {QUEUE} with dead-letter queue {QueuePatterns.dlq(QUEUE)}")
        await relay.create_queue(QUEUE)
        await relay.bind_queue(QUEUE, Exchanges.PAYMENT_EVENTS, "payment.*")

        relay.register_handler(EventTypes.PAYMENT_CREATED, on_payment_created)
        relay.register_handler(EventTypes.PAYMENT_COMPLETED, on_payment_completed)
        await relay.consume(QUEUE)

        print("\n2. Publishing a payment the ledger rejects twice")
        result = await relay.publish(
            EventTypes.PAYMENT_CREATED,
            {"paymentId": "p-1", "amount": 100, "currency": "EUR"},
            tenant_id="tenant-a",
        )
        print(f"   Published {result.event_id} to {result.exchange}")
        await asyncio.sleep(1.0)

        print("\n3. Publishing a payment that can never succeed")
        await relay.publish(
            EventTypes.PAYMENT_CREATED,
            {"paymentId": "p-2", "amount": -5, "currency": "EUR"},
        )
        await asyncio.sleep(1.5)

        print("\n4. Publishing a completion")
        await relay.publish(EventTypes.PAYMENT_COMPLETED, {"paymentId": "p-1", "status": "done"})
        await broker.join()

        print("\n5. Dead-letter queue contents:")
        for message in broker.messages(QueuePatterns.dlq(QUEUE)):
            envelope = EventEnvelope.decode(message.body)
            print(f"   {envelope.event_type} {envelope.data} (retries: {message.headers['x-retry-count']})")

        print("\n6. Stats:")
        for key, value in relay.get_stats()["consumer"].items():
            print(f"   {key}: {value}")

    print("\n" + "=" * 60)
    print("Example completed successfully!")
    print("=" * 60)


if __name__ == "__main__":
    asyncio.run(main())
