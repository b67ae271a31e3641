"""
Broker sessions.

- ``BrokerSession``: capability protocol every component talks to
- ``AioPikaSession``: RabbitMQ implementation built on aio-pika
- ``InMemoryBroker``: process-local broker for tests and local development
"""

from eventrelay.broker.memory import InMemoryBroker, InMemorySession, StoredMessage, topic_matches
from eventrelay.broker.session import (
    AioPikaSession,
    BrokerSession,
    CloseCallback,
    ConsumerCallback,
    InboundMessage,
    SessionFactory,
)

__all__ = [
    "AioPikaSession",
    "BrokerSession",
    "CloseCallback",
    "ConsumerCallback",
    "InMemoryBroker",
    "InMemorySession",
    "InboundMessage",
    "SessionFactory",
    "StoredMessage",
    "topic_matches",
]
