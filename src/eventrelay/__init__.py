"""
eventrelay - Reliable event publishing and consuming over RabbitMQ.

This library provides:
- A connection supervisor with bounded reconnection and a shared connect attempt
- Queue topology with per-queue dead-letter queues
- An event publisher with envelope construction and retry
- A delivery engine with delayed retries and dead-lettering
- An in-memory broker for tests
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("eventrelay")
except PackageNotFoundError:
    # Package not installed (running from source without install)
    __version__ = "0.0.0.dev0"

# Broker sessions
from eventrelay.broker import (
    AioPikaSession,
    BrokerSession,
    InboundMessage,
    InMemoryBroker,
    SessionFactory,
)

# Configuration
from eventrelay.config import (
    BASELINE_EXCHANGES,
    EventRelayConfig,
    ExchangeSpec,
)

# Delivery engine
from eventrelay.consumer import (
    ConsumerRegistration,
    ConsumerStats,
    DeliveryContext,
    DeliveryOutcome,
    EventConsumer,
    Handler,
)

# Envelope
from eventrelay.envelope import (
    HEADER_CORRELATION_ID,
    HEADER_EVENT_TYPE,
    HEADER_ORIGINAL_QUEUE,
    HEADER_RETRY_COUNT,
    HEADER_TENANT_ID,
    EnvelopeMetadata,
    EventEnvelope,
)
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

# Publisher
from eventrelay.publisher import (
    BatchPublishOutcome,
    EventPublisher,
    PublishRequest,
    PublishResult,
)

# Relay
from eventrelay.relay import EventRelay, init

# Event catalogue
from eventrelay.schemas import (
    DEFAULT_EXCHANGE_MAPPING,
    EVENT_SCHEMAS,
    EventTypes,
    Exchanges,
    QueuePatterns,
    ValidationResult,
    validate_event_payload,
)

# Connection supervision
from eventrelay.supervisor import ConnectionSupervisor, SupervisorStats

# Topology
from eventrelay.topology import QueueOptions, QueueTopology, TopologyRegistrar

__all__ = [
    "__version__",
    # Relay
    "EventRelay",
    "init",
    # Configuration
    "BASELINE_EXCHANGES",
    "EventRelayConfig",
    "ExchangeSpec",
    # Broker
    "AioPikaSession",
    "BrokerSession",
    "InMemoryBroker",
    "InboundMessage",
    "SessionFactory",
    # Supervisor
    "ConnectionSupervisor",
    "SupervisorStats",
    # Topology
    "QueueOptions",
    "QueueTopology",
    "TopologyRegistrar",
    # Publisher
    "BatchPublishOutcome",
    "EventPublisher",
    "PublishRequest",
    "PublishResult",
    # Consumer
    "ConsumerRegistration",
    "ConsumerStats",
    "DeliveryContext",
    "DeliveryOutcome",
    "EventConsumer",
    "Handler",
    # Envelope
    "EnvelopeMetadata",
    "EventEnvelope",
    "HEADER_CORRELATION_ID",
    "HEADER_EVENT_TYPE",
    "HEADER_ORIGINAL_QUEUE",
    "HEADER_RETRY_COUNT",
    "HEADER_TENANT_ID",
    # Catalogue
    "DEFAULT_EXCHANGE_MAPPING",
    "EVENT_SCHEMAS",
    "EventTypes",
    "Exchanges",
    "QueuePatterns",
    "ValidationResult",
    "validate_event_payload",
    # Exceptions
    "BrokerConnectionError",
    "ConsumeError",
    "DecodeError",
    "EventRelayError",
    "HandlerError",
    "PublishError",
    "ShutdownError",
    "TopologyError",
]
