"""
ticketflow - Event-choreography saga for smart ticketing over a partitioned log.

This library provides:
- Event envelopes and per-topic payload schemas (pydantic)
- A fixed topic registry naming producers and consumers per role
- Publishers that validate and await broker acknowledgment
- Subscribers with at-least-once delivery, per-partition ordering,
  bounded retries, pause/resume and dead letters
- In-memory and Kafka (aiokafka) broker backends
- The payment, ticketing, notification, admin, passenger and transport
  participants
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("ticketflow")
except PackageNotFoundError:
    # Package not installed (running from source without install)
    __version__ = "0.0.0.dev0"

from ticketflow.bus import (
    Ack,
    BrokerConnection,
    DeadLetterRecord,
    DeliveryPolicy,
    ExhaustedAction,
    InMemoryBroker,
    KafkaBroker,
    KafkaConfig,
    Outcome,
    Publisher,
    Subscriber,
)
from ticketflow.events import Envelope, decode_envelope, encode_payload
from ticketflow.exceptions import (
    BrokerConnectionError,
    DeliveryError,
    HandlerError,
    MalformedPayloadError,
    TicketFlowError,
    TopicNotProducibleError,
    UnknownTopicError,
)
from ticketflow.idempotency import IdempotencyStore, InMemoryIdempotencyStore
from ticketflow.participants import (
    AdminParticipant,
    NotificationParticipant,
    OutboundEvent,
    Participant,
    ParticipantRunner,
    PassengerService,
    PaymentParticipant,
    TicketingParticipant,
    TransportService,
)
from ticketflow.retry import RetryConfig
from ticketflow.service import ServiceConfig, run_service
from ticketflow.topics import DEFAULT_REGISTRY, Role, TopicRegistry, TopicSpec, group_id_for

__all__ = [
    "__version__",
    # Envelopes
    "Envelope",
    "decode_envelope",
    "encode_payload",
    # Registry
    "DEFAULT_REGISTRY",
    "Role",
    "TopicRegistry",
    "TopicSpec",
    "group_id_for",
    # Bus
    "Ack",
    "BrokerConnection",
    "DeadLetterRecord",
    "DeliveryPolicy",
    "ExhaustedAction",
    "InMemoryBroker",
    "KafkaBroker",
    "KafkaConfig",
    "Outcome",
    "Publisher",
    "Subscriber",
    "RetryConfig",
    # Participants
    "AdminParticipant",
    "IdempotencyStore",
    "InMemoryIdempotencyStore",
    "NotificationParticipant",
    "OutboundEvent",
    "Participant",
    "ParticipantRunner",
    "PassengerService",
    "PaymentParticipant",
    "TicketingParticipant",
    "TransportService",
    # Service
    "ServiceConfig",
    "run_service",
    # Exceptions
    "BrokerConnectionError",
    "DeliveryError",
    "HandlerError",
    "MalformedPayloadError",
    "TicketFlowError",
    "TopicNotProducibleError",
    "UnknownTopicError",
]
