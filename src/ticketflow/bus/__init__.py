"""Broker connections, publishers and subscribers for ticketflow.

Available Implementations:
- InMemoryBroker: Partitioned log inside one process (development/testing)
- KafkaBroker: Apache Kafka via aiokafka (production/multi-instance)

Example:
    >>> from ticketflow.bus import InMemoryBroker
    >>> from ticketflow.topics import Role
    >>>
    >>> async with InMemoryBroker() as broker:
    ...     publisher = broker.publisher(Role.TRANSPORT)
    ...     await publisher.publish("trips.updated", "trip-4", {"tripId": 4, "status": "DELAYED"})

For Kafka:
    >>> from ticketflow.bus import KafkaBroker, KafkaConfig
    >>>
    >>> async with KafkaBroker(KafkaConfig.from_env()) as broker:
    ...     subscriber = broker.subscriber()
    ...     await subscriber.subscribe("admin-service-group", ["trips.updated"], handle)
"""

from ticketflow.bus.dead_letter import (
    DLQ_TOPIC_SUFFIX,
    BrokerDeadLetterSink,
    DeadLetterRecord,
    DeadLetterSink,
    InMemoryDeadLetterSink,
    dead_letter_topic,
)
from ticketflow.bus.delivery import (
    DeliveryPolicy,
    EnvelopeHandler,
    ExhaustedAction,
    Outcome,
    PartitionProcessor,
    SubscriberStats,
)
from ticketflow.bus.interface import Ack, BrokerConnection, Subscriber
from ticketflow.bus.kafka import KafkaBroker, KafkaConfig, KafkaSubscriber
from ticketflow.bus.memory import InMemoryBroker, InMemorySubscriber
from ticketflow.bus.publisher import Publisher, PublisherStats

__all__ = [
    # Interface
    "Ack",
    "BrokerConnection",
    "EnvelopeHandler",
    "Publisher",
    "PublisherStats",
    "Subscriber",
    # Delivery
    "DeliveryPolicy",
    "ExhaustedAction",
    "Outcome",
    "PartitionProcessor",
    "SubscriberStats",
    # Dead letters
    "DLQ_TOPIC_SUFFIX",
    "BrokerDeadLetterSink",
    "DeadLetterRecord",
    "DeadLetterSink",
    "InMemoryDeadLetterSink",
    "dead_letter_topic",
    # Backends
    "InMemoryBroker",
    "InMemorySubscriber",
    "KafkaBroker",
    "KafkaConfig",
    "KafkaSubscriber",
]
