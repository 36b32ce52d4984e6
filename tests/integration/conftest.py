"""
Shared pytest fixtures for integration tests.

This module provides:
- Docker / testcontainers detection for the Kafka tests
- A saga harness running every consuming participant against one broker

If testcontainers or Docker is not available, the Kafka tests are skipped;
the in-memory saga tests always run.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio

from ticketflow.bus.delivery import DeliveryPolicy
from ticketflow.bus.interface import BrokerConnection, Subscriber
from ticketflow.idempotency import IdempotencyStore, InMemoryIdempotencyStore
from ticketflow.participants import (
    AdminParticipant,
    AuditTrail,
    NotificationParticipant,
    Participant,
    ParticipantRunner,
    PaymentParticipant,
    TicketingParticipant,
)
from ticketflow.topics import Role

# ============================================================================
# Testcontainers Detection
# ============================================================================

TESTCONTAINERS_AVAILABLE = False

try:
    from testcontainers.kafka import KafkaContainer

    TESTCONTAINERS_AVAILABLE = True
except ImportError:
    KafkaContainer = None  # type: ignore[assignment, misc]


def is_docker_available() -> bool:
    """Check if Docker is available for running containers."""
    import subprocess

    try:
        result = subprocess.run(
            ["docker", "info"],
            capture_output=True,
            timeout=5,
        )
        return result.returncode == 0
    except (subprocess.TimeoutExpired, OSError):
        return False


DOCKER_AVAILABLE = is_docker_available()

skip_if_no_kafka_infra = pytest.mark.skipif(
    not (TESTCONTAINERS_AVAILABLE and DOCKER_AVAILABLE),
    reason="Kafka test infrastructure not available (requires testcontainers[kafka] and docker)",
)


# ============================================================================
# Saga Harness
# ============================================================================


class Saga:
    """
    Every consuming participant wired to one broker.

    Participants can be replaced before start() to inject failures.
    """

    def __init__(self, broker: BrokerConnection, policy: DeliveryPolicy) -> None:
        self.broker = broker
        self.policy = policy
        self.trail = AuditTrail()
        self.participants: dict[Role, Participant] = {
            Role.PAYMENT: PaymentParticipant(),
            Role.TICKETING: TicketingParticipant(),
            Role.NOTIFICATION: NotificationParticipant(),
            Role.ADMIN: AdminParticipant(trail=self.trail),
        }
        self.stores: dict[Role, IdempotencyStore] = {
            role: InMemoryIdempotencyStore() for role in self.participants
        }
        self.subscribers: dict[Role, Subscriber] = {}

    def start(self, subscriptions) -> None:
        for role, participant in self.participants.items():
            runner = ParticipantRunner(
                participant, self.broker.publisher(role), self.stores[role]
            )
            subscriber = self.broker.subscriber(policy=self.policy)
            self.subscribers[role] = subscriber
            subscriptions.start(subscriber, participant.group_id, participant.topics, runner.handle)

    def settled(self) -> bool:
        """True once every group has committed everything on its topics."""
        return all(
            self.broker.lag(participant.group_id, topic) == 0
            for participant in self.participants.values()
            for topic in participant.topics
        )

    def keys(self, topic: str) -> list[str | None]:
        return [e.key for e in self.broker.envelopes(topic)]


@pytest_asyncio.fixture
async def saga(broker, pause_policy, subscriptions) -> AsyncGenerator[Saga, None]:
    """Saga over the in-memory broker; call ``saga.start(subscriptions)`` to run it."""
    yield Saga(broker, pause_policy)
