"""Broker connection and subscriber interface definitions.

A BrokerConnection is the scoped handle to a partitioned, append-only log.
It is acquired with ``async with`` and released on every exit path, and it
hands out the two client roles every participant needs:

- a Publisher, bound to a participant role, that appends validated
  envelopes and waits for the broker acknowledgment;
- a Subscriber that joins a consumer group and feeds envelopes one
  partition at a time to a handler, committing only after the handler
  succeeds.

Tracing Support:
    Backends use the composition-based ``Tracer`` from
    ``ticketflow.observability``. Publishers inject trace context into
    envelope headers and subscribers extract it, so a saga shows up as one
    trace across participants.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass
from types import TracebackType

from ticketflow.bus.dead_letter import DeadLetterSink
from ticketflow.bus.delivery import (
    CommitFunc,
    DeliveryPolicy,
    EnvelopeHandler,
    PartitionProcessor,
    SubscriberStats,
)
from ticketflow.bus.publisher import Publisher
from ticketflow.observability import Tracer, create_tracer
from ticketflow.topics import DEFAULT_REGISTRY, Role, TopicRegistry


@dataclass(frozen=True)
class Ack:
    """
    Broker acknowledgment of a durable append.

    Attributes:
        topic: Topic the envelope was appended to
        key: Partition key of the envelope
        partition: Partition chosen by the broker
        offset: Offset assigned within the partition
    """

    topic: str
    key: str | None
    partition: int
    offset: int


class Subscriber(ABC):
    """
    Consumer group member that delivers envelopes to a handler.

    Delivery guarantees:
        - Within one partition, the handler sees envelopes in offset order and
          never two at once.
        - Partitions are processed concurrently.
        - An offset is committed only after the handler returned, or after the
          envelope was recorded as a dead letter. Anything else is delivered
          again (at-least-once), so handlers must be idempotent.

    Args:
        policy: Retry and exhaustion policy for failing handlers.
        dead_letters: Sink for rejected envelopes.
        tracer: Optional custom Tracer instance.
        enable_tracing: Create an OpenTelemetry tracer when no tracer is given.
    """

    messaging_system = "unknown"

    def __init__(
        self,
        *,
        policy: DeliveryPolicy | None = None,
        dead_letters: DeadLetterSink | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._policy = policy or DeliveryPolicy()
        self._dead_letters = dead_letters
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._stats = SubscriberStats()
        self._paused: set[tuple[str, int]] = set()

    @property
    def policy(self) -> DeliveryPolicy:
        return self._policy

    @property
    def stats(self) -> SubscriberStats:
        return self._stats

    @property
    def paused_partitions(self) -> frozenset[tuple[str, int]]:
        """(topic, partition) pairs stopped after a handler exhausted its retries."""
        return frozenset(self._paused)

    @property
    @abstractmethod
    def is_running(self) -> bool:
        """True while subscribe() is active."""
        ...

    @abstractmethod
    async def subscribe(
        self,
        group_id: str,
        topics: Sequence[str],
        handler: EnvelopeHandler,
    ) -> None:
        """
        Join ``group_id`` and deliver envelopes from ``topics`` to ``handler``.

        Returns once stop() has drained the workers. Cancelling the caller
        cancels in-flight handlers without committing them.

        Args:
            group_id: Consumer group; members share the topic partitions.
            topics: Topics to consume.
            handler: Coroutine invoked once per envelope.

        Raises:
            BrokerConnectionError: If the broker cannot be reached.
        """
        ...

    @abstractmethod
    async def stop(self, timeout: float | None = None) -> None:
        """
        Stop fetching, let in-flight handlers finish, then release the group.

        Args:
            timeout: Grace period in seconds for in-flight handlers. Handlers
                still running afterwards are cancelled and their envelopes
                stay uncommitted.
        """
        ...

    @abstractmethod
    def resume(self, topic: str, partition: int) -> None:
        """
        Restart delivery of a paused partition from its committed offset.

        Does nothing if the partition is not paused.
        """
        ...

    def _make_processor(
        self,
        group_id: str,
        handler: EnvelopeHandler,
        commit: CommitFunc,
    ) -> PartitionProcessor:
        return PartitionProcessor(
            group_id,
            handler,
            commit,
            policy=self._policy,
            dead_letters=self._dead_letters,
            stats=self._stats,
            tracer=self._tracer,
            messaging_system=self.messaging_system,
        )


class BrokerConnection(ABC):
    """
    Scoped handle to the broker.

    Use as an async context manager so the connection is released whether the
    body finishes, raises, or is cancelled:

    Example:
        >>> async with InMemoryBroker() as broker:
        ...     publisher = broker.publisher(Role.PAYMENT)
        ...     await publisher.publish("payments.confirmed", "payment-1", payload)
    """

    enable_tracing = True

    @property
    @abstractmethod
    def is_connected(self) -> bool: ...

    @abstractmethod
    async def connect(self) -> None:
        """
        Open the connection.

        Raises:
            BrokerConnectionError: If the broker cannot be reached.
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release the connection. Safe to call more than once."""
        ...

    @abstractmethod
    async def append(
        self,
        topic: str,
        key: bytes | None,
        value: bytes,
        headers: list[tuple[str, bytes]] | None = None,
    ) -> Ack:
        """
        Durably append one record and wait for the broker acknowledgment.

        Records with the same key land on the same partition.

        Raises:
            Exception: Any backend failure. The append may or may not have
                happened.
        """
        ...

    @abstractmethod
    def subscriber(
        self,
        *,
        policy: DeliveryPolicy | None = None,
        dead_letters: DeadLetterSink | None = None,
        tracer: Tracer | None = None,
    ) -> Subscriber:
        """Create a subscriber bound to this connection."""
        ...

    def publisher(
        self,
        role: Role,
        *,
        registry: TopicRegistry = DEFAULT_REGISTRY,
        tracer: Tracer | None = None,
    ) -> Publisher:
        """Create a publisher for ``role`` bound to this connection."""
        return Publisher(
            self,
            role,
            registry=registry,
            tracer=tracer,
            enable_tracing=self.enable_tracing,
        )

    async def __aenter__(self) -> BrokerConnection:
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()


__all__ = [
    "Ack",
    "BrokerConnection",
    "EnvelopeHandler",
    "Subscriber",
]
