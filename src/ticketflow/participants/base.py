"""
Participant base classes.

A participant is one business role in the ticket purchase saga. Consuming
participants implement a pure reaction from a validated envelope to the
events it causes; ParticipantRunner connects that reaction to a Subscriber
and a Publisher:

    RECEIVED -> VALIDATED -> (no-op | PRODUCED) -> ACKNOWLEDGED
                     \\-> REJECTED (malformed payload) -> ACKNOWLEDGED

Originating participants have no subscription; they publish a stimulus and
retry it when the delivery outcome is unknown.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, ClassVar

from ticketflow.bus.interface import Ack, Subscriber
from ticketflow.bus.publisher import Publisher
from ticketflow.events.envelope import Envelope
from ticketflow.events.schemas import TopicPayload
from ticketflow.exceptions import DeliveryError
from ticketflow.idempotency import IdempotencyStore, InMemoryIdempotencyStore
from ticketflow.retry import RetryConfig, RetryError, retry_async
from ticketflow.topics import DEFAULT_REGISTRY, Role, TopicRegistry, group_id_for

logger = logging.getLogger(__name__)

# Payload fields that identify the business entity, in lookup order
BUSINESS_ID_FIELDS = ("ticketId", "tripId", "passengerId")


@dataclass(frozen=True)
class OutboundEvent:
    """An envelope a reaction wants published."""

    topic: str
    key: str
    payload: dict[str, Any] = field(default_factory=dict)


class Participant(ABC):
    """
    Consuming participant.

    Subclasses set ``role`` and implement ``react``. Consumed topics come from
    the registry, so a participant never names another participant.

    Args:
        registry: Topic registry for consumed topics and payload schemas.
    """

    role: ClassVar[Role]

    def __init__(self, registry: TopicRegistry = DEFAULT_REGISTRY) -> None:
        self._registry = registry

    @property
    def registry(self) -> TopicRegistry:
        return self._registry

    @property
    def group_id(self) -> str:
        return group_id_for(self.role)

    @property
    def topics(self) -> tuple[str, ...]:
        return self._registry.topics_consumed_by(self.role)

    def validate(self, envelope: Envelope) -> TopicPayload:
        """
        Check the payload against the topic schema.

        Raises:
            MalformedPayloadError: If required fields are missing or invalid.
        """
        return self._registry.validate(envelope.topic, envelope.payload)

    def business_id(self, envelope: Envelope, payload: TopicPayload) -> str | None:
        """Identifier of the business entity the envelope is about."""
        for name in BUSINESS_ID_FIELDS:
            value = envelope.payload.get(name)
            if value is not None:
                return str(value)
        return None

    def idempotency_key(self, envelope: Envelope, payload: TopicPayload) -> str:
        """
        Key under which the reaction to ``envelope`` is recorded as done.

        Envelopes without a business identifier fall back to their log
        position, which is stable across redeliveries.
        """
        business_id = self.business_id(envelope, payload)
        if business_id is None:
            business_id = f"p{envelope.partition}o{envelope.offset}"
        return f"{envelope.topic}:{envelope.key}:{business_id}"

    async def on_start(self) -> None:
        """Called once before the subscription starts."""
        return None

    @abstractmethod
    def react(self, envelope: Envelope, payload: TopicPayload) -> list[OutboundEvent]:
        """
        Compute the events caused by a validated envelope.

        Must be deterministic: the same envelope always yields the same
        topics, keys and payloads, so a redelivery only ever produces
        duplicates that downstream consumers absorb.

        Raises:
            HandlerError: If the reaction failed transiently.
        """
        ...


class ParticipantRunner:
    """
    Envelope handler wiring a participant to the bus.

    For each envelope: validate, skip if its idempotency key was completed,
    react, publish every outbound event awaiting its acknowledgment, then
    mark the key completed. Any failure leaves the key unmarked and surfaces
    to the subscriber, which retries the whole reaction.

    Args:
        participant: Reaction to run.
        publisher: Publisher bound to the participant's role.
        store: Completed idempotency keys.
    """

    def __init__(
        self,
        participant: Participant,
        publisher: Publisher,
        store: IdempotencyStore | None = None,
    ) -> None:
        if publisher.role is not participant.role:
            raise ValueError(
                f"Publisher role '{publisher.role.value}' does not match "
                f"participant role '{participant.role.value}'"
            )
        self._participant = participant
        self._publisher = publisher
        self._store = store if store is not None else InMemoryIdempotencyStore()

    @property
    def participant(self) -> Participant:
        return self._participant

    async def handle(self, envelope: Envelope) -> None:
        role = self._participant.role.value
        payload = self._participant.validate(envelope)
        key = self._participant.idempotency_key(envelope, payload)
        logger.debug(
            "Envelope validated",
            extra={"role": role, "topic": envelope.topic, "idempotency_key": key},
        )

        if await self._store.seen(key):
            logger.debug(
                "Duplicate envelope skipped",
                extra={"role": role, "topic": envelope.topic, "idempotency_key": key},
            )
            return

        outbound = self._participant.react(envelope, payload)
        for event in outbound:
            await self._publisher.publish(event.topic, event.key, event.payload)
            logger.debug(
                "Downstream event produced",
                extra={"role": role, "topic": event.topic, "key": event.key},
            )

        await self._store.mark(key)
        logger.debug(
            "Envelope processed",
            extra={"role": role, "topic": envelope.topic, "produced": len(outbound)},
        )

    async def run(self, subscriber: Subscriber) -> None:
        """Subscribe with the participant's group and topics until stopped."""
        await self._participant.on_start()
        await subscriber.subscribe(
            self._participant.group_id,
            self._participant.topics,
            self.handle,
        )


class Originator:
    """
    Participant that only publishes stimuli.

    Publishing retries DeliveryError with exponential backoff; a retried
    publish may append a duplicate, which consumers absorb.

    Args:
        publisher: Publisher bound to the originator's role.
        retry: Backoff for unknown delivery outcomes.
    """

    role: ClassVar[Role]

    def __init__(self, publisher: Publisher, retry: RetryConfig | None = None) -> None:
        if publisher.role is not self.role:
            raise ValueError(
                f"Publisher role '{publisher.role.value}' does not match "
                f"originator role '{self.role.value}'"
            )
        self._publisher = publisher
        self._retry = retry or RetryConfig(max_retries=5, initial_delay=0.5, max_delay=10.0)

    async def _publish(self, topic: str, key: str, payload: dict[str, Any]) -> Ack:
        try:
            ack = await retry_async(
                lambda: self._publisher.publish(topic, key, payload),
                config=self._retry,
                retryable_exceptions=(DeliveryError,),
                operation_name=f"publish {topic}",
            )
        except RetryError as e:
            raise DeliveryError(
                topic, key, f"gave up after {e.attempts} attempts: {e.last_error}"
            ) from e

        logger.info(
            "Stimulus published",
            extra={
                "role": self.role.value,
                "topic": topic,
                "key": key,
                "partition": ack.partition,
                "offset": ack.offset,
            },
        )
        return ack


__all__ = [
    "BUSINESS_ID_FIELDS",
    "OutboundEvent",
    "Originator",
    "Participant",
    "ParticipantRunner",
]
