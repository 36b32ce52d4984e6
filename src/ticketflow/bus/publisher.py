"""Role-bound publisher for topic envelopes.

A Publisher appends one validated envelope at a time and returns only after
the broker acknowledged it. Every failure whose outcome is unknown (timeout,
broker unreachable, connection closed) surfaces as DeliveryError, which the
caller may retry: downstream consumers treat duplicates idempotently.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from opentelemetry.propagate import inject
from opentelemetry.trace import Status, StatusCode

from ticketflow.events.envelope import encode_key, encode_payload
from ticketflow.exceptions import DeliveryError, MalformedPayloadError, TopicNotProducibleError
from ticketflow.observability import SpanKindEnum, Tracer, create_tracer
from ticketflow.observability.attributes import (
    ATTR_ERROR_TYPE,
    ATTR_MESSAGING_DESTINATION,
    ATTR_MESSAGING_KEY,
    ATTR_MESSAGING_OFFSET,
    ATTR_MESSAGING_OPERATION,
    ATTR_MESSAGING_PARTITION,
    ATTR_ROLE,
)
from ticketflow.topics import DEFAULT_REGISTRY, Role, TopicRegistry

if TYPE_CHECKING:
    from ticketflow.bus.interface import Ack, BrokerConnection

logger = logging.getLogger(__name__)

SOURCE_ROLE_HEADER = "ticketflow-source-role"


@dataclass
class PublisherStats:
    """Statistics for one publisher."""

    published: int = 0
    publish_errors: int = 0
    last_publish_at: datetime | None = None
    last_error_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "published": self.published,
            "publish_errors": self.publish_errors,
            "last_publish_at": self.last_publish_at.isoformat() if self.last_publish_at else None,
            "last_error_at": self.last_error_at.isoformat() if self.last_error_at else None,
        }


class Publisher:
    """
    Appends envelopes on behalf of one participant role.

    Args:
        connection: Broker handle used for the append.
        role: Role publishing; only topics it is registered to produce are
            accepted.
        registry: Topic registry holding producers and payload schemas.
        tracer: Optional custom Tracer instance.
        enable_tracing: Create an OpenTelemetry tracer when no tracer is given.

    Example:
        >>> publisher = broker.publisher(Role.PAYMENT)
        >>> ack = await publisher.publish(
        ...     "payments.confirmed", "payment-1", {"ticketId": 1, "amount": 2.5}
        ... )
        >>> ack.offset
        0
    """

    def __init__(
        self,
        connection: BrokerConnection,
        role: Role,
        *,
        registry: TopicRegistry = DEFAULT_REGISTRY,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._connection = connection
        self._role = role
        self._registry = registry
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._stats = PublisherStats()

    @property
    def role(self) -> Role:
        return self._role

    @property
    def stats(self) -> PublisherStats:
        return self._stats

    async def publish(self, topic: str, key: str | None, payload: dict[str, Any]) -> Ack:
        """
        Validate and append one envelope, waiting for the acknowledgment.

        Args:
            topic: Destination topic.
            key: Partition key. Envelopes sharing a key keep their order.
            payload: JSON-object payload.

        Returns:
            The broker acknowledgment.

        Raises:
            TopicNotProducibleError: If the role may not produce ``topic``.
                Nothing is sent.
            UnknownTopicError: If ``topic`` is not registered.
            MalformedPayloadError: If the payload fails the topic schema
                or cannot be encoded as JSON. Nothing is sent.
            DeliveryError: If the append outcome is unknown.
        """
        spec = self._registry.get(topic)
        if not self._registry.can_produce(self._role, topic):
            raise TopicNotProducibleError(self._role.value, spec.name)

        self._registry.validate(topic, payload)
        try:
            value = encode_payload(payload)
        except (TypeError, ValueError) as e:
            raise MalformedPayloadError(topic, str(e)) from e
        return await self._deliver(topic, key, value)

    async def send_raw(
        self,
        topic: str,
        key: str | None,
        value: bytes,
        headers: list[tuple[str, bytes]] | None = None,
    ) -> Ack:
        """
        Append pre-encoded bytes without registry checks.

        Used by operational tooling, such as replaying dead letters onto their
        original topic.

        Raises:
            DeliveryError: If the append outcome is unknown.
        """
        return await self._deliver(topic, key, value, headers)

    async def _deliver(
        self,
        topic: str,
        key: str | None,
        value: bytes,
        headers: list[tuple[str, bytes]] | None = None,
    ) -> Ack:
        headers = list(headers or [])
        headers.append((SOURCE_ROLE_HEADER, self._role.value.encode("utf-8")))

        attributes: dict[str, Any] = {
            ATTR_MESSAGING_DESTINATION: topic,
            ATTR_MESSAGING_OPERATION: "publish",
            ATTR_ROLE: self._role.value,
        }
        if key is not None:
            attributes[ATTR_MESSAGING_KEY] = key

        with self._tracer.span_with_kind(
            f"ticketflow.publish {topic}",
            kind=SpanKindEnum.PRODUCER,
            attributes=attributes,
        ) as span:
            if self._tracer.enabled:
                carrier: dict[str, str] = {}
                inject(carrier)
                for trace_key, trace_value in carrier.items():
                    headers.append((trace_key, trace_value.encode("utf-8")))

            try:
                ack = await self._connection.append(topic, encode_key(key), value, headers)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._stats.publish_errors += 1
                self._stats.last_error_at = datetime.now(UTC)
                if span is not None:
                    span.set_status(Status(StatusCode.ERROR, str(e)))
                    span.record_exception(e)
                    span.set_attribute(ATTR_ERROR_TYPE, type(e).__name__)
                logger.error(
                    "Failed to publish envelope",
                    extra={
                        "topic": topic,
                        "key": key,
                        "role": self._role.value,
                        "error": str(e),
                        "error_type": type(e).__name__,
                    },
                )
                raise DeliveryError(topic, key, str(e) or type(e).__name__) from e

            if span is not None:
                span.set_attribute(ATTR_MESSAGING_PARTITION, ack.partition)
                span.set_attribute(ATTR_MESSAGING_OFFSET, ack.offset)

        self._stats.published += 1
        self._stats.last_publish_at = datetime.now(UTC)
        logger.debug(
            "Envelope published",
            extra={
                "topic": ack.topic,
                "key": key,
                "partition": ack.partition,
                "offset": ack.offset,
            },
        )
        return ack


__all__ = [
    "SOURCE_ROLE_HEADER",
    "Publisher",
    "PublisherStats",
]
