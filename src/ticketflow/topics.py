"""
Topic registry: the fixed catalog of event streams.

The registry is the single source of truth for which topics exist, which
roles may produce to them, which roles consume them, and the minimum payload
each one must carry. Participants never learn about each other, only about
topic names.

Example:
    >>> from ticketflow.topics import DEFAULT_REGISTRY, Role
    >>> DEFAULT_REGISTRY.topics_consumed_by(Role.TICKETING)
    ('payments.confirmed',)
    >>> DEFAULT_REGISTRY.can_produce(Role.PAYMENT, "payments.confirmed")
    True
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import ValidationError

from ticketflow.events.schemas import (
    AuditRecord,
    NotificationSent,
    PassengerRegistered,
    PaymentConfirmed,
    PaymentRequested,
    TicketCreated,
    TicketValidated,
    TopicPayload,
    TripUpdated,
)
from ticketflow.exceptions import MalformedPayloadError, UnknownTopicError


# Topic names
PASSENGERS_REGISTERED = "passengers.registered"
TRIPS_UPDATED = "trips.updated"
PAYMENTS_REQUESTED = "payments.requested"
PAYMENTS_CONFIRMED = "payments.confirmed"
TICKETS_CREATED = "tickets.created"
TICKETS_VALIDATED = "tickets.validated"
TICKET_EVENTS = "ticket-events"
PAYMENT_EVENTS = "payment-events"
NOTIFICATIONS_SENT = "notifications.sent"


class Role(Enum):
    """
    Business roles that take part in the ticket purchase workflow.

    EXTERNAL stands for stimuli that enter the system from outside any
    participant (a payment request, a ticket validation at a gate).
    """

    PASSENGER = "passenger"
    TRANSPORT = "transport"
    PAYMENT = "payment"
    TICKETING = "ticketing"
    NOTIFICATION = "notification"
    ADMIN = "admin"
    EXTERNAL = "external"


def group_id_for(role: Role) -> str:
    """Consumer group id of a role: ``<service>-service-group``."""
    return f"{role.value}-service-group"


@dataclass(frozen=True)
class TopicSpec:
    """
    Catalog entry for one topic.

    Attributes:
        name: Topic name
        schema: Pydantic model describing the required payload fields
        producers: Roles allowed to publish to the topic
        consumers: Roles that subscribe to the topic
        description: Short description for operators
        audit_alias: True for audit streams kept for compatibility
    """

    name: str
    schema: type[TopicPayload]
    producers: frozenset[Role] = field(default_factory=frozenset)
    consumers: frozenset[Role] = field(default_factory=frozenset)
    description: str = ""
    audit_alias: bool = False

    @property
    def has_producer(self) -> bool:
        """True when some role other than EXTERNAL publishes here."""
        return bool(self.producers - {Role.EXTERNAL})

    @property
    def is_external(self) -> bool:
        return Role.EXTERNAL in self.producers


class TopicRegistry:
    """
    Immutable catalog of topics keyed by name.

    Args:
        specs: Topic definitions. Names must be unique.

    Raises:
        ValueError: If two specs share a name.
    """

    def __init__(self, specs: Iterable[TopicSpec]) -> None:
        self._specs: dict[str, TopicSpec] = {}
        for spec in specs:
            if spec.name in self._specs:
                raise ValueError(f"Duplicate topic in registry: {spec.name}")
            self._specs[spec.name] = spec

    def __contains__(self, topic: object) -> bool:
        return topic in self._specs

    def __iter__(self) -> Iterator[TopicSpec]:
        return iter(self._specs.values())

    def __len__(self) -> int:
        return len(self._specs)

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(self._specs)

    def get(self, topic: str) -> TopicSpec:
        """
        Look up a topic.

        Raises:
            UnknownTopicError: If the topic is not registered.
        """
        try:
            return self._specs[topic]
        except KeyError:
            raise UnknownTopicError(topic) from None

    def topics_consumed_by(self, role: Role) -> tuple[str, ...]:
        """Topic names the role subscribes to, in catalog order."""
        return tuple(name for name, spec in self._specs.items() if role in spec.consumers)

    def topics_produced_by(self, role: Role) -> tuple[str, ...]:
        """Topic names the role may publish to, in catalog order."""
        return tuple(name for name, spec in self._specs.items() if role in spec.producers)

    def can_produce(self, role: Role, topic: str) -> bool:
        return role in self.get(topic).producers

    def unproduced_topics(self) -> tuple[str, ...]:
        """Topics that no participant and no external stimulus produces."""
        return tuple(
            name
            for name, spec in self._specs.items()
            if not spec.producers and spec.consumers
        )

    def validate(self, topic: str, payload: Mapping[str, Any]) -> TopicPayload:
        """
        Validate a payload against the topic schema.

        Args:
            topic: Topic name.
            payload: Decoded JSON object.

        Returns:
            The validated payload model.

        Raises:
            UnknownTopicError: If the topic is not registered.
            MalformedPayloadError: If required fields are missing or invalid.
        """
        spec = self.get(topic)
        try:
            return spec.schema.model_validate(dict(payload))
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}"
                for err in e.errors()
            )
            raise MalformedPayloadError(topic, problems) from e


DEFAULT_REGISTRY = TopicRegistry(
    [
        TopicSpec(
            name=PASSENGERS_REGISTERED,
            schema=PassengerRegistered,
            producers=frozenset({Role.PASSENGER}),
            consumers=frozenset({Role.ADMIN}),
            description="A passenger account was registered",
        ),
        TopicSpec(
            name=TRIPS_UPDATED,
            schema=TripUpdated,
            producers=frozenset({Role.TRANSPORT}),
            consumers=frozenset({Role.NOTIFICATION, Role.ADMIN}),
            description="A trip changed status (delayed, cancelled, ...)",
        ),
        TopicSpec(
            name=PAYMENTS_REQUESTED,
            schema=PaymentRequested,
            producers=frozenset({Role.EXTERNAL}),
            consumers=frozenset({Role.PAYMENT}),
            description="A passenger asked to pay for a ticket",
        ),
        TopicSpec(
            name=PAYMENTS_CONFIRMED,
            schema=PaymentConfirmed,
            producers=frozenset({Role.PAYMENT}),
            consumers=frozenset({Role.TICKETING, Role.NOTIFICATION}),
            description="A ticket payment was confirmed",
        ),
        TopicSpec(
            name=TICKETS_CREATED,
            schema=TicketCreated,
            producers=frozenset({Role.TICKETING}),
            consumers=frozenset({Role.NOTIFICATION, Role.ADMIN}),
            description="A ticket was issued for a confirmed payment",
        ),
        TopicSpec(
            name=TICKETS_VALIDATED,
            schema=TicketValidated,
            producers=frozenset({Role.EXTERNAL}),
            consumers=frozenset({Role.NOTIFICATION}),
            description="A ticket was validated at boarding",
        ),
        TopicSpec(
            name=TICKET_EVENTS,
            schema=AuditRecord,
            consumers=frozenset({Role.ADMIN}),
            description="Legacy audit stream for ticket events",
            audit_alias=True,
        ),
        TopicSpec(
            name=PAYMENT_EVENTS,
            schema=AuditRecord,
            consumers=frozenset({Role.ADMIN}),
            description="Legacy audit stream for payment events",
            audit_alias=True,
        ),
        TopicSpec(
            name=NOTIFICATIONS_SENT,
            schema=NotificationSent,
            producers=frozenset({Role.NOTIFICATION}),
            description="A notification was dispatched (terminal)",
        ),
    ]
)


__all__ = [
    "DEFAULT_REGISTRY",
    "NOTIFICATIONS_SENT",
    "PASSENGERS_REGISTERED",
    "PAYMENTS_CONFIRMED",
    "PAYMENTS_REQUESTED",
    "PAYMENT_EVENTS",
    "Role",
    "TICKETS_CREATED",
    "TICKETS_VALIDATED",
    "TICKET_EVENTS",
    "TRIPS_UPDATED",
    "TopicRegistry",
    "TopicSpec",
    "group_id_for",
]
