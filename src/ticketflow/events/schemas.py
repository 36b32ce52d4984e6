"""
Payload schemas for every topic in the registry.

Each model asserts only the required minimum for its topic. Unknown fields
are kept (``extra="allow"``) so reactions can pass the original payload
through unchanged.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, StrictInt, StrictStr

# Business identifiers arrive as JSON integers or strings, never booleans or floats
EntityId = StrictInt | StrictStr


class TopicPayload(BaseModel):
    """Base class for topic payload schemas."""

    model_config = ConfigDict(extra="allow", frozen=True)


class PassengerRegistered(TopicPayload):
    passengerId: EntityId
    name: str = Field(min_length=1)


class TripUpdated(TopicPayload):
    tripId: EntityId
    status: str = Field(min_length=1)


class PaymentRequested(TopicPayload):
    ticketId: EntityId
    amount: float = Field(ge=0, strict=True, allow_inf_nan=False)


class PaymentConfirmed(TopicPayload):
    ticketId: EntityId
    paymentStatus: str | None = None
    confirmationId: str | None = None


class TicketCreated(TopicPayload):
    ticketId: EntityId
    status: Literal["CREATED"]


class TicketValidated(TopicPayload):
    ticketId: EntityId


class AuditRecord(TopicPayload):
    """Free-form payload of the audit alias streams."""

    pass


class NotificationSent(TopicPayload):
    """Carries the payload of the event that triggered the notification."""

    pass


__all__ = [
    "AuditRecord",
    "EntityId",
    "NotificationSent",
    "PassengerRegistered",
    "PaymentConfirmed",
    "PaymentRequested",
    "TicketCreated",
    "TicketValidated",
    "TopicPayload",
    "TripUpdated",
]
