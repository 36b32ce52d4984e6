"""Envelope and payload schema definitions."""

from ticketflow.events.envelope import Envelope, decode_envelope, encode_key, encode_payload
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

__all__ = [
    "AuditRecord",
    "Envelope",
    "NotificationSent",
    "PassengerRegistered",
    "PaymentConfirmed",
    "PaymentRequested",
    "TicketCreated",
    "TicketValidated",
    "TopicPayload",
    "TripUpdated",
    "decode_envelope",
    "encode_key",
    "encode_payload",
]
