"""
Saga participants.

Consumers:
- PaymentParticipant: payments.requested -> payments.confirmed
- TicketingParticipant: payments.confirmed -> tickets.created
- NotificationParticipant: payments.confirmed, tickets.created,
  tickets.validated, trips.updated -> notifications.sent
- AdminParticipant: audit only

Originators:
- PassengerService: passengers.registered
- TransportService: trips.updated
"""

from ticketflow.participants.admin import AdminParticipant, AuditEntry, AuditTrail
from ticketflow.participants.base import (
    OutboundEvent,
    Originator,
    Participant,
    ParticipantRunner,
)
from ticketflow.participants.notification import NotificationParticipant
from ticketflow.participants.passenger import PassengerService
from ticketflow.participants.payment import PaymentParticipant
from ticketflow.participants.ticketing import TicketingParticipant
from ticketflow.participants.transport import TransportService
from ticketflow.topics import Role

CONSUMERS: dict[Role, type[Participant]] = {
    Role.PAYMENT: PaymentParticipant,
    Role.TICKETING: TicketingParticipant,
    Role.NOTIFICATION: NotificationParticipant,
    Role.ADMIN: AdminParticipant,
}

ORIGINATORS: dict[Role, type[Originator]] = {
    Role.PASSENGER: PassengerService,
    Role.TRANSPORT: TransportService,
}

__all__ = [
    "CONSUMERS",
    "ORIGINATORS",
    "AdminParticipant",
    "AuditEntry",
    "AuditTrail",
    "NotificationParticipant",
    "OutboundEvent",
    "Originator",
    "Participant",
    "ParticipantRunner",
    "PassengerService",
    "PaymentParticipant",
    "TicketingParticipant",
    "TransportService",
]
