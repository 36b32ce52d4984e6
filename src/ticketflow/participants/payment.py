"""Payment participant: confirms requested payments."""

from __future__ import annotations

from ticketflow.events.envelope import Envelope
from ticketflow.events.schemas import PaymentRequested, TopicPayload
from ticketflow.participants.base import OutboundEvent, Participant
from ticketflow.topics import PAYMENTS_CONFIRMED, PAYMENTS_REQUESTED, Role

PAYMENT_STATUS_CONFIRMED = "CONFIRMED"


def payment_key(ticket_id: object) -> str:
    return f"payment-{ticket_id}"


def confirmation_id(ticket_id: object) -> str:
    # Derived from the ticket so a redelivered request confirms identically
    return f"confirmation-{ticket_id}"


class PaymentParticipant(Participant):
    """
    Reacts to ``payments.requested`` with ``payments.confirmed``.

    The confirmation carries the request payload plus ``paymentStatus`` and a
    deterministic ``confirmationId``, keyed ``payment-<ticketId>``.
    """

    role = Role.PAYMENT

    def react(self, envelope: Envelope, payload: TopicPayload) -> list[OutboundEvent]:
        if envelope.topic != PAYMENTS_REQUESTED or not isinstance(payload, PaymentRequested):
            return []

        ticket_id = envelope.payload["ticketId"]
        confirmed = {
            **envelope.payload,
            "paymentStatus": PAYMENT_STATUS_CONFIRMED,
            "confirmationId": confirmation_id(ticket_id),
        }
        return [OutboundEvent(PAYMENTS_CONFIRMED, payment_key(ticket_id), confirmed)]
