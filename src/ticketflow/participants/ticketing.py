"""Ticketing participant: issues tickets for confirmed payments."""

from __future__ import annotations

from ticketflow.events.envelope import Envelope
from ticketflow.events.schemas import TopicPayload
from ticketflow.participants.base import OutboundEvent, Participant
from ticketflow.topics import PAYMENTS_CONFIRMED, TICKETS_CREATED, Role

TICKET_STATUS_CREATED = "CREATED"


def ticket_key(ticket_id: object) -> str:
    return f"ticket-{ticket_id}"


class TicketingParticipant(Participant):
    """
    Reacts to ``payments.confirmed`` with ``tickets.created``.

    The ticket payload is the confirmed payment plus ``status="CREATED"``,
    keyed ``ticket-<ticketId>``. Redelivered confirmations are absorbed by the
    idempotency key, so one ticket id never yields two distinct tickets.
    """

    role = Role.TICKETING

    def react(self, envelope: Envelope, payload: TopicPayload) -> list[OutboundEvent]:
        if envelope.topic != PAYMENTS_CONFIRMED:
            return []

        ticket_id = envelope.payload["ticketId"]
        ticket = {**envelope.payload, "status": TICKET_STATUS_CREATED}
        return [OutboundEvent(TICKETS_CREATED, ticket_key(ticket_id), ticket)]
