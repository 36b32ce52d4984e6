"""Notification participant: fans in saga events and emits notifications."""

from __future__ import annotations

from ticketflow.events.envelope import Envelope
from ticketflow.events.schemas import TopicPayload
from ticketflow.participants.base import OutboundEvent, Participant
from ticketflow.topics import NOTIFICATIONS_SENT, TRIPS_UPDATED, Role


def notification_key(source_topic: str, entity_id: object) -> str:
    return f"{source_topic}-{entity_id}"


class NotificationParticipant(Participant):
    """
    Emits one ``notifications.sent`` per consumed event.

    The key is ``<sourceTopic>-<ticketId|tripId>`` and the payload is the
    source payload unchanged. Source topics are causally independent; no
    arrival order between them is assumed.
    """

    role = Role.NOTIFICATION

    def business_id(self, envelope: Envelope, payload: TopicPayload) -> str | None:
        # Every trip update notifies, even one repeating an earlier status
        if envelope.topic == TRIPS_UPDATED:
            return f"p{envelope.partition}o{envelope.offset}"
        return super().business_id(envelope, payload)

    def react(self, envelope: Envelope, payload: TopicPayload) -> list[OutboundEvent]:
        entity_id = envelope.payload.get("ticketId")
        if entity_id is None:
            entity_id = envelope.payload.get("tripId")
        return [
            OutboundEvent(
                NOTIFICATIONS_SENT,
                notification_key(envelope.topic, entity_id),
                dict(envelope.payload),
            )
        ]
