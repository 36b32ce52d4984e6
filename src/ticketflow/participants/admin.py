"""
Admin participant: audit-only consumer.

Admin records every consumed envelope in a bounded in-memory trail and logs
it; it produces nothing. It also listens on the ``ticket-events`` and
``payment-events`` audit streams, which no participant produces. Those names
look like drift from ``tickets.created`` and ``payments.confirmed``, so the
participant warns about them at start instead of silently waiting on them.
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from ticketflow.events.envelope import Envelope
from ticketflow.events.schemas import TopicPayload
from ticketflow.participants.base import OutboundEvent, Participant
from ticketflow.topics import DEFAULT_REGISTRY, Role, TopicRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuditEntry:
    """One audited envelope."""

    topic: str
    key: str | None
    partition: int | None
    offset: int | None
    payload: dict[str, Any]
    recorded_at: datetime = field(default_factory=lambda: datetime.now(UTC))


class AuditTrail:
    """Most recent audit entries, oldest dropped first."""

    def __init__(self, max_entries: int = 10_000) -> None:
        if max_entries < 1:
            raise ValueError(f"max_entries must be >= 1, got {max_entries}")
        self._entries: deque[AuditEntry] = deque(maxlen=max_entries)

    def append(self, entry: AuditEntry) -> None:
        self._entries.append(entry)

    def for_topic(self, topic: str) -> list[AuditEntry]:
        return [e for e in self._entries if e.topic == topic]

    def __iter__(self) -> Iterator[AuditEntry]:
        return iter(list(self._entries))

    def __len__(self) -> int:
        return len(self._entries)


class AdminParticipant(Participant):
    """
    Audits passenger, trip, ticket and alias-stream events.

    Args:
        registry: Topic registry.
        trail: Where audit entries are kept.
    """

    role = Role.ADMIN

    def __init__(
        self,
        registry: TopicRegistry = DEFAULT_REGISTRY,
        trail: AuditTrail | None = None,
    ) -> None:
        super().__init__(registry)
        self.trail = trail if trail is not None else AuditTrail()

    def business_id(self, envelope: Envelope, payload: TopicPayload) -> str | None:
        # Every envelope is audited once, even repeated events for one entity
        return f"p{envelope.partition}o{envelope.offset}"

    def unproduced_topics(self) -> tuple[str, ...]:
        """Consumed topics that nothing in the registry produces."""
        unproduced = set(self._registry.unproduced_topics())
        return tuple(t for t in self.topics if t in unproduced)

    async def on_start(self) -> None:
        for topic in self.unproduced_topics():
            logger.warning(
                "Audit topic has no registered producer; events may be published "
                "under a different name",
                extra={"topic": topic, "role": self.role.value},
            )

    def react(self, envelope: Envelope, payload: TopicPayload) -> list[OutboundEvent]:
        entry = AuditEntry(
            topic=envelope.topic,
            key=envelope.key,
            partition=envelope.partition,
            offset=envelope.offset,
            payload=dict(envelope.payload),
        )
        self.trail.append(entry)
        logger.info(
            "Admin received event",
            extra={
                "topic": envelope.topic,
                "key": envelope.key,
                "partition": envelope.partition,
                "offset": envelope.offset,
            },
        )
        return []
