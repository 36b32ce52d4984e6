"""
Dead letter records for envelopes a consumer group gave up on.

Poison messages (undecodable or schema-invalid envelopes) and, when so
configured, envelopes whose handler kept failing are written here before
the consumer commits past them, so that nothing is skipped silently.

Records are written to ``<topic>.dlq`` on the broker, or kept in memory for
tests and local runs.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field

if TYPE_CHECKING:
    from ticketflow.bus.interface import BrokerConnection

logger = logging.getLogger(__name__)

DLQ_TOPIC_SUFFIX = ".dlq"


def dead_letter_topic(topic: str) -> str:
    """Name of the dead letter topic for ``topic``."""
    return f"{topic}{DLQ_TOPIC_SUFFIX}"


class DeadLetterRecord(BaseModel):
    """
    One envelope a consumer group committed past without processing it.

    Attributes:
        group_id: Consumer group that rejected the envelope
        topic: Source topic
        partition: Source partition
        offset: Source offset
        key: Envelope key (decoded as text, if any)
        value: Raw envelope value as text (undecodable bytes replaced)
        reason: Why the envelope was dead-lettered
            ("malformed_payload" or "retries_exhausted")
        error_type: Exception class name
        error_message: Exception message (truncated)
        attempts: Handler attempts made before giving up
        failed_at: When the record was created
    """

    model_config = ConfigDict(frozen=True)

    group_id: str
    topic: str
    partition: int | None = None
    offset: int | None = None
    key: str | None = None
    value: str = ""
    reason: str
    error_type: str
    error_message: str = ""
    attempts: int = 0
    failed_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def from_failure(
        cls,
        *,
        group_id: str,
        topic: str,
        partition: int | None,
        offset: int | None,
        key: bytes | str | None,
        value: bytes | str | None,
        reason: str,
        error: BaseException,
        attempts: int,
    ) -> DeadLetterRecord:
        if isinstance(key, bytes):
            key = key.decode("utf-8", errors="replace")
        if isinstance(value, bytes):
            value = value.decode("utf-8", errors="replace")
        return cls(
            group_id=group_id,
            topic=topic,
            partition=partition,
            offset=offset,
            key=key,
            value=value or "",
            reason=reason,
            error_type=type(error).__name__,
            error_message=str(error)[:1000],
            attempts=attempts,
        )


@runtime_checkable
class DeadLetterSink(Protocol):
    """Destination for dead letter records."""

    async def record(self, record: DeadLetterRecord) -> None:
        """
        Persist a dead letter record.

        Raises:
            Exception: If the record could not be stored. The caller must not
                commit past the envelope in that case.
        """
        ...


class InMemoryDeadLetterSink:
    """
    Dead letter sink that keeps records in a list.

    Suitable for tests and single-process runs.
    """

    def __init__(self) -> None:
        self._records: list[DeadLetterRecord] = []
        self._lock = asyncio.Lock()

    async def record(self, record: DeadLetterRecord) -> None:
        async with self._lock:
            self._records.append(record)
        logger.debug(
            "Dead letter recorded in memory",
            extra={"topic": record.topic, "offset": record.offset, "reason": record.reason},
        )

    @property
    def records(self) -> list[DeadLetterRecord]:
        return list(self._records)

    def for_topic(self, topic: str) -> list[DeadLetterRecord]:
        return [r for r in self._records if r.topic == topic]

    def clear(self) -> None:
        self._records.clear()


class BrokerDeadLetterSink:
    """
    Dead letter sink that appends records to ``<topic>.dlq`` on the broker.

    The record is keyed like the original envelope so dead letters for one
    business entity stay ordered.

    Args:
        connection: Connected broker handle used for the append.
    """

    def __init__(self, connection: BrokerConnection) -> None:
        self._connection = connection

    async def record(self, record: DeadLetterRecord) -> None:
        topic = dead_letter_topic(record.topic)
        key = record.key.encode("utf-8") if record.key is not None else None
        headers = [
            ("dlq_reason", record.reason.encode("utf-8")),
            ("dlq_error_type", record.error_type.encode("utf-8")),
            ("dlq_consumer_group", record.group_id.encode("utf-8")),
        ]
        ack = await self._connection.append(
            topic,
            key,
            record.model_dump_json().encode("utf-8"),
            headers,
        )
        logger.info(
            "Message sent to DLQ",
            extra={
                "dlq_topic": topic,
                "dlq_partition": ack.partition,
                "dlq_offset": ack.offset,
                "source_offset": record.offset,
                "reason": record.reason,
                "error": record.error_message[:200],
            },
        )


__all__ = [
    "DLQ_TOPIC_SUFFIX",
    "BrokerDeadLetterSink",
    "DeadLetterRecord",
    "DeadLetterSink",
    "InMemoryDeadLetterSink",
    "dead_letter_topic",
]
