"""
Per-envelope delivery discipline shared by every subscriber backend.

For each envelope taken from a partition the processor decides exactly one
of three things:

- the handler succeeded: commit past the envelope (ACKNOWLEDGED);
- the envelope is malformed: dead-letter it, then commit past it (REJECTED);
- the handler keeps failing: retry with backoff, then either pause the
  partition without committing (PAUSED) or dead-letter and commit
  (DEAD_LETTERED), depending on the policy.

The offset is never advanced past an envelope whose handler failed unless the
failure has first been written to the dead letter sink. Backends call the
processor for one envelope at a time per partition, which keeps handler
invocations in offset order.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from opentelemetry.propagate import extract

from ticketflow.bus.dead_letter import DeadLetterRecord, DeadLetterSink
from ticketflow.events.envelope import Envelope, decode_envelope
from ticketflow.exceptions import MalformedPayloadError
from ticketflow.observability import NullTracer, SpanKindEnum, Tracer
from ticketflow.observability.attributes import (
    ATTR_ATTEMPT,
    ATTR_CONSUMER_GROUP,
    ATTR_MESSAGING_DESTINATION,
    ATTR_MESSAGING_KEY,
    ATTR_MESSAGING_OFFSET,
    ATTR_MESSAGING_OPERATION,
    ATTR_MESSAGING_PARTITION,
    ATTR_MESSAGING_SYSTEM,
    ATTR_OUTCOME,
)
from ticketflow.retry import RetryConfig, calculate_backoff

logger = logging.getLogger(__name__)

EnvelopeHandler = Callable[[Envelope], Awaitable[None]]
"""Handler invoked once per delivered envelope; raising signals failure."""

CommitFunc = Callable[[str, int, int], Awaitable[None]]
"""Commit callable: (topic, partition, next_offset)."""


class ExhaustedAction(Enum):
    """
    What to do once a failing handler has used up its retries.

    Values:
        PAUSE: Stop the partition at the failed envelope and raise an alert.
            Delivery restarts from that envelope after resume().
        DEAD_LETTER: Record the envelope as a dead letter and move on.
    """

    PAUSE = "pause"
    DEAD_LETTER = "dead_letter"


class Outcome(Enum):
    """Final state of one envelope delivery."""

    ACKNOWLEDGED = "acknowledged"
    REJECTED = "rejected"
    DEAD_LETTERED = "dead_lettered"
    PAUSED = "paused"

    @property
    def committed(self) -> bool:
        """True if the partition advanced past the envelope."""
        return self is not Outcome.PAUSED


@dataclass
class DeliveryPolicy:
    """
    Failure handling policy for a subscriber.

    Attributes:
        retry: Backoff settings for failing handlers. max_retries must be
            bounded so a failing envelope cannot loop forever.
        on_exhausted: Action once retries are exhausted.
    """

    retry: RetryConfig = field(default_factory=lambda: RetryConfig(max_retries=3))
    on_exhausted: ExhaustedAction = ExhaustedAction.PAUSE

    def __post_init__(self) -> None:
        if self.retry.max_retries is None:
            raise ValueError("DeliveryPolicy.retry.max_retries must be bounded")


@dataclass
class SubscriberStats:
    """
    Counters for one subscriber instance.

    Attributes:
        delivered: Envelopes handed to the processor
        acknowledged: Envelopes handled successfully and committed
        rejected: Malformed envelopes dead-lettered and committed
        retried: Handler retries performed
        dead_lettered: Envelopes dead-lettered after exhausting retries
        paused: Times a partition was paused after exhausting retries
        commit_failures: Commits that failed (envelope will be redelivered)
    """

    delivered: int = 0
    acknowledged: int = 0
    rejected: int = 0
    retried: int = 0
    dead_lettered: int = 0
    paused: int = 0
    commit_failures: int = 0
    last_delivery_at: datetime | None = None
    last_error_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "delivered": self.delivered,
            "acknowledged": self.acknowledged,
            "rejected": self.rejected,
            "retried": self.retried,
            "dead_lettered": self.dead_lettered,
            "paused": self.paused,
            "commit_failures": self.commit_failures,
            "last_delivery_at": self.last_delivery_at.isoformat()
            if self.last_delivery_at
            else None,
            "last_error_at": self.last_error_at.isoformat() if self.last_error_at else None,
        }


class PartitionProcessor:
    """
    Runs the fetch-handle-commit decision for single envelopes.

    Args:
        group_id: Consumer group the envelopes are processed for.
        handler: Envelope handler.
        commit: Commits (topic, partition, next_offset) for the group.
        policy: Retry and exhaustion policy.
        dead_letters: Sink for rejected envelopes. When None, rejections are
            only logged.
        stats: Counters to update.
        tracer: Tracer for CONSUMER spans.
        messaging_system: Backend name for span attributes.
    """

    def __init__(
        self,
        group_id: str,
        handler: EnvelopeHandler,
        commit: CommitFunc,
        *,
        policy: DeliveryPolicy | None = None,
        dead_letters: DeadLetterSink | None = None,
        stats: SubscriberStats | None = None,
        tracer: Tracer | None = None,
        messaging_system: str = "memory",
    ) -> None:
        self._group_id = group_id
        self._handler = handler
        self._commit = commit
        self._policy = policy or DeliveryPolicy()
        self._dead_letters = dead_letters
        self._stats = stats or SubscriberStats()
        self._tracer = tracer or NullTracer()
        self._messaging_system = messaging_system

    @property
    def group_id(self) -> str:
        return self._group_id

    @property
    def stats(self) -> SubscriberStats:
        return self._stats

    async def process_record(
        self,
        topic: str,
        partition: int,
        offset: int,
        key: bytes | None,
        value: bytes | None,
        headers: list[tuple[str, bytes]] | None = None,
        timestamp_ms: int | None = None,
    ) -> Outcome:
        """
        Decode a raw record and process it.

        A record that cannot be decoded is rejected without invoking the
        handler.

        Returns:
            The delivery outcome.
        """
        try:
            envelope = decode_envelope(
                topic,
                key,
                value,
                partition=partition,
                offset=offset,
                headers=headers,
                timestamp_ms=timestamp_ms,
            )
        except MalformedPayloadError as e:
            self._stats.delivered += 1
            self._stats.last_delivery_at = datetime.now(UTC)
            record = DeadLetterRecord.from_failure(
                group_id=self._group_id,
                topic=topic,
                partition=partition,
                offset=offset,
                key=key,
                value=value,
                reason="malformed_payload",
                error=e,
                attempts=0,
            )
            return await self._reject(topic, partition, offset, record, e)

        return await self.process(envelope)

    async def process(self, envelope: Envelope) -> Outcome:
        """
        Invoke the handler for one envelope and settle its offset.

        Raises:
            asyncio.CancelledError: If cancelled; nothing is committed.
            Exception: If the commit itself fails. The envelope has not been
                acknowledged and will be delivered again.
        """
        if envelope.partition is None or envelope.offset is None:
            raise ValueError("Envelope has no broker position; cannot commit it")

        self._stats.delivered += 1
        self._stats.last_delivery_at = datetime.now(UTC)

        attributes = {
            ATTR_MESSAGING_SYSTEM: self._messaging_system,
            ATTR_MESSAGING_DESTINATION: envelope.topic,
            ATTR_MESSAGING_OPERATION: "process",
            ATTR_MESSAGING_PARTITION: envelope.partition,
            ATTR_MESSAGING_OFFSET: envelope.offset,
            ATTR_CONSUMER_GROUP: self._group_id,
        }
        if envelope.key is not None:
            attributes[ATTR_MESSAGING_KEY] = envelope.key

        context = extract(envelope.headers) if self._tracer.enabled else None
        with self._tracer.span_with_kind(
            f"ticketflow.process {envelope.topic}",
            kind=SpanKindEnum.CONSUMER,
            attributes=attributes,
            context=context,
        ) as span:
            outcome, attempts = await self._deliver(envelope)
            if span is not None:
                span.set_attribute(ATTR_OUTCOME, outcome.value)
                span.set_attribute(ATTR_ATTEMPT, attempts)
            return outcome

    async def _deliver(self, envelope: Envelope) -> tuple[Outcome, int]:
        topic, partition, offset = envelope.topic, envelope.partition, envelope.offset
        assert partition is not None and offset is not None
        retry = self._policy.retry
        attempt = 0

        while True:
            logger.debug(
                "Delivering envelope",
                extra={
                    "group_id": self._group_id,
                    "topic": topic,
                    "partition": partition,
                    "offset": offset,
                    "attempt": attempt + 1,
                },
            )
            try:
                await self._handler(envelope)
            except MalformedPayloadError as e:
                record = self._record_for(envelope, "malformed_payload", e, attempt + 1)
                outcome = await self._reject(topic, partition, offset, record, e)
                return outcome, attempt + 1
            except Exception as e:
                self._stats.last_error_at = datetime.now(UTC)
                if retry.allows_retry(attempt):
                    delay = calculate_backoff(attempt, retry)
                    self._stats.retried += 1
                    logger.warning(
                        "Handler failed, retrying envelope",
                        extra={
                            "group_id": self._group_id,
                            "topic": topic,
                            "partition": partition,
                            "offset": offset,
                            "attempt": attempt + 1,
                            "max_retries": retry.max_retries,
                            "retry_delay": delay,
                            "error": str(e),
                            "error_type": type(e).__name__,
                        },
                    )
                    await asyncio.sleep(delay)
                    attempt += 1
                    continue
                outcome = await self._exhausted(envelope, e, attempt + 1)
                return outcome, attempt + 1

            await self._commit(topic, partition, offset + 1)
            self._stats.acknowledged += 1
            logger.debug(
                "Envelope acknowledged",
                extra={
                    "group_id": self._group_id,
                    "topic": topic,
                    "partition": partition,
                    "offset": offset,
                },
            )
            return Outcome.ACKNOWLEDGED, attempt + 1

    async def _reject(
        self,
        topic: str,
        partition: int,
        offset: int,
        record: DeadLetterRecord,
        error: MalformedPayloadError,
    ) -> Outcome:
        logger.error(
            "Rejecting malformed envelope",
            extra={
                "group_id": self._group_id,
                "topic": topic,
                "partition": partition,
                "offset": offset,
                "reason": error.reason,
            },
        )
        if not await self._write_dead_letter(record):
            return self._pause(topic, partition, offset, error)

        await self._commit(topic, partition, offset + 1)
        self._stats.rejected += 1
        return Outcome.REJECTED

    async def _exhausted(self, envelope: Envelope, error: Exception, attempts: int) -> Outcome:
        topic, partition, offset = envelope.topic, envelope.partition, envelope.offset
        assert partition is not None and offset is not None

        if self._policy.on_exhausted is ExhaustedAction.DEAD_LETTER:
            logger.error(
                "Max retries exceeded, message will be sent to DLQ",
                extra={
                    "group_id": self._group_id,
                    "topic": topic,
                    "partition": partition,
                    "offset": offset,
                    "attempts": attempts,
                    "error": str(error),
                },
            )
            record = self._record_for(envelope, "retries_exhausted", error, attempts)
            if await self._write_dead_letter(record):
                await self._commit(topic, partition, offset + 1)
                self._stats.dead_lettered += 1
                return Outcome.DEAD_LETTERED

        return self._pause(topic, partition, offset, error)

    def _pause(self, topic: str, partition: int, offset: int, error: BaseException) -> Outcome:
        self._stats.paused += 1
        logger.error(
            "Partition paused: envelope could not be processed",
            extra={
                "alert": True,
                "group_id": self._group_id,
                "topic": topic,
                "partition": partition,
                "offset": offset,
                "error": str(error),
                "error_type": type(error).__name__,
            },
        )
        return Outcome.PAUSED

    async def _write_dead_letter(self, record: DeadLetterRecord) -> bool:
        if self._dead_letters is None:
            logger.warning(
                "No dead letter sink configured, rejected envelope only logged",
                extra={"record": record.model_dump(mode="json")},
            )
            return True
        try:
            await self._dead_letters.record(record)
        except Exception as e:
            logger.error(
                "Failed to record dead letter",
                extra={
                    "group_id": self._group_id,
                    "topic": record.topic,
                    "offset": record.offset,
                    "error": str(e),
                },
                exc_info=True,
            )
            return False
        return True

    def _record_for(
        self,
        envelope: Envelope,
        reason: str,
        error: BaseException,
        attempts: int,
    ) -> DeadLetterRecord:
        return DeadLetterRecord.from_failure(
            group_id=self._group_id,
            topic=envelope.topic,
            partition=envelope.partition,
            offset=envelope.offset,
            key=envelope.key,
            value=envelope.encode_value(),
            reason=reason,
            error=error,
            attempts=attempts,
        )


__all__ = [
    "CommitFunc",
    "DeliveryPolicy",
    "EnvelopeHandler",
    "ExhaustedAction",
    "Outcome",
    "PartitionProcessor",
    "SubscriberStats",
]
