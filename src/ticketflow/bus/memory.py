"""In-memory partitioned log and consumer groups.

This module provides a broker that lives inside one process: topics split
into partitions, per-group committed offsets, and consumer group membership
with partition ownership moving between members as they join and leave.

Suitable for development, testing, and single-process runs of the whole
saga. For distributed deployments, use KafkaBroker instead.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
import uuid
import zlib
from collections import defaultdict
from collections.abc import Sequence
from dataclasses import dataclass
from functools import partial

from ticketflow.bus.dead_letter import DeadLetterSink, InMemoryDeadLetterSink
from ticketflow.bus.delivery import (
    DeliveryPolicy,
    EnvelopeHandler,
    Outcome,
    PartitionProcessor,
)
from ticketflow.bus.interface import Ack, BrokerConnection, Subscriber
from ticketflow.events.envelope import Envelope, decode_envelope
from ticketflow.exceptions import BrokerConnectionError
from ticketflow.observability import Tracer

logger = logging.getLogger(__name__)

MEMORY_BOOTSTRAP = "memory://"


@dataclass(frozen=True)
class StoredRecord:
    """One appended record as kept by the in-memory log."""

    topic: str
    partition: int
    offset: int
    key: bytes | None
    value: bytes | None
    headers: tuple[tuple[str, bytes], ...]
    timestamp_ms: int


def partition_for_key(key: bytes, num_partitions: int) -> int:
    """Stable partition for a key: crc32 of the key bytes modulo the partition count."""
    return zlib.crc32(key) % num_partitions


class InMemoryBroker(BrokerConnection):
    """
    Partitioned append-only log kept in process memory.

    Features:
    - Same key always maps to the same partition
    - Keyless appends spread round-robin over partitions
    - Committed offsets per (group, topic, partition)
    - Group membership; partitions of a topic are split among the members
      subscribed to it and move when members join or leave
    - Fault injection for append and commit failures

    Args:
        num_partitions: Partitions per topic unless overridden.
        partitions: Per-topic partition count overrides.
        dead_letters: Sink handed to subscribers by default.
        enable_tracing: Create OpenTelemetry tracers for publishers and
            subscribers. Defaults to False for local runs and tests.
        poll_interval: Upper bound in seconds on how long an idle worker
            waits before re-checking its partition.

    Example:
        >>> async with InMemoryBroker() as broker:
        ...     publisher = broker.publisher(Role.PASSENGER)
        ...     await publisher.publish(
        ...         "passengers.registered", "passenger-7", {"passengerId": 7, "name": "Ada"}
        ...     )
        ...     broker.envelopes("passengers.registered")[0].key
        'passenger-7'
    """

    def __init__(
        self,
        num_partitions: int = 3,
        *,
        partitions: dict[str, int] | None = None,
        dead_letters: DeadLetterSink | None = None,
        enable_tracing: bool = False,
        poll_interval: float = 0.1,
    ) -> None:
        if num_partitions < 1:
            raise ValueError(f"num_partitions must be >= 1, got {num_partitions}")
        self._num_partitions = num_partitions
        self._partition_overrides = dict(partitions or {})
        self._logs: dict[str, list[list[StoredRecord]]] = {}
        self._round_robin: dict[str, int] = defaultdict(int)
        self._committed: dict[tuple[str, str, int], int] = {}
        self._members: dict[str, dict[str, tuple[str, ...]]] = defaultdict(dict)
        self._partition_locks: dict[tuple[str, str, int], asyncio.Lock] = {}
        self._changed = asyncio.Event()
        self._connected = False
        self._failing_appends = 0
        self._failing_commits = 0
        self.available = True
        self.enable_tracing = enable_tracing
        self.poll_interval = poll_interval
        self.dead_letters: DeadLetterSink = dead_letters or InMemoryDeadLetterSink()

    # =========================================================================
    # Connection lifecycle
    # =========================================================================

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        if not self.available:
            raise BrokerConnectionError(MEMORY_BOOTSTRAP, "broker unavailable")
        self._connected = True
        logger.info("Connected to in-memory broker", extra={"partitions": self._num_partitions})

    async def close(self) -> None:
        if not self._connected:
            return
        self._connected = False
        self._signal()
        logger.info("Disconnected from in-memory broker")

    # =========================================================================
    # Log
    # =========================================================================

    def partitions_for(self, topic: str) -> int:
        return self._partition_overrides.get(topic, self._num_partitions)

    def _log(self, topic: str) -> list[list[StoredRecord]]:
        log = self._logs.get(topic)
        if log is None:
            log = [[] for _ in range(self.partitions_for(topic))]
            self._logs[topic] = log
        return log

    def _choose_partition(self, topic: str, key: bytes | None) -> int:
        count = self.partitions_for(topic)
        if key is None:
            partition = self._round_robin[topic] % count
            self._round_robin[topic] += 1
            return partition
        return partition_for_key(key, count)

    async def append(
        self,
        topic: str,
        key: bytes | None,
        value: bytes,
        headers: list[tuple[str, bytes]] | None = None,
    ) -> Ack:
        if not self._connected:
            raise BrokerConnectionError(MEMORY_BOOTSTRAP, "not connected")
        if not self.available:
            raise ConnectionError("in-memory broker unavailable")
        if self._failing_appends > 0:
            self._failing_appends -= 1
            raise TimeoutError("append timed out before acknowledgment")

        partition = self._choose_partition(topic, key)
        records = self._log(topic)[partition]
        record = StoredRecord(
            topic=topic,
            partition=partition,
            offset=len(records),
            key=key,
            value=value,
            headers=tuple(headers or ()),
            timestamp_ms=int(time.time() * 1000),
        )
        records.append(record)
        self._signal()
        return Ack(
            topic=topic,
            key=key.decode("utf-8", errors="replace") if key is not None else None,
            partition=partition,
            offset=record.offset,
        )

    def read(self, topic: str, partition: int, offset: int) -> StoredRecord | None:
        """Record at ``offset``, or None if nothing has been appended there yet."""
        records = self._log(topic)[partition]
        if offset < len(records):
            return records[offset]
        return None

    def records(self, topic: str) -> list[StoredRecord]:
        """All records of a topic, partition by partition in offset order."""
        return [record for records in self._log(topic) for record in records]

    def envelopes(self, topic: str) -> list[Envelope]:
        """Decoded envelopes of a topic, partition by partition in offset order."""
        return [
            decode_envelope(
                r.topic,
                r.key,
                r.value,
                partition=r.partition,
                offset=r.offset,
                headers=list(r.headers),
                timestamp_ms=r.timestamp_ms,
            )
            for r in self.records(topic)
        ]

    def end_offset(self, topic: str, partition: int) -> int:
        return len(self._log(topic)[partition])

    # =========================================================================
    # Consumer groups
    # =========================================================================

    def committed_offset(self, group_id: str, topic: str, partition: int) -> int:
        return self._committed.get((group_id, topic, partition), 0)

    async def commit(self, group_id: str, topic: str, partition: int, next_offset: int) -> None:
        """
        Store the next offset ``group_id`` will read from the partition.

        Raises:
            ConnectionError: If a commit failure was injected or the broker is
                unavailable.
        """
        if not self.available:
            raise ConnectionError("in-memory broker unavailable")
        if self._failing_commits > 0:
            self._failing_commits -= 1
            raise ConnectionError("commit rejected: group rebalancing")
        self._committed[(group_id, topic, partition)] = next_offset

    def lag(self, group_id: str, topic: str) -> int:
        """Envelopes appended to ``topic`` that ``group_id`` has not committed."""
        return sum(
            self.end_offset(topic, p) - self.committed_offset(group_id, topic, p)
            for p in range(self.partitions_for(topic))
        )

    def join(self, group_id: str, member_id: str, topics: Sequence[str]) -> None:
        self._members[group_id][member_id] = tuple(topics)
        logger.info(
            "Member joined consumer group",
            extra={
                "group_id": group_id,
                "member_id": member_id,
                "members": len(self._members[group_id]),
            },
        )
        self._signal()

    def leave(self, group_id: str, member_id: str) -> None:
        if self._members[group_id].pop(member_id, None) is None:
            return
        logger.info(
            "Member left consumer group",
            extra={
                "group_id": group_id,
                "member_id": member_id,
                "members": len(self._members[group_id]),
            },
        )
        self._signal()

    def owner(self, group_id: str, topic: str, partition: int) -> str | None:
        """Member of ``group_id`` currently assigned the partition, if any."""
        eligible = [
            member for member, topics in self._members[group_id].items() if topic in topics
        ]
        if not eligible:
            return None
        return eligible[partition % len(eligible)]

    def partition_lock(self, group_id: str, topic: str, partition: int) -> asyncio.Lock:
        """Lock held while a member processes the partition for ``group_id``."""
        key = (group_id, topic, partition)
        lock = self._partition_locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._partition_locks[key] = lock
        return lock

    async def wait_for_change(self, timeout: float) -> None:
        """Wait until something is appended or membership changes, or ``timeout``."""
        changed = self._changed
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(changed.wait(), timeout)

    def _signal(self) -> None:
        changed, self._changed = self._changed, asyncio.Event()
        changed.set()

    # =========================================================================
    # Fault injection
    # =========================================================================

    def fail_next_appends(self, count: int = 1) -> None:
        """Make the next ``count`` appends time out without storing anything."""
        self._failing_appends = count

    def fail_next_commits(self, count: int = 1) -> None:
        """Make the next ``count`` commits fail."""
        self._failing_commits = count

    # =========================================================================
    # Clients
    # =========================================================================

    def subscriber(
        self,
        *,
        policy: DeliveryPolicy | None = None,
        dead_letters: DeadLetterSink | None = None,
        tracer: Tracer | None = None,
    ) -> InMemorySubscriber:
        return InMemorySubscriber(
            self,
            policy=policy,
            dead_letters=dead_letters or self.dead_letters,
            tracer=tracer,
            enable_tracing=self.enable_tracing,
        )


class InMemorySubscriber(Subscriber):
    """
    Consumer group member of an InMemoryBroker.

    Runs one worker task per partition of each subscribed topic. A worker
    only processes while this member owns the partition and it is not
    paused, and it holds the group's partition lock while handling an
    envelope so that a rebalance never lets two members work the same
    partition at once.

    Example:
        >>> subscriber = broker.subscriber()
        >>> task = asyncio.create_task(
        ...     subscriber.subscribe("ticketing-service-group", ["payments.confirmed"], handle)
        ... )
        >>> ...
        >>> await subscriber.stop(timeout=5.0)
    """

    messaging_system = "memory"

    def __init__(
        self,
        broker: InMemoryBroker,
        *,
        policy: DeliveryPolicy | None = None,
        dead_letters: DeadLetterSink | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = False,
    ) -> None:
        super().__init__(
            policy=policy,
            dead_letters=dead_letters,
            tracer=tracer,
            enable_tracing=enable_tracing,
        )
        self._broker = broker
        self._workers: list[asyncio.Task[None]] = []
        self._stopping = asyncio.Event()
        self._running = False
        self._member_id: str | None = None

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def member_id(self) -> str | None:
        return self._member_id

    async def subscribe(
        self,
        group_id: str,
        topics: Sequence[str],
        handler: EnvelopeHandler,
    ) -> None:
        if self._running:
            raise RuntimeError("Subscriber is already running")
        if not self._broker.is_connected:
            raise BrokerConnectionError(MEMORY_BOOTSTRAP, "not connected")

        self._running = True
        self._stopping.clear()
        member_id = f"{group_id}-{uuid.uuid4().hex[:8]}"
        self._member_id = member_id
        processor = self._make_processor(group_id, handler, partial(self._broker.commit, group_id))

        self._broker.join(group_id, member_id, topics)
        logger.info(
            "Subscribed",
            extra={"group_id": group_id, "member_id": member_id, "topics": list(topics)},
        )
        try:
            self._workers = [
                asyncio.create_task(
                    self._consume_partition(processor, member_id, topic, partition),
                    name=f"{member_id}:{topic}:{partition}",
                )
                for topic in topics
                for partition in range(self._broker.partitions_for(topic))
            ]
            results = await asyncio.gather(*self._workers, return_exceptions=True)
            for result in results:
                if isinstance(result, Exception):
                    logger.error(
                        "Partition worker failed",
                        extra={"group_id": group_id, "error": str(result)},
                        exc_info=result,
                    )
        finally:
            for worker in self._workers:
                worker.cancel()
            self._workers = []
            self._broker.leave(group_id, member_id)
            self._running = False
            self._member_id = None
            logger.info("Unsubscribed", extra={"group_id": group_id, "member_id": member_id})

    async def stop(self, timeout: float | None = None) -> None:
        if not self._running:
            return
        logger.info("Stopping subscriber", extra={"timeout": timeout})
        self._stopping.set()
        self._broker._signal()

        workers = [w for w in self._workers if not w.done()]
        if not workers:
            return
        _, pending = await asyncio.wait(workers, timeout=timeout)
        if pending:
            logger.warning(
                "Shutdown grace period expired, cancelling in-flight handlers",
                extra={"pending": len(pending)},
            )
            for worker in pending:
                worker.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

    def resume(self, topic: str, partition: int) -> None:
        if (topic, partition) not in self._paused:
            return
        self._paused.discard((topic, partition))
        logger.info("Partition resumed", extra={"topic": topic, "partition": partition})
        self._broker._signal()

    async def _consume_partition(
        self,
        processor: PartitionProcessor,
        member_id: str,
        topic: str,
        partition: int,
    ) -> None:
        broker = self._broker
        group_id = processor.group_id
        lock = broker.partition_lock(group_id, topic, partition)

        while not self._stopping.is_set():
            if not self._may_consume(member_id, group_id, topic, partition):
                await broker.wait_for_change(broker.poll_interval)
                continue

            async with lock:
                # Ownership may have moved while waiting for the lock
                if self._stopping.is_set() or not self._may_consume(
                    member_id, group_id, topic, partition
                ):
                    continue
                offset = broker.committed_offset(group_id, topic, partition)
                record = broker.read(topic, partition, offset)
                if record is not None:
                    outcome = await self._process(processor, record)
                    if outcome is Outcome.PAUSED:
                        self._paused.add((topic, partition))
                    continue

            await broker.wait_for_change(broker.poll_interval)

    def _may_consume(self, member_id: str, group_id: str, topic: str, partition: int) -> bool:
        return (
            self._broker.is_connected
            and (topic, partition) not in self._paused
            and self._broker.owner(group_id, topic, partition) == member_id
        )

    async def _process(self, processor: PartitionProcessor, record: StoredRecord) -> Outcome | None:
        try:
            return await processor.process_record(
                record.topic,
                record.partition,
                record.offset,
                record.key,
                record.value,
                list(record.headers),
                record.timestamp_ms,
            )
        except (ConnectionError, BrokerConnectionError) as e:
            self._stats.commit_failures += 1
            logger.warning(
                "Commit failed, envelope will be redelivered",
                extra={
                    "group_id": processor.group_id,
                    "topic": record.topic,
                    "partition": record.partition,
                    "offset": record.offset,
                    "error": str(e),
                },
            )
            await asyncio.sleep(self._broker.poll_interval)
            return None


__all__ = [
    "MEMORY_BOOTSTRAP",
    "InMemoryBroker",
    "InMemorySubscriber",
    "StoredRecord",
    "partition_for_key",
]
