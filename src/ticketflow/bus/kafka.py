"""Kafka broker connection using aiokafka.

Features:
- Durable appends acknowledged by the cluster (``acks="all"``)
- Consumer groups named per participant role
- Manual offset commits after the handler succeeds (at-least-once)
- Per-partition workers: sequential inside a partition, concurrent across
- Pause and seek back on a partition whose handler exhausted its retries
- Dead letter records on ``<topic>.dlq``
- Rebalance listener that drains workers of revoked partitions
- Optional OpenTelemetry tracing with context carried in record headers

Delivery Guarantees:
    This implementation provides **at-least-once** delivery semantics. An
    envelope is redelivered after a crash, a failed commit, or a rebalance
    that interrupted its handler. Participants deduplicate by idempotency
    key. Exactly-once semantics are NOT supported.

Example:
    >>> config = KafkaConfig.from_env()
    >>> async with KafkaBroker(config) as broker:
    ...     subscriber = broker.subscriber()
    ...     await subscriber.subscribe("payment-service-group", ["payments.requested"], handle)
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import ssl
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer, TopicPartition
from aiokafka.abc import ConsumerRebalanceListener
from aiokafka.errors import IllegalStateError, KafkaError

from ticketflow.bus.dead_letter import BrokerDeadLetterSink, DeadLetterSink
from ticketflow.bus.delivery import (
    DeliveryPolicy,
    EnvelopeHandler,
    Outcome,
    PartitionProcessor,
)
from ticketflow.bus.interface import Ack, BrokerConnection, Subscriber
from ticketflow.exceptions import BrokerConnectionError
from ticketflow.observability import Tracer
from ticketflow.retry import RetryConfig, RetryError, calculate_backoff, retry_async

logger = logging.getLogger(__name__)

DEFAULT_BROKERS = "kafka:9092"
DEFAULT_CLIENT_ID = "smart-ticketing"

# Failures worth another connect attempt
CONNECT_EXCEPTIONS: tuple[type[Exception], ...] = (
    KafkaError,
    ConnectionError,
    OSError,
    TimeoutError,
)


@dataclass
class KafkaConfig:
    """Configuration for the Kafka broker connection.

    Attributes:
        bootstrap_servers: Kafka broker addresses (comma-separated).
            Format: host1:port1,host2:port2
        client_id: Client id reported to the brokers.
        acks: Producer acknowledgment level. "all" waits for every in-sync
            replica, which is what makes an acknowledged append durable.
        enable_idempotence: Let the producer deduplicate its own retries.
        request_timeout_ms: Producer request timeout in milliseconds.
        auto_offset_reset: Where a new consumer group starts reading:
            - "earliest": From the beginning (default)
            - "latest": From the end
        session_timeout_ms: Consumer session timeout in milliseconds.
        heartbeat_interval_ms: Consumer heartbeat interval in milliseconds.
        max_poll_interval_ms: Maximum time between polls before the consumer
            is considered failed.
        poll_timeout_ms: How long one poll waits for records.
        max_poll_records: Records fetched per poll across partitions.
        security_protocol: "PLAINTEXT", "SSL", "SASL_PLAINTEXT" or "SASL_SSL".
        sasl_mechanism: "PLAIN", "SCRAM-SHA-256" or "SCRAM-SHA-512".
        sasl_username: Username for SASL authentication.
        sasl_password: Password for SASL authentication.
        ssl_cafile: Path to CA certificate file.
        ssl_certfile: Path to client certificate for mTLS.
        ssl_keyfile: Path to client private key for mTLS.
        ssl_check_hostname: Whether to verify server hostname.
        max_connect_attempts: Connect attempts before giving up
            (None = keep trying).
        connect_initial_delay: First delay between connect attempts.
        connect_max_delay: Cap on the delay between connect attempts.
        shutdown_timeout: Grace period in seconds for in-flight handlers.
        enable_tracing: Enable OpenTelemetry tracing.

    Raises:
        ValueError: If security configuration is invalid (e.g., SASL protocol
            without credentials, mismatched SSL cert/key files).
    """

    # Connection
    bootstrap_servers: str = DEFAULT_BROKERS
    client_id: str = DEFAULT_CLIENT_ID

    # Producer settings
    acks: str = "all"
    enable_idempotence: bool = False
    request_timeout_ms: int = 30000

    # Consumer settings
    auto_offset_reset: str = "earliest"
    session_timeout_ms: int = 30000
    heartbeat_interval_ms: int = 10000
    max_poll_interval_ms: int = 300000
    poll_timeout_ms: int = 1000
    max_poll_records: int = 100

    # Security
    security_protocol: str = "PLAINTEXT"
    sasl_mechanism: str | None = None
    sasl_username: str | None = None
    sasl_password: str | None = None
    ssl_cafile: str | None = None
    ssl_certfile: str | None = None
    ssl_keyfile: str | None = None
    ssl_check_hostname: bool = True

    # Connect retry
    max_connect_attempts: int | None = None
    connect_initial_delay: float = 1.0
    connect_max_delay: float = 30.0

    # Shutdown
    shutdown_timeout: float = 30.0

    # Observability
    enable_tracing: bool = True

    def __post_init__(self) -> None:
        if not self.bootstrap_servers.strip():
            raise ValueError("bootstrap_servers must not be empty")
        if self.auto_offset_reset not in ("earliest", "latest"):
            raise ValueError(
                f"Invalid auto_offset_reset: {self.auto_offset_reset}. "
                "Must be 'earliest' or 'latest'"
            )
        if self.max_connect_attempts is not None and self.max_connect_attempts < 1:
            raise ValueError(
                f"max_connect_attempts must be >= 1 or None, got {self.max_connect_attempts}"
            )
        if self.shutdown_timeout < 0:
            raise ValueError(f"shutdown_timeout must be >= 0, got {self.shutdown_timeout}")
        self._validate_security_config()

    def _validate_security_config(self) -> None:
        valid_protocols = {"PLAINTEXT", "SSL", "SASL_PLAINTEXT", "SASL_SSL"}
        if self.security_protocol not in valid_protocols:
            raise ValueError(
                f"Invalid security_protocol: {self.security_protocol}. "
                f"Must be one of: {valid_protocols}"
            )

        if self.security_protocol.startswith("SASL_"):
            valid_mechanisms = {"PLAIN", "SCRAM-SHA-256", "SCRAM-SHA-512"}
            if not self.sasl_mechanism:
                raise ValueError(f"sasl_mechanism required for {self.security_protocol}")
            if self.sasl_mechanism not in valid_mechanisms:
                raise ValueError(
                    f"Invalid sasl_mechanism: {self.sasl_mechanism}. "
                    f"Must be one of: {valid_mechanisms}"
                )
            if not self.sasl_username or not self.sasl_password:
                raise ValueError("sasl_username and sasl_password required for SASL authentication")

        if self.security_protocol in ("SSL", "SASL_SSL"):
            if self.ssl_certfile and not self.ssl_keyfile:
                raise ValueError("ssl_keyfile required when ssl_certfile is provided (mTLS)")
            if self.ssl_keyfile and not self.ssl_certfile:
                raise ValueError("ssl_certfile required when ssl_keyfile is provided (mTLS)")

        if self.security_protocol == "SASL_PLAINTEXT":
            logger.warning("Using SASL without SSL - credentials sent in plain text")
        if "SSL" in self.security_protocol and not self.ssl_check_hostname:
            logger.warning("SSL hostname verification disabled - vulnerable to MITM attacks")

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None, **overrides: Any) -> KafkaConfig:
        """
        Build a configuration from environment variables.

        Reads KAFKA_BROKERS (comma-separated, default ``kafka:9092``),
        KAFKA_CLIENT_ID, KAFKA_SECURITY_PROTOCOL, KAFKA_SASL_MECHANISM,
        KAFKA_SASL_USERNAME and KAFKA_SASL_PASSWORD. Keyword arguments
        override what the environment provides.
        """
        env = os.environ if environ is None else environ
        brokers = env.get("KAFKA_BROKERS", "")
        servers = [s.strip() for s in brokers.split(",") if s.strip()]

        values: dict[str, Any] = {
            "bootstrap_servers": ",".join(servers) or DEFAULT_BROKERS,
            "client_id": env.get("KAFKA_CLIENT_ID") or DEFAULT_CLIENT_ID,
            "security_protocol": env.get("KAFKA_SECURITY_PROTOCOL") or "PLAINTEXT",
            "sasl_mechanism": env.get("KAFKA_SASL_MECHANISM") or None,
            "sasl_username": env.get("KAFKA_SASL_USERNAME") or None,
            "sasl_password": env.get("KAFKA_SASL_PASSWORD") or None,
        }
        values.update(overrides)
        return cls(**values)

    @property
    def connect_retry(self) -> RetryConfig:
        """Backoff used between connect attempts."""
        attempts = self.max_connect_attempts
        return RetryConfig(
            max_retries=None if attempts is None else attempts - 1,
            initial_delay=self.connect_initial_delay,
            max_delay=max(self.connect_max_delay, self.connect_initial_delay),
        )

    def get_producer_config(self) -> dict[str, Any]:
        """Keyword arguments for AIOKafkaProducer."""
        config: dict[str, Any] = {
            "bootstrap_servers": self.bootstrap_servers,
            "client_id": self.client_id,
            "acks": self.acks,
            "enable_idempotence": self.enable_idempotence,
            "request_timeout_ms": self.request_timeout_ms,
        }
        self._add_security_config(config)
        return config

    def get_consumer_config(self, group_id: str) -> dict[str, Any]:
        """Keyword arguments for an AIOKafkaConsumer in ``group_id``."""
        config: dict[str, Any] = {
            "bootstrap_servers": self.bootstrap_servers,
            "client_id": self.client_id,
            "group_id": group_id,
            "auto_offset_reset": self.auto_offset_reset,
            "session_timeout_ms": self.session_timeout_ms,
            "heartbeat_interval_ms": self.heartbeat_interval_ms,
            "max_poll_interval_ms": self.max_poll_interval_ms,
            "enable_auto_commit": False,  # Manual commit for at-least-once
        }
        self._add_security_config(config)
        return config

    def _add_security_config(self, config: dict[str, Any]) -> None:
        config["security_protocol"] = self.security_protocol

        if self.sasl_mechanism:
            config["sasl_mechanism"] = self.sasl_mechanism
        if self.sasl_username:
            config["sasl_plain_username"] = self.sasl_username
        if self.sasl_password:
            config["sasl_plain_password"] = self.sasl_password

        ssl_context = self.create_ssl_context()
        if ssl_context is not None:
            config["ssl_context"] = ssl_context

    def create_ssl_context(self) -> ssl.SSLContext | None:
        """Create an SSL context from configuration.

        Returns:
            Configured SSLContext if using SSL/TLS, None otherwise.

        Raises:
            ssl.SSLError: If certificate files are invalid or cannot be loaded.
            FileNotFoundError: If specified certificate files do not exist.
        """
        if "SSL" not in self.security_protocol:
            return None

        context = ssl.create_default_context()

        if self.ssl_cafile:
            context.load_verify_locations(self.ssl_cafile)

        if self.ssl_certfile and self.ssl_keyfile:
            context.load_cert_chain(
                certfile=self.ssl_certfile,
                keyfile=self.ssl_keyfile,
            )

        if not self.ssl_check_hostname:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
        else:
            context.check_hostname = True
            context.verify_mode = ssl.CERT_REQUIRED

        return context

    def get_sanitized_config(self) -> dict[str, Any]:
        """Configuration with secrets redacted, safe for logging.

        Example:
            >>> config = KafkaConfig(
            ...     security_protocol="SASL_SSL",
            ...     sasl_mechanism="PLAIN",
            ...     sasl_username="svc",
            ...     sasl_password="secret123",
            ... )
            >>> config.get_sanitized_config()["sasl_password"]
            '***'
        """
        return {
            "bootstrap_servers": self.bootstrap_servers,
            "client_id": self.client_id,
            "acks": self.acks,
            "auto_offset_reset": self.auto_offset_reset,
            "security_protocol": self.security_protocol,
            "sasl_mechanism": self.sasl_mechanism,
            "sasl_username": self.sasl_username,
            "sasl_password": "***" if self.sasl_password else None,
            "ssl_cafile": self.ssl_cafile,
            "ssl_certfile": self.ssl_certfile,
            "ssl_keyfile": "***" if self.ssl_keyfile else None,
            "ssl_check_hostname": self.ssl_check_hostname,
            "max_connect_attempts": self.max_connect_attempts,
            "enable_tracing": self.enable_tracing,
        }


class KafkaBroker(BrokerConnection):
    """
    Broker connection backed by a Kafka cluster.

    Connecting starts the shared producer, retrying with exponential backoff
    until it succeeds or ``max_connect_attempts`` is used up. Subscribers
    create their own consumers.

    Args:
        config: Connection settings. Uses defaults if None.
        dead_letters: Sink handed to subscribers by default. Records go to
            ``<topic>.dlq`` through this connection if None.
    """

    def __init__(
        self,
        config: KafkaConfig | None = None,
        *,
        dead_letters: DeadLetterSink | None = None,
    ) -> None:
        self._config = config or KafkaConfig()
        self._producer: AIOKafkaProducer | None = None
        self._connected = False
        self._dead_letters = dead_letters
        self.enable_tracing = self._config.enable_tracing

        logger.debug("KafkaBroker initialized", extra=self._config.get_sanitized_config())

    @property
    def config(self) -> KafkaConfig:
        return self._config

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        """
        Start the producer.

        Raises:
            BrokerConnectionError: If the cluster stays unreachable for
                ``max_connect_attempts`` attempts.
        """
        if self._connected:
            logger.warning("KafkaBroker already connected")
            return

        logger.info("Connecting to Kafka", extra=self._config.get_sanitized_config())
        try:
            self._producer = await retry_async(
                self._start_producer,
                config=self._config.connect_retry,
                retryable_exceptions=CONNECT_EXCEPTIONS,
                operation_name="kafka.producer.start",
            )
        except RetryError as e:
            raise BrokerConnectionError(self._config.bootstrap_servers, str(e.last_error)) from e

        self._connected = True
        logger.info(
            "Connected to Kafka",
            extra={"bootstrap_servers": self._config.bootstrap_servers},
        )

    async def _start_producer(self) -> AIOKafkaProducer:
        producer = AIOKafkaProducer(**self._config.get_producer_config())
        try:
            await producer.start()
        except BaseException:
            with contextlib.suppress(Exception):
                await producer.stop()
            raise
        return producer

    async def close(self) -> None:
        if self._producer is not None:
            try:
                await self._producer.stop()
            except Exception as e:
                logger.warning(f"Error stopping producer: {e}")
            self._producer = None
        if self._connected:
            self._connected = False
            logger.info("Disconnected from Kafka")

    async def append(
        self,
        topic: str,
        key: bytes | None,
        value: bytes,
        headers: list[tuple[str, bytes]] | None = None,
    ) -> Ack:
        if not self._connected or self._producer is None:
            raise BrokerConnectionError(self._config.bootstrap_servers, "not connected")

        metadata = await self._producer.send_and_wait(
            topic,
            value=value,
            key=key,
            headers=headers or None,
        )
        return Ack(
            topic=metadata.topic,
            key=key.decode("utf-8", errors="replace") if key is not None else None,
            partition=metadata.partition,
            offset=metadata.offset,
        )

    def subscriber(
        self,
        *,
        policy: DeliveryPolicy | None = None,
        dead_letters: DeadLetterSink | None = None,
        tracer: Tracer | None = None,
    ) -> KafkaSubscriber:
        return KafkaSubscriber(
            self,
            policy=policy,
            dead_letters=dead_letters or self._dead_letters or BrokerDeadLetterSink(self),
            tracer=tracer,
        )


class KafkaRebalanceListener(ConsumerRebalanceListener):
    """
    Drains partition workers before their partitions move to another member.

    A worker still running when the grace period ends keeps running, and its
    commit will fail; the new owner then redelivers the envelope.
    """

    def __init__(self, subscriber: KafkaSubscriber, grace: float) -> None:
        self._subscriber = subscriber
        self._grace = grace

    async def on_partitions_revoked(self, revoked: set[TopicPartition]) -> None:
        if not revoked:
            return

        logger.info(
            "Partitions being revoked, draining workers",
            extra={
                "revoked_partitions": [
                    {"topic": tp.topic, "partition": tp.partition} for tp in revoked
                ],
                "group_id": self._subscriber.group_id,
            },
        )
        await self._subscriber._drain_workers(revoked, self._grace)

    async def on_partitions_assigned(self, assigned: set[TopicPartition]) -> None:
        if not assigned:
            return

        logger.info(
            "New partitions assigned",
            extra={
                "assigned_partitions": [
                    {"topic": tp.topic, "partition": tp.partition} for tp in assigned
                ],
                "group_id": self._subscriber.group_id,
            },
        )


class KafkaSubscriber(Subscriber):
    """
    Consumer group member backed by AIOKafkaConsumer.

    One poll loop fetches batches; each partition's batch is handed to a
    worker task and the partition is paused until the worker drains it, so a
    partition never has two envelopes in flight.
    """

    messaging_system = "kafka"

    def __init__(
        self,
        broker: KafkaBroker,
        *,
        policy: DeliveryPolicy | None = None,
        dead_letters: DeadLetterSink | None = None,
        tracer: Tracer | None = None,
    ) -> None:
        super().__init__(
            policy=policy,
            dead_letters=dead_letters,
            tracer=tracer,
            enable_tracing=broker.config.enable_tracing,
        )
        self._config = broker.config
        self._consumer: AIOKafkaConsumer | None = None
        self._workers: dict[TopicPartition, asyncio.Task[None]] = {}
        self._stopping = asyncio.Event()
        self._finished = asyncio.Event()
        self._running = False
        self._group_id: str | None = None

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def group_id(self) -> str | None:
        return self._group_id

    async def subscribe(
        self,
        group_id: str,
        topics: Sequence[str],
        handler: EnvelopeHandler,
    ) -> None:
        if self._running:
            raise RuntimeError("Subscriber is already running")

        self._running = True
        self._group_id = group_id
        self._stopping.clear()
        self._finished.clear()
        try:
            consumer = await self._start_consumer(group_id, topics)
        except BaseException:
            self._running = False
            self._finished.set()
            raise

        self._consumer = consumer
        processor = self._make_processor(group_id, handler, self._commit)
        logger.info("Subscribed", extra={"group_id": group_id, "topics": list(topics)})
        try:
            await self._poll(consumer, processor)
        finally:
            await self._drain_workers(list(self._workers), 0)
            try:
                await consumer.stop()
            except Exception as e:
                logger.warning(f"Error stopping consumer: {e}")
            self._consumer = None
            self._running = False
            self._finished.set()
            logger.info("Unsubscribed", extra={"group_id": group_id})

    async def _start_consumer(self, group_id: str, topics: Sequence[str]) -> AIOKafkaConsumer:
        async def start() -> AIOKafkaConsumer:
            consumer = AIOKafkaConsumer(**self._config.get_consumer_config(group_id))
            consumer.subscribe(
                topics=list(topics),
                listener=KafkaRebalanceListener(self, self._config.shutdown_timeout),
            )
            try:
                await consumer.start()
            except BaseException:
                with contextlib.suppress(Exception):
                    await consumer.stop()
                raise
            return consumer

        try:
            return await retry_async(
                start,
                config=self._config.connect_retry,
                retryable_exceptions=CONNECT_EXCEPTIONS,
                operation_name="kafka.consumer.start",
            )
        except RetryError as e:
            raise BrokerConnectionError(self._config.bootstrap_servers, str(e.last_error)) from e

    async def _poll(self, consumer: AIOKafkaConsumer, processor: PartitionProcessor) -> None:
        errors = 0
        while not self._stopping.is_set():
            try:
                batches = await consumer.getmany(
                    timeout_ms=self._config.poll_timeout_ms,
                    max_records=self._config.max_poll_records,
                )
            except KafkaError as e:
                delay = calculate_backoff(errors, self._config.connect_retry)
                errors += 1
                logger.error(
                    "Consumer error, backing off",
                    extra={"error": str(e), "delay_seconds": delay, "consecutive_errors": errors},
                )
                await asyncio.sleep(delay)
                continue
            errors = 0

            for tp, records in batches.items():
                if not records or self._stopping.is_set():
                    continue
                consumer.pause(tp)
                self._workers[tp] = asyncio.create_task(
                    self._drain_partition(consumer, processor, tp, records),
                    name=f"{processor.group_id}:{tp.topic}:{tp.partition}",
                )

    async def _drain_partition(
        self,
        consumer: AIOKafkaConsumer,
        processor: PartitionProcessor,
        tp: TopicPartition,
        records: list[Any],
    ) -> None:
        paused = False
        try:
            for record in records:
                if self._stopping.is_set():
                    # Uncommitted; the next owner starts from the committed offset
                    return
                try:
                    outcome = await processor.process_record(
                        record.topic,
                        record.partition,
                        record.offset,
                        record.key,
                        record.value,
                        list(record.headers or ()),
                        record.timestamp,
                    )
                except KafkaError as e:
                    self._stats.commit_failures += 1
                    logger.warning(
                        "Commit failed, envelope will be redelivered",
                        extra={
                            "group_id": processor.group_id,
                            "topic": tp.topic,
                            "partition": tp.partition,
                            "offset": record.offset,
                            "error": str(e),
                        },
                    )
                    self._seek(consumer, tp, record.offset)
                    return

                if outcome is Outcome.PAUSED:
                    paused = True
                    self._paused.add((tp.topic, tp.partition))
                    self._seek(consumer, tp, record.offset)
                    return
        finally:
            self._workers.pop(tp, None)
            if not paused and not self._stopping.is_set() and tp in consumer.assignment():
                consumer.resume(tp)

    def _seek(self, consumer: AIOKafkaConsumer, tp: TopicPartition, offset: int) -> None:
        with contextlib.suppress(IllegalStateError):
            consumer.seek(tp, offset)

    async def _commit(self, topic: str, partition: int, next_offset: int) -> None:
        if self._consumer is None:
            raise IllegalStateError("Consumer is not running")
        await self._consumer.commit({TopicPartition(topic, partition): next_offset})

    async def _drain_workers(
        self,
        partitions: Sequence[TopicPartition] | set[TopicPartition],
        grace: float,
    ) -> None:
        workers = [self._workers[tp] for tp in partitions if tp in self._workers]
        for tp in partitions:
            self._paused.discard((tp.topic, tp.partition))
        if not workers:
            return
        if grace > 0:
            _, pending = await asyncio.wait(workers, timeout=grace)
        else:
            pending = {w for w in workers if not w.done()}
        for worker in pending:
            worker.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def stop(self, timeout: float | None = None) -> None:
        if not self._running:
            return
        timeout = self._config.shutdown_timeout if timeout is None else timeout
        logger.info("Stopping subscriber", extra={"timeout": timeout})
        self._stopping.set()

        workers = [w for w in self._workers.values() if not w.done()]
        if workers:
            _, pending = await asyncio.wait(workers, timeout=timeout)
            if pending:
                logger.warning(
                    "Shutdown grace period expired, cancelling in-flight handlers",
                    extra={"pending": len(pending)},
                )
                for worker in pending:
                    worker.cancel()
                await asyncio.gather(*pending, return_exceptions=True)

        # The poll loop notices the stop flag within one poll timeout
        try:
            await asyncio.wait_for(
                self._finished.wait(),
                timeout=timeout + self._config.poll_timeout_ms / 1000,
            )
        except TimeoutError:
            logger.warning("Consumer did not stop within the grace period")

    def resume(self, topic: str, partition: int) -> None:
        if (topic, partition) not in self._paused:
            return
        self._paused.discard((topic, partition))
        tp = TopicPartition(topic, partition)
        if self._consumer is not None and tp in self._consumer.assignment():
            self._consumer.resume(tp)
        logger.info("Partition resumed", extra={"topic": topic, "partition": partition})


__all__ = [
    "DEFAULT_BROKERS",
    "DEFAULT_CLIENT_ID",
    "KafkaBroker",
    "KafkaConfig",
    "KafkaRebalanceListener",
    "KafkaSubscriber",
]
