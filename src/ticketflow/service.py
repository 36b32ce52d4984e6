"""
Process runner for one participant role.

A participant process acquires one broker connection for its lifetime and
releases it on every exit path (normal completion, error, signal). Consuming
roles subscribe until SIGINT/SIGTERM and then drain in-flight handlers within
the grace timeout; originating roles publish their stimulus and exit.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from ticketflow.bus.delivery import DeliveryPolicy, ExhaustedAction
from ticketflow.bus.interface import BrokerConnection
from ticketflow.bus.kafka import KafkaBroker, KafkaConfig
from ticketflow.bus.memory import InMemoryBroker
from ticketflow.idempotency import IdempotencyStore, InMemoryIdempotencyStore
from ticketflow.participants import CONSUMERS, ORIGINATORS
from ticketflow.participants.base import ParticipantRunner
from ticketflow.participants.passenger import PassengerService
from ticketflow.participants.transport import TransportService
from ticketflow.retry import RetryConfig
from ticketflow.shutdown import ShutdownCoordinator, ShutdownResult
from ticketflow.topics import Role

logger = logging.getLogger(__name__)

BACKENDS = ("kafka", "memory")
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@dataclass
class ServiceConfig:
    """
    Settings for one participant process.

    Attributes:
        role: Participant role to run.
        backend: "kafka" or "memory".
        shutdown_timeout: Grace period in seconds for in-flight handlers.
        max_handler_retries: Handler retries before the exhausted action.
        on_exhausted: Pause the partition or dead-letter the envelope.
        idempotency_ttl: Seconds a completed reaction is remembered.
        log_level: Root log level name.
    """

    role: Role
    backend: str = "kafka"
    shutdown_timeout: float = 30.0
    max_handler_retries: int = 3
    on_exhausted: ExhaustedAction = ExhaustedAction.PAUSE
    idempotency_ttl: float = 3600.0
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if self.role is Role.EXTERNAL:
            raise ValueError("The external role has no participant process")
        if self.backend not in BACKENDS:
            raise ValueError(f"Invalid backend: {self.backend}. Must be one of: {BACKENDS}")
        if self.shutdown_timeout < 0:
            raise ValueError(f"shutdown_timeout must be >= 0, got {self.shutdown_timeout}")
        if self.max_handler_retries < 0:
            raise ValueError(f"max_handler_retries must be >= 0, got {self.max_handler_retries}")
        if not isinstance(logging.getLevelName(self.log_level.upper()), int):
            raise ValueError(f"Invalid log_level: {self.log_level}")

    @classmethod
    def from_env(
        cls,
        role: Role,
        environ: Mapping[str, str] | None = None,
        **overrides: Any,
    ) -> ServiceConfig:
        """
        Build settings from TICKETFLOW_* environment variables.

        Reads TICKETFLOW_BACKEND, TICKETFLOW_SHUTDOWN_TIMEOUT,
        TICKETFLOW_MAX_HANDLER_RETRIES, TICKETFLOW_ON_EXHAUSTED
        ("pause" or "dead_letter"), TICKETFLOW_IDEMPOTENCY_TTL and
        TICKETFLOW_LOG_LEVEL. Keyword arguments win over the environment.
        """
        env = os.environ if environ is None else environ
        values: dict[str, Any] = {"role": role}
        if "TICKETFLOW_BACKEND" in env:
            values["backend"] = env["TICKETFLOW_BACKEND"]
        if "TICKETFLOW_SHUTDOWN_TIMEOUT" in env:
            values["shutdown_timeout"] = float(env["TICKETFLOW_SHUTDOWN_TIMEOUT"])
        if "TICKETFLOW_MAX_HANDLER_RETRIES" in env:
            values["max_handler_retries"] = int(env["TICKETFLOW_MAX_HANDLER_RETRIES"])
        if "TICKETFLOW_ON_EXHAUSTED" in env:
            values["on_exhausted"] = ExhaustedAction(env["TICKETFLOW_ON_EXHAUSTED"])
        if "TICKETFLOW_IDEMPOTENCY_TTL" in env:
            values["idempotency_ttl"] = float(env["TICKETFLOW_IDEMPOTENCY_TTL"])
        if "TICKETFLOW_LOG_LEVEL" in env:
            values["log_level"] = env["TICKETFLOW_LOG_LEVEL"]
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    @property
    def delivery_policy(self) -> DeliveryPolicy:
        return DeliveryPolicy(
            retry=RetryConfig(max_retries=self.max_handler_retries),
            on_exhausted=self.on_exhausted,
        )


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging for a participant process."""
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)


def create_broker(
    config: ServiceConfig,
    environ: Mapping[str, str] | None = None,
) -> BrokerConnection:
    """Broker connection for the configured backend."""
    if config.backend == "memory":
        return InMemoryBroker()
    kafka_config = KafkaConfig.from_env(environ, shutdown_timeout=config.shutdown_timeout)
    return KafkaBroker(kafka_config)


async def run_service(
    role: Role,
    broker: BrokerConnection,
    *,
    config: ServiceConfig | None = None,
    store: IdempotencyStore | None = None,
    coordinator: ShutdownCoordinator | None = None,
    stimulus: Mapping[str, Any] | None = None,
    install_signal_handlers: bool = True,
) -> ShutdownResult | None:
    """
    Run one participant role against ``broker``.

    Args:
        role: Role to run.
        broker: Unconnected broker handle; connected and released here.
        config: Process settings. Defaults for ``role`` if None.
        store: Idempotency store for consuming roles.
        coordinator: Shutdown coordinator; a new one if None.
        stimulus: Arguments for an originating role
            (``passenger_id``/``name`` or ``trip_id``/``status``).
        install_signal_handlers: Register SIGINT/SIGTERM handlers.

    Returns:
        The shutdown result for consuming roles, None for originators.

    Raises:
        BrokerConnectionError: If the broker cannot be reached.
        DeliveryError: If an originator's stimulus could not be delivered.
    """
    config = config or ServiceConfig(role=role)

    async with broker:
        if role in ORIGINATORS:
            await _originate(role, broker, stimulus or {})
            return None
        if role not in CONSUMERS:
            raise ValueError(f"No participant for role '{role.value}'")

        participant = CONSUMERS[role]()
        runner = ParticipantRunner(
            participant,
            broker.publisher(role),
            store if store is not None else InMemoryIdempotencyStore(config.idempotency_ttl),
        )
        subscriber = broker.subscriber(policy=config.delivery_policy)
        coordinator = coordinator or ShutdownCoordinator(timeout=config.shutdown_timeout)
        if install_signal_handlers:
            coordinator.register_signals()

        logger.info(
            "Starting participant",
            extra={
                "role": role.value,
                "group_id": participant.group_id,
                "topics": list(participant.topics),
            },
        )
        running = asyncio.create_task(runner.run(subscriber), name=f"{role.value}-subscriber")
        shutdown = asyncio.create_task(coordinator.wait_for_shutdown())
        try:
            done, _ = await asyncio.wait({running, shutdown}, return_when=asyncio.FIRST_COMPLETED)
            if running in done:
                # Subscription ended on its own; surface why
                running.result()
                return None
            result = await coordinator.shutdown(subscriber.stop)
            if not running.done():
                running.cancel()
            await asyncio.gather(running, return_exceptions=True)
            return result
        finally:
            shutdown.cancel()
            if not running.done():
                running.cancel()
                await asyncio.gather(running, return_exceptions=True)
            if install_signal_handlers:
                coordinator.unregister_signals()
            logger.info("Participant stopped", extra={"role": role.value})


async def _originate(role: Role, broker: BrokerConnection, stimulus: Mapping[str, Any]) -> None:
    publisher = broker.publisher(role)
    if role is Role.PASSENGER:
        await PassengerService(publisher).register_passenger(
            stimulus.get("passenger_id", 1),
            stimulus.get("name", "Alice"),
        )
    elif role is Role.TRANSPORT:
        await TransportService(publisher).update_trip(
            stimulus.get("trip_id", 101),
            stimulus.get("status", "DELAYED"),
        )


__all__ = [
    "BACKENDS",
    "ServiceConfig",
    "configure_logging",
    "create_broker",
    "run_service",
]
