"""
Shared pytest fixtures for the ticketflow tests.

This module provides:
- In-memory broker fixtures (broker, dead_letters)
- Zero-delay delivery policies (fast_retry, pause_policy, dead_letter_policy)
- A subscription harness that runs subscribers as tasks and always stops them
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator, Sequence

import pytest
import pytest_asyncio

from ticketflow.bus.dead_letter import InMemoryDeadLetterSink
from ticketflow.bus.delivery import DeliveryPolicy, EnvelopeHandler, ExhaustedAction
from ticketflow.bus.interface import Subscriber
from ticketflow.bus.memory import InMemoryBroker
from ticketflow.retry import RetryConfig

# ============================================================================
# Broker Fixtures
# ============================================================================


@pytest.fixture
def dead_letters() -> InMemoryDeadLetterSink:
    return InMemoryDeadLetterSink()


@pytest_asyncio.fixture
async def broker(dead_letters: InMemoryDeadLetterSink) -> AsyncGenerator[InMemoryBroker, None]:
    """Connected in-memory broker with three partitions per topic."""
    broker = InMemoryBroker(num_partitions=3, dead_letters=dead_letters, poll_interval=0.01)
    async with broker:
        yield broker


# ============================================================================
# Delivery Policies
# ============================================================================


@pytest.fixture
def fast_retry() -> RetryConfig:
    """Two retries without any delay."""
    return RetryConfig(max_retries=2, initial_delay=0.0, max_delay=0.0, jitter=0.0)


@pytest.fixture
def pause_policy(fast_retry: RetryConfig) -> DeliveryPolicy:
    return DeliveryPolicy(retry=fast_retry, on_exhausted=ExhaustedAction.PAUSE)


@pytest.fixture
def dead_letter_policy(fast_retry: RetryConfig) -> DeliveryPolicy:
    return DeliveryPolicy(retry=fast_retry, on_exhausted=ExhaustedAction.DEAD_LETTER)


# ============================================================================
# Subscription Harness
# ============================================================================


class SubscriptionHarness:
    """Runs subscribers in background tasks and tears them down."""

    def __init__(self) -> None:
        self._running: list[tuple[Subscriber, asyncio.Task[None]]] = []

    def start(
        self,
        subscriber: Subscriber,
        group_id: str,
        topics: Sequence[str],
        handler: EnvelopeHandler,
    ) -> asyncio.Task[None]:
        task = asyncio.create_task(subscriber.subscribe(group_id, topics, handler))
        self._running.append((subscriber, task))
        return task

    async def stop_all(self, timeout: float = 1.0) -> None:
        for subscriber, task in self._running:
            if not task.done():
                await subscriber.stop(timeout=timeout)
                task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        self._running.clear()


@pytest_asyncio.fixture
async def subscriptions() -> AsyncGenerator[SubscriptionHarness, None]:
    harness = SubscriptionHarness()
    yield harness
    await harness.stop_all()
