"""
Completed-reaction tracking for idempotent consumers.

Delivery is at-least-once, so a participant can see the same envelope more
than once. Before reacting it asks the store whether the envelope's
idempotency key was already completed; after every outbound event is
acknowledged it marks the key. A crash between publishing and marking
means the reaction runs again and republishes the same keys and content.
"""

from __future__ import annotations

import asyncio
import time
from collections import OrderedDict
from typing import Protocol, runtime_checkable


@runtime_checkable
class IdempotencyStore(Protocol):
    """
    Remembers which idempotency keys finished processing.

    Contract:
    - seen(key) -> True if mark(key) happened and has not expired
    - mark(key) -> records the key as completed
    """

    async def seen(self, key: str) -> bool: ...

    async def mark(self, key: str) -> None: ...


class InMemoryIdempotencyStore:
    """
    Process-local store with TTL expiry and a size bound.

    Keys are forgotten after ``ttl_seconds``; when more than ``max_entries``
    are held the oldest marks are evicted first. A forgotten key only means
    a late duplicate is reprocessed, which downstream consumers tolerate.

    Args:
        ttl_seconds: How long a completed key is remembered (None = forever).
        max_entries: Upper bound on remembered keys.
    """

    def __init__(self, ttl_seconds: float | None = 3600.0, max_entries: int = 100_000) -> None:
        if ttl_seconds is not None and ttl_seconds <= 0:
            raise ValueError(f"ttl_seconds must be > 0 or None, got {ttl_seconds}")
        if max_entries < 1:
            raise ValueError(f"max_entries must be >= 1, got {max_entries}")
        self._ttl = ttl_seconds
        self._max_entries = max_entries
        # key -> expires_at (monotonic seconds, inf when no ttl)
        self._keys: OrderedDict[str, float] = OrderedDict()
        self._mx = asyncio.Lock()

    def _now(self) -> float:
        return time.monotonic()

    async def seen(self, key: str) -> bool:
        async with self._mx:
            expires_at = self._keys.get(key)
            if expires_at is None:
                return False
            if self._now() >= expires_at:
                self._keys.pop(key, None)
                return False
            return True

    async def mark(self, key: str) -> None:
        async with self._mx:
            expires_at = float("inf") if self._ttl is None else self._now() + self._ttl
            self._keys[key] = expires_at
            self._keys.move_to_end(key)
            while len(self._keys) > self._max_entries:
                self._keys.popitem(last=False)

    def __len__(self) -> int:
        return len(self._keys)

    def clear(self) -> None:
        self._keys.clear()


__all__ = [
    "IdempotencyStore",
    "InMemoryIdempotencyStore",
]
