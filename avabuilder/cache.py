"""
AvaBuilder Agent Cache

Bounded-lifetime cache used by every upstream-data accessor.

Expiry is checked lazily on every read, so correctness never depends on the
background sweep; the sweep only bounds memory for keys set once and never
read again.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

V = TypeVar("V")


@dataclass(slots=True)
class CacheEntry(Generic[V]):
    """Cached value and its absolute expiry time."""

    value: V
    expires_at: float


class TTLCache(Generic[V]):
    """
    Mapping with per-entry expiry.

    Each instance has one fixed TTL; logical caches with different
    lifetimes (prices vs. aggregates) are separate instances.
    Last write wins; there are no cross-entry invariants.
    """

    def __init__(
        self,
        ttl_seconds: float,
        *,
        name: str = "cache",
        clock: Callable[[], float] = time.time,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.ttl_seconds = ttl_seconds
        self.name = name
        self._clock = clock
        self._entries: dict[str, CacheEntry[V]] = {}
        self._sweep_task: asyncio.Task[None] | None = None
        self._running = False

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> Optional[V]:
        """Return the cached value, or None if absent or expired."""
        entry = self._entries.get(key)
        if entry is None:
            return None

        if entry.expires_at <= self._clock():
            self._entries.pop(key, None)
            return None

        return entry.value

    def set(self, key: str, value: V) -> None:
        """Store a value, resetting its expiry to now + ttl."""
        self._entries[key] = CacheEntry(value=value, expires_at=self._clock() + self.ttl_seconds)

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def sweep(self) -> int:
        """
        Remove expired entries.

        Returns number of entries removed.
        """
        now = self._clock()
        expired = [k for k, e in self._entries.items() if e.expires_at <= now]

        for key in expired:
            self._entries.pop(key, None)

        return len(expired)

    async def start_sweep(self, interval_seconds: float) -> None:
        """Start the periodic sweep task."""
        if self._running:
            return

        self._running = True
        self._sweep_task = asyncio.create_task(self._sweep_loop(interval_seconds))

    async def stop(self) -> None:
        """Stop the periodic sweep."""
        self._running = False
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None

    async def _sweep_loop(self, interval_seconds: float) -> None:
        while self._running:
            await asyncio.sleep(interval_seconds)
            removed = self.sweep()
            if removed:
                logger.debug(f"Swept {removed} expired entries from {self.name}")
