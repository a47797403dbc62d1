"""
In-process counter store.

Implements the same contract as the Redis store for single-process runs and
tests. Atomicity comes from one ``asyncio.Lock`` around every mutation, so it
only coordinates callers that share an event loop.
"""

import asyncio
import bisect
from typing import Dict, List, Optional

from shared.logging import get_logger

from .base import Clock, CounterStore, WindowResult, epoch_ms

# Expired keys that are never read again are dropped at most this often
SWEEP_INTERVAL_MS = 60_000


class InMemoryCounterStore(CounterStore):
    """Counter store held in process memory.

    Keys expire lazily when read, and writes sweep out every expired key
    once per ``sweep_interval_ms``.
    """

    def __init__(self, clock: Clock = epoch_ms, sweep_interval_ms: int = SWEEP_INTERVAL_MS):
        self.clock = clock
        self.sweep_interval_ms = sweep_interval_ms
        self._next_sweep = clock() + sweep_interval_ms
        self.logger = get_logger("admission.store.memory")
        self._lock = asyncio.Lock()
        self._windows: Dict[str, List[int]] = {}
        self._hashes: Dict[str, Dict[str, int]] = {}
        self._values: Dict[str, str] = {}
        self._expiry: Dict[str, int] = {}

    async def start(self) -> None:
        self.logger.info("In-memory counter store started")

    async def stop(self) -> None:
        async with self._lock:
            self._windows.clear()
            self._hashes.clear()
            self._values.clear()
            self._expiry.clear()

    async def ping(self) -> bool:
        return True

    def _expire(self, key: str) -> None:
        expires_at = self._expiry.get(key)
        if expires_at is not None and self.clock() >= expires_at:
            self._expiry.pop(key, None)
            self._windows.pop(key, None)
            self._hashes.pop(key, None)
            self._values.pop(key, None)

    def _sweep(self) -> None:
        now = self.clock()
        if now < self._next_sweep:
            return
        self._next_sweep = now + self.sweep_interval_ms
        expired = [key for key, expires_at in self._expiry.items() if now >= expires_at]
        for key in expired:
            self._expire(key)
        if expired:
            self.logger.debug("Swept expired keys", count=len(expired))

    def key_count(self) -> int:
        """Keys currently held, including expired ones not yet swept."""
        return len(self._expiry)

    async def sliding_window(self, key: str, limit: int, window_ms: int, now_ms: int) -> WindowResult:
        async with self._lock:
            self._sweep()
            self._expire(key)
            entries = self._windows.setdefault(key, [])

            # Drop entries older than the window; age == window still counts
            cutoff = bisect.bisect_left(entries, now_ms - window_ms)
            del entries[:cutoff]

            admitted = len(entries) < limit
            if admitted:
                bisect.insort(entries, now_ms)
            self._expiry[key] = now_ms + window_ms + 1000

            reset_at = entries[0] + window_ms if entries else now_ms + window_ms
            return WindowResult(admitted=admitted, count=len(entries), reset_at=reset_at)

    async def hincrby(self, key: str, field: str, amount: int, ttl_seconds: int) -> int:
        async with self._lock:
            self._sweep()
            self._expire(key)
            fields = self._hashes.setdefault(key, {})
            fields[field] = fields.get(field, 0) + amount
            self._expiry[key] = self.clock() + ttl_seconds * 1000
            return fields[field]

    async def hget(self, key: str, field: str) -> Optional[str]:
        async with self._lock:
            self._expire(key)
            value = self._hashes.get(key, {}).get(field)
            return str(value) if value is not None else None

    async def hgetall(self, key: str) -> Dict[str, str]:
        async with self._lock:
            self._expire(key)
            return {name: str(value) for name, value in self._hashes.get(key, {}).items()}

    async def get(self, key: str) -> Optional[str]:
        async with self._lock:
            self._expire(key)
            return self._values.get(key)

    async def set(self, key: str, value: str, ttl_ms: int) -> None:
        async with self._lock:
            self._sweep()
            self._values[key] = value
            self._expiry[key] = self.clock() + ttl_ms
