"""
Counter store contract shared by every admission component.

The store is the only coordination point between gateway replicas. Every
mutation it offers is self-contained (an increment, an overwrite or a
server-side script), so retries and concurrent writers never need a
read-modify-write against a local copy.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, Optional

Clock = Callable[[], int]


def epoch_ms() -> int:
    """Wall clock in epoch milliseconds."""
    return int(time.time() * 1000)


@dataclass(frozen=True)
class WindowResult:
    """Outcome of one atomic sliding-window admission attempt."""
    admitted: bool
    count: int
    reset_at: int  # epoch ms when the oldest in-window entry expires


class CounterStore(ABC):
    """Atomic, key-expiring store reachable by every gateway instance.

    Implementations raise ``CounterStoreError`` for any infrastructure
    failure, including timeouts.
    """

    @abstractmethod
    async def start(self) -> None:
        """Open connections."""

    @abstractmethod
    async def stop(self) -> None:
        """Release connections."""

    @abstractmethod
    async def ping(self) -> bool:
        """Check that the store answers."""

    @abstractmethod
    async def sliding_window(self, key: str, limit: int, window_ms: int, now_ms: int) -> WindowResult:
        """Purge, count and (if below ``limit``) record one entry atomically."""

    @abstractmethod
    async def hincrby(self, key: str, field: str, amount: int, ttl_seconds: int) -> int:
        """Increment a hash field and refresh the key TTL in one step."""

    @abstractmethod
    async def hget(self, key: str, field: str) -> Optional[str]:
        """Read one hash field."""

    @abstractmethod
    async def hgetall(self, key: str) -> Dict[str, str]:
        """Read every field of a hash."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Read a string value."""

    @abstractmethod
    async def set(self, key: str, value: str, ttl_ms: int) -> None:
        """Overwrite a string value with an expiry."""
