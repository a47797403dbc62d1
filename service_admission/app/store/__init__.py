"""
Counter store package.

Holds the store contract and its Redis and in-process implementations.
"""

from .base import Clock, CounterStore, WindowResult, epoch_ms
from .memory_store import InMemoryCounterStore
from .redis_store import RedisCounterStore

__all__ = [
    "Clock",
    "CounterStore",
    "WindowResult",
    "epoch_ms",
    "InMemoryCounterStore",
    "RedisCounterStore",
]
