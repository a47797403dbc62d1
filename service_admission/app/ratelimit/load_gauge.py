"""
System load gauge shared by the quota resolver and the usage tracker.
"""

from shared.errors import CounterStoreError
from shared.logging import get_logger

from ..store import CounterStore


class LoadGauge:
    """Single scalar in [0, 1] kept in the counter store with a short TTL.

    A missing or expired value reads as zero load.
    """

    def __init__(self, store: CounterStore, key: str = "system:load", ttl_seconds: int = 300):
        self.store = store
        self.key = key
        self.ttl_seconds = ttl_seconds
        self.logger = get_logger("admission.load_gauge")

    async def get(self) -> float:
        """Current load; zero when unset, unreadable or malformed."""
        try:
            raw = await self.store.get(self.key)
        except CounterStoreError as e:
            self.logger.warning("Failed to read system load, assuming idle", error=e.message)
            return 0.0

        if raw is None:
            return 0.0
        try:
            load = float(raw)
        except (TypeError, ValueError):
            self.logger.warning("Ignoring malformed system load value", raw=raw)
            return 0.0
        return min(max(load, 0.0), 1.0)

    async def set(self, load: float) -> None:
        """Write a new load value; raises ``CounterStoreError`` on store failure."""
        load = min(max(float(load), 0.0), 1.0)
        await self.store.set(self.key, repr(load), self.ttl_seconds * 1000)
