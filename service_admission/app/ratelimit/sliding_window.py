"""
Sliding-window limiter over the shared counter store.
"""

from shared.logging import get_logger

from ..models import RateLimitKey, WindowDecision
from ..store import CounterStore


class SlidingWindowLimiter:
    """Admits a call iff fewer than ``limit`` calls were admitted in the trailing window.

    The purge, count and record happen in a single store operation, so
    concurrent gateway replicas incrementing the same key never overshoot.
    Store failures propagate as ``CounterStoreError``; choosing between
    fail-open and fail-closed is the caller's business.
    """

    def __init__(self, store: CounterStore, prefix: str = "ratelimit", tier_scoped: bool = False):
        self.store = store
        self.prefix = prefix
        self.tier_scoped = tier_scoped
        self.logger = get_logger("admission.sliding_window")

    def make_key(self, key: RateLimitKey) -> str:
        return key.storage_key(self.prefix, tier_scoped=self.tier_scoped)

    async def admit(self, key: RateLimitKey, limit: int, window_ms: int, now_ms: int) -> WindowDecision:
        storage_key = self.make_key(key)
        result = await self.store.sliding_window(storage_key, limit, window_ms, now_ms)

        remaining = max(0, limit - result.count) if result.admitted else 0
        if not result.admitted:
            self.logger.debug(
                "Sliding window full",
                key=storage_key,
                count=result.count,
                limit=limit,
                reset_at=result.reset_at
            )

        return WindowDecision(
            admitted=result.admitted,
            remaining=remaining,
            reset_at=result.reset_at,
            limit=limit
        )
