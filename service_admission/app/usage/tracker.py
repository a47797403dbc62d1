"""
Usage analytics for completed downstream calls.

Counters here are advisory. They feed the system load gauge and the
per-user recommendations, never enforcement.
"""

import math
from datetime import datetime, timezone
from typing import Optional, Union

from shared.config import AdmissionConfig
from shared.errors import CounterStoreError
from shared.logging import get_logger
from shared.metrics import MetricsCollector

from ..models import (
    Operation, PercentUsed, Tier, UsageCounts, UsageSummary, parse_enum, require_identifier,
)
from ..ratelimit.load_gauge import LoadGauge
from ..ratelimit.quota import TierTable
from ..store import Clock, CounterStore, epoch_ms

HEAVY_USE_RECOMMENDATION = (
    "You're using a lot of AI parsing today. "
    "Consider using simple commands like 'lihat tugas' to save quota."
)
UPGRADE_RECOMMENDATION = "Consider upgrading to Premium for higher API limits."

DAY_SECONDS = 24 * 60 * 60


def usage_day(now_ms: int) -> str:
    """UTC calendar day (YYYY-MM-DD) for a timestamp."""
    return datetime.fromtimestamp(now_ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d")


def percent_of(count: int, limit: int) -> int:
    """Whole percent of ``limit`` used, halves rounding up (161 of 200 -> 81)."""
    if limit <= 0:
        return 0
    return math.floor(count * 100 / limit + 0.5)


class UsageTracker:
    """Records per-user and system-wide daily usage and derives the system load."""

    def __init__(self,
                 store: CounterStore,
                 gauge: LoadGauge,
                 config: AdmissionConfig,
                 metrics: Optional[MetricsCollector] = None,
                 clock: Clock = epoch_ms):
        self.store = store
        self.gauge = gauge
        self.config = config
        self.metrics = metrics
        self.clock = clock
        self.tiers = TierTable(config.tier_limits)
        self.logger = get_logger("admission.usage")

    @staticmethod
    def user_key(user_id: str, day: str) -> str:
        return f"usage:{user_id}:{day}"

    @staticmethod
    def system_key(day: str) -> str:
        return f"system:usage:{day}"

    async def record_usage(self,
                           user_id: str,
                           operation: Union[Operation, str],
                           tokens_used: int,
                           success: bool,
                           tier: Union[Tier, str] = Tier.FREE,
                           now_ms: Optional[int] = None) -> None:
        """Count one completed call and refresh the load gauge.

        Store failures are logged and swallowed; analytics never break the
        request path.
        """
        require_identifier(user_id)
        operation = parse_enum(Operation, operation, "operation")
        tier = parse_enum(Tier, tier, "tier")
        tokens = max(0, int(tokens_used))
        day = usage_day(now_ms if now_ms is not None else self.clock())

        if self.metrics:
            self.metrics.increment_counter("usage_tokens_total", tokens, operation=operation.value, tier=tier.value)

        user_key = self.user_key(user_id, day)
        user_ttl = self.config.usage_ttl_days * DAY_SECONDS
        system_key = self.system_key(day)
        system_ttl = self.config.system_usage_ttl_days * DAY_SECONDS

        try:
            await self.store.hincrby(user_key, f"{operation.value}:count", 1, user_ttl)
            await self.store.hincrby(user_key, f"{operation.value}:tokens", tokens, user_ttl)
            if success:
                await self.store.hincrby(user_key, f"{operation.value}:success", 1, user_ttl)

            await self.store.hincrby(system_key, f"total:{operation.value}:count", 1, system_ttl)
            system_tokens = await self.store.hincrby(
                system_key, f"total:{operation.value}:tokens", tokens, system_ttl
            )

            # Only parse calls drive the load signal
            if operation != Operation.PARSING:
                system_tokens = int(await self.store.hget(system_key, "total:parsing:tokens") or 0)

            load = min(system_tokens / self.config.load_token_threshold, 1.0)
            await self.gauge.set(load)
        except CounterStoreError as e:
            self.logger.error("Failed to track usage", user_id=user_id, operation=operation.value, error=e.message)
            if self.metrics:
                self.metrics.increment_counter("store_failures_total", component="usage")
            return

        if self.metrics:
            self.metrics.set_gauge("system_load", load)
        self.logger.debug(
            "Usage recorded",
            user_id=user_id,
            operation=operation.value,
            tokens=tokens,
            success=success,
            system_load=load
        )

    async def summarize(self,
                        user_id: str,
                        tier: Union[Tier, str] = Tier.FREE,
                        now_ms: Optional[int] = None) -> UsageSummary:
        """Today's counts against the tier's hourly base limits, with advice."""
        require_identifier(user_id)
        tier = parse_enum(Tier, tier, "tier")
        day = usage_day(now_ms if now_ms is not None else self.clock())

        try:
            fields = await self.store.hgetall(self.user_key(user_id, day))
        except CounterStoreError as e:
            self.logger.error("Failed to get usage summary", user_id=user_id, error=e.message)
            return UsageSummary(tier=tier)

        def field(name: str) -> int:
            try:
                return int(fields.get(name) or 0)
            except ValueError:
                return 0

        parsing_count = field("parsing:count")
        reply_count = field("reply:count")
        parsing_limit = self.tiers.base_limit(tier, Operation.PARSING)
        reply_limit = self.tiers.base_limit(tier, Operation.REPLY)

        # Thresholds apply to the exact ratio; only the reported values are rounded
        recommendation = None
        if parsing_count * 100 > 80 * parsing_limit:
            recommendation = HEAVY_USE_RECOMMENDATION
        elif parsing_count * 100 > 50 * parsing_limit and tier == Tier.FREE:
            recommendation = UPGRADE_RECOMMENDATION

        return UsageSummary(
            today=UsageCounts(
                parsing=parsing_count,
                reply=reply_count,
                tokens=field("parsing:tokens") + field("reply:tokens")
            ),
            tier=tier,
            percent_used=PercentUsed(
                parsing=percent_of(parsing_count, parsing_limit),
                reply=percent_of(reply_count, reply_limit)
            ),
            recommendation=recommendation
        )
