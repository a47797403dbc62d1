"""
Tiered, load-adaptive quota resolution for parse and reply calls.
"""

import math
from typing import Dict, Optional, Union

from shared.config import AdmissionConfig
from shared.errors import CounterStoreError, ValidationError
from shared.logging import get_logger
from shared.metrics import MetricsCollector

from ..models import (
    AdmissionReason, AdmissionResult, Operation, Priority, RateLimitKey, Scope, Tier,
    parse_enum, require_identifier,
)
from ..store import Clock, epoch_ms
from .load_gauge import LoadGauge
from .sliding_window import SlidingWindowLimiter

SYSTEM_BUSY_MESSAGE = "System temporarily busy. Please try again in a few minutes."
FAIL_OPEN_MESSAGE = "Rate limit check failed, allowing request"
QUOTA_MESSAGES = {
    Operation.PARSING: "You've hit your rate limit. Try using simple commands like 'lihat tugas' or upgrade your plan.",
    Operation.REPLY: "You've hit your rate limit. Please wait a moment before sending another message.",
}


class TierTable:
    """Base per-window limits by tier and operation."""

    def __init__(self, limits: Dict[str, Dict[str, int]]):
        self._limits: Dict[Tier, Dict[Operation, int]] = {}
        for tier_name, operations in limits.items():
            tier = parse_enum(Tier, tier_name, "tier")
            self._limits[tier] = {
                parse_enum(Operation, op_name, "operation"): int(limit)
                for op_name, limit in operations.items()
            }

    def base_limit(self, tier: Tier, operation: Operation) -> int:
        try:
            return self._limits[tier][operation]
        except KeyError:
            raise ValidationError(
                f"No quota configured for {tier.value}/{operation.value}",
                {"tier": tier.value, "operation": operation.value}
            )


class QuotaResolver:
    """Computes effective per-user limits and makes admission decisions.

    The effective limit is the tier base, halved under high system load,
    then scaled by priority; each step floors to an integer. The global
    window is checked before the per-user one. Any counter store failure
    admits the call.
    """

    def __init__(self,
                 limiter: SlidingWindowLimiter,
                 gauge: LoadGauge,
                 config: AdmissionConfig,
                 metrics: Optional[MetricsCollector] = None,
                 clock: Clock = epoch_ms):
        self.limiter = limiter
        self.gauge = gauge
        self.config = config
        self.metrics = metrics
        self.clock = clock
        self.tiers = TierTable(config.tier_limits)
        self.window_ms = config.window_seconds * 1000
        self.priority_multipliers = {
            parse_enum(Priority, name, "priority"): float(factor)
            for name, factor in config.priority_multipliers.items()
        }
        self.logger = get_logger("admission.quota")

    def effective_limit(self, operation: Operation, tier: Tier, priority: Priority, load: float) -> int:
        """Apply the fixed tier -> load -> priority sequence."""
        limit = self.tiers.base_limit(tier, operation)

        if load > self.config.high_load_threshold:
            adjusted = math.floor(limit * self.config.high_load_factor)
            self.logger.info(
                "High system load, reducing limit",
                load=load,
                base_limit=limit,
                adjusted_limit=adjusted
            )
            limit = adjusted

        factor = self.priority_multipliers.get(priority, 1.0)
        if factor != 1.0:
            limit = math.floor(limit * factor)

        return limit

    async def resolve(self,
                      user_id: str,
                      operation: Union[Operation, str],
                      tier: Union[Tier, str] = Tier.FREE,
                      priority: Union[Priority, str] = Priority.NORMAL) -> int:
        """Effective limit for this caller under the current system load."""
        require_identifier(user_id)
        operation = parse_enum(Operation, operation, "operation")
        tier = parse_enum(Tier, tier, "tier")
        priority = parse_enum(Priority, priority, "priority")

        load = await self.gauge.get()
        return self.effective_limit(operation, tier, priority, load)

    async def check_admission(self,
                              user_id: str,
                              operation: Union[Operation, str],
                              tier: Union[Tier, str] = Tier.FREE,
                              priority: Union[Priority, str] = Priority.NORMAL,
                              now_ms: Optional[int] = None) -> AdmissionResult:
        """Decide whether one downstream call may proceed.

        Raises ``ValidationError`` for unknown operation, tier or priority;
        every other outcome is returned as an ``AdmissionResult``.
        """
        require_identifier(user_id)
        operation = parse_enum(Operation, operation, "operation")
        tier = parse_enum(Tier, tier, "tier")
        priority = parse_enum(Priority, priority, "priority")
        now = now_ms if now_ms is not None else self.clock()

        try:
            result = await self._check(user_id, operation, tier, priority, now)
        except CounterStoreError as e:
            self.logger.warning(
                "Rate limit check failed, failing open",
                user_id=user_id,
                operation=operation.value,
                error=e.message
            )
            self._count_store_failure()
            result = AdmissionResult(
                success=True,
                remaining=self.config.fail_open_remaining,
                reset_time=now + self.window_ms,
                message=FAIL_OPEN_MESSAGE,
                reason=AdmissionReason.FAIL_OPEN
            )

        if self.metrics:
            self.metrics.increment_counter(
                "admission_decisions_total",
                operation=operation.value,
                tier=tier.value,
                outcome=result.reason.value
            )
        return result

    async def _check(self, user_id: str, operation: Operation, tier: Tier,
                     priority: Priority, now: int) -> AdmissionResult:
        global_decision = await self.limiter.admit(
            RateLimitKey.global_key(), self.config.global_limit, self.window_ms, now
        )
        if not global_decision.admitted:
            self.logger.warning("Global rate limit exceeded", limit=self.config.global_limit)
            return AdmissionResult(
                success=False,
                remaining=0,
                reset_time=global_decision.reset_at,
                message=SYSTEM_BUSY_MESSAGE,
                reason=AdmissionReason.SYSTEM_BUSY,
                limit=self.config.global_limit
            )

        limit = self.effective_limit(operation, tier, priority, await self.gauge.get())
        key = RateLimitKey(scope=Scope(operation.value), identifier=user_id, tier=tier)
        decision = await self.limiter.admit(key, limit, self.window_ms, now)

        if not decision.admitted:
            self.logger.info(
                "User hit rate limit",
                user_id=user_id,
                operation=operation.value,
                tier=tier.value,
                limit=limit
            )
            return AdmissionResult(
                success=False,
                remaining=decision.remaining,
                reset_time=decision.reset_at,
                message=QUOTA_MESSAGES[operation],
                reason=AdmissionReason.QUOTA_EXCEEDED,
                limit=limit
            )

        return AdmissionResult(
            success=True,
            remaining=decision.remaining,
            reset_time=decision.reset_at,
            reason=AdmissionReason.ADMITTED,
            limit=limit
        )

    def _count_store_failure(self):
        if self.metrics:
            self.metrics.increment_counter("store_failures_total", component="quota")
