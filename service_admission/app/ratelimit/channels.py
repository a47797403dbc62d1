"""
Flat per-channel edge limits applied before any per-user logic.
"""

from typing import Dict, Optional

from shared.errors import CounterStoreError, ValidationError
from shared.logging import get_logger
from shared.metrics import MetricsCollector

from ..models import ChannelDecision, RateLimitKey, Scope, retry_after_seconds
from ..store import Clock, epoch_ms
from .sliding_window import SlidingWindowLimiter


class ChannelPolicy:
    """Fixed sliding-window policy for one ingress channel."""

    def __init__(self, name: str, limit: int, window_seconds: int):
        self.name = name
        self.limit = limit
        self.window_ms = window_seconds * 1000

    def __repr__(self):
        return f"ChannelPolicy({self.name!r}, limit={self.limit}, window_ms={self.window_ms})"


class ChannelLimiter:
    """Edge limiter keyed by ``(channel, identifier)``.

    Several identifiers may be checked together (for instance the chat and
    the sender of one webhook call); the call passes only if every one of
    them does. Each identifier's window is charged independently.
    """

    def __init__(self,
                 limiter: SlidingWindowLimiter,
                 channel_limits: Dict[str, Dict[str, int]],
                 metrics: Optional[MetricsCollector] = None,
                 clock: Clock = epoch_ms):
        self.limiter = limiter
        self.metrics = metrics
        self.clock = clock
        self.logger = get_logger("admission.channels")
        self.policies = {
            name: ChannelPolicy(name, int(settings["limit"]), int(settings["window_seconds"]))
            for name, settings in channel_limits.items()
        }

    def policy(self, channel: str) -> ChannelPolicy:
        try:
            return self.policies[channel]
        except KeyError:
            raise ValidationError(
                f"Unknown channel: {channel!r}",
                {"field": "channel", "value": channel, "allowed": sorted(self.policies)}
            )

    async def check(self, channel: str, *identifiers: str, now_ms: Optional[int] = None) -> ChannelDecision:
        policy = self.policy(channel)
        idents = [ident for ident in identifiers if ident]
        if not idents:
            raise ValidationError("At least one identifier is required", {"field": "identifiers"})
        now = now_ms if now_ms is not None else self.clock()

        try:
            decisions = [
                await self.limiter.admit(
                    RateLimitKey(scope=Scope.CHANNEL, identifier=f"{channel}:{ident}"),
                    policy.limit,
                    policy.window_ms,
                    now
                )
                for ident in idents
            ]
        except CounterStoreError as e:
            self.logger.warning("Edge rate limit check failed, failing open", channel=channel, error=e.message)
            if self.metrics:
                self.metrics.increment_counter("store_failures_total", component="channel")
            return ChannelDecision(
                channel=channel,
                success=True,
                remaining=policy.limit,
                reset_time=now + policy.window_ms,
                fail_open=True
            )

        rejected = [d for d in decisions if not d.admitted]
        if rejected:
            reset_time = max(d.reset_at for d in rejected)
            self.logger.info("Edge rate limit exceeded", channel=channel, identifiers=idents)
            if self.metrics:
                self.metrics.increment_counter("channel_rejections_total", channel=channel)
            return ChannelDecision(
                channel=channel,
                success=False,
                remaining=0,
                reset_time=reset_time,
                retry_after_seconds=retry_after_seconds(reset_time, now)
            )

        return ChannelDecision(
            channel=channel,
            success=True,
            remaining=min(d.remaining for d in decisions),
            reset_time=min(d.reset_at for d in decisions)
        )
