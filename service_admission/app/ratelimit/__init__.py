"""
Rate limiting package for the admission service.

Holds the sliding-window limiter, the system load gauge, the tiered and
load-adaptive quota resolver, and the flat per-channel edge limits.
"""

from .channels import ChannelLimiter, ChannelPolicy
from .load_gauge import LoadGauge
from .quota import QuotaResolver, TierTable
from .sliding_window import SlidingWindowLimiter

__all__ = [
    "ChannelLimiter",
    "ChannelPolicy",
    "LoadGauge",
    "QuotaResolver",
    "TierTable",
    "SlidingWindowLimiter",
]
