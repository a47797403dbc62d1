"""
Usage analytics package: daily counters, load derivation, recommendations.
"""

from .tracker import UsageTracker, usage_day

__all__ = ["UsageTracker", "usage_day"]
