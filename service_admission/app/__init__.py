"""
Admission and shaping layer in front of the LLM parse and reply calls.

Every inbound chat message passes through it before any metered call:
- Duplicate suppression: identical repeats inside a short window
- Debounce: only the last message of a burst goes downstream
- Quota: tiered, load-adaptive per-user limits under a global ceiling
- Edge limits: flat per-channel budgets for webhooks and internal APIs

Structure:
- app.gateway: AdmissionGateway facade and Redis-backed factory.
- app.store: Counter store contract, Redis and in-process implementations.
- app.ratelimit: Sliding window, load gauge, quota resolver, channel limits.
- app.usage: Daily usage counters and recommendations.
- app.shaping: Debouncer and duplicate detector.
"""

from .gateway import AdmissionGateway, create_gateway

__all__ = ["AdmissionGateway", "create_gateway"]
