"""
Shared utilities for the admission layer.

- config: Settings via pydantic-settings
- logging: Structured logging with trace and message correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- circuit_breaker: Fast failure for counter store calls
- test_helpers: Clocks and store doubles for tests

Do not import from service packages into shared/.
"""
