"""
Shared utilities for the entitlement sync client.

This package aggregates common building blocks consumed by the subsystem:

- config: Client configuration via pydantic-settings
- logging: Structured logging with identity correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- retry: Retry helpers and decorators
- circuit_breaker: Resilient external call protection
- test_helpers: Factories and in-memory fakes for tests

Any cross-cutting logic should live here to avoid import cycles across
subsystem packages. Do not import from entitlement_sync into shared/.
"""
