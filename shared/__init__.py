"""
Shared utilities for the Heimdall door access core.

This package aggregates common building blocks consumed by the access
service:

- config: Service configuration via pydantic-settings
- logging: Structured logging with door/tag correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- retry: Retry decorators for the membership source
- circuit_breaker: Resilient external call protection
- locks: Per-record asyncio locks

Do not import from service_access into shared/.
"""
