"""
Shared utilities for the metering gateway.

This package aggregates common building blocks consumed by the service:

- config: Service configuration via pydantic-settings
- logging: Structured logging with request correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- retry: Retry helpers with backoff
- circuit_breaker: Resilient upstream call protection

Do not import from service packages into shared/.
"""
