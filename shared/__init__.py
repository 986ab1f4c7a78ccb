"""
Shared utilities for the Plan Approvals core.

This package aggregates common building blocks consumed by the service:

- config: Service configuration via pydantic-settings
- logging: Structured logging with trace correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- retry: Retry decorators with capped exponential backoff
- circuit_breaker: Resilient external call protection
- test_helpers: In-memory fakes of the external systems for tests

Do not import from service_* packages into shared/, except in
test_helpers where the fakes must speak the service's data model.
"""
