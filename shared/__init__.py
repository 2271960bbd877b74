"""
Shared utilities for the invoice dispatch service.

This package aggregates common building blocks:

- config: Service configuration via pydantic-settings
- logging: Structured logging with run/item correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- retry: Retry decorator and result-driven retry loop
- circuit_breaker: Sliding-window circuit breaker
- rate_limiter: Concurrency and per-period call budget
- base_service: FastAPI service shell

Do not import from service_* packages into shared/.
"""
