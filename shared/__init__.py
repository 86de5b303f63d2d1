"""
Shared utilities for the cache flush service.

This package aggregates the building blocks the service is assembled from:

- config: Service configuration via pydantic-settings
- logging: Structured logging with trace correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- retry: Retry helpers for outbound calls
- base_service: FastAPI application scaffolding
- test_helpers: Fakes and factories for tests (test-only)

Runtime modules in shared/ must not import from service packages.
"""
