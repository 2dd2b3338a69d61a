"""
Shared utilities for the Accounts Ledger.

This package aggregates common building blocks consumed by the ledger
service and its tooling:

- config: Service configuration via pydantic-settings
- logging: Structured logging with trace correlation
- metrics: Prometheus metrics helpers
- tracing: OpenTelemetry tracing config
- observability: Logging, metrics and tracing behind one manager
- errors: Canonical error types and responses
- retry: Retry decorators for optimistic-concurrency conflicts

Any cross-service logic should live here to avoid import cycles. Do not
import from service_* packages into shared/.
"""
