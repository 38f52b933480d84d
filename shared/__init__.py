"""
Shared utilities for the hybrid RBAC/ABAC policy resolver.

This package aggregates common building blocks consumed by the decision core:

- config: Engine configuration via pydantic-settings
- logging: Structured logging with trace correlation
- metrics: Prometheus metrics helpers
- tracing: OpenTelemetry span helpers
- errors: Canonical error types and responses

Any cross-component logic should live here to avoid import cycles. Do not
import from policy_resolver into shared/.
"""
