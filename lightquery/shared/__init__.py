"""
Shared utilities for lightquery.

This package aggregates building blocks consumed by the engine:

- config: Default query options via pydantic-settings
- logging: Structured logging with query-key correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- retry: Retry decorator and runner for async operations

Do not import from lightquery.core into shared/.
"""
