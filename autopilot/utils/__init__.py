"""Resilience primitives and shared utilities.

Modules:
    retry: Retry policy with exponential backoff and jitter
    circuit_breaker: Closed / Open / Half-Open circuit breaker
    rate_limiter: Token bucket rate limiters (global and keyed)
    caching: TTL and LRU cache with statistics
    logging_config: structlog configuration
"""
