"""Rate limiting adapters.

This package provides a small abstraction layer so the service can start with
an in-memory limiter and later migrate to Redis or another shared store
without changing the API layer.
"""

from throttle.adapters.rate_limit.base import (
    DEFAULT_CATEGORY,
    AbstractRateLimiter,
    RateLimitConfig,
    RateLimitResult,
    RateLimitStats,
)
from throttle.adapters.rate_limit.in_memory import DEFAULT_LIMITS, InMemoryFixedWindowRateLimiter

__all__ = [
    "DEFAULT_CATEGORY",
    "DEFAULT_LIMITS",
    "AbstractRateLimiter",
    "InMemoryFixedWindowRateLimiter",
    "RateLimitConfig",
    "RateLimitResult",
    "RateLimitStats",
]
