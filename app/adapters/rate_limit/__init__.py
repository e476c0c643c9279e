"""Rate limiting adapters.

This package provides a small abstraction layer so a single instance can
count requests in process while a multi-instance deployment shares counters
through Redis, without changing the HTTP layer.
"""

from app.adapters.rate_limit.base import AbstractRateLimiter, RateLimitResult
from app.adapters.rate_limit.in_memory import InMemorySlidingWindowRateLimiter
from app.adapters.rate_limit.redis_store import RedisRateLimiter

__all__ = [
    "AbstractRateLimiter",
    "InMemorySlidingWindowRateLimiter",
    "RateLimitResult",
    "RedisRateLimiter",
]
