"""Factory pattern for creating rate limiter instances."""

from app.adapters.rate_limit.base import AbstractRateLimiter
from app.adapters.rate_limit.in_memory import InMemorySlidingWindowRateLimiter
from app.adapters.rate_limit.redis_store import RedisRateLimiter
from app.core.config import RateLimitSettings, settings
from app.core.errors import ValidationAppError


def create_rate_limiter(config: RateLimitSettings | None = None) -> AbstractRateLimiter:
    """Factory function to instantiate the configured counter store.

    Reads configuration from app.core.config.settings (Pydantic Settings)
    unless explicit settings are passed.

    Args:
        config: Optional rate limit settings; defaults to the global settings.

    Returns:
        AbstractRateLimiter: Configured limiter instance.

    Raises:
        ValidationAppError: If backend-specific requirements are not met.
    """
    cfg = config or settings.rate_limit
    backend = cfg.backend.lower()

    if backend == "memory":
        return InMemorySlidingWindowRateLimiter(
            stale_after_seconds=cfg.stale_after_seconds,
        )

    if backend == "redis":
        if not cfg.redis_url:
            raise ValidationAppError(
                code="rate_limit_missing_redis_url",
                message="Redis rate limit backend requires RATE_LIMIT_REDIS_URL",
                details={"backend": backend},
            )
        return RedisRateLimiter(
            redis_url=cfg.redis_url,
            timeout_seconds=cfg.store_timeout_seconds,
        )

    raise ValidationAppError(
        code="rate_limit_unknown_backend",
        message=(
            f"Unknown rate limit backend: '{backend}'. Supported backends: memory, redis"
        ),
        details={"backend": backend},
    )
