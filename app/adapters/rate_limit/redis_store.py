"""Redis-backed shared counter rate limiter.

Each bucket key is a single integer counter. The first ``INCR`` of a window
attaches an ``EXPIRE`` equal to the window, so the count resets when Redis
drops the key. ``INCR`` then ``EXPIRE`` are two commands, not a transaction:
a key can briefly exist without a TTL if the process dies in between.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from typing import Any, Callable

from redis.asyncio import Redis
from redis.exceptions import RedisError

from app.adapters.rate_limit.base import (
    AbstractRateLimiter,
    RateLimitResult,
    validate_consume_args,
)
from app.core.errors import RateLimitStoreError

logger = logging.getLogger(__name__)

_STORE_ERRORS = (RedisError, OSError, asyncio.TimeoutError)


class RedisRateLimiter(AbstractRateLimiter):
    """Rate limiter sharing counters across instances through Redis."""

    backend_name = "redis"

    def __init__(
        self,
        *,
        redis_url: str | None = None,
        client: Any | None = None,
        timeout_seconds: float = 0.5,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the Redis limiter.

        Args:
            redis_url: Connection URL (e.g. ``redis://localhost:6379/0``).
            client: Pre-built async client exposing ``incr``, ``expire``,
                ``ttl``, ``decr`` and ``delete``; takes precedence over ``redis_url``.
            timeout_seconds: Socket and connect timeout for each command.
            clock: Time source function returning UNIX time in seconds.

        Raises:
            ValueError: If neither a client nor a URL is provided.
        """
        if client is None:
            if not redis_url:
                raise ValueError("redis_url is required when no client is provided")
            # Connection is lazy; nothing hits the network until the first command.
            client = Redis.from_url(
                redis_url,
                decode_responses=True,
                socket_timeout=timeout_seconds,
                socket_connect_timeout=timeout_seconds,
            )
        self._client = client
        self._clock = clock

    async def consume(
        self,
        key: str,
        *,
        limit: int,
        window_seconds: float,
    ) -> RateLimitResult:
        """Increment the shared counter for ``key`` and compare it to ``limit``.

        Raises:
            ValueError: If key, limit or window are invalid.
            RateLimitStoreError: If Redis is unreachable or errors.
        """
        validate_consume_args(key, limit, window_seconds)
        window = max(1, math.ceil(window_seconds))
        now = self._clock()

        try:
            count = int(await self._client.incr(key))
            if count == 1:
                await self._client.expire(key, window)
            ttl = window if count == 1 else int(await self._client.ttl(key))
            if ttl == -1:
                # A previous writer died between INCR and EXPIRE.
                await self._client.expire(key, window)
        except _STORE_ERRORS as exc:
            raise RateLimitStoreError(
                code="rate_limit_store_unavailable",
                message=f"Rate limit store error: {exc}",
                details={"backend": self.backend_name, "operation": "consume"},
            ) from exc

        # -1 was just repaired, -2 means the key expired meanwhile
        if ttl <= 0:
            ttl = window

        if count > limit:
            retry_after = ttl
            return RateLimitResult(
                allowed=False,
                limit=limit,
                remaining=0,
                reset_at=int(math.ceil(now + retry_after)),
                retry_after_seconds=retry_after,
            )

        return RateLimitResult(
            allowed=True,
            limit=limit,
            remaining=max(0, limit - count),
            reset_at=int(math.ceil(now + ttl)),
            stamp=now,
        )

    async def release(self, key: str, stamp: float | None) -> None:
        """Decrement the counter for ``key``.

        Advisory only: concurrent requests may already have been judged
        against the higher count. A counter that drops to zero or below is
        deleted, so a ``DECR`` landing after the key expired never leaves a
        negative counter without a TTL behind.
        """
        if stamp is None:
            return
        try:
            count = int(await self._client.decr(key))
            if count <= 0:
                await self._client.delete(key)
        except _STORE_ERRORS as exc:
            raise RateLimitStoreError(
                code="rate_limit_store_unavailable",
                message=f"Rate limit store error: {exc}",
                details={"backend": self.backend_name, "operation": "release"},
            ) from exc

    async def close(self) -> None:
        close = getattr(self._client, "aclose", None) or getattr(self._client, "close", None)
        if close is None:
            return
        try:
            await close()
        except _STORE_ERRORS:
            logger.warning("rate_limit.redis_close_failed", exc_info=True)
