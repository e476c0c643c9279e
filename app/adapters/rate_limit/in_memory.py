"""In-memory sliding-window rate limiter.

Notes:
- Per-process only: running multiple workers multiplies the effective limit.
  Use the Redis backend when the API runs as more than one instance.
- Concurrency-safe for asyncio: each bucket carries its own lock, so requests
  for different keys never wait on each other.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable

from app.adapters.rate_limit.base import (
    AbstractRateLimiter,
    RateLimitResult,
    validate_consume_args,
)

logger = logging.getLogger(__name__)


@dataclass
class _Bucket:
    first_request: float
    timestamps: deque[float] = field(default_factory=deque)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    # Tasks holding or waiting for ``lock``; the sweep leaves these buckets alone.
    waiters: int = 0


class InMemorySlidingWindowRateLimiter(AbstractRateLimiter):
    """Rate limiter keeping the timestamps of recent requests per key.

    A request is counted against every other request made for the same key
    during the trailing ``window_seconds``; there are no clock-aligned
    window boundaries.

    Important:
        This limiter is per-process only. If the API runs with multiple workers
        (e.g., multiple Uvicorn/Gunicorn workers), each worker will enforce its
        own independent limits.
    """

    backend_name = "memory"

    def __init__(
        self,
        *,
        stale_after_seconds: float = 3600.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the in-memory rate limiter.

        Args:
            stale_after_seconds: Age after which an idle bucket is dropped by ``sweep``.
                Must exceed the longest window in use.
            clock: Time source function returning UNIX time in seconds.

        Raises:
            ValueError: If stale_after_seconds is not positive.
        """
        if stale_after_seconds <= 0:
            raise ValueError("stale_after_seconds must be > 0")

        self._stale_after = stale_after_seconds
        self._clock = clock
        self._buckets: dict[str, _Bucket] = {}

    def __len__(self) -> int:
        return len(self._buckets)

    def __contains__(self, key: object) -> bool:
        return key in self._buckets

    def _get_or_create_bucket(self, key: str) -> _Bucket:
        bucket = self._buckets.get(key)
        if bucket is None:
            bucket = _Bucket(first_request=self._clock())
            self._buckets[key] = bucket
        return bucket

    @staticmethod
    def _prune(bucket: _Bucket, cutoff: float) -> None:
        timestamps = bucket.timestamps
        while timestamps and timestamps[0] <= cutoff:
            timestamps.popleft()

    async def consume(
        self,
        key: str,
        *,
        limit: int,
        window_seconds: float,
    ) -> RateLimitResult:
        """Count one request for ``key`` within the trailing window.

        Expired timestamps are dropped first; the request is then rejected if
        ``limit`` requests are still inside the window, otherwise its
        timestamp is appended.

        Args:
            key: Bucket key.
            limit: Maximum requests allowed per window.
            window_seconds: Sliding window length in seconds.

        Returns:
            RateLimitResult with allowance decision and metadata.

        Raises:
            ValueError: If key, limit or window are invalid.
        """
        validate_consume_args(key, limit, window_seconds)

        bucket = self._get_or_create_bucket(key)
        bucket.waiters += 1
        try:
            async with bucket.lock:
                now = self._clock()
                self._prune(bucket, now - window_seconds)
                timestamps = bucket.timestamps

                if len(timestamps) >= limit:
                    oldest = timestamps[0] if timestamps else None
                    if oldest is None:
                        retry_after = math.ceil(window_seconds)
                        reset_at = now + window_seconds
                    else:
                        retry_after = math.ceil(oldest + window_seconds - now)
                        reset_at = oldest + window_seconds
                    return RateLimitResult(
                        allowed=False,
                        limit=limit,
                        remaining=0,
                        reset_at=int(math.ceil(reset_at)),
                        retry_after_seconds=max(1, retry_after),
                    )

                timestamps.append(now)
                return RateLimitResult(
                    allowed=True,
                    limit=limit,
                    remaining=max(0, limit - len(timestamps)),
                    reset_at=int(math.ceil(timestamps[0] + window_seconds)),
                    stamp=now,
                )
        finally:
            bucket.waiters -= 1

    async def release(self, key: str, stamp: float | None) -> None:
        """Remove the timestamp recorded for an allowed request."""
        if stamp is None:
            return
        bucket = self._buckets.get(key)
        if bucket is None:
            return

        bucket.waiters += 1
        try:
            async with bucket.lock:
                try:
                    bucket.timestamps.remove(stamp)
                except ValueError:
                    # Already slid out of the window.
                    pass
        finally:
            bucket.waiters -= 1

    def _is_stale(self, bucket: _Bucket, cutoff: float) -> bool:
        if bucket.first_request >= cutoff:
            return False
        return not bucket.timestamps or bucket.timestamps[-1] < cutoff

    async def sweep(self) -> int:
        """Delete buckets whose activity is older than the staleness threshold.

        Only the lock of the bucket being deleted is taken, so requests for
        other keys proceed while the sweep runs.

        Returns:
            Number of buckets removed.
        """
        cutoff = self._clock() - self._stale_after
        removed = 0

        for key, bucket in list(self._buckets.items()):
            if bucket.waiters or not self._is_stale(bucket, cutoff):
                continue
            async with bucket.lock:
                if (
                    self._buckets.get(key) is bucket
                    and bucket.waiters == 0
                    and self._is_stale(bucket, cutoff)
                ):
                    del self._buckets[key]
                    removed += 1

        logger.debug(
            "rate_limit.sweep.memory",
            extra={"removed": removed, "remaining_buckets": len(self._buckets)},
        )
        return removed
