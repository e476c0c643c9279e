"""Rate limiter interfaces.

The HTTP layer depends on this abstraction (not the concrete implementation)
so the counter store can be swapped between the in-process sliding window and
a shared Redis counter without touching the middleware.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass(frozen=True)
class RateLimitResult:
    """Result of a rate limit consume operation.

    Attributes:
        allowed: Whether the request is allowed to proceed.
        limit: Max requests per window.
        remaining: Requests still available in the trailing window (never negative).
        reset_at: UNIX epoch seconds when the oldest counted request leaves the window.
        retry_after_seconds: Suggested wait time in seconds when blocked.
        stamp: Accounting token of an allowed hit, passed back to ``release``.
    """

    allowed: bool
    limit: int
    remaining: int
    reset_at: int
    retry_after_seconds: int | None = None
    stamp: float | None = None


class AbstractRateLimiter(ABC):
    """Interface for rate accounting stores."""

    backend_name: str = "abstract"

    @abstractmethod
    async def consume(
        self,
        key: str,
        *,
        limit: int,
        window_seconds: float,
    ) -> RateLimitResult:
        """Count one request for ``key`` if it fits in the window.

        Args:
            key: Bucket key (client identity plus route).
            limit: Maximum requests allowed per window.
            window_seconds: Sliding window length in seconds.

        Returns:
            RateLimitResult describing whether it was allowed.

        Raises:
            ValueError: If key, limit or window are invalid.
            RateLimitStoreError: If the backing store fails.
        """
        raise NotImplementedError

    @abstractmethod
    async def release(self, key: str, stamp: float | None) -> None:
        """Undo a previously allowed hit (best effort).

        Args:
            key: Bucket key used for ``consume``.
            stamp: The ``stamp`` of the allowed ``RateLimitResult``.
        """
        raise NotImplementedError

    async def sweep(self) -> int:
        """Drop stale accounting state.

        Stores that expire keys on their own keep this default no-op.

        Returns:
            Number of buckets removed.
        """
        return 0

    async def close(self) -> None:
        """Release connections held by the store."""
        return None


def validate_consume_args(key: str, limit: int, window_seconds: float) -> None:
    """Shared argument checks for ``consume`` implementations."""
    if not key:
        raise ValueError("key must be a non-empty string")
    if limit < 1:
        raise ValueError("limit must be >= 1")
    if window_seconds <= 0:
        raise ValueError("window_seconds must be > 0")
