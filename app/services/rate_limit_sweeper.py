"""Background sweep of stale rate limit buckets.

The in-process limiter keeps one bucket per client and route. Clients that
stop calling would otherwise keep their bucket forever, so a task started with
the application periodically asks the limiter to drop stale state.
"""

from __future__ import annotations

import asyncio
import logging

from app.adapters.rate_limit.base import AbstractRateLimiter

logger = logging.getLogger(__name__)


class RateLimitSweeper:
    """Runs ``limiter.sweep()`` every ``interval_seconds`` on the event loop."""

    def __init__(self, limiter: AbstractRateLimiter, *, interval_seconds: float = 300.0) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        self._limiter = limiter
        self._interval = interval_seconds
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> int:
        """Sweep once, logging instead of raising on failure.

        Returns:
            Number of buckets removed (0 when the sweep failed).
        """
        try:
            removed = await self._limiter.sweep()
        except Exception:
            logger.exception(
                "rate_limit.sweep_failed",
                extra={"backend": self._limiter.backend_name},
            )
            return 0

        if removed:
            logger.info(
                "rate_limit.sweep",
                extra={"backend": self._limiter.backend_name, "removed": removed},
            )
        return removed

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            await self.run_once()

    def start(self) -> None:
        """Schedule the sweep loop on the running event loop."""
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(
            self._loop(), name="rate-limit-sweeper"
        )

    async def stop(self) -> None:
        """Cancel the sweep loop and wait for it to finish."""
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
