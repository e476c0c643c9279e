"""Pytest configuration and fixtures shared across all test modules.

This file is automatically loaded by pytest before running any tests.
Environment variables are set before any app module builds its settings.
"""

import math
import os

# CRITICAL: Set these before any imports that might load settings
os.environ["APP_ENV"] = "testing"
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("RATE_LIMIT_BACKEND", "memory")

import pytest  # noqa: E402
from fastapi import FastAPI  # noqa: E402
from fastapi.responses import JSONResponse  # noqa: E402
from redis.exceptions import ConnectionError as RedisConnectionError  # noqa: E402

from app.adapters.rate_limit.base import AbstractRateLimiter  # noqa: E402
from app.core.app_factory import create_app  # noqa: E402
from app.core.config import LogSettings, RateLimitSettings, Settings  # noqa: E402


class FakeClock:
    """Deterministic clock used to drive window and staleness logic."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.current = start

    def __call__(self) -> float:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += seconds


class FakeRedis:
    """Async stand-in for the subset of Redis commands the limiter uses."""

    def __init__(self, clock: FakeClock) -> None:
        self._clock = clock
        self.values: dict[str, int] = {}
        self.expires_at: dict[str, float] = {}
        self.closed = False

    def _evict(self, key: str) -> None:
        deadline = self.expires_at.get(key)
        if deadline is not None and deadline <= self._clock():
            self.values.pop(key, None)
            self.expires_at.pop(key, None)

    async def incr(self, key: str) -> int:
        self._evict(key)
        self.values[key] = self.values.get(key, 0) + 1
        return self.values[key]

    async def decr(self, key: str) -> int:
        self._evict(key)
        self.values[key] = self.values.get(key, 0) - 1
        return self.values[key]

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            self._evict(key)
            if self.values.pop(key, None) is not None:
                removed += 1
            self.expires_at.pop(key, None)
        return removed

    async def expire(self, key: str, seconds: int) -> bool:
        self._evict(key)
        if key not in self.values:
            return False
        self.expires_at[key] = self._clock() + seconds
        return True

    async def ttl(self, key: str) -> int:
        self._evict(key)
        if key not in self.values:
            return -2
        if key not in self.expires_at:
            return -1
        return math.ceil(self.expires_at[key] - self._clock())

    async def aclose(self) -> None:
        self.closed = True


class UnreachableRedis:
    """Client whose every command fails like a dropped connection."""

    async def incr(self, key: str) -> int:
        raise RedisConnectionError("connection refused")

    async def decr(self, key: str) -> int:
        raise RedisConnectionError("connection refused")

    async def delete(self, *keys: str) -> int:
        raise RedisConnectionError("connection refused")

    async def expire(self, key: str, seconds: int) -> bool:
        raise RedisConnectionError("connection refused")

    async def ttl(self, key: str) -> int:
        raise RedisConnectionError("connection refused")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_redis(clock: FakeClock) -> FakeRedis:
    return FakeRedis(clock)


def build_test_app(limiter: AbstractRateLimiter, **rate_limit_overrides) -> FastAPI:
    """Build an app with a few stand-in business routes behind the gate."""

    overrides = {
        "max_requests": 3,
        "window_ms": 1_000,
        "auth_max_requests": 2,
        "search_max_requests": 2,
    }
    overrides.update(rate_limit_overrides)
    config = Settings(
        log=LogSettings(level="WARNING"),
        rate_limit=RateLimitSettings(**overrides),
    )
    app = create_app(config, limiter=limiter)

    @app.get("/api/items")
    async def list_items() -> dict:
        return {"items": []}

    @app.post("/api/auth/login")
    async def login() -> dict:
        return {"token": "stub"}

    @app.get("/api/search")
    async def search(fail: bool = False):
        if fail:
            return JSONResponse(status_code=404, content={"message": "no match"})
        return {"results": []}

    return app


@pytest.fixture
def unreachable_redis() -> UnreachableRedis:
    return UnreachableRedis()


@pytest.fixture
def app_builder():
    """Return the builder so tests can pick their own limiter and overrides."""
    return build_test_app
