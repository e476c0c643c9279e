from fastapi.testclient import TestClient

from app.adapters.rate_limit.in_memory import InMemorySlidingWindowRateLimiter
from app.adapters.rate_limit.redis_store import RedisRateLimiter


def test_health_reports_rate_limit_backend(app_builder) -> None:
    client = TestClient(app_builder(InMemorySlidingWindowRateLimiter()))

    resp = client.get("/health")

    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "rate_limit_backend": "memory"}


def test_keeps_injected_limiter_even_when_empty(app_builder, clock) -> None:
    injected = InMemorySlidingWindowRateLimiter(clock=clock)
    app = app_builder(injected)

    assert len(injected) == 0
    assert app.state.rate_limiter is injected
    assert app.state.rate_limit_gate.limiter is injected

    client = TestClient(app)
    assert client.get("/health").json()["rate_limit_backend"] == "memory"
    client.get("/api/items")
    assert len(injected) == 1


def test_lifespan_starts_and_stops_sweeper(app_builder) -> None:
    app = app_builder(InMemorySlidingWindowRateLimiter())

    with TestClient(app) as client:
        assert client.get("/health").status_code == 200
        assert app.state.rate_limit_sweeper.running is True

    assert app.state.rate_limit_sweeper.running is False


def test_lifespan_closes_redis_store(app_builder, fake_redis) -> None:
    app = app_builder(RedisRateLimiter(client=fake_redis))

    with TestClient(app) as client:
        assert client.get("/health").json()["rate_limit_backend"] == "redis"
        assert app.state.rate_limit_sweeper.running is False

    assert fake_redis.closed is True
