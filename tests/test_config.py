"""Tests for environment-driven settings."""

import pytest
from pydantic import ValidationError

from app.core.config import RateLimitSettings
from app.core.rate_limit import build_policies


def test_defaults_match_standard_auth_and_search_limits(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv("RATE_LIMIT_BACKEND", raising=False)
    cfg = RateLimitSettings()

    assert cfg.backend == "memory"
    assert (cfg.max_requests, cfg.window_ms) == (60, 60_000)
    assert (cfg.auth_max_requests, cfg.search_max_requests) == (20, 120)
    assert cfg.skip_methods == ["OPTIONS"]
    assert cfg.stale_after_seconds == 3600
    assert cfg.cleanup_interval_seconds == 300


def test_reads_comma_separated_lists_from_env(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("RATE_LIMIT_SKIP_METHODS", "options, head")
    monkeypatch.setenv("RATE_LIMIT_AUTH_PATH_PREFIXES", "/api/auth,/api/session")
    monkeypatch.setenv("RATE_LIMIT_BACKEND", " Redis ")

    cfg = RateLimitSettings()

    assert cfg.skip_methods == ["OPTIONS", "HEAD"]
    assert cfg.auth_path_prefixes == ["/api/auth", "/api/session"]
    assert cfg.backend == "redis"


def test_rejects_non_positive_limits():
    with pytest.raises(ValidationError):
        RateLimitSettings(max_requests=0)
    with pytest.raises(ValidationError):
        RateLimitSettings(store_timeout_seconds=0)


def test_build_policies_from_settings():
    cfg = RateLimitSettings(
        max_requests=60,
        window_ms=30_000,
        auth_path_prefixes=["/api/auth"],
        search_path_prefixes=["/api/search"],
    )

    standard, rules = build_policies(cfg)

    assert standard.name == "standard"
    assert standard.window_seconds == 30
    assert [(rule.path_prefix, rule.policy.name) for rule in rules] == [
        ("/api/auth", "auth"),
        ("/api/search", "search"),
    ]
    auth, search = rules[0].policy, rules[1].policy
    assert auth.key_prefix == "ratelimit:auth:"
    assert auth.count_only_failures is False
    assert search.key_prefix == "ratelimit:search:"
    assert search.count_only_failures is True
