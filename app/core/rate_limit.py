"""Rate limiting middleware for the HTTP layer.

This module wires a rate limiting adapter in front of every route.

Design goals:
- Minimal coupling: the gate only depends on ``AbstractRateLimiter``; the
  counter store (in-process or Redis) is injected by the app factory.
- Per-route policies: stricter limits for authentication, looser ones for
  search, a standard limit for everything else.
- Fail open: if the store is slow or broken the request goes through and the
  failure is logged.

Rate limiting strategy:
- Bucket per client identity and route path.
- Identity is the authenticated user id when an upstream middleware set
  ``request.state.user_id``, otherwise the client IP, otherwise ``0.0.0.0``.
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass, field
from typing import Callable, Iterable, Sequence

from fastapi import Request, Response, status
from fastapi.responses import JSONResponse

from app.adapters.rate_limit.base import AbstractRateLimiter, RateLimitResult
from app.core.config import RateLimitSettings
from app.core.errors import RateLimitStoreError
from app.core.logging import fingerprint

logger = logging.getLogger(__name__)

FALLBACK_CLIENT_KEY = "0.0.0.0"
DEFAULT_KEY_PREFIX = "ratelimit:"
DEFAULT_SKIP_METHODS = frozenset({"OPTIONS"})

KeyGenerator = Callable[[Request], str]


@dataclass(frozen=True)
class RateLimitPolicy:
    """Limits applied to one group of routes.

    Attributes:
        name: Policy label used in logs.
        max_requests: Requests allowed within the trailing window.
        window_seconds: Window length in seconds.
        skip_methods: HTTP methods that bypass accounting entirely.
        count_only_failures: Undo the hit when the response status is below 400,
            so only failing requests accumulate against the limit.
        key_prefix: Namespace prepended to bucket keys.
        key_generator: Optional override deriving the bucket key from the request.
    """

    name: str
    max_requests: int
    window_seconds: float
    skip_methods: frozenset[str] = DEFAULT_SKIP_METHODS
    count_only_failures: bool = False
    key_prefix: str = DEFAULT_KEY_PREFIX
    key_generator: KeyGenerator | None = field(default=None, compare=False)

    def __post_init__(self) -> None:
        if self.max_requests < 1:
            raise ValueError("max_requests must be >= 1")
        if self.window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")
        object.__setattr__(
            self, "skip_methods", frozenset(m.upper() for m in self.skip_methods)
        )


@dataclass(frozen=True)
class RateLimitRule:
    """Binds a policy to every path under ``path_prefix``."""

    path_prefix: str
    policy: RateLimitPolicy

    def matches(self, path: str) -> bool:
        prefix = self.path_prefix.rstrip("/")
        return path == prefix or path.startswith(prefix + "/")


def build_bucket_key(client_key: str | None, route_key: str, policy: RateLimitPolicy) -> str:
    """Build the bucket key for a client and route.

    Args:
        client_key: IP address or user id; empty values fall back to ``0.0.0.0``.
        route_key: Route path being protected.
        policy: Policy supplying the key namespace.

    Returns:
        str: Namespaced bucket key.
    """

    return f"{policy.key_prefix}{client_key or FALLBACK_CLIENT_KEY}:{route_key}"


def resolve_client_key(request: Request, *, trust_forwarded_for: bool = False) -> str:
    """Identify the caller of ``request`` for rate limiting purposes."""

    user_id = getattr(request.state, "user_id", None)
    if user_id:
        return f"user:{user_id}"

    if trust_forwarded_for:
        forwarded = request.headers.get("X-Forwarded-For", "")
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop

    if request.client and request.client.host:
        return request.client.host
    return FALLBACK_CLIENT_KEY


def rate_limit_headers(result: RateLimitResult) -> dict[str, str]:
    """Build X-RateLimit-* headers (and Retry-After when blocked)."""

    headers = {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(max(0, result.remaining)),
        "X-RateLimit-Reset": str(result.reset_at),
    }
    if not result.allowed and result.retry_after_seconds is not None:
        headers["Retry-After"] = str(result.retry_after_seconds)
    return headers


def _too_many_requests(result: RateLimitResult) -> JSONResponse:
    retry_after = result.retry_after_seconds or 1
    minutes = math.ceil(retry_after / 60)
    unit = "minute" if minutes == 1 else "minutes"
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content={
            "message": f"Too many requests, please try again after {minutes} {unit}",
            "retryAfter": retry_after,
        },
        headers=rate_limit_headers(result),
    )


def _consume_orphan_result(task: asyncio.Future) -> None:
    """Retrieve the outcome of an accounting call nobody awaits anymore."""

    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.debug(
            "rate_limit.orphan_call_failed",
            extra={"error_type": type(exc).__name__},
        )


class RateLimitGate:
    """Middleware enforcing rate limit policies before route handlers run.

    Register with ``app.middleware("http")(gate)``.
    """

    def __init__(
        self,
        limiter: AbstractRateLimiter,
        *,
        default_policy: RateLimitPolicy,
        rules: Sequence[RateLimitRule] = (),
        exempt_paths: Iterable[str] = (),
        timeout_seconds: float = 0.5,
        enabled: bool = True,
        trust_forwarded_for: bool = False,
    ) -> None:
        self.limiter = limiter
        self.default_policy = default_policy
        self.rules = tuple(rules)
        self.exempt_paths = frozenset(exempt_paths)
        self.timeout_seconds = timeout_seconds
        self.enabled = enabled
        self.trust_forwarded_for = trust_forwarded_for

    def policy_for(self, path: str) -> RateLimitPolicy:
        """Return the policy of the first rule matching ``path``."""

        for rule in self.rules:
            if rule.matches(path):
                return rule.policy
        return self.default_policy

    async def _bounded(self, coro):
        # Shielded so a cancelled request cannot interrupt a started store call.
        task = asyncio.ensure_future(coro)
        try:
            return await asyncio.wait_for(asyncio.shield(task), self.timeout_seconds)
        except (asyncio.TimeoutError, asyncio.CancelledError):
            task.add_done_callback(_consume_orphan_result)
            raise

    async def check(
        self,
        client_key: str | None,
        route_key: str,
        policy: RateLimitPolicy,
        *,
        bucket_key: str | None = None,
    ) -> RateLimitResult:
        """Count one request for ``client_key`` on ``route_key``.

        Args:
            client_key: IP address or user id (empty falls back to ``0.0.0.0``).
            route_key: Route path being protected.
            policy: Limits to apply.
            bucket_key: Pre-computed key, e.g. from ``policy.key_generator``.

        Returns:
            RateLimitResult from the counter store.

        Raises:
            RateLimitStoreError: If the store fails or exceeds ``timeout_seconds``.
        """

        key = bucket_key or build_bucket_key(client_key, route_key, policy)
        try:
            return await self._bounded(
                self.limiter.consume(
                    key,
                    limit=policy.max_requests,
                    window_seconds=policy.window_seconds,
                )
            )
        except asyncio.TimeoutError as exc:
            raise RateLimitStoreError(
                code="rate_limit_store_timeout",
                message=f"Rate limit store did not answer within {self.timeout_seconds}s",
                details={"backend": self.limiter.backend_name, "operation": "consume"},
            ) from exc

    async def _release(self, key: str, result: RateLimitResult, policy: RateLimitPolicy) -> None:
        try:
            await self._bounded(self.limiter.release(key, result.stamp))
        except Exception as exc:
            logger.warning(
                "rate_limit.release_failed",
                extra={
                    "policy": policy.name,
                    "key_hash": fingerprint(key),
                    "error_type": type(exc).__name__,
                },
            )

    async def __call__(self, request: Request, call_next) -> Response:
        if not self.enabled or request.url.path in self.exempt_paths:
            return await call_next(request)

        policy = self.policy_for(request.url.path)
        if request.method.upper() in policy.skip_methods:
            return await call_next(request)

        route_key = request.url.path
        try:
            client_key = resolve_client_key(
                request, trust_forwarded_for=self.trust_forwarded_for
            )
            generated = policy.key_generator(request) if policy.key_generator else None
            key = generated or build_bucket_key(client_key, route_key, policy)
            result = await self.check(client_key, route_key, policy, bucket_key=key)
        except RateLimitStoreError as exc:
            logger.warning(
                "rate_limit.store_unavailable",
                extra={
                    "policy": policy.name,
                    "error_code": exc.code,
                    "backend": self.limiter.backend_name,
                    "path": request.url.path,
                },
            )
            return await call_next(request)
        except Exception:
            logger.exception(
                "rate_limit.unexpected_error",
                extra={"policy": policy.name, "path": request.url.path},
            )
            return await call_next(request)

        if not result.allowed:
            logger.warning(
                "rate_limit.exceeded",
                extra={
                    "policy": policy.name,
                    "key_hash": fingerprint(key),
                    "limit": result.limit,
                    "window_s": policy.window_seconds,
                    "retry_after_s": result.retry_after_seconds,
                    "path": request.url.path,
                    "method": request.method,
                },
            )
            return _too_many_requests(result)

        logger.debug(
            "rate_limit.allowed",
            extra={
                "policy": policy.name,
                "key_hash": fingerprint(key),
                "limit": result.limit,
                "remaining": result.remaining,
            },
        )

        response = await call_next(request)

        if policy.count_only_failures and response.status_code < 400:
            await self._release(key, result, policy)

        response.headers.update(rate_limit_headers(result))
        return response


def build_policies(
    config: RateLimitSettings,
) -> tuple[RateLimitPolicy, list[RateLimitRule]]:
    """Build the standard policy and the auth/search route rules from settings.

    Returns:
        Tuple of (default policy, ordered route rules).
    """

    skip_methods = frozenset(config.skip_methods)

    standard = RateLimitPolicy(
        name="standard",
        max_requests=config.max_requests,
        window_seconds=config.window_ms / 1000,
        skip_methods=skip_methods,
    )
    auth = RateLimitPolicy(
        name="auth",
        max_requests=config.auth_max_requests,
        window_seconds=config.auth_window_ms / 1000,
        skip_methods=skip_methods,
        key_prefix="ratelimit:auth:",
    )
    search = RateLimitPolicy(
        name="search",
        max_requests=config.search_max_requests,
        window_seconds=config.search_window_ms / 1000,
        skip_methods=skip_methods,
        key_prefix="ratelimit:search:",
        count_only_failures=True,
    )

    rules = [RateLimitRule(prefix, auth) for prefix in config.auth_path_prefixes]
    rules.extend(RateLimitRule(prefix, search) for prefix in config.search_path_prefixes)
    return standard, rules


def build_rate_limit_gate(
    limiter: AbstractRateLimiter,
    config: RateLimitSettings,
) -> RateLimitGate:
    """Create the gate for ``limiter`` using the configured policies."""

    default_policy, rules = build_policies(config)
    return RateLimitGate(
        limiter,
        default_policy=default_policy,
        rules=rules,
        exempt_paths=config.exempt_paths,
        timeout_seconds=config.store_timeout_seconds,
        enabled=config.enabled,
        trust_forwarded_for=config.trust_forwarded_for,
    )
