"""Application factory for FastAPI app.

Centralizes app construction (logging, rate limiter, middleware, handlers,
routers, background tasks) so tests can build isolated instances with their
own settings or counter store.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from app.adapters.rate_limit.base import AbstractRateLimiter
from app.adapters.rate_limit.factory import create_rate_limiter
from app.api.routes import health_router
from app.core.config import Settings, settings as default_settings
from app.core.exception_handlers import setup_exception_handlers
from app.core.logging import configure_logging
from app.core.middleware import request_id_middleware, security_headers_middleware
from app.core.rate_limit import build_rate_limit_gate
from app.services.rate_limit_sweeper import RateLimitSweeper


def create_app(
    config: Settings | None = None,
    *,
    limiter: AbstractRateLimiter | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application instance.

    Args:
        config: Settings to use; defaults to the global settings.
        limiter: Pre-built counter store; defaults to the configured backend.

    Returns:
        Configured FastAPI app with middleware, handlers and routers.
    """
    cfg = config or default_settings

    # Logging first so subsequent init logs are formatted as desired
    configure_logging(cfg.log)

    rate_limiter = limiter if limiter is not None else create_rate_limiter(cfg.rate_limit)
    sweeper = RateLimitSweeper(
        rate_limiter,
        interval_seconds=cfg.rate_limit.cleanup_interval_seconds,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if rate_limiter.backend_name == "memory":
            sweeper.start()
        try:
            yield
        finally:
            await sweeper.stop()
            await rate_limiter.close()

    app = FastAPI(
        title=cfg.app.name,
        description=(
            "Front door of the SoulHeads sneaker community backend. Every "
            "request passes a per-client sliding-window rate limiter before "
            "reaching business routes."
        ),
        version="0.1.0",
        debug=cfg.app.debug,
        lifespan=lifespan,
    )
    app.state.settings = cfg
    app.state.rate_limiter = rate_limiter
    app.state.rate_limit_sweeper = sweeper
    app.state.rate_limit_gate = build_rate_limit_gate(rate_limiter, cfg.rate_limit)

    # Middleware: the last registered runs first, so request ids wrap everything
    app.middleware("http")(app.state.rate_limit_gate)
    app.middleware("http")(security_headers_middleware)
    app.middleware("http")(request_id_middleware)

    # Exception handlers
    setup_exception_handlers(app)

    # Routers
    app.include_router(health_router)

    return app
