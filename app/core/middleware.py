"""HTTP middleware for request correlation and security headers.

- ``request_id_middleware`` accepts an incoming X-Request-ID header or
  generates a UUID, stores it in contextvars for log correlation and echoes it
  back together with the request duration.
- ``security_headers_middleware`` sets a Content-Security-Policy (strict in
  production, relaxed elsewhere) plus the usual hardening headers.

Usage:
    app.middleware("http")(request_id_middleware)
    app.middleware("http")(security_headers_middleware)
"""

from __future__ import annotations

import time
import uuid

from fastapi import Request, Response

from app.core.config import Settings, settings as default_settings
from app.core.logging import clear_request_id, set_request_id

PRODUCTION_CSP = "; ".join(
    [
        "default-src 'self'",
        "script-src 'self' https://cdn.jsdelivr.net https://storage.googleapis.com",
        "style-src 'self' https://fonts.googleapis.com 'unsafe-inline'",
        "img-src 'self' https://res.cloudinary.com data: blob:",
        "font-src 'self' https://fonts.gstatic.com",
        "connect-src 'self' https://identitytoolkit.googleapis.com https://securetoken.googleapis.com",
        "media-src 'self'",
        "object-src 'none'",
        "frame-ancestors 'none'",
        "form-action 'self'",
        "base-uri 'self'",
        "upgrade-insecure-requests",
    ]
)

DEVELOPMENT_CSP = "; ".join(
    [
        "default-src 'self'",
        "script-src 'self' 'unsafe-eval' 'unsafe-inline'",
        "style-src 'self' 'unsafe-inline'",
        "img-src 'self' data: blob: *",
        "connect-src 'self' *",
        "font-src 'self' *",
        "object-src 'none'",
    ]
)

STATIC_SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "1; mode=block",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Permissions-Policy": "camera=(), microphone=(), geolocation=()",
}


def _settings_for(request: Request) -> Settings:
    # Apps built by create_app carry their own settings on app.state.
    return getattr(request.app.state, "settings", default_settings)


async def request_id_middleware(request: Request, call_next) -> Response:
    """HTTP middleware for request ID generation and propagation.

    If the client provides the configured request id header (X-Request-ID by
    default) that value is used, otherwise a new UUID is generated. The id is
    stored in contextvars for the lifetime of the request and returned in the
    response headers along with X-Request-Duration-ms.
    """

    header_name = _settings_for(request).log.request_id_header
    request_id = request.headers.get(header_name) or str(uuid.uuid4())
    set_request_id(request_id)
    start = time.perf_counter()
    try:
        response: Response = await call_next(request)
    finally:
        clear_request_id()

    duration_ms = (time.perf_counter() - start) * 1000
    response.headers[header_name] = request_id
    response.headers.setdefault("X-Request-Duration-ms", f"{duration_ms:.2f}")
    return response


async def security_headers_middleware(request: Request, call_next) -> Response:
    """Attach Content-Security-Policy and hardening headers to every response."""

    response: Response = await call_next(request)

    csp = PRODUCTION_CSP if _settings_for(request).is_production else DEVELOPMENT_CSP
    response.headers.setdefault("Content-Security-Policy", csp)
    for name, value in STATIC_SECURITY_HEADERS.items():
        response.headers.setdefault(name, value)
    return response
