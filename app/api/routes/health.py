from __future__ import annotations

from fastapi import APIRouter, Request

router = APIRouter(tags=["Health"])


@router.get("/")
def root() -> dict:
    """Landing endpoint confirming the API process is up."""

    return {"message": "SoulHeads API is running"}


@router.get("/health")
def health_check(request: Request) -> dict:
    """Health check endpoint.

    Used by load balancers and monitoring systems to determine service health.
    Never rate limited.

    Returns:
        dict: ``status`` set to "ok" and the active rate limit backend.
    """

    limiter = getattr(request.app.state, "rate_limiter", None)
    return {
        "status": "ok",
        "rate_limit_backend": limiter.backend_name if limiter is not None else None,
    }
