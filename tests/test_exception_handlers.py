"""Tests for global exception handlers.

Validates that all exception types are handled consistently with
proper HTTP status codes, error format, and no information leakage.
"""

import asyncio
import json
from unittest.mock import AsyncMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.core.errors import (
    AppError,
    RateLimitStoreError,
    ValidationAppError,
)
from app.core.exception_handlers import setup_exception_handlers, status_for


@pytest.fixture
def app_with_handlers() -> FastAPI:
    """Create FastAPI app with exception handlers registered."""
    app = FastAPI()
    setup_exception_handlers(app)
    return app


@pytest.fixture
def client(app_with_handlers: FastAPI) -> TestClient:
    """Create test client with handlers enabled."""
    return TestClient(app_with_handlers, raise_server_exceptions=False)


class TestAppErrorHandler:
    """Test handler for AppError and subclasses."""

    def test_validation_error_returns_400_with_details(
        self, client: TestClient, app_with_handlers: FastAPI
    ):
        @app_with_handlers.get("/test-validation")
        async def test_endpoint():
            raise ValidationAppError(
                code="rate_limit_unknown_backend",
                message="Unknown rate limit backend",
                details={"backend": "memcached"},
            )

        response = client.get("/test-validation")

        assert response.status_code == 400
        data = response.json()
        assert data["error"]["code"] == "rate_limit_unknown_backend"
        assert data["error"]["message"] == "Unknown rate limit backend"
        assert data["error"]["details"] == {"backend": "memcached"}
        assert "request_id" in data["error"]

    def test_error_without_details_omits_key(
        self, client: TestClient, app_with_handlers: FastAPI
    ):
        @app_with_handlers.get("/test-format")
        async def test_endpoint():
            raise ValidationAppError(code="test", message="test")

        data = client.get("/test-format").json()

        assert set(data["error"]) == {"code", "message", "request_id"}

    @pytest.mark.parametrize(
        ("error", "expected"),
        [
            (RateLimitStoreError(code="rate_limit_store_unavailable", message="down"), 503),
            (AppError(code="generic", message="generic"), 400),
        ],
    )
    def test_status_mapping(self, error: AppError, expected: int):
        assert status_for(error) == expected

    def test_store_error_outside_gate_returns_503(
        self, client: TestClient, app_with_handlers: FastAPI
    ):
        @app_with_handlers.get("/test-store")
        async def test_endpoint():
            raise RateLimitStoreError(
                code="rate_limit_store_unavailable",
                message="Rate limit store error",
                details={"backend": "redis", "operation": "consume"},
            )

        response = client.get("/test-store")

        assert response.status_code == 503
        assert response.json()["error"]["details"]["operation"] == "consume"


class TestHttpExceptionHandler:
    def test_unknown_route_uses_error_envelope(self, client: TestClient):
        response = client.get("/api/does-not-exist")

        assert response.status_code == 404
        data = response.json()
        assert data["error"]["code"] == "not_found"
        assert data["error"]["message"] == "Route /api/does-not-exist not found"

    def test_method_not_allowed_keeps_status(
        self, client: TestClient, app_with_handlers: FastAPI
    ):
        @app_with_handlers.get("/only-get")
        async def only_get():
            return {}

        response = client.post("/only-get")

        assert response.status_code == 405
        assert response.json()["error"]["code"] == "http_error"


class TestGeneralExceptionHandler:
    """Test fallback handler for unexpected exceptions."""

    def test_unexpected_exception_returns_generic_500(
        self, client: TestClient, app_with_handlers: FastAPI
    ):
        @app_with_handlers.get("/test-crash")
        async def test_endpoint():
            raise RuntimeError("database connection failed")

        response = client.get("/test-crash")

        assert response.status_code == 500
        data = response.json()
        assert data["error"]["code"] == "internal_server_error"
        assert "database connection" not in response.text

    def test_general_exception_handler_never_leaks_stack_trace(self):
        from app.core.exception_handlers import general_exception_handler

        request = AsyncMock()
        request.url.path = "/test"
        request.method = "GET"

        exc = ValueError("Test error with details")
        response = asyncio.run(general_exception_handler(request, exc))

        response_text = bytes(response.body).decode()
        data = json.loads(response_text)
        assert response.status_code == 500
        assert "request_id" in data["error"]
        assert "Traceback" not in response_text
        assert "ValueError" not in response_text


def test_setup_exception_handlers_is_repeatable():
    app = FastAPI()

    setup_exception_handlers(app)
    setup_exception_handlers(app)

    assert AppError in app.exception_handlers
    assert Exception in app.exception_handlers
