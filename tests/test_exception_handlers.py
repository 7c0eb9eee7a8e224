"""Tests for global exception handlers.

Validates that limiter and auth errors map to the right HTTP status codes
with a consistent error format and no information leakage.
"""

import asyncio
import json
from unittest.mock import AsyncMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from admission.core.errors import (
    AppError,
    AuthenticationAppError,
    AuthRequiredAppError,
    ConfigurationAppError,
    RateLimitExceededAppError,
)
from admission.core.exception_handlers import general_exception_handler, setup_exception_handlers


@pytest.fixture
def app_with_handlers() -> FastAPI:
    app = FastAPI()
    setup_exception_handlers(app)
    return app


@pytest.fixture
def client(app_with_handlers: FastAPI) -> TestClient:
    return TestClient(app_with_handlers)


class TestAppErrorHandler:
    """Test handler for AppError and subclasses."""

    def test_rate_limit_exceeded_returns_429_with_headers(self, client, app_with_handlers) -> None:
        @app_with_handlers.get("/limited")
        async def limited():
            raise RateLimitExceededAppError(
                code="rate_limit_exceeded",
                message="Rate limit exceeded. Please try again later.",
                retry_after=42,
                headers={"X-RateLimit-Limit": "5", "X-RateLimit-Remaining": "0"},
            )

        response = client.get("/limited")

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "42"
        assert response.headers["X-RateLimit-Limit"] == "5"
        error = response.json()["error"]
        assert error["code"] == "rate_limit_exceeded"
        assert error["retry_after"] == 42
        assert "request_id" in error

    def test_auth_required_returns_401(self, client, app_with_handlers) -> None:
        @app_with_handlers.get("/principal-only")
        async def principal_only():
            raise AuthRequiredAppError(
                code="authentication_required",
                message="Authentication required for this rate limit",
            )

        response = client.get("/principal-only")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "authentication_required"

    def test_authentication_error_returns_403(self, client, app_with_handlers) -> None:
        @app_with_handlers.get("/auth")
        async def auth():
            raise AuthenticationAppError(code="invalid_api_key", message="Invalid or missing API key")

        response = client.get("/auth")

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "invalid_api_key"

    def test_configuration_error_hides_details(self, client, app_with_handlers) -> None:
        @app_with_handlers.get("/misconfigured")
        async def misconfigured():
            raise ConfigurationAppError(
                code="unknown_rate_limit_rule",
                message="Rate limit rule 'secret-rule' is not configured",
                details={"rule": "secret-rule"},
            )

        response = client.get("/misconfigured")

        assert response.status_code == 500
        assert response.json()["error"]["code"] == "unknown_rate_limit_rule"
        assert "secret-rule" not in response.text

    def test_generic_app_error_returns_400_with_details(self, client, app_with_handlers) -> None:
        @app_with_handlers.get("/generic")
        async def generic():
            raise AppError(code="bad_input", message="Bad input", details={"hint": "fix it"})

        response = client.get("/generic")

        assert response.status_code == 400
        assert response.json()["error"]["details"] == {"hint": "fix it"}


class TestGeneralExceptionHandler:
    """Test fallback handler for unexpected exceptions."""

    def test_returns_generic_500(self) -> None:
        request = AsyncMock()
        request.url.path = "/test"
        request.method = "GET"

        exc = RuntimeError("Unexpected error: partition map corrupted")
        response = asyncio.run(general_exception_handler(request, exc))

        data = json.loads(bytes(response.body).decode())
        assert response.status_code == 500
        assert data["error"]["code"] == "internal_server_error"
        assert "partition map" not in data["error"]["message"]

    def test_never_leaks_stack_trace(self) -> None:
        request = AsyncMock()
        request.url.path = "/test"
        request.method = "GET"

        response = asyncio.run(general_exception_handler(request, ValueError("details")))

        text = bytes(response.body).decode()
        assert "Traceback" not in text
        assert "ValueError" not in text


def test_setup_registers_handlers(app_with_handlers: FastAPI) -> None:
    assert AppError in app_with_handlers.exception_handlers
    assert Exception in app_with_handlers.exception_handlers
