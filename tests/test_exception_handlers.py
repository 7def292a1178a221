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

from quota_gate.core.errors import (
    AppError,
    AuthenticationAppError,
    InvalidIdentityError,
    PolicyNotFoundError,
    StorageUnavailableError,
    ValidationAppError,
)
from quota_gate.core.exception_handlers import setup_exception_handlers, status_code_for

@pytest.fixture
def app_with_handlers() -> FastAPI:
    """Create FastAPI app with exception handlers registered."""
    app = FastAPI()
    setup_exception_handlers(app)
    return app


@pytest.fixture
def client(app_with_handlers: FastAPI) -> TestClient:
    """Create test client with handlers enabled."""
    return TestClient(app_with_handlers)


class TestAppErrorHandler:
    """Test handler for AppError and subclasses."""

    def test_validation_error_returns_400(self, client: TestClient, app_with_handlers: FastAPI):
        """Verify ValidationAppError returns HTTP 400."""
        @app_with_handlers.get("/test-validation")
        async def test_endpoint():
            raise ValidationAppError(
                code="test_validation",
                message="Test validation error"
            )
        
        response = client.get("/test-validation")
        
        assert response.status_code == 400
        data = response.json()
        assert data["error"]["code"] == "test_validation"
        assert data["error"]["message"] == "Test validation error"
        assert "request_id" in data["error"]

    def test_validation_error_includes_details(self, client: TestClient, app_with_handlers: FastAPI):
        """Verify ValidationAppError includes details when provided."""
        @app_with_handlers.get("/test-validation-details")
        async def test_endpoint():
            raise InvalidIdentityError(
                code="invalid_identity",
                message="identity must be a non-empty string",
                details={"endpoint_class": "auth-login", "hint": "pass the client IP"},
            )

        response = client.get("/test-validation-details")

        assert response.status_code == 400
        data = response.json()
        assert data["error"]["details"]["endpoint_class"] == "auth-login"
        assert data["error"]["details"]["hint"] == "pass the client IP"

    def test_authentication_error_returns_403(self, client: TestClient, app_with_handlers: FastAPI):
        """Verify AuthenticationAppError returns HTTP 403 Forbidden."""
        @app_with_handlers.get("/test-auth")
        async def test_endpoint():
            raise AuthenticationAppError(
                code="invalid_api_key",
                message="Invalid or missing API key"
            )

        response = client.get("/test-auth")

        assert response.status_code == 403
        data = response.json()
        assert data["error"]["code"] == "invalid_api_key"

    def test_policy_not_found_returns_500(self, client: TestClient, app_with_handlers: FastAPI):
        """Verify an unmapped endpoint class is reported as a server error."""
        @app_with_handlers.get("/test-policy")
        async def test_endpoint():
            raise PolicyNotFoundError(
                code="policy_not_found",
                message="No policy configured for endpoint class 'billing'",
            )

        response = client.get("/test-policy")

        assert response.status_code == 500
        data = response.json()
        assert data["error"]["code"] == "policy_not_found"

    def test_storage_unavailable_returns_503(self, client: TestClient, app_with_handlers: FastAPI):
        """Verify storage failures surfacing from admin operations return 503."""
        @app_with_handlers.get("/test-storage")
        async def test_endpoint():
            raise StorageUnavailableError(
                code="storage_unavailable",
                message="Redis counter store unavailable during reset",
            )

        response = client.get("/test-storage")

        assert response.status_code == 503

    @pytest.mark.parametrize(
        "error_cls,expected",
        [
            (AppError, 400),
            (ValidationAppError, 400),
            (InvalidIdentityError, 400),
            (AuthenticationAppError, 403),
            (PolicyNotFoundError, 500),
            (StorageUnavailableError, 503),
        ],
    )
    def test_status_code_for_error_family(self, error_cls, expected):
        assert status_code_for(error_cls(code="x", message="y")) == expected

    def test_error_response_format_is_consistent(self, client: TestClient, app_with_handlers: FastAPI):
        """Verify error responses have consistent JSON structure."""
        @app_with_handlers.get("/test-format")
        async def test_endpoint():
            raise ValidationAppError(code="test", message="test")
        
        response = client.get("/test-format")
        data = response.json()
        
        # Required fields always present
        assert "error" in data
        assert "code" in data["error"]
        assert "message" in data["error"]
        assert "request_id" in data["error"]


class TestGeneralExceptionHandler:
    """Test fallback handler for unexpected exceptions."""

    def test_unexpected_exception_handler_registered(self, app_with_handlers: FastAPI):
        """Verify fallback exception handler is registered."""
        assert Exception in app_with_handlers.exception_handlers

    def test_general_exception_handler_logic(self):
        """Verify general_exception_handler returns correct structure."""
        from quota_gate.core.exception_handlers import general_exception_handler
        
        request = AsyncMock()
        request.url.path = "/test"
        request.method = "GET"
        
        exc = RuntimeError("Unexpected error: database connection failed")
        response = asyncio.run(general_exception_handler(request, exc))
        
        # Verify response structure
        response_body = response.body if isinstance(response.body, bytes) else bytes(response.body)
        data = json.loads(response_body.decode())
        assert response.status_code == 500
        assert data["error"]["code"] == "internal_server_error"
        # Original error message should NOT be in response
        assert "database connection" not in data["error"]["message"]
        assert "request_id" in data["error"]

    def test_general_exception_handler_never_leaks_stack_trace(self):
        """Verify stack traces are never included in response."""
        from quota_gate.core.exception_handlers import general_exception_handler
        
        request = AsyncMock()
        request.url.path = "/test"
        request.method = "GET"
        
        exc = ValueError("Test error with details")
        response = asyncio.run(general_exception_handler(request, exc))
        
        response_body = response.body if isinstance(response.body, bytes) else bytes(response.body)
        response_text = response_body.decode()
        # No traceback indicators
        assert "Traceback" not in response_text
        assert "File \"" not in response_text
        assert "ValueError" not in response_text


class TestErrorHandlerIntegration:
    """Integration tests for exception handler setup."""

    def test_setup_exception_handlers_registers_handlers(self, app_with_handlers: FastAPI):
        """Verify setup_exception_handlers properly registers handlers."""
        # Check that handlers are registered
        assert AppError in app_with_handlers.exception_handlers
        assert Exception in app_with_handlers.exception_handlers

    def test_multiple_handler_setups_does_not_fail(self):
        """Verify calling setup_exception_handlers multiple times is safe."""
        app = FastAPI()
        
        # Should not raise or fail
        setup_exception_handlers(app)
        setup_exception_handlers(app)  # Second call should override safely
        
        assert AppError in app.exception_handlers
