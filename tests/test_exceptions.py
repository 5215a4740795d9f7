"""
Unit tests for domain exceptions and exception handler registration.

Tests cover:
- AppException, NotFoundException, ConflictException, BusinessRuleViolation
- CapacityConflictError (retriable 409)
- The JSON error envelope produced by each registered handler
"""

from unittest.mock import MagicMock

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from pydantic import BaseModel

from tranche_service.core.exceptions import (
    AppException,
    BusinessRuleViolation,
    CapacityConflictError,
    ConflictException,
    NotFoundException,
    add_exception_handlers,
)
from tranche_service.core.resilience import CircuitBreakerError

from .conftest import TIER_1_ID


class TestDomainExceptions:
    def test_app_exception_attributes(self):
        exc = AppException(status_code=400, message="bad request", details={"key": "v"})
        assert exc.status_code == 400
        assert exc.details == {"key": "v"}
        assert str(exc) == "bad request"
        assert exc.retriable is False

    def test_not_found_message(self):
        exc = NotFoundException("Pricing tier", "abc-123")
        assert exc.status_code == 404
        assert exc.message == "Pricing tier with id 'abc-123' not found"

    def test_conflict_is_409(self):
        assert ConflictException("Tranche number already used").status_code == 409

    def test_business_rule_is_422(self):
        exc = BusinessRuleViolation("Fund is closed", details={"fund_id": "x"})
        assert exc.status_code == 422
        assert exc.details == {"fund_id": "x"}


class TestCapacityConflictError:
    def test_is_retriable_conflict(self):
        exc = CapacityConflictError(TIER_1_ID, 6, 4)
        assert isinstance(exc, ConflictException)
        assert exc.status_code == 409
        assert exc.retriable is True

    def test_details(self):
        exc = CapacityConflictError(TIER_1_ID, 6, 4)
        assert exc.details == {
            "tier_id": str(TIER_1_ID),
            "units_requested": 6,
            "units_available": 4,
        }
        assert "Re-quote and retry" in exc.message


class TestAddExceptionHandlers:
    def test_handlers_registered(self):
        mock_app = MagicMock()
        mock_app.exception_handler = MagicMock(return_value=lambda fn: fn)
        add_exception_handlers(mock_app)
        # AppException, CircuitBreakerError, StarletteHTTPException,
        # RequestValidationError, Exception
        assert mock_app.exception_handler.call_count == 5


def _app_raising(exc: Exception) -> FastAPI:
    # debug=False lets the catch-all handler answer instead of re-raising.
    app = FastAPI(debug=False)
    add_exception_handlers(app)

    @app.get("/boom")
    async def boom():
        raise exc

    return app


async def _get(app: FastAPI, path: str = "/boom"):
    transport = ASGITransport(app=app, raise_app_exceptions=False)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        return await client.get(path)


class TestExceptionHandlersIntegration:
    @pytest.mark.asyncio
    async def test_domain_error_envelope(self):
        resp = await _get(_app_raising(BusinessRuleViolation("Tier already has sales")))
        assert resp.status_code == 422
        assert resp.json() == {"error": True, "message": "Tier already has sales"}

    @pytest.mark.asyncio
    async def test_capacity_conflict_carries_retriable_flag(self):
        resp = await _get(_app_raising(CapacityConflictError(TIER_1_ID, 10, 0)))
        assert resp.status_code == 409
        body = resp.json()
        assert body["retriable"] is True
        assert body["details"]["units_requested"] == 10

    @pytest.mark.asyncio
    async def test_circuit_breaker_handler_returns_503(self):
        resp = await _get(_app_raising(CircuitBreakerError(name="database", retry_after=10.0)))
        assert resp.status_code == 503
        assert resp.headers["Retry-After"] == "11"
        body = resp.json()
        assert body["error"] is True
        assert "circuit is open" in body["message"]

    @pytest.mark.asyncio
    async def test_global_500_handler(self):
        resp = await _get(_app_raising(RuntimeError("unexpected")))
        assert resp.status_code == 500
        assert "Internal Server Error" in resp.json()["message"]

    @pytest.mark.asyncio
    async def test_validation_handler_lists_fields(self):
        app = FastAPI()
        add_exception_handlers(app)

        class Body(BaseModel):
            units: int

        @app.post("/validate")
        async def validate(body: Body):
            return {"ok": True}

        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            resp = await client.post("/validate", json={})

        assert resp.status_code == 422
        body = resp.json()
        assert body["message"] == "Validation failed"
        assert body["details"][0]["field"] == "body -> units"

    @pytest.mark.asyncio
    async def test_unknown_route_uses_envelope(self):
        resp = await _get(_app_raising(RuntimeError()), path="/nonexistent")
        assert resp.status_code == 404
        assert resp.json()["error"] is True
