"""
Tests for middleware - lpg_ledger/core/middleware.py

Covers:
- CorrelationIdMiddleware: correlation ID propagation
- RequestLoggingMiddleware: request logging and re-raising
- Exception handlers: AppException, request validation, unexpected errors
"""
import json
from unittest.mock import AsyncMock

import pytest
from fastapi.exceptions import RequestValidationError
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, PlainTextResponse
from starlette.routing import Route
from starlette.testclient import TestClient

from lpg_ledger.core.exceptions import (
    AlreadyVoidedError,
    ConcurrentModificationError,
    ErrorCode,
    ReplayInconsistencyError,
    ValidationException,
)
from lpg_ledger.core.middleware import (
    CorrelationIdMiddleware,
    RequestLoggingMiddleware,
    app_exception_handler,
    generic_exception_handler,
    validation_exception_handler,
)


# ============================================================================
# Helpers
# ============================================================================


def _hello(request: Request) -> PlainTextResponse:
    return PlainTextResponse("ok")


def _error(request: Request) -> PlainTextResponse:
    raise ValueError("boom")


def _build_app(middlewares: list[tuple] | None = None) -> Starlette:
    app = Starlette(routes=[Route("/test", _hello), Route("/error", _error)])
    for mw_class, kwargs in middlewares or []:
        app.add_middleware(mw_class, **kwargs)
    return app


def _request(path: str) -> Request:
    mock_request = AsyncMock(spec=Request)
    mock_request.url.path = path
    return mock_request


def _body(response: JSONResponse) -> dict:
    return json.loads(response.body.decode())


# ============================================================================
# CorrelationIdMiddleware
# ============================================================================


class TestCorrelationIdMiddleware:

    @pytest.mark.unit
    def test_generates_correlation_id_when_missing(self) -> None:
        app = _build_app([(CorrelationIdMiddleware, {})])
        with TestClient(app) as client:
            response = client.get("/test")
            assert response.status_code == 200
            assert len(response.headers["x-correlation-id"]) == 8

    @pytest.mark.unit
    def test_preserves_existing_correlation_id(self) -> None:
        app = _build_app([(CorrelationIdMiddleware, {})])
        with TestClient(app) as client:
            response = client.get("/test", headers={"X-Correlation-ID": "ledger-req-1"})
            assert response.headers["x-correlation-id"] == "ledger-req-1"

    @pytest.mark.unit
    def test_correlation_id_unique_per_request(self) -> None:
        app = _build_app([(CorrelationIdMiddleware, {})])
        with TestClient(app) as client:
            first = client.get("/test").headers["x-correlation-id"]
            second = client.get("/test").headers["x-correlation-id"]
            assert first != second


# ============================================================================
# RequestLoggingMiddleware
# ============================================================================


class TestRequestLoggingMiddleware:

    @pytest.mark.unit
    def test_successful_request(self) -> None:
        app = _build_app([(RequestLoggingMiddleware, {})])
        with TestClient(app) as client:
            assert client.get("/test").status_code == 200

    @pytest.mark.unit
    def test_exception_in_handler_reraised(self) -> None:
        app = _build_app([(RequestLoggingMiddleware, {})])
        with TestClient(app, raise_server_exceptions=False) as client:
            assert client.get("/error").status_code == 500


# ============================================================================
# Exception handlers
# ============================================================================


class TestAppExceptionHandler:

    @pytest.mark.asyncio
    async def test_validation_exception_envelope(self) -> None:
        exc = ValidationException("PAYMENT requires an amount", field="payment_info.amount")

        response = await app_exception_handler(_request("/api/transactions"), exc)

        assert response.status_code == 400
        assert "x-correlation-id" in response.headers
        assert _body(response) == {
            "error": {
                "code": "ERR_1001",
                "message": "PAYMENT requires an amount",
                "details": {"field": "payment_info.amount"},
            }
        }

    @pytest.mark.asyncio
    async def test_already_voided_is_conflict(self) -> None:
        response = await app_exception_handler(_request("/api/transactions/5/undo"), AlreadyVoidedError(5))

        assert response.status_code == 409
        assert _body(response)["error"]["code"] == ErrorCode.TRANSACTION_ALREADY_VOIDED.value

    @pytest.mark.asyncio
    async def test_concurrent_modification_is_conflict(self) -> None:
        response = await app_exception_handler(_request("/api/transactions"), ConcurrentModificationError(3))

        assert response.status_code == 409
        assert _body(response)["error"]["code"] == ErrorCode.CONCURRENT_MODIFICATION.value

    @pytest.mark.asyncio
    async def test_replay_inconsistency_is_server_error(self) -> None:
        exc = ReplayInconsistencyError(3, 40, "100.00", "90.00")

        response = await app_exception_handler(_request("/api/transactions/41/undo"), exc)

        assert response.status_code == 500
        details = _body(response)["error"]["details"]
        assert details["transaction_id"] == 40
        assert details["stored_balance"] == "100.00"


class TestValidationExceptionHandler:

    @pytest.mark.asyncio
    async def test_request_errors_use_validation_envelope(self) -> None:
        exc = RequestValidationError([
            {"type": "missing", "loc": ("body", "customer_id"), "msg": "Field required", "input": {}},
        ])

        response = await validation_exception_handler(_request("/api/transactions"), exc)

        body = _body(response)
        assert response.status_code == 400
        assert body["error"]["code"] == "ERR_1001"
        assert body["error"]["details"]["errors"][0]["loc"] == ["body", "customer_id"]


class TestGenericExceptionHandler:

    @pytest.mark.asyncio
    async def test_handles_unexpected_exception(self) -> None:
        response = await generic_exception_handler(_request("/api/customers/1/ledger"), RuntimeError("boom"))

        assert isinstance(response, JSONResponse)
        assert response.status_code == 500
        assert "x-correlation-id" in response.headers

    @pytest.mark.asyncio
    async def test_does_not_leak_internal_details(self) -> None:
        exc = RuntimeError("database connection failed on host 10.0.0.1")

        response = await generic_exception_handler(_request("/api/test"), exc)

        body = response.body.decode()
        assert "10.0.0.1" not in body
        assert "database connection" not in body
        assert "ERR_1000" in body
