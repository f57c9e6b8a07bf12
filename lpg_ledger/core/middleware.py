"""
FastAPI Middleware

Provides request/response middleware for:
- Correlation ID injection
- Request logging
- Error handling (application, request validation and unexpected errors)
"""
import time
from typing import Callable
from fastapi import FastAPI, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from lpg_ledger.core.logging import (
    get_logger,
    set_correlation_id,
    get_correlation_id
)
from lpg_ledger.core.exceptions import AppException, ErrorCode

logger = get_logger(__name__)


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Middleware to add correlation ID to requests"""

    async def dispatch(
        self,
        request: Request,
        call_next: Callable
    ) -> Response:
        correlation_id = request.headers.get("X-Correlation-ID")
        correlation_id = set_correlation_id(correlation_id)
        request.state.correlation_id = correlation_id

        response = await call_next(request)

        response.headers["X-Correlation-ID"] = correlation_id
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs each request with its status and duration"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        started = time.perf_counter()
        fields = {"method": request.method, "path": request.url.path}
        label = f"{request.method} {request.url.path}"

        logger.debug(
            f"-> {label}",
            extra_data={**fields, "query_params": dict(request.query_params)},
        )
        try:
            response = await call_next(request)
        except Exception as e:
            fields["duration_seconds"] = round(time.perf_counter() - started, 4)
            logger.error(f"{label} raised {type(e).__name__}", extra_data=fields, exc_info=True)
            raise

        fields["status_code"] = response.status_code
        fields["duration_seconds"] = round(time.perf_counter() - started, 4)
        log = logger.info if response.status_code < 400 else logger.warning
        log(f"<- {label} {response.status_code}", extra_data=fields)
        return response


def _error_response(status_code: int, content: dict) -> JSONResponse:
    """JSON error envelope echoing the request's correlation id"""
    return JSONResponse(
        status_code=status_code,
        content=content,
        headers={"X-Correlation-ID": get_correlation_id()},
    )


def _envelope(code: ErrorCode, message: str, details: dict) -> dict:
    return {"error": {"code": code.value, "message": message, "details": details}}


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """Map ledger and application errors onto their HTTP status"""
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        f"{type(exc).__name__} on {request.url.path}: {exc.message}",
        extra_data={
            "error_code": exc.error_code.value,
            "details": exc.details,
            "path": request.url.path,
        },
    )
    return _error_response(exc.status_code, exc.to_dict())


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Request body/query errors use the same envelope as ValidationException"""
    errors = jsonable_encoder(exc.errors())
    logger.warning(
        f"Rejected request to {request.url.path}",
        extra_data={"path": request.url.path, "errors": errors},
    )
    return _error_response(
        400,
        _envelope(ErrorCode.VALIDATION_ERROR, "Request validation failed", {"errors": errors}),
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Internals stay in the log, the client only sees ERR_1000
    logger.error(
        f"Unhandled {type(exc).__name__} on {request.url.path}",
        extra_data={"path": request.url.path, "error": str(exc)},
        exc_info=True,
    )
    return _error_response(
        500,
        _envelope(ErrorCode.INTERNAL_ERROR, "An unexpected error occurred", {}),
    )


def setup_middleware(app: FastAPI) -> None:
    # Last added runs outermost, so the correlation id exists before request logging
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(CorrelationIdMiddleware)


def setup_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
