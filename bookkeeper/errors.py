"""Domain error taxonomy and structured error handlers.

Services raise the errors below; host applications call
``register_error_handlers(app)`` so every failure leaves the API as::

    {"code": ..., "message": ..., "details": ..., "request_id": ...}
"""
from __future__ import annotations

import logging

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class BookkeepingError(Exception):
    code = "bookkeeping_error"
    status_code = 400

    def __init__(self, message: str, details: object = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def envelope(self, request_id: str) -> dict:
        return _envelope(self.code, self.message, self.details, request_id)


class ValidationError(BookkeepingError, ValueError):
    """A precondition on the inputs or on persisted state does not hold."""

    code = "validation_error"
    status_code = 422


class NotFoundError(BookkeepingError, LookupError):
    code = "not_found"
    status_code = 404


class ConcurrentModificationError(BookkeepingError):
    """The row changed underneath the caller (version mismatch)."""

    code = "concurrent_modification"
    status_code = 409


class PaymentProcessorError(BookkeepingError):
    code = "payment_processor_error"
    status_code = 502


def _envelope(code: str, message: str, details: object, request_id: str) -> dict:
    return {"code": code, "message": message, "details": details, "request_id": request_id}


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


def register_error_handlers(app: object) -> None:
    @app.exception_handler(BookkeepingError)  # type: ignore[attr-defined]
    async def bookkeeping_error_handler(
        request: Request, exc: BookkeepingError
    ) -> JSONResponse:
        request_id = _request_id(request)
        log = logger.error if exc.status_code >= 500 else logger.info
        log(
            "%s on %s %s: %s",
            exc.code,
            request.method,
            request.url.path,
            exc.message,
            extra={"request_id": request_id},
        )
        return JSONResponse(status_code=exc.status_code, content=exc.envelope(request_id))

    @app.exception_handler(RequestValidationError)  # type: ignore[attr-defined]
    async def payload_error_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        request_id = _request_id(request)
        logger.warning(
            "Rejected payload on %s %s: %s",
            request.method,
            request.url.path,
            exc.errors(),
            extra={"request_id": request_id},
        )
        return JSONResponse(
            status_code=422,
            content=_envelope("validation_error", "Validation error", exc.errors(), request_id),
        )

    @app.exception_handler(Exception)  # type: ignore[attr-defined]
    async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        request_id = _request_id(request)
        logger.exception(
            "Unhandled exception on %s %s",
            request.method,
            request.url.path,
            extra={"request_id": request_id},
        )
        return JSONResponse(
            status_code=500,
            content=_envelope("internal_error", "Internal server error", None, request_id),
        )
