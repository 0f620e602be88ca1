"""API error handling middleware: consistent error responses.

Registers FastAPI exception handlers that convert dosing exceptions into
standardised ``{"error": {"code": "...", "message": "...", "details": {...}}}``
JSON responses.

Status code mapping:
- ``NotFoundError`` → 404 Not Found
- ``RegimenDiscontinuedError``, ``InventoryMismatchError``,
  ``StaleCoSignError``, ``ConflictError`` → 409 Conflict
- any other ``DosingError`` (``ValidationError``) → 400 Bad Request
- request body/query validation → 422 Unprocessable Entity
- any other ``Exception`` → 500 Internal Server Error
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from dosewatch.api.models import ErrorDetail, ErrorResponse
from dosewatch.dosing.errors import (
    ConflictError,
    DosingError,
    InventoryMismatchError,
    NotFoundError,
    RegimenDiscontinuedError,
    StaleCoSignError,
)

logger = logging.getLogger(__name__)

_STATUS_BY_ERROR: tuple[tuple[type[DosingError], int], ...] = (
    (NotFoundError, 404),
    (RegimenDiscontinuedError, 409),
    (InventoryMismatchError, 409),
    (StaleCoSignError, 409),
    (ConflictError, 409),
)


def status_for(exc: DosingError) -> int:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return 400


def _error_response(status_code: int, detail: ErrorDetail) -> JSONResponse:
    body = ErrorResponse(error=detail)
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body.model_dump()))


async def _handle_dosing_error(
    request: Request,
    exc: DosingError,
) -> JSONResponse:
    status_code = status_for(exc)
    logger.info(
        "%s %s rejected: %s (%s)", request.method, request.url.path, exc.code, exc.message
    )
    return _error_response(
        status_code,
        ErrorDetail(code=exc.code, message=exc.message, details=exc.details or None),
    )


async def _handle_request_validation(
    request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    """Return 422 with the field errors under ``details``."""
    errors = exc.errors()
    message = "; ".join(
        f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg', '')}" for err in errors
    )
    return _error_response(
        422,
        ErrorDetail(
            code="validation_error",
            message=message or "Invalid request",
            details={"errors": errors},
        ),
    )


class CatchAllErrorMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that catches any unhandled exception and returns a 500.

    Sits above the Starlette exception handler layer so that exceptions not
    caught by ``add_exception_handler`` still produce the standard envelope.
    """

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception:
            logger.error(
                "Unhandled exception on %s %s",
                request.method,
                request.url.path,
                exc_info=True,
            )
            return _error_response(
                500, ErrorDetail(code="internal_error", message="Internal server error")
            )


def register_error_handlers(app: FastAPI) -> None:
    """Attach all exception handlers to the FastAPI application.

    Call this from ``create_app()`` after constructing the ``FastAPI`` instance.
    """
    app.add_exception_handler(DosingError, _handle_dosing_error)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, _handle_request_validation)  # type: ignore[arg-type]
    app.add_middleware(CatchAllErrorMiddleware)
