"""
Error handlers for the export API.

Maps the ExportServiceError hierarchy onto HTTP responses with a stable
JSON body:

    {"detail": "...", "error": {"code": "...", "message": "...", "details": {...}}}

Unhandled exceptions are logged and turned into a 500 that does not leak
internals, so the response still passes through CORSMiddleware.
"""

import logging
import traceback

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from exceptions import (
    ExportNotReadyError,
    ExportServiceError,
    ExportValidationError,
    InvalidTransitionError,
    JobNotFoundError,
    PoolShutdownError,
    TransientIOError,
)

logger = logging.getLogger(__name__)

# Most specific first; the first isinstance match wins.
STATUS_CODES: list[tuple[type, int]] = [
    (ExportValidationError, 422),
    (JobNotFoundError, 404),
    (InvalidTransitionError, 409),
    (ExportNotReadyError, 409),
    (TransientIOError, 503),
    (PoolShutdownError, 503),
]


def status_code_for(exc: ExportServiceError) -> int:
    for exc_type, code in STATUS_CODES:
        if isinstance(exc, exc_type):
            return code
    return 500


def error_response(exc: ExportServiceError) -> JSONResponse:
    return JSONResponse(
        status_code=status_code_for(exc),
        content={"detail": exc.message, **exc.to_dict()},
    )


def add_error_handlers(app: FastAPI) -> None:
    """
    Register exception handlers on the app.

    Usage:
        from middleware.error_handler import add_error_handlers
        add_error_handlers(app)
    """

    @app.exception_handler(ExportServiceError)
    async def export_error_handler(request: Request, exc: ExportServiceError):
        code = status_code_for(exc)
        if code >= 500:
            logger.warning(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
        else:
            logger.debug(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
        return error_response(exc)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail},
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=422,
            content={
                "detail": "Validation error",
                "errors": exc.errors(),
            },
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        error_type = type(exc).__name__
        logger.error(
            f"Unhandled exception in {request.method} {request.url.path}: "
            f"{error_type}: {exc or '(no message)'}"
        )
        logger.debug(f"Full traceback:\n{traceback.format_exc()}")
        return JSONResponse(
            status_code=500,
            content={
                "detail": "Internal server error",
                "error_type": error_type,
            },
        )
