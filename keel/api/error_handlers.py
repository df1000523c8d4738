"""Error Handlers — error → HTTP response mapping for the pipeline and for FastAPI.

Invariants:
    - KeelError → its own `{error, details?}` envelope, status and headers
    - Any other error → `{message}`, status from its `status` / `status_code`
      attribute or 500; messages of 5xx errors are never sent to the client
    - RequestValidationError (FastAPI-routed endpoints only) → field-level details

Design Decisions:
    - format_error() is shared by the pipeline's error stage and the FastAPI
      handlers, so both surfaces render errors identically
"""

import logging
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from keel.core.errors import ErrorSeverity, KeelError

logger = logging.getLogger(__name__)

GENERIC_MESSAGE = "An unexpected error occurred"


def error_status(error: BaseException) -> int:
    if isinstance(error, KeelError):
        return error.status
    for attribute in ("status", "status_code"):
        value = getattr(error, attribute, None)
        if isinstance(value, int) and 400 <= value <= 599:
            return value
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def format_error(error: BaseException) -> tuple[int, dict[str, Any], dict[str, str]]:
    """Return (status, body, headers) for any error."""
    code = error_status(error)
    if isinstance(error, KeelError):
        return code, error.to_response(), dict(error.headers)
    message = GENERIC_MESSAGE if code >= 500 else (str(error) or GENERIC_MESSAGE)
    return code, {"message": message}, {}


def register_error_handlers(app: FastAPI) -> None:
    """Register all global error handlers on the FastAPI app."""
    _register_keel_error_handler(app)
    _register_validation_error_handler(app)
    _register_generic_error_handler(app)


def _register_keel_error_handler(app: FastAPI) -> None:

    @app.exception_handler(KeelError)
    async def keel_error_handler(request: Request, exc: KeelError):
        logger.error(
            f"KeelError: {exc.message}",
            extra={"error_code": exc.code, "path": request.url.path},
        )
        code, body, headers = format_error(exc)
        return JSONResponse(status_code=code, content=body, headers=headers)


def _register_validation_error_handler(app: FastAPI) -> None:

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(
        request: Request, exc: RequestValidationError,
    ):
        logger.warning(
            f"Validation error on {request.url.path}: {exc.errors()}",
        )
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=_build_validation_error_response(exc),
        )


def _register_generic_error_handler(app: FastAPI) -> None:

    @app.exception_handler(Exception)
    async def generic_error_handler(request: Request, exc: Exception):
        """Catch-all: never leaks internal details."""
        logger.error(
            f"Unhandled exception on {request.url.path}: {exc}",
            exc_info=True,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": {
                    "code": "INTERNAL_ERROR",
                    "message": GENERIC_MESSAGE,
                    "category": "internal",
                    "severity": ErrorSeverity.CRITICAL.value,
                },
            },
        )


def _build_validation_error_response(exc: RequestValidationError) -> dict:
    return {
        "error": {
            "code": "VALIDATION_ERROR",
            "message": "Invalid request data",
            "category": "validation",
            "severity": ErrorSeverity.ERROR.value,
        },
        "details": {
            ".".join(str(loc) for loc in e["loc"]): [
                {"message": e["msg"], "keyword": e["type"], "params": {}},
            ]
            for e in exc.errors()
        },
    }
