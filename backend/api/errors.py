"""
Error translation for the HTTP surface.

Every StardeckError raised by a router (or anything it calls) becomes an
HTTP response with the status matching its category.
"""

import logging

from fastapi import Request
from fastapi.responses import JSONResponse

from engine.errors import (
    ConflictError,
    EngineTimeoutError,
    EngineUnavailableError,
    NotFoundError,
    StackCommandError,
    StardeckError,
    ValidationFailedError,
)

logger = logging.getLogger(__name__)

STATUS_CODES = [
    (NotFoundError, 404),
    (ConflictError, 409),
    (ValidationFailedError, 400),
    (EngineTimeoutError, 504),
    (EngineUnavailableError, 503),
]


def status_code_for(error: StardeckError) -> int:
    for error_type, status_code in STATUS_CODES:
        if isinstance(error, error_type):
            return status_code
    return 500


def error_body(error: StardeckError) -> dict:
    body = {"detail": str(error), "category": error.category}
    if error.step:
        body["step"] = error.step
    if isinstance(error, StackCommandError):
        body["exit_code"] = error.exit_code
        body["output"] = error.output
    return body


async def stardeck_exception_handler(request: Request, exc: StardeckError) -> JSONResponse:
    """Application-wide handler registered for StardeckError."""
    status_code = status_code_for(exc)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected ({status_code}): {exc}")
    return JSONResponse(status_code=status_code, content=error_body(exc))
