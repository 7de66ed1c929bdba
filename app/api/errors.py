"""Exception handlers translating failures into ``{"error": ...}`` bodies.

Client errors carry a short explanation.  Every server-side failure is
reported as an opaque 500; the detail goes to the operator log only.
"""
from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.identity.exceptions import IdentityError, InvalidRequest, InvariantViolation

logger = logging.getLogger(__name__)

INTERNAL_ERROR = "Internal server error."

ROUTE_NOT_FOUND = "Route not found."

# A known path with the wrong method is still an unmatched route.
_UNMATCHED_ROUTE_STATUSES = frozenset({404, 405})

_FRAGMENT_FIELDS = frozenset({"email", "phoneNumber"})


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def _describe_validation_error(exc: RequestValidationError) -> str:
    for err in exc.errors():
        field = next((str(p) for p in reversed(err.get("loc", ())) if str(p) in _FRAGMENT_FIELDS), None)
        if field is not None:
            return f"{field} must be a string"
    return "Request body must be a JSON object with email and/or phoneNumber"


async def validation_error_handler(_: Request, exc: RequestValidationError) -> JSONResponse:
    return _error(400, _describe_validation_error(exc))


async def invalid_request_handler(_: Request, exc: InvalidRequest) -> JSONResponse:
    return _error(400, str(exc))


async def http_error_handler(_: Request, exc: StarletteHTTPException) -> JSONResponse:
    if exc.status_code in _UNMATCHED_ROUTE_STATUSES:
        return _error(404, ROUTE_NOT_FOUND)
    return _error(exc.status_code, str(exc.detail))


async def identity_error_handler(request: Request, exc: IdentityError) -> JSONResponse:
    if isinstance(exc, InvariantViolation):
        # Distinct from ordinary failures: a previous write already broke the
        # one-primary-per-cluster rules.
        logger.critical(
            "Contact cluster invariant violated (path=%s): %s",
            request.url.path, exc, exc_info=exc,
        )
    else:
        logger.error(
            "Identity resolution failed (path=%s, kind=%s)",
            request.url.path, type(exc).__name__, exc_info=exc,
        )
    return _error(500, INTERNAL_ERROR)


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Unhandled exception (path=%s)", request.url.path, exc_info=exc)
    return _error(500, INTERNAL_ERROR)


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(InvalidRequest, invalid_request_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(IdentityError, identity_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
