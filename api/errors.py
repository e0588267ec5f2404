"""
api/errors.py -- Translate auth core errors into HTTP responses.

The core raises precise AuthError subclasses; clients get a deliberately
coarser picture:

  CodeRejected (InvalidCode, ExpiredCode, TooManyAttempts, CodeNotFound)
                                                        -> 400 code_rejected
      One response for every rejected code so callers cannot tell whether a
      code exists, has expired, or is merely wrong.
  Unauthenticated (incl. BadCredentials, TwoFactorRequired) -> 401
  Forbidden                                             -> 403
  SelfModification                                      -> 400
  NotFound                                              -> 404
  AlreadyEnabled / NotEnabled / NoPendingEnrollment     -> 409
  DeliveryFailed                                        -> 502
  StoreUnavailable                                      -> 503

The precise kind is written to the log before collapsing.

Validation, rate-limit, HTTPException and unexpected errors use the same
{"error": {...}} envelope; install_error_handlers() registers all of them.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded

from api.models import ErrorDetail, ErrorResponse
from auth.errors import (
    AuthError,
    CodeRejected,
    DeliveryFailed,
    EnrollmentStateError,
    Forbidden,
    NotFound,
    SelfModification,
    StoreUnavailable,
    Unauthenticated,
)

logger = logging.getLogger("gatehouse.api")

# Checked in order -- CodeNotFound is both CodeRejected and NotFound and must
# collapse to the generic rejection.
_STATUS_MAP: list[tuple[type[AuthError], int]] = [
    (CodeRejected, 400),
    (Unauthenticated, 401),
    (Forbidden, 403),
    (SelfModification, 400),
    (NotFound, 404),
    (EnrollmentStateError, 409),
    (DeliveryFailed, 502),
    (StoreUnavailable, 503),
]


def status_for(exc: AuthError) -> int:
    for error_type, status_code in _STATUS_MAP:
        if isinstance(exc, error_type):
            return status_code
    return 400


def public_detail(exc: AuthError) -> ErrorDetail:
    """The error as a client may see it."""
    if isinstance(exc, CodeRejected):
        return ErrorDetail(code=CodeRejected.code, message=CodeRejected.message)
    return ErrorDetail(code=exc.code, message=str(exc))


def error_response(exc: AuthError, headers: dict[str, str] | None = None) -> JSONResponse:
    status_code = status_for(exc)
    headers = dict(headers or {})
    if status_code == 401:
        headers.setdefault("WWW-Authenticate", "Bearer")
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=public_detail(exc)).model_dump(),
        headers=headers,
    )


async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Exception handler registered for AuthError on the FastAPI app."""
    log = logger.warning if isinstance(exc, (DeliveryFailed, StoreUnavailable)) else logger.info
    log("%s %s -> %s (%s)", request.method, request.url.path, type(exc).__name__, exc.code)
    return error_response(exc)


# ---------------------------------------------------------------------------
# Non-auth failures, same envelope
# ---------------------------------------------------------------------------


def _envelope(status_code: int, code: str, message: str, detail: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(),
    )


async def rate_limited_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """429 for login / SMS floods. Retry-After lets well-behaved clients back off."""
    logger.warning("Rate limit hit on %s from %s", request.url.path, request.client.host if request.client else "-")
    response = _envelope(429, "rate_limited", "Too many attempts, try again later.", str(exc.detail))
    response.headers["Retry-After"] = str(int(getattr(exc, "retry_after", 60)))
    return response


async def invalid_request_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return _envelope(422, "validation_error", "Request validation failed.", str(exc.errors()))


async def http_error_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Route-level HTTPException. A dict detail is already an error payload."""
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)
    return _envelope(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """500 without internals; the traceback only goes to the log."""
    logger.exception("Unhandled %s on %s %s", type(exc).__name__, request.method, request.url.path)
    return _envelope(500, "internal_error", "Internal server error.")


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AuthError, auth_error_handler)
    app.add_exception_handler(RateLimitExceeded, rate_limited_handler)
    app.add_exception_handler(RequestValidationError, invalid_request_handler)
    app.add_exception_handler(HTTPException, http_error_handler)
    app.add_exception_handler(Exception, unexpected_error_handler)
