"""FastAPI middleware for request tracing, error handling, and CORS.

Middleware stack (applied bottom-up):
    1. RequestIDMiddleware — injects X-Request-ID into every request/response
    2. ErrorHandlerMiddleware — catches domain exceptions -> structured JSON errors
    3. CORSMiddleware — handles browser-based front-ends

Error mapping:
    ValidationError                          -> 422
    EntityNotFoundError                      -> 404
    ConflictError / InvalidStateError /
    ServiceUnavailableError / AlreadyResolved -> 409
    FundingFailedError                       -> 402
    TransferTimeoutError / OracleTimeoutError -> 504 (outcome unknown, re-read first)
    TransferError / OracleError / LedgerError -> 502
    any other ClearinghouseError             -> 400
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING

from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from session_clearinghouse.domain.exceptions import (
    AlreadyResolvedError,
    ClearinghouseError,
    ConflictError,
    EntityNotFoundError,
    FundingFailedError,
    InvalidStateError,
    LedgerError,
    OracleError,
    OracleTimeoutError,
    ServiceUnavailableError,
    TransferError,
    TransferTimeoutError,
    ValidationError,
)
from session_clearinghouse.logging_config import bind_request_id, get_logger

if TYPE_CHECKING:
    from fastapi import FastAPI, Request, Response

logger = get_logger(__name__)

# Order matters: subclasses before their bases
_STATUS_BY_ERROR: tuple[tuple[type[ClearinghouseError], int], ...] = (
    (ValidationError, 422),
    (EntityNotFoundError, 404),
    (FundingFailedError, 402),
    (TransferTimeoutError, 504),
    (OracleTimeoutError, 504),
    (TransferError, 502),
    (OracleError, 502),
    (LedgerError, 502),
    (ConflictError, 409),
    (InvalidStateError, 409),
    (ServiceUnavailableError, 409),
    (AlreadyResolvedError, 409),
)


def status_for(exc: ClearinghouseError) -> int:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return 400


def _error_body(exc: ClearinghouseError) -> dict:
    body: dict = {"error": exc.code, "message": exc.message}
    # Context the caller needs to decide between re-read, retry and escalate
    for attr in (
        "entity_id",
        "current_status",
        "current_state",
        "attempted",
        "service_id",
        "escrow_id",
        "dispute_id",
        "idempotency_key",
        "field",
    ):
        value = getattr(exc, attr, None)
        if value is not None:
            body[attr] = str(value)
    return body


# ---------------------------------------------------------------------------
# 1. Request ID Middleware
# ---------------------------------------------------------------------------
class RequestIDMiddleware(BaseHTTPMiddleware):
    """Inject a unique X-Request-ID into every request for log correlation."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        # Use client-provided ID or generate one
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))

        bind_request_id(request_id)

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


# ---------------------------------------------------------------------------
# 2. Error Handler Middleware
# ---------------------------------------------------------------------------
class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """Catch domain exceptions and return structured JSON error responses."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        try:
            return await call_next(request)
        except ClearinghouseError as exc:
            status_code = status_for(exc)
            log = logger.error if status_code >= 500 else logger.warning
            log("domain.error", error=exc.message, code=exc.code, status=status_code)
            return JSONResponse(status_code=status_code, content=_error_body(exc))
        except Exception as exc:
            logger.exception("unhandled.error", error=str(exc))
            return JSONResponse(
                status_code=500,
                content={
                    "error": "INTERNAL_ERROR",
                    "message": "An unexpected error occurred",
                },
            )


# ---------------------------------------------------------------------------
# Setup function
# ---------------------------------------------------------------------------
def setup_middleware(app: FastAPI) -> None:
    """Register all middleware on the FastAPI application.

    Order matters — middleware is applied bottom-up, so the last added
    middleware runs first.
    """
    # CORS (runs first)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Tighten in production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Error handling (runs second)
    app.add_middleware(ErrorHandlerMiddleware)

    # Request ID (runs last = outermost)
    app.add_middleware(RequestIDMiddleware)
