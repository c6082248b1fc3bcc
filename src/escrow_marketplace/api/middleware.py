"""Request tracing, domain-error translation and CORS.

Outermost first:
    RequestContextMiddleware  binds request_id (and the caller's id) into
                              structlog context, echoes X-Request-ID
    ErrorHandlerMiddleware    EscrowError -> status + {error, message, ...}
    CORSMiddleware
"""

from __future__ import annotations

import time
import uuid
from typing import TYPE_CHECKING

from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from escrow_marketplace.domain.exceptions import (
    ConcurrentModificationError,
    EscrowError,
    GuardViolationError,
    InvalidStateTransitionError,
    InvariantViolationError,
    NotFoundError,
    RateLimitExceededError,
    UpstreamUnavailableError,
    ValidationError,
)
from escrow_marketplace.logging_config import (
    bind_request_context,
    clear_request_context,
    get_logger,
)

if TYPE_CHECKING:
    from fastapi import FastAPI, Request, Response

logger = get_logger(__name__)

# Most specific first: InvalidStateTransition and RateLimitExceeded are guards too.
STATUS_BY_FAMILY: tuple[tuple[type[EscrowError] | tuple[type[EscrowError], ...], int], ...] = (
    (ValidationError, 400),
    (NotFoundError, 404),
    ((ConcurrentModificationError, InvalidStateTransitionError), 409),
    (RateLimitExceededError, 429),
    (GuardViolationError, 403),
    (UpstreamUnavailableError, 502),
    (InvariantViolationError, 500),
)


def status_code_for(exc: EscrowError) -> int:
    for family, status_code in STATUS_BY_FAMILY:
        if isinstance(exc, family):
            return status_code
    return 400


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        clear_request_context()
        bind_request_context(request_id=request_id)
        actor = request.headers.get("X-User-ID") or request.headers.get("X-Admin-ID")
        if actor:
            bind_request_context(actor_id=actor)

        started = time.perf_counter()
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        logger.debug(
            "http.request",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=round((time.perf_counter() - started) * 1000, 1),
        )
        return response


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        try:
            return await call_next(request)
        except EscrowError as exc:
            status_code = status_code_for(exc)
            log = logger.error if status_code >= 500 else logger.warning
            log(
                "domain.rejected",
                code=exc.code,
                error=exc.message,
                status_code=status_code,
                path=request.url.path,
            )
            return JSONResponse(status_code=status_code, content=exc.to_dict())
        except Exception as exc:
            logger.exception("unhandled.error", error=str(exc), path=request.url.path)
            return JSONResponse(
                status_code=500,
                content={"error": "INTERNAL_ERROR", "message": "An unexpected error occurred"},
            )


def setup_middleware(app: FastAPI) -> None:
    """Register middleware. Starlette runs the last one added first."""
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(ErrorHandlerMiddleware)
    app.add_middleware(RequestContextMiddleware)
