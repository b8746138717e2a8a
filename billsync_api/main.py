"""Billsync API - FastAPI Application Entry Point."""

import logging
import os
import time
import uuid

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from billsync_api import __version__
from billsync_api.config.env import get_cors_allowed_origins
from billsync_api.context import account_id_var, event_id_var, request_id_var
from billsync_api.middleware import AccessGateMiddleware
from billsync_api.routers import auth, checkout, health, user, webhooks
from billsync_api.schemas import ProblemDetail
from billsync_api.utils import configure_json_logging

logger = logging.getLogger(__name__)


def _instance() -> str:
    request_id = request_id_var.get()
    return f"urn:billsync:trace:{request_id}" if request_id else f"urn:billsync:trace:{uuid.uuid4()}"


def _get_title_for_status(status_code: int) -> str:
    """Get human-readable title for HTTP status code."""
    titles = {
        400: "Bad Request",
        401: "Unauthorized",
        403: "Forbidden",
        404: "Not Found",
        409: "Conflict",
        500: "Internal Server Error",
        502: "Bad Gateway",
        503: "Service Unavailable",
    }
    return titles.get(status_code, f"HTTP {status_code}")


# ============================================================================
# RFC 9457 Global Exception Handlers
# ============================================================================


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Handle HTTP exceptions with RFC 9457 Problem Details format.

    Dict details (already Problem Details, e.g. session 401s) pass through
    as-is; string details are wrapped.
    """
    if isinstance(exc.detail, dict) and "status" in exc.detail:
        content = dict(exc.detail)
        content.setdefault("instance", _instance())
    else:
        problem = ProblemDetail(
            type=f"https://billsync.dev/problems/http-{exc.status_code}",
            title=_get_title_for_status(exc.status_code),
            status=exc.status_code,
            detail=exc.detail if exc.detail is not None else _get_title_for_status(exc.status_code),
            instance=_instance(),
        )
        content = problem.model_dump(exclude_none=True)

    return JSONResponse(
        status_code=exc.status_code,
        content=content,
        media_type="application/problem+json",
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handle request validation errors: 422 with application/problem+json."""
    first_error = exc.errors()[0] if exc.errors() else {}
    field = ".".join(str(loc) for loc in first_error.get("loc", []))
    msg = first_error.get("msg", "Validation error")

    problem = ProblemDetail(
        type="https://billsync.dev/problems/validation-error",
        title="Request Validation Failed",
        status=422,
        detail=f"Invalid field '{field}': {msg}",
        instance=_instance(),
    )
    return JSONResponse(
        status_code=422,
        content=problem.model_dump(exclude_none=True),
        media_type="application/problem+json",
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle uncaught exceptions: generic 500, internals stay in the log."""
    problem = ProblemDetail(
        type="https://billsync.dev/problems/internal-error",
        title="Internal Server Error",
        status=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail="An unexpected error occurred. Please try again later.",
        instance=_instance(),
    )
    logger.error(f"Unhandled exception: {type(exc).__name__}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=problem.model_dump(exclude_none=True),
        media_type="application/problem+json",
    )


# ============================================================================
# HTTP middlewares
# ============================================================================


async def http_completion_logging_middleware(request: Request, call_next):
    """Log every HTTP request completion.

    Emits "http.request.completed" with method, path, status_code and
    duration_ms, even when the handler raises (status_code=500). Clears the
    per-request contextvars at start and end so they never leak across
    requests.
    """
    account_id_var.set("")
    event_id_var.set("")

    start_time = time.perf_counter()
    status_code = 500

    try:
        response = await call_next(request)
        status_code = response.status_code
        return response
    finally:
        duration_ms = (time.perf_counter() - start_time) * 1000
        logger.info(
            "http.request.completed",
            extra={
                "method": request.method,
                "path": request.url.path,
                "status_code": status_code,
                "duration_ms": round(duration_ms, 2),
            },
        )
        account_id_var.set("")
        event_id_var.set("")


async def request_id_middleware(request: Request, call_next):
    """Accept or generate X-Request-ID and echo it on the response.

    Registered last so it is the outermost middleware and the contextvar is
    set before any inner middleware logs.
    """
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request_id_var.set(request_id)

    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


def create_app() -> FastAPI:
    """Build the application.

    Middleware order (outermost first): request id, completion log, CORS,
    access gate.
    """
    new_app = FastAPI(
        title="Billsync API",
        description="Subscription reconciliation: Stripe webhooks, checkout callback, session cookie access gate.",
        version=__version__,
    )

    new_app.add_middleware(AccessGateMiddleware)
    new_app.add_middleware(
        CORSMiddleware,
        allow_origins=get_cors_allowed_origins(),  # never "*" with credentials
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "X-Request-ID"],
        expose_headers=["X-Request-ID", "Retry-After"],
    )
    new_app.middleware("http")(http_completion_logging_middleware)
    new_app.middleware("http")(request_id_middleware)

    new_app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    new_app.add_exception_handler(RequestValidationError, validation_exception_handler)
    new_app.add_exception_handler(Exception, general_exception_handler)

    new_app.include_router(health.router, tags=["health"])
    new_app.include_router(webhooks.router)
    new_app.include_router(checkout.router)
    new_app.include_router(user.router)
    new_app.include_router(auth.router)
    return new_app


# Set BILLSYNC_JSON_LOGS=false to disable (defaults to true for production)
if os.getenv("BILLSYNC_JSON_LOGS", "true").lower() != "false":
    configure_json_logging(log_level=os.getenv("LOG_LEVEL", "INFO"))
    logger.info("Structured JSON logging enabled")

app = create_app()
