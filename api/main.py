"""
api/main.py -- FastAPI application entry point for suiteauth.

Exposes AuthSessionManager over HTTP: login, refresh, logout and session
administration under /api/v1.

Run with:  uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. log_requests            -- method, path, status, latency for every request
  2. auth_context_middleware -- attaches request.state.auth (fail-open)
  3. CORSMiddleware          -- adds CORS headers for allowed browser origins
  4. SlowAPIMiddleware       -- enforces per-route rate limits from api.limiter

Lifespan handles startup (refresh store, user repository, session manager,
sweep task) and shutdown (cancel sweep task, close store) symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.concurrency import run_in_threadpool

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.dependencies import auth_context_middleware
from auth.factory import build_refresh_store, build_session_manager
from auth.sessions import AuthSessionManager
from auth.users import InMemoryUserRepository
from core.config import get_settings
from core.errors import InternalServerError, ServiceError

__version__ = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("suiteauth.api")

# ---------------------------------------------------------------------------
# Background sweep task
# ---------------------------------------------------------------------------


async def _sweep_loop(sessions: AuthSessionManager, interval_seconds: int) -> None:
    """Delete expired refresh tokens every interval_seconds.

    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine. A failed sweep is logged and
    retried on the next tick.
    """
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await run_in_threadpool(sessions.sweep_expired)
        except ServiceError:
            logger.exception("Refresh token sweep failed")


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the auth components on startup and release them on shutdown.

    Startup order matters:
      1. Refresh store first -- the token service persists into it.
      2. User repository and session manager second.
      3. Sweep task last -- it calls the session manager.
    """
    settings = get_settings()
    logger.info("suiteauth API starting up (refresh_store=%s)", settings.refresh_store)

    store = build_refresh_store(settings)
    users = (
        InMemoryUserRepository.from_json_file(settings.users_file)
        if settings.users_file
        else InMemoryUserRepository()
    )
    app.state.refresh_store = store
    app.state.users = users
    app.state.sessions = build_session_manager(settings, users, store)

    app.state.sweep_task = None
    if store is not None and settings.sweep_interval_seconds > 0:
        app.state.sweep_task = asyncio.create_task(_sweep_loop(app.state.sessions, settings.sweep_interval_seconds))

    yield

    if app.state.sweep_task is not None:
        app.state.sweep_task.cancel()
    if store is not None:
        store.close()
    logger.info("suiteauth API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="suiteauth API",
    description="Password login, JWT access tokens and revocable refresh tokens.",
    version=__version__,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Each add_middleware() call wraps everything registered before it, so the
# @app.middleware functions below (registered last) see the request first:
# log_requests is outermost, SlowAPIMiddleware innermost.
# ---------------------------------------------------------------------------

app.add_middleware(SlowAPIMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost", "http://localhost:3000", "http://127.0.0.1"],
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "Authorization"],
    allow_credentials=True,
    max_age=3600,
)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter

app.middleware("http")(auth_context_middleware)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _error_response(status_code: int, code: str, message: str, detail: str | None = None) -> JSONResponse:
    response = JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(),
    )
    response.headers["Cache-Control"] = "no-store"
    return response


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    """Translate auth-subsystem errors into the error envelope.

    Validation and authorization messages are safe to return as-is. System
    errors are logged with their cause chain and context, and the client
    receives only a generic message.
    """
    if isinstance(exc, InternalServerError):
        logger.error(
            "%s on %s %s: %s %s",
            type(exc).__name__,
            request.method,
            request.url.path,
            exc.message,
            exc.context,
            exc_info=exc,
        )
        return _error_response(exc.status_code, exc.error_code, "An unexpected error occurred.")
    if exc.context:
        logger.info("%s on %s %s: %s", exc.error_code, request.method, request.url.path, exc.context)
    return _error_response(exc.status_code, exc.error_code, exc.message)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error_response(429, "rate_limited", "Too many requests.", str(exc))
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return _error_response(422, "validation_error", "Request validation failed.", str(exc.errors()))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions."""
    return _error_response(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is written to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error_response(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit applied.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
async def health() -> HealthResponse:
    """Return API liveness, version and the configured refresh-token backend."""
    return HealthResponse(version=__version__, refresh_store=get_settings().refresh_store)
