"""
api/main.py -- FastAPI application entry point for Warden.

Exposes the auth core over HTTP: session endpoints (login, refresh, logout,
me), first-run setup, and administration of principals and the
authorization graph. The core itself lives in
auth/ and knows nothing about this module.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. log_requests       -- one INFO line per request with latency
  2. SlowAPIMiddleware  -- enforces per-route rate limits from api.limiter

Lifespan builds every component once from Settings and injects it (startup),
starts the maintenance tasks, and cancels / closes them symmetrically on
shutdown.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.access import router as access_router
from api.routes.v1.auth import router as auth_router
from api.routes.v1.setup import router as setup_router
from auth.attempts import BruteForceGuard, LoginAttemptStore
from auth.authorization import AuthorizationEngine
from auth.errors import AuthError, StorageError
from auth.login_log import LoginLogStore
from auth.maintenance import maintenance_loop, run_attempt_cleanup, run_revocation_sweep
from auth.policy_store import PolicyStore
from auth.revocation import RevocationStore
from auth.service import AuthService
from auth.store import UserStore
from auth.tokens import TokenManager
from core.config import Settings, get_settings

__version__ = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("warden.api")


# ---------------------------------------------------------------------------
# Component wiring
# ---------------------------------------------------------------------------


def build_auth_service(settings: Settings) -> AuthService:
    """Construct every auth component from settings, sharing one database URL."""
    tokens = TokenManager.from_settings(settings)
    guard = BruteForceGuard(
        LoginAttemptStore(settings.database_url),
        max_failures=settings.login_max_failures,
        block_seconds=settings.login_block_seconds,
        retention_days=settings.login_attempt_retention_days,
    )
    return AuthService(
        users=UserStore(settings.database_url),
        guard=guard,
        tokens=tokens,
        revocations=RevocationStore(tokens, settings.database_url),
        authorizer=AuthorizationEngine(PolicyStore(settings.database_url)),
        login_log=LoginLogStore(settings.database_url),
    )


def close_auth_service(service: AuthService) -> None:
    service.users.close()
    service.guard.close()
    service.revocations.close()
    service.authorizer.policies.close()
    if service.login_log is not None:
        service.login_log.close()


# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters:
      1. Settings first -- a bad SECRET_KEY must stop startup before any
         store opens.
      2. AuthService second -- stores create their tables on construction.
      3. Maintenance tasks last -- they reference the stores.
    """
    settings = get_settings()
    logger.info("Warden API starting up")
    app.state.settings = settings
    service = build_auth_service(settings)
    app.state.auth_service = service
    if service.users.has_users():
        logger.info("Auth initialized")
    else:
        logger.warning("Auth initialized with no principals; POST /api/v1/setup creates the first admin")

    app.state.maintenance_tasks = [
        asyncio.create_task(
            maintenance_loop(
                lambda: run_revocation_sweep(service.revocations),
                settings.revocation_sweep_interval_seconds,
                "revocation_sweep",
            )
        ),
        asyncio.create_task(
            maintenance_loop(
                lambda: run_attempt_cleanup(service.guard),
                settings.attempt_cleanup_interval_seconds,
                "attempt_cleanup",
            )
        ),
    ]

    yield

    # Shutdown: a sweep may be mid-query in a worker thread, so wait for the
    # tasks to finish cancelling before the engines are disposed.
    for task in app.state.maintenance_tasks:
        task.cancel()
    await asyncio.gather(*app.state.maintenance_tasks, return_exceptions=True)
    close_auth_service(service)
    logger.info("Warden API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Warden API",
    description="Token issuance, revocation, brute-force protection and RBAC/RESTful authorization.",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


# ---------------------------------------------------------------------------
# Request logging middleware
#
# Pattern: Interceptor / Chain of Responsibility. Every request passes through
# this coroutine before reaching any route handler. Paths are logged, query
# strings and headers are not: the Authorization header carries a bearer token.
# ---------------------------------------------------------------------------


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
app.include_router(setup_router, prefix="/api/v1", tags=["Setup"])
app.include_router(access_router, prefix="/api/v1", tags=["Access Control"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _envelope(status_code: int, code: str, message: str, detail: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(),
    )


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Render expected auth outcomes (401/403/429) from the error's own code and message.

    Revoked, tampered and malformed tokens all share the invalid_token code,
    so a client cannot tell which check failed.
    """
    response = _envelope(exc.status_code, exc.error_code, exc.message)
    if exc.status_code == 401:
        response.headers["WWW-Authenticate"] = "Bearer"
    return response


@app.exception_handler(StorageError)
async def storage_error_handler(request: Request, exc: StorageError) -> JSONResponse:
    """Storage could not be consulted, or a check missed its deadline: 503, never allow."""
    logger.error("%s on %s %s", exc.error_code, request.method, request.url.path)
    return _envelope(exc.status_code, exc.error_code, exc.message)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded.

    Retry-After tells clients exactly how many seconds to wait before retrying.
    slowapi stores this on the exception as exc.retry_after (int seconds).
    """
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _envelope(429, "rate_limited", "Too many requests.", str(exc))
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return _envelope(422, "validation_error", "Request validation failed.", str(exc.errors()))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Route handlers raise HTTPException with a dict detail ({"code", "message"}).
    When detail is already a structured dict, use it directly as the error
    field rather than stringifying it.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return _envelope(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is written to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _envelope(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit and no auth: load
# balancers must not be throttled or challenged.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
async def health() -> HealthResponse:
    """Return API liveness and current version."""
    return HealthResponse(version=__version__)
