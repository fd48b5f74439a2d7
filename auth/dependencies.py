"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication and authorization.

get_current_claims()  Authorization: Bearer <token> -> validated access claims.
                      Revoked, expired, malformed or tampered tokens raise an
                      InvalidTokenError subclass (401).
require_permission()  get_current_claims() plus an authorization decision for
                      the request's own path and method (403 on deny).

Both raise the typed auth errors and let the exception handlers in api/main.py
render them, so no route builds its own 401/403 body.

Every check that touches storage runs through run_with_deadline(): a worker
thread bounded by auth_check_timeout_seconds. A check that misses the deadline
raises IndeterminateError (503) and is never treated as an allow.

Layer rule: no imports from api/.
  auth/dependencies.py may import from fastapi (for Depends/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any, TypeVar

from fastapi import Depends, Request

from auth.errors import IndeterminateError
from auth.models import TokenClaims
from auth.service import AuthService

logger = logging.getLogger("warden.auth")

T = TypeVar("T")

_DEFAULT_TIMEOUT = 5.0


def get_auth_service(request: Request) -> AuthService:
    """Return the AuthService built by the app lifespan."""
    return request.app.state.auth_service


def get_client_origin(request: Request) -> str:
    """Client address used as the brute-force origin key."""
    return request.client.host if request.client else "unknown"


def _check_timeout(request: Request) -> float:
    settings = getattr(request.app.state, "settings", None)
    return settings.auth_check_timeout_seconds if settings is not None else _DEFAULT_TIMEOUT


async def run_with_deadline(fn: Callable[..., T], *args: Any, timeout: float = _DEFAULT_TIMEOUT) -> T:
    """Run a blocking check in a worker thread, bounded by timeout seconds.

    Raises IndeterminateError if the deadline passes first. Exceptions raised
    by fn propagate unchanged.
    """
    try:
        return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout=timeout)
    except asyncio.TimeoutError as exc:
        logger.error("%s did not finish within %.1fs", getattr(fn, "__name__", "check"), timeout)
        raise IndeterminateError() from exc


async def run_bounded(request: Request, fn: Callable[..., T], *args: Any) -> T:
    """run_with_deadline() with this app's auth_check_timeout_seconds.

    Route handlers that call AuthService directly (login, refresh, logout)
    use this so their storage checks share the same deadline as the
    dependencies below.
    """
    return await run_with_deadline(fn, *args, timeout=_check_timeout(request))


async def get_current_claims(request: Request) -> TokenClaims:
    """Require a valid, unrevoked access token.

    Use as a FastAPI dependency:
        @router.get("/me")
        async def route(claims: TokenClaims = Depends(get_current_claims)): ...
    """
    service = get_auth_service(request)
    return await run_with_deadline(
        service.authenticate,
        request.headers.get("Authorization"),
        timeout=_check_timeout(request),
    )


async def require_permission(request: Request, claims: TokenClaims = Depends(get_current_claims)) -> TokenClaims:
    """Require that the caller may perform this request's method on this request's path.

    Use as a FastAPI dependency:
        @router.put("/roles/{role_id}/rules", dependencies=[Depends(require_permission)])
    """
    service = get_auth_service(request)
    await run_with_deadline(
        service.authorize,
        claims,
        request.url.path,
        request.method,
        timeout=_check_timeout(request),
    )
    return claims
