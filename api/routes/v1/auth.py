"""
api/routes/v1/auth.py -- Session endpoints: login, refresh, logout, me.

Routes:
  POST /api/v1/auth/login    -- password login; returns an access/refresh pair
  POST /api/v1/auth/refresh  -- new pair from a refresh token
  POST /api/v1/auth/logout   -- revoke the presented tokens (requires auth)
  GET  /api/v1/auth/me       -- caller identity and graph roles (requires auth)

Security:
  [H2] POST /login is rate-limited per client IP (LOGIN_RATE_LIMIT) on top of
       the per-(account, origin) brute-force guard inside AuthService.login().
  [C1] AuthService.login() runs the timing-equalized credential check. Do NOT
       inline get_by_username() + verify_password() here.
  [M5] Cache-Control: no-store on every response that carries tokens.

Errors are raised as auth.errors types and rendered by the handlers in
api/main.py; nothing here builds a 401 body by hand.

Every AuthService call runs through run_bounded(), so a storage check that
misses auth_check_timeout_seconds answers 503 indeterminate instead of
holding the request open.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter, login_rate_limit
from api.models import LoginRequest, LogoutRequest, LogoutResponse, MeResponse, RefreshRequest, TokenResponse
from auth.dependencies import get_auth_service, get_client_origin, get_current_claims, run_bounded
from auth.errors import IndeterminateError
from auth.models import TokenClaims
from auth.tokens import extract_bearer_token

# Auth policy:
# - POST /api/v1/auth/login:    public -- login endpoint must be unauthenticated
# - POST /api/v1/auth/refresh:  public -- the refresh token is the credential
# - POST /api/v1/auth/logout:   requires auth (get_current_claims)
# - GET  /api/v1/auth/me:       requires auth (get_current_claims)
router = APIRouter()

logger = logging.getLogger("warden.api")


def _token_response(body: TokenResponse) -> JSONResponse:
    resp = JSONResponse(status_code=200, content=body.model_dump())
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(login_rate_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=TokenResponse)
async def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with username and password; return a token pair.

    Wrong username and wrong password produce the same invalid_credentials
    error. A blocked (account, origin) pair gets account_blocked (429)
    without any password check.
    """
    service = get_auth_service(request)
    _, pair = await run_bounded(
        request,
        service.login,
        body.username,
        body.password,
        get_client_origin(request),
        body.remember_me,
    )
    return _token_response(TokenResponse.from_pair(pair))


@router.post("/auth/refresh", response_model=TokenResponse)
async def refresh(request: Request, body: RefreshRequest) -> JSONResponse:
    """Exchange a refresh token for a new pair. remember_me carries over.

    The presented refresh token stays valid until it expires or is revoked
    through logout.
    """
    service = get_auth_service(request)
    pair = await run_bounded(request, service.refresh, body.refresh_token)
    return _token_response(TokenResponse.from_pair(pair))


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout", response_model=LogoutResponse)
async def logout(
    request: Request,
    body: Optional[LogoutRequest] = None,
    claims: TokenClaims = Depends(get_current_claims),
) -> LogoutResponse:
    """Revoke the bearer access token, and the refresh token if supplied.

    Always 200: the client discards its tokens regardless. revoked=false
    reports that a token could not be recorded as revoked, including when
    the revocation did not finish before the deadline.
    """
    service = get_auth_service(request)
    access_token = extract_bearer_token(request.headers.get("Authorization"))
    try:
        revoked = await run_bounded(
            request,
            service.logout,
            access_token,
            claims.user_id,
            claims.username,
            body.refresh_token if body else None,
            get_client_origin(request),
        )
    except IndeterminateError:
        logger.warning("Logout for user_id=%s missed its deadline; revocation not confirmed", claims.user_id)
        revoked = False
    return LogoutResponse(revoked=revoked)


@router.get("/auth/me", response_model=MeResponse)
def me(request: Request, claims: TokenClaims = Depends(get_current_claims)) -> MeResponse:
    """Return identity information for the currently authenticated principal."""
    service = get_auth_service(request)
    return MeResponse(
        user_id=claims.user_id,
        username=claims.username,
        role_id=claims.role_id,
        roles=service.authorizer.get_user_roles(claims.user_id),
        remember_me=claims.remember_me,
        expires_at=claims.expires_at,
    )
