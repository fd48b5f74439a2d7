"""
api/routes/v1/setup.py -- First-run bootstrap of the initial administrator.

Routes:
  POST /api/v1/setup  -- create the first principal (public, one-shot)

The route is public because no principal exists yet to authenticate as. Once
any principal exists it answers 409 setup_complete, so it cannot be used to
mint a second administrator.

The new principal gets settings.admin_role_id, and that role is granted a
RESTful rule for every access-control route plus permission records for the
fixed-path ones. Without this there is no way to reach the access router:
it has no implicit admin bypass.

Security:
  [H2] Rate-limited with the login limit; the password is hashed with bcrypt.
  [M1] AuthService.bootstrap_admin() re-checks has_users() under a lock, so
       two concurrent setup requests cannot both succeed.
"""

from __future__ import annotations

from fastapi import APIRouter, Request

from api.limiter import limiter, login_rate_limit
from api.models import PrincipalResponse, SetupRequest
from api.routes.v1.access import admin_access_rules, admin_permissions
from auth.dependencies import get_auth_service

# Auth policy:
# - POST /api/v1/setup: public -- accepted only while the user table is empty
router = APIRouter()


@limiter.limit(login_rate_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/setup", response_model=PrincipalResponse, status_code=201)
def setup(request: Request, body: SetupRequest) -> PrincipalResponse:
    """Create the initial administrator and grant it every access-control route."""
    service = get_auth_service(request)
    user = service.bootstrap_admin(
        body.username,
        body.password,
        request.app.state.settings.admin_role_id,
        admin_access_rules(),
        admin_permissions(),
    )
    return PrincipalResponse.from_user(service.users.get_by_id(user.id) or user)
