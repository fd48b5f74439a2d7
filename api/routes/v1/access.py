"""
api/routes/v1/access.py -- Administration of principals and the authorization graph.

Routes:
  POST   /api/v1/access/users                        -- create a principal
  GET    /api/v1/access/users/{user_id}              -- roles and effective rules
  PATCH  /api/v1/access/users/{user_id}/status       -- activate, disable or lock
  PUT    /api/v1/access/users/{user_id}/roles        -- replace a principal's roles
  GET    /api/v1/access/users/{user_id}/revocations  -- revocation audit trail
  GET    /api/v1/access/login-logs                   -- login/logout audit trail
  GET    /api/v1/access/permissions                  -- list permission records
  POST   /api/v1/access/permissions                  -- create a permission record
  PATCH  /api/v1/access/permissions/{permission_id}  -- enable or disable one
  PUT    /api/v1/access/roles/{role_id}/permissions  -- replace a role's permission codes
  PUT    /api/v1/access/roles/{role_id}/restful      -- replace a role's RESTful rules
  DELETE /api/v1/access/roles/{role_id}              -- drop a role and its associations
  DELETE /api/v1/access/permissions/{permission_id}  -- drop a permission and its code rules
  DELETE /api/v1/access/revocations/{entry_id}       -- delete one revocation entry
  POST   /api/v1/access/check                        -- dry-run an authorization decision
  POST   /api/v1/access/accounts/{account}/unlock    -- clear brute-force records

Every route is guarded by require_permission at router level, so the caller
needs an explicit rule for this path and method. Each PUT replaces the full
set in one transaction; there is no incremental edit.

admin_access_rules() and admin_permissions() derive the grants for the
bootstrap admin role from this router's own route table, so a new route is
covered by POST /setup without a second list to keep in sync.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from fastapi.routing import APIRoute

from api.models import (
    AuthorizeCheckRequest,
    DecisionResponse,
    LoginLogResponse,
    PermissionCreate,
    PermissionResponse,
    PermissionStatusUpdate,
    PrincipalCreate,
    PrincipalResponse,
    PrincipalStatusUpdate,
    RevocationResponse,
    RolePermissionsUpdate,
    RoleRestfulUpdate,
    RoleRulesResponse,
    RuleResponse,
    UnlockResponse,
    UserAccessResponse,
    UserRolesUpdate,
)
from auth.authorization import AuthorizationEngine
from auth.dependencies import get_auth_service, require_permission, run_bounded
from auth.models import RULE_CODE, RULE_RESTFUL, Permission

# Auth policy: every route requires an explicit allow for its own path + method.
router = APIRouter(dependencies=[Depends(require_permission)])


def _engine(request: Request) -> AuthorizationEngine:
    return get_auth_service(request).authorizer


def _bad_request(exc: ValueError) -> HTTPException:
    return HTTPException(status_code=400, detail={"code": "invalid_graph_update", "message": str(exc)})


def _not_found(what: str) -> HTTPException:
    return HTTPException(status_code=404, detail={"code": "not_found", "message": f"{what} not found."})


def _role_rules(engine: AuthorizationEngine, role_id: int, kind: str) -> RoleRulesResponse:
    rules = engine.policies.rules_for_roles([role_id], kind)
    return RoleRulesResponse(role_id=role_id, rules=[RuleResponse.from_rule(r) for r in rules])


# ---------------------------------------------------------------------------
# Principals
# ---------------------------------------------------------------------------


@router.post("/access/users", response_model=PrincipalResponse, status_code=201)
def create_user(request: Request, body: PrincipalCreate) -> PrincipalResponse:
    """Create a principal. role_id, if given, is also linked in the authorization graph.

    A taken username is 409 conflict.
    """
    service = get_auth_service(request)
    user = service.create_principal(body.username, body.password, role_id=body.role_id, status=body.status)
    return PrincipalResponse.from_user(service.users.get_by_id(user.id) or user)


@router.get("/access/users/{user_id}", response_model=UserAccessResponse)
def get_user_access(request: Request, user_id: int) -> UserAccessResponse:
    engine = _engine(request)
    return UserAccessResponse(
        user_id=user_id,
        role_ids=engine.get_user_roles(user_id),
        rules=[RuleResponse.from_rule(r) for r in engine.get_user_permissions(user_id)],
    )


@router.patch("/access/users/{user_id}/status", response_model=PrincipalResponse)
def patch_user_status(request: Request, user_id: int, body: PrincipalStatusUpdate) -> PrincipalResponse:
    """Set a principal's status. Only active principals may log in or refresh.

    Access tokens already issued stay valid until they expire or are revoked.
    """
    users = get_auth_service(request).users
    if not users.set_status(user_id, body.status):
        raise _not_found("User")
    return PrincipalResponse.from_user(users.get_by_id(user_id))


@router.put("/access/users/{user_id}/roles", response_model=UserAccessResponse)
def put_user_roles(request: Request, user_id: int, body: UserRolesUpdate) -> UserAccessResponse:
    """Replace the principal's full role set. An empty list removes every role."""
    engine = _engine(request)
    roles = engine.sync_user_roles(user_id, body.role_ids)
    return UserAccessResponse(user_id=user_id, role_ids=roles)


@router.get("/access/users/{user_id}/revocations", response_model=list[RevocationResponse])
def list_revocations(request: Request, user_id: int) -> list[RevocationResponse]:
    revocations = get_auth_service(request).revocations
    return [
        RevocationResponse(
            id=e.id,
            token_hash=e.token_hash,
            user_id=e.user_id,
            username=e.username,
            reason=e.reason,
            expires_at=e.expires_at,
            created_at=e.created_at,
        )
        for e in revocations.list_for_user(user_id)
    ]


@router.get("/access/login-logs", response_model=list[LoginLogResponse])
def list_login_logs(
    request: Request,
    user_id: Optional[int] = None,
    username: Optional[str] = Query(default=None, max_length=100),
    limit: int = Query(default=100, ge=1, le=1000),
) -> list[LoginLogResponse]:
    """Login and logout audit entries, newest first.

    A logout row with success=false is a logout whose token revocation failed.
    """
    login_log = get_auth_service(request).login_log
    if login_log is None:
        return []
    entries = login_log.list_recent(user_id=user_id, username=username, limit=limit)
    return [LoginLogResponse.from_entry(e) for e in entries]


@router.post("/access/accounts/{account}/unlock", response_model=UnlockResponse)
def unlock_account(request: Request, account: str) -> UnlockResponse:
    """Forget every failed-login record for the account, across all origins."""
    cleared = get_auth_service(request).unlock(account)
    return UnlockResponse(account=account, records_cleared=cleared)


# ---------------------------------------------------------------------------
# Roles and permissions
# ---------------------------------------------------------------------------


@router.get("/access/permissions", response_model=list[PermissionResponse])
def list_permissions(request: Request) -> list[PermissionResponse]:
    return [PermissionResponse.from_permission(p) for p in _engine(request).policies.list_permissions()]


@router.post("/access/permissions", response_model=PermissionResponse, status_code=201)
def create_permission(request: Request, body: PermissionCreate) -> PermissionResponse:
    """Create a permission record. A taken code is 409 conflict."""
    policies = _engine(request).policies
    permission_id = policies.create_permission(
        Permission(code=body.code, name=body.name, url=body.url, method=body.method)
    )
    return PermissionResponse.from_permission(policies.get_permission(permission_id))


@router.patch("/access/permissions/{permission_id}", response_model=PermissionResponse)
def patch_permission(request: Request, permission_id: int, body: PermissionStatusUpdate) -> PermissionResponse:
    """Enable or disable a permission. Disabled permissions take no part in decisions."""
    policies = _engine(request).policies
    if not policies.set_permission_status(permission_id, body.enabled):
        raise _not_found("Permission")
    return PermissionResponse.from_permission(policies.get_permission(permission_id))


@router.put("/access/roles/{role_id}/permissions", response_model=RoleRulesResponse)
def put_role_permissions(request: Request, role_id: int, body: RolePermissionsUpdate) -> RoleRulesResponse:
    engine = _engine(request)
    try:
        engine.sync_role_permissions(role_id, body.permission_ids)
    except ValueError as exc:
        raise _bad_request(exc) from exc
    return _role_rules(engine, role_id, RULE_CODE)


@router.put("/access/roles/{role_id}/restful", response_model=RoleRulesResponse)
def put_role_restful(request: Request, role_id: int, body: RoleRestfulUpdate) -> RoleRulesResponse:
    engine = _engine(request)
    try:
        engine.sync_role_restful_permissions(role_id, [(r.path, r.method) for r in body.rules])
    except ValueError as exc:
        raise _bad_request(exc) from exc
    return _role_rules(engine, role_id, RULE_RESTFUL)


@router.delete("/access/roles/{role_id}", status_code=204)
def delete_role(request: Request, role_id: int) -> Response:
    _engine(request).delete_role(role_id)
    return Response(status_code=204)


@router.delete("/access/permissions/{permission_id}", status_code=204)
def delete_permission(request: Request, permission_id: int) -> Response:
    if not _engine(request).delete_permission(permission_id):
        raise _not_found("Permission")
    return Response(status_code=204)


@router.delete("/access/revocations/{entry_id}", status_code=204)
def delete_revocation(request: Request, entry_id: int) -> Response:
    """Delete one revocation entry. Its token becomes usable again until it expires."""
    if not get_auth_service(request).revocations.delete(entry_id):
        raise _not_found("Revocation entry")
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Decisions
# ---------------------------------------------------------------------------


@router.post("/access/check", response_model=DecisionResponse)
async def check(request: Request, body: AuthorizeCheckRequest) -> DecisionResponse:
    """Evaluate a decision for any principal without enforcing it.

    Storage failures and missed deadlines surface as 503, never as allowed=true.
    """
    engine = _engine(request)
    decision = await run_bounded(request, engine.authorize, body.user_id, body.resource, body.action)
    return DecisionResponse.from_decision(decision)


# ---------------------------------------------------------------------------
# Bootstrap grants
# ---------------------------------------------------------------------------


def _api_routes() -> list[APIRoute]:
    return [r for r in router.routes if isinstance(r, APIRoute)]


def admin_access_rules(prefix: str = "/api/v1") -> list[tuple[str, str]]:
    """RESTful (path, method) rules covering every route on this router.

    Route templates such as /access/users/{user_id} are used as-is: the
    RESTful matcher treats {name} as a one-segment wildcard.
    """
    return [(prefix + route.path, method) for route in _api_routes() for method in sorted(route.methods)]


def admin_permissions(prefix: str = "/api/v1") -> list[Permission]:
    """Permission records for the routes without path parameters.

    Permission lookup is an exact (url, method) match, so only fixed paths
    can be expressed as permission records.
    """
    return [
        Permission(
            code=f"access:{route.name}",
            name=route.name.replace("_", " "),
            url=prefix + route.path,
            method=method,
        )
        for route in _api_routes()
        if "{" not in route.path
        for method in sorted(route.methods)
    ]
