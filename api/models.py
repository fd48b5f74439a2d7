"""
API request and response models for the Warden REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auth.models import PRINCIPAL_STATUSES, Decision, LoginLogEntry, Permission, RoleRule, TokenPair, User

# login_attempts.account column width, and bcrypt's 72-byte input ceiling.
_MAX_ACCOUNT = 100
_MAX_PASSWORD = 72
_MIN_NEW_PASSWORD = 8


def _known_status(value: str) -> str:
    if value not in PRINCIPAL_STATUSES:
        raise ValueError(f"status must be one of {', '.join(PRINCIPAL_STATUSES)}")
    return value


# ---------------------------------------------------------------------------
# Auth -- request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=1, max_length=_MAX_ACCOUNT)
    password: str = Field(min_length=1, max_length=_MAX_PASSWORD)
    remember_me: bool = False


class RefreshRequest(BaseModel):
    """Request body for POST /api/v1/auth/refresh."""

    refresh_token: str = Field(min_length=1)


class LogoutRequest(BaseModel):
    """Optional body for POST /api/v1/auth/logout. The access token comes from the header."""

    refresh_token: Optional[str] = None


# ---------------------------------------------------------------------------
# Auth -- response models
# ---------------------------------------------------------------------------


class TokenResponse(BaseModel):
    """Token pair returned by login and refresh (OAuth 2.0 field names)."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    token_type: str = "bearer"  # noqa: S105 # nosec B105 -- OAuth token type
    expires_in: int
    refresh_expires_in: int

    @classmethod
    def from_pair(cls, pair: TokenPair) -> "TokenResponse":
        return cls(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            token_type=pair.token_type,
            expires_in=pair.expires_in,
            refresh_expires_in=pair.refresh_expires_in,
        )


class LogoutResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str = "Logged out."
    revoked: bool


class MeResponse(BaseModel):
    """Identity of the caller as carried in the access token, plus graph roles."""

    model_config = ConfigDict(frozen=True)

    user_id: int
    username: str
    role_id: Optional[int]
    roles: list[int]
    remember_me: bool
    expires_at: float


# ---------------------------------------------------------------------------
# Access control -- request models
# ---------------------------------------------------------------------------


class UserRolesUpdate(BaseModel):
    """Request body for PUT /api/v1/access/users/{user_id}/roles. Replaces the full set."""

    role_ids: list[int] = Field(default_factory=list, max_length=100)


class RolePermissionsUpdate(BaseModel):
    """Request body for PUT /api/v1/access/roles/{role_id}/permissions. Replaces the full set."""

    permission_ids: list[int] = Field(default_factory=list, max_length=500)


class RestfulRule(BaseModel):
    """One RESTful rule: a path pattern and an HTTP-method pattern."""

    model_config = ConfigDict(str_strip_whitespace=True)

    path: str = Field(min_length=1, max_length=255, description="e.g. /users/* or /orders/:id")
    method: str = Field(default="*", min_length=1, max_length=100, description="'*' or a regex such as GET|POST")

    @field_validator("path")
    @classmethod
    def path_is_absolute(cls, value: str) -> str:
        if not value.startswith("/"):
            raise ValueError("path must start with '/'")
        return value


class RoleRestfulUpdate(BaseModel):
    """Request body for PUT /api/v1/access/roles/{role_id}/restful. Replaces the full set."""

    rules: list[RestfulRule] = Field(default_factory=list, max_length=500)


class SetupRequest(BaseModel):
    """Request body for POST /api/v1/setup. Accepted only while no principal exists."""

    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=1, max_length=_MAX_ACCOUNT)
    password: str = Field(min_length=_MIN_NEW_PASSWORD, max_length=_MAX_PASSWORD)


class PrincipalCreate(BaseModel):
    """Request body for POST /api/v1/access/users."""

    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=1, max_length=_MAX_ACCOUNT)
    password: str = Field(min_length=_MIN_NEW_PASSWORD, max_length=_MAX_PASSWORD)
    role_id: Optional[int] = None
    status: str = "active"

    @field_validator("status")
    @classmethod
    def status_is_known(cls, value: str) -> str:
        return _known_status(value)


class PrincipalStatusUpdate(BaseModel):
    """Request body for PATCH /api/v1/access/users/{user_id}/status."""

    status: str

    @field_validator("status")
    @classmethod
    def status_is_known(cls, value: str) -> str:
        return _known_status(value)


class PermissionCreate(BaseModel):
    """Request body for POST /api/v1/access/permissions."""

    model_config = ConfigDict(str_strip_whitespace=True)

    code: str = Field(min_length=1, max_length=100)
    name: str = Field(default="", max_length=100)
    url: Optional[str] = Field(default=None, max_length=255)
    method: Optional[str] = Field(default=None, max_length=10)


class PermissionStatusUpdate(BaseModel):
    """Request body for PATCH /api/v1/access/permissions/{permission_id}."""

    enabled: bool


class AuthorizeCheckRequest(BaseModel):
    """Request body for POST /api/v1/access/check."""

    model_config = ConfigDict(str_strip_whitespace=True)

    user_id: int
    resource: str = Field(min_length=1, max_length=255)
    action: str = Field(min_length=1, max_length=10)


# ---------------------------------------------------------------------------
# Access control -- response models
# ---------------------------------------------------------------------------


class RuleResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    role_id: int
    kind: str
    obj: str
    act: str

    @classmethod
    def from_rule(cls, rule: RoleRule) -> "RuleResponse":
        return cls(role_id=rule.role_id, kind=rule.kind, obj=rule.obj, act=rule.act)


class UserAccessResponse(BaseModel):
    """Roles and effective rules for one principal."""

    model_config = ConfigDict(frozen=True)

    user_id: int
    role_ids: list[int]
    rules: list[RuleResponse] = Field(default_factory=list)


class RoleRulesResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    role_id: int
    rules: list[RuleResponse]


class DecisionResponse(BaseModel):
    """Outcome of POST /api/v1/access/check."""

    model_config = ConfigDict(frozen=True)

    allowed: bool
    reason: str
    strategy: str

    @classmethod
    def from_decision(cls, decision: Decision) -> "DecisionResponse":
        return cls(allowed=decision.allowed, reason=decision.reason, strategy=decision.strategy)


class RevocationResponse(BaseModel):
    """One revocation entry. The token itself is never returned, only its hash."""

    model_config = ConfigDict(frozen=True)

    id: int
    token_hash: str
    user_id: int
    username: str
    reason: str
    expires_at: float
    created_at: Optional[str]


class UnlockResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    account: str
    records_cleared: int


class PrincipalResponse(BaseModel):
    """A principal as seen by administrators. The password hash is never returned."""

    model_config = ConfigDict(frozen=True)

    id: int
    username: str
    role_id: Optional[int]
    status: str
    created_at: Optional[str] = None
    last_login: Optional[str] = None

    @classmethod
    def from_user(cls, user: User) -> "PrincipalResponse":
        return cls(
            id=user.id,
            username=user.username,
            role_id=user.role_id,
            status=user.status,
            created_at=user.created_at,
            last_login=user.last_login,
        )


class PermissionResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    code: str
    name: str
    url: Optional[str]
    method: Optional[str]
    enabled: bool

    @classmethod
    def from_permission(cls, permission: Permission) -> "PermissionResponse":
        return cls(
            id=permission.id,
            code=permission.code,
            name=permission.name,
            url=permission.url,
            method=permission.method,
            enabled=permission.enabled,
        )


class LoginLogResponse(BaseModel):
    """One login audit row. Failed logins for unknown accounts have user_id null."""

    model_config = ConfigDict(frozen=True)

    id: int
    user_id: Optional[int]
    username: str
    origin: Optional[str]
    event: str
    success: bool
    message: str
    created_at: Optional[str]

    @classmethod
    def from_entry(cls, entry: LoginLogEntry) -> "LoginLogResponse":
        return cls(
            id=entry.id,
            user_id=entry.user_id,
            username=entry.username,
            origin=entry.origin,
            event=entry.event,
            success=entry.success,
            message=entry.message,
            created_at=entry.created_at,
        )


# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
