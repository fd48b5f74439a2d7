"""
auth/models.py -- Domain dataclasses for authentication and authorization.

Pattern: Data class (pure data container, near-zero logic). Stores and
services do the work; these own the domain shape.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass, field

# Principal status values. Only "active" principals may log in or refresh.
STATUS_ACTIVE = "active"
STATUS_DISABLED = "disabled"
STATUS_LOCKED = "locked"
PRINCIPAL_STATUSES = (STATUS_ACTIVE, STATUS_DISABLED, STATUS_LOCKED)

ACCESS_TOKEN = "access"  # noqa: S105 # nosec B105 -- token type label, not a secret
REFRESH_TOKEN = "refresh"  # noqa: S105 # nosec B105

# Login audit events.
EVENT_LOGIN = "login"
EVENT_LOGOUT = "logout"

# Role rule kinds in the policy graph.
RULE_CODE = "code"  # role -> permission code, action "*"
RULE_RESTFUL = "restful"  # role -> path pattern + method pattern


@dataclass
class User:
    """A principal: an identity that can log in and be granted roles.

    role_id is the principal's primary role as carried in token claims. The
    authorization graph (user-role links) is what decisions are made on; a
    principal may hold several roles there.
    """

    username: str
    hashed_password: str
    role_id: int | None = None
    id: int | None = None
    status: str = STATUS_ACTIVE  # "active", "disabled", "locked"
    created_at: str | None = None
    last_login: str | None = None  # ISO 8601
    last_login_ip: str | None = None

    @property
    def is_active(self) -> bool:
        return self.status == STATUS_ACTIVE


@dataclass
class LoginAttempt:
    """Failed-login bookkeeping for one (account, origin) pair.

    blocked_at is an epoch timestamp. A block is never cleared by a background
    job; whether it still applies is always computed against the clock
    (see BruteForceGuard.is_blocked_record).
    """

    account: str
    origin: str
    attempts: int = 0
    last_try: float = 0.0
    blocked_at: float | None = None
    id: int | None = None
    created_at: float | None = None

    def reset(self) -> None:
        self.attempts = 0
        self.blocked_at = None


@dataclass
class TokenClaims:
    """Validated payload of an access or refresh token."""

    user_id: int
    username: str
    role_id: int | None
    token_type: str  # "access" or "refresh"
    remember_me: bool
    issued_at: float
    expires_at: float
    issuer: str
    token_id: str = ""


@dataclass
class TokenPair:
    """An access/refresh pair as returned by login and refresh.

    expires_in and refresh_expires_in are lifetimes in seconds, matching the
    OAuth 2.0 token response convention.
    """

    access_token: str
    refresh_token: str
    expires_in: int
    refresh_expires_in: int
    token_type: str = "bearer"  # noqa: S105 # nosec B105 -- OAuth token type


@dataclass
class RevocationEntry:
    """A token that must be rejected before its natural expiry.

    token_hash is HMAC-SHA256(SECRET_KEY, token). The bearer token itself is
    never persisted. expires_at is the token's own exp claim, so the entry can
    be swept once the token would have expired anyway.
    """

    token_hash: str
    user_id: int
    username: str
    reason: str
    expires_at: float
    id: int | None = None
    created_at: str | None = None


@dataclass
class LoginLogEntry:
    """One audit row per login outcome or logout.

    user_id is None when the account name did not resolve to a principal.
    A logout whose token revocation failed is recorded with success=False.
    """

    username: str
    event: str  # "login" or "logout"
    success: bool
    message: str = ""
    user_id: int | None = None
    origin: str | None = None
    id: int | None = None
    created_at: str | None = None


@dataclass
class Permission:
    """A classical permission record: a code bound to a (url, method) pair.

    Only enabled permissions take part in authorization decisions.
    """

    code: str
    name: str = ""
    url: str | None = None
    method: str | None = None
    enabled: bool = True
    id: int | None = None


@dataclass
class RoleRule:
    """One edge in the policy graph, owned by a role.

    kind == "code":    obj is a permission code, act is "*".
    kind == "restful": obj is a path pattern, act is an HTTP-method pattern.
    """

    role_id: int
    kind: str
    obj: str
    act: str = "*"
    effect: str = "allow"
    id: int | None = None

    @property
    def subject(self) -> str:
        return f"role:{self.role_id}"


@dataclass
class Decision:
    """Outcome of an authorization check, with the reasoning that produced it."""

    allowed: bool
    reason: str
    strategy: str = "default"
    matched: list[RoleRule] = field(default_factory=list)
