"""
auth/service.py -- Control flows that compose the auth components.

Login:          guard pre-check -> credential check -> guard update -> token pair
Authenticated:  bearer extraction -> token validation -> revocation check -> authorize
Bootstrap:      no principals yet -> admin role rules + permission records -> first admin

AuthService receives every collaborator at construction time; nothing here
reads settings or opens storage on its own. Route handlers and FastAPI
dependencies call these methods instead of touching the stores directly.

Fail-closed rules:
  - A guard that cannot be consulted stops the login (StorageError propagates).
  - A revocation check that cannot be consulted rejects the token.
  - Logout is the single soft-fail path: revocation failures are logged as a
    WARNING and reported to the caller as False, never raised.

The login audit log is best-effort: a failed audit write is logged at ERROR
and never changes the outcome of the login or logout it describes.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable

from auth.attempts import BruteForceGuard
from auth.authorization import AuthorizationEngine
from auth.errors import (
    AccountBlockedError,
    AccountUnavailableError,
    InvalidCredentialsError,
    InvalidTokenError,
    MalformedTokenError,
    PermissionDeniedError,
    SetupCompleteError,
    StorageError,
    TokenRevokedError,
)
from auth.login_log import LoginLogStore
from auth.models import (
    ACCESS_TOKEN,
    EVENT_LOGIN,
    EVENT_LOGOUT,
    REFRESH_TOKEN,
    STATUS_ACTIVE,
    Decision,
    LoginLogEntry,
    Permission,
    TokenClaims,
    TokenPair,
    User,
)
from auth.revocation import RevocationStore
from auth.store import UserStore
from auth.tokens import TokenManager, authenticate_user, extract_bearer_token, hash_password

logger = logging.getLogger("warden.auth")


class AuthService:
    """Login, refresh, logout, authentication and authorization for one deployment.

    Usage:
        service = AuthService(users, guard, tokens, revocations, authorizer, login_log)
        user, pair = service.login("alice", "secret", "10.0.0.5")
        claims = service.authenticate(f"Bearer {pair.access_token}")
        service.authorize(claims, "/reports", "POST")
    """

    def __init__(
        self,
        users: UserStore,
        guard: BruteForceGuard,
        tokens: TokenManager,
        revocations: RevocationStore,
        authorizer: AuthorizationEngine,
        login_log: LoginLogStore | None = None,
    ) -> None:
        self.users = users
        self.guard = guard
        self.tokens = tokens
        self.revocations = revocations
        self.authorizer = authorizer
        self.login_log = login_log
        self._setup_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Login / refresh / logout
    # ------------------------------------------------------------------

    def login(self, account: str, password: str, origin: str, remember_me: bool = False) -> tuple[User, TokenPair]:
        """Verify credentials for account from origin and issue a token pair.

        A blocked (account, origin) pair is rejected before any password
        hashing happens. Unknown accounts and wrong passwords raise the same
        InvalidCredentialsError.
        """
        if self.guard.is_blocked(account, origin):
            logger.warning("Login rejected while blocked: account=%s origin=%s", account, origin)
            self._audit(account, EVENT_LOGIN, False, "blocked", origin=origin)
            raise AccountBlockedError()

        user = authenticate_user(self.users, account, password)
        blocked = self.guard.check_and_record(account, origin, success=user is not None)
        if blocked:
            self._audit(account, EVENT_LOGIN, False, "blocked after repeated failures", origin=origin)
            raise AccountBlockedError()
        if user is None:
            logger.warning("Failed login: account=%s origin=%s", account, origin)
            self._audit(account, EVENT_LOGIN, False, "invalid credentials", origin=origin)
            raise InvalidCredentialsError()
        if not user.is_active:
            logger.warning("Login refused for %s account=%s origin=%s", user.status, account, origin)
            self._audit(account, EVENT_LOGIN, False, f"account {user.status}", user_id=user.id, origin=origin)
            raise AccountUnavailableError()

        self.users.update_last_login(user.id, origin)
        pair = self.tokens.issue_token_pair(user.id, user.username, user.role_id, remember_me=remember_me)
        logger.info("Login: user_id=%s origin=%s remember_me=%s", user.id, origin, remember_me)
        self._audit(user.username, EVENT_LOGIN, True, "ok", user_id=user.id, origin=origin)
        return user, pair

    def refresh(self, refresh_token: str) -> TokenPair:
        """Mint a new pair from a refresh token that has not been revoked."""
        claims = self.tokens.validate_token(refresh_token, expected_type=REFRESH_TOKEN)
        if self.revocations.is_revoked(refresh_token):
            logger.warning("Revoked refresh token presented for user_id=%s", claims.user_id)
            raise TokenRevokedError()
        pair = self.tokens.refresh_token_pair(refresh_token, self.users)
        logger.info("Token refresh: user_id=%s", claims.user_id)
        return pair

    def logout(
        self,
        access_token: str,
        user_id: int,
        username: str,
        refresh_token: str | None = None,
        origin: str | None = None,
    ) -> bool:
        """Revoke the presented tokens. Returns False if any revocation failed.

        The client discards its tokens either way, so a failure here does not
        fail the logout. A token that could not be revoked stays usable until
        its natural expiry, which is why the failure is logged.

        A refresh token is only revoked when it belongs to user_id. One that
        belongs to another principal is left alone and counts as a failure.
        """
        revoked_all = True
        for label, token in ((ACCESS_TOKEN, access_token), (REFRESH_TOKEN, refresh_token)):
            if not token:
                continue
            try:
                if label == REFRESH_TOKEN and not self._owns_refresh_token(token, user_id):
                    revoked_all = False
                    continue
                self.revocations.revoke(token, user_id, username, reason="logout")
            except (StorageError, InvalidTokenError) as exc:
                logger.warning(
                    "Logout could not revoke %s token for user_id=%s (%s); token remains valid until expiry",
                    label,
                    user_id,
                    exc.__class__.__name__,
                )
                revoked_all = False
        logger.info("Logout: user_id=%s", user_id)
        message = "ok" if revoked_all else "logged out, but token revocation failed"
        self._audit(username, EVENT_LOGOUT, revoked_all, message, user_id=user_id, origin=origin)
        return revoked_all

    def _owns_refresh_token(self, token: str, user_id: int) -> bool:
        # Expired refresh tokens still name their owner; revoke() skips them later.
        claims = self.tokens.validate_token(token, expected_type=REFRESH_TOKEN, verify_exp=False)
        if claims.user_id != user_id:
            logger.warning(
                "Logout for user_id=%s presented a refresh token owned by user_id=%s; not revoked",
                user_id,
                claims.user_id,
            )
            return False
        return True

    def _audit(
        self,
        username: str,
        event: str,
        success: bool,
        message: str,
        user_id: int | None = None,
        origin: str | None = None,
    ) -> None:
        if self.login_log is None:
            return
        entry = LoginLogEntry(
            username=username, event=event, success=success, message=message, user_id=user_id, origin=origin
        )
        try:
            self.login_log.record(entry)
        except StorageError:
            logger.error("Login audit write failed: event=%s username=%s success=%s", event, username, success)

    # ------------------------------------------------------------------
    # Per-request checks
    # ------------------------------------------------------------------

    def authenticate(self, authorization_header: str | None) -> TokenClaims:
        """Resolve an Authorization header value into validated access-token claims."""
        token = extract_bearer_token(authorization_header)
        if not token:
            raise MalformedTokenError()
        claims = self.tokens.validate_token(token, expected_type=ACCESS_TOKEN)
        if self.revocations.is_revoked(token):
            raise TokenRevokedError()
        return claims

    def authorize(self, claims: TokenClaims, resource: str, action: str) -> Decision:
        decision = self.authorizer.authorize(claims.user_id, resource, action)
        if not decision.allowed:
            raise PermissionDeniedError()
        return decision

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def unlock(self, account: str) -> int:
        """Clear every login-attempt record for account, across all origins."""
        return self.guard.reset(account)

    def create_principal(
        self,
        username: str,
        password: str,
        role_id: int | None = None,
        status: str = STATUS_ACTIVE,
    ) -> User:
        """Create a principal and link it to role_id in the authorization graph.

        Raises ConflictError if the username is taken, ValueError for an
        unknown status.
        """
        user = User(username=username, hashed_password=hash_password(password), role_id=role_id, status=status)
        user.id = self.users.create_user(user)
        if role_id is not None:
            self.authorizer.sync_user_roles(user.id, [role_id])
        logger.info("Principal created: user_id=%s role_id=%s status=%s", user.id, role_id, status)
        return user

    def bootstrap_admin(
        self,
        username: str,
        password: str,
        role_id: int,
        rules: Iterable[tuple[str, str]],
        permissions: Iterable[Permission] = (),
    ) -> User:
        """Create the first principal and grant its role the given rules.

        rules are RESTful (path, method) pairs. permissions are permission
        records to create (an existing code is reused) and grant to the role
        by code. Only allowed while no principal exists; afterwards raises
        SetupCompleteError. The lock serialises concurrent bootstrap calls in
        this process so the emptiness check and the insert cannot interleave.
        """
        with self._setup_lock:
            if self.users.has_users():
                raise SetupCompleteError()
            self.authorizer.sync_role_restful_permissions(role_id, list(rules))
            permission_ids = [self._ensure_permission(p) for p in permissions]
            if permission_ids:
                self.authorizer.sync_role_permissions(role_id, permission_ids)
            user = self.create_principal(username, password, role_id=role_id)
        logger.warning("Bootstrap complete: first admin user_id=%s role_id=%s", user.id, role_id)
        return user

    def _ensure_permission(self, permission: Permission) -> int:
        policies = self.authorizer.policies
        existing = policies.get_permission_by_code(permission.code)
        if existing is not None:
            return existing.id
        return policies.create_permission(permission)
