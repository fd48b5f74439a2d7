"""
auth/tokens.py -- Password hashing, the JWT token manager, and token hashing.

Security design decisions:
  JWT: python-jose with HS256. Every token carries user_id, username (sub),
       role_id, token_type, remember_me, iat, nbf, exp, iss and a random jti.
       token_type keeps access and refresh tokens from being used in place of
       one another. Verification raises a typed InvalidTokenError subclass so
       callers can tell "expired, go refresh" from "tampered, reject".

  Passwords: bcrypt directly (no passlib wrapper). The _DUMMY_HASH constant
       enables timing equalization in authenticate_user() so response time
       does not reveal whether an account exists [C1].

  Token hashing: revocation entries are keyed by HMAC-SHA256(SECRET_KEY,
       token) so the revocation table never holds a usable bearer credential.
       The hash is deterministic, which keeps the revocation lookup O(1).

  SECRET_KEY: injected by the caller (TokenManager.from_settings() in the app
       lifespan). The Settings class validates the key at startup.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import bcrypt
from jose import ExpiredSignatureError, JWTError, jwt
from jose.exceptions import JWTClaimsError

from auth.errors import (
    AccountUnavailableError,
    BadSignatureError,
    InvalidClaimsError,
    MalformedTokenError,
    TokenExpiredError,
    TokenTypeError,
)
from auth.models import ACCESS_TOKEN, REFRESH_TOKEN, TokenClaims, TokenPair

if TYPE_CHECKING:
    from auth.models import User
    from auth.store import UserStore
    from core.config import Settings

logger = logging.getLogger("warden.auth")

_ALGORITHM = "HS256"

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Passwords longer than 72 bytes are truncated by bcrypt. The API layer caps
    password length well below that.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash -- treat as a mismatch, never as a match.
        return False


# Timing equalization dummy hash [C1].
# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("warden_timing_dummy")


def authenticate_user(store: UserStore, username: str, password: str) -> User | None:
    """Verify a username/password pair with timing equalization.

    Always runs bcrypt whether or not the account exists:
    - Unknown username: bcrypt runs against _DUMMY_HASH (same cost as real check)
    - Wrong password: bcrypt runs against the real hash (same cost)

    Returns the User when the password matches, None otherwise. Account status
    is NOT checked here: a correct password for a disabled account is a
    successful verification, and the caller decides what to tell the client.
    """
    user = store.get_by_username(username)
    if user is None:
        # Equalize timing -- do NOT return early before running bcrypt [C1]
        verify_password(password, _DUMMY_HASH)
        return None
    if not verify_password(password, user.hashed_password):
        return None
    return user


# ---------------------------------------------------------------------------
# Bearer header parsing
# ---------------------------------------------------------------------------


def extract_bearer_token(header: str | None) -> str:
    """Return the token from an 'Authorization: Bearer <token>' header value.

    Anything other than exactly two space-separated parts with the literal
    scheme "Bearer" yields "" -- callers treat that as unauthenticated.
    """
    if not header:
        return ""
    parts = header.split(" ")
    if len(parts) != 2 or parts[0] != "Bearer" or not parts[1]:
        return ""
    return parts[1]


# ---------------------------------------------------------------------------
# Token manager
# ---------------------------------------------------------------------------


class TokenManager:
    """Mints, validates and rotates signed access/refresh token pairs.

    Usage:
        tokens = TokenManager.from_settings(get_settings())
        pair = tokens.issue_token_pair(user.id, user.username, user.role_id)
        claims = tokens.validate_token(pair.access_token, expected_type="access")

    Token validation is pure computation; nothing here touches storage except
    refresh_token_pair(), which re-checks the principal through the store.
    """

    def __init__(
        self,
        secret_key: str,
        issuer: str = "warden",
        access_ttl: int = 3600,
        refresh_ttl: int = 7 * 86400,
        remember_me_access_ttl: int = 86400,
        remember_me_refresh_ttl: int = 30 * 86400,
    ) -> None:
        if not secret_key:
            raise ValueError("TokenManager requires a non-empty secret key.")
        self._secret = secret_key
        self.issuer = issuer
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.remember_me_access_ttl = remember_me_access_ttl
        self.remember_me_refresh_ttl = remember_me_refresh_ttl

    @classmethod
    def from_settings(cls, settings: Settings) -> TokenManager:
        return cls(
            secret_key=settings.secret_key,
            issuer=settings.token_issuer,
            access_ttl=settings.access_token_expire_seconds,
            refresh_ttl=settings.refresh_token_expire_seconds,
            remember_me_access_ttl=settings.remember_me_access_expire_seconds,
            remember_me_refresh_ttl=settings.remember_me_refresh_expire_seconds,
        )

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    def ttl_for(self, token_type: str, remember_me: bool) -> int:
        """Return the lifetime in seconds for a token of the given type."""
        if token_type == REFRESH_TOKEN:
            return self.remember_me_refresh_ttl if remember_me else self.refresh_ttl
        return self.remember_me_access_ttl if remember_me else self.access_ttl

    def _encode(self, user_id: int, username: str, role_id: int | None, remember_me: bool, token_type: str) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            "sub": username,
            "user_id": user_id,
            "role_id": role_id,
            "token_type": token_type,
            "remember_me": remember_me,
            "iss": self.issuer,
            "iat": now,
            "nbf": now,
            "exp": now + timedelta(seconds=self.ttl_for(token_type, remember_me)),
            "jti": secrets.token_hex(16),
        }
        return jwt.encode(payload, self._secret, algorithm=_ALGORITHM)

    def issue_token_pair(self, user_id: int, username: str, role_id: int | None, remember_me: bool = False) -> TokenPair:
        """Mint an independently signed access token and refresh token.

        remember_me extends both lifetimes and is carried in the claims so a
        refresh preserves it.
        """
        return TokenPair(
            access_token=self._encode(user_id, username, role_id, remember_me, ACCESS_TOKEN),
            refresh_token=self._encode(user_id, username, role_id, remember_me, REFRESH_TOKEN),
            expires_in=self.ttl_for(ACCESS_TOKEN, remember_me),
            refresh_expires_in=self.ttl_for(REFRESH_TOKEN, remember_me),
        )

    # ------------------------------------------------------------------
    # Validate
    # ------------------------------------------------------------------

    def _decode(self, token: str, verify_exp: bool = True) -> dict:
        """Verify structure, algorithm, signature and registered claims.

        The unverified parse runs first so a structurally broken token is
        reported as malformed rather than as a signature failure.
        """
        if not token:
            raise MalformedTokenError()
        try:
            header = jwt.get_unverified_header(token)
            jwt.get_unverified_claims(token)
        except JWTError as exc:
            raise MalformedTokenError() from exc
        if header.get("alg") != _ALGORITHM:
            raise BadSignatureError()
        try:
            return jwt.decode(
                token,
                self._secret,
                algorithms=[_ALGORITHM],
                issuer=self.issuer,
                # jose turns require_X into verify_X, so exp is only required
                # when it is verified; read_expiry() checks for it itself.
                options={
                    "verify_exp": verify_exp,
                    "require_exp": verify_exp,
                    "require_iat": True,
                    "require_iss": True,
                },
            )
        except ExpiredSignatureError as exc:
            raise TokenExpiredError() from exc
        except JWTClaimsError as exc:
            raise InvalidClaimsError() from exc
        except JWTError as exc:
            raise BadSignatureError() from exc

    def validate_token(self, token: str, expected_type: str | None = None, verify_exp: bool = True) -> TokenClaims:
        """Return the claims of a valid token or raise an InvalidTokenError subclass.

        expected_type ("access" / "refresh") rejects a token of the other type
        with TokenTypeError. verify_exp=False accepts an authentic but expired
        token; logout uses it to learn who owns a refresh token.
        """
        payload = self._decode(token, verify_exp=verify_exp)
        try:
            claims = TokenClaims(
                user_id=int(payload["user_id"]),
                username=str(payload["sub"]),
                role_id=payload.get("role_id"),
                token_type=str(payload["token_type"]),
                remember_me=bool(payload.get("remember_me", False)),
                issued_at=float(payload["iat"]),
                expires_at=float(payload["exp"]),
                issuer=str(payload["iss"]),
                token_id=str(payload.get("jti", "")),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise InvalidClaimsError() from exc
        if claims.token_type not in (ACCESS_TOKEN, REFRESH_TOKEN):
            raise InvalidClaimsError()
        if expected_type is not None and claims.token_type != expected_type:
            raise TokenTypeError()
        return claims

    def read_expiry(self, token: str) -> float:
        """Return the exp claim of an authentic token, expired or not.

        Used when revoking: the revocation entry inherits the token's own
        expiry instead of a recomputed one.
        """
        payload = self._decode(token, verify_exp=False)
        try:
            return float(payload["exp"])
        except (KeyError, TypeError, ValueError) as exc:
            raise InvalidClaimsError() from exc

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    def refresh_token_pair(self, refresh_token: str, users: UserStore) -> TokenPair:
        """Mint a new pair from a refresh token without re-presenting a password.

        The principal must still exist and be active; a cryptographically
        valid token for a disabled or locked account is rejected with
        AccountUnavailableError. The old refresh token is NOT revoked here.
        """
        claims = self.validate_token(refresh_token, expected_type=REFRESH_TOKEN)
        user = users.get_by_id(claims.user_id)
        if user is None or not user.is_active:
            logger.warning("Refresh rejected for unavailable account user_id=%s", claims.user_id)
            raise AccountUnavailableError()
        return self.issue_token_pair(user.id, user.username, user.role_id, remember_me=claims.remember_me)

    # ------------------------------------------------------------------
    # Hashing
    # ------------------------------------------------------------------

    def hash_token(self, token: str) -> str:
        """Return HMAC-SHA256(SECRET_KEY, token) as a hex string.

        Keyed with SECRET_KEY so a leaked revocation table cannot be matched
        against captured tokens without also knowing the key.
        """
        return hmac.new(self._secret.encode(), token.encode(), hashlib.sha256).hexdigest()
