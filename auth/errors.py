"""
auth/errors.py -- Typed outcomes for the auth core.

Every expected failure (bad token, wrong password, lockout, missing
permission) is an AuthError subclass carrying a stable error_code and an HTTP
status_code. The API layer renders them straight into the error envelope, so
route handlers never build their own 401/403 bodies.

Messages are public. They never say whether a username exists, which check a
token failed beyond what the client can act on, or what the storage layer
reported.

StorageError is deliberately NOT an AuthError: it is unexpected, and every
caller on the request path must treat it as a denial (fail-closed).
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for expected, user-facing authentication/authorization outcomes."""

    status_code: int = 401
    error_code: str = "unauthorized"
    default_message: str = "Authentication required."

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


# ---------------------------------------------------------------------------
# Token errors (malformed input / authentication failure)
# ---------------------------------------------------------------------------


class InvalidTokenError(AuthError):
    error_code = "invalid_token"
    default_message = "Invalid or missing credentials."


class MalformedTokenError(InvalidTokenError):
    """Token is not a parseable JWT, or the Authorization header is not 'Bearer <token>'."""


class BadSignatureError(InvalidTokenError):
    """Signature or algorithm mismatch. Treated as tampering."""


class InvalidClaimsError(InvalidTokenError):
    """Wrong issuer, not-yet-valid, or required claims missing."""


class TokenTypeError(InvalidClaimsError):
    """A refresh token was presented as an access token, or vice versa."""


class TokenRevokedError(InvalidTokenError):
    """Token was explicitly revoked. Indistinguishable from any invalid token to the client."""


class TokenExpiredError(InvalidTokenError):
    error_code = "token_expired"
    default_message = "Token has expired."


# ---------------------------------------------------------------------------
# Login outcomes
# ---------------------------------------------------------------------------


class InvalidCredentialsError(AuthError):
    error_code = "invalid_credentials"
    default_message = "Invalid username or password."


class AccountUnavailableError(AuthError):
    status_code = 403
    error_code = "account_unavailable"
    default_message = "Account is disabled or locked."


class AccountBlockedError(AuthError):
    status_code = 429
    error_code = "account_blocked"
    default_message = "Too many failed login attempts. Try again later."


# ---------------------------------------------------------------------------
# Authorization
# ---------------------------------------------------------------------------


class PermissionDeniedError(AuthError):
    status_code = 403
    error_code = "forbidden"
    default_message = "You do not have permission to perform this action."


# ---------------------------------------------------------------------------
# Administration
# ---------------------------------------------------------------------------


class ConflictError(AuthError):
    """A create would collide with an existing username or permission code."""

    status_code = 409
    error_code = "conflict"
    default_message = "A record with that name already exists."


class SetupCompleteError(ConflictError):
    """Bootstrap was attempted after the first principal already exists."""

    error_code = "setup_complete"
    default_message = "Setup has already been completed."


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------


class StorageError(Exception):
    """A repository could not be consulted. Callers must fail closed."""

    status_code: int = 503
    error_code: str = "storage_unavailable"
    default_message: str = "Service temporarily unavailable."

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class IndeterminateError(StorageError):
    """A request-path check did not finish before its deadline. Never an allow."""

    error_code = "indeterminate"
    default_message = "Authorization could not be determined in time."


__all__ = [
    "AuthError",
    "InvalidTokenError",
    "MalformedTokenError",
    "BadSignatureError",
    "InvalidClaimsError",
    "TokenTypeError",
    "TokenRevokedError",
    "TokenExpiredError",
    "InvalidCredentialsError",
    "AccountUnavailableError",
    "AccountBlockedError",
    "PermissionDeniedError",
    "ConflictError",
    "SetupCompleteError",
    "StorageError",
    "IndeterminateError",
]
