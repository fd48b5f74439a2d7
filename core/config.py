"""
core/config.py -- Centralized configuration for Warden via pydantic-settings.

All environment variable reads happen here. No module should call os.getenv()
or os.environ.get() directly -- the API lifespan calls get_settings() once and
hands the values to each component's constructor.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY, login_max_failures -> LOGIN_MAX_FAILURES).

  @model_validator(mode="after"): Cross-field validation after all fields are
      resolved. Dev mode generates a signing key with a warning, production
      mode refuses to start without one.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. JWT signing and
       the HMAC used for revocation lookups both rely on key entropy.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure. A random per-process key would silently log out
       every session on restart and break revocation lookups.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("warden.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'warden.db'}"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. The model_validator enforces
    production-safety rules at startup.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""
    database_url: str = _DEFAULT_DB_URL

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    token_issuer: str = "warden"
    access_token_expire_seconds: int = 3600
    remember_me_access_expire_seconds: int = 86400
    refresh_token_expire_seconds: int = 7 * 86400
    remember_me_refresh_expire_seconds: int = 30 * 86400

    # ------------------------------------------------------------------
    # Brute-force guard
    # ------------------------------------------------------------------

    login_max_failures: int = 5
    login_block_seconds: int = 2 * 60 * 60
    login_attempt_retention_days: int = 30
    # slowapi limit on POST /auth/login, per client IP. Independent of the
    # per-(account, origin) guard above.
    login_rate_limit: str = "10/minute"

    # Role granted every access-control route by POST /setup.
    admin_role_id: int = 1

    # ------------------------------------------------------------------
    # Background maintenance and request-path deadlines
    # ------------------------------------------------------------------

    revocation_sweep_interval_seconds: int = 24 * 60 * 60
    attempt_cleanup_interval_seconds: int = 24 * 60 * 60
    auth_check_timeout_seconds: float = 5.0

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy [M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Tokens will not survive restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters [M6].
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("WARNING: Using auto-generated SECRET_KEY. Tokens will not persist across restarts.")
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self

    @model_validator(mode="after")
    def validate_limits(self) -> "Settings":
        """Reject lifetimes and thresholds that would disable a security control."""
        ttls = {
            "access_token_expire_seconds": self.access_token_expire_seconds,
            "remember_me_access_expire_seconds": self.remember_me_access_expire_seconds,
            "refresh_token_expire_seconds": self.refresh_token_expire_seconds,
            "remember_me_refresh_expire_seconds": self.remember_me_refresh_expire_seconds,
            "login_block_seconds": self.login_block_seconds,
        }
        for name, value in ttls.items():
            if value <= 0:
                raise ValueError(f"{name.upper()} must be positive.")
        if self.login_max_failures < 1:
            raise ValueError("LOGIN_MAX_FAILURES must be at least 1.")
        if self.auth_check_timeout_seconds <= 0:
            raise ValueError("AUTH_CHECK_TIMEOUT_SECONDS must be positive.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
