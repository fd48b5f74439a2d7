"""
tests/test_config.py -- Settings validation.

Values are passed as init kwargs with _env_file=None so neither a local .env
nor the DEBUG variable set in conftest.py leaks into these cases.
"""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from core.config import Settings

GOOD_KEY = "k" * 32


def test_defaults_with_explicit_key() -> None:
    s = Settings(_env_file=None, debug=False, secret_key=GOOD_KEY)
    assert s.access_token_expire_seconds == 3600
    assert s.remember_me_access_expire_seconds == 86400
    assert s.refresh_token_expire_seconds == 7 * 86400
    assert s.remember_me_refresh_expire_seconds == 30 * 86400
    assert s.login_max_failures == 5
    assert s.login_block_seconds == 7200


def test_production_requires_secret_key() -> None:
    with pytest.raises(ValidationError, match="SECRET_KEY is required"):
        Settings(_env_file=None, debug=False, secret_key="")


def test_debug_generates_secret_key() -> None:
    s = Settings(_env_file=None, debug=True, secret_key="")
    assert len(s.secret_key) >= 32


def test_short_secret_key_rejected() -> None:
    with pytest.raises(ValidationError, match="at least 32"):
        Settings(_env_file=None, debug=True, secret_key="too-short")


@pytest.mark.parametrize(
    "field",
    ["access_token_expire_seconds", "refresh_token_expire_seconds", "login_block_seconds"],
)
def test_non_positive_lifetimes_rejected(field: str) -> None:
    with pytest.raises(ValidationError, match=field.upper()):
        Settings(_env_file=None, secret_key=GOOD_KEY, **{field: 0})


def test_threshold_and_timeout_rejected() -> None:
    with pytest.raises(ValidationError):
        Settings(_env_file=None, secret_key=GOOD_KEY, login_max_failures=0)
    with pytest.raises(ValidationError):
        Settings(_env_file=None, secret_key=GOOD_KEY, auth_check_timeout_seconds=0)
