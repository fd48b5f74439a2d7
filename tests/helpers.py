"""
tests/helpers.py -- Plain helpers shared by the test modules and conftest.py.

Kept out of conftest.py so test modules can import them directly without
importing conftest a second time under another module name.
"""

from __future__ import annotations

import time
import uuid

from auth.models import User
from auth.store import UserStore
from auth.tokens import hash_password

TEST_SECRET = "warden-test-secret-0123456789abcdef0123"  # noqa: S105 # nosec B105


class FakeClock:
    """Callable epoch clock that only moves when told to."""

    def __init__(self, start: float | None = None) -> None:
        self.now = time.time() if start is None else start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def memory_url(prefix: str) -> str:
    """Return a unique named shared-memory SQLite URL."""
    return f"sqlite:///file:{prefix}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


def make_user(store: UserStore, username: str, password: str, role_id: int | None = 1, status: str = "active") -> int:
    return store.create_user(
        User(username=username, hashed_password=hash_password(password), role_id=role_id, status=status)
    )
