"""
auth/attempts.py -- Brute-force guard: failed-login tracking per (account, origin).

State machine per (account, origin) record:

  Clear         attempts == 0, blocked_at is None
  Accumulating  0 < attempts < max_failures
  Blocked       blocked_at set and now - blocked_at < block_seconds

  failure in Clear/Accumulating   -> attempts += 1; reaching max_failures
                                     stamps blocked_at = now (Blocked)
  success in Clear/Accumulating   -> Clear
  any attempt while Blocked       -> rejected, record untouched
  block window elapsed            -> treated as Clear for that check (lazy
                                     expiry; nothing runs to clear the flag)

"Blocked" is always computed against the clock at read time and never
cached.

Concurrency: check_and_record() is read-then-write. Two simultaneous failures
from the same pair can both read N and both write N+1, delaying the lockout by
one attempt. The UNIQUE(account, origin) constraint prevents duplicate
records when two first attempts race; the loser of the insert becomes an
update.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from pathlib import Path

from sqlalchemy import Column, Float, Integer, MetaData, String, Table, UniqueConstraint
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.db import make_engine, storage_errors
from auth.models import LoginAttempt

logger = logging.getLogger("warden.auth.guard")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'warden.db'}"

STATE_CLEAR = "clear"
STATE_ACCUMULATING = "accumulating"
STATE_BLOCKED = "blocked"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_attempts = Table(
    "login_attempts",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("account", String(100), nullable=False, index=True),
    Column("origin", String(45), nullable=False),
    Column("attempts", Integer, nullable=False, server_default="0"),
    Column("last_try", Float, nullable=False),  # epoch seconds
    Column("blocked_at", Float),  # epoch seconds; NULL = never blocked / reset
    Column("created_at", Float, nullable=False),
    UniqueConstraint("account", "origin", name="uq_attempt_account_origin"),
)


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class LoginAttemptStore:
    """Repository for LoginAttempt records, keyed by (account, origin)."""

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        self.engine: Engine = make_engine(db_url)
        _metadata.create_all(self.engine)

    def get(self, account: str, origin: str) -> LoginAttempt | None:
        with storage_errors("get_attempt"), self.engine.connect() as conn:
            row = conn.execute(
                _attempts.select().where((_attempts.c.account == account) & (_attempts.c.origin == origin))
            ).fetchone()
        return _row_to_attempt(row) if row is not None else None

    def save(self, attempt: LoginAttempt) -> None:
        """Insert or update the record for attempt's (account, origin).

        A new record whose insert loses a race against a concurrent first
        attempt is written as an update of the winner's row instead.
        """
        values = {
            "attempts": attempt.attempts,
            "last_try": attempt.last_try,
            "blocked_at": attempt.blocked_at,
        }
        with storage_errors("save_attempt"), self.engine.connect() as conn:
            if attempt.id is None:
                try:
                    result = conn.execute(
                        _attempts.insert().values(
                            account=attempt.account,
                            origin=attempt.origin,
                            created_at=attempt.created_at if attempt.created_at is not None else attempt.last_try,
                            **values,
                        )
                    )
                    conn.commit()
                    attempt.id = result.inserted_primary_key[0]
                    return
                except IntegrityError:
                    conn.rollback()
            conn.execute(
                _attempts.update()
                .where((_attempts.c.account == attempt.account) & (_attempts.c.origin == attempt.origin))
                .values(**values)
            )
            conn.commit()

    def list_for_account(self, account: str) -> list[LoginAttempt]:
        with storage_errors("list_attempts"), self.engine.connect() as conn:
            rows = conn.execute(
                _attempts.select().where(_attempts.c.account == account).order_by(_attempts.c.last_try.desc())
            ).fetchall()
        return [_row_to_attempt(r) for r in rows]

    def delete_for_account(self, account: str) -> int:
        """Delete every record for an account, across all origins. Returns rows removed."""
        with storage_errors("delete_attempts"), self.engine.connect() as conn:
            result = conn.execute(_attempts.delete().where(_attempts.c.account == account))
            conn.commit()
        return result.rowcount

    def delete_older_than(self, cutoff: float) -> int:
        """Delete records whose last attempt is before cutoff (epoch seconds)."""
        with storage_errors("purge_attempts"), self.engine.connect() as conn:
            result = conn.execute(_attempts.delete().where(_attempts.c.last_try < cutoff))
            conn.commit()
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()


def _row_to_attempt(row) -> LoginAttempt:
    return LoginAttempt(
        id=row.id,
        account=row.account,
        origin=row.origin,
        attempts=row.attempts,
        last_try=row.last_try,
        blocked_at=row.blocked_at,
        created_at=row.created_at,
    )


# ---------------------------------------------------------------------------
# Guard
# ---------------------------------------------------------------------------


class BruteForceGuard:
    """Decides whether login attempts for an (account, origin) pair are blocked.

    Usage:
        guard = BruteForceGuard(LoginAttemptStore(url))
        if guard.is_blocked(account, ip):              # cheap pre-check
            ...reject without hashing...
        ok = verify(...)
        blocked = guard.check_and_record(account, ip, success=ok)

    clock returns epoch seconds; tests inject a fake to move past the block
    window.

    Storage errors propagate as StorageError. Callers on the login path must
    treat that as a rejected attempt, never as "not blocked".
    """

    def __init__(
        self,
        store: LoginAttemptStore,
        max_failures: int = 5,
        block_seconds: int = 2 * 60 * 60,
        retention_days: int = 30,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self.max_failures = max_failures
        self.block_seconds = block_seconds
        self.retention_days = retention_days
        self._clock = clock

    def is_blocked_record(self, attempt: LoginAttempt | None, now: float) -> bool:
        if attempt is None or attempt.blocked_at is None:
            return False
        return now - attempt.blocked_at < self.block_seconds

    def state_of(self, attempt: LoginAttempt | None, now: float) -> str:
        if self.is_blocked_record(attempt, now):
            return STATE_BLOCKED
        # An expired block reads as Clear regardless of the stale counter.
        if attempt is None or attempt.blocked_at is not None or attempt.attempts == 0:
            return STATE_CLEAR
        return STATE_ACCUMULATING

    def state(self, account: str, origin: str) -> str:
        return self.state_of(self._store.get(account, origin), self._clock())

    def is_blocked(self, account: str, origin: str) -> bool:
        """Read-only pre-check. Never mutates the record."""
        return self.is_blocked_record(self._store.get(account, origin), self._clock())

    def check_and_record(self, account: str, origin: str, success: bool) -> bool:
        """Apply one login attempt's outcome. Returns True if the pair is (now) blocked.

        Call exactly once per attempt, after credential verification.
        """
        now = self._clock()
        attempt = self._store.get(account, origin)
        if attempt is None:
            attempt = LoginAttempt(account=account, origin=origin, created_at=now)

        if self.is_blocked_record(attempt, now):
            return True
        if attempt.blocked_at is not None:
            # Block window elapsed: this check starts from Clear.
            attempt.reset()

        attempt.last_try = now
        blocked = False
        if success:
            attempt.reset()
        else:
            attempt.attempts += 1
            if attempt.attempts >= self.max_failures:
                attempt.blocked_at = now
                blocked = True
                logger.warning(
                    "Login blocked for account=%s origin=%s after %d failures",
                    account,
                    origin,
                    attempt.attempts,
                )
        self._store.save(attempt)
        return blocked

    def get_attempt(self, account: str, origin: str) -> LoginAttempt | None:
        return self._store.get(account, origin)

    def reset(self, account: str) -> int:
        """Administrative unlock: forget every attempt record for the account."""
        removed = self._store.delete_for_account(account)
        logger.info("Login attempts reset for account=%s (%d records)", account, removed)
        return removed

    def cleanup(self) -> int:
        """Delete records with no attempt inside the retention window."""
        cutoff = self._clock() - self.retention_days * 86400
        return self._store.delete_older_than(cutoff)

    def close(self) -> None:
        self._store.close()
