"""
tests/test_attempts.py -- Brute-force guard state machine.

Time is driven by FakeClock so the 2-hour block window can be crossed
without sleeping.
"""

from __future__ import annotations

import pytest

from auth.attempts import STATE_ACCUMULATING, STATE_BLOCKED, STATE_CLEAR, BruteForceGuard
from auth.errors import StorageError
from tests.helpers import FakeClock

ACCOUNT = "alice"
ORIGIN = "10.0.0.5"


def _fail(guard: BruteForceGuard, times: int) -> list[bool]:
    return [guard.check_and_record(ACCOUNT, ORIGIN, success=False) for _ in range(times)]


class TestLockout:
    def test_fifth_failure_blocks(self, guard: BruteForceGuard) -> None:
        assert _fail(guard, 5) == [False, False, False, False, True]
        assert guard.is_blocked(ACCOUNT, ORIGIN)
        assert guard.state(ACCOUNT, ORIGIN) == STATE_BLOCKED

    def test_sixth_attempt_blocked_without_incrementing(self, guard: BruteForceGuard) -> None:
        _fail(guard, 5)
        before = guard.get_attempt(ACCOUNT, ORIGIN)
        assert guard.check_and_record(ACCOUNT, ORIGIN, success=False) is True
        assert guard.check_and_record(ACCOUNT, ORIGIN, success=True) is True
        after = guard.get_attempt(ACCOUNT, ORIGIN)
        assert after.attempts == before.attempts == 5
        assert after.blocked_at == before.blocked_at
        assert after.last_try == before.last_try

    def test_block_expires_lazily(self, guard: BruteForceGuard, clock: FakeClock) -> None:
        _fail(guard, 5)
        clock.advance(2 * 60 * 60 - 1)
        assert guard.is_blocked(ACCOUNT, ORIGIN)
        clock.advance(2)
        assert not guard.is_blocked(ACCOUNT, ORIGIN)
        assert guard.state(ACCOUNT, ORIGIN) == STATE_CLEAR

    def test_first_failure_after_expiry_starts_from_clear(self, guard: BruteForceGuard, clock: FakeClock) -> None:
        _fail(guard, 5)
        clock.advance(2 * 60 * 60 + 1)
        assert guard.check_and_record(ACCOUNT, ORIGIN, success=False) is False
        record = guard.get_attempt(ACCOUNT, ORIGIN)
        assert record.attempts == 1
        assert record.blocked_at is None

    def test_is_blocked_never_mutates(self, guard: BruteForceGuard) -> None:
        _fail(guard, 2)
        before = guard.get_attempt(ACCOUNT, ORIGIN)
        for _ in range(10):
            guard.is_blocked(ACCOUNT, ORIGIN)
        assert guard.get_attempt(ACCOUNT, ORIGIN) == before


class TestReset:
    def test_success_resets_counter(self, guard: BruteForceGuard) -> None:
        _fail(guard, 4)
        assert guard.state(ACCOUNT, ORIGIN) == STATE_ACCUMULATING
        assert guard.check_and_record(ACCOUNT, ORIGIN, success=True) is False
        assert guard.get_attempt(ACCOUNT, ORIGIN).attempts == 0
        assert guard.state(ACCOUNT, ORIGIN) == STATE_CLEAR
        # The count starts over: four more failures do not block.
        assert _fail(guard, 4) == [False] * 4

    def test_first_success_creates_clear_record(self, guard: BruteForceGuard) -> None:
        guard.check_and_record(ACCOUNT, ORIGIN, success=True)
        record = guard.get_attempt(ACCOUNT, ORIGIN)
        assert record is not None
        assert record.attempts == 0

    def test_admin_reset_clears_every_origin(self, guard: BruteForceGuard) -> None:
        _fail(guard, 5)
        guard.check_and_record(ACCOUNT, "10.0.0.6", success=False)
        assert guard.reset(ACCOUNT) == 2
        assert not guard.is_blocked(ACCOUNT, ORIGIN)
        assert guard.get_attempt(ACCOUNT, "10.0.0.6") is None


class TestKeying:
    def test_origins_are_independent(self, guard: BruteForceGuard) -> None:
        _fail(guard, 5)
        assert guard.is_blocked(ACCOUNT, ORIGIN)
        assert not guard.is_blocked(ACCOUNT, "192.168.1.1")
        assert not guard.is_blocked("bob", ORIGIN)

    def test_custom_threshold(self, guard: BruteForceGuard) -> None:
        guard.max_failures = 2
        assert _fail(guard, 2) == [False, True]


class TestCleanup:
    def test_removes_only_stale_records(self, guard: BruteForceGuard, clock: FakeClock) -> None:
        guard.check_and_record("old", ORIGIN, success=False)
        clock.advance(31 * 86400)
        guard.check_and_record("new", ORIGIN, success=False)
        assert guard.cleanup() == 1
        assert guard.get_attempt("old", ORIGIN) is None
        assert guard.get_attempt("new", ORIGIN) is not None


class TestStorageFailure:
    def test_storage_errors_propagate(self, guard: BruteForceGuard, monkeypatch: pytest.MonkeyPatch) -> None:
        def boom(*args, **kwargs):
            raise StorageError()

        monkeypatch.setattr(guard._store, "get", boom)
        with pytest.raises(StorageError):
            guard.is_blocked(ACCOUNT, ORIGIN)
        with pytest.raises(StorageError):
            guard.check_and_record(ACCOUNT, ORIGIN, success=False)
