"""
tests/test_service.py -- AuthService control flows over real components.

Scenarios:
  - Lockout: five wrong passwords from one origin, then the correct password
    is refused without any credential check until the block expires
  - Login stamps last_login_ip; disabled principals never get tokens
  - Guard storage failure stops the login (fail-closed)
  - Logout revokes; a failed revocation is a logged soft failure, an expired
    refresh token needs no revocation, another principal's is left alone
  - Every login outcome and logout lands in the login audit log
  - Bootstrap creates the first admin exactly once
  - authenticate() rejects revoked, malformed and refresh-typed tokens
"""

from __future__ import annotations

import logging

import pytest

import auth.service
from auth.errors import (
    AccountBlockedError,
    AccountUnavailableError,
    ConflictError,
    InvalidCredentialsError,
    MalformedTokenError,
    PermissionDeniedError,
    SetupCompleteError,
    StorageError,
    TokenRevokedError,
    TokenTypeError,
)
from auth.models import EVENT_LOGIN, EVENT_LOGOUT, Permission
from auth.service import AuthService
from auth.tokens import TokenManager
from tests.helpers import TEST_SECRET, FakeClock, make_user

ORIGIN = "10.0.0.5"
TWO_HOURS = 2 * 60 * 60


@pytest.fixture
def alice(service: AuthService) -> int:
    return make_user(service.users, "alice", "alice-password-1")


class TestLoginLockout:
    def test_block_after_five_failures(
        self, service: AuthService, alice: int, clock: FakeClock, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        for _ in range(4):
            with pytest.raises(InvalidCredentialsError):
                service.login("alice", "wrong", ORIGIN)
        with pytest.raises(AccountBlockedError):
            service.login("alice", "wrong", ORIGIN)

        calls = []
        real = auth.service.authenticate_user

        def spy(*args, **kwargs):
            calls.append(args)
            return real(*args, **kwargs)

        monkeypatch.setattr(auth.service, "authenticate_user", spy)

        with pytest.raises(AccountBlockedError):
            service.login("alice", "alice-password-1", ORIGIN)
        assert calls == []
        assert service.guard.get_attempt("alice", ORIGIN).attempts == 5

        clock.advance(TWO_HOURS + 1)
        user, pair = service.login("alice", "alice-password-1", ORIGIN)
        assert user.id == alice
        assert len(calls) == 1
        assert pair.access_token

    def test_other_origin_unaffected(self, service: AuthService, alice: int) -> None:
        for _ in range(4):
            with pytest.raises(InvalidCredentialsError):
                service.login("alice", "wrong", ORIGIN)
        with pytest.raises(AccountBlockedError):
            service.login("alice", "wrong", ORIGIN)
        user, _ = service.login("alice", "alice-password-1", "192.168.1.1")
        assert user.id == alice

    def test_unlock_clears_block(self, service: AuthService, alice: int) -> None:
        for _ in range(4):
            with pytest.raises(InvalidCredentialsError):
                service.login("alice", "wrong", ORIGIN)
        with pytest.raises(AccountBlockedError):
            service.login("alice", "wrong", ORIGIN)
        assert service.unlock("alice") == 1
        service.login("alice", "alice-password-1", ORIGIN)

    def test_unknown_account_counts_as_failure(self, service: AuthService) -> None:
        with pytest.raises(InvalidCredentialsError):
            service.login("ghost", "whatever", ORIGIN)
        assert service.guard.get_attempt("ghost", ORIGIN).attempts == 1


class TestLoginOutcomes:
    def test_success_stamps_last_login(self, service: AuthService, alice: int) -> None:
        service.login("alice", "alice-password-1", ORIGIN, remember_me=True)
        user = service.users.get_by_id(alice)
        assert user.last_login is not None
        assert user.last_login_ip == ORIGIN

    def test_remember_me_carried_into_tokens(self, service: AuthService, alice: int) -> None:
        _, pair = service.login("alice", "alice-password-1", ORIGIN, remember_me=True)
        claims = service.authenticate(f"Bearer {pair.access_token}")
        assert claims.remember_me is True
        assert pair.expires_in == 86400

    def test_disabled_principal_gets_no_tokens(self, service: AuthService) -> None:
        make_user(service.users, "dora", "dora-password-1", status="disabled")
        with pytest.raises(AccountUnavailableError):
            service.login("dora", "dora-password-1", ORIGIN)

    def test_guard_outage_stops_login(
        self, service: AuthService, alice: int, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        def boom(*args, **kwargs):
            raise StorageError()

        monkeypatch.setattr(service.guard, "is_blocked", boom)
        with pytest.raises(StorageError):
            service.login("alice", "alice-password-1", ORIGIN)


class TestLogout:
    def test_logout_revokes_both_tokens(self, service: AuthService, alice: int) -> None:
        _, pair = service.login("alice", "alice-password-1", ORIGIN)
        assert service.logout(pair.access_token, alice, "alice", refresh_token=pair.refresh_token) is True

        with pytest.raises(TokenRevokedError):
            service.authenticate(f"Bearer {pair.access_token}")
        with pytest.raises(TokenRevokedError):
            service.refresh(pair.refresh_token)

    def test_revocation_failure_is_soft(
        self,
        service: AuthService,
        alice: int,
        monkeypatch: pytest.MonkeyPatch,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        _, pair = service.login("alice", "alice-password-1", ORIGIN)

        def boom(*args, **kwargs):
            raise StorageError()

        monkeypatch.setattr(service.revocations, "revoke", boom)
        with caplog.at_level(logging.WARNING, logger="warden.auth"):
            assert service.logout(pair.access_token, alice, "alice") is False
        assert any("could not revoke" in r.getMessage() for r in caplog.records)

    def test_expired_refresh_token_needs_no_revocation(
        self, service: AuthService, alice: int, caplog: pytest.LogCaptureFixture
    ) -> None:
        _, pair = service.login("alice", "alice-password-1", ORIGIN)
        stale = TokenManager(secret_key=TEST_SECRET, refresh_ttl=-10).issue_token_pair(alice, "alice", None)
        with caplog.at_level(logging.WARNING, logger="warden.auth"):
            assert service.logout(pair.access_token, alice, "alice", refresh_token=stale.refresh_token) is True
        assert not any("could not revoke" in r.getMessage() for r in caplog.records)
        assert service.revocations.count() == 1

    def test_refresh_token_of_another_principal_is_left_alone(
        self, service: AuthService, alice: int, caplog: pytest.LogCaptureFixture
    ) -> None:
        make_user(service.users, "bob", "bob-password-1")
        _, mine = service.login("alice", "alice-password-1", ORIGIN)
        _, theirs = service.login("bob", "bob-password-1", ORIGIN)

        with caplog.at_level(logging.WARNING, logger="warden.auth"):
            assert service.logout(mine.access_token, alice, "alice", refresh_token=theirs.refresh_token) is False
        assert any("owned by user_id" in r.getMessage() for r in caplog.records)

        assert service.revocations.is_revoked(theirs.refresh_token) is False
        assert [e.reason for e in service.revocations.list_for_user(alice)] == ["logout"]
        service.refresh(theirs.refresh_token)


class TestLoginAudit:
    def test_each_login_outcome_is_recorded(self, service: AuthService, alice: int) -> None:
        with pytest.raises(InvalidCredentialsError):
            service.login("alice", "wrong", ORIGIN)
        with pytest.raises(InvalidCredentialsError):
            service.login("mallory", "wrong", ORIGIN)
        service.login("alice", "alice-password-1", ORIGIN)

        entries = service.login_log.list_recent()
        assert [(e.username, e.user_id, e.success, e.message) for e in entries] == [
            ("alice", alice, True, "ok"),
            ("mallory", None, False, "invalid credentials"),
            ("alice", None, False, "invalid credentials"),
        ]
        assert {e.event for e in entries} == {EVENT_LOGIN}
        assert {e.origin for e in entries} == {ORIGIN}

    def test_blocked_and_unavailable_logins_are_recorded(self, service: AuthService, alice: int) -> None:
        make_user(service.users, "dora", "dora-password-1", status="locked")
        with pytest.raises(AccountUnavailableError):
            service.login("dora", "dora-password-1", ORIGIN)
        for _ in range(4):
            with pytest.raises(InvalidCredentialsError):
                service.login("alice", "wrong", ORIGIN)
        with pytest.raises(AccountBlockedError):
            service.login("alice", "wrong", ORIGIN)
        with pytest.raises(AccountBlockedError):
            service.login("alice", "alice-password-1", ORIGIN)

        messages = [e.message for e in service.login_log.list_recent(limit=3)]
        assert messages == ["blocked", "blocked after repeated failures", "invalid credentials"]
        (dora,) = service.login_log.list_recent(username="dora")
        assert dora.message == "account locked"
        assert dora.user_id is not None

    def test_logout_is_recorded(self, service: AuthService, alice: int) -> None:
        _, pair = service.login("alice", "alice-password-1", ORIGIN)
        service.logout(pair.access_token, alice, "alice", refresh_token=pair.refresh_token, origin=ORIGIN)
        (entry,) = [e for e in service.login_log.list_recent(user_id=alice) if e.event == EVENT_LOGOUT]
        assert entry.success is True
        assert entry.message == "ok"

    def test_logout_with_failed_revocation_is_recorded_as_anomaly(
        self, service: AuthService, alice: int, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        _, pair = service.login("alice", "alice-password-1", ORIGIN)

        def boom(*args, **kwargs):
            raise StorageError()

        monkeypatch.setattr(service.revocations, "revoke", boom)
        assert service.logout(pair.access_token, alice, "alice") is False
        (latest, *_) = service.login_log.list_recent(user_id=alice)
        assert latest.event == EVENT_LOGOUT
        assert latest.success is False
        assert latest.message == "logged out, but token revocation failed"

    def test_audit_outage_does_not_change_the_login(
        self,
        service: AuthService,
        alice: int,
        monkeypatch: pytest.MonkeyPatch,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        def boom(*args, **kwargs):
            raise StorageError()

        monkeypatch.setattr(service.login_log, "record", boom)
        with caplog.at_level(logging.ERROR, logger="warden.auth"):
            user, _ = service.login("alice", "alice-password-1", ORIGIN)
        assert user.id == alice
        assert any("audit write failed" in r.getMessage() for r in caplog.records)


class TestAuthenticate:
    def test_valid_header(self, service: AuthService, alice: int) -> None:
        _, pair = service.login("alice", "alice-password-1", ORIGIN)
        claims = service.authenticate(f"Bearer {pair.access_token}")
        assert claims.user_id == alice
        assert claims.username == "alice"

    @pytest.mark.parametrize("header", [None, "", "Bearer", "Basic abc", "Bearer a b"])
    def test_malformed_header(self, service: AuthService, header: str | None) -> None:
        with pytest.raises(MalformedTokenError):
            service.authenticate(header)

    def test_refresh_token_is_not_an_access_token(self, service: AuthService, alice: int) -> None:
        _, pair = service.login("alice", "alice-password-1", ORIGIN)
        with pytest.raises(TokenTypeError):
            service.authenticate(f"Bearer {pair.refresh_token}")

    def test_revocation_outage_rejects_token(
        self, service: AuthService, alice: int, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        _, pair = service.login("alice", "alice-password-1", ORIGIN)

        def boom(*args, **kwargs):
            raise StorageError()

        monkeypatch.setattr(service.revocations, "is_revoked", boom)
        with pytest.raises(StorageError):
            service.authenticate(f"Bearer {pair.access_token}")


class TestRefreshAndAuthorize:
    def test_refresh_issues_new_pair(self, service: AuthService, alice: int) -> None:
        _, pair = service.login("alice", "alice-password-1", ORIGIN)
        new_pair = service.refresh(pair.refresh_token)
        assert service.authenticate(f"Bearer {new_pair.access_token}").user_id == alice

    def test_authorize_raises_on_deny(self, service: AuthService, alice: int) -> None:
        _, pair = service.login("alice", "alice-password-1", ORIGIN)
        claims = service.authenticate(f"Bearer {pair.access_token}")
        with pytest.raises(PermissionDeniedError):
            service.authorize(claims, "/users/1", "GET")

        service.authorizer.sync_user_roles(alice, [1])
        service.authorizer.sync_role_restful_permissions(1, [("/users/*", "GET")])
        assert service.authorize(claims, "/users/1", "GET").allowed is True


class TestBootstrap:
    RULES = [("/admin/*", "GET")]

    def test_first_admin_gets_role_rules_and_permissions(self, service: AuthService) -> None:
        report = Permission(code="report:list", name="List reports", url="/reports", method="GET")
        admin = service.bootstrap_admin("root", "root-password-1", 1, self.RULES, [report])

        assert service.users.get_by_username("root").role_id == 1
        assert service.authorizer.get_user_roles(admin.id) == [1]
        _, pair = service.login("root", "root-password-1", ORIGIN)
        claims = service.authenticate(f"Bearer {pair.access_token}")
        assert service.authorize(claims, "/admin/users", "GET").strategy == "restful"
        assert service.authorize(claims, "/reports", "GET").strategy == "permission"

    def test_refused_once_a_principal_exists(self, service: AuthService, alice: int) -> None:
        with pytest.raises(SetupCompleteError):
            service.bootstrap_admin("root", "root-password-1", 1, self.RULES)
        assert service.users.get_by_username("root") is None
        assert service.authorizer.policies.rules_for_roles([1]) == []

    def test_second_bootstrap_is_refused(self, service: AuthService) -> None:
        service.bootstrap_admin("root", "root-password-1", 1, self.RULES)
        with pytest.raises(SetupCompleteError):
            service.bootstrap_admin("root2", "root-password-2", 1, self.RULES)

    def test_existing_permission_code_is_reused(self, service: AuthService) -> None:
        policies = service.authorizer.policies
        pid = policies.create_permission(Permission(code="report:list", url="/reports", method="GET"))
        service.bootstrap_admin("root", "root-password-1", 1, [], [Permission(code="report:list")])
        (rule,) = policies.rules_for_roles([1])
        assert rule.obj == "report:list"
        assert len(policies.list_permissions()) == 1
        assert policies.get_permission(pid).url == "/reports"


class TestCreatePrincipal:
    def test_links_role_in_graph(self, service: AuthService) -> None:
        user = service.create_principal("carol", "carol-password-1", role_id=3)
        assert service.authorizer.get_user_roles(user.id) == [3]
        assert service.users.get_by_id(user.id).role_id == 3

    def test_without_role(self, service: AuthService) -> None:
        user = service.create_principal("dave", "dave-password-1")
        assert service.authorizer.get_user_roles(user.id) == []

    def test_duplicate_username_is_a_conflict(self, service: AuthService, alice: int) -> None:
        with pytest.raises(ConflictError):
            service.create_principal("alice", "another-password")
