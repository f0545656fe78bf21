"""Tests for login and registration in auth/service.py.

These run the real store, hasher, lockout policy and token service over an
in-memory database; only the clock is frozen. Store failures and write races
are injected with monkeypatch on the store instance.

Coverage:
  - Success: token carries subject + effective permissions, counter reset, last login stamped
  - Unknown / soft-deleted username: InvalidCredentials, nothing written
  - Wrong password: counter +1; the fifth failure locks for exactly one hour
  - Locked: correct password still refused; lock lifts strictly after the deadline
  - Expired lock + wrong password: auto-unlock and failure land in one write
  - INACTIVE / SUSPENDED / RESIGNED: AccountDisabled even with the right password
  - Admin lock (no deadline) never lifts on its own
  - Write conflict: attempt re-runs against fresh state; gives up after the retry budget
  - Parallel wrong passwords on real threads: no lost counter updates
  - Store failure while recording a failure: IdentityStoreError, not InvalidCredentials
  - Registration: duplicate precedence username -> email -> employee_id
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from datetime import timedelta

import pytest
from conftest import PASSWORD, make_user, seed_admin_role

from auth.errors import (
    AccountDisabledError,
    AccountLockedError,
    ConcurrentUpdateError,
    DuplicateEmailError,
    DuplicateEmployeeIdError,
    DuplicateUsernameError,
    IdentityStoreError,
    InvalidCredentialsError,
)
from auth.lockout import LockoutPolicy
from auth.models import IdentityStatus, Registration
from auth.rbac import USER_READ, USER_WRITE
from auth.service import AuthService
from auth.store import IdentityStore
from auth.users import UserService

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _fail(auth_service, username: str = "kim", times: int = 1) -> None:
    for _ in range(times):
        with pytest.raises(InvalidCredentialsError):
            auth_service.login(username, "Wrong!pass9")


def _set(store, username: str, **fields):
    identity = store.get_by_username(username)
    return store.save(replace(identity, **fields))


# ---------------------------------------------------------------------------
# Successful login
# ---------------------------------------------------------------------------


class TestLoginSuccess:
    def test_token_carries_permissions(self, auth_service, users, store, tokens) -> None:
        role = seed_admin_role(store)
        view = make_user(users)
        store.assign_role(view.id, role.id)

        result = auth_service.login("kim", PASSWORD)

        principal = tokens.parse(result.access_token)
        assert principal.username == "kim"
        assert principal.authorities == (USER_READ, USER_WRITE)
        assert result.token_type == "Bearer"
        assert result.expires_in == 3600
        assert result.user.role_names == frozenset({"ADMIN"})

    def test_user_without_roles_gets_empty_authorities(self, auth_service, users, tokens) -> None:
        make_user(users)
        result = auth_service.login("kim", PASSWORD)
        assert tokens.parse(result.access_token).authorities == ()

    def test_success_resets_counter_and_stamps_login(self, auth_service, users, store, clock) -> None:
        make_user(users)
        _fail(auth_service, times=3)
        result = auth_service.login("kim", PASSWORD)
        stored = store.get_by_username("kim")
        assert stored.failed_attempts == 0
        assert stored.last_login_at == clock.now
        assert result.user.last_login_at == clock.now

    def test_result_view_has_no_secrets(self, auth_service, users) -> None:
        make_user(users)
        view = auth_service.login("kim", PASSWORD).user
        assert not hasattr(view, "credential_hash")
        assert not hasattr(view, "failed_attempts")
        assert not hasattr(view, "locked_until")


# ---------------------------------------------------------------------------
# Failed login and lockout
# ---------------------------------------------------------------------------


class TestLoginFailure:
    def test_unknown_username(self, auth_service, store) -> None:
        with pytest.raises(InvalidCredentialsError):
            auth_service.login("ghost", PASSWORD)
        assert store.get_by_username("ghost") is None

    def test_soft_deleted_user_is_unknown(self, auth_service, users) -> None:
        view = make_user(users)
        users.delete_user(view.id)
        with pytest.raises(InvalidCredentialsError):
            auth_service.login("kim", PASSWORD)

    def test_wrong_password_counts(self, auth_service, users, store) -> None:
        make_user(users)
        _fail(auth_service, times=2)
        stored = store.get_by_username("kim")
        assert stored.failed_attempts == 2
        assert stored.status is IdentityStatus.ACTIVE

    def test_fifth_failure_locks_for_one_hour(self, auth_service, users, store, clock) -> None:
        make_user(users)
        _set(store, "kim", failed_attempts=4)
        _fail(auth_service)
        stored = store.get_by_username("kim")
        assert stored.status is IdentityStatus.LOCKED
        assert stored.failed_attempts == 5
        assert stored.locked_until == clock.now + timedelta(hours=1)

    def test_locked_refuses_correct_password(self, auth_service, users) -> None:
        make_user(users)
        _fail(auth_service, times=5)
        with pytest.raises(AccountLockedError):
            auth_service.login("kim", PASSWORD)

    def test_locked_does_not_count_further_failures(self, auth_service, users, store) -> None:
        make_user(users)
        _fail(auth_service, times=5)
        with pytest.raises(AccountLockedError):
            auth_service.login("kim", "Wrong!pass9")
        assert store.get_by_username("kim").failed_attempts == 5

    def test_lock_holds_at_deadline_and_lifts_after(self, auth_service, users, clock) -> None:
        make_user(users)
        _fail(auth_service, times=5)
        clock.advance(hours=1)
        with pytest.raises(AccountLockedError):
            auth_service.login("kim", PASSWORD)
        clock.advance(seconds=1)
        assert auth_service.login("kim", PASSWORD).user.status is IdentityStatus.ACTIVE

    def test_expired_lock_then_wrong_password(self, auth_service, users, store, clock) -> None:
        """Auto-unlock resets the counter and the new failure is the first one."""
        make_user(users)
        _set(store, "kim", status=IdentityStatus.LOCKED, failed_attempts=5, locked_until=clock.now - timedelta(seconds=1))
        before = store.get_by_username("kim").version

        _fail(auth_service)

        stored = store.get_by_username("kim")
        assert stored.status is IdentityStatus.ACTIVE
        assert stored.failed_attempts == 1
        assert stored.locked_until is None
        assert stored.version == before + 1

    def test_admin_lock_never_lifts(self, auth_service, users, clock) -> None:
        view = make_user(users)
        users.update_status(view.id, IdentityStatus.LOCKED)
        clock.advance(days=30)
        with pytest.raises(AccountLockedError):
            auth_service.login("kim", PASSWORD)

    @pytest.mark.parametrize("status", [IdentityStatus.INACTIVE, IdentityStatus.SUSPENDED, IdentityStatus.RESIGNED])
    def test_disabled_statuses(self, auth_service, users, store, status) -> None:
        make_user(users)
        _set(store, "kim", status=status, failed_attempts=2)
        before = store.get_by_username("kim")
        with pytest.raises(AccountDisabledError):
            auth_service.login("kim", PASSWORD)
        after = store.get_by_username("kim")
        assert after.failed_attempts == 2
        assert after.version == before.version


# ---------------------------------------------------------------------------
# Concurrency and store failures
# ---------------------------------------------------------------------------


class TestLoginRaces:
    def test_conflict_reruns_against_fresh_state(self, auth_service, users, store, monkeypatch) -> None:
        """A racing attempt lands between our read and our write; neither failure is lost."""
        make_user(users)
        stale = store.get_by_username("kim", include_deleted=False)
        _fail(auth_service)

        real_get = store.get_by_username
        calls = []

        def get_once_stale(username, include_deleted=True):
            calls.append(username)
            if len(calls) == 1:
                return stale
            return real_get(username, include_deleted=include_deleted)

        monkeypatch.setattr(store, "get_by_username", get_once_stale)
        _fail(auth_service)
        monkeypatch.undo()

        assert len(calls) == 2
        assert store.get_by_username("kim").failed_attempts == 2

    def test_gives_up_after_retry_budget(self, auth_service, users, store, monkeypatch) -> None:
        make_user(users)
        attempts = []

        def always_conflict(identity):
            attempts.append(identity)
            raise ConcurrentUpdateError()

        monkeypatch.setattr(store, "save", always_conflict)
        with pytest.raises(ConcurrentUpdateError):
            auth_service.login("kim", PASSWORD)
        assert len(attempts) == auth_service.max_conflict_retries + 1

    def test_store_failure_is_not_invalid_credentials(self, auth_service, users, store, monkeypatch) -> None:
        make_user(users)
        attempts = []

        def broken_save(identity):
            attempts.append(identity)
            raise IdentityStoreError()

        monkeypatch.setattr(store, "save", broken_save)
        with pytest.raises(IdentityStoreError):
            auth_service.login("kim", "Wrong!pass9")
        assert len(attempts) == 1

    def test_parallel_failures_are_all_counted(self, tmp_path, hasher, tokens, clock) -> None:
        """Real threads against a file database: every failed attempt lands exactly once."""
        attempts = 10
        file_store = IdentityStore(f"sqlite:///{tmp_path / 'races.db'}")
        try:
            lockout = LockoutPolicy(max_failed_attempts=100)
            file_users = UserService(file_store, hasher, lockout)
            service = AuthService(
                file_store, hasher, tokens, lockout, file_users, clock=clock, max_conflict_retries=attempts * 2
            )
            make_user(file_users)

            def wrong_password(_):
                with pytest.raises(InvalidCredentialsError):
                    service.login("kim", "Wrong!pass9")

            with ThreadPoolExecutor(max_workers=attempts) as pool:
                list(pool.map(wrong_password, range(attempts)))

            kim = file_store.get_by_username("kim")
            assert kim.failed_attempts == attempts
            assert kim.status is IdentityStatus.ACTIVE
        finally:
            file_store.close()


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


class TestRegister:
    def _registration(self, **overrides) -> Registration:
        fields = {"username": "lee", "password": PASSWORD, "email": "lee@corp.example", "name": "Lee"}
        fields.update(overrides)
        return Registration(**fields)

    def test_register_creates_active_user(self, auth_service, store, hasher) -> None:
        view = auth_service.register(self._registration(employee_id="E200"))
        stored = store.get_by_id(view.id)
        assert view.status is IdentityStatus.ACTIVE
        assert view.role_names == frozenset()
        assert stored.failed_attempts == 0
        assert stored.credential_hash != PASSWORD
        assert hasher.verify(PASSWORD, stored.credential_hash)

    def test_registered_user_can_log_in(self, auth_service) -> None:
        auth_service.register(self._registration())
        assert auth_service.login("lee", PASSWORD).user.username == "lee"

    def test_duplicate_username_wins_over_email(self, auth_service, users) -> None:
        make_user(users, "lee")
        with pytest.raises(DuplicateUsernameError):
            auth_service.register(self._registration())

    def test_duplicate_email(self, auth_service, users, store) -> None:
        make_user(users, "kim", email="lee@corp.example")
        with pytest.raises(DuplicateEmailError):
            auth_service.register(self._registration())
        assert not store.exists_by_username("lee")

    def test_duplicate_employee_id(self, auth_service, users) -> None:
        make_user(users, "kim", employee_id="E200")
        with pytest.raises(DuplicateEmployeeIdError):
            auth_service.register(self._registration(employee_id="E200"))

    def test_email_checked_before_employee_id(self, auth_service, users) -> None:
        make_user(users, "kim", email="lee@corp.example", employee_id="E200")
        with pytest.raises(DuplicateEmailError):
            auth_service.register(self._registration(employee_id="E200"))

    def test_race_past_existence_checks(self, auth_service, users, store, monkeypatch) -> None:
        """Both registrations pass the checks; the UNIQUE index rejects the loser."""
        make_user(users, "lee")
        monkeypatch.setattr(store, "exists_by_username", lambda username: False)
        with pytest.raises(DuplicateUsernameError):
            auth_service.register(self._registration(email="other@corp.example"))
