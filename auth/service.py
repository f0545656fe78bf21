"""
auth/service.py -- Login and registration.

login() runs five fail-fast gates in order:

  1. Identity lookup (non-deleted).   Unknown  -> InvalidCredentialsError
  2. Lockout evaluation.              Locked   -> AccountLockedError
  3. Status.                          Disabled -> AccountDisabledError
  4. Password.                        Wrong    -> record failure, InvalidCredentialsError
  5. Success.                         record success, issue access token

Unknown username and wrong password share one error and, through
PasswordHasher.dummy_verify(), roughly one response time. Locked and disabled
accounts do reveal that the username exists; that asymmetry is kept on
purpose and flagged in DESIGN.md.

Atomicity: the lockout evaluation, the failure/success bookkeeping and the
write are one unit. Any auto-unlock from gate 2 is folded into the single
compare-and-set write of gate 4 or 5. If that write loses to a concurrent
attempt (ConcurrentUpdateError) the whole attempt re-runs from gate 1 against
fresh state, at most max_conflict_retries extra times.

IdentityStoreError is never retried here.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timezone

from auth.errors import (
    AccountDisabledError,
    AccountLockedError,
    ConcurrentUpdateError,
    InvalidCredentialsError,
)
from auth.lockout import LockoutPolicy
from auth.models import IdentityStatus, IdentityView, LoginResult, Registration
from auth.passwords import PasswordHasher
from auth.rbac import RbacResolver
from auth.store import IdentityStore
from auth.tokens import TokenService
from auth.users import UserService, identity_view

logger = logging.getLogger("staffgate.auth")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuthService:
    def __init__(
        self,
        store: IdentityStore,
        hasher: PasswordHasher,
        tokens: TokenService,
        lockout: LockoutPolicy,
        users: UserService,
        clock: Callable[[], datetime] = _utcnow,
        max_conflict_retries: int = 3,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.tokens = tokens
        self.lockout = lockout
        self.users = users
        self._clock = clock
        self.max_conflict_retries = max_conflict_retries

    def login(self, username: str, password: str) -> LoginResult:
        logger.info("Login attempt: username=%s", username)
        conflicts = 0
        while True:
            try:
                return self._attempt_login(username, password)
            except ConcurrentUpdateError:
                conflicts += 1
                if conflicts > self.max_conflict_retries:
                    logger.error("Login gave up after %d write conflicts: username=%s", conflicts, username)
                    raise
                logger.info("Login write conflict, re-evaluating: username=%s", username)

    def _attempt_login(self, username: str, password: str) -> LoginResult:
        identity = self.store.get_by_username(username, include_deleted=False)
        if identity is None:
            self.hasher.dummy_verify(password)
            logger.warning("Login failed - unknown username: username=%s", username)
            raise InvalidCredentialsError()

        now = self._clock()
        evaluation = self.lockout.evaluate(identity, now)
        identity = evaluation.identity
        if evaluation.mutated:
            logger.info("Lock expired, auto-unlocking: username=%s", username)

        if evaluation.status is IdentityStatus.LOCKED:
            logger.warning("Login failed - account locked: username=%s", username)
            raise AccountLockedError()

        if evaluation.status is not IdentityStatus.ACTIVE:
            logger.warning("Login failed - account not active: username=%s status=%s", username, evaluation.status.value)
            raise AccountDisabledError()

        if not self.hasher.verify(password, identity.credential_hash):
            failed = self.lockout.record_failure(identity, now)
            self.store.save(failed)
            if failed.status is IdentityStatus.LOCKED:
                logger.warning("Account locked after %d failed attempts: username=%s", failed.failed_attempts, username)
            else:
                logger.warning("Login failed - invalid password: username=%s", username)
            raise InvalidCredentialsError()

        identity = self.store.save(self.lockout.record_success(identity, now))
        index = self.store.load_role_index()
        authorities = sorted(RbacResolver(index).effective_permissions(identity))
        token = self.tokens.issue_access(identity.username, authorities)
        logger.info("Login successful: username=%s", username)
        return LoginResult(
            access_token=token,
            expires_in=self.tokens.access_validity_seconds,
            user=identity_view(identity, index),
        )

    def register(self, registration: Registration) -> IdentityView:
        logger.info("Registration attempt: username=%s", registration.username)
        return self.users.create_user(registration)
