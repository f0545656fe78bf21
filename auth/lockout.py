"""
auth/lockout.py -- Account lockout state machine.

States are IdentityStatus values. Only ACTIVE is admitted to a password check.

    ACTIVE --(failure #N, N == max_failed_attempts)--> LOCKED(until now+duration)
    LOCKED --(evaluate, now > locked_until)----------> ACTIVE (counter reset)
    LOCKED --(unlock)--------------------------------> ACTIVE (counter reset)
    any    --(success)-------------------------------> same status, counter reset

INACTIVE, SUSPENDED and RESIGNED have no automatic exit. A LOCKED identity
without locked_until was locked by an administrator and has none either.

Every method is a pure function of (identity, now): it returns the new
Identity and never touches the store. The caller decides when to persist,
which lets the login path fold an auto-unlock and a failed attempt into one
compare-and-set write.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import NamedTuple

from auth.models import Identity, IdentityStatus


class LockoutEvaluation(NamedTuple):
    """Result of evaluate(): effective status plus the identity to carry forward.

    mutated is True when the evaluation itself changed state (an expired lock
    was lifted) and the caller must persist identity even if nothing else
    changes afterwards.
    """

    status: IdentityStatus
    identity: Identity
    mutated: bool


@dataclass(frozen=True)
class LockoutPolicy:
    max_failed_attempts: int = 5
    lock_duration: timedelta = timedelta(hours=1)

    @classmethod
    def from_settings(cls, settings) -> LockoutPolicy:
        return cls(
            max_failed_attempts=settings.lockout_max_failed_attempts,
            lock_duration=timedelta(seconds=settings.lockout_duration_seconds),
        )

    def evaluate(self, identity: Identity, now: datetime) -> LockoutEvaluation:
        if identity.status is not IdentityStatus.LOCKED:
            return LockoutEvaluation(identity.status, identity, False)
        if identity.locked_until is not None and now > identity.locked_until:
            return LockoutEvaluation(IdentityStatus.ACTIVE, self.unlock(identity), True)
        return LockoutEvaluation(IdentityStatus.LOCKED, identity, False)

    def record_failure(self, identity: Identity, now: datetime) -> Identity:
        attempts = identity.failed_attempts + 1
        if attempts >= self.max_failed_attempts:
            return replace(
                identity,
                failed_attempts=attempts,
                status=IdentityStatus.LOCKED,
                locked_until=now + self.lock_duration,
            )
        return replace(identity, failed_attempts=attempts)

    def record_success(self, identity: Identity, now: datetime) -> Identity:
        return replace(identity, last_login_at=now, failed_attempts=0)

    def unlock(self, identity: Identity) -> Identity:
        return replace(identity, status=IdentityStatus.ACTIVE, failed_attempts=0, locked_until=None)
