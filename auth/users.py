"""
auth/users.py -- Account administration: create, look up, update, lock state.

UserService owns every identity write that is not a login attempt:
registration, profile edits, password changes, status changes and soft
deletion. AuthService.register() delegates here.

Uniqueness is checked in the fixed order username -> email -> employee_id and
the first violation wins. The store's UNIQUE constraints back this up for
concurrent registrations and report through the same error classes.

Writes go through IdentityStore.save(), a compare-and-set. Administrative
writes do not retry on ConcurrentUpdateError; the caller re-reads and retries.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
from dataclasses import replace

from auth.errors import (
    CurrentPasswordIncorrectError,
    DuplicateEmailError,
    DuplicateEmployeeIdError,
    DuplicateUsernameError,
    IdentityNotFoundError,
    PasswordMismatchError,
)
from auth.lockout import LockoutPolicy
from auth.models import Identity, IdentityStatus, IdentityView, ProfileUpdate, Registration
from auth.passwords import PasswordHasher
from auth.rbac import RbacResolver, RoleIndex
from auth.store import IdentityStore

logger = logging.getLogger("staffgate.users")


def identity_view(identity: Identity, index: RoleIndex) -> IdentityView:
    """Project an Identity onto the fields a caller may see."""
    return IdentityView(
        id=identity.id,
        username=identity.username,
        email=identity.email,
        employee_id=identity.employee_id,
        name=identity.name,
        department=identity.department,
        position=identity.position,
        phone=identity.phone,
        status=identity.status,
        last_login_at=identity.last_login_at,
        created_at=identity.created_at,
        updated_at=identity.updated_at,
        role_names=RbacResolver(index).role_names(identity),
    )


class UserService:
    def __init__(self, store: IdentityStore, hasher: PasswordHasher, lockout: LockoutPolicy) -> None:
        self.store = store
        self.hasher = hasher
        self.lockout = lockout

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_user(self, registration: Registration) -> IdentityView:
        logger.info("Creating new user: %s", registration.username)
        self._validate_unique(registration.username, registration.email, registration.employee_id)

        identity = Identity(
            username=registration.username,
            email=registration.email,
            employee_id=registration.employee_id,
            name=registration.name,
            department=registration.department,
            position=registration.position,
            phone=registration.phone,
            credential_hash=self.hasher.hash(registration.password),
            status=IdentityStatus.ACTIVE,
            failed_attempts=0,
        )
        created = self.store.create_identity(identity)
        logger.info("User created: id=%s username=%s", created.id, created.username)
        return self._view(created)

    def _validate_unique(self, username: str, email: str, employee_id: str | None) -> None:
        if self.store.exists_by_username(username):
            raise DuplicateUsernameError()
        if self.store.exists_by_email(email):
            raise DuplicateEmailError()
        if employee_id is not None and self.store.exists_by_employee_id(employee_id):
            raise DuplicateEmployeeIdError()

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get_user(self, user_id: int) -> IdentityView:
        logger.debug("Finding user by id: %s", user_id)
        return self._view(self._find(user_id))

    def get_user_by_username(self, username: str) -> IdentityView:
        logger.debug("Finding user by username: %s", username)
        identity = self.store.get_by_username(username)
        if identity is None:
            raise IdentityNotFoundError()
        return self._view(identity)

    def exists_by_username(self, username: str) -> bool:
        return self.store.exists_by_username(username)

    def exists_by_email(self, email: str) -> bool:
        return self.store.exists_by_email(email)

    def exists_by_employee_id(self, employee_id: str) -> bool:
        return self.store.exists_by_employee_id(employee_id)

    # ------------------------------------------------------------------
    # Updates
    # ------------------------------------------------------------------

    def update_user(self, user_id: int, changes: ProfileUpdate) -> IdentityView:
        """Apply the non-None fields of changes.

        Email and employee ID are checked for uniqueness only when they differ
        from the current value.
        """
        logger.info("Updating user: id=%s", user_id)
        identity = self._find(user_id)
        fields: dict = {}

        if changes.email is not None and changes.email != identity.email:
            if self.store.exists_by_email(changes.email):
                raise DuplicateEmailError()
            fields["email"] = changes.email
        if changes.employee_id is not None and changes.employee_id != identity.employee_id:
            if self.store.exists_by_employee_id(changes.employee_id):
                raise DuplicateEmployeeIdError()
            fields["employee_id"] = changes.employee_id
        for name in ("name", "department", "position", "phone"):
            value = getattr(changes, name)
            if value is not None:
                fields[name] = value

        updated = self.store.save(replace(identity, **fields))
        logger.info("User updated: id=%s", user_id)
        return self._view(updated)

    def change_password(self, user_id: int, current_password: str, new_password: str, confirm_password: str) -> None:
        logger.info("Changing password for user: id=%s", user_id)
        if new_password != confirm_password:
            raise PasswordMismatchError()
        identity = self._find(user_id)
        if not self.hasher.verify(current_password, identity.credential_hash):
            raise CurrentPasswordIncorrectError()
        self.store.save(replace(identity, credential_hash=self.hasher.hash(new_password)))
        logger.info("Password changed for user: id=%s", user_id)

    def update_status(self, user_id: int, status: IdentityStatus) -> IdentityView:
        """Set an administrative status.

        ACTIVE goes through the lockout policy's unlock (counter reset, lock
        cleared). Any other status clears locked_until: a lock set here has no
        expiry and lasts until an explicit unlock.
        """
        logger.info("Updating user status: id=%s status=%s", user_id, status.value)
        identity = self._find(user_id)
        if status is IdentityStatus.ACTIVE:
            identity = self.lockout.unlock(identity)
        else:
            identity = replace(identity, status=status, locked_until=None)
        return self._view(self.store.save(identity))

    def unlock(self, username: str) -> IdentityView:
        identity = self.store.get_by_username(username)
        if identity is None:
            raise IdentityNotFoundError()
        return self.update_status(identity.id, IdentityStatus.ACTIVE)

    def delete_user(self, user_id: int) -> None:
        """Soft delete: the row stays, flagged and RESIGNED."""
        logger.info("Deleting user: id=%s", user_id)
        identity = self._find(user_id)
        self.store.save(replace(identity, is_deleted=True, status=IdentityStatus.RESIGNED, locked_until=None))
        logger.info("User deleted: id=%s", user_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _find(self, user_id: int) -> Identity:
        identity = self.store.get_by_id(user_id)
        if identity is None:
            raise IdentityNotFoundError()
        return identity

    def _view(self, identity: Identity) -> IdentityView:
        return identity_view(identity, self.store.load_role_index())
