"""
auth/models.py -- Domain dataclasses for identities, roles and permissions.

Pattern: Data class (pure data container, zero logic). Stores, the lockout
policy and the services do the work; these classes only own domain shape.

Identity is frozen. Every state change (failed attempt, unlock, profile edit)
produces a new instance via dataclasses.replace(), which keeps the lockout
transitions pure and makes "what will be persisted" an explicit value.

Ownership is one-directional: an Identity holds Role ids, a Role holds
Permission ids. Nothing points back, so there are no reference cycles and the
RBAC resolver looks roles up by id through a read-only index.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class IdentityStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    LOCKED = "LOCKED"
    SUSPENDED = "SUSPENDED"
    RESIGNED = "RESIGNED"


class ResourceType(str, Enum):
    BOARD = "BOARD"
    APPROVAL = "APPROVAL"
    ATTENDANCE = "ATTENDANCE"
    FILE = "FILE"
    USER = "USER"
    ROLE = "ROLE"
    SYSTEM = "SYSTEM"


@dataclass(frozen=True)
class Permission:
    name: str
    resource_type: ResourceType
    id: int | None = None
    description: str | None = None


@dataclass(frozen=True)
class Role:
    name: str
    id: int | None = None
    description: str | None = None
    permission_ids: frozenset[int] = field(default_factory=frozenset)


@dataclass(frozen=True)
class Identity:
    """A user account subject to authentication.

    credential_hash is the bcrypt output and must never leave auth/. Use
    IdentityView for anything returned to a caller.

    locked_until is only set while status is LOCKED. A LOCKED identity with
    locked_until=None was locked by an administrator and stays locked until
    explicitly unlocked.

    version is bumped by the store on every write and is the compare-and-set
    token for concurrent login attempts.
    """

    username: str
    email: str
    name: str
    credential_hash: str
    id: int | None = None
    employee_id: str | None = None
    department: str | None = None
    position: str | None = None
    phone: str | None = None
    status: IdentityStatus = IdentityStatus.ACTIVE
    failed_attempts: int = 0
    locked_until: datetime | None = None
    last_login_at: datetime | None = None
    role_ids: frozenset[int] = field(default_factory=frozenset)
    is_deleted: bool = False
    version: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class Registration:
    """Input for creating a new identity. The password is plaintext here only."""

    username: str
    password: str
    email: str
    name: str
    employee_id: str | None = None
    department: str | None = None
    position: str | None = None
    phone: str | None = None


@dataclass(frozen=True)
class ProfileUpdate:
    """Partial profile change. None means "leave unchanged"."""

    email: str | None = None
    employee_id: str | None = None
    name: str | None = None
    department: str | None = None
    position: str | None = None
    phone: str | None = None


@dataclass(frozen=True)
class IdentityView:
    """Sanitized identity: everything a caller may see, nothing secret.

    No credential hash, failure counter, lock deadline or version.
    """

    id: int
    username: str
    email: str
    name: str
    status: IdentityStatus
    employee_id: str | None = None
    department: str | None = None
    position: str | None = None
    phone: str | None = None
    last_login_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    role_names: frozenset[str] = field(default_factory=frozenset)


@dataclass(frozen=True)
class LoginResult:
    access_token: str
    expires_in: int
    user: IdentityView
    token_type: str = "Bearer"


@dataclass(frozen=True)
class Principal:
    """The caller behind a verified bearer token. Built without a store lookup."""

    username: str
    authorities: tuple[str, ...] = ()

    def has_authority(self, name: str) -> bool:
        return name in self.authorities
