"""
auth/store.py -- SQLAlchemy Core persistence layer for identities and RBAC data.

Pattern: Repository + Data Mapper. IdentityStore is the repository;
_row_to_identity / _row_to_role / _row_to_permission are the mappers.
Services never touch SQL directly.

Concurrency:
  Every users row carries a version column. save() is a compare-and-set:
  UPDATE ... WHERE id = :id AND version = :expected. If another writer got
  there first no row matches and ConcurrentUpdateError is raised, so two
  racing login attempts can never both write "failed_attempts = n + 1".

  username, email and employee_id carry UNIQUE constraints. When an insert or
  update trips one, the IntegrityError is mapped back to the first violated
  field in the order username, email, employee_id -- the same order the
  services check in -- so a registration race reports the same error as a
  sequential duplicate.

Failures:
  Any other SQLAlchemyError (connection lost, lock timeout, ...) becomes
  IdentityStoreError. It is never retried here; the caller decides.

Security:
  All queries use bound parameters. No f-strings in SQL.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    func,
    select,
    text,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.errors import (
    ConcurrentUpdateError,
    DuplicateEmailError,
    DuplicateEmployeeIdError,
    DuplicateUsernameError,
    IdentityStoreError,
)
from auth.models import Identity, IdentityStatus, Permission, ResourceType, Role
from auth.rbac import RoleIndex

logger = logging.getLogger("staffgate.store")

# Seconds SQLite waits on a locked database before giving up with an
# OperationalError (surfaced as IdentityStoreError).
_SQLITE_BUSY_TIMEOUT = 5

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(50), nullable=False, unique=True),
    Column("email", String(100), nullable=False, unique=True),
    Column("employee_id", String(20), unique=True),  # NULLs never collide
    Column("hashed_password", Text, nullable=False),
    Column("name", String(50), nullable=False),
    Column("department", String(50)),
    Column("position", String(50)),
    Column("phone", String(20)),
    Column("status", String(20), nullable=False, server_default="ACTIVE"),
    Column("failed_attempts", Integer, nullable=False, server_default="0"),
    Column("locked_until", String(32)),  # ISO 8601, only while LOCKED
    Column("last_login_at", String(32)),
    Column("is_deleted", Boolean, nullable=False, server_default="0"),
    Column("version", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_roles = Table(
    "roles",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(50), nullable=False, unique=True),
    Column("description", String(255)),
)

_permissions = Table(
    "permissions",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(100), nullable=False, unique=True),
    Column("description", String(255)),
    Column("resource_type", String(50), nullable=False),
)

_user_roles = Table(
    "user_roles",
    _metadata,
    Column("user_id", Integer, ForeignKey("users.id"), primary_key=True),
    Column("role_id", Integer, ForeignKey("roles.id"), primary_key=True),
)

_role_permissions = Table(
    "role_permissions",
    _metadata,
    Column("role_id", Integer, ForeignKey("roles.id"), primary_key=True),
    Column("permission_id", Integer, ForeignKey("permissions.id"), primary_key=True),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers are not blocked by a login write."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _to_iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _from_iso(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class IdentityStore:
    """Repository for Identity, Role and Permission records.

    Usage:
        store = IdentityStore("sqlite:///staffgate.db")
        created = store.create_identity(Identity(username="kim", email="kim@corp.example",
                                                 name="Kim", credential_hash=hasher.hash("pw")))
        identity = store.get_by_username("kim")
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
            connect_args["timeout"] = _SQLITE_BUSY_TIMEOUT
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        with self._store_errors("schema setup"):
            _metadata.create_all(self.engine)

    @contextmanager
    def _store_errors(self, operation: str) -> Iterator[None]:
        """Translate driver failures into IdentityStoreError."""
        try:
            yield
        except SQLAlchemyError as exc:
            logger.error("Identity store failure during %s: %s", operation, type(exc).__name__)
            raise IdentityStoreError(f"Identity store failed during {operation}.") from exc

    # ------------------------------------------------------------------
    # Identity queries
    # ------------------------------------------------------------------

    def _fetch_identity(self, conn: Connection, where) -> Identity | None:
        row = conn.execute(_users.select().where(where)).fetchone()
        if row is None:
            return None
        role_ids = conn.execute(select(_user_roles.c.role_id).where(_user_roles.c.user_id == row.id)).scalars()
        return _row_to_identity(row, frozenset(role_ids))

    def get_by_id(self, user_id: int) -> Identity | None:
        with self._store_errors("get_by_id"), self.engine.connect() as conn:
            return self._fetch_identity(conn, _users.c.id == user_id)

    def get_by_username(self, username: str, include_deleted: bool = True) -> Identity | None:
        """Look up by exact username. Login passes include_deleted=False."""
        where = _users.c.username == username
        if not include_deleted:
            where = where & (_users.c.is_deleted.is_(False))
        with self._store_errors("get_by_username"), self.engine.connect() as conn:
            return self._fetch_identity(conn, where)

    def get_by_email(self, email: str) -> Identity | None:
        with self._store_errors("get_by_email"), self.engine.connect() as conn:
            return self._fetch_identity(conn, _users.c.email == email)

    def _exists(self, where) -> bool:
        with self._store_errors("existence check"), self.engine.connect() as conn:
            count = conn.execute(select(func.count()).select_from(_users).where(where)).scalar()
        return (count or 0) > 0

    def exists_by_username(self, username: str) -> bool:
        return self._exists(_users.c.username == username)

    def exists_by_email(self, email: str) -> bool:
        return self._exists(_users.c.email == email)

    def exists_by_employee_id(self, employee_id: str) -> bool:
        return self._exists(_users.c.employee_id == employee_id)

    # ------------------------------------------------------------------
    # Identity writes
    # ------------------------------------------------------------------

    def create_identity(self, identity: Identity) -> Identity:
        """Insert a new identity and return it with id, version and timestamps set.

        Raises DuplicateUsernameError / DuplicateEmailError /
        DuplicateEmployeeIdError if a concurrent writer claimed a unique value
        between the caller's existence checks and this insert.
        """
        now = _now()
        try:
            with self._store_errors("create_identity"):
                with self.engine.begin() as conn:
                    result = conn.execute(
                        _users.insert().values(
                            **_identity_columns(identity),
                            version=0,
                            created_at=_to_iso(now),
                            updated_at=_to_iso(now),
                        )
                    )
                    user_id = result.inserted_primary_key[0]
                    for role_id in identity.role_ids:
                        conn.execute(_user_roles.insert().values(user_id=user_id, role_id=role_id))
        except IdentityStoreError as exc:
            if isinstance(exc.__cause__, IntegrityError):
                self._raise_duplicate(identity)
            raise
        return replace(identity, id=user_id, version=0, created_at=now, updated_at=now)

    def save(self, identity: Identity) -> Identity:
        """Compare-and-set write of every mutable identity column.

        Succeeds only if the stored version still equals identity.version.
        Returns the identity with the bumped version. Role assignments are not
        touched; use assign_role().
        """
        now = _now()
        try:
            with self._store_errors("save"), self.engine.begin() as conn:
                result = conn.execute(
                    _users.update()
                    .where((_users.c.id == identity.id) & (_users.c.version == identity.version))
                    .values(
                        **_identity_columns(identity),
                        version=identity.version + 1,
                        updated_at=_to_iso(now),
                    )
                )
                if result.rowcount == 0:
                    raise ConcurrentUpdateError(f"Identity {identity.id} changed since it was read.")
        except IdentityStoreError as exc:
            if isinstance(exc.__cause__, IntegrityError):
                self._raise_duplicate(identity)
            raise
        return replace(identity, version=identity.version + 1, updated_at=now)

    def _raise_duplicate(self, identity: Identity) -> None:
        """Re-run the uniqueness checks in order and raise the first violation."""
        if self._exists((_users.c.username == identity.username) & (_users.c.id != (identity.id or -1))):
            raise DuplicateUsernameError()
        if self._exists((_users.c.email == identity.email) & (_users.c.id != (identity.id or -1))):
            raise DuplicateEmailError()
        if identity.employee_id is not None and self._exists(
            (_users.c.employee_id == identity.employee_id) & (_users.c.id != (identity.id or -1))
        ):
            raise DuplicateEmployeeIdError()

    # ------------------------------------------------------------------
    # RBAC administration
    # ------------------------------------------------------------------

    def create_permission(self, permission: Permission) -> Permission:
        """Insert a permission. Raises ValueError if the name is taken."""
        try:
            with self._store_errors("create_permission"), self.engine.begin() as conn:
                result = conn.execute(
                    _permissions.insert().values(
                        name=permission.name,
                        description=permission.description,
                        resource_type=permission.resource_type.value,
                    )
                )
        except IdentityStoreError as exc:
            if isinstance(exc.__cause__, IntegrityError):
                raise ValueError(f"Permission {permission.name!r} already exists.") from exc
            raise
        return replace(permission, id=result.inserted_primary_key[0])

    def create_role(self, role: Role) -> Role:
        """Insert a role together with its permission links. Raises ValueError if the name is taken."""
        try:
            with self._store_errors("create_role"), self.engine.begin() as conn:
                result = conn.execute(_roles.insert().values(name=role.name, description=role.description))
                role_id = result.inserted_primary_key[0]
                for permission_id in role.permission_ids:
                    conn.execute(_role_permissions.insert().values(role_id=role_id, permission_id=permission_id))
        except IdentityStoreError as exc:
            if isinstance(exc.__cause__, IntegrityError):
                raise ValueError(f"Role {role.name!r} already exists.") from exc
            raise
        return replace(role, id=role_id)

    def assign_role(self, user_id: int, role_id: int) -> None:
        """Grant a role to an identity. Assigning a role twice is a no-op."""
        with self._store_errors("assign_role"), self.engine.begin() as conn:
            exists = conn.execute(
                select(func.count())
                .select_from(_user_roles)
                .where((_user_roles.c.user_id == user_id) & (_user_roles.c.role_id == role_id))
            ).scalar()
            if not exists:
                conn.execute(_user_roles.insert().values(user_id=user_id, role_id=role_id))

    def get_permission_by_name(self, name: str) -> Permission | None:
        with self._store_errors("get_permission_by_name"), self.engine.connect() as conn:
            row = conn.execute(_permissions.select().where(_permissions.c.name == name)).fetchone()
        return _row_to_permission(row) if row is not None else None

    def load_role_index(self) -> RoleIndex:
        """Snapshot every role and permission for one request's RBAC resolution."""
        with self._store_errors("load_role_index"), self.engine.connect() as conn:
            permission_rows = conn.execute(_permissions.select()).fetchall()
            role_rows = conn.execute(_roles.select()).fetchall()
            links = conn.execute(_role_permissions.select()).fetchall()
        permission_ids: dict[int, set[int]] = {}
        for link in links:
            permission_ids.setdefault(link.role_id, set()).add(link.permission_id)
        return RoleIndex(
            roles=[_row_to_role(r, frozenset(permission_ids.get(r.id, ()))) for r in role_rows],
            permissions=[_row_to_permission(p) for p in permission_rows],
        )

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError:
            logger.warning("Identity store ping failed")
            return False
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _identity_columns(identity: Identity) -> dict:
    return {
        "username": identity.username,
        "email": identity.email,
        "employee_id": identity.employee_id,
        "hashed_password": identity.credential_hash,
        "name": identity.name,
        "department": identity.department,
        "position": identity.position,
        "phone": identity.phone,
        "status": identity.status.value,
        "failed_attempts": identity.failed_attempts,
        "locked_until": _to_iso(identity.locked_until),
        "last_login_at": _to_iso(identity.last_login_at),
        "is_deleted": identity.is_deleted,
    }


def _row_to_identity(row, role_ids: frozenset[int]) -> Identity:
    return Identity(
        id=row.id,
        username=row.username,
        email=row.email,
        employee_id=row.employee_id,
        credential_hash=row.hashed_password,
        name=row.name,
        department=row.department,
        position=row.position,
        phone=row.phone,
        status=IdentityStatus(row.status),
        failed_attempts=row.failed_attempts,
        locked_until=_from_iso(row.locked_until),
        last_login_at=_from_iso(row.last_login_at),
        role_ids=role_ids,
        is_deleted=bool(row.is_deleted),
        version=row.version,
        created_at=_from_iso(row.created_at),
        updated_at=_from_iso(row.updated_at),
    )


def _row_to_role(row, permission_ids: frozenset[int]) -> Role:
    return Role(id=row.id, name=row.name, description=row.description, permission_ids=permission_ids)


def _row_to_permission(row) -> Permission:
    return Permission(
        id=row.id,
        name=row.name,
        description=row.description,
        resource_type=ResourceType(row.resource_type),
    )
