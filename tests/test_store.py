"""Unit tests for the SQLAlchemy identity store in auth/store.py.

Covers:
- Create / lookup by id, username, email; existence checks
- Soft-deleted identities hidden from login lookup only
- UNIQUE violations mapped to the first violated field (username, email, employee_id)
- NULL employee IDs never collide
- Compare-and-set: stale version raises ConcurrentUpdateError and writes nothing
- Timestamp round trip keeps timezone
- RBAC: permission/role creation, duplicate names, idempotent assignment, role index
- Driver failures surface as IdentityStoreError; ping() reports them as False
"""

from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine, text

from auth.errors import (
    ConcurrentUpdateError,
    DuplicateEmailError,
    DuplicateEmployeeIdError,
    DuplicateUsernameError,
    IdentityStoreError,
)
from auth.models import Identity, IdentityStatus, Permission, ResourceType, Role
from auth.store import IdentityStore

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _identity(username: str = "kim", **overrides) -> Identity:
    fields = {
        "username": username,
        "email": f"{username}@corp.example",
        "name": username.title(),
        "credential_hash": "$2b$04$notarealhash",
    }
    fields.update(overrides)
    return Identity(**fields)


# ---------------------------------------------------------------------------
# Identity CRUD
# ---------------------------------------------------------------------------


class TestIdentityLookup:
    def test_create_assigns_id_and_version(self, store: IdentityStore) -> None:
        created = store.create_identity(_identity())
        assert created.id is not None
        assert created.version == 0
        assert created.created_at is not None

    def test_lookups(self, store: IdentityStore) -> None:
        created = store.create_identity(_identity(employee_id="E100"))
        assert store.get_by_id(created.id).username == "kim"
        assert store.get_by_username("kim").id == created.id
        assert store.get_by_email("kim@corp.example").id == created.id
        assert store.get_by_id(9999) is None
        assert store.get_by_username("nobody") is None

    def test_exists(self, store: IdentityStore) -> None:
        store.create_identity(_identity(employee_id="E100"))
        assert store.exists_by_username("kim")
        assert store.exists_by_email("kim@corp.example")
        assert store.exists_by_employee_id("E100")
        assert not store.exists_by_username("lee")
        assert not store.exists_by_employee_id("E200")

    def test_soft_deleted_hidden_from_login_lookup(self, store: IdentityStore) -> None:
        created = store.create_identity(_identity())
        store.save(replace(created, is_deleted=True))
        assert store.get_by_username("kim", include_deleted=False) is None
        assert store.get_by_username("kim").is_deleted is True

    def test_timestamps_round_trip(self, store: IdentityStore) -> None:
        until = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)
        created = store.create_identity(_identity())
        store.save(replace(created, status=IdentityStatus.LOCKED, failed_attempts=5, locked_until=until))
        loaded = store.get_by_id(created.id)
        assert loaded.locked_until == until
        assert loaded.locked_until.tzinfo is not None
        assert loaded.status is IdentityStatus.LOCKED
        assert loaded.failed_attempts == 5


# ---------------------------------------------------------------------------
# Uniqueness
# ---------------------------------------------------------------------------


class TestUniqueness:
    def test_duplicate_username(self, store: IdentityStore) -> None:
        store.create_identity(_identity())
        with pytest.raises(DuplicateUsernameError):
            store.create_identity(_identity(email="other@corp.example"))

    def test_username_reported_before_email(self, store: IdentityStore) -> None:
        store.create_identity(_identity())
        with pytest.raises(DuplicateUsernameError):
            store.create_identity(_identity())

    def test_duplicate_email(self, store: IdentityStore) -> None:
        store.create_identity(_identity())
        with pytest.raises(DuplicateEmailError):
            store.create_identity(_identity("lee", email="kim@corp.example"))

    def test_duplicate_employee_id(self, store: IdentityStore) -> None:
        store.create_identity(_identity(employee_id="E100"))
        with pytest.raises(DuplicateEmployeeIdError):
            store.create_identity(_identity("lee", employee_id="E100"))

    def test_null_employee_ids_coexist(self, store: IdentityStore) -> None:
        store.create_identity(_identity())
        store.create_identity(_identity("lee"))
        assert store.exists_by_username("lee")

    def test_save_into_taken_email(self, store: IdentityStore) -> None:
        store.create_identity(_identity())
        lee = store.create_identity(_identity("lee"))
        with pytest.raises(DuplicateEmailError):
            store.save(replace(lee, email="kim@corp.example"))


# ---------------------------------------------------------------------------
# Compare-and-set
# ---------------------------------------------------------------------------


class TestCompareAndSet:
    def test_save_bumps_version(self, store: IdentityStore) -> None:
        created = store.create_identity(_identity())
        saved = store.save(replace(created, failed_attempts=1))
        assert saved.version == 1
        assert store.get_by_id(created.id).version == 1

    def test_stale_write_rejected(self, store: IdentityStore) -> None:
        """Two readers of version 0: the second write must lose and change nothing."""
        created = store.create_identity(_identity())
        first = store.get_by_id(created.id)
        second = store.get_by_id(created.id)
        store.save(replace(first, failed_attempts=1))
        with pytest.raises(ConcurrentUpdateError):
            store.save(replace(second, failed_attempts=1, status=IdentityStatus.LOCKED))
        loaded = store.get_by_id(created.id)
        assert loaded.failed_attempts == 1
        assert loaded.status is IdentityStatus.ACTIVE

    def test_save_unknown_id_conflicts(self, store: IdentityStore) -> None:
        with pytest.raises(ConcurrentUpdateError):
            store.save(_identity(id=4242))


# ---------------------------------------------------------------------------
# RBAC
# ---------------------------------------------------------------------------


class TestRbacData:
    def test_role_index_and_assignment(self, store: IdentityStore) -> None:
        read = store.create_permission(Permission(name="USER_READ", resource_type=ResourceType.USER))
        role = store.create_role(Role(name="VIEWER", permission_ids=frozenset({read.id})))
        kim = store.create_identity(_identity())
        store.assign_role(kim.id, role.id)
        store.assign_role(kim.id, role.id)

        assert store.get_by_id(kim.id).role_ids == frozenset({role.id})
        index = store.load_role_index()
        assert index.role(role.id).permission_ids == frozenset({read.id})
        assert index.permission(read.id).name == "USER_READ"
        assert index.role_by_name("VIEWER").id == role.id

    def test_role_ids_persisted_on_create(self, store: IdentityStore) -> None:
        role = store.create_role(Role(name="EMPTY"))
        kim = store.create_identity(_identity(role_ids=frozenset({role.id})))
        assert store.get_by_username("kim").role_ids == frozenset({role.id})
        assert kim.role_ids == frozenset({role.id})

    def test_duplicate_permission_name(self, store: IdentityStore) -> None:
        store.create_permission(Permission(name="USER_READ", resource_type=ResourceType.USER))
        with pytest.raises(ValueError):
            store.create_permission(Permission(name="USER_READ", resource_type=ResourceType.USER))

    def test_duplicate_role_name(self, store: IdentityStore) -> None:
        store.create_role(Role(name="ADMIN"))
        with pytest.raises(ValueError):
            store.create_role(Role(name="ADMIN"))

    def test_get_permission_by_name(self, store: IdentityStore) -> None:
        store.create_permission(Permission(name="FILE_READ", resource_type=ResourceType.FILE, description="d"))
        found = store.get_permission_by_name("FILE_READ")
        assert found.resource_type is ResourceType.FILE
        assert found.description == "d"
        assert store.get_permission_by_name("NOPE") is None


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


class TestStoreFailures:
    def test_driver_error_becomes_store_error(self, store: IdentityStore) -> None:
        with store.engine.begin() as conn:
            conn.execute(text("DROP TABLE user_roles"))
            conn.execute(text("DROP TABLE users"))
        with pytest.raises(IdentityStoreError):
            store.get_by_username("kim")

    def test_store_error_is_not_a_duplicate(self, store: IdentityStore) -> None:
        with store.engine.begin() as conn:
            conn.execute(text("DROP TABLE user_roles"))
            conn.execute(text("DROP TABLE users"))
        with pytest.raises(IdentityStoreError) as excinfo:
            store.create_identity(_identity())
        assert not isinstance(excinfo.value, DuplicateUsernameError)

    def test_ping(self, store: IdentityStore) -> None:
        assert store.ping() is True

    def test_ping_reports_unreachable_database(self, store: IdentityStore, monkeypatch) -> None:
        monkeypatch.setattr(store, "engine", create_engine("sqlite:////nonexistent-dir/staffgate.db"))
        assert store.ping() is False

    def test_unreachable_database_at_startup(self) -> None:
        with pytest.raises(IdentityStoreError):
            IdentityStore("sqlite:////nonexistent-dir/staffgate.db")

    def test_locked_until_cleared_round_trip(self, store: IdentityStore) -> None:
        created = store.create_identity(_identity(status=IdentityStatus.LOCKED, locked_until=datetime.now(timezone.utc)))
        saved = store.save(replace(created, status=IdentityStatus.ACTIVE, locked_until=None))
        assert store.get_by_id(saved.id).locked_until is None
        assert saved.updated_at - created.created_at < timedelta(minutes=1)
