"""
auth/rbac.py -- Role-based access control resolution.

Permissions reach an identity only through roles:

    Identity.role_ids -> Role.permission_ids -> Permission.name

RoleIndex is a read-only snapshot of the role and permission tables, loaded
from the store for the duration of one operation. Nothing here caches across
requests, so a role or permission change is visible to the next call.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from types import MappingProxyType

from auth.models import Identity, Permission, Role

# Permission names the HTTP layer guards user administration with.
USER_READ = "USER_READ"
USER_WRITE = "USER_WRITE"


class RoleIndex:
    """Read-only lookup of roles and permissions by id."""

    def __init__(self, roles: Iterable[Role] = (), permissions: Iterable[Permission] = ()) -> None:
        self._roles: Mapping[int, Role] = MappingProxyType({r.id: r for r in roles})
        self._permissions: Mapping[int, Permission] = MappingProxyType({p.id: p for p in permissions})

    def role(self, role_id: int) -> Role | None:
        return self._roles.get(role_id)

    def permission(self, permission_id: int) -> Permission | None:
        return self._permissions.get(permission_id)

    def role_by_name(self, name: str) -> Role | None:
        for role in self._roles.values():
            if role.name == name:
                return role
        return None


class RbacResolver:
    def __init__(self, index: RoleIndex) -> None:
        self.index = index

    def _roles(self, identity: Identity) -> list[Role]:
        # Dangling role ids (role deleted after assignment) grant nothing.
        roles = (self.index.role(role_id) for role_id in identity.role_ids)
        return [r for r in roles if r is not None]

    def effective_permissions(self, identity: Identity) -> frozenset[str]:
        """Union of permission names across every role the identity holds."""
        names: set[str] = set()
        for role in self._roles(identity):
            for permission_id in role.permission_ids:
                permission = self.index.permission(permission_id)
                if permission is not None:
                    names.add(permission.name)
        return frozenset(names)

    def has_permission(self, identity: Identity, name: str) -> bool:
        return name in self.effective_permissions(identity)

    def role_names(self, identity: Identity) -> frozenset[str]:
        return frozenset(r.name for r in self._roles(identity))
