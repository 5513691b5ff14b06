from __future__ import annotations

from dataclasses import dataclass, field
from typing import FrozenSet, Iterable, List, Tuple, Union

from authcore.storage.models import Role

WILDCARD = "*"


@dataclass(frozen=True)
class Unrestricted:
    """Effective set of a principal holding the wildcard grant."""

    def allows(self, permission: str) -> bool:
        return True

    def as_claim(self) -> List[str]:
        return [WILDCARD]


@dataclass(frozen=True)
class Specific:
    permissions: FrozenSet[str] = frozenset()

    def allows(self, permission: str) -> bool:
        return permission in self.permissions

    def as_claim(self) -> List[str]:
        return sorted(self.permissions)


PermissionSet = Union[Unrestricted, Specific]


@dataclass(frozen=True)
class Principal:
    """A user together with the roles resolved for this request."""

    user_id: str
    roles: Tuple[str, ...] = ()
    permissions: PermissionSet = field(default_factory=Specific)


def effective(roles: Iterable[Role]) -> PermissionSet:
    collected: set[str] = set()
    for role in roles:
        if WILDCARD in role.permissions:
            return Unrestricted()
        collected.update(role.permissions)
    return Specific(frozenset(collected))


def from_claim(permissions: Iterable[str]) -> PermissionSet:
    perms = frozenset(permissions or ())
    if WILDCARD in perms:
        return Unrestricted()
    return Specific(perms)


class PermissionResolver:
    """Pure authorization checks over a principal's resolved roles."""

    def effective(self, roles: Iterable[Role]) -> PermissionSet:
        return effective(roles)

    def resolve(self, user_id: str, roles: Iterable[Role]) -> Principal:
        roles = list(roles)
        return Principal(
            user_id=user_id,
            roles=tuple(r.name for r in roles),
            permissions=effective(roles),
        )

    def has(self, principal: Principal, permission: str) -> bool:
        return principal.permissions.allows(permission)

    def has_any(self, principal: Principal, permissions: Iterable[str]) -> bool:
        return any(principal.permissions.allows(p) for p in permissions)

    def has_all(self, principal: Principal, permissions: Iterable[str]) -> bool:
        return all(principal.permissions.allows(p) for p in permissions)

    def has_role(self, principal: Principal, role_name: str) -> bool:
        return role_name in principal.roles

    def has_any_role(self, principal: Principal, role_names: Iterable[str]) -> bool:
        return any(name in principal.roles for name in role_names)


DEFAULT_ROLES: List[Role] = [
    Role("admin", "System administrator with full access", [WILDCARD]),
    Role(
        "manager",
        "Manager with access to most features",
        [
            "products:read", "products:write", "products:delete",
            "collections:read", "collections:write", "collections:delete",
            "categories:read", "categories:write", "categories:delete",
            "inventory:read", "inventory:write", "inventory:adjust", "inventory:transfer",
            "orders:read", "orders:write", "orders:process", "orders:fulfill",
            "orders:cancel", "orders:refund",
            "customers:read", "customers:write", "customers:delete", "customers:export",
            "analytics:read", "reports:read", "reports:export",
            "users:read", "users:write",
            "system:health", "system:logs",
        ],
    ),
    Role(
        "employee",
        "Employee with access to daily operations",
        [
            "products:read", "collections:read", "categories:read",
            "inventory:read", "inventory:adjust",
            "orders:read", "orders:write", "orders:process", "orders:fulfill",
            "customers:read", "customers:write",
            "analytics:read", "reports:read",
        ],
    ),
    Role(
        "user",
        "Basic user with limited access",
        [
            "products:read", "collections:read", "categories:read",
            "inventory:read", "orders:read", "customers:read",
            "analytics:read", "profile:read", "profile:write",
        ],
    ),
    Role(
        "viewer",
        "Read-only access for viewing data",
        [
            "products:read", "collections:read", "categories:read",
            "inventory:read", "orders:read", "customers:read",
            "analytics:read", "reports:read",
        ],
    ),
]

DEFAULT_USER_ROLE = "user"


def seed_default_roles(store) -> List[Role]:
    """Create or refresh the built-in roles; returns what was written."""
    return [store.upsert_role(role) for role in DEFAULT_ROLES]
