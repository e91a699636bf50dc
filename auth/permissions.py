"""
auth/permissions.py -- Role table and effective-permission resolution.

The role -> base permission table is immutable configuration. The app lifespan
builds one PermissionEngine from it at startup and stores it on app.state; no
other module reaches for the table directly.

Effective permissions are recomputed from the principal passed in every time.
Callers pass the principal freshly loaded from the store, so a role or grant
change applies to the very next request -- nothing is cached across requests.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from types import MappingProxyType

from auth.models import Permission, Principal, Role

DEFAULT_ROLE_PERMISSIONS: Mapping[Role, frozenset[Permission]] = MappingProxyType(
    {
        Role.SUPER_ADMIN: frozenset(Permission),
        Role.ADMIN: frozenset(
            {
                Permission.VIEW_DASHBOARD,
                Permission.VIEW_RESOURCES,
                Permission.VIEW_COSTS,
                Permission.MANAGE_USERS,
                Permission.MANAGE_CREDENTIALS,
                Permission.VIEW_AUDIT_LOGS,
            }
        ),
        Role.USER: frozenset(
            {
                Permission.VIEW_DASHBOARD,
                Permission.VIEW_RESOURCES,
                Permission.VIEW_COSTS,
            }
        ),
    }
)

# Highest tier first; index is the rank (lower = more privileged).
ROLE_ORDER: tuple[Role, ...] = (Role.SUPER_ADMIN, Role.ADMIN, Role.USER)


class PermissionEngine:
    """Resolve what a principal may do from its role plus custom grants.

    Usage:
        engine = PermissionEngine()
        engine.has_permission(principal, Permission.MANAGE_USERS)
    """

    def __init__(
        self,
        role_permissions: Mapping[Role, Iterable[Permission]] = DEFAULT_ROLE_PERMISSIONS,
        role_order: tuple[Role, ...] = ROLE_ORDER,
    ) -> None:
        self._table: Mapping[Role, frozenset[Permission]] = MappingProxyType(
            {Role(role): frozenset(Permission(p) for p in perms) for role, perms in role_permissions.items()}
        )
        self._order = role_order

    def base_permissions(self, role: Role | str) -> frozenset[Permission]:
        """Return the base permission set for a role (empty for unknown roles)."""
        try:
            return self._table.get(Role(role), frozenset())
        except ValueError:
            return frozenset()

    def effective_permissions(self, principal: Principal) -> frozenset[Permission]:
        """Base permissions of principal.role unioned with its custom grants.

        Unknown grant strings are ignored rather than raising -- stored grants are
        validated on write (UserManager.set_permissions).
        """
        custom: set[Permission] = set()
        for grant in principal.custom_permissions:
            try:
                custom.add(Permission(grant))
            except ValueError:
                continue
        return self.base_permissions(principal.role) | custom

    def has_permission(self, principal: Principal, permission: Permission | str) -> bool:
        try:
            wanted = Permission(permission)
        except ValueError:
            return False
        return wanted in self.effective_permissions(principal)

    def rank(self, role: Role | str) -> int:
        """Position in the role order; unknown roles rank below every known one."""
        try:
            return self._order.index(Role(role))
        except ValueError:
            return len(self._order)

    def outranks(self, role: Role | str, other: Role | str) -> bool:
        """True if role is strictly more privileged than other."""
        return self.rank(role) < self.rank(other)

    @property
    def highest_role(self) -> Role:
        return self._order[0]

    @property
    def roles(self) -> tuple[Role, ...]:
        return self._order
