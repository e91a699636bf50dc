"""
auth/models.py -- Domain dataclasses and enums for authentication entities.

Pattern: Data class (pure data container, zero logic). Mirrors core/models.py --
dataclasses own domain shape; stores, the PermissionEngine and routes do the work.

Layer rule: no imports from api/, credentials/, or providers/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class Role(str, Enum):
    """Privilege tiers, highest first. Order matters -- see PermissionEngine.rank()."""

    SUPER_ADMIN = "super_admin"
    ADMIN = "admin"
    USER = "user"


class Permission(str, Enum):
    VIEW_DASHBOARD = "view_dashboard"
    VIEW_RESOURCES = "view_resources"
    VIEW_COSTS = "view_costs"
    MANAGE_USERS = "manage_users"
    MANAGE_CREDENTIALS = "manage_credentials"
    MANAGE_PROVIDERS = "manage_providers"
    VIEW_AUDIT_LOGS = "view_audit_logs"
    MANAGE_SETTINGS = "manage_settings"
    DELETE_RESOURCES = "delete_resources"


ROLE_DESCRIPTIONS = {
    Role.SUPER_ADMIN: "Full system access, can manage all users and settings",
    Role.ADMIN: "Can manage users and view all resources",
    Role.USER: "Can view dashboard and resources",
}

PERMISSION_DESCRIPTIONS = {
    Permission.VIEW_DASHBOARD: "View main dashboard",
    Permission.VIEW_RESOURCES: "View cloud resources",
    Permission.VIEW_COSTS: "View cost analytics",
    Permission.MANAGE_USERS: "Create, update, delete users",
    Permission.MANAGE_CREDENTIALS: "Manage cloud credentials",
    Permission.MANAGE_PROVIDERS: "Manage cloud providers",
    Permission.VIEW_AUDIT_LOGS: "View audit logs",
    Permission.MANAGE_SETTINGS: "Manage system settings",
    Permission.DELETE_RESOURCES: "Delete cloud resources",
}


@dataclass
class Principal:
    """An authenticated identity in CloudBoard.

    hashed_password is None for OAuth-only principals (they have no local
    password). auth_provider records where the identity originated and is
    carried into issued tokens as the "provider" claim. OAuth sign-ins are
    matched on (oauth_provider, oauth_subject), never on email alone.

    custom_permissions are grants on top of the role's base set. They can only
    add capabilities, never remove one the role already grants.
    """

    username: str
    email: str
    role: Role = Role.USER
    id: str | None = None
    hashed_password: str | None = None  # None = OAuth-only principal
    custom_permissions: list[Permission] = field(default_factory=list)
    is_active: bool = True
    auth_provider: str = "local"  # "local", "google", "microsoft"
    oauth_provider: str | None = None  # provider of the linked external identity
    oauth_subject: str | None = None  # stable subject from that provider
    created_at: str | None = None
    created_by: str | None = None
    updated_at: str | None = None
    last_login: str | None = None


@dataclass(frozen=True)
class TokenClaims:
    """The stable subset of a Principal carried inside a signed token."""

    sub: str
    email: str
    username: str
    role: str
    provider: str = "local"
