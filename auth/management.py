"""
auth/management.py -- User management rules.

Every mutation of a principal goes through UserManager so the authorization
edge cases are enforced in one place, whichever route (or script) calls them:

  - Only a super_admin may grant the super_admin role, on create or update.
  - An actor may not modify, disable, or delete a principal who outranks them.
  - Nobody deletes or disables their own account through management calls.
  - The last active super_admin can never be deleted, disabled, or demoted,
    even by two admins acting at once (see _guarded).
  - OAuth sign-ins bind to the provider subject and never take over an
    existing account by email.

Rule breaches raise the core.errors taxonomy; the API layer maps those to
HTTP responses. Every successful mutation writes one audit event.
"""

from __future__ import annotations

import logging
import secrets
import threading
from collections.abc import Iterable

from sqlalchemy.exc import IntegrityError

from auth.models import Permission, Principal, Role
from auth.permissions import PermissionEngine
from auth.store import PrincipalStore
from auth.tokens import hash_password, verify_password
from core.audit import AuditLog
from core.errors import (
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    InvariantViolation,
    NotFoundError,
    ValidationError,
)

logger = logging.getLogger("cloudboard.auth.management")

BOOTSTRAP_USERNAME = "superadmin"
BOOTSTRAP_EMAIL = "admin@cloudboard.local"


class UserManager:
    def __init__(self, store: PrincipalStore, permissions: PermissionEngine, audit: AuditLog) -> None:
        self.store = store
        self.permissions = permissions
        self.audit = audit
        # Serializes last-super-admin guarded writes within this process.
        self._guard_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get(self, principal_id: str) -> Principal:
        principal = self.store.get_by_id(principal_id)
        if principal is None:
            raise NotFoundError("User not found.")
        return principal

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def create_user(
        self,
        actor: Principal,
        *,
        username: str,
        email: str,
        password: str | None,
        role: Role = Role.USER,
        auth_provider: str = "local",
    ) -> Principal:
        self._check_can_grant(actor, role)
        if self.store.get_by_username(username) is not None:
            raise ConflictError("Username already exists.")
        if self.store.get_by_email(email) is not None:
            raise ConflictError("Email already exists.")

        new = Principal(
            username=username,
            email=email,
            role=Role(role),
            hashed_password=hash_password(password) if password else None,
            auth_provider=auth_provider,
            created_by=actor.id,
        )
        try:
            principal_id = self.store.create(new)
        except IntegrityError as exc:
            # A concurrent create won the race between the pre-check and insert.
            raise ConflictError("A user with that username or email already exists.") from exc

        self.audit.record(
            "user_created",
            {"target_id": principal_id, "username": username, "email": email, "role": Role(role).value},
            user_id=actor.id,
        )
        return self.get(principal_id)

    def update_user(self, actor: Principal, target_id: str, **changes) -> Principal:
        """Apply role/email/username/password/is_active changes.

        None values are treated as "not supplied".
        """
        target = self.get(target_id)
        changes = {k: v for k, v in changes.items() if v is not None}
        if not changes:
            raise ValidationError("No fields to update.", code="no_changes")

        self._check_can_manage(actor, target)

        updates: dict = {}
        if "role" in changes:
            new_role = Role(changes["role"])
            self._check_can_grant(actor, new_role)
            if new_role != target.role:
                self._check_not_last_highest(target, "demote")
            updates["role"] = new_role
        if "is_active" in changes:
            if not changes["is_active"]:
                self._check_can_disable(actor, target)
            updates["is_active"] = bool(changes["is_active"])
        if "username" in changes and changes["username"].lower() != target.username.lower():
            if self.store.get_by_username(changes["username"]) is not None:
                raise ConflictError("Username already exists.")
            updates["username"] = changes["username"]
        if "email" in changes and changes["email"].lower() != target.email.lower():
            if self.store.get_by_email(changes["email"]) is not None:
                raise ConflictError("Email already exists.")
            updates["email"] = changes["email"]
        if "password" in changes:
            updates["hashed_password"] = hash_password(changes["password"])

        if updates:
            removes_highest = ("role" in updates and updates["role"] != self.permissions.highest_role) or (
                updates.get("is_active") is False
            )
            try:
                self._guarded(
                    target,
                    "demote" if updates.get("role", target.role) != target.role else "disable",
                    lambda guard: self.store.update(target.id, guard_role=guard, **updates),
                    removes_highest=removes_highest,
                )
            except IntegrityError as exc:
                raise ConflictError("A user with that username or email already exists.") from exc

        self.audit.record(
            "user_updated",
            {"target_id": target.id, "fields": sorted(changes)},
            user_id=actor.id,
        )
        return self.get(target.id)

    def delete_user(self, actor: Principal, target_id: str) -> None:
        if target_id == actor.id:
            raise InvariantViolation("You cannot delete your own account.", code="self_deletion")
        target = self.get(target_id)
        self._check_not_last_highest(target, "delete")
        self._check_can_manage(actor, target)
        self._guarded(target, "delete", lambda guard: self.store.delete(target.id, guard_role=guard))
        self.audit.record(
            "user_deleted",
            {"target_id": target.id, "username": target.username},
            user_id=actor.id,
        )

    def set_permissions(self, actor: Principal, target_id: str, permissions: Iterable[str]) -> Principal:
        """Replace the target's custom grants. Unknown permission names are rejected."""
        target = self.get(target_id)
        grants: list[Permission] = []
        unknown: list[str] = []
        for name in permissions:
            try:
                grants.append(Permission(name))
            except ValueError:
                unknown.append(str(name))
        if unknown:
            raise ValidationError(f"Unknown permissions: {', '.join(unknown)}", code="unknown_permission")

        self.store.update(target.id, custom_permissions=grants)
        self.audit.record(
            "permissions_updated",
            {"target_id": target.id, "permissions": [g.value for g in grants]},
            user_id=actor.id,
        )
        return self.get(target.id)

    def set_status(self, actor: Principal, target_id: str, is_active: bool) -> Principal:
        target = self.get(target_id)
        if not is_active:
            self._check_can_disable(actor, target)
        self._check_can_manage(actor, target)
        self._guarded(
            target,
            "disable",
            lambda guard: self.store.update(target.id, guard_role=guard, is_active=is_active),
            removes_highest=not is_active,
        )
        self.audit.record(
            "user_status_changed",
            {"target_id": target.id, "is_active": is_active},
            user_id=actor.id,
        )
        return self.get(target.id)

    def change_password(self, actor: Principal, current_password: str, new_password: str) -> None:
        principal = self.get(actor.id)
        if principal.hashed_password is None or not verify_password(current_password, principal.hashed_password):
            raise AuthenticationError("Current password is incorrect.", code="bad_credentials")
        self.store.update(principal.id, hashed_password=hash_password(new_password))
        self.audit.record("password_changed", {}, user_id=principal.id)

    def provision_oauth_user(self, provider: str, subject: str, email: str, display_name: str) -> Principal:
        """Return the principal linked to (provider, subject), creating a user-role account on first sign-in.

        Matching is on the provider's stable subject. An email match alone is
        only enough for an account an admin pre-created without a password and
        that no external identity has claimed yet; any other account holding
        the email raises ConflictError (code "email_in_use").
        """
        linked = self.store.get_by_oauth(provider, subject)
        if linked is not None:
            return linked

        existing = self.store.get_by_email(email)
        if existing is not None:
            if existing.hashed_password is not None or existing.oauth_subject is not None:
                raise ConflictError("An account with this email already exists.", code="email_in_use")
            if not self.store.link_oauth(existing.id, provider, subject):
                raise ConflictError("An account with this email already exists.", code="email_in_use")
            self.audit.record(
                "oauth_identity_linked",
                {"target_id": existing.id, "provider": provider},
                user_id=existing.id,
            )
            logger.info("Linked %s identity to pre-created account %s", provider, existing.username)
            return self.get(existing.id)

        base = "".join(c for c in (display_name or email.split("@")[0]) if c.isalnum() or c in "_.-")[:48] or "user"
        username = base
        suffix = 1
        while self.store.get_by_username(username) is not None:
            suffix += 1
            username = f"{base}{suffix}"

        try:
            principal_id = self.store.create(
                Principal(
                    username=username,
                    email=email,
                    role=Role.USER,
                    auth_provider=provider,
                    oauth_provider=provider,
                    oauth_subject=subject,
                )
            )
        except IntegrityError as exc:
            # Two callbacks for the same identity raced; the other one created it.
            linked = self.store.get_by_oauth(provider, subject)
            if linked is None:
                raise ConflictError("An account with this email already exists.", code="email_in_use") from exc
            return linked
        self.audit.record(
            "user_created",
            {"target_id": principal_id, "username": username, "email": email, "role": Role.USER.value, "via": provider},
            user_id=principal_id,
        )
        logger.info("Provisioned %s account for %s via %s", Role.USER.value, email, provider)
        return self.get(principal_id)

    def ensure_bootstrap_admin(self, password: str = "") -> Principal | None:
        """Seed the first super_admin when none exists. Returns it, or None if one already exists.

        With no configured password a random one is generated and logged once --
        the operator must change it after first login.
        """
        if self.store.count_active_with_role(self.permissions.highest_role) > 0:
            return None
        generated = not password
        password = password or secrets.token_urlsafe(16)
        existing = self.store.get_by_username(BOOTSTRAP_USERNAME)
        if existing is not None:
            # A disabled or demoted bootstrap account is restored rather than duplicated.
            self.store.update(
                existing.id,
                role=self.permissions.highest_role,
                is_active=True,
                hashed_password=hash_password(password),
            )
            principal_id = existing.id
        else:
            principal_id = self.store.create(
                Principal(
                    username=BOOTSTRAP_USERNAME,
                    email=BOOTSTRAP_EMAIL,
                    role=self.permissions.highest_role,
                    hashed_password=hash_password(password),
                )
            )
        if generated:
            logger.warning(
                "Super admin '%s' created with generated password %s -- change it immediately.",
                BOOTSTRAP_USERNAME,
                password,
            )
        else:
            logger.info("Super admin '%s' created from BOOTSTRAP_ADMIN_PASSWORD", BOOTSTRAP_USERNAME)
        self.audit.record("bootstrap_admin_created", {"username": BOOTSTRAP_USERNAME}, user_id=principal_id)
        return self.get(principal_id)

    # ------------------------------------------------------------------
    # Rule checks
    # ------------------------------------------------------------------

    def _check_can_grant(self, actor: Principal, role: Role) -> None:
        highest = self.permissions.highest_role
        if Role(role) == highest and Role(actor.role) != highest:
            raise AuthorizationError(
                f"Only {highest.value} principals can assign the {highest.value} role.",
                code="role_elevation_denied",
                required=[highest.value],
            )

    def _check_can_manage(self, actor: Principal, target: Principal) -> None:
        if self.permissions.outranks(target.role, actor.role):
            raise AuthorizationError(
                "You cannot manage a user with a higher role than your own.",
                code="insufficient_rank",
                required=[Role(target.role).value],
            )

    def _check_can_disable(self, actor: Principal, target: Principal) -> None:
        if target.id == actor.id:
            raise InvariantViolation("You cannot disable your own account.", code="self_deactivation")
        self._check_not_last_highest(target, "disable")

    def _check_not_last_highest(self, target: Principal, verb: str) -> None:
        highest = self.permissions.highest_role
        if Role(target.role) != highest or not target.is_active:
            return
        if self.store.count_active_with_role(highest) <= 1:
            raise _last_highest(highest, verb)

    def _guarded(self, target: Principal, verb: str, write, *, removes_highest: bool = True) -> None:
        """Run write(guard_role) so the last active super_admin survives concurrent callers.

        The pre-checks above give the friendly error in the common case; the
        store re-checks the count in the same statement as the write.
        """
        highest = self.permissions.highest_role
        guard = highest if removes_highest and Role(target.role) == highest and target.is_active else None
        with self._guard_lock:
            applied = write(guard)
        if applied:
            return
        if self.store.get_by_id(target.id) is None:
            raise NotFoundError("User not found.")
        raise _last_highest(highest, verb)


def _last_highest(highest: Role, verb: str) -> InvariantViolation:
    return InvariantViolation(
        f"Cannot {verb} the last active {highest.value} account.",
        code="last_super_admin",
    )
