"""
tests/test_management.py -- Unit tests for auth/management.py.

Covers the user-management rules:
  - Only a super_admin may grant the super_admin role
  - Actors cannot manage principals who outrank them
  - Self-deletion and self-deactivation are refused
  - The last active super_admin cannot be deleted, disabled or demoted,
    including by two callers racing each other
  - Unknown custom permissions are rejected
  - OAuth provisioning keyed on provider subject, and bootstrap seeding
"""

from __future__ import annotations

import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from types import SimpleNamespace

import pytest

from auth.management import BOOTSTRAP_USERNAME, UserManager
from auth.models import Permission, Role
from auth.permissions import PermissionEngine
from auth.store import PrincipalStore
from auth.tokens import verify_password
from core.audit import AuditLog
from core.errors import AuthenticationError, AuthorizationError, ConflictError, InvariantViolation, ValidationError
from conftest import TEST_PASSWORD, read_audit, seed_principal


@pytest.fixture
def env(tmp_path):
    store = PrincipalStore(f"sqlite:///file:mgmt_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true")
    audit = AuditLog(tmp_path / "audit.log")
    services = SimpleNamespace(user_store=store, audit_path=tmp_path / "audit.log")
    services.users = UserManager(store, PermissionEngine(), audit)
    services.root = seed_principal(services, "root", Role.SUPER_ADMIN)
    services.alice = seed_principal(services, "alice", Role.ADMIN)
    services.bob = seed_principal(services, "bob", Role.USER)
    yield services
    store.close()


class TestCreateUser:
    def test_admin_creates_user(self, env) -> None:
        created = env.users.create_user(
            env.alice, username="dave", email="dave@example.com", password="long-enough-pw"
        )
        assert created.role is Role.USER
        assert created.created_by == env.alice.id
        assert verify_password("long-enough-pw", created.hashed_password)
        assert read_audit(env.audit_path)[-1]["action"] == "user_created"

    def test_admin_cannot_create_super_admin(self, env) -> None:
        with pytest.raises(AuthorizationError) as exc_info:
            env.users.create_user(
                env.alice, username="eve", email="eve@example.com", password="long-enough-pw", role=Role.SUPER_ADMIN
            )
        assert exc_info.value.code == "role_elevation_denied"
        assert exc_info.value.required == ["super_admin"]

    def test_super_admin_creates_super_admin(self, env) -> None:
        created = env.users.create_user(
            env.root, username="eve", email="eve@example.com", password="long-enough-pw", role=Role.SUPER_ADMIN
        )
        assert created.role is Role.SUPER_ADMIN

    def test_duplicate_username_is_conflict(self, env) -> None:
        with pytest.raises(ConflictError):
            env.users.create_user(env.root, username="BOB", email="other@example.com", password="long-enough-pw")

    def test_duplicate_email_is_conflict(self, env) -> None:
        with pytest.raises(ConflictError):
            env.users.create_user(env.root, username="robert", email="bob@example.com", password="long-enough-pw")

    def test_password_is_optional(self, env) -> None:
        created = env.users.create_user(env.root, username="oauthie", email="o@example.com", password=None)
        assert created.hashed_password is None


class TestUpdateUser:
    def test_admin_cannot_promote_to_super_admin(self, env) -> None:
        with pytest.raises(AuthorizationError):
            env.users.update_user(env.alice, env.bob.id, role=Role.SUPER_ADMIN)

    def test_admin_cannot_modify_super_admin(self, env) -> None:
        with pytest.raises(AuthorizationError) as exc_info:
            env.users.update_user(env.alice, env.root.id, email="new@example.com")
        assert exc_info.value.code == "insufficient_rank"

    def test_empty_update_is_rejected(self, env) -> None:
        with pytest.raises(ValidationError) as exc_info:
            env.users.update_user(env.alice, env.bob.id, email=None)
        assert exc_info.value.code == "no_changes"

    def test_last_super_admin_cannot_be_demoted(self, env) -> None:
        with pytest.raises(InvariantViolation) as exc_info:
            env.users.update_user(env.root, env.root.id, role=Role.ADMIN)
        assert exc_info.value.code == "last_super_admin"

    def test_super_admin_can_be_demoted_when_another_exists(self, env) -> None:
        other = env.users.create_user(
            env.root, username="eve", email="eve@example.com", password="long-enough-pw", role=Role.SUPER_ADMIN
        )
        updated = env.users.update_user(env.root, other.id, role=Role.ADMIN)
        assert updated.role is Role.ADMIN

    def test_fields_are_applied(self, env) -> None:
        updated = env.users.update_user(env.alice, env.bob.id, email="Robert@Example.com", username="robert")
        assert updated.email == "robert@example.com"
        assert updated.username == "robert"
        event = read_audit(env.audit_path)[-1]
        assert event["action"] == "user_updated"
        assert event["details"]["fields"] == ["email", "username"]


class TestDeleteAndDisable:
    def test_self_delete_is_refused(self, env) -> None:
        with pytest.raises(InvariantViolation) as exc_info:
            env.users.delete_user(env.alice, env.alice.id)
        assert exc_info.value.code == "self_deletion"

    def test_last_super_admin_cannot_be_deleted(self, env) -> None:
        other = env.users.create_user(
            env.root, username="eve", email="eve@example.com", password="long-enough-pw", role=Role.SUPER_ADMIN
        )
        env.users.delete_user(other, env.root.id)
        with pytest.raises(InvariantViolation):
            env.users.delete_user(env.alice, other.id)

    def test_admin_cannot_delete_super_admin(self, env) -> None:
        env.users.create_user(
            env.root, username="eve", email="eve@example.com", password="long-enough-pw", role=Role.SUPER_ADMIN
        )
        with pytest.raises(AuthorizationError):
            env.users.delete_user(env.alice, env.root.id)

    def test_admin_deletes_user(self, env) -> None:
        env.users.delete_user(env.alice, env.bob.id)
        assert env.user_store.get_by_id(env.bob.id) is None
        assert read_audit(env.audit_path)[-1]["action"] == "user_deleted"

    def test_self_disable_is_refused(self, env) -> None:
        with pytest.raises(InvariantViolation) as exc_info:
            env.users.set_status(env.alice, env.alice.id, False)
        assert exc_info.value.code == "self_deactivation"

    def test_last_super_admin_cannot_be_disabled(self, env) -> None:
        other = env.users.create_user(
            env.root, username="eve", email="eve@example.com", password="long-enough-pw", role=Role.SUPER_ADMIN
        )
        env.user_store.update(other.id, is_active=False)
        with pytest.raises(InvariantViolation) as exc_info:
            env.users.update_user(other, env.root.id, is_active=False)
        assert exc_info.value.code == "last_super_admin"

    def test_disable_and_enable(self, env) -> None:
        assert env.users.set_status(env.alice, env.bob.id, False).is_active is False
        assert env.users.set_status(env.alice, env.bob.id, True).is_active is True


class TestLastSuperAdminUnderConcurrency:
    def _second_super_admin(self, env):
        return env.users.create_user(
            env.root, username="eve", email="eve@example.com", password="long-enough-pw", role=Role.SUPER_ADMIN
        )

    def test_mutual_deletes_leave_one_super_admin(self, env, monkeypatch) -> None:
        eve = self._second_super_admin(env)
        counted = env.user_store.count_active_with_role
        barrier = threading.Barrier(2, timeout=5)

        def count_then_wait(role):
            # Both callers read the count before either writes.
            result = counted(role)
            barrier.wait()
            return result

        monkeypatch.setattr(env.user_store, "count_active_with_role", count_then_wait)
        with ThreadPoolExecutor(max_workers=2) as pool:
            futures = [
                pool.submit(env.users.delete_user, env.root, eve.id),
                pool.submit(env.users.delete_user, eve, env.root.id),
            ]
            errors = [f.exception(timeout=10) for f in futures]

        refused = [e for e in errors if e is not None]
        assert len(refused) == 1
        assert isinstance(refused[0], InvariantViolation)
        assert refused[0].code == "last_super_admin"
        monkeypatch.undo()
        assert env.user_store.count_active_with_role(Role.SUPER_ADMIN) == 1

    def test_store_refuses_when_precheck_is_stale(self, env, monkeypatch) -> None:
        eve = self._second_super_admin(env)
        env.user_store.update(eve.id, is_active=False)
        monkeypatch.setattr(env.user_store, "count_active_with_role", lambda role: 2)
        with pytest.raises(InvariantViolation) as exc_info:
            env.users.set_status(eve, env.root.id, False)
        assert exc_info.value.code == "last_super_admin"
        with pytest.raises(InvariantViolation):
            env.users.update_user(env.root, env.root.id, role=Role.ADMIN)
        root = env.user_store.get_by_id(env.root.id)
        assert root.is_active is True
        assert root.role is Role.SUPER_ADMIN

    def test_stale_precheck_delete_is_refused(self, env, monkeypatch) -> None:
        eve = self._second_super_admin(env)
        env.user_store.update(eve.id, is_active=False)
        monkeypatch.setattr(env.user_store, "count_active_with_role", lambda role: 2)
        with pytest.raises(InvariantViolation):
            env.users.delete_user(eve, env.root.id)
        assert env.user_store.get_by_id(env.root.id) is not None

    def test_other_fields_of_sole_super_admin_still_update(self, env) -> None:
        updated = env.users.update_user(env.root, env.root.id, email="boss@example.com")
        assert updated.email == "boss@example.com"


class TestPermissionsAndPasswords:
    def test_set_permissions(self, env) -> None:
        updated = env.users.set_permissions(env.root, env.bob.id, ["view_audit_logs"])
        assert updated.custom_permissions == [Permission.VIEW_AUDIT_LOGS]

    def test_unknown_permission_is_rejected(self, env) -> None:
        with pytest.raises(ValidationError) as exc_info:
            env.users.set_permissions(env.root, env.bob.id, ["view_dashboard", "fly"])
        assert exc_info.value.code == "unknown_permission"
        assert env.user_store.get_by_id(env.bob.id).custom_permissions == []

    def test_change_password(self, env) -> None:
        env.users.change_password(env.bob, TEST_PASSWORD, "brand-new-password")
        assert verify_password("brand-new-password", env.user_store.get_by_id(env.bob.id).hashed_password)

    def test_change_password_requires_current(self, env) -> None:
        with pytest.raises(AuthenticationError):
            env.users.change_password(env.bob, "not-my-password", "brand-new-password")


class TestProvisioning:
    def test_oauth_user_is_created_once(self, env) -> None:
        first = env.users.provision_oauth_user("google", "g-1001", "grace@example.com", "Grace Hopper")
        again = env.users.provision_oauth_user("google", "g-1001", "grace@example.com", "Grace Hopper")
        assert first.id == again.id
        assert first.role is Role.USER
        assert first.auth_provider == "google"
        assert (first.oauth_provider, first.oauth_subject) == ("google", "g-1001")
        assert first.hashed_password is None
        assert first.username == "GraceHopper"

    def test_oauth_matches_on_subject_not_email(self, env) -> None:
        first = env.users.provision_oauth_user("google", "g-1001", "grace@example.com", "Grace Hopper")
        renamed = env.users.provision_oauth_user("google", "g-1001", "grace.h@example.com", "Grace Hopper")
        assert renamed.id == first.id

    def test_oauth_never_takes_over_local_account(self, env) -> None:
        with pytest.raises(ConflictError) as exc_info:
            env.users.provision_oauth_user("microsoft", "tenant-x:oid-1", "root@example.com", "Root")
        assert exc_info.value.code == "email_in_use"
        root = env.user_store.get_by_id(env.root.id)
        assert root.oauth_subject is None
        assert root.auth_provider == "local"

    def test_oauth_email_claimed_by_other_identity_is_conflict(self, env) -> None:
        env.users.provision_oauth_user("google", "g-1001", "grace@example.com", "Grace Hopper")
        with pytest.raises(ConflictError):
            env.users.provision_oauth_user("microsoft", "tenant-x:oid-2", "grace@example.com", "Grace")

    def test_oauth_links_precreated_passwordless_account(self, env) -> None:
        invited = env.users.create_user(env.alice, username="carol", email="carol@example.com", password=None)
        linked = env.users.provision_oauth_user("google", "g-2002", "carol@example.com", "Carol")
        assert linked.id == invited.id
        assert (linked.oauth_provider, linked.oauth_subject) == ("google", "g-2002")
        assert read_audit(env.audit_path)[-1]["action"] == "oauth_identity_linked"
        assert env.users.provision_oauth_user("google", "g-2002", "carol@example.com", "Carol").id == invited.id

    def test_oauth_username_collision_gets_suffix(self, env) -> None:
        created = env.users.provision_oauth_user("google", "g-3003", "bob2@example.com", "bob")
        assert created.username == "bob2"

    def test_bootstrap_skipped_when_super_admin_exists(self, env) -> None:
        assert env.users.ensure_bootstrap_admin("bootstrap-password") is None

    def test_bootstrap_seeds_super_admin(self, tmp_path) -> None:
        store = PrincipalStore(f"sqlite:///file:boot_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true")
        users = UserManager(store, PermissionEngine(), AuditLog(tmp_path / "audit.log"))
        admin = users.ensure_bootstrap_admin("bootstrap-password")
        assert admin is not None
        assert admin.username == BOOTSTRAP_USERNAME
        assert admin.role is Role.SUPER_ADMIN
        assert verify_password("bootstrap-password", admin.hashed_password)
        store.close()
