"""
tests/test_tokens.py -- Unit tests for auth/tokens.py and core/audit.py redaction.

Covers:
  - issue() / verify() round trip and the claims carried in the token
  - Every verify() failure reason: expired, bad signature, wrong audience,
    wrong issuer, malformed input
  - authenticate_user(): success, wrong password, unknown user, disabled account,
    and the audit events each one writes
  - Sensitive detail keys never reach the audit file; async callers write off the loop
"""

from __future__ import annotations

import threading
import uuid

import pytest

from auth.models import Principal, Role
from auth.store import PrincipalStore
from auth.tokens import TokenError, TokenService, authenticate_user, hash_password, verify_password
from core.audit import AuditLog, sanitize_details
from conftest import read_audit

SECRET = "x" * 48


@pytest.fixture
def audit(tmp_path) -> AuditLog:
    return AuditLog(tmp_path / "audit.log")


@pytest.fixture
def store():
    s = PrincipalStore(f"sqlite:///file:tokens_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true")
    yield s
    s.close()


def _principal(**overrides) -> Principal:
    fields = {"id": "p-1", "username": "alice", "email": "alice@example.com", "role": Role.ADMIN}
    fields.update(overrides)
    return Principal(**fields)


class TestTokenService:
    def test_round_trip_carries_identity_claims(self) -> None:
        tokens = TokenService(SECRET)
        check = tokens.verify(tokens.issue(_principal(auth_provider="google")))
        assert check.ok
        assert check.error is None
        assert check.claims.sub == "p-1"
        assert check.claims.email == "alice@example.com"
        assert check.claims.username == "alice"
        assert check.claims.role == "admin"
        assert check.claims.provider == "google"

    def test_expired_token(self) -> None:
        tokens = TokenService(SECRET)
        check = tokens.verify(tokens.issue(_principal(), expire_seconds=-10))
        assert not check.ok
        assert check.error is TokenError.EXPIRED

    def test_bad_signature(self) -> None:
        token = TokenService("y" * 48).issue(_principal())
        assert TokenService(SECRET).verify(token).error is TokenError.BAD_SIGNATURE

    def test_wrong_audience(self) -> None:
        token = TokenService(SECRET, audience="someone-else").issue(_principal())
        assert TokenService(SECRET).verify(token).error is TokenError.WRONG_AUDIENCE

    def test_wrong_issuer(self) -> None:
        token = TokenService(SECRET, issuer="imposter").issue(_principal())
        assert TokenService(SECRET).verify(token).error is TokenError.WRONG_ISSUER

    @pytest.mark.parametrize("garbage", ["not-a-jwt", "", "a.b.c"])
    def test_malformed_token(self, garbage: str) -> None:
        assert TokenService(SECRET).verify(garbage).error is TokenError.MALFORMED

    def test_issue_and_failure_are_audited(self, audit: AuditLog) -> None:
        tokens = TokenService(SECRET, audit)
        tokens.issue(_principal())
        tokens.verify("not-a-jwt")
        actions = [r["action"] for r in read_audit(audit.audit_path)]
        assert actions == ["token_issued", "token_verification_failed"]


class TestPasswords:
    def test_hash_and_verify(self) -> None:
        hashed = hash_password("correct-horse-battery")
        assert hashed != "correct-horse-battery"
        assert verify_password("correct-horse-battery", hashed)
        assert not verify_password("wrong-horse-battery", hashed)

    def test_verify_against_garbage_hash_is_false(self) -> None:
        assert not verify_password("anything", "not-a-bcrypt-hash")


class TestAuthenticateUser:
    def _seed(self, store: PrincipalStore, **overrides) -> Principal:
        fields = {
            "username": "carol",
            "email": "carol@example.com",
            "hashed_password": hash_password("correct-horse-battery"),
        }
        fields.update(overrides)
        return store.get_by_id(store.create(Principal(**fields)))

    def test_success_updates_last_login(self, store, audit) -> None:
        seeded = self._seed(store)
        assert seeded.last_login is None
        principal = authenticate_user(store, "carol", "correct-horse-battery", audit)
        assert principal is not None
        assert principal.id == seeded.id
        assert store.get_by_id(seeded.id).last_login is not None
        assert read_audit(audit.audit_path)[-1]["action"] == "login_success"

    @pytest.mark.parametrize(
        "username,password,reason",
        [
            ("carol", "wrong-password-here", "invalid_password"),
            ("nobody", "correct-horse-battery", "user_not_found"),
        ],
    )
    def test_failures_return_none(self, store, audit, username, password, reason) -> None:
        self._seed(store)
        assert authenticate_user(store, username, password, audit) is None
        last = read_audit(audit.audit_path)[-1]
        assert last["action"] == "login_failed"
        assert last["details"]["reason"] == reason

    def test_disabled_account_is_rejected(self, store, audit) -> None:
        self._seed(store, is_active=False)
        assert authenticate_user(store, "carol", "correct-horse-battery", audit) is None
        assert read_audit(audit.audit_path)[-1]["details"]["reason"] == "account_disabled"

    def test_oauth_only_account_cannot_use_password(self, store) -> None:
        self._seed(store, hashed_password=None, auth_provider="google")
        assert authenticate_user(store, "carol", "correct-horse-battery") is None


class TestAuditRedaction:
    def test_sensitive_keys_are_redacted(self, audit: AuditLog) -> None:
        audit.record(
            "credentials_stored",
            {"provider": "aws", "secret_access_key": "abc", "nested": {"client_secret": "def"}, "items": [{"password": "p"}]},
        )
        details = read_audit(audit.audit_path)[-1]["details"]
        assert details["provider"] == "aws"
        assert details["secret_access_key"] == "[REDACTED]"
        assert details["nested"]["client_secret"] == "[REDACTED]"
        assert details["items"][0]["password"] == "[REDACTED]"

    def test_sanitize_leaves_plain_values(self) -> None:
        assert sanitize_details({"count": 3, "names": ["a", "b"]}) == {"count": 3, "names": ["a", "b"]}

    @pytest.mark.asyncio
    async def test_record_async_writes_on_worker_thread(self, audit: AuditLog, monkeypatch) -> None:
        loop_thread = threading.get_ident()
        threads: list[int] = []
        original = audit._append

        def tracking_append(path, entry):
            threads.append(threading.get_ident())
            original(path, entry)

        monkeypatch.setattr(audit, "_append", tracking_append)
        entry = await audit.record_async("compliance_check", {"api_key": "k"}, ip="10.0.0.2")
        assert entry["details"] == {"api_key": "[REDACTED]"}
        assert read_audit(audit.audit_path)[-1]["ip"] == "10.0.0.2"
        assert threads and threads[0] != loop_thread

    def test_record_shape(self, audit: AuditLog) -> None:
        entry = audit.record("dashboard_access", {"providers": ["aws"]}, user_id="u-1", ip="10.0.0.1")
        assert set(entry) == {"timestamp", "user_id", "action", "details", "ip"}
        anonymous = audit.record("dashboard_access")
        assert anonymous["user_id"] == "system"
        assert anonymous["ip"] == "unknown"
