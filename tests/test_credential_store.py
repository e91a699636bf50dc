"""
tests/test_credential_store.py -- Unit tests for credentials/store.py.

Covers:
  - put() / get() round trip and whole-record replacement
  - Secrets are sealed at rest (no plaintext in the table)
  - A sealed blob moved to another row, or opened with another SECRET_KEY,
    raises CredentialError(NOT_CONFIGURED)
  - list_for_user() never opens secrets; delete() and delete_all_for_user()
"""

from __future__ import annotations

import uuid

import pytest
from sqlalchemy import text

from core.errors import CredentialError, CredentialErrorKind
from credentials.models import CredentialRecord
from credentials.store import CredentialStore

KEY = "k" * 48


@pytest.fixture
def db_url() -> str:
    return f"sqlite:///file:creds_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


@pytest.fixture
def store(db_url):
    s = CredentialStore(db_url, KEY)
    yield s
    s.close()


def _aws_record(user_id: str = "u-1", **secret) -> CredentialRecord:
    bundle = {"access_key_id": "AKIAEXAMPLEEXAMPLE", "secret_access_key": "wJalrXUtnFEMI/K7MDENG/bPxRfiCY"}
    bundle.update(secret)
    return CredentialRecord(user_id=user_id, provider="aws", method="access-key", secret=bundle)


class TestRoundTrip:
    def test_put_then_get(self, store: CredentialStore) -> None:
        stored = store.put(_aws_record())
        assert stored.created_at is not None
        loaded = store.get("u-1", "aws")
        assert loaded is not None
        assert loaded.method == "access-key"
        assert loaded.secret["access_key_id"] == "AKIAEXAMPLEEXAMPLE"
        assert loaded.created_at == stored.created_at

    def test_get_missing_is_none(self, store: CredentialStore) -> None:
        assert store.get("u-1", "gcp") is None

    def test_put_replaces_whole_record(self, store: CredentialStore) -> None:
        store.put(_aws_record(region="eu-west-1"))
        store.put(
            CredentialRecord(
                user_id="u-1",
                provider="aws",
                method="assume-role",
                secret={"role_arn": "arn:aws:iam::123456789012:role/ReadOnly"},
            )
        )
        loaded = store.get("u-1", "aws")
        assert loaded.method == "assume-role"
        assert loaded.secret == {"role_arn": "arn:aws:iam::123456789012:role/ReadOnly"}

    def test_secret_is_not_in_repr(self) -> None:
        assert "wJalrXUtnFEMI" not in repr(_aws_record())


class TestSealing:
    def test_no_plaintext_at_rest(self, store: CredentialStore) -> None:
        store.put(_aws_record())
        with store.engine.connect() as conn:
            sealed = conn.execute(text("SELECT sealed_secret FROM user_credentials")).scalar()
        assert "AKIAEXAMPLE" not in sealed
        assert "wJalrXUtnFEMI" not in sealed

    def test_blob_moved_to_another_user_does_not_open(self, store: CredentialStore) -> None:
        store.put(_aws_record("u-1"))
        with store.engine.begin() as conn:
            conn.execute(
                text(
                    "INSERT INTO user_credentials (user_id, provider, method, sealed_secret, created_at) "
                    "SELECT 'u-2', provider, method, sealed_secret, created_at FROM user_credentials "
                    "WHERE user_id = 'u-1'"
                )
            )
        with pytest.raises(CredentialError) as exc_info:
            store.get("u-2", "aws")
        assert exc_info.value.kind is CredentialErrorKind.NOT_CONFIGURED

    def test_rotated_secret_key_does_not_open(self, store: CredentialStore, db_url: str) -> None:
        store.put(_aws_record())
        rotated = CredentialStore(db_url, "r" * 48)
        try:
            with pytest.raises(CredentialError) as exc_info:
                rotated.get("u-1", "aws")
            assert exc_info.value.code == "credential_not_configured"
        finally:
            rotated.close()


class TestListAndDelete:
    def test_list_for_user_has_no_secrets(self, store: CredentialStore) -> None:
        store.put(_aws_record())
        store.put(CredentialRecord(user_id="u-1", provider="gcp", method="service-account", secret={"project_id": "p"}))
        store.put(_aws_record("u-2"))
        records = store.list_for_user("u-1")
        assert [r.provider for r in records] == ["aws", "gcp"]
        assert all(r.secret == {} for r in records)

    def test_delete(self, store: CredentialStore) -> None:
        store.put(_aws_record())
        assert store.delete("u-1", "aws") is True
        assert store.delete("u-1", "aws") is False
        assert store.get("u-1", "aws") is None

    def test_delete_all_for_user(self, store: CredentialStore) -> None:
        store.put(_aws_record())
        store.put(CredentialRecord(user_id="u-1", provider="gcp", method="service-account", secret={"project_id": "p"}))
        store.put(_aws_record("u-2"))
        assert store.delete_all_for_user("u-1") == 2
        assert store.get("u-2", "aws") is not None
