"""
credentials/store.py -- SQLAlchemy Core persistence for CredentialRecords.

Pattern: Repository + Data Mapper, same shape as auth/store.py.

One row per (user_id, provider). put() replaces the whole record inside one
transaction -- a record is superseded, never partially mutated.

Secrets at rest:
  The secret bundle is JSON-encoded and sealed with AES-256-GCM. The key is
  derived from SECRET_KEY; the (user_id, provider) pair is bound in as
  associated data so a sealed blob copied onto another row fails to open.
  A blob that cannot be opened (e.g. SECRET_KEY rotated) raises
  CredentialError(NOT_CONFIGURED) -- the user must submit the credentials again.

Layer rule: imports core/ only.
"""

from __future__ import annotations

import base64
import hashlib
import json
import os
from datetime import datetime, timezone

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from sqlalchemy import Column, MetaData, PrimaryKeyConstraint, String, Table, Text, create_engine
from sqlalchemy.engine import Engine

from core.errors import CredentialError, CredentialErrorKind
from credentials.models import CredentialRecord

_metadata = MetaData()

_credentials = Table(
    "user_credentials",
    _metadata,
    Column("user_id", String(64), nullable=False),
    Column("provider", String(16), nullable=False),
    Column("method", String(32), nullable=False),
    Column("sealed_secret", Text, nullable=False),  # base64(nonce || ciphertext+tag)
    Column("created_at", String(32), nullable=False),
    PrimaryKeyConstraint("user_id", "provider"),
)

_NONCE_BYTES = 12


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _derive_key(secret_key: str) -> bytes:
    return hashlib.sha256(b"cloudboard.credentials.v1:" + secret_key.encode("utf-8")).digest()


class CredentialStore:
    """Repository for CredentialRecord entities.

    Usage:
        store = CredentialStore("sqlite:///:memory:", secret_key=settings.secret_key)
        store.put(CredentialRecord(user_id="u1", provider="aws", method="access-key", secret={...}))
        record = store.get("u1", "aws")
    """

    def __init__(self, db_url: str, secret_key: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        _metadata.create_all(self.engine)
        self._aead = AESGCM(_derive_key(secret_key))

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def put(self, record: CredentialRecord) -> CredentialRecord:
        """Store record, replacing any existing record for (user_id, provider)."""
        created_at = _now_iso()
        sealed = self._seal(record.user_id, record.provider, record.secret)
        with self.engine.begin() as conn:
            conn.execute(
                _credentials.delete().where(
                    (_credentials.c.user_id == record.user_id) & (_credentials.c.provider == record.provider)
                )
            )
            conn.execute(
                _credentials.insert().values(
                    user_id=record.user_id,
                    provider=record.provider,
                    method=record.method,
                    sealed_secret=sealed,
                    created_at=created_at,
                )
            )
        return CredentialRecord(
            user_id=record.user_id,
            provider=record.provider,
            method=record.method,
            secret=dict(record.secret),
            created_at=created_at,
        )

    def get(self, user_id: str, provider: str) -> CredentialRecord | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _credentials.select().where((_credentials.c.user_id == user_id) & (_credentials.c.provider == provider))
            ).fetchone()
        return self._row_to_record(row) if row is not None else None

    def list_for_user(self, user_id: str) -> list[CredentialRecord]:
        """Return every record for a user, without opening the sealed secrets."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _credentials.select().where(_credentials.c.user_id == user_id).order_by(_credentials.c.provider)
            ).fetchall()
        return [
            CredentialRecord(user_id=r.user_id, provider=r.provider, method=r.method, created_at=r.created_at)
            for r in rows
        ]

    def delete(self, user_id: str, provider: str) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                _credentials.delete().where((_credentials.c.user_id == user_id) & (_credentials.c.provider == provider))
            )
        return result.rowcount > 0

    def delete_all_for_user(self, user_id: str) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(_credentials.delete().where(_credentials.c.user_id == user_id))
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()

    # ------------------------------------------------------------------
    # Sealing
    # ------------------------------------------------------------------

    def _seal(self, user_id: str, provider: str, secret: dict) -> str:
        nonce = os.urandom(_NONCE_BYTES)
        aad = f"{user_id}:{provider}".encode("utf-8")
        ciphertext = self._aead.encrypt(nonce, json.dumps(secret).encode("utf-8"), aad)
        return base64.b64encode(nonce + ciphertext).decode("ascii")

    def _open(self, user_id: str, provider: str, sealed: str) -> dict:
        raw = base64.b64decode(sealed)
        aad = f"{user_id}:{provider}".encode("utf-8")
        try:
            plaintext = self._aead.decrypt(raw[:_NONCE_BYTES], raw[_NONCE_BYTES:], aad)
        except InvalidTag as exc:
            raise CredentialError(
                CredentialErrorKind.NOT_CONFIGURED,
                "Stored credentials can no longer be read; submit them again.",
                provider=provider,
            ) from exc
        return json.loads(plaintext)

    def _row_to_record(self, row) -> CredentialRecord:
        return CredentialRecord(
            user_id=row.user_id,
            provider=row.provider,
            method=row.method,
            secret=self._open(row.user_id, row.provider, row.sealed_secret),
            created_at=row.created_at,
        )
