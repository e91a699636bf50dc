"""
auth/store.py -- SQLAlchemy Core persistence layer for principals.

Pattern: Repository + Data Mapper. PrincipalStore is the repository;
_row_to_principal is the mapper. Services and routes never touch SQL directly,
and they receive the store by injection (app.state.user_store in the API,
constructor arguments in UserManager) so tests can hand in an in-memory SQLite
store or a fake with the same methods.

Uniqueness:
  username is unique case-insensitively -- enforced by the username_key column
  (lower-cased username) carrying the UNIQUE constraint. Emails are stored
  lower-cased and are unique as well. Both surface as IntegrityError on insert;
  UserManager pre-checks and turns that into ConflictError. An external
  identity (oauth_provider, oauth_subject) maps to at most one principal.

Security:
  All queries use bound parameters. No f-strings in SQL.

Layer rule: no imports from api/, credentials/, or providers/.
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    func,
    or_,
    select,
)
from sqlalchemy.engine import Engine

from auth.models import Permission, Principal, Role

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_principals = Table(
    "principals",
    _metadata,
    Column("id", String(64), primary_key=True),
    Column("username", String(255), nullable=False),
    Column("username_key", String(255), nullable=False, unique=True),  # lower(username)
    Column("email", String(320), nullable=False, unique=True),  # stored lower-cased
    Column("hashed_password", Text),  # NULL for OAuth-only principals
    Column("role", String(30), nullable=False, server_default="user"),
    Column("custom_permissions", Text, nullable=False, server_default="[]"),  # JSON list
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("auth_provider", String(30), nullable=False, server_default="local"),
    Column("oauth_provider", String(30)),  # set once an external identity is linked
    Column("oauth_subject", String(255)),  # provider-stable subject, never the email
    Column("created_at", String(32), nullable=False),
    Column("created_by", String(64)),
    Column("updated_at", String(32)),
    Column("last_login", String(32)),
    UniqueConstraint("oauth_provider", "oauth_subject", name="uq_principals_oauth_identity"),
)

# Fields update() accepts. Anything else is a programming error.
_MUTABLE_FIELDS = {
    "username",
    "email",
    "hashed_password",
    "role",
    "custom_permissions",
    "is_active",
    "auth_provider",
    "oauth_provider",
    "oauth_subject",
}


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety on file-backed SQLite."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_principal_id() -> str:
    return f"user-{uuid.uuid4().hex}"


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class PrincipalStore:
    """Repository for Principal entities.

    Usage:
        store = PrincipalStore("sqlite:///:memory:")
        pid = store.create(Principal(username="alice", email="alice@example.com"))
        principal = store.get_by_id(pid)
        store.close()
    """

    def __init__(self, db_url: str = "sqlite:///cloudboard.db") -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite") and ":memory:" not in db_url and "mode=memory" not in db_url:
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def has_principals(self) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_principals)).scalar()
        return (result or 0) > 0

    def create(self, principal: Principal) -> str:
        """Insert a new principal and return its id.

        Raises sqlalchemy.exc.IntegrityError if the username or email already
        exists (case-insensitively).
        """
        principal_id = principal.id or new_principal_id()
        with self.engine.connect() as conn:
            conn.execute(
                _principals.insert().values(
                    id=principal_id,
                    username=principal.username,
                    username_key=principal.username.lower(),
                    email=principal.email.lower(),
                    hashed_password=principal.hashed_password,
                    role=Role(principal.role).value,
                    custom_permissions=_dump_permissions(principal.custom_permissions),
                    is_active=1 if principal.is_active else 0,
                    auth_provider=principal.auth_provider,
                    oauth_provider=principal.oauth_provider,
                    oauth_subject=principal.oauth_subject,
                    created_at=_now_iso(),
                    created_by=principal.created_by,
                )
            )
            conn.commit()
        return principal_id

    def get_by_id(self, principal_id: str) -> Principal | None:
        with self.engine.connect() as conn:
            row = conn.execute(_principals.select().where(_principals.c.id == principal_id)).fetchone()
        return _row_to_principal(row) if row is not None else None

    def get_by_username(self, username: str) -> Principal | None:
        """Case-insensitive username lookup."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _principals.select().where(_principals.c.username_key == username.lower())
            ).fetchone()
        return _row_to_principal(row) if row is not None else None

    def get_by_email(self, email: str) -> Principal | None:
        """Case-insensitive email lookup."""
        with self.engine.connect() as conn:
            row = conn.execute(_principals.select().where(_principals.c.email == email.lower())).fetchone()
        return _row_to_principal(row) if row is not None else None

    def get_by_oauth(self, provider: str, subject: str) -> Principal | None:
        """Look up the principal linked to an external (provider, subject) identity."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _principals.select().where(
                    (_principals.c.oauth_provider == provider) & (_principals.c.oauth_subject == subject)
                )
            ).fetchone()
        return _row_to_principal(row) if row is not None else None

    def link_oauth(self, principal_id: str, provider: str, subject: str) -> bool:
        """Attach an external identity to a principal that has none yet.

        Returns False when the principal is missing or already linked, so two
        callbacks racing for the same account cannot both succeed.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _principals.update()
                .where((_principals.c.id == principal_id) & _principals.c.oauth_subject.is_(None))
                .values(
                    oauth_provider=provider,
                    oauth_subject=subject,
                    auth_provider=provider,
                    updated_at=_now_iso(),
                )
            )
        return result.rowcount > 0

    def list_principals(self) -> list[Principal]:
        with self.engine.connect() as conn:
            rows = conn.execute(_principals.select().order_by(_principals.c.username_key)).fetchall()
        return [_row_to_principal(r) for r in rows]

    def count_active_with_role(self, role: Role | str) -> int:
        """Number of active principals holding role. Guards the last-super-admin rule."""
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(_principals)
                .where((_principals.c.role == Role(role).value) & (_principals.c.is_active == 1))
            ).scalar()
        return result or 0

    def update(self, principal_id: str, *, guard_role: Role | None = None, **fields) -> bool:
        """Update mutable fields on an existing principal.

        Accepted fields: username, email, hashed_password, role,
        custom_permissions, is_active, auth_provider, oauth_provider,
        oauth_subject.

        guard_role: when given, the update only applies if it would not leave
        zero active holders of that role. The check and the write run as one
        statement, so concurrent demotions cannot both pass.

        Returns True if a row was updated, False if principal_id was not found
        or the guard refused the change.
        """
        unknown = set(fields) - _MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown principal fields: {sorted(unknown)!r}")
        values: dict = dict(fields)
        if "username" in values:
            values["username_key"] = values["username"].lower()
        if "email" in values:
            values["email"] = values["email"].lower()
        if "role" in values:
            values["role"] = Role(values["role"]).value
        if "custom_permissions" in values:
            values["custom_permissions"] = _dump_permissions(values["custom_permissions"])
        if "is_active" in values:
            values["is_active"] = 1 if values["is_active"] else 0
        values["updated_at"] = _now_iso()
        with self.engine.begin() as conn:
            result = conn.execute(
                _principals.update().where(_target(principal_id, guard_role)).values(**values)
            )
        return result.rowcount > 0

    def update_last_login(self, principal_id: str) -> None:
        with self.engine.connect() as conn:
            conn.execute(_principals.update().where(_principals.c.id == principal_id).values(last_login=_now_iso()))
            conn.commit()

    def delete(self, principal_id: str, *, guard_role: Role | None = None) -> bool:
        """Permanently delete a principal. Returns True if deleted.

        guard_role works as in update(): the row is only removed if another
        active holder of that role remains. The self-deletion rule stays with
        the caller (see UserManager.delete_user).
        """
        with self.engine.begin() as conn:
            result = conn.execute(_principals.delete().where(_target(principal_id, guard_role)))
        return result.rowcount > 0

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _target(principal_id: str, guard_role: Role | None):
    """WHERE clause for a single-row mutation, optionally keeping one active guard_role holder."""
    clause = _principals.c.id == principal_id
    if guard_role is None:
        return clause
    role = Role(guard_role).value
    others = _principals.alias("others")
    remaining = (
        select(func.count())
        .select_from(others)
        .where((others.c.role == role) & (others.c.is_active == 1) & (others.c.id != principal_id))
        .scalar_subquery()
    )
    return clause & or_(_principals.c.role != role, _principals.c.is_active == 0, remaining > 0)


def _dump_permissions(permissions) -> str:
    # Deduplicate while preserving order so the stored list stays stable.
    seen: list[str] = []
    for p in permissions:
        value = Permission(p).value
        if value not in seen:
            seen.append(value)
    return json.dumps(seen)


def _row_to_principal(row) -> Principal:
    grants = [Permission(p) for p in json.loads(row.custom_permissions or "[]") if p in Permission._value2member_map_]
    return Principal(
        id=row.id,
        username=row.username,
        email=row.email,
        hashed_password=row.hashed_password,
        role=Role(row.role),
        custom_permissions=grants,
        is_active=bool(row.is_active),
        auth_provider=row.auth_provider,
        oauth_provider=row.oauth_provider,
        oauth_subject=row.oauth_subject,
        created_at=row.created_at,
        created_by=row.created_by,
        updated_at=row.updated_at,
        last_login=row.last_login,
    )
