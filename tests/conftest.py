"""
tests/conftest.py -- Shared test fixtures for CloudBoard integration tests.

This module provides:
  - make_services(): builds every app.state service over isolated in-memory DBs
  - _patch_lifespan(): wires those services into app.state, bypassing real startup
  - FakeProviderClient: stands in for AwsClient/AzureClient/GcpClient
  - api_client: TestClient plus one token per role for API integration tests

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs sync route handlers in a thread pool. Plain :memory:
DBs are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

The DEBUG env var must be set before any core/auth import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import asyncio
import json
import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import MagicMock

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app
from auth.management import UserManager
from auth.models import Principal, Role
from auth.permissions import PermissionEngine
from auth.store import PrincipalStore
from auth.tokens import TokenService, hash_password
from core.audit import AuditLog
from core.config import get_settings
from core.models import ProviderInventory
from credentials.resolver import CredentialResolver
from credentials.store import CredentialStore
from credentials.strategies import EnvironmentStrategy, UserSuppliedStrategy
from providers.aggregator import ResourceAggregator

TEST_PASSWORD = "correct-horse-battery"  # noqa: S105 # nosec B105 -- test fixture password


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


@dataclass
class FakeProviderClient:
    """Provider client double. Returns inventory, raises error, or returns None (not configured)."""

    name: str
    inventory: ProviderInventory | None = None
    error: Exception | None = None
    delay: float = 0.0
    calls: list = field(default_factory=list)

    async def fetch_inventory(self, principal: Principal | None) -> ProviderInventory | None:
        self.calls.append(principal.id if principal is not None else None)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.inventory


def read_audit(path: Path) -> list[dict]:
    """Return every audit record written so far, oldest first."""
    if not path.exists():
        return []
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines() if line.strip()]


# ---------------------------------------------------------------------------
# Service helpers
# ---------------------------------------------------------------------------


def make_services(db_suffix: str, log_dir: Path, clients: dict | None = None) -> SimpleNamespace:
    """Create isolated services the way the real lifespan does, over shared-memory SQLite.

    Args:
        db_suffix: Unique string appended to the DB name so test modules don't share state.
        log_dir:   Directory for the audit and access NDJSON files.
        clients:   Provider clients for the aggregator; defaults to unconfigured fakes.
    """
    settings = get_settings()
    db_url = f"sqlite:///file:test_cloudboard_{db_suffix}?mode=memory&cache=shared&uri=true"
    audit = AuditLog(log_dir / "audit.log", log_dir / "access.log")
    user_store = PrincipalStore(db_url)
    credential_store = CredentialStore(db_url, settings.secret_key)
    permissions = PermissionEngine()
    tokens = TokenService(settings.secret_key, audit)
    users = UserManager(user_store, permissions, audit)
    resolver = CredentialResolver(
        {
            "aws": UserSuppliedStrategy(settings, credential_store),
            "azure": EnvironmentStrategy(settings),
            "gcp": EnvironmentStrategy(settings),
        },
        audit,
    )
    if clients is None:
        clients = {name: FakeProviderClient(name) for name in ("aws", "azure", "gcp")}
    aggregator = ResourceAggregator(clients, audit, provider_timeout=2.0)
    return SimpleNamespace(
        audit=audit,
        audit_path=log_dir / "audit.log",
        user_store=user_store,
        credential_store=credential_store,
        permissions=permissions,
        tokens=tokens,
        users=users,
        resolver=resolver,
        clients=clients,
        aggregator=aggregator,
    )


def seed_principal(services: SimpleNamespace, username: str, role: Role) -> Principal:
    principal_id = services.user_store.create(
        Principal(
            username=username,
            email=f"{username}@example.com",
            role=role,
            hashed_password=hash_password(TEST_PASSWORD),
        )
    )
    return services.user_store.get_by_id(principal_id)


def _patch_lifespan(services: SimpleNamespace):
    """Return an async context manager that replaces the real lifespan.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.audit = services.audit
        app.state.user_store = services.user_store
        app.state.credential_store = services.credential_store
        app.state.permissions = services.permissions
        app.state.tokens = services.tokens
        app.state.users = services.users
        app.state.resolver = services.resolver
        app.state.aggregator = services.aggregator
        app.state.oauth = MagicMock()
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


# ---------------------------------------------------------------------------
# Module-scoped fixtures -- one TestClient per test module for speed
# ---------------------------------------------------------------------------


@dataclass
class ApiContext:
    client: TestClient
    services: SimpleNamespace
    principals: dict[str, Principal]
    tokens: dict[str, str]

    def headers(self, who: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.tokens[who]}"}


@pytest.fixture(scope="module")
def api_client(request, tmp_path_factory) -> Generator[ApiContext, None, None]:
    """Yield an ApiContext with a super_admin ("root"), an admin ("alice") and a user ("bob").

    The TestClient uses the real FastAPI app with a patched lifespan so tests
    hit real route handlers and middleware but use isolated in-memory stores.
    """
    suffix = request.module.__name__.rsplit(".", 1)[-1]
    services = make_services(suffix, tmp_path_factory.mktemp(f"logs_{suffix}"))
    principals = {
        "root": seed_principal(services, "root", Role.SUPER_ADMIN),
        "alice": seed_principal(services, "alice", Role.ADMIN),
        "bob": seed_principal(services, "bob", Role.USER),
    }
    tokens = {name: services.tokens.issue(p) for name, p in principals.items()}

    limiter.reset()
    app.router.lifespan_context = _patch_lifespan(services)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield ApiContext(client=client, services=services, principals=principals, tokens=tokens)

    services.credential_store.close()
    services.user_store.close()
