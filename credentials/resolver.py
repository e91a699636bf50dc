"""
credentials/resolver.py -- Per-(provider, principal) credential resolution with a TTL cache.

Usage:
    resolver = CredentialResolver(build_strategies(settings, store, http), audit)
    creds = await resolver.get_credentials("aws", principal)   # Credentials or None
    resolver.invalidate(principal.id)                          # after a credential write

Cache rules:
  - Key is (provider, user_id), with "anonymous" standing in for no principal.
  - Entries live for ttl seconds (default one hour) on an injectable monotonic
    clock. Short-lived credentials are also dropped once their own expires_at
    is within EXPIRY_SKEW of now.
  - A successful resolution is cached, including None ("nothing configured").
    A CredentialError is not cached, so the next request tries again.
  - A hit performs no I/O. Misses for the same key are serialized on a per-key
    asyncio.Lock and re-check the cache after acquiring it. Idle per-key locks
    are dropped together with their entries.
  - invalidate() and clear() are called from sync route handlers on worker
    threads while the event loop reads the cache, so the entry and lock maps
    are only touched under a threading.Lock. A resolution that was in flight
    when the cache was invalidated is returned but not cached.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from auth.models import Principal
from core.audit import AuditLog
from core.errors import CredentialError, CredentialErrorKind
from credentials.models import Credentials
from credentials.strategies import CredentialStrategy

logger = logging.getLogger("cloudboard.credentials")

DEFAULT_TTL_SECONDS = 60 * 60
EXPIRY_SKEW = timedelta(minutes=5)
ANONYMOUS = "anonymous"

CacheKey = tuple[str, str]


@dataclass
class _CacheEntry:
    credentials: Credentials | None
    cached_at: float


class CredentialResolver:
    def __init__(
        self,
        strategies: Mapping[str, CredentialStrategy],
        audit: AuditLog,
        *,
        ttl: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.strategies = dict(strategies)
        self.audit = audit
        self.ttl = ttl
        self._clock = clock
        self._entries: dict[CacheKey, _CacheEntry] = {}
        self._locks: dict[CacheKey, asyncio.Lock] = {}
        self._mutex = threading.Lock()
        self._generation = 0

    async def get_credentials(self, provider: str, principal: Principal | None) -> Credentials | None:
        """Return credentials for provider on behalf of principal.

        Raises:
            CredentialError: The configured strategy could not produce credentials.
        """
        strategy = self.strategies.get(provider)
        if strategy is None:
            raise CredentialError(
                CredentialErrorKind.MISSING_CONFIGURATION,
                f"No credential strategy configured for {provider!r}.",
                provider=provider,
            )

        key = _cache_key(provider, principal)
        entry = self._lookup(key)
        if entry is not None:
            return entry.credentials

        with self._mutex:
            lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            # double-check: another task may have filled the entry while we waited
            entry = self._lookup(key)
            if entry is not None:
                return entry.credentials

            generation = self._generation
            credentials = await strategy.resolve(provider, principal)
            with self._mutex:
                if generation == self._generation:
                    self._entries[key] = _CacheEntry(credentials=credentials, cached_at=self._clock())

        await self.audit.record_async(
            "credentials_resolved",
            {
                "provider": provider,
                "strategy": strategy.kind.value,
                "source": credentials.source.value if credentials is not None else None,
                "configured": credentials is not None,
            },
            user_id=key[1] if key[1] != ANONYMOUS else None,
        )
        return credentials

    def invalidate(self, user_id: str | None, provider: str | None = None) -> int:
        """Drop cached entries for user_id (all providers, or just provider). Returns entries removed."""
        owner = user_id or ANONYMOUS
        with self._mutex:
            self._generation += 1
            doomed = [k for k in self._entries if k[1] == owner and (provider is None or k[0] == provider)]
            for key in doomed:
                del self._entries[key]
            self._drop_idle_locks(lambda k: k[1] == owner and (provider is None or k[0] == provider))
        self.audit.record(
            "credential_cache_cleared",
            {"provider": provider, "entries": len(doomed)},
            user_id=user_id,
        )
        return len(doomed)

    def clear(self) -> None:
        with self._mutex:
            self._generation += 1
            self._entries.clear()
            self._drop_idle_locks(lambda k: True)
        self.audit.record("credential_cache_cleared", {"provider": None, "entries": "all"})

    def purge_expired(self) -> int:
        """Delete every stale entry. Returns the number removed."""
        with self._mutex:
            stale = [k for k, e in self._entries.items() if not self._is_fresh(e)]
            for key in stale:
                del self._entries[key]
            self._drop_idle_locks(lambda k: k not in self._entries)
        return len(stale)

    def _drop_idle_locks(self, match: Callable[[CacheKey], bool]) -> None:
        # Caller holds _mutex. A held lock still has waiters that will re-check the cache.
        for key in [k for k, lock in self._locks.items() if match(k) and not lock.locked()]:
            del self._locks[key]

    def _lookup(self, key: CacheKey) -> _CacheEntry | None:
        with self._mutex:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if not self._is_fresh(entry):
                del self._entries[key]
                return None
            return entry

    def _is_fresh(self, entry: _CacheEntry) -> bool:
        if self._clock() - entry.cached_at >= self.ttl:
            return False
        expires_at = entry.credentials.expires_at if entry.credentials is not None else None
        if expires_at is not None and datetime.now(timezone.utc) >= expires_at - EXPIRY_SKEW:
            return False
        return True


def _cache_key(provider: str, principal: Principal | None) -> CacheKey:
    user_id = principal.id if principal is not None and principal.id else ANONYMOUS
    return (provider, user_id)
