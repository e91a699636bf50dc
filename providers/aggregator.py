"""
providers/aggregator.py -- Concurrent multi-provider fan-out and merge.

Pattern: Pipeline. validate -> fan out (one task per provider) -> wait for all
-> merge in request order.

Every branch returns a BranchResult and never raises: credential failures,
query failures, timeouts, and unexpected exceptions all turn into the provider's
fallback inventory with live=False and a degraded_reason. One slow or broken
cloud therefore never sinks the others, and the summary says explicitly which
providers are not live.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass

from auth.models import Principal
from core.audit import AuditLog
from core.errors import CredentialError, ProviderFetchError, ValidationError
from core.models import (
    KNOWN_PROVIDERS,
    PROVIDER_COLORS,
    CostDriver,
    CostSlice,
    DashboardSummary,
    ProviderInventory,
    ProviderStatus,
    SummaryTotals,
)
from providers.base import ProviderClient
from providers.fallback import fallback_inventory

logger = logging.getLogger("cloudboard.providers")

TOP_RESOURCES_LIMIT = 5
MONTHLY_CHANGE_PERCENT = 5.2

# (name, share of total monthly cost, colour)
SERVICE_SPLIT = (
    ("Compute", 0.40, "#3b82f6"),
    ("Storage", 0.27, "#10b981"),
    ("Database", 0.20, "#8b5cf6"),
    ("Network", 0.13, "#f59e0b"),
)

COST_TREND = (
    ("Jan", {"aws": 4000, "azure": 2400, "gcp": 2400}),
    ("Feb", {"aws": 3000, "azure": 1398, "gcp": 2210}),
    ("Mar", {"aws": 2000, "azure": 9800, "gcp": 2290}),
    ("Apr", {"aws": 2780, "azure": 3908, "gcp": 2000}),
    ("May", {"aws": 1890, "azure": 4800, "gcp": 2181}),
    ("Jun", {"aws": 2390, "azure": 3800, "gcp": 2500}),
)


@dataclass
class BranchResult:
    provider: str
    inventory: ProviderInventory
    error: str | None = None


def validate_providers(requested: Iterable[str] | None) -> list[str]:
    """Return the requested providers de-duplicated in order, or raise ValidationError."""
    if requested is None or isinstance(requested, str):
        raise ValidationError("providers must be a list.", code="invalid_providers")
    ordered: list[str] = []
    for name in requested:
        if name not in KNOWN_PROVIDERS:
            raise ValidationError(
                f"Unknown provider {name!r}. Valid providers: {', '.join(KNOWN_PROVIDERS)}",
                code="invalid_providers",
            )
        if name not in ordered:
            ordered.append(name)
    if not ordered:
        raise ValidationError("At least one provider is required.", code="invalid_providers")
    return ordered


def cost_trend(providers: list[str]) -> list[dict]:
    return [{"month": month, **{p: series[p] for p in providers}} for month, series in COST_TREND]


class ResourceAggregator:
    def __init__(
        self,
        clients: Mapping[str, ProviderClient],
        audit: AuditLog,
        *,
        provider_timeout: float = 20.0,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self.clients = dict(clients)
        self.audit = audit
        self.provider_timeout = provider_timeout
        self._clock = clock

    async def aggregate(
        self,
        requested_providers: Iterable[str],
        principal: Principal | None = None,
        *,
        ip: str | None = None,
    ) -> DashboardSummary:
        providers = validate_providers(requested_providers)
        user_id = principal.id if principal is not None else None
        started = self._clock()
        await self.audit.record_async(
            "dashboard_access",
            {"providers": providers, "authenticated": principal is not None},
            user_id=user_id,
            ip=ip,
        )

        results = await asyncio.gather(*(self._branch(p, principal, ip) for p in providers))
        summary = merge(providers, results)
        summary.response_time_ms = round((self._clock() - started) * 1000, 1)

        await self.audit.record_async(
            "dashboard_response",
            {
                "providers": providers,
                "response_time_ms": summary.response_time_ms,
                "resource_count": len(summary.instances) + len(summary.storage) + len(summary.databases),
                "degraded_providers": summary.degraded_providers,
            },
            user_id=user_id,
            ip=ip,
        )
        return summary

    async def _branch(self, provider: str, principal: Principal | None, ip: str | None) -> BranchResult:
        client = self.clients.get(provider)
        if client is None:
            return BranchResult(provider, fallback_inventory(provider, "not_configured"))

        try:
            inventory = await asyncio.wait_for(client.fetch_inventory(principal), timeout=self.provider_timeout)
        except CredentialError as exc:
            return await self._failed(provider, principal, ip, exc.code, exc.message)
        except ProviderFetchError as exc:
            return await self._failed(provider, principal, ip, exc.code, exc.message)
        except asyncio.TimeoutError:
            return await self._failed(provider, principal, ip, "timeout", f"No response within {self.provider_timeout}s")
        except Exception as exc:
            logger.exception("Unexpected failure fetching %s inventory", provider)
            return await self._failed(provider, principal, ip, "unexpected_error", exc.__class__.__name__)

        if inventory is None:
            logger.info("%s is not configured; using sample data", provider)
            return BranchResult(provider, fallback_inventory(provider, "not_configured"))
        return BranchResult(provider, inventory)

    async def _failed(
        self, provider: str, principal: Principal | None, ip: str | None, reason: str, message: str
    ) -> BranchResult:
        logger.warning("%s branch degraded: %s (%s)", provider, reason, message)
        await self.audit.record_async(
            "provider_fetch_failed",
            {"provider": provider, "reason": reason, "error": message},
            user_id=principal.id if principal is not None else None,
            ip=ip,
        )
        return BranchResult(provider, fallback_inventory(provider, reason), error=reason)


def merge(providers: list[str], results: list[BranchResult]) -> DashboardSummary:
    """Fold branch results into one summary. results must be in request order."""
    totals = SummaryTotals()
    statuses: list[ProviderStatus] = []
    instances, storage, databases, alerts = [], [], [], []
    by_provider: list[CostSlice] = []
    drivers: list[CostDriver] = []
    degraded: list[str] = []

    for result in results:
        inv = result.inventory
        statuses.append(
            ProviderStatus(
                name=inv.provider.upper(),
                live=inv.live,
                healthy_resources=inv.healthy_resources,
                warning_resources=inv.warning_resources,
                critical_resources=inv.critical_resources,
                degraded_reason=inv.degraded_reason,
            )
        )
        instances.extend(inv.instances)
        storage.extend(inv.storage)
        databases.extend(inv.databases)
        alerts.extend(inv.alerts)
        drivers.extend(inv.top_resources)

        totals.total_instances += len(inv.instances)
        totals.total_storage += len(inv.storage)
        totals.total_storage_gb += sum(s.size for s in inv.storage)
        totals.total_databases += len(inv.databases)
        totals.monthly_cost += inv.cost

        by_provider.append(CostSlice(name=inv.provider.upper(), value=inv.cost, color=PROVIDER_COLORS[inv.provider]))
        if not inv.live:
            degraded.append(inv.provider)

    by_service = [
        CostSlice(name=name, value=math.floor(totals.monthly_cost * share), color=color)
        for name, share, color in SERVICE_SPLIT
    ]
    top = sorted(drivers, key=lambda d: d.cost, reverse=True)[:TOP_RESOURCES_LIMIT]

    return DashboardSummary(
        summary=totals,
        providers=statuses,
        instances=instances,
        storage=storage,
        databases=databases,
        cost_by_provider=by_provider,
        cost_by_service=by_service,
        monthly_change=MONTHLY_CHANGE_PERCENT,
        top_resources=top,
        alerts=alerts,
        cost_trend=cost_trend(providers),
        degraded=bool(degraded),
        degraded_providers=degraded,
        response_time_ms=0.0,
    )
