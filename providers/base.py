"""
providers/base.py -- Shared shape of a provider inventory client.

A ProviderClient resolves credentials through the CredentialResolver, queries
its cloud, and returns a ProviderInventory. It returns None when the provider
is not configured at all (the resolver found nothing); the aggregator then
contributes the fallback data set for that provider.

Vendor SDK and HTTP failures are raised as ProviderFetchError; credential
failures propagate as CredentialError. Neither escapes the aggregator branch.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass

from auth.models import Principal
from core.models import Alert, CostDriver, Database, Instance, ProviderInventory, StorageVolume
from credentials.models import Credentials
from credentials.resolver import CredentialResolver

TOP_RESOURCES_PER_PROVIDER = 2


@dataclass(frozen=True)
class CostModel:
    """Flat monthly estimate per resource, used until a billing API is wired in."""

    instance: float
    storage: float
    database: float
    instance_label: str
    database_label: str


class ProviderClient(ABC):
    name: str
    cost_model: CostModel

    def __init__(self, resolver: CredentialResolver) -> None:
        self.resolver = resolver

    async def fetch_inventory(self, principal: Principal | None) -> ProviderInventory | None:
        credentials = await self.resolver.get_credentials(self.name, principal)
        if credentials is None:
            return None
        return await self.collect(credentials)

    @abstractmethod
    async def collect(self, credentials: Credentials) -> ProviderInventory:
        """Query the cloud with credentials and build the inventory."""


def summarize(
    provider: str,
    label: str,
    model: CostModel,
    instances: list[Instance],
    storage: list[StorageVolume],
    databases: list[Database],
    *,
    database_region: str = "",
) -> ProviderInventory:
    """Derive health counts, cost, alerts and cost drivers from raw resource lists.

    running instances are healthy, stopped ones are warnings, any other state is
    critical. Storage and databases that were listed count as healthy.
    """
    healthy = sum(1 for i in instances if i.status == "running")
    warning = sum(1 for i in instances if i.status == "stopped")
    critical = len(instances) - healthy - warning
    healthy += len(storage) + len(databases)

    cost = len(instances) * model.instance + len(storage) * model.storage + len(databases) * model.database

    alerts: list[Alert] = []
    if warning:
        noun = "instance is" if warning == 1 else "instances are"
        alerts.append(Alert(severity="warning", message=f"{warning} {noun} stopped", provider=label, resource="Compute"))
    if critical:
        noun = "instance is" if critical == 1 else "instances are"
        alerts.append(
            Alert(severity="critical", message=f"{critical} {noun} in an unhealthy state", provider=label, resource="Compute")
        )

    top = [
        CostDriver(name=i.name, type=model.instance_label, provider=label, cost=model.instance, region=i.region)
        for i in instances[:TOP_RESOURCES_PER_PROVIDER]
    ]
    if databases:
        top.append(
            CostDriver(
                name=databases[0].name,
                type=model.database_label,
                provider=label,
                cost=model.database,
                region=database_region,
            )
        )

    return ProviderInventory(
        provider=provider,
        instances=instances,
        storage=storage,
        databases=databases,
        healthy_resources=healthy,
        warning_resources=warning,
        critical_resources=critical,
        cost=cost,
        alerts=alerts,
        top_resources=top,
    )
