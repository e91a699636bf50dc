"""
providers/azure.py -- Azure inventory via the Resource Manager REST API (httpx).

Token sources, in the order they are checked on the resolved credentials:
  access_token          already minted (managed identity via the instance strategy)
  client_secret         service principal client-credentials grant
  use_managed_identity  ask the VM's identity endpoint now
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from core.errors import CredentialError, CredentialErrorKind, ProviderFetchError
from core.models import Database, Instance, ProviderInventory, StorageVolume
from credentials.models import Credentials
from credentials.resolver import CredentialResolver
from providers.base import CostModel, ProviderClient, summarize

logger = logging.getLogger("cloudboard.providers.azure")

AZURE_COSTS = CostModel(
    instance=120, storage=40, database=180, instance_label="Virtual Machine", database_label="SQL Database"
)

ARM_BASE = "https://management.azure.com"
ARM_SCOPE = "https://management.azure.com/.default"
LOGIN_BASE = "https://login.microsoftonline.com"
IDENTITY_ENDPOINT = "http://169.254.169.254/metadata/identity/oauth2/token"

_VM_API = "2023-03-01"
_STORAGE_API = "2023-01-01"
_SQL_API = "2021-11-01"


def _power_state(vm: dict[str, Any]) -> str:
    statuses = vm.get("properties", {}).get("instanceView", {}).get("statuses", [])
    for status in statuses:
        code = status.get("code", "")
        if code.startswith("PowerState/"):
            state = code.split("/", 1)[1]
            if state == "running":
                return "running"
            if state in ("stopped", "deallocated"):
                return "stopped"
            return state
    return "unknown"


class AzureClient(ProviderClient):
    name = "azure"
    cost_model = AZURE_COSTS

    def __init__(self, resolver: CredentialResolver, http_client: httpx.AsyncClient, timeout: float = 15.0) -> None:
        super().__init__(resolver)
        self.http = http_client
        self.timeout = timeout

    async def collect(self, credentials: Credentials) -> ProviderInventory:
        values = credentials.values
        subscription_id = values.get("subscription_id")
        if not subscription_id:
            raise CredentialError(
                CredentialErrorKind.MISSING_CONFIGURATION,
                "AZURE_SUBSCRIPTION_ID is not configured.",
                provider="azure",
            )
        try:
            token = await self._access_token(values)
            headers = {"Authorization": f"Bearer {token}"}
            base = f"{ARM_BASE}/subscriptions/{subscription_id}/providers"
            vms = await self._list(
                f"{base}/Microsoft.Compute/virtualMachines", {"api-version": _VM_API, "statusOnly": "true"}, headers
            )
            accounts = await self._list(f"{base}/Microsoft.Storage/storageAccounts", {"api-version": _STORAGE_API}, headers)
            servers = await self._list(f"{base}/Microsoft.Sql/servers", {"api-version": _SQL_API}, headers)
        except httpx.HTTPError as exc:
            logger.warning("Azure inventory query failed: %s", exc)
            raise ProviderFetchError("azure", f"Azure query failed: {exc.__class__.__name__}") from exc

        instances = [
            Instance(
                name=vm["name"],
                type=vm.get("properties", {}).get("hardwareProfile", {}).get("vmSize", "unknown"),
                status=_power_state(vm),
                region=vm.get("location", ""),
                provider="Azure",
            )
            for vm in vms
        ]
        storage = [
            StorageVolume(
                name=a["name"],
                type=a.get("kind", "StorageV2"),
                region=a.get("location", ""),
                provider="Azure",
            )
            for a in accounts
        ]
        databases = [
            Database(
                name=s["name"],
                engine="SQL Server",
                version=s.get("properties", {}).get("version", ""),
                size=s.get("sku", {}).get("name", ""),
                provider="Azure",
            )
            for s in servers
        ]
        db_region = servers[0].get("location", "") if servers else ""
        return summarize("azure", "Azure", AZURE_COSTS, instances, storage, databases, database_region=db_region)

    async def _access_token(self, values: dict[str, Any]) -> str:
        if values.get("access_token"):
            return values["access_token"]
        if values.get("client_secret"):
            resp = await self.http.post(
                f"{LOGIN_BASE}/{values['tenant_id']}/oauth2/v2.0/token",
                data={
                    "grant_type": "client_credentials",
                    "client_id": values["client_id"],
                    "client_secret": values["client_secret"],
                    "scope": ARM_SCOPE,
                },
                timeout=self.timeout,
            )
            resp.raise_for_status()
            return resp.json()["access_token"]
        if values.get("use_managed_identity"):
            resp = await self.http.get(
                IDENTITY_ENDPOINT,
                params={"api-version": "2018-02-01", "resource": f"{ARM_BASE}/"},
                headers={"Metadata": "true"},
                timeout=self.timeout,
            )
            resp.raise_for_status()
            return resp.json()["access_token"]
        raise CredentialError(
            CredentialErrorKind.NOT_CONFIGURED,
            "Azure credentials carry no usable token source.",
            provider="azure",
        )

    async def _list(self, url: str, params: dict[str, str], headers: dict[str, str]) -> list[dict[str, Any]]:
        """GET an ARM collection, following nextLink pages."""
        items: list[dict[str, Any]] = []
        next_url: str | None = url
        next_params: dict[str, str] | None = params
        while next_url:
            resp = await self.http.get(next_url, params=next_params, headers=headers, timeout=self.timeout)
            resp.raise_for_status()
            body = resp.json()
            items.extend(body.get("value", []))
            next_url = body.get("nextLink")
            next_params = None  # nextLink already carries the query string
        return items
