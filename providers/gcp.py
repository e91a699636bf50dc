"""
providers/gcp.py -- GCP inventory via the Compute, Cloud Storage and Cloud SQL REST APIs (httpx).

With a service account key, an OAuth access token is minted by signing a JWT
assertion (RS256, python-jose) and exchanging it at the key's token_uri. A
metadata-server token from the instance strategy is used as-is.
"""

from __future__ import annotations

import logging
import time
from typing import Any

import httpx
from jose import jwt
from jose.exceptions import JOSEError

from core.errors import CredentialError, CredentialErrorKind, ProviderFetchError
from core.models import Database, Instance, ProviderInventory, StorageVolume
from credentials.models import Credentials
from credentials.resolver import CredentialResolver
from providers.base import CostModel, ProviderClient, summarize

logger = logging.getLogger("cloudboard.providers.gcp")

GCP_COSTS = CostModel(instance=130, storage=45, database=190, instance_label="Compute Engine", database_label="Cloud SQL")

CLOUD_PLATFORM_SCOPE = "https://www.googleapis.com/auth/cloud-platform"
DEFAULT_TOKEN_URI = "https://oauth2.googleapis.com/token"
COMPUTE_BASE = "https://compute.googleapis.com/compute/v1"
STORAGE_BASE = "https://storage.googleapis.com/storage/v1"
SQLADMIN_BASE = "https://sqladmin.googleapis.com/v1"

_STATUS_MAP = {"RUNNING": "running", "TERMINATED": "stopped", "STOPPED": "stopped", "SUSPENDED": "stopped"}


def machine_shape(machine_type: str) -> tuple[int, float]:
    """(vCPU, GiB) for predefined n1/n2/e2 standard and highmem types; (2, 4) otherwise."""
    parts = machine_type.split("-")
    if len(parts) == 3 and parts[2].isdigit():
        cpus = int(parts[2])
        per_cpu = {"standard": 3.75 if parts[0] == "n1" else 4.0, "highmem": 6.5 if parts[0] == "n1" else 8.0}
        if parts[1] in per_cpu:
            return cpus, cpus * per_cpu[parts[1]]
    return 2, 4


def _split_database_version(value: str) -> tuple[str, str]:
    """MYSQL_8_0 -> ("MySQL", "8.0"); POSTGRES_14 -> ("PostgreSQL", "14")."""
    engine, _, version = value.partition("_")
    names = {"MYSQL": "MySQL", "POSTGRES": "PostgreSQL", "SQLSERVER": "SQL Server"}
    return names.get(engine, engine.title()), version.replace("_", ".")


class GcpClient(ProviderClient):
    name = "gcp"
    cost_model = GCP_COSTS

    def __init__(self, resolver: CredentialResolver, http_client: httpx.AsyncClient, timeout: float = 15.0) -> None:
        super().__init__(resolver)
        self.http = http_client
        self.timeout = timeout

    async def collect(self, credentials: Credentials) -> ProviderInventory:
        values = credentials.values
        project = values["project_id"]
        try:
            token = await self._access_token(values)
            headers = {"Authorization": f"Bearer {token}"}
            zones = await self._paged(f"{COMPUTE_BASE}/projects/{project}/aggregated/instances", {}, headers, "items")
            buckets = await self._paged(f"{STORAGE_BASE}/b", {"project": project}, headers, "items")
            sql = await self._paged(f"{SQLADMIN_BASE}/projects/{project}/instances", {}, headers, "items")
        except httpx.HTTPError as exc:
            logger.warning("GCP inventory query failed: %s", exc)
            raise ProviderFetchError("gcp", f"GCP query failed: {exc.__class__.__name__}") from exc

        instances: list[Instance] = []
        for scope in zones:
            # aggregated list pages map "zones/<zone>" -> {"instances": [...]}
            for zone_key, zone_body in scope.items():
                for vm in zone_body.get("instances", []):
                    machine_type = vm.get("machineType", "").rsplit("/", 1)[-1] or "unknown"
                    cpu, memory = machine_shape(machine_type)
                    instances.append(
                        Instance(
                            name=vm["name"],
                            type=machine_type,
                            status=_STATUS_MAP.get(vm.get("status", ""), vm.get("status", "unknown").lower()),
                            region=zone_key.rsplit("/", 1)[-1],
                            provider="GCP",
                            cpu=cpu,
                            memory=memory,
                        )
                    )
        storage = [
            StorageVolume(
                name=b["name"],
                type="Cloud Storage",
                region=b.get("location", "").lower(),
                provider="GCP",
            )
            for b in buckets
        ]
        databases = []
        for db in sql:
            engine, version = _split_database_version(db.get("databaseVersion", ""))
            databases.append(
                Database(
                    name=db["name"],
                    engine=engine,
                    version=version,
                    size=db.get("settings", {}).get("tier", ""),
                    provider="GCP",
                )
            )
        db_region = sql[0].get("region", "") if sql else ""
        return summarize("gcp", "GCP", GCP_COSTS, instances, storage, databases, database_region=db_region)

    async def _access_token(self, values: dict[str, Any]) -> str:
        if values.get("access_token"):
            return values["access_token"]
        key = values.get("service_account_key")
        if not key:
            raise CredentialError(
                CredentialErrorKind.NOT_CONFIGURED,
                "GCP credentials carry no service account key or token.",
                provider="gcp",
            )
        token_uri = key.get("token_uri", DEFAULT_TOKEN_URI)
        now = int(time.time())
        claims = {
            "iss": key["client_email"],
            "scope": CLOUD_PLATFORM_SCOPE,
            "aud": token_uri,
            "iat": now,
            "exp": now + 3600,
        }
        try:
            assertion = jwt.encode(
                claims, key["private_key"], algorithm="RS256", headers={"kid": key.get("private_key_id", "")}
            )
        except (JOSEError, KeyError) as exc:
            raise CredentialError(
                CredentialErrorKind.NOT_CONFIGURED,
                "The GCP service account key could not be used to sign a token request.",
                provider="gcp",
            ) from exc
        resp = await self.http.post(
            token_uri,
            data={"grant_type": "urn:ietf:params:oauth:grant-type:jwt-bearer", "assertion": assertion},
            timeout=self.timeout,
        )
        resp.raise_for_status()
        return resp.json()["access_token"]

    async def _paged(
        self, url: str, params: dict[str, str], headers: dict[str, str], field: str
    ) -> list[Any]:
        """GET a Google collection, following nextPageToken. Dict-valued pages (aggregated lists) are appended whole."""
        results: list[Any] = []
        page_params = dict(params)
        while True:
            resp = await self.http.get(url, params=page_params, headers=headers, timeout=self.timeout)
            resp.raise_for_status()
            body = resp.json()
            items = body.get(field)
            if isinstance(items, dict):
                results.append(items)
            elif items:
                results.extend(items)
            token = body.get("nextPageToken")
            if not token:
                return results
            page_params["pageToken"] = token
