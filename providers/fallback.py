"""
providers/fallback.py -- Canonical sample inventory per provider.

Used whenever a provider branch cannot contribute live data: not configured,
credentials unavailable, the query failed, or the branch timed out. Every call
returns fresh objects, marked live=False with the reason attached.
"""

from __future__ import annotations

from collections.abc import Callable

from core.models import Alert, CostDriver, Database, Instance, ProviderInventory, StorageVolume


def _aws() -> ProviderInventory:
    return ProviderInventory(
        provider="aws",
        instances=[
            Instance("web-server-1", "t3.medium", "running", "us-east-1", "AWS", cpu=2, memory=4),
            Instance("api-server-1", "t3.large", "running", "us-east-1", "AWS", cpu=2, memory=8),
            Instance("worker-1", "t3.small", "stopped", "us-west-2", "AWS", cpu=2, memory=2),
        ],
        storage=[
            StorageVolume("app-data-bucket", "S3", "us-east-1", "AWS", size=250),
            StorageVolume("backup-bucket", "S3", "us-west-2", "AWS", size=500),
        ],
        databases=[Database("production-db", "PostgreSQL", "14.7", "db.t3.medium", "AWS")],
        healthy_resources=4,
        warning_resources=1,
        critical_resources=0,
        cost=850,
        alerts=[Alert("warning", "1 EC2 instance is stopped", "AWS", "EC2", time="2 hours ago")],
        top_resources=[
            CostDriver("web-server-1", "EC2 Instance", "AWS", 150, "us-east-1"),
            CostDriver("production-db", "RDS Database", "AWS", 200, "us-east-1"),
        ],
    )


def _azure() -> ProviderInventory:
    return ProviderInventory(
        provider="azure",
        instances=[
            Instance("app-vm-1", "Standard_B2s", "running", "eastus", "Azure", cpu=2, memory=4),
            Instance("db-vm-1", "Standard_D2s_v3", "running", "westus", "Azure", cpu=2, memory=8),
        ],
        storage=[StorageVolume("azurestorage01", "Blob Storage", "eastus", "Azure", size=300)],
        databases=[Database("azure-sql-db", "SQL Server", "2019", "Standard S2", "Azure")],
        healthy_resources=4,
        warning_resources=0,
        critical_resources=0,
        cost=620,
        top_resources=[
            CostDriver("app-vm-1", "Virtual Machine", "Azure", 120, "eastus"),
            CostDriver("azure-sql-db", "SQL Database", "Azure", 180, "eastus"),
        ],
    )


def _gcp() -> ProviderInventory:
    return ProviderInventory(
        provider="gcp",
        instances=[
            Instance("gcp-web-1", "n1-standard-2", "running", "us-central1-a", "GCP", cpu=2, memory=7.5),
            Instance("gcp-api-1", "n1-standard-1", "running", "us-east1-b", "GCP", cpu=1, memory=3.75),
        ],
        storage=[StorageVolume("gcp-storage-bucket", "Cloud Storage", "us-central1", "GCP", size=200)],
        databases=[Database("gcp-cloud-sql", "MySQL", "8.0", "db-n1-standard-1", "GCP")],
        healthy_resources=4,
        warning_resources=0,
        critical_resources=0,
        cost=555,
        top_resources=[
            CostDriver("gcp-web-1", "Compute Engine", "GCP", 130, "us-central1-a"),
            CostDriver("gcp-cloud-sql", "Cloud SQL", "GCP", 190, "us-central1"),
        ],
    )


_FALLBACKS: dict[str, Callable[[], ProviderInventory]] = {"aws": _aws, "azure": _azure, "gcp": _gcp}


def fallback_inventory(provider: str, reason: str) -> ProviderInventory:
    """Return the sample inventory for provider, flagged as not live."""
    inventory = _FALLBACKS[provider]()
    inventory.live = False
    inventory.degraded_reason = reason
    return inventory
