from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

# ---------------------------------------------------------------------------
# Domain constants
# ---------------------------------------------------------------------------


class Provider(str, Enum):
    AWS = "aws"
    AZURE = "azure"
    GCP = "gcp"


# Request order for fan-out and merge is the caller's order; this tuple is only
# the catalogue of known providers.
KNOWN_PROVIDERS: tuple[str, ...] = tuple(p.value for p in Provider)

PROVIDER_LABELS = {"aws": "AWS", "azure": "Azure", "gcp": "GCP"}
PROVIDER_COLORS = {"aws": "#ff9900", "azure": "#0078d4", "gcp": "#ea4335"}


@dataclass
class Instance:
    name: str
    type: str
    status: str  # running | stopped | other provider state
    region: str
    provider: str
    cpu: int = 2
    memory: float = 4


@dataclass
class StorageVolume:
    name: str
    type: str
    region: str
    provider: str
    size: int = 0  # GB; 0 when the provider does not report a size


@dataclass
class Database:
    name: str
    engine: str
    version: str
    size: str
    provider: str


@dataclass
class Alert:
    severity: str  # info | warning | critical
    message: str
    provider: str
    resource: str
    time: str = "just now"


@dataclass
class CostDriver:
    name: str
    type: str
    provider: str
    cost: float
    region: str


@dataclass
class ProviderInventory:
    """Everything one provider contributes to a dashboard summary.

    live is False when the data is the canonical fallback set rather than a
    real query -- degraded_reason then says why.
    """

    provider: str
    instances: list[Instance] = field(default_factory=list)
    storage: list[StorageVolume] = field(default_factory=list)
    databases: list[Database] = field(default_factory=list)
    healthy_resources: int = 0
    warning_resources: int = 0
    critical_resources: int = 0
    cost: float = 0
    alerts: list[Alert] = field(default_factory=list)
    top_resources: list[CostDriver] = field(default_factory=list)
    live: bool = True
    degraded_reason: Optional[str] = None


@dataclass
class ProviderStatus:
    name: str
    live: bool
    healthy_resources: int
    warning_resources: int
    critical_resources: int
    degraded_reason: Optional[str] = None


@dataclass
class CostSlice:
    name: str
    value: float
    color: str


@dataclass
class SummaryTotals:
    total_instances: int = 0
    total_storage: int = 0
    total_storage_gb: int = 0
    total_databases: int = 0
    monthly_cost: float = 0


@dataclass
class DashboardSummary:
    summary: SummaryTotals
    providers: list[ProviderStatus]
    instances: list[Instance]
    storage: list[StorageVolume]
    databases: list[Database]
    cost_by_provider: list[CostSlice]
    cost_by_service: list[CostSlice]
    monthly_change: float
    top_resources: list[CostDriver]
    alerts: list[Alert]
    cost_trend: list[dict]
    degraded: bool
    degraded_providers: list[str]
    response_time_ms: float
