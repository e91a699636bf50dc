"""
API request and response models for CloudBoard REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in core/models.py,
auth/models.py and credentials/models.py, which own the internal domain
representation. Route handlers map between the two.

Separation of concerns: domain dataclasses = domain truth; api/ models = API contract.
"""

import dataclasses
import json
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from auth.models import Permission, Principal, Role
from core.models import DashboardSummary

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

USERNAME_PATTERN = r"^[A-Za-z0-9_.@-]{3,64}$"
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"
ROLE_ARN_PATTERN = r"^arn:aws[a-zA-Z-]*:iam::\d{12}:role/[\w+=,.@/-]+$"

# bcrypt ignores bytes past 72; cap below that so two passwords never collide.
_PASSWORD = Field(min_length=8, max_length=72)


# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload.

    required names the missing permission or roles on 403s. reference is the
    id of the server_error audit record on 500s.
    """

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None
    required: Optional[list[str]] = None
    reference: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
    timestamp: str
    components: dict[str, str] = Field(default_factory=dict)


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/login."""

    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=1, max_length=64)
    password: str = Field(min_length=1, max_length=128)


class PrincipalResponse(BaseModel):
    """A principal as returned by /me and the /users endpoints. Never carries the hash."""

    model_config = ConfigDict(frozen=True)

    id: str
    username: str
    email: str
    role: Role
    auth_provider: str
    is_active: bool
    custom_permissions: list[str]
    permissions: list[str]
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    last_login: Optional[str] = None

    @classmethod
    def from_principal(cls, principal: Principal, effective: frozenset[Permission]) -> "PrincipalResponse":
        return cls(
            id=principal.id or "",
            username=principal.username,
            email=principal.email,
            role=Role(principal.role),
            auth_provider=principal.auth_provider,
            is_active=principal.is_active,
            custom_permissions=[Permission(p).value for p in principal.custom_permissions],
            permissions=sorted(p.value for p in effective),
            created_at=principal.created_at,
            updated_at=principal.updated_at,
            last_login=principal.last_login,
        )


class LoginResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    token: str
    token_type: str = "bearer"
    expires_in: int
    principal: PrincipalResponse


class TokenVerifyRequest(BaseModel):
    token: str = Field(min_length=1, max_length=4096)


class TokenVerifyResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    valid: bool
    claims: Optional[dict[str, Any]] = None


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(min_length=1, max_length=128)
    new_password: str = _PASSWORD


class OAuthProviderInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    label: str


# ---------------------------------------------------------------------------
# User management
# ---------------------------------------------------------------------------


class UserCreate(BaseModel):
    """Request body for POST /api/v1/users.

    password may be omitted for OAuth-only accounts that will sign in through a
    provider with the same email.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(pattern=USERNAME_PATTERN)
    email: str = Field(pattern=EMAIL_PATTERN, max_length=254)
    password: Optional[str] = Field(default=None, min_length=8, max_length=72)
    role: Role = Role.USER

    @field_validator("email")
    @classmethod
    def lower_email(cls, value: str) -> str:
        return value.lower()


class UserUpdate(BaseModel):
    """Request body for PUT /api/v1/users/{id}. Omitted fields are left unchanged."""

    model_config = ConfigDict(str_strip_whitespace=True)

    username: Optional[str] = Field(default=None, pattern=USERNAME_PATTERN)
    email: Optional[str] = Field(default=None, pattern=EMAIL_PATTERN, max_length=254)
    password: Optional[str] = Field(default=None, min_length=8, max_length=72)
    role: Optional[Role] = None
    is_active: Optional[bool] = None


class UserStatusUpdate(BaseModel):
    is_active: bool


class UserPermissionsUpdate(BaseModel):
    """Custom grants on top of the role. Names are checked against the catalogue by UserManager."""

    permissions: list[str] = Field(default_factory=list, max_length=32)


class RoleInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    description: str
    permissions: list[str]


class PermissionInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    description: str


# ---------------------------------------------------------------------------
# Cloud credentials
# ---------------------------------------------------------------------------


class AwsCredentialRequest(BaseModel):
    """Request body for POST /api/v1/credentials/aws."""

    model_config = ConfigDict(str_strip_whitespace=True)

    method: Literal["access-key", "assume-role"]
    access_key_id: Optional[str] = Field(default=None, min_length=16, max_length=128)
    secret_access_key: Optional[str] = Field(default=None, min_length=16, max_length=128)
    role_arn: Optional[str] = Field(default=None, pattern=ROLE_ARN_PATTERN)
    external_id: Optional[str] = Field(default=None, max_length=1224)
    region: Optional[str] = Field(default=None, max_length=32)

    @model_validator(mode="after")
    def check_method_fields(self) -> "AwsCredentialRequest":
        if self.method == "access-key" and not (self.access_key_id and self.secret_access_key):
            raise ValueError("access-key requires access_key_id and secret_access_key")
        if self.method == "assume-role" and not self.role_arn:
            raise ValueError("assume-role requires role_arn")
        return self

    def secret(self) -> dict[str, Any]:
        if self.method == "access-key":
            bundle = {"access_key_id": self.access_key_id, "secret_access_key": self.secret_access_key}
        else:
            bundle = {"role_arn": self.role_arn, "external_id": self.external_id}
        if self.region:
            bundle["region"] = self.region
        return bundle


class AzureCredentialRequest(BaseModel):
    """Request body for POST /api/v1/credentials/azure."""

    model_config = ConfigDict(str_strip_whitespace=True)

    use_managed_identity: bool = False
    tenant_id: Optional[str] = Field(default=None, max_length=64)
    client_id: Optional[str] = Field(default=None, max_length=64)
    client_secret: Optional[str] = Field(default=None, max_length=256)
    subscription_id: Optional[str] = Field(default=None, max_length=64)

    @model_validator(mode="after")
    def check_service_principal(self) -> "AzureCredentialRequest":
        if not self.use_managed_identity and not (self.tenant_id and self.client_id and self.client_secret):
            raise ValueError("tenant_id, client_id and client_secret are required")
        return self

    @property
    def method(self) -> str:
        return "managed-identity" if self.use_managed_identity else "service-principal"

    def secret(self) -> dict[str, Any]:
        if self.use_managed_identity:
            return {"subscription_id": self.subscription_id}
        return {
            "tenant_id": self.tenant_id,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "subscription_id": self.subscription_id,
        }


class GcpCredentialRequest(BaseModel):
    """Request body for POST /api/v1/credentials/gcp.

    service_account_key accepts either the parsed key object or the raw JSON
    text of the downloaded key file.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    project_id: str = Field(min_length=1, max_length=64)
    service_account_key: Optional[dict[str, Any]] = None

    @field_validator("service_account_key", mode="before")
    @classmethod
    def parse_key(cls, value: Any) -> Any:
        if isinstance(value, str):
            try:
                return json.loads(value)
            except ValueError as exc:
                raise ValueError("service_account_key is not valid JSON") from exc
        return value

    @field_validator("service_account_key")
    @classmethod
    def check_key(cls, value: Optional[dict[str, Any]]) -> Optional[dict[str, Any]]:
        if value is not None and not {"client_email", "private_key"} <= value.keys():
            raise ValueError("service_account_key must contain client_email and private_key")
        return value

    @property
    def method(self) -> str:
        return "service-account"

    def secret(self) -> dict[str, Any]:
        return {"project_id": self.project_id, "service_account_key": self.service_account_key}


class CredentialStoredResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    provider: str
    method: str
    message: str


class CredentialStatus(BaseModel):
    """Whether the caller has stored credentials for one provider. Never includes secrets."""

    model_config = ConfigDict(frozen=True)

    configured: bool
    method: Optional[str] = None
    created_at: Optional[str] = None
    strategy: str


# ---------------------------------------------------------------------------
# Dashboard
# ---------------------------------------------------------------------------


class DashboardRequest(BaseModel):
    """Request body for POST /api/v1/dashboard.

    Provider names, and the list being non-empty, are checked by the aggregator
    so every bad selection yields the same 400 invalid_providers error.
    """

    providers: list[str] = Field(max_length=10)


class InstanceOut(BaseModel):
    name: str
    type: str
    status: str
    region: str
    provider: str
    cpu: int
    memory: float


class StorageOut(BaseModel):
    name: str
    type: str
    region: str
    provider: str
    size: int


class DatabaseOut(BaseModel):
    name: str
    engine: str
    version: str
    size: str
    provider: str


class AlertOut(BaseModel):
    severity: str
    message: str
    provider: str
    resource: str
    time: str


class CostDriverOut(BaseModel):
    name: str
    type: str
    provider: str
    cost: float
    region: str


class CostSliceOut(BaseModel):
    name: str
    value: float
    color: str


class ProviderStatusOut(BaseModel):
    name: str
    live: bool
    healthy_resources: int
    warning_resources: int
    critical_resources: int
    degraded_reason: Optional[str] = None


class SummaryTotalsOut(BaseModel):
    total_instances: int
    total_storage: int
    total_storage_gb: int
    total_databases: int
    monthly_cost: float


class DashboardResponse(BaseModel):
    """Response body for POST /api/v1/dashboard.

    degraded is true when at least one requested provider contributed sample
    data instead of a live query; degraded_providers names them.
    """

    model_config = ConfigDict(frozen=True)

    summary: SummaryTotalsOut
    providers: list[ProviderStatusOut]
    instances: list[InstanceOut]
    storage: list[StorageOut]
    databases: list[DatabaseOut]
    cost_by_provider: list[CostSliceOut]
    cost_by_service: list[CostSliceOut]
    monthly_change: float
    top_resources: list[CostDriverOut]
    alerts: list[AlertOut]
    cost_trend: list[dict[str, Any]]
    degraded: bool
    degraded_providers: list[str]
    response_time_ms: float

    @classmethod
    def from_summary(cls, summary: DashboardSummary) -> "DashboardResponse":
        return cls.model_validate(dataclasses.asdict(summary))


# ---------------------------------------------------------------------------
# Compliance
# ---------------------------------------------------------------------------


class GdprPosture(BaseModel):
    enabled: bool = True
    data_retention: str = "90 days"
    right_to_erasure: bool = True
    data_portability: bool = True


class HipaaPosture(BaseModel):
    enabled: bool = True
    encryption: str = "AES-256-GCM"
    audit_logging: bool = True
    access_controls: bool = True


class Soc2Posture(BaseModel):
    enabled: bool = True
    type: str = "Type II"
    controls: list[str] = Field(default_factory=lambda: ["security", "availability", "confidentiality"])


class Iso27001Posture(BaseModel):
    enabled: bool = True
    certified: bool = False
    in_progress: bool = True


class CompliancePosture(BaseModel):
    gdpr: GdprPosture = Field(default_factory=GdprPosture)
    hipaa: HipaaPosture = Field(default_factory=HipaaPosture)
    soc2: Soc2Posture = Field(default_factory=Soc2Posture)
    iso27001: Iso27001Posture = Field(default_factory=Iso27001Posture)


class SecurityControls(BaseModel):
    """Controls this deployment actually runs with, derived from Settings."""

    https: bool
    rate_limit: bool
    cors: bool
    trusted_hosts: bool
    audit_logging: bool


class ComplianceResponse(BaseModel):
    """Response body for GET /api/v1/compliance."""

    model_config = ConfigDict(frozen=True)

    compliance: CompliancePosture = Field(default_factory=CompliancePosture)
    security: SecurityControls
