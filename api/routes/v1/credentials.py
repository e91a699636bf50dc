"""
api/routes/v1/credentials.py -- The caller's own cloud credentials.

Routes:
  POST   /api/v1/credentials/aws         -- store/replace AWS access key or role ARN
  POST   /api/v1/credentials/azure       -- store/replace service principal or managed identity choice
  POST   /api/v1/credentials/gcp         -- store/replace project id + service account key
  GET    /api/v1/credentials/status      -- configured/method per provider, never secrets
  DELETE /api/v1/credentials/{provider}  -- 404 when nothing is stored

Every write and delete invalidates the caller's cached credentials for that
provider so the next dashboard request resolves afresh.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from api.models import (
    AwsCredentialRequest,
    AzureCredentialRequest,
    CredentialStatus,
    CredentialStoredResponse,
    GcpCredentialRequest,
    MessageResponse,
)
from auth.dependencies import client_ip, get_current_principal
from auth.models import Principal
from core.config import get_settings
from core.errors import NotFoundError, ValidationError
from core.models import KNOWN_PROVIDERS, PROVIDER_LABELS
from credentials.models import CredentialRecord

# Auth policy: every route requires auth and acts only on the caller's own records.
router = APIRouter(prefix="/credentials")

CredentialBody = AwsCredentialRequest | AzureCredentialRequest | GcpCredentialRequest


def _store(request: Request, principal: Principal, provider: str, body: CredentialBody) -> CredentialStoredResponse:
    record = request.app.state.credential_store.put(
        CredentialRecord(user_id=principal.id, provider=provider, method=body.method, secret=body.secret())
    )
    request.app.state.resolver.invalidate(principal.id, provider)
    request.app.state.audit.record(
        "credentials_stored",
        {"provider": provider, "method": record.method},
        user_id=principal.id,
        ip=client_ip(request),
    )
    return CredentialStoredResponse(
        provider=provider,
        method=record.method,
        message=f"{PROVIDER_LABELS[provider]} credentials stored securely.",
    )


@router.post("/aws", response_model=CredentialStoredResponse)
def store_aws(
    request: Request, body: AwsCredentialRequest, principal: Principal = Depends(get_current_principal)
) -> CredentialStoredResponse:
    return _store(request, principal, "aws", body)


@router.post("/azure", response_model=CredentialStoredResponse)
def store_azure(
    request: Request, body: AzureCredentialRequest, principal: Principal = Depends(get_current_principal)
) -> CredentialStoredResponse:
    return _store(request, principal, "azure", body)


@router.post("/gcp", response_model=CredentialStoredResponse)
def store_gcp(
    request: Request, body: GcpCredentialRequest, principal: Principal = Depends(get_current_principal)
) -> CredentialStoredResponse:
    return _store(request, principal, "gcp", body)


@router.get("/status", response_model=dict[str, CredentialStatus])
def credential_status(request: Request, principal: Principal = Depends(get_current_principal)) -> dict[str, CredentialStatus]:
    settings = get_settings()
    records = {r.provider: r for r in request.app.state.credential_store.list_for_user(principal.id)}
    status: dict[str, CredentialStatus] = {}
    for provider in KNOWN_PROVIDERS:
        record = records.get(provider)
        status[provider] = CredentialStatus(
            configured=record is not None,
            method=record.method if record is not None else None,
            created_at=record.created_at if record is not None else None,
            strategy=settings.strategy_for(provider),
        )
    return status


@router.delete("/{provider}", response_model=MessageResponse)
def delete_credentials(
    request: Request, provider: str, principal: Principal = Depends(get_current_principal)
) -> MessageResponse:
    if provider not in KNOWN_PROVIDERS:
        raise ValidationError(f"Unknown provider {provider!r}.", code="invalid_providers")
    if not request.app.state.credential_store.delete(principal.id, provider):
        raise NotFoundError("Credentials not found.")
    request.app.state.resolver.invalidate(principal.id, provider)
    request.app.state.audit.record(
        "credentials_deleted", {"provider": provider}, user_id=principal.id, ip=client_ip(request)
    )
    return MessageResponse(message=f"{PROVIDER_LABELS[provider]} credentials deleted.")
