"""
credentials/strategies.py -- How credentials for one provider family are obtained.

Exactly one strategy serves each provider family; which one is chosen once, at
startup, from the *_CREDENTIAL_STRATEGY settings (see build_strategies()).

  InstanceIdentityStrategy  local metadata service (AWS IMDSv2 role credentials,
                            Azure managed identity, GCP metadata server). Any
                            timeout or HTTP failure falls back to the environment.
  DelegatedRoleStrategy     AWS only: STS AssumeRole into the role ARN the
                            principal stored. Session lifetime is one hour.
  UserSuppliedStrategy      the principal's own stored CredentialRecord.
  EnvironmentStrategy       static values from Settings. Returns None when the
                            provider is simply not configured.

All strategies return values under the same normalized keys so provider clients
never need to know where credentials came from:

  aws    access_key_id, secret_access_key, session_token, region
  azure  subscription_id plus either (tenant_id, client_id, client_secret)
         or access_token, or use_managed_identity
  gcp    project_id plus either service_account_key (dict) or access_token

Layer rule: imports core/, auth/models, and credentials/ only.
"""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import boto3
import httpx
from botocore.exceptions import BotoCoreError, ClientError

from auth.models import Principal
from core.config import Settings
from core.errors import CredentialError, CredentialErrorKind
from credentials.models import Credentials, CredentialRecord, StrategyKind
from credentials.store import CredentialStore

logger = logging.getLogger("cloudboard.credentials")

AWS_IMDS_BASE = "http://169.254.169.254/latest"
AZURE_IMDS_BASE = "http://169.254.169.254/metadata"
GCP_METADATA_BASE = "http://metadata.google.internal/computeMetadata/v1"

ASSUME_ROLE_DURATION_SECONDS = 3600

# assume_role(role_arn, session_name, duration_seconds, external_id) -> STS "Credentials" dict
AssumeRoleFn = Callable[[str, str, int, str | None], dict]


class CredentialStrategy(ABC):
    kind: StrategyKind

    @abstractmethod
    async def resolve(self, provider: str, principal: Principal | None) -> Credentials | None:
        """Produce credentials for provider on behalf of principal (None = anonymous)."""


# ---------------------------------------------------------------------------
# Environment
# ---------------------------------------------------------------------------


class EnvironmentStrategy(CredentialStrategy):
    kind = StrategyKind.ENVIRONMENT

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    async def resolve(self, provider: str, principal: Principal | None) -> Credentials | None:
        values = self._values_for(provider)
        if values is None:
            return None
        return Credentials(provider=provider, source=self.kind, values=values)

    def _values_for(self, provider: str) -> dict[str, Any] | None:
        s = self.settings
        if provider == "aws":
            if not (s.aws_access_key_id and s.aws_secret_access_key):
                return None
            return {
                "access_key_id": s.aws_access_key_id,
                "secret_access_key": s.aws_secret_access_key,
                "session_token": s.aws_session_token or None,
                "region": s.aws_region,
            }
        if provider == "azure":
            if not (s.azure_tenant_id and s.azure_client_id and s.azure_client_secret and s.azure_subscription_id):
                return None
            return {
                "tenant_id": s.azure_tenant_id,
                "client_id": s.azure_client_id,
                "client_secret": s.azure_client_secret,
                "subscription_id": s.azure_subscription_id,
            }
        if provider == "gcp":
            if not s.google_application_credentials:
                return None
            key = _load_service_account_key(s.google_application_credentials)
            project_id = s.gcp_project_id or key.get("project_id")
            if not project_id:
                raise CredentialError(
                    CredentialErrorKind.MISSING_CONFIGURATION,
                    "GCP_PROJECT_ID is not set and the service account key names no project.",
                    provider=provider,
                )
            return {"project_id": project_id, "service_account_key": key}
        return None


def _load_service_account_key(path: str) -> dict[str, Any]:
    try:
        return json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise CredentialError(
            CredentialErrorKind.MISSING_CONFIGURATION,
            f"Service account key file could not be read: {path}",
            provider="gcp",
        ) from exc


# ---------------------------------------------------------------------------
# Instance identity (metadata services)
# ---------------------------------------------------------------------------


class InstanceIdentityStrategy(CredentialStrategy):
    """Ask the local metadata service; fall back to the environment when there is none.

    Off-cloud (a laptop, CI) the link-local address does not answer, so every
    probe is bounded by metadata_timeout_seconds.
    """

    kind = StrategyKind.INSTANCE_IDENTITY

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient, fallback: EnvironmentStrategy) -> None:
        self.settings = settings
        self.http = http_client
        self.fallback = fallback
        self.timeout = httpx.Timeout(settings.metadata_timeout_seconds)

    async def resolve(self, provider: str, principal: Principal | None) -> Credentials | None:
        probe = {"aws": self._aws, "azure": self._azure, "gcp": self._gcp}.get(provider)
        if probe is None:
            return None
        try:
            values, expires_at = await probe()
        except (httpx.HTTPError, KeyError, ValueError) as exc:
            logger.info("No %s instance identity available (%s); using environment credentials", provider, exc)
            return await self.fallback.resolve(provider, principal)
        return Credentials(provider=provider, source=self.kind, values=values, expires_at=expires_at)

    async def _aws(self) -> tuple[dict[str, Any], datetime | None]:
        token_resp = await self.http.put(
            f"{AWS_IMDS_BASE}/api/token",
            headers={"X-aws-ec2-metadata-token-ttl-seconds": "21600"},
            timeout=self.timeout,
        )
        token_resp.raise_for_status()
        headers = {"X-aws-ec2-metadata-token": token_resp.text}

        roles_resp = await self.http.get(
            f"{AWS_IMDS_BASE}/meta-data/iam/security-credentials/", headers=headers, timeout=self.timeout
        )
        roles_resp.raise_for_status()
        roles = roles_resp.text.strip().splitlines()
        if not roles:
            raise ValueError("no IAM role is attached to this instance")
        role = roles[0].strip()

        creds_resp = await self.http.get(
            f"{AWS_IMDS_BASE}/meta-data/iam/security-credentials/{role}", headers=headers, timeout=self.timeout
        )
        creds_resp.raise_for_status()
        body = creds_resp.json()
        values = {
            "access_key_id": body["AccessKeyId"],
            "secret_access_key": body["SecretAccessKey"],
            "session_token": body["Token"],
            "region": self.settings.aws_region,
        }
        return values, _parse_iso(body.get("Expiration"))

    async def _azure(self) -> tuple[dict[str, Any], datetime | None]:
        headers = {"Metadata": "true"}
        token_resp = await self.http.get(
            f"{AZURE_IMDS_BASE}/identity/oauth2/token",
            params={"api-version": "2018-02-01", "resource": "https://management.azure.com/"},
            headers=headers,
            timeout=self.timeout,
        )
        token_resp.raise_for_status()
        body = token_resp.json()

        subscription_id = self.settings.azure_subscription_id
        if not subscription_id:
            compute_resp = await self.http.get(
                f"{AZURE_IMDS_BASE}/instance/compute",
                params={"api-version": "2021-02-01"},
                headers=headers,
                timeout=self.timeout,
            )
            compute_resp.raise_for_status()
            subscription_id = compute_resp.json()["subscriptionId"]

        expires_at = None
        if body.get("expires_on"):
            expires_at = datetime.fromtimestamp(int(body["expires_on"]), tz=timezone.utc)
        return {"access_token": body["access_token"], "subscription_id": subscription_id}, expires_at

    async def _gcp(self) -> tuple[dict[str, Any], datetime | None]:
        headers = {"Metadata-Flavor": "Google"}
        token_resp = await self.http.get(
            f"{GCP_METADATA_BASE}/instance/service-accounts/default/token", headers=headers, timeout=self.timeout
        )
        token_resp.raise_for_status()
        body = token_resp.json()

        project_id = self.settings.gcp_project_id
        if not project_id:
            project_resp = await self.http.get(
                f"{GCP_METADATA_BASE}/project/project-id", headers=headers, timeout=self.timeout
            )
            project_resp.raise_for_status()
            project_id = project_resp.text.strip()

        expires_at = datetime.now(timezone.utc) + timedelta(seconds=int(body.get("expires_in", 3600)))
        return {"access_token": body["access_token"], "project_id": project_id}, expires_at


def _parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


# ---------------------------------------------------------------------------
# Delegated role (AWS STS AssumeRole)
# ---------------------------------------------------------------------------


def make_sts_assume_role(settings: Settings) -> AssumeRoleFn:
    """Build the default AssumeRole callable on a boto3 STS client.

    The client authenticates with the static environment keys when present,
    otherwise with boto3's default chain (instance profile, shared config).
    """

    def assume_role(role_arn: str, session_name: str, duration_seconds: int, external_id: str | None) -> dict:
        client_kwargs: dict[str, Any] = {"region_name": settings.aws_region}
        if settings.aws_access_key_id and settings.aws_secret_access_key:
            client_kwargs["aws_access_key_id"] = settings.aws_access_key_id
            client_kwargs["aws_secret_access_key"] = settings.aws_secret_access_key
            if settings.aws_session_token:
                client_kwargs["aws_session_token"] = settings.aws_session_token
        sts = boto3.client("sts", **client_kwargs)
        params: dict[str, Any] = {
            "RoleArn": role_arn,
            "RoleSessionName": session_name,
            "DurationSeconds": duration_seconds,
        }
        if external_id:
            params["ExternalId"] = external_id
        return sts.assume_role(**params)["Credentials"]

    return assume_role


class DelegatedRoleStrategy(CredentialStrategy):
    kind = StrategyKind.DELEGATED_ROLE

    def __init__(self, settings: Settings, store: CredentialStore, assume_role: AssumeRoleFn | None = None) -> None:
        self.settings = settings
        self.store = store
        self.assume_role = assume_role or make_sts_assume_role(settings)

    async def resolve(self, provider: str, principal: Principal | None) -> Credentials | None:
        if provider != "aws":
            raise CredentialError(
                CredentialErrorKind.MISSING_CONFIGURATION,
                f"Delegated role assumption is not available for {provider}.",
                provider=provider,
            )
        record = await _stored_record(self.store, principal, provider)
        role_arn = record.secret.get("role_arn") if record is not None else None
        if not role_arn:
            raise CredentialError(
                CredentialErrorKind.MISSING_CONFIGURATION,
                "No AWS role ARN is configured for this user.",
                provider=provider,
            )

        session_name = f"cloudboard-{principal.id}"
        try:
            sts_creds = await asyncio.to_thread(
                self.assume_role,
                role_arn,
                session_name,
                ASSUME_ROLE_DURATION_SECONDS,
                record.secret.get("external_id"),
            )
        except (ClientError, BotoCoreError) as exc:
            logger.warning("AssumeRole into %s failed: %s", role_arn, exc)
            raise CredentialError(
                CredentialErrorKind.UPSTREAM_UNAVAILABLE,
                "AWS STS could not assume the configured role.",
                provider=provider,
            ) from exc

        expiration = sts_creds.get("Expiration")
        if isinstance(expiration, str):
            expiration = _parse_iso(expiration)
        return Credentials(
            provider=provider,
            source=self.kind,
            values={
                "access_key_id": sts_creds["AccessKeyId"],
                "secret_access_key": sts_creds["SecretAccessKey"],
                "session_token": sts_creds["SessionToken"],
                "region": record.secret.get("region") or self.settings.aws_region,
            },
            expires_at=expiration,
        )


# ---------------------------------------------------------------------------
# User supplied
# ---------------------------------------------------------------------------


class UserSuppliedStrategy(CredentialStrategy):
    kind = StrategyKind.USER_SUPPLIED

    def __init__(self, settings: Settings, store: CredentialStore) -> None:
        self.settings = settings
        self.store = store

    async def resolve(self, provider: str, principal: Principal | None) -> Credentials | None:
        record = await _stored_record(self.store, principal, provider)
        if record is None:
            raise CredentialError(
                CredentialErrorKind.NOT_CONFIGURED,
                f"No {provider} credentials have been provided.",
                provider=provider,
            )
        values = self._values_from(record)
        return Credentials(provider=provider, source=self.kind, values=values)

    def _values_from(self, record: CredentialRecord) -> dict[str, Any]:
        secret = record.secret
        provider = record.provider
        if provider == "aws":
            if not (secret.get("access_key_id") and secret.get("secret_access_key")):
                raise CredentialError(
                    CredentialErrorKind.NOT_CONFIGURED,
                    "The stored AWS credentials contain no access key.",
                    provider=provider,
                )
            return {
                "access_key_id": secret["access_key_id"],
                "secret_access_key": secret["secret_access_key"],
                "session_token": None,
                "region": secret.get("region") or self.settings.aws_region,
            }
        if provider == "azure":
            if record.method == "managed-identity":
                return {
                    "use_managed_identity": True,
                    "subscription_id": secret.get("subscription_id") or self.settings.azure_subscription_id,
                }
            return {
                "tenant_id": secret["tenant_id"],
                "client_id": secret["client_id"],
                "client_secret": secret["client_secret"],
                "subscription_id": secret.get("subscription_id") or self.settings.azure_subscription_id,
            }
        if provider == "gcp":
            if not secret.get("service_account_key"):
                raise CredentialError(
                    CredentialErrorKind.NOT_CONFIGURED,
                    "The stored GCP credentials contain no service account key.",
                    provider=provider,
                )
            return {"project_id": secret["project_id"], "service_account_key": secret["service_account_key"]}
        raise CredentialError(CredentialErrorKind.NOT_CONFIGURED, f"Unknown provider {provider!r}.", provider=provider)


async def _stored_record(store: CredentialStore, principal: Principal | None, provider: str) -> CredentialRecord | None:
    if principal is None or principal.id is None:
        return None
    return await asyncio.to_thread(store.get, principal.id, provider)


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def build_strategies(
    settings: Settings,
    store: CredentialStore,
    http_client: httpx.AsyncClient,
    *,
    assume_role: AssumeRoleFn | None = None,
) -> dict[str, CredentialStrategy]:
    """Return {provider: strategy} as configured. Called once from the app lifespan."""
    environment = EnvironmentStrategy(settings)
    strategies: dict[str, CredentialStrategy] = {}
    for provider in ("aws", "azure", "gcp"):
        kind = StrategyKind(settings.strategy_for(provider))
        if kind is StrategyKind.INSTANCE_IDENTITY:
            strategies[provider] = InstanceIdentityStrategy(settings, http_client, environment)
        elif kind is StrategyKind.DELEGATED_ROLE:
            strategies[provider] = DelegatedRoleStrategy(settings, store, assume_role)
        elif kind is StrategyKind.USER_SUPPLIED:
            strategies[provider] = UserSuppliedStrategy(settings, store)
        else:
            strategies[provider] = environment
        logger.info("%s credentials: %s strategy", provider, kind.value)
    return strategies
