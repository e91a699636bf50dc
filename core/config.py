"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for CloudBoard happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.
That includes the static cloud credentials used by the environment credential
strategy: they are Settings fields, not ad-hoc env lookups in the provider code.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY, aws_credential_strategy ->
      AWS_CREDENTIAL_STRATEGY).

  @model_validator(mode="after"): Cross-field validation after all fields are
      resolved. Enforces the SECRET_KEY policy and rejects credential strategies
      a provider family cannot support (delegated role assumption is AWS-only).

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. JWT signing relies
       on key entropy -- a short key weakens every issued token.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure.

Layer rule: core/ is the kernel. This module may not import from api/, auth/,
credentials/, or providers/.
"""

import logging
import secrets
from functools import lru_cache
from typing import Literal

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("cloudboard.config")

StrategyName = Literal["instance-identity", "delegated-role", "user-supplied", "environment"]


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""
    database_url: str = "sqlite:///cloudboard.db"
    audit_log_path: str = "logs/audit.log"
    access_log_path: str = "logs/access.log"

    # ------------------------------------------------------------------
    # HTTP surface
    # ------------------------------------------------------------------

    # Comma separated so a single env var can carry the list.
    allowed_origins: str = "http://localhost:3000,http://localhost:3002"
    allowed_hosts: str = "localhost,127.0.0.1,*.localhost,testserver"
    frontend_url: str = "http://localhost:3000"

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------

    token_expire_seconds: int = 24 * 3600
    token_issuer: str = "cloudboard"
    token_audience: str = "cloudboard-api"
    # Password for the seeded super admin. Empty means "generate one and log it".
    bootstrap_admin_password: str = ""

    login_rate_limit: str = "10/minute"
    dashboard_rate_limit: str = "60/minute"
    compliance_rate_limit: str = "60/minute"

    # OAuth providers (optional -- empty string means provider is disabled)
    google_client_id: str = ""
    google_client_secret: str = ""
    microsoft_client_id: str = ""
    microsoft_client_secret: str = ""
    microsoft_tenant_id: str = "common"

    # ------------------------------------------------------------------
    # Credential strategies -- one per provider family, fixed at startup
    # ------------------------------------------------------------------

    aws_credential_strategy: StrategyName = "environment"
    azure_credential_strategy: StrategyName = "environment"
    gcp_credential_strategy: StrategyName = "environment"

    metadata_timeout_seconds: float = 1.0
    provider_timeout_seconds: float = 20.0

    # ------------------------------------------------------------------
    # Static cloud credentials (environment strategy)
    # ------------------------------------------------------------------

    aws_access_key_id: str = ""
    aws_secret_access_key: str = ""
    aws_session_token: str = ""
    aws_region: str = "us-east-1"

    azure_tenant_id: str = ""
    azure_client_id: str = ""
    azure_client_secret: str = ""
    azure_subscription_id: str = ""

    gcp_project_id: str = ""
    google_application_credentials: str = ""

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce the SECRET_KEY policy [M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Tokens will not survive restart -- acceptable for local dev.

        Production mode: refuse to start if SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters [M6].
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("WARNING: Using auto-generated SECRET_KEY. Tokens will not persist across restarts.")
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self

    @model_validator(mode="after")
    def validate_credential_strategies(self) -> "Settings":
        """Delegated role assumption only exists for AWS (STS AssumeRole)."""
        for family in ("azure", "gcp"):
            if getattr(self, f"{family}_credential_strategy") == "delegated-role":
                raise ValueError(f"{family.upper()}_CREDENTIAL_STRATEGY cannot be 'delegated-role'.")
        return self

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    @property
    def origins(self) -> list[str]:
        return [o.strip() for o in self.allowed_origins.split(",") if o.strip()]

    @property
    def hosts(self) -> list[str]:
        return [h.strip() for h in self.allowed_hosts.split(",") if h.strip()]

    def strategy_for(self, provider: str) -> StrategyName:
        """Return the configured credential strategy name for a provider family."""
        return getattr(self, f"{provider}_credential_strategy")


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
