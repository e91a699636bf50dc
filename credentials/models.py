"""
credentials/models.py -- Domain dataclasses for stored and resolved cloud credentials.

Secret material lives in fields declared with repr=False so an accidental log
line or traceback never prints it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class StrategyKind(str, Enum):
    """How credentials for a provider family are obtained. Fixed per provider at startup."""

    INSTANCE_IDENTITY = "instance-identity"
    DELEGATED_ROLE = "delegated-role"
    USER_SUPPLIED = "user-supplied"
    ENVIRONMENT = "environment"


@dataclass
class CredentialRecord:
    """A principal's stored secret bundle for one provider.

    Records are replaced whole on every write -- never patched field by field.
    method is the submission method the user chose (e.g. "access-key",
    "assume-role", "service-principal", "managed-identity", "service-account").
    """

    user_id: str
    provider: str
    method: str
    secret: dict[str, Any] = field(default_factory=dict, repr=False)
    created_at: str | None = None


@dataclass(frozen=True)
class Credentials:
    """Resolved, ready-to-use credentials for one provider.

    values holds provider-specific keys (access_key_id, access_token,
    service_account_key, project_id, ...). expires_at is set for short-lived
    credentials such as STS sessions and metadata-service tokens.
    """

    provider: str
    source: StrategyKind
    values: dict[str, Any] = field(default_factory=dict, repr=False)
    expires_at: datetime | None = None
