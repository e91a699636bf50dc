"""
core/errors.py -- Error taxonomy shared by every layer.

Each AppError subclass carries a stable machine-readable code and the HTTP
status the API layer maps it to. Route handlers and services raise these;
api/main.py owns the single exception handler that turns them into the
ErrorResponse envelope. Nothing below api/ imports FastAPI to raise errors.

CredentialError and ProviderFetchError are branch-local: the aggregator catches
them per provider and converts them into a degraded contribution. Their status
codes only matter if one ever escapes a branch.
"""

from __future__ import annotations

from enum import Enum


class AppError(Exception):
    """Base class for errors with a stable code and an HTTP status."""

    status_code: int = 500
    code: str = "internal_error"

    def __init__(self, message: str, *, code: str | None = None, detail: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.detail = detail


class AuthenticationError(AppError):
    """Missing, invalid, or expired identity."""

    status_code = 401
    code = "unauthorized"


class AuthorizationError(AppError):
    """Valid identity, insufficient role or permission.

    required names the permission or roles that were missing so clients can
    explain the denial.
    """

    status_code = 403
    code = "forbidden"

    def __init__(self, message: str, *, code: str | None = None, required: list[str] | None = None) -> None:
        super().__init__(message, code=code)
        self.required = required


class ValidationError(AppError):
    status_code = 400
    code = "validation_error"


class InvariantViolation(ValidationError):
    """A request that would break a standing rule (last super admin, self-delete)."""

    code = "invariant_violation"


class NotFoundError(AppError):
    status_code = 404
    code = "not_found"


class ConflictError(AppError):
    status_code = 409
    code = "conflict"


class CredentialErrorKind(str, Enum):
    NOT_CONFIGURED = "not_configured"
    MISSING_CONFIGURATION = "missing_configuration"
    UPSTREAM_UNAVAILABLE = "upstream_unavailable"


class CredentialError(AppError):
    """Credentials for a (provider, principal) pair could not be produced."""

    status_code = 502

    def __init__(self, kind: CredentialErrorKind, message: str, *, provider: str | None = None) -> None:
        super().__init__(message, code=f"credential_{kind.value}")
        self.kind = kind
        self.provider = provider


class ProviderFetchError(AppError):
    """A provider's inventory or cost query failed."""

    status_code = 502
    code = "provider_fetch_failed"

    def __init__(self, provider: str, message: str) -> None:
        super().__init__(message)
        self.provider = provider
