"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication and RBAC.

Identity comes from an "Authorization: Bearer <token>" header only. The token is
verified by the TokenService on app.state, then the principal is re-read from
the store on every request: role changes, new grants, and disabled accounts take
effect on the next request, not when the token expires.

get_optional_principal() is the soft variant (returns None on failure).
get_current_principal() wraps it and raises AuthenticationError (401).
require_permission() / require_role() build gates that raise
AuthorizationError (403) naming what was missing, and audit the denial.

Errors raised here are core.errors types; api/main.py renders them into the
standard error envelope.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import Request

from auth.models import Permission, Principal, Role
from auth.permissions import PermissionEngine
from auth.tokens import TokenService
from core.audit import AuditLog
from core.errors import AuthenticationError, AuthorizationError


def _bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None


def client_ip(request: Request) -> str | None:
    return request.client.host if request.client else None


def _authenticate(request: Request) -> Principal:
    """Resolve the request's principal or raise AuthenticationError with a precise code."""
    token = _bearer_token(request)
    if token is None:
        raise AuthenticationError("Authentication required. Provide a Bearer token.", code="missing_token")

    tokens: TokenService = request.app.state.tokens
    check = tokens.verify(token)
    if not check.ok:
        audit: AuditLog = request.app.state.audit
        audit.record(
            "unauthorized_access",
            {"url": str(request.url.path), "reason": check.error.value},
            ip=client_ip(request),
        )
        raise AuthenticationError("Invalid or expired token.", code=check.error.value)

    principal = request.app.state.user_store.get_by_id(check.claims.sub)
    if principal is None or not principal.is_active:
        raise AuthenticationError("Account is disabled or no longer exists.", code="inactive_principal")

    request.state.claims = check.claims
    request.state.principal = principal
    return principal


def get_optional_principal(request: Request) -> Principal | None:
    """Optional auth: return the Principal for a valid token, None otherwise. Never raises."""
    try:
        return _authenticate(request)
    except AuthenticationError:
        return None


def get_current_principal(request: Request) -> Principal:
    """Require authentication.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(principal: Principal = Depends(get_current_principal)): ...
    """
    return _authenticate(request)


def require_permission(permission: Permission) -> Callable[[Request], Principal]:
    """Build a dependency that requires permission on the current principal.

    401 when unauthenticated, 403 naming the permission otherwise.
    """

    def dependency(request: Request) -> Principal:
        principal = _authenticate(request)
        engine: PermissionEngine = request.app.state.permissions
        if not engine.has_permission(principal, permission):
            request.app.state.audit.record(
                "permission_denied",
                {"username": principal.username, "permission": permission.value, "url": str(request.url.path)},
                user_id=principal.id,
                ip=client_ip(request),
            )
            raise AuthorizationError(
                f"You don't have permission: {permission.value}",
                code="permission_denied",
                required=[permission.value],
            )
        return principal

    return dependency


def require_role(*roles: Role) -> Callable[[Request], Principal]:
    """Build a dependency that requires the principal's current role to be one of roles."""
    allowed = {Role(r) for r in roles}

    def dependency(request: Request) -> Principal:
        principal = _authenticate(request)
        if Role(principal.role) not in allowed:
            request.app.state.audit.record(
                "role_denied",
                {
                    "username": principal.username,
                    "required_roles": sorted(r.value for r in allowed),
                    "user_role": Role(principal.role).value,
                    "url": str(request.url.path),
                },
                user_id=principal.id,
                ip=client_ip(request),
            )
            raise AuthorizationError(
                "You don't have the required role to access this resource.",
                code="role_denied",
                required=sorted(r.value for r in allowed),
            )
        return principal

    return dependency
