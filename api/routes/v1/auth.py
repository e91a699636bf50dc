"""
api/routes/v1/auth.py -- Authentication REST endpoints.

Routes:
  POST /api/v1/login                      -- password login; returns a bearer token
  POST /api/v1/logout                     -- audit only; tokens are stateless
  POST /api/v1/token/verify               -- check a token and return its claims
  GET  /api/v1/me                         -- current principal + effective permissions
  POST /api/v1/me/password                -- change own password
  GET  /api/v1/oauth/providers            -- list enabled OAuth providers (public)
  GET  /api/v1/oauth/{provider}/login     -- redirect to the provider
  GET  /api/v1/oauth/{provider}/callback  -- issue a token, redirect to the frontend

Security:
  [H2] POST /login is rate-limited per IP (LOGIN_RATE_LIMIT, default 10/minute).
  [C1] authenticate_user() provides timing equalization -- use it, never inline.
  [M5] Cache-Control: no-store on every response that carries a token.
"""

from __future__ import annotations

import asyncio
import logging
from urllib.parse import urlencode

from authlib.integrations.starlette_client import OAuthError
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, RedirectResponse

from api.limiter import limiter, login_limit
from api.models import (
    LoginRequest,
    LoginResponse,
    MessageResponse,
    OAuthProviderInfo,
    PasswordChangeRequest,
    PrincipalResponse,
    TokenVerifyRequest,
    TokenVerifyResponse,
)
from auth.dependencies import client_ip, get_current_principal, get_optional_principal
from auth.management import UserManager
from auth.models import Principal
from auth.oauth import get_enabled_providers, get_oauth_user_info
from auth.tokens import TokenService, authenticate_user
from core.config import get_settings
from core.errors import AuthenticationError, ConflictError

logger = logging.getLogger("cloudboard.api.auth")

# Auth policy:
# - POST /login, /token/verify, GET /oauth/*: public
# - POST /logout:                            optional auth (audits who logged out)
# - GET  /me, POST /me/password:             requires auth (get_current_principal)
router = APIRouter()


def principal_response(request: Request, principal: Principal) -> PrincipalResponse:
    effective = request.app.state.permissions.effective_permissions(principal)
    return PrincipalResponse.from_principal(principal, effective)


# ---------------------------------------------------------------------------
# Password login
# ---------------------------------------------------------------------------


@router.post("/login", response_model=LoginResponse)
@limiter.limit(login_limit)  # brute-force mitigation; must sit BELOW @router so the registered endpoint is the limited one
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with username and password; return a bearer token.

    Wrong username, wrong password and disabled account all produce the same
    bad_credentials error so the response never reveals which one it was.
    """
    audit = request.app.state.audit
    principal = authenticate_user(request.app.state.user_store, body.username, body.password, audit)
    if principal is None:
        raise AuthenticationError("Invalid username or password.", code="bad_credentials")

    tokens: TokenService = request.app.state.tokens
    token = tokens.issue(principal)
    resp = JSONResponse(
        content=LoginResponse(
            token=token,
            token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
            expires_in=tokens.expire_seconds,
            principal=principal_response(request, request.app.state.user_store.get_by_id(principal.id)),
        ).model_dump(mode="json"),
    )
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.post("/logout", response_model=MessageResponse)
def logout(request: Request, principal: Principal | None = Depends(get_optional_principal)) -> MessageResponse:
    """Record the logout. The client discards its token; nothing is revoked server-side."""
    if principal is not None:
        request.app.state.audit.record(
            "user_logout", {"username": principal.username}, user_id=principal.id, ip=client_ip(request)
        )
    return MessageResponse(message="Logged out.")


@router.post("/token/verify", response_model=TokenVerifyResponse)
def verify_token(request: Request, body: TokenVerifyRequest) -> TokenVerifyResponse:
    """Return the claims of a valid token, or 401 naming why it is not valid."""
    check = request.app.state.tokens.verify(body.token)
    if not check.ok:
        raise AuthenticationError("Invalid or expired token.", code=check.error.value)
    claims = check.claims
    return TokenVerifyResponse(
        valid=True,
        claims={
            "sub": claims.sub,
            "email": claims.email,
            "username": claims.username,
            "role": claims.role,
            "provider": claims.provider,
        },
    )


# ---------------------------------------------------------------------------
# Current principal
# ---------------------------------------------------------------------------


@router.get("/me", response_model=PrincipalResponse)
def me(request: Request, principal: Principal = Depends(get_current_principal)) -> PrincipalResponse:
    return principal_response(request, principal)


@router.post("/me/password", response_model=MessageResponse)
def change_password(
    request: Request,
    body: PasswordChangeRequest,
    principal: Principal = Depends(get_current_principal),
) -> MessageResponse:
    manager: UserManager = request.app.state.users
    manager.change_password(principal, body.current_password, body.new_password)
    return MessageResponse(message="Password changed.")


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------


@router.get("/oauth/providers", response_model=list[OAuthProviderInfo])
def list_oauth_providers() -> list[OAuthProviderInfo]:
    """Return the configured OAuth providers. Empty when no OAuth env vars are set."""
    return [OAuthProviderInfo(**p) for p in get_enabled_providers()]


def _frontend_redirect(path: str, **params: str) -> RedirectResponse:
    url = f"{get_settings().frontend_url.rstrip('/')}{path}?{urlencode(params)}"
    resp = RedirectResponse(url, status_code=302)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.get("/oauth/{provider}/login")
async def oauth_login(request: Request, provider: str) -> RedirectResponse:
    """Redirect the browser to the provider's authorization page.

    The provider name is checked against the enabled list first so a crafted
    name can never select an unregistered client.
    """
    if provider not in {p["name"] for p in get_enabled_providers()}:
        return _frontend_redirect("/login", error="oauth_failed")
    client = request.app.state.oauth.create_client(provider)
    redirect_uri = str(request.url_for("oauth_callback", provider=provider))
    return await client.authorize_redirect(request, redirect_uri)


@router.get("/oauth/{provider}/callback", name="oauth_callback")
async def oauth_callback(request: Request, provider: str) -> RedirectResponse:
    """Exchange the code, provision the principal on first sign-in, and hand the token to the frontend."""
    if provider not in {p["name"] for p in get_enabled_providers()}:
        return _frontend_redirect("/login", error="oauth_failed")
    audit = request.app.state.audit
    client = request.app.state.oauth.create_client(provider)

    try:
        token = await client.authorize_access_token(request)
    except OAuthError:
        logger.exception("OAuth token exchange failed for provider %r", provider)
        await audit.record_async("login_failed", {"provider": provider, "reason": "oauth_exchange_failed"}, ip=client_ip(request))
        return _frontend_redirect("/login", error="oauth_failed")

    try:
        email, subject, name = get_oauth_user_info(provider, token)
    except ValueError as exc:
        logger.warning("OAuth login rejected for %r: %s", provider, exc)
        await audit.record_async("login_failed", {"provider": provider, "reason": "unverified_identity"}, ip=client_ip(request))
        return _frontend_redirect("/login", error="oauth_failed")

    manager: UserManager = request.app.state.users
    try:
        principal = await asyncio.to_thread(manager.provision_oauth_user, provider, subject, email.lower(), name)
    except ConflictError:
        logger.warning("OAuth login for %r refused: %s already belongs to another account", provider, email)
        await audit.record_async(
            "login_failed", {"provider": provider, "email": email.lower(), "reason": "email_in_use"}, ip=client_ip(request)
        )
        return _frontend_redirect("/login", error="account_exists")
    if not principal.is_active:
        await audit.record_async(
            "login_failed",
            {"username": principal.username, "provider": provider, "reason": "account_disabled"},
            ip=client_ip(request),
        )
        return _frontend_redirect("/login", error="account_disabled")

    request.app.state.user_store.update_last_login(principal.id)
    await audit.record_async(
        "login_success", {"username": principal.username, "provider": provider}, user_id=principal.id, ip=client_ip(request)
    )
    return _frontend_redirect("/auth/callback", token=request.app.state.tokens.issue(principal))
