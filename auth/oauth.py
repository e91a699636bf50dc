"""
auth/oauth.py -- Authlib OAuth/OIDC provider configuration.

Reads configuration from core.config.get_settings() at module load to decide
which providers are active. Only providers with both client ID and secret
configured get registered.

Security notes:
  [H1] Email verification is mandatory for Google. get_oauth_user_info() raises
       ValueError if the provider does not confirm the email is verified.
       Microsoft Entra ID lets any tenant admin put any address in email /
       preferred_username, so a Microsoft email is only trusted when the
       token carries xms_edov (domain owner verified) or email_verified, or
       when the app is pinned to one tenant and the token's tid matches it.

  [H2] The subject returned is the provider-stable identifier (Google sub,
       Microsoft tid:oid). Accounts are keyed on it, never on email.

  OAuth state parameter (CSRF protection) is handled by authlib automatically
  via Starlette SessionMiddleware.

Supported providers:
  google    -- Authorization code flow; OIDC discovery.
  microsoft -- Authorization code flow; Entra ID v2.0 OIDC discovery for the
               configured tenant ("common" accepts any tenant).

Layer rule: no imports from api/, credentials/, or providers/.
"""

from __future__ import annotations

import logging

from authlib.integrations.starlette_client import OAuth

from core.config import get_settings

logger = logging.getLogger("cloudboard.auth.oauth")

oauth = OAuth()

_cfg = get_settings()

if _cfg.google_client_id and _cfg.google_client_secret:
    oauth.register(
        name="google",
        client_id=_cfg.google_client_id,
        client_secret=_cfg.google_client_secret,
        server_metadata_url="https://accounts.google.com/.well-known/openid-configuration",
        client_kwargs={"scope": "openid email profile"},
    )
    logger.info("Google OAuth provider registered")

if _cfg.microsoft_client_id and _cfg.microsoft_client_secret:
    oauth.register(
        name="microsoft",
        client_id=_cfg.microsoft_client_id,
        client_secret=_cfg.microsoft_client_secret,
        server_metadata_url=(
            f"https://login.microsoftonline.com/{_cfg.microsoft_tenant_id}/v2.0/.well-known/openid-configuration"
        ),
        client_kwargs={"scope": "openid email profile"},
    )
    logger.info("Microsoft OAuth provider registered (tenant: %s)", _cfg.microsoft_tenant_id)


def get_enabled_providers() -> list[dict]:
    """Return {"name", "label"} for every configured OAuth provider."""
    cfg = get_settings()
    providers: list[dict] = []
    if cfg.google_client_id and cfg.google_client_secret:
        providers.append({"name": "google", "label": "Google"})
    if cfg.microsoft_client_id and cfg.microsoft_client_secret:
        providers.append({"name": "microsoft", "label": "Microsoft"})
    return providers


_MULTI_TENANT = {"common", "organizations", "consumers"}


def _claim_true(value) -> bool:
    # Entra ID emits optional boolean claims either as JSON booleans or as strings.
    return value is True or value == 1 or str(value).lower() in {"true", "1"}


def _microsoft_email_trusted(userinfo: dict) -> bool:
    """True when a Microsoft email claim may be used to provision an account. See [H1]."""
    if _claim_true(userinfo.get("xms_edov")) or _claim_true(userinfo.get("email_verified")):
        return True
    tenant = get_settings().microsoft_tenant_id
    return tenant.lower() not in _MULTI_TENANT and userinfo.get("tid") == tenant


def get_oauth_user_info(provider: str, token: dict) -> tuple[str, str, str]:
    """Extract (email, subject, display_name) from an OIDC token response.

    Raises:
        ValueError: If the provider is unknown or a usable identity cannot be confirmed.
    """
    userinfo = token.get("userinfo")
    if not userinfo:
        raise ValueError(f"{provider} OAuth: no userinfo in token response")

    if provider == "google":
        if not userinfo.get("email_verified", False):
            raise ValueError("google OAuth: email is not verified.")
        email = userinfo.get("email")
        subject = userinfo.get("sub")
    elif provider == "microsoft":
        if not _microsoft_email_trusted(userinfo):
            raise ValueError("microsoft OAuth: email is not verified for this tenant.")
        email = userinfo.get("email") or userinfo.get("preferred_username")
        oid = userinfo.get("oid")
        subject = f"{userinfo.get('tid')}:{oid}" if oid and userinfo.get("tid") else userinfo.get("sub")
    else:
        raise ValueError(f"Unknown OAuth provider: {provider!r}")

    if not email or not subject:
        raise ValueError(f"{provider} OAuth: missing email or sub claim in userinfo")

    name = userinfo.get("name") or email.split("@")[0]
    return email, subject, name
