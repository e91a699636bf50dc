"""
auth/tokens.py -- Token issuing/verification and password hashing.

Security design decisions:
  JWT: python-jose with HS256. Tokens carry the principal's stable claims (id,
       email, username, role, provider of origin), an expiry (default 24h), and
       fixed issuer/audience values. verify() never raises: every failure is
       returned as a TokenError so the dependency layer can put a precise,
       machine-readable reason in the 401.

  Passwords: bcrypt directly. The _DUMMY_HASH constant enables timing
       equalization in authenticate_user() so response time does not reveal
       whether a username exists [C1].

  SECRET_KEY: sourced from core.config.get_settings() by the app lifespan and
       passed into TokenService -- the service itself holds no global state.

Layer rule: no imports from api/, credentials/, or providers/. Import from core/
is allowed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import TYPE_CHECKING

import bcrypt
from jose import ExpiredSignatureError, JWTError, jwt
from jose.exceptions import JWTClaimsError

from auth.models import Principal, Role, TokenClaims
from core.audit import AuditLog

if TYPE_CHECKING:
    from auth.store import PrincipalStore

logger = logging.getLogger("cloudboard.auth")

_ALGORITHM = "HS256"

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Passwords longer than 72 bytes are truncated by bcrypt. The API layer caps
    password length well below that threshold.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


# Timing equalization dummy hash [C1]. Computed once at module load so the first
# login attempt is not measurably slower than subsequent ones.
_DUMMY_HASH: str = hash_password("cloudboard_timing_dummy")


def authenticate_user(
    store: PrincipalStore,
    username: str,
    password: str,
    audit: AuditLog | None = None,
) -> Principal | None:
    """Authenticate a local username/password login with timing equalization.

    Always runs bcrypt whether or not the user exists, so an attacker cannot
    enumerate valid usernames by timing. The disabled-account check runs after
    the password check for the same reason.

    Returns the Principal on success, None on any failure. The failure reason
    goes to the audit trail only -- never to the caller.
    """
    principal = store.get_by_username(username)
    reason: str | None = None
    if principal is None or principal.hashed_password is None:
        # Equalize timing -- do NOT return early before running bcrypt [C1]
        verify_password(password, _DUMMY_HASH)
        reason = "user_not_found"
    elif not verify_password(password, principal.hashed_password):
        reason = "invalid_password"
    elif not principal.is_active:
        reason = "account_disabled"

    if reason is not None:
        if audit is not None:
            audit.record("login_failed", {"username": username, "reason": reason})
        return None

    store.update_last_login(principal.id)
    if audit is not None:
        audit.record(
            "login_success",
            {"username": principal.username, "role": Role(principal.role).value},
            user_id=principal.id,
        )
    return principal


# ---------------------------------------------------------------------------
# Token service
# ---------------------------------------------------------------------------


class TokenError(str, Enum):
    EXPIRED = "token_expired"
    BAD_SIGNATURE = "bad_signature"
    WRONG_AUDIENCE = "wrong_audience"
    WRONG_ISSUER = "wrong_issuer"
    MALFORMED = "malformed_token"


@dataclass(frozen=True)
class TokenCheck:
    """Outcome of TokenService.verify(): exactly one of claims / error is set."""

    claims: TokenClaims | None = None
    error: TokenError | None = None

    @property
    def ok(self) -> bool:
        return self.claims is not None


class TokenService:
    """Issue and verify signed, time-bounded identity tokens.

    Usage:
        tokens = TokenService(settings.secret_key, audit)
        token = tokens.issue(principal)
        check = tokens.verify(token)
        if check.ok: ...
    """

    def __init__(
        self,
        secret_key: str,
        audit: AuditLog | None = None,
        *,
        expire_seconds: int = 24 * 3600,
        issuer: str = "cloudboard",
        audience: str = "cloudboard-api",
    ) -> None:
        self._secret_key = secret_key
        self._audit = audit
        self.expire_seconds = expire_seconds
        self.issuer = issuer
        self.audience = audience

    def issue(self, principal: Principal, expire_seconds: int | None = None) -> str:
        """Encode a signed JWT for principal.

        expire_seconds overrides the configured lifetime for this token only.
        """
        duration = self.expire_seconds if expire_seconds is None else expire_seconds
        now = datetime.now(timezone.utc)
        expire = now + timedelta(seconds=duration)
        payload = {
            "sub": principal.id,
            "email": principal.email,
            "username": principal.username,
            "role": Role(principal.role).value,
            "provider": principal.auth_provider or "local",
            "iat": now,
            "exp": expire,
            "iss": self.issuer,
            "aud": self.audience,
        }
        token = jwt.encode(payload, self._secret_key, algorithm=_ALGORITHM)
        if self._audit is not None:
            self._audit.record(
                "token_issued",
                {"email": principal.email, "expires_at": expire.isoformat()},
                user_id=principal.id,
            )
        return token

    def verify(self, token: str) -> TokenCheck:
        """Check signature, expiry, issuer, and audience. Never raises."""
        error: TokenError | None = None
        payload: dict = {}
        try:
            payload = jwt.decode(
                token,
                self._secret_key,
                algorithms=[_ALGORITHM],
                audience=self.audience,
                issuer=self.issuer,
            )
        except ExpiredSignatureError:
            error = TokenError.EXPIRED
        except JWTClaimsError as exc:
            error = TokenError.WRONG_AUDIENCE if "audience" in str(exc).lower() else TokenError.WRONG_ISSUER
        except JWTError as exc:
            error = TokenError.BAD_SIGNATURE if "signature" in str(exc).lower() else TokenError.MALFORMED
        except (AttributeError, TypeError, ValueError):
            # Non-string input or a payload jose cannot parse at all.
            error = TokenError.MALFORMED

        if error is None:
            try:
                claims = TokenClaims(
                    sub=str(payload["sub"]),
                    email=payload["email"],
                    username=payload["username"],
                    role=payload["role"],
                    provider=payload.get("provider", "local"),
                )
            except KeyError:
                error = TokenError.MALFORMED
            else:
                return TokenCheck(claims=claims)

        if self._audit is not None:
            self._audit.record("token_verification_failed", {"reason": error.value})
        return TokenCheck(error=error)
