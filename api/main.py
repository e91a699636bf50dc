"""
api/main.py -- FastAPI application entry point for CloudBoard.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter
  4. SessionMiddleware     -- OAuth state between redirect and callback

Lifespan builds every service once and hangs it on app.state; route handlers
and dependencies only ever read services from there. Shutdown releases them
in reverse order.
"""

from __future__ import annotations

import asyncio
import logging
import time
import traceback
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import httpx
from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.sessions import SessionMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.compliance import router as compliance_router
from api.routes.v1.credentials import router as credentials_router
from api.routes.v1.dashboard import router as dashboard_router
from api.routes.v1.users import router as users_router
from auth.dependencies import client_ip, get_current_principal
from auth.management import UserManager
from auth.models import Principal
from auth.oauth import oauth as oauth_client
from auth.permissions import PermissionEngine
from auth.store import PrincipalStore
from auth.tokens import TokenService
from core.audit import AuditLog
from core.config import get_settings
from core.errors import AppError
from credentials.resolver import CredentialResolver
from credentials.store import CredentialStore
from credentials.strategies import build_strategies
from providers.aggregator import ResourceAggregator
from providers.aws import AwsClient
from providers.azure import AzureClient
from providers.gcp import GcpClient

VERSION = "1.0.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("cloudboard.api")

_settings = get_settings()

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Drop stale credential cache entries every hour.

    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine cleanly.
    """
    while True:
        await asyncio.sleep(60 * 60)
        removed = app.state.resolver.purge_expired()
        if removed:
            logger.info("Purged %d stale credential cache entries", removed)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build services on startup, release them on shutdown.

    Startup order matters:
      1. Audit sink first -- every later service records into it.
      2. Stores, then the services that wrap them (tokens, users).
      3. Bootstrap super admin -- needs the user manager.
      4. Shared HTTP client, credential strategies, resolver, provider clients.
      5. Purge task last -- references app.state.resolver.
    """
    settings = get_settings()
    logger.info("CloudBoard API starting up")

    app.state.audit = AuditLog(settings.audit_log_path, settings.access_log_path)
    app.state.user_store = PrincipalStore(settings.database_url)
    app.state.credential_store = CredentialStore(settings.database_url, settings.secret_key)
    app.state.permissions = PermissionEngine()
    app.state.tokens = TokenService(
        settings.secret_key,
        app.state.audit,
        expire_seconds=settings.token_expire_seconds,
        issuer=settings.token_issuer,
        audience=settings.token_audience,
    )
    app.state.users = UserManager(app.state.user_store, app.state.permissions, app.state.audit)
    app.state.users.ensure_bootstrap_admin(settings.bootstrap_admin_password)
    app.state.oauth = oauth_client

    app.state.http = httpx.AsyncClient()
    strategies = build_strategies(settings, app.state.credential_store, app.state.http)
    app.state.resolver = CredentialResolver(strategies, app.state.audit)
    app.state.aggregator = ResourceAggregator(
        {
            "aws": AwsClient(app.state.resolver),
            "azure": AzureClient(app.state.resolver, app.state.http),
            "gcp": GcpClient(app.state.resolver, app.state.http),
        },
        app.state.audit,
        provider_timeout=settings.provider_timeout_seconds,
    )
    app.state.purge_task = asyncio.create_task(_purge_loop(app))
    app.state.audit.record("server_started", {"version": VERSION, "debug": settings.debug})

    yield

    app.state.purge_task.cancel()
    await app.state.http.aclose()
    app.state.credential_store.close()
    app.state.user_store.close()
    logger.info("CloudBoard API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="CloudBoard API",
    description="Multi-cloud resource and cost dashboard for AWS, Azure and GCP.",
    version=VERSION,
    lifespan=lifespan,
    # Built-in /docs and /redoc are replaced by auth-protected routes below.
    docs_url=None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack -- register in the order the request should meet them.
# ---------------------------------------------------------------------------

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.hosts)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# authlib keeps the OAuth state value in the session between the authorization
# redirect and the callback; without it the callback cannot verify state.
app.add_middleware(SessionMiddleware, secret_key=_settings.secret_key, https_only=not _settings.debug)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


# ---------------------------------------------------------------------------
# Request logging middleware
#
# Every response is timed, logged, and appended to the NDJSON access log.
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    ip = client_ip(request)
    logger.info("%s %s %d %.1fms %s", request.method, request.url.path, response.status_code, ms, ip or "unknown")
    audit: AuditLog | None = getattr(request.app.state, "audit", None)
    if audit is not None:
        audit.access(
            method=request.method,
            url=request.url.path,
            status=response.status_code,
            duration_ms=ms,
            ip=ip,
            user_agent=request.headers.get("user-agent"),
        )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(users_router, prefix="/api/v1", tags=["Users"])
app.include_router(credentials_router, prefix="/api/v1", tags=["Credentials"])
app.include_router(dashboard_router, prefix="/api/v1", tags=["Dashboard"])
app.include_router(compliance_router, prefix="/api/v1", tags=["Compliance"])


# ---------------------------------------------------------------------------
# Auth-protected API documentation
# ---------------------------------------------------------------------------


@app.get("/docs", include_in_schema=False)
async def docs(principal: Principal = Depends(get_current_principal)):
    """Swagger UI -- requires authentication."""
    return get_swagger_ui_html(openapi_url="/openapi.json", title="CloudBoard API")


@app.get("/redoc", include_in_schema=False)
async def redoc(principal: Principal = Depends(get_current_principal)):
    """ReDoc UI -- requires authentication."""
    return get_redoc_html(openapi_url="/openapi.json", title="CloudBoard API")


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _error(status_code: int, detail: ErrorDetail) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=detail).model_dump(exclude_none=True),
    )


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    """Render any core.errors exception. detail is only exposed in debug mode."""
    return _error(
        exc.status_code,
        ErrorDetail(
            code=exc.code,
            message=exc.message,
            detail=exc.detail if get_settings().debug else None,
            required=getattr(exc, "required", None),
        ),
    )


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with Retry-After when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    request.app.state.audit.record(
        "rate_limited", {"url": request.url.path, "limit": str(exc.detail)}, ip=client_ip(request)
    )
    response = _error(429, ErrorDetail(code="rate_limited", message="Too many requests.", detail=str(exc.detail)))
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 when the request body or query params fail validation."""
    return _error(
        422,
        ErrorDetail(code="validation_error", message="Request validation failed.", detail=str(exc.errors())),
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Structured error for Starlette/FastAPI HTTP exceptions (404 routes, 405, host checks)."""
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return _error(exc.status_code, ErrorDetail(code=f"http_{exc.status_code}", message=str(exc.detail)))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all for unexpected server errors.

    The traceback goes to the log and the audit trail under a reference id;
    the client only receives the reference.
    """
    reference = uuid.uuid4().hex[:12]
    logger.exception("Unhandled exception on %s %s (ref %s)", request.method, request.url.path, reference)
    audit: AuditLog | None = getattr(request.app.state, "audit", None)
    if audit is not None:
        audit.record(
            "server_error",
            {
                "reference": reference,
                "method": request.method,
                "url": request.url.path,
                "error": repr(exc),
                "traceback": traceback.format_exc(),
            },
            ip=client_ip(request),
        )
    return _error(
        500,
        ErrorDetail(code="internal_error", message="An unexpected error occurred.", reference=reference),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py so it is always reachable. No rate limit --
# load balancers and monitors must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return liveness, version, and a database round-trip check."""
    database = "ok"
    try:
        request.app.state.user_store.has_principals()
    except SQLAlchemyError:
        logger.exception("Health check database probe failed")
        database = "error"
    return HealthResponse(
        status="ok" if database == "ok" else "degraded",
        version=VERSION,
        timestamp=datetime.now(timezone.utc).isoformat(),
        components={"app": "ok", "database": database},
    )
